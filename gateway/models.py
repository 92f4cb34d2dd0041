import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .cache import TTLCache
from .db import Database
from .errors import ConfigurationError, ModelNotConfiguredError
from .schemas import ModelDescriptor, Provider


logger = logging.getLogger("uvicorn.error")

PROVIDER_ALIASES = {
    "openai": Provider.OPENAI,
    "google": Provider.GOOGLE,
    "gemini": Provider.GOOGLE,
    "anthropic": Provider.ANTHROPIC,
    "mistral": Provider.MISTRAL,
    "mistralai": Provider.MISTRAL,
    "deepseek": Provider.DEEPSEEK,
    "together": Provider.TOGETHER,
    "together.ai": Provider.TOGETHER,
}

_CACHE_KEY = "models"


def normalize_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_provider(value: Optional[str], model_key: str = "") -> Provider:
    cleaned = normalize_key(value)
    if not cleaned:
        raise ConfigurationError(f"provider missing for model {model_key or '[unknown]'}")
    provider = PROVIDER_ALIASES.get(cleaned)
    if provider is None:
        raise ConfigurationError(f"Unsupported provider {value!r} for model {model_key or '[unknown]'}")
    return provider


def descriptor_from_row(row: Dict[str, Any]) -> ModelDescriptor:
    """Validate one backing row. Incomplete rows are fatal, never defaulted."""
    key = normalize_key(row.get("model_key"))
    provider_model = str(row.get("provider_model") or "").strip()
    if not provider_model:
        raise ConfigurationError(f"provider_model missing for model {key or '[unknown]'}")
    try:
        cap = int(row.get("per_model_cap") or 0)
    except (TypeError, ValueError):
        cap = 0
    if cap <= 0:
        raise ConfigurationError(f"per_model_cap missing/invalid for model {key}")
    fallback = normalize_key(row.get("fallback_model")) or None
    try:
        return ModelDescriptor(
            model_key=key,
            provider=normalize_provider(row.get("provider"), key),
            provider_model=provider_model,
            is_premium=bool(row.get("is_premium")),
            per_model_cap=cap,
            fallback_model=fallback,
            temperature_default=row.get("temperature_default"),
            max_tokens_default=row.get("max_tokens_default") or None,
            display_name=row.get("display_name"),
        )
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid model definition for {key}: {exc}") from exc


class ModelResolver:
    """Maps caller-facing model keys to routing descriptors.

    Definitions come from the ``model_definitions`` table and are held in a
    shared TTL cache so a burst of requests costs one database read.
    """

    def __init__(self, db: Database, cache: Optional[TTLCache] = None, cache_seconds: float = 30.0):
        self.db = db
        self.cache: TTLCache = cache or TTLCache(cache_seconds, max_entries=1)

    async def seed(self, definitions: Iterable[Dict[str, Any]]) -> int:
        count = 0
        for row in definitions:
            key = normalize_key(row.get("model_key"))
            if not key:
                continue
            await self.db.upsert_model({**row, "model_key": key})
            count += 1
        if count:
            self.cache.clear()
        return count

    async def _load(self) -> Dict[str, ModelDescriptor]:
        cached = self.cache.get(_CACHE_KEY)
        if cached is not None:
            return cached
        try:
            rows = await self.db.list_enabled_models()
        except Exception as exc:
            logger.error("Failed to load model definitions: %s", exc)
            raise ConfigurationError("Model config unavailable") from exc
        models: Dict[str, ModelDescriptor] = {}
        for row in rows:
            if not normalize_key(row.get("model_key")):
                continue
            descriptor = descriptor_from_row(row)
            models[descriptor.model_key] = descriptor
        if not models:
            raise ConfigurationError("No enabled models configured")
        self.cache.set(_CACHE_KEY, models)
        return models

    async def resolve(self, model_key: str) -> ModelDescriptor:
        models = await self._load()
        entry = models.get(normalize_key(model_key))
        if entry is None:
            raise ModelNotConfiguredError(f"Unknown model key: {model_key}")
        return entry

    async def list_models(self) -> List[ModelDescriptor]:
        models = await self._load()
        return list(models.values())
