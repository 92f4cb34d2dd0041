import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "GATEWAY_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class ModelDefinitionConfig(BaseModel):
    """Seed row for the ``model_definitions`` table."""

    model_key: str
    provider: str
    provider_model: str
    is_premium: bool = False
    per_model_cap: int
    fallback_model: Optional[str] = None
    temperature_default: Optional[float] = None
    max_tokens_default: Optional[int] = None
    display_name: Optional[str] = None
    enabled: bool = True

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    database_path: str = "gateway.db"

    # Outbound timeouts (seconds)
    request_timeout_s: float = 60.0
    search_timeout_s: float = 15.0
    page_fetch_timeout_s: float = 8.0
    query_refine_timeout_s: float = 5.0

    # Shared caches
    model_config_cache_s: float = 30.0
    search_cache_ttl_s: float = 300.0
    search_cache_max_entries: int = 100

    # Model routing
    default_fallback_model: Optional[str] = "basic:gpt-4o-mini"
    default_temperature: float = 0.7
    max_image_data_chars: Optional[int] = None
    models: List[ModelDefinitionConfig] = Field(default_factory=list)

    # Search augmentation
    search_enabled: bool = True
    search_result_count: int = 8
    search_page_fetch_count: int = 4
    search_max_page_chars: int = 3000
    query_refine_model: Optional[str] = "basic:gpt-4o-mini"

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "request_timeout_s": os.getenv("REQUEST_TIMEOUT_S"),
        "search_timeout_s": os.getenv("SEARCH_TIMEOUT_S"),
        "page_fetch_timeout_s": os.getenv("PAGE_FETCH_TIMEOUT_S"),
        "query_refine_timeout_s": os.getenv("QUERY_REFINE_TIMEOUT_S"),
        "model_config_cache_s": os.getenv("MODEL_CONFIG_CACHE_S"),
        "search_cache_ttl_s": os.getenv("SEARCH_CACHE_TTL_S"),
        "default_fallback_model": os.getenv("DEFAULT_FALLBACK_MODEL"),
        "default_temperature": os.getenv("DEFAULT_TEMPERATURE"),
        "max_image_data_chars": os.getenv("MAX_IMAGE_DATA_CHARS"),
        "search_enabled": os.getenv("SEARCH_ENABLED"),
        "search_result_count": os.getenv("SEARCH_RESULT_COUNT"),
        "query_refine_model": os.getenv("QUERY_REFINE_MODEL"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in ("port", "max_image_data_chars", "search_result_count"):
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in (
        "request_timeout_s",
        "search_timeout_s",
        "page_fetch_timeout_s",
        "query_refine_timeout_s",
        "model_config_cache_s",
        "search_cache_ttl_s",
        "default_temperature",
    ):
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "search_enabled" in cleaned:
        cleaned["search_enabled"] = str(cleaned["search_enabled"]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except Exception:
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    return AppSettings(**merged)

