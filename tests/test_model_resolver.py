import pytest

from gateway.cache import TTLCache
from gateway.db import Database
from gateway.errors import ConfigurationError, ModelNotConfiguredError
from gateway.models import ModelResolver
from gateway.schemas import Provider


CLAUDE = {
    "model_key": "premium:claude",
    "provider": "anthropic",
    "provider_model": "claude-test",
    "is_premium": True,
    "per_model_cap": 10,
    "fallback_model": "Basic:GPT-4o-mini",
    "temperature_default": 0.4,
}
MINI = {
    "model_key": "basic:gpt-4o-mini",
    "provider": "openai",
    "provider_model": "gpt-4o-mini",
    "per_model_cap": 100,
    "display_name": "GPT-4o Mini",
}


async def _resolver(tmp_path, *rows, cache_seconds=30.0):
    db = Database(str(tmp_path / "models.db"))
    await db.init()
    resolver = ModelResolver(db, cache_seconds=cache_seconds)
    await resolver.seed(rows)
    return resolver, db


@pytest.mark.asyncio
async def test_resolve_returns_descriptor(tmp_path):
    resolver, _ = await _resolver(tmp_path, CLAUDE, MINI)
    descriptor = await resolver.resolve("  PREMIUM:Claude ")
    assert descriptor.provider is Provider.ANTHROPIC
    assert descriptor.provider_model == "claude-test"
    assert descriptor.is_premium
    assert descriptor.per_model_cap == 10
    assert descriptor.fallback_model == "basic:gpt-4o-mini"
    assert descriptor.temperature_default == 0.4
    assert descriptor.max_tokens_default is None


@pytest.mark.asyncio
async def test_unknown_key_is_not_configured(tmp_path):
    resolver, _ = await _resolver(tmp_path, MINI)
    with pytest.raises(ModelNotConfiguredError):
        await resolver.resolve("premium:nope")


@pytest.mark.asyncio
async def test_provider_alias_is_accepted(tmp_path):
    resolver, _ = await _resolver(tmp_path, {**MINI, "model_key": "basic:flash", "provider": "Gemini"})
    assert (await resolver.resolve("basic:flash")).provider is Provider.GOOGLE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "override",
    [
        {"per_model_cap": None},
        {"per_model_cap": 0},
        {"provider_model": ""},
        {"provider": ""},
        {"provider": "cohere"},
    ],
)
async def test_incomplete_definitions_are_fatal(tmp_path, override):
    resolver, _ = await _resolver(tmp_path, {**MINI, **override})
    with pytest.raises(ConfigurationError):
        await resolver.resolve("basic:gpt-4o-mini")


@pytest.mark.asyncio
async def test_no_enabled_models_is_a_configuration_error(tmp_path):
    resolver, _ = await _resolver(tmp_path, {**MINI, "enabled": False})
    with pytest.raises(ConfigurationError):
        await resolver.list_models()


@pytest.mark.asyncio
async def test_definitions_are_cached_until_reseeded(tmp_path):
    resolver, db = await _resolver(tmp_path, MINI)
    assert [m.model_key for m in await resolver.list_models()] == ["basic:gpt-4o-mini"]

    await db.upsert_model(CLAUDE)
    assert len(await resolver.list_models()) == 1

    await resolver.seed([])
    assert len(await resolver.list_models()) == 1

    await resolver.seed([MINI])
    assert {m.model_key for m in await resolver.list_models()} == {"basic:gpt-4o-mini", "premium:claude"}


@pytest.mark.asyncio
async def test_cache_expiry_picks_up_new_rows(tmp_path):
    now = [0.0]
    db = Database(str(tmp_path / "models.db"))
    await db.init()
    resolver = ModelResolver(db, cache=TTLCache(30.0, max_entries=1, clock=lambda: now[0]))
    await resolver.seed([MINI])
    assert len(await resolver.list_models()) == 1

    await db.upsert_model(CLAUDE)
    now[0] = 31.0
    assert len(await resolver.list_models()) == 2
