from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from gateway.config import AppSettings, ModelDefinitionConfig
from gateway.credentials import CredentialSource
from gateway.main import create_app
from tests.fakes import FakeProviderRegistry, FakeSearchClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=3001,
        default_fallback_model="basic:gpt-4o-mini",
        query_refine_model=None,
        search_enabled=False,
        models=[
            ModelDefinitionConfig(
                model_key="basic:gpt-4o-mini",
                provider="openai",
                provider_model="gpt-4o-mini",
                per_model_cap=100,
                display_name="GPT-4o Mini",
            ),
            ModelDefinitionConfig(
                model_key="premium:claude",
                provider="anthropic",
                provider_model="claude-test",
                is_premium=True,
                per_model_cap=10,
                fallback_model="basic:gpt-4o-mini",
            ),
        ],
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        providers: FakeProviderRegistry | None = None,
        search_client: FakeSearchClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        registry = providers or FakeProviderRegistry()
        search = search_client or FakeSearchClient()
        app = create_app(
            settings,
            credentials=CredentialSource(env={}),
            providers=registry,
            search_client=search,
        )
        return app, registry, search

    return _factory


@pytest.fixture
async def client(app_factory):
    app, registry, search = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_providers = registry  # type: ignore[attr-defined]
            http_client.fake_search = search  # type: ignore[attr-defined]
            yield http_client
