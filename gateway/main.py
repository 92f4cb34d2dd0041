import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from .augment import QueryRefiner, SearchAugmenter
from .cache import TTLCache
from .config import AppSettings, load_settings
from .credentials import CredentialSource
from .db import Database
from .errors import GatewayError, InputValidationError
from .models import ModelResolver
from .orchestrator import ChatOrchestrator
from .providers import ProviderRegistry
from .schemas import GenerationRequest, StreamFragment
from .search import GoogleSearchClient


logger = logging.getLogger("uvicorn.error")

GENERIC_ERROR = "Something went wrong while generating a response."
_SAFE_ERROR_RE = re.compile(r"quota|limit|unauthorized|forbidden|too large", re.IGNORECASE)

router = APIRouter()


def sanitize_error(message: Optional[str]) -> str:
    """Only let through errors a caller can act on; hide upstream internals."""
    text = (message or "").strip()
    if text and _SAFE_ERROR_RE.search(text):
        return text
    return GENERIC_ERROR


def sse_format(event: Any) -> str:
    if isinstance(event, str):
        return f"data: {event}\n\n"
    return f"data: {json.dumps(event)}\n\n"


def fragment_event(fragment: StreamFragment) -> Dict[str, Any]:
    return {"choices": [{"delta": {"content": fragment.text}}]}


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def get_resolver(request: Request) -> ModelResolver:
    return request.app.state.resolver


@router.get("/chat/ping")
async def ping():
    return {"ok": True}


@router.post("/chat")
async def chat(
    body: GenerationRequest,
    x_user_id: Optional[str] = Header(default=None),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    prepared = None
    failure: Optional[GatewayError] = None
    try:
        prepared = await orchestrator.prepare(body)
    except InputValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    except GatewayError as exc:
        logger.warning("Chat request for %s rejected (user=%s): %s", body.model, x_user_id or "-", exc.message)
        failure = exc

    async def event_generator() -> AsyncIterator[str]:
        if failure is not None:
            yield sse_format({"error": sanitize_error(failure.message)})
            yield sse_format("[DONE]")
            return
        fragments = orchestrator.stream_prepared(prepared)
        try:
            async for fragment in fragments:
                if fragment.kind == "text":
                    yield sse_format(fragment_event(fragment))
            yield sse_format("[DONE]")
        except GatewayError as exc:
            logger.warning("Chat stream for %s failed (user=%s): %s", body.model, x_user_id or "-", exc.message)
            yield sse_format({"error": sanitize_error(exc.message)})
            yield sse_format("[DONE]")
        finally:
            await fragments.aclose()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@router.get("/models")
async def list_models(resolver: ModelResolver = Depends(get_resolver)):
    try:
        models = await resolver.list_models()
    except GatewayError as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return {
        "models": [
            {
                "model_key": model.model_key,
                "provider": model.provider.value,
                "display_name": model.display_name or model.model_key,
                "is_premium": model.is_premium,
            }
            for model in models
        ]
    }


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    credentials: Optional[CredentialSource] = None,
    providers: Optional[ProviderRegistry] = None,
    search_client: Optional[GoogleSearchClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        if app.state.settings.models:
            seeded = await app.state.resolver.seed(m.model_dump() for m in app.state.settings.models)
            logger.info("Seeded %s model definitions", seeded)
        try:
            yield
        finally:
            await app.state.providers.close()
            await app.state.search_client.close()

    app = FastAPI(title="Chat Gateway", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.credentials = credentials or CredentialSource()
    app.state.providers = providers or ProviderRegistry(
        app.state.credentials,
        timeout=settings.request_timeout_s,
        max_image_chars=settings.max_image_data_chars,
    )
    app.state.search_client = search_client or GoogleSearchClient(
        app.state.credentials,
        cache=TTLCache(settings.search_cache_ttl_s, max_entries=settings.search_cache_max_entries),
        timeout=settings.search_timeout_s,
        page_timeout=settings.page_fetch_timeout_s,
        page_fetch_count=settings.search_page_fetch_count,
    )
    app.state.resolver = ModelResolver(app.state.db, cache_seconds=settings.model_config_cache_s)
    refiner = None
    if settings.query_refine_model:
        refiner = QueryRefiner(
            app.state.resolver,
            app.state.providers,
            settings.query_refine_model,
            timeout=settings.query_refine_timeout_s,
        )
    app.state.augmenter = SearchAugmenter(
        app.state.search_client,
        refiner=refiner,
        enabled=settings.search_enabled,
        result_count=settings.search_result_count,
        max_page_chars=settings.search_max_page_chars,
    )
    app.state.orchestrator = ChatOrchestrator(
        app.state.resolver,
        app.state.providers,
        augmenter=app.state.augmenter,
        default_fallback_model=settings.default_fallback_model,
        default_temperature=settings.default_temperature,
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    app.include_router(router)
    return app


def _build_default_app() -> FastAPI:
    settings = load_settings()
    logger.setLevel(settings.log_level.upper())
    return create_app(settings)


app = _build_default_app()


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("gateway.main:app", host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass
