"""HTTP API: rule management, activity history and event ingestion."""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from pydantic import ValidationError

from escalator.api.routes import activity, escalations, events, rules
from escalator.core.config import get_settings
from escalator.core.errors import ConfigurationError, EventNormalizationError
from escalator.core.logging import get_logger, setup_logging
from escalator.engine.pipeline import create_engine
from escalator.items.http import HttpItemStore
from escalator.notification.queue import QueueNotifier
from escalator.storage.redis_client import close_redis_pool, get_redis, init_redis_pool

logger = get_logger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the Redis pool and wire the engine used by the events endpoint."""
    setup_logging()
    await init_redis_pool()

    redis = get_redis()
    items = HttpItemStore()
    notifier = QueueNotifier(redis)
    app.state.engine = create_engine(items, notifier, redis)
    logger.info("API started", version=get_settings().app_version)
    try:
        yield
    finally:
        await items.close()
        await notifier.close()
        await close_redis_pool()
        logger.info("API stopped")


def error_response(status_code: int, message: str, data: Any = None) -> JSONResponse:
    """Error envelope, shaped like :class:`APIResponse` with the status as code."""
    return JSONResponse(
        status_code=status_code,
        content={"code": status_code, "message": message, "data": data},
    )


async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
    if isinstance(exc.detail, str):
        return error_response(exc.status_code, exc.detail)
    return error_response(exc.status_code, "HTTP error", exc.detail)


async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(422, "Validation error", jsonable_encoder(exc.errors()))


# Raised when a handler rebuilds a rule from a partial body
async def _model_invalid(request: Request, exc: ValidationError) -> JSONResponse:
    errors = exc.errors(include_url=False, include_context=False, include_input=False)
    return error_response(422, "Validation error", errors)


async def _rejected(request: Request, exc: Exception) -> JSONResponse:
    return error_response(422, str(exc))


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", exc_info=exc, path=request.url.path, method=request.method)
    return error_response(500, "Internal server error", str(exc) if get_settings().debug else None)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Workspace automation and escalation rule engine",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for module in (rules, escalations, activity, events):
        app.include_router(module.router, prefix=API_PREFIX)
    app.mount("/metrics", make_asgi_app())

    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _request_invalid)
    app.add_exception_handler(ValidationError, _model_invalid)
    app.add_exception_handler(ConfigurationError, _rejected)
    app.add_exception_handler(EventNormalizationError, _rejected)
    app.add_exception_handler(Exception, _unhandled)

    @app.get("/health")
    async def health_check() -> dict:
        return {"status": "ok", "version": settings.app_version}

    return app


app = create_app()
