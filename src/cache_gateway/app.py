"""
Cache Gateway - FastAPI Application

This module builds the FastAPI application: it owns the cache store for the
process lifetime, wires the caching middlewares around the resource routers,
and exposes the administrative cache endpoints.
"""
import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from ..shared.caching import CacheAdmin, CacheInvalidator, CacheStore, CacheWarmer, WarmingJob
from ..shared.config import Settings, get_config_summary, get_settings
from ..shared.errors import CacheLayerError
from ..shared.logging_config import initialize_logging
from .middleware import (
    AuthenticationMiddleware,
    InvalidationMiddleware,
    ReadThroughMiddleware,
    RequestContextMiddleware,
    CACHE_HEADER,
    CACHE_KEY_HEADER,
    REQUEST_ID_HEADER,
)
from .route_rules import InvalidationConfig, ReadThroughConfig
from .routers import admin, health

logger = logging.getLogger(__name__)

HTTP_ERROR_TYPES = {
    401: "authentication_required",
    403: "permission_denied",
    404: "not_found",
    405: "method_not_allowed",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Connects the cache store on startup, runs warming jobs, and closes the
    store on shutdown. A cache that cannot connect does not stop startup.
    """
    store: CacheStore = app.state.cache_store
    logger.info("Starting cache gateway...", extra={"config": get_config_summary(app.state.settings)})

    await store.connect()
    if app.state.cache_warmer.jobs:
        results = await app.state.cache_warmer.warm_all()
        logger.info(
            "Cache warming finished",
            extra={"succeeded": sum(results.values()), "total": len(results)}
        )

    logger.info("Cache gateway startup completed")

    try:
        yield
    finally:
        logger.info("Shutting down cache gateway...")
        await store.close()
        logger.info("Cache gateway shutdown completed")


def _error_response(request: Request, status_code: int, error_type: str, message: str, details=None) -> JSONResponse:
    error = {
        "type": error_type,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Render every error as ``{"error": {"type", "message", "request_id"}}``."""

    @app.exception_handler(CacheLayerError)
    async def cache_layer_error_handler(request: Request, exc: CacheLayerError):
        payload = exc.to_response(getattr(request.state, "request_id", None))
        return JSONResponse(status_code=exc.status_code, content=payload.model_dump(exclude_none=True))

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(
            request, 400, "validation_error", "Request validation failed",
            details={"errors": jsonable_encoder(exc.errors())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        response = _error_response(
            request, exc.status_code, HTTP_ERROR_TYPES.get(exc.status_code, "http_error"), str(exc.detail)
        )
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return _error_response(
            request, 500, "internal_server_error",
            str(exc) if settings.debug else "An internal server error occurred",
        )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[CacheStore] = None,
    read_routes: Iterable[ReadThroughConfig] = (),
    invalidation_routes: Iterable[InvalidationConfig] = (),
    routers: Iterable[APIRouter] = (),
    warming_jobs: Iterable[WarmingJob] = (),
    configure_logging: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Application settings; defaults to the environment-derived settings
        store: Cache store to use; one is built from settings when omitted
        read_routes: Read routes served through the cache
        invalidation_routes: Mutating routes that invalidate cached reads
        routers: Resource routers mounted behind the caching middlewares
        warming_jobs: Payloads preloaded on startup
        configure_logging: Apply the monitoring settings to the logging system

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()
    if configure_logging:
        initialize_logging(settings.monitoring)

    store = store or CacheStore(settings.cache, settings.redis)
    invalidator = CacheInvalidator(store)
    warmer = CacheWarmer(store)
    for job in warming_jobs:
        warmer.register_job(job)

    app = FastAPI(
        title=settings.api.api_title,
        description=settings.api.api_description,
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan
    )

    app.state.settings = settings
    app.state.cache_store = store
    app.state.cache_invalidator = invalidator
    app.state.cache_warmer = warmer
    app.state.cache_admin = CacheAdmin(store, invalidator)

    # Order matters: last added is executed first
    app.add_middleware(InvalidationMiddleware, store=store, routes=list(invalidation_routes), invalidator=invalidator)
    app.add_middleware(ReadThroughMiddleware, store=store, routes=list(read_routes))
    app.add_middleware(AuthenticationMiddleware, security=settings.security)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=settings.api.cors_methods,
        allow_headers=["*"],
        expose_headers=[CACHE_HEADER, CACHE_KEY_HEADER, REQUEST_ID_HEADER],
        max_age=3600
    )

    register_exception_handlers(app, settings)

    app.include_router(health.router, tags=["Health"])
    app.include_router(admin.router, prefix="/admin/cache", tags=["Admin - Cache"])
    for router in routers:
        app.include_router(router)

    return app


# Create the application instance
app = create_app()


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    reload: bool = False,
    workers: int = 1
):
    """
    Run the FastAPI server with uvicorn.

    Args:
        host: Host to bind to
        port: Port to bind to
        reload: Enable auto-reload for development
        workers: Number of worker processes
    """
    settings = get_settings()
    initialize_logging(settings.monitoring)

    uvicorn.run(
        "src.cache_gateway.app:app",
        host=host or settings.api.api_host,
        port=port or settings.api.api_port,
        reload=reload,
        workers=workers if not reload else 1,
        log_config=None,
        access_log=settings.debug
    )


if __name__ == "__main__":
    settings = get_settings()
    run_server(reload=settings.debug)
