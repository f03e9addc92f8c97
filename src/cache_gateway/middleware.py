"""
Cache Gateway - Middleware Components

This module implements the middleware stack of the gateway:
- Request context (request IDs, correlation, access logging, request metrics)
- Caller identity resolution from API keys
- Read-through caching for configured read routes
- Pattern invalidation for configured mutating routes
"""
import time
import uuid
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..shared.caching import CacheInvalidator, CacheStore, KeyBuilder, decode_payload
from ..shared.config import SecuritySettings, get_settings
from ..shared.logging_config import CorrelationContext, set_user_id
from ..shared.metrics_collector import get_metrics_collector
from .route_rules import SAFE_METHODS, InvalidationConfig, ReadThroughConfig, RouteTable

logger = logging.getLogger(__name__)

CACHE_HEADER = "X-Cache"
CACHE_KEY_HEADER = "X-Cache-Key"
REQUEST_ID_HEADER = "X-Request-ID"

USER_SCOPE_PARAM = "user_id"
ANONYMOUS_USER = "anonymous"

_MISS = object()


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def get_request_user_id(request: Request) -> Optional[str]:
    """Identity resolved for this request by the authentication middleware."""
    user = getattr(request.state, "user", None)
    if not user:
        return None
    value = user.get("user_id")
    return str(value) if value is not None else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Request context middleware.
    Assigns a request ID, binds correlation context for log records,
    logs request start and completion, and records request metrics.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.metrics = get_metrics_collector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        with CorrelationContext(request_id_value=request_id):
            logger.debug(
                "Request started",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "client_ip": self._get_client_ip(request),
                }
            )

            try:
                response = await call_next(request)
            except Exception as e:
                duration = time.perf_counter() - start_time
                logger.error(
                    "Request failed",
                    extra={
                        "method": request.method,
                        "path": request.url.path,
                        "duration_ms": round(duration * 1000, 2),
                        "error": str(e),
                    },
                    exc_info=True
                )
                raise

            duration = time.perf_counter() - start_time
            logger.info(
                "Request completed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration * 1000, 2),
                    "cache": response.headers.get(CACHE_HEADER),
                }
            )

        self.metrics.record_request(request.method, request.url.path, response.status_code, duration)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    def _get_client_ip(self, request: Request) -> str:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        return request.client.host if request.client else "unknown"


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """
    Caller identity resolution.
    Maps an API key (``X-API-Key`` or ``Authorization: Bearer``) to the
    identity configured for it and stores it on ``request.state.user``.
    Requests without a key continue anonymously; route dependencies decide
    whether an identity is required. An unknown key is rejected with 401.
    """

    def __init__(self, app: ASGIApp, security: Optional[SecuritySettings] = None):
        super().__init__(app)
        self.security = security or get_settings().security

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        api_key = request.headers.get("X-API-Key") or request.headers.get("Authorization")

        if api_key and api_key.startswith("Bearer "):
            api_key = api_key[7:]

        if not api_key or request.method == "OPTIONS":
            return await call_next(request)

        user_info = self._resolve_api_key(api_key)
        if user_info is None:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={
                    "error": {
                        "type": "invalid_api_key",
                        "message": "Invalid API key",
                        "request_id": getattr(request.state, "request_id", None)
                    }
                }
            )

        request.state.user = user_info
        set_user_id(user_info["user_id"])
        return await call_next(request)

    def _resolve_api_key(self, api_key: str) -> Optional[Dict[str, Any]]:
        identity = self.security.api_keys.get(api_key)
        if identity is None:
            return None
        return {
            "user_id": str(identity.get("user_id", "unknown")),
            "roles": list(identity.get("roles", [])),
        }


class ReadThroughMiddleware(BaseHTTPMiddleware):
    """
    Read-through caching for configured GET routes.

    A hit is answered from the cache without invoking the route handler. A
    miss invokes the handler and, for a 2xx JSON response, writes the body
    back after the response has been sent. Responses carry ``X-Cache: HIT``
    or ``X-Cache: MISS`` (``SKIP`` when the route's condition declines).
    Any cache failure degrades to a miss.
    """

    def __init__(self, app: ASGIApp, store: CacheStore, routes: Iterable[ReadThroughConfig] = ()):
        super().__init__(app)
        self.store = store
        self.routes: RouteTable[ReadThroughConfig] = RouteTable(routes)
        self.key_builder = KeyBuilder(store.namespace)
        self.metrics = get_metrics_collector()

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method not in SAFE_METHODS:
            return await call_next(request)

        matched = self.routes.match(request.method, request.url.path)
        if matched is None:
            return await call_next(request)

        config, path_params = matched

        if config.condition is not None and not config.condition(request):
            self.metrics.record_cache_lookup(config.resource, "skip")
            response = await call_next(request)
            response.headers[CACHE_HEADER] = "SKIP"
            return response

        cache_key = self.key_builder.build(config.resource, self.build_key_params(request, config, path_params))

        cached = await self._lookup(cache_key)
        if cached is not _MISS:
            self.metrics.record_cache_lookup(config.resource, "hit")
            logger.debug("Cache hit", extra={"cache_key": cache_key})
            return Response(
                content=cached,
                media_type="application/json",
                headers={CACHE_HEADER: "HIT", CACHE_KEY_HEADER: cache_key},
            )

        self.metrics.record_cache_lookup(config.resource, "miss")
        response = await call_next(request)

        if not is_success(response.status_code):
            response.headers[CACHE_HEADER] = "MISS"
            return response

        body = b"".join([chunk async for chunk in response.body_iterator])
        ttl = config.ttl_seconds or self.store.ttl_for(config.resource)

        fresh = Response(
            content=body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type,
            background=self._write_back_task(cache_key, body, ttl),
        )
        fresh.headers[CACHE_HEADER] = "MISS"
        fresh.headers[CACHE_KEY_HEADER] = cache_key
        return fresh

    def build_key_params(
        self,
        request: Request,
        config: ReadThroughConfig,
        path_params: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Collect the request values that distinguish one cached variant from another."""
        params: Dict[str, Any] = {}

        for name in request.query_params.keys():
            values = request.query_params.getlist(name)
            params[name] = values[0] if len(values) == 1 else ",".join(values)

        params.update(path_params)

        for header in config.vary_by:
            value = request.headers.get(header)
            if value is not None:
                params[f"header_{header}"] = value

        # Set last so a query parameter cannot claim another caller's entries
        if config.user_scoped:
            params[USER_SCOPE_PARAM] = get_request_user_id(request) or ANONYMOUS_USER

        return params

    async def _lookup(self, cache_key: str) -> Any:
        try:
            data = await self.store.get(cache_key)
            if data is None:
                return _MISS
            decode_payload(data)
            return data
        except Exception as e:
            logger.warning(
                "Cache read failed, serving from source",
                extra={"cache_key": cache_key, "error": str(e)}
            )
            return _MISS

    def _write_back_task(self, cache_key: str, body: bytes, ttl: int) -> Optional[BackgroundTask]:
        try:
            decode_payload(body)
        except ValueError as e:
            logger.warning(
                "Response body is not JSON, not caching",
                extra={"cache_key": cache_key, "error": str(e)}
            )
            return None
        return BackgroundTask(self._write_back, cache_key, body, ttl)

    async def _write_back(self, cache_key: str, body: bytes, ttl: int) -> None:
        try:
            stored = await self.store.set(cache_key, body, ttl)
        except Exception as e:
            logger.error("Cache write-back failed", extra={"cache_key": cache_key, "error": str(e)}, exc_info=True)
            return

        if stored:
            logger.debug("Response cached", extra={"cache_key": cache_key, "ttl": ttl})
        else:
            logger.warning("Cache write-back failed", extra={"cache_key": cache_key})


class InvalidationMiddleware(BaseHTTPMiddleware):
    """
    Pattern invalidation for configured mutating routes.

    After the handler returns a 2xx response, every configured pattern is
    deleted and the deletions complete before the response is returned, so
    a client that observed the write never reads the stale entry afterwards.
    """

    def __init__(
        self,
        app: ASGIApp,
        store: CacheStore,
        routes: Iterable[InvalidationConfig] = (),
        invalidator: Optional[CacheInvalidator] = None,
    ):
        super().__init__(app)
        self.routes: RouteTable[InvalidationConfig] = RouteTable(routes)
        self.invalidator = invalidator or CacheInvalidator(store)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method == "GET":
            return await call_next(request)

        matched = self.routes.match(request.method, request.url.path)
        if matched is None:
            return await call_next(request)

        config, path_params = matched
        response = await call_next(request)

        if is_success(response.status_code):
            try:
                await self.invalidator.invalidate(config.patterns, path_params, source="middleware")
            except Exception as e:
                logger.error(
                    "Cache invalidation failed",
                    extra={"patterns": list(config.patterns), "error": str(e)},
                    exc_info=True
                )

        return response
