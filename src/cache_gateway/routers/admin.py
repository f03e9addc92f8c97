"""
Cache Gateway - Cache Administration Router

Administrative endpoints for the cache: statistics, health, namespace
flush, targeted invalidation, and key inspection. Every endpoint requires
the admin role.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query

from ..dependencies import get_cache_admin, require_role
from ...shared.caching import CacheAdmin
from ...shared.errors import CacheKeyNotFoundError
from ...shared.schemas import (
    CacheHealthResponse,
    CacheStatsResponse,
    FlushResponse,
    InvalidateRequest,
    InvalidateResponse,
    KeyDeleteResponse,
    KeyInspectResponse,
    KeyListResponse,
)

logger = logging.getLogger(__name__)

require_admin = require_role()

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/stats", response_model=CacheStatsResponse)
async def cache_stats(admin: CacheAdmin = Depends(get_cache_admin)) -> CacheStatsResponse:
    """
    Cache statistics.

    Reports ``available: false`` instead of failing when the store is down.
    """
    return CacheStatsResponse(**await admin.get_stats())


@router.get("/health", response_model=CacheHealthResponse)
async def cache_health(admin: CacheAdmin = Depends(get_cache_admin)) -> CacheHealthResponse:
    """
    Cache health probe.

    Always answers 200; an unreachable store is reported as ``unhealthy``.
    """
    return CacheHealthResponse(**await admin.get_health())


@router.delete("/flush", response_model=FlushResponse)
async def flush_cache(
    admin: CacheAdmin = Depends(get_cache_admin),
    user: Dict[str, Any] = Depends(require_admin),
) -> FlushResponse:
    """Delete every key in the cache namespace."""
    deleted = await admin.flush(requested_by=user.get("user_id"))
    return FlushResponse(deleted_count=deleted)


@router.post("/invalidate", response_model=InvalidateResponse)
async def invalidate_cache(
    body: Optional[InvalidateRequest] = Body(None),
    admin: CacheAdmin = Depends(get_cache_admin),
    user: Dict[str, Any] = Depends(require_admin),
) -> InvalidateResponse:
    """
    Invalidate keys matching the given patterns.

    Patterns are relative to the cache namespace, e.g. ``products:*``.
    A missing or empty pattern list is rejected with 400.
    """
    patterns = body.patterns if body is not None else None
    deleted = await admin.invalidate(patterns, requested_by=user.get("user_id"))
    return InvalidateResponse(patterns=[p.strip() for p in patterns], deleted_count=deleted)


@router.get("/keys", response_model=KeyListResponse)
async def list_keys(
    pattern: str = Query("*", description="Pattern relative to the cache namespace"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of keys to return"),
    admin: CacheAdmin = Depends(get_cache_admin),
) -> KeyListResponse:
    """List cache keys matching a pattern."""
    return KeyListResponse(**await admin.list_keys(pattern, limit))


@router.get("/key/{key:path}", response_model=KeyInspectResponse)
async def inspect_key(key: str, admin: CacheAdmin = Depends(get_cache_admin)) -> KeyInspectResponse:
    """Value and remaining TTL of a single key, given relative to the cache namespace."""
    entry = await admin.inspect_key(key)
    if entry is None:
        raise CacheKeyNotFoundError(key)
    return KeyInspectResponse(**entry)


@router.delete("/key/{key:path}", response_model=KeyDeleteResponse)
async def delete_key(
    key: str,
    admin: CacheAdmin = Depends(get_cache_admin),
    user: Dict[str, Any] = Depends(require_admin),
) -> KeyDeleteResponse:
    """Delete a single key, given relative to the cache namespace."""
    deleted = await admin.delete_key(key, requested_by=user.get("user_id"))
    return KeyDeleteResponse(key=key, deleted=deleted)
