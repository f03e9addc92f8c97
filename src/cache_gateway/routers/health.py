"""
Cache Gateway - Health Check Router

Liveness of the gateway process and a Prometheus metrics export. The gateway
stays live when the cache is down; cache state is reported, not enforced.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from ..dependencies import get_cache_store
from ...shared.caching import CacheStore
from ...shared.config import get_settings
from ...shared.metrics_collector import get_metrics_collector
from ...shared.schemas import GatewayHealthResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", response_model=GatewayHealthResponse)
async def health_check(store: CacheStore = Depends(get_cache_store)) -> GatewayHealthResponse:
    """Liveness probe."""
    return GatewayHealthResponse(
        status="ok",
        version=get_settings().app_version,
        cache="available" if store.is_available() else "unavailable",
    )


@router.get("/metrics", response_class=PlainTextResponse)
async def metrics() -> str:
    """Metrics in Prometheus text format."""
    return get_metrics_collector().export_prometheus()
