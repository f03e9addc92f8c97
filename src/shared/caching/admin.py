"""
Administrative cache operations: statistics, health, flush and targeted
invalidation, plus key inspection for debugging.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from ..errors import CacheValidationError
from ..logging_config import get_logger
from .cache_store import CacheStore, TTLState, decode_payload
from .invalidation import CacheInvalidator

MAX_KEY_LIST_LIMIT = 1000


def describe_ttl(ttl: Union[int, TTLState]) -> Union[int, str]:
    """Render a TTL for humans: seconds, 'no expiry', 'expired' or 'unknown'."""
    if ttl == TTLState.NO_EXPIRY:
        return "no expiry"
    if ttl == TTLState.MISSING:
        return "expired"
    if ttl == TTLState.UNKNOWN:
        return "unknown"
    return ttl


def validate_patterns(patterns: Optional[Sequence[Any]]) -> List[str]:
    """Check an invalidation request's pattern list.

    Raises:
        CacheValidationError: the list is missing, empty, or holds a blank or non-string entry
    """
    if patterns is None or isinstance(patterns, (str, bytes)) or len(patterns) == 0:
        raise CacheValidationError(
            "patterns must be a non-empty array of strings",
            {"field": "patterns"},
        )

    cleaned = []
    for index, pattern in enumerate(patterns):
        if not isinstance(pattern, str) or not pattern.strip():
            raise CacheValidationError(
                "patterns must contain only non-empty strings",
                {"field": "patterns", "index": index},
            )
        cleaned.append(pattern.strip())
    return cleaned


class CacheAdmin:
    """Operations behind the administrative cache endpoints."""

    def __init__(self, store: CacheStore, invalidator: Optional[CacheInvalidator] = None):
        self.store = store
        self.invalidator = invalidator or CacheInvalidator(store)
        self.logger = get_logger(__name__, 'cache_admin')

    async def get_stats(self) -> Dict[str, Any]:
        """Store statistics. Never raises; reports ``available: False`` on outage."""
        stats = await self.store.stats()
        stats['client']['invalidation'] = self.invalidator.get_stats()
        return stats

    async def get_health(self) -> Dict[str, Any]:
        latency_ms = await self.store.ping()
        healthy = latency_ms is not None
        return {
            'status': 'healthy' if healthy else 'unhealthy',
            'available': healthy,
            'latency_ms': latency_ms,
        }

    async def flush(self, requested_by: Optional[str] = None) -> int:
        """Delete every key in the namespace. Keys outside it are untouched."""
        deleted = await self.store.flush()
        self.logger.warning(
            "Cache flushed by administrator",
            operation="flush",
            requested_by=requested_by,
            deleted_count=deleted,
        )
        return deleted

    async def invalidate(self, patterns: Optional[Sequence[Any]], requested_by: Optional[str] = None) -> int:
        """Delete keys matching each pattern and return the total removed."""
        cleaned = validate_patterns(patterns)
        deleted = await self.invalidator.invalidate(cleaned, source="admin")
        self.logger.info(
            "Cache invalidated by administrator",
            operation="invalidate",
            requested_by=requested_by,
            patterns=cleaned,
            deleted_count=deleted,
        )
        return deleted

    async def list_keys(self, pattern: str = "*", limit: int = 100) -> Dict[str, Any]:
        """List keys in the namespace matching ``pattern``, at most ``limit`` of them.

        Keys are returned relative to the namespace, the form ``inspect_key``
        and ``delete_key`` accept.
        """
        if limit < 1 or limit > MAX_KEY_LIST_LIMIT:
            raise CacheValidationError(
                f"limit must be between 1 and {MAX_KEY_LIST_LIMIT}",
                {"field": "limit"},
            )
        keys, truncated = await self.store.scan_keys(pattern or "*", limit)
        keys = [self.store.key_builder.strip_namespace(key) for key in keys]
        return {
            'pattern': pattern,
            'keys': keys,
            'count': len(keys),
            'truncated': truncated,
        }

    async def inspect_key(self, key: str) -> Optional[Dict[str, Any]]:
        """Value and remaining TTL of the namespace-relative ``key``, or ``None`` when absent.

        Reads do not touch the store's hit and miss counters.
        """
        full_key = self.store.key_builder.qualify(key)
        data = await self.store.peek(full_key)
        if data is None:
            return None

        try:
            value = decode_payload(data)
        except ValueError:
            value = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data

        ttl = await self.store.ttl(full_key)
        return {'key': key, 'value': value, 'ttl': describe_ttl(ttl)}

    async def delete_key(self, key: str, requested_by: Optional[str] = None) -> bool:
        """Delete the namespace-relative ``key``."""
        deleted = await self.invalidator.invalidate_key(self.store.key_builder.qualify(key))
        self.logger.info(
            f"Cache key deleted by administrator: {key}",
            operation="delete_key",
            requested_by=requested_by,
            deleted=deleted,
        )
        return deleted
