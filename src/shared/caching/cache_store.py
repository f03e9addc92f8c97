"""
Redis-backed cache store for the cache gateway.

Every operation fails open: when Redis is unreachable, slow, or returns an
error, the call logs the failure, counts it, and resolves to a neutral result
(``None``, ``False`` or ``0``) instead of raising. Each Redis command is
bounded by ``cache_operation_timeout`` so a degraded store cannot stall the
request that touched it.
"""

import asyncio
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar, Union

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..config import CacheSettings, RedisSettings, get_settings
from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .key_builder import KeyBuilder

T = TypeVar('T')

# Errors that mean the connection itself is gone, as opposed to a bad command
CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError, asyncio.TimeoutError, OSError)

_FAILED = object()


class TTLState(str, Enum):
    """Non-numeric outcomes of a TTL lookup."""
    NO_EXPIRY = "no_expiry"
    MISSING = "missing"
    UNKNOWN = "unknown"


def encode_payload(value: Any) -> bytes:
    """Serialize a JSON-compatible value for storage.

    Raises:
        TypeError: value contains something JSON cannot represent
        ValueError: value contains NaN or infinity
    """
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


def decode_payload(data: Union[bytes, str]) -> Any:
    """Deserialize a stored payload.

    Raises:
        ValueError: data is not valid UTF-8 JSON
    """
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    return json.loads(data)


def compute_hit_ratio(hits: Optional[int], misses: Optional[int]) -> Optional[float]:
    """hits / (hits + misses), or ``None`` when either counter is missing or both are zero."""
    if hits is None or misses is None:
        return None
    total = hits + misses
    if total <= 0:
        return None
    return hits / total


def format_hit_rate(ratio: Optional[float]) -> str:
    return "unknown" if ratio is None else f"{ratio * 100:.2f}%"


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


class CacheStore:
    """Fail-open key-value store over a shared Redis connection pool."""

    def __init__(
        self,
        cache_settings: Optional[CacheSettings] = None,
        redis_settings: Optional[RedisSettings] = None,
        client: Optional[Redis] = None,
    ):
        settings = get_settings()
        self.config = cache_settings or settings.cache
        self.redis_config = redis_settings or settings.redis
        self.redis_client: Optional[Redis] = client
        self.key_builder = KeyBuilder(self.config.cache_key_prefix)
        self.logger = get_logger(__name__, 'cache_store')
        self.metrics = get_metrics_collector()
        self._latency = self.metrics.get_histogram(
            'cache_operation_duration_seconds', 'Latency of Redis commands issued by the cache store'
        )
        self._pending_gauge = self.metrics.get_gauge(
            'cache_pending_writes', 'Background cache writes not yet finished'
        )
        self._connected = False
        self._pending_writes: Set[asyncio.Task] = set()

        self.counters = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'errors': 0,
        }

    @property
    def namespace(self) -> str:
        return self.key_builder.namespace

    @property
    def enabled(self) -> bool:
        return self.config.cache_enabled

    # Lifecycle

    def _create_client(self) -> Redis:
        cfg = self.redis_config
        retry = Retry(
            ExponentialBackoff(cap=cfg.redis_backoff_cap, base=cfg.redis_backoff_base),
            cfg.redis_retry_attempts,
        )
        return redis.from_url(
            cfg.get_redis_url(),
            max_connections=cfg.redis_max_connections,
            socket_timeout=cfg.redis_socket_timeout,
            socket_connect_timeout=cfg.redis_connect_timeout,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            decode_responses=False,
        )

    async def connect(self) -> bool:
        """Create the client and verify connectivity.

        A failed connection is logged and leaves the store in fail-open
        mode; the client is kept so a later successful command restores it.
        """
        if not self.enabled:
            self.logger.info("Caching disabled, cache store will not connect", operation="connect")
            return False

        if self.redis_client is None:
            self.redis_client = self._create_client()

        try:
            await asyncio.wait_for(self.redis_client.ping(), timeout=self.redis_config.redis_connect_timeout)
        except Exception as e:
            self._connected = False
            self.counters['errors'] += 1
            self.logger.error(
                f"Failed to connect to Redis, continuing without cache: {e}",
                operation="connect",
                error_type=type(e).__name__,
            )
            return False

        self._connected = True
        self.logger.info("Connected to Redis", operation="connect", namespace=self.namespace)
        return True

    async def close(self) -> None:
        """Wait for pending write-behinds, then release the connection pool."""
        await self.drain()
        if self.redis_client is not None:
            try:
                await self.redis_client.aclose()
            except Exception as e:
                self.logger.warning(f"Error while closing Redis connection: {e}", operation="close")
            self.redis_client = None
        self._connected = False
        self.logger.info("Disconnected from Redis", operation="close")

    def is_available(self) -> bool:
        """Whether the last interaction with Redis succeeded."""
        return self.enabled and self.redis_client is not None and self._connected

    # Command execution

    async def _execute(self, operation: str, command: Callable[[Redis], Awaitable[T]], default: Any, **context) -> Any:
        if not self.enabled or self.redis_client is None:
            return default

        try:
            with self._latency.time():
                result = await asyncio.wait_for(command(self.redis_client), timeout=self.config.cache_operation_timeout)
        except CONNECTION_ERRORS as e:
            self._record_failure(operation, e, connection_lost=True, **context)
            return default
        except Exception as e:
            self._record_failure(operation, e, **context)
            return default

        if not self._connected:
            self._connected = True
            self.logger.info("Redis connection restored", operation=operation)
        return result

    def _record_failure(self, operation: str, error: BaseException, connection_lost: bool = False, **context):
        self.counters['errors'] += 1
        self.metrics.get_counter('cache_errors_total', 'Failed cache store operations').increment(operation=operation)

        if connection_lost and self._connected:
            self._connected = False
            self.logger.warning("Redis connection lost, serving without cache", operation=operation)

        self.logger.error(
            f"Redis {operation} failed: {error!r}",
            operation=operation,
            error_type=type(error).__name__,
            **context,
        )

    # Key-value operations

    async def get(self, key: str) -> Optional[bytes]:
        """Get the raw payload stored under ``key``, or ``None``."""
        data = await self._execute('get', lambda client: client.get(key), _FAILED, key=key)
        if data is _FAILED:
            return None
        if data is None:
            self.counters['misses'] += 1
            return None
        self.counters['hits'] += 1
        return data

    async def peek(self, key: str) -> Optional[bytes]:
        """Read ``key`` without counting a hit or miss."""
        return await self._execute('peek', lambda client: client.get(key), None, key=key)

    async def set(self, key: str, value: Union[bytes, str], ttl: Optional[int] = None) -> bool:
        """Store ``value`` under ``key`` with an expiry of ``ttl`` seconds."""
        ttl = ttl if ttl and ttl > 0 else self.config.cache_default_ttl
        stored = await self._execute(
            'set', lambda client: client.setex(key, ttl, value), False,
            key=key, ttl=ttl,
        )
        if stored:
            self.counters['sets'] += 1
            return True
        return False

    async def delete(self, key: str) -> int:
        """Delete a single key. Returns the number of keys removed."""
        removed = await self._execute('delete', lambda client: client.delete(key), 0, key=key)
        self.counters['deletes'] += removed
        return removed

    async def exists(self, key: str) -> bool:
        count = await self._execute('exists', lambda client: client.exists(key), 0, key=key)
        return count > 0

    async def ttl(self, key: str) -> Union[int, TTLState]:
        """Remaining lifetime of ``key`` in seconds, or a :class:`TTLState`."""
        remaining = await self._execute('ttl', lambda client: client.ttl(key), None, key=key)
        if remaining is None:
            return TTLState.UNKNOWN
        if remaining == -1:
            return TTLState.NO_EXPIRY
        if remaining < 0:
            return TTLState.MISSING
        return remaining

    async def ping(self) -> Optional[float]:
        """Round-trip latency of a PING in milliseconds, or ``None`` when unreachable."""
        start = time.perf_counter()
        ok = await self._execute('ping', lambda client: client.ping(), False)
        if not ok:
            return None
        return round((time.perf_counter() - start) * 1000, 2)

    # Pattern operations

    async def _scan(self, match: str, cursor: int) -> Optional[Tuple[int, List[bytes]]]:
        return await self._execute(
            'scan',
            lambda client: client.scan(cursor=cursor, match=match, count=self.config.cache_scan_count),
            None,
            pattern=match,
        )

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key in the namespace matching the glob ``pattern``.

        Walks the keyspace with SCAN until the cursor returns to zero and
        issues one bulk DEL per non-empty batch. If Redis fails midway the
        number of keys removed so far is returned.
        """
        full_pattern = self.key_builder.qualify(pattern)
        deleted = 0
        cursor = 0

        while True:
            batch = await self._scan(full_pattern, cursor)
            if batch is None:
                break
            cursor, keys = batch
            if keys:
                removed = await self._execute(
                    'delete_pattern', lambda client: client.delete(*keys), None,
                    pattern=full_pattern, batch_size=len(keys),
                )
                if removed is None:
                    break
                deleted += removed
            if int(cursor) == 0:
                break

        self.counters['deletes'] += deleted
        if deleted:
            self.logger.debug(f"Deleted {deleted} keys matching {full_pattern}", operation="delete_pattern")
        return deleted

    async def flush(self) -> int:
        """Delete every key in this store's namespace, and nothing else."""
        deleted = await self.delete_pattern("*")
        self.logger.warning(
            f"Cache namespace flushed, {deleted} keys removed",
            operation="flush",
            namespace=self.namespace,
            deleted_count=deleted,
        )
        return deleted

    async def scan_keys(self, pattern: str = "*", limit: int = 100) -> Tuple[List[str], bool]:
        """List up to ``limit`` keys in the namespace matching ``pattern``.

        Returns:
            Tuple of (keys, truncated)
        """
        full_pattern = self.key_builder.qualify(pattern)
        keys: List[str] = []
        truncated = False
        cursor = 0

        while True:
            batch = await self._scan(full_pattern, cursor)
            if batch is None:
                break
            cursor, found = batch
            for raw in found:
                if len(keys) >= limit:
                    truncated = True
                    break
                keys.append(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
            if truncated or int(cursor) == 0:
                break

        return keys, truncated

    async def stats(self) -> Dict[str, Any]:
        """Aggregate server INFO and DBSIZE with this process's counters."""
        client_stats = self.get_client_stats()
        if not self.enabled or self.redis_client is None:
            return {'available': False, 'message': 'Redis not connected', 'client': client_stats}

        try:
            memory, server, size = await asyncio.wait_for(
                asyncio.gather(
                    self.redis_client.info('memory'),
                    self.redis_client.info('stats'),
                    self.redis_client.dbsize(),
                ),
                timeout=self.config.cache_operation_timeout,
            )
        except Exception as e:
            self._record_failure('stats', e, connection_lost=isinstance(e, CONNECTION_ERRORS))
            return {'available': False, 'error': str(e) or type(e).__name__, 'client': self.get_client_stats()}

        self._connected = True
        hits = server.get('keyspace_hits')
        misses = server.get('keyspace_misses')
        ratio = compute_hit_ratio(hits, misses)

        return {
            'available': True,
            'size_estimate': size,
            'memory': {
                'used': _as_text(memory.get('used_memory_human')),
                'peak': _as_text(memory.get('used_memory_peak_human')),
                'fragmentation': memory.get('mem_fragmentation_ratio'),
            },
            'stats': {
                'total_connections': server.get('total_connections_received'),
                'total_commands': server.get('total_commands_processed'),
                'keyspace_hits': hits,
                'keyspace_misses': misses,
                'hit_rate': format_hit_rate(ratio),
            },
            'hit_ratio': ratio,
            'client': client_stats,
        }

    def get_client_stats(self) -> Dict[str, Any]:
        """Counters observed by this process, independent of the server."""
        return {
            **self.counters,
            'hit_rate': format_hit_rate(compute_hit_ratio(self.counters['hits'], self.counters['misses'])),
            'connected': self.is_available(),
            'namespace': self.namespace,
            'pending_writes': len(self._pending_writes),
        }

    # JSON helpers and service-level cache-aside

    def build_key(self, resource: str, params: Optional[Dict[str, Any]] = None) -> str:
        return self.key_builder.build(resource, params)

    def ttl_for(self, resource: str) -> int:
        return self.config.ttl_for(resource)

    async def get_json(self, key: str) -> Any:
        """Get and decode a JSON payload. Undecodable entries read as a miss."""
        data = await self.get(key)
        if data is None:
            return None
        try:
            return decode_payload(data)
        except ValueError as e:
            self.counters['errors'] += 1
            self.logger.warning(f"Discarding undecodable cache entry: {e}", operation="get_json", key=key)
            return None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Encode ``value`` as JSON and store it. Serialization failures count as a failed set."""
        try:
            data = encode_payload(value)
        except (TypeError, ValueError) as e:
            self.counters['errors'] += 1
            self.logger.error(f"Failed to serialize value for cache: {e}", operation="set_json", key=key)
            return False
        return await self.set(key, data, ttl)

    async def get_or_set(self, key: str, fetch: Callable[[], Awaitable[Any]], ttl: Optional[int] = None) -> Any:
        """Return the cached value for ``key`` or fetch it and write it behind.

        The write does not delay the caller; a ``None`` result is not cached.
        Concurrent misses each call ``fetch``.
        """
        cached = await self.get_json(key)
        if cached is not None:
            return cached

        value = await fetch()
        if value is not None:
            self.schedule_write(key, value, ttl)
        return value

    def schedule_write(self, key: str, value: Any, ttl: Optional[int] = None) -> asyncio.Task:
        """Write ``value`` in a background task tracked until it finishes."""
        task = asyncio.create_task(self.set_json(key, value, ttl))
        self._pending_writes.add(task)
        self._pending_gauge.set(len(self._pending_writes), namespace=self.namespace)
        task.add_done_callback(self._on_write_done)
        return task

    def _on_write_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        self._pending_gauge.set(len(self._pending_writes), namespace=self.namespace)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Background cache write failed: {error!r}", operation="schedule_write")

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
