"""
Cache invalidation for the cache gateway.

Patterns are globs relative to the cache namespace (``products:*``). A pattern
may carry ``{name}`` placeholders that are filled from request path
parameters, e.g. ``products:*id={product_id}*``.
"""

import asyncio
import re
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..logging_config import get_logger
from ..metrics_collector import get_metrics_collector
from .cache_store import CacheStore
from .key_builder import format_value, resource_pattern

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def escape_glob(text: str) -> str:
    """Escape glob metacharacters so ``text`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


def render_pattern(pattern: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Fill ``{name}`` placeholders from ``params``.

    Values are glob-escaped. Placeholders without a matching parameter are
    left as they are.
    """
    if not params:
        return pattern

    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name not in params or params[name] is None:
            return match.group(0)
        return escape_glob(format_value(params[name]))

    return _PLACEHOLDER.sub(_substitute, pattern)


class CacheInvalidator:
    """Runs pattern invalidations against a cache store."""

    def __init__(self, store: CacheStore):
        self.store = store
        self.logger = get_logger(__name__, 'cache_invalidator')
        self.metrics = get_metrics_collector()

        self.stats = {
            'invalidations_executed': 0,
            'patterns_applied': 0,
            'keys_invalidated': 0,
            'total_processing_time': 0.0
        }

    async def invalidate(
        self,
        patterns: Iterable[str],
        params: Optional[Mapping[str, Any]] = None,
        source: str = "manual",
    ) -> int:
        """Delete every key matching any of ``patterns``.

        Patterns run independently and concurrently; the call returns once
        all of them have completed. Returns the total number of keys removed.
        """
        rendered: List[str] = [render_pattern(pattern, params) for pattern in patterns]
        if not rendered:
            return 0

        start_time = time.perf_counter()
        counts = await asyncio.gather(*(self.store.delete_pattern(pattern) for pattern in rendered))
        total = sum(counts)
        duration = time.perf_counter() - start_time

        self.stats['invalidations_executed'] += 1
        self.stats['patterns_applied'] += len(rendered)
        self.stats['keys_invalidated'] += total
        self.stats['total_processing_time'] += duration

        self.metrics.get_counter('cache_invalidations_total', 'Invalidation runs').increment(source=source)
        self.metrics.get_counter('cache_invalidated_keys_total', 'Keys removed by invalidation').increment(
            total, source=source
        )

        self.logger.info(
            f"Invalidated {total} cache keys",
            operation="invalidate",
            patterns=rendered,
            per_pattern=dict(zip(rendered, counts)),
            source=source,
            duration_ms=round(duration * 1000, 2),
        )
        return total

    async def invalidate_resource(self, resource: str, source: str = "manual") -> int:
        """Delete every cached variant of ``resource``."""
        return await self.invalidate([resource_pattern(resource)], source=source)

    async def invalidate_key(self, key: str) -> bool:
        """Delete a single fully qualified key."""
        removed = await self.store.delete(key)
        self.stats['keys_invalidated'] += removed
        if removed:
            self.logger.debug(f"Invalidated cache key: {key}", operation="invalidate_key")
        return removed > 0

    def get_stats(self) -> Dict[str, Any]:
        executed = self.stats['invalidations_executed']
        return {
            **self.stats,
            'avg_processing_time': self.stats['total_processing_time'] / executed if executed else 0.0,
        }
