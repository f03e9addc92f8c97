"""
Cache-aside layer for HTTP read endpoints.

This package provides:
- Deterministic cache keys under a configurable namespace
- A fail-open Redis cache store with bounded per-call timeouts
- Pattern invalidation over a SCAN cursor loop
- Cache warming and administrative operations
"""

from .key_builder import (
    KeyBuilder,
    build_cache_key,
    format_value,
    param_pattern,
    resource_pattern,
)

from .cache_store import (
    CacheStore,
    TTLState,
    compute_hit_ratio,
    decode_payload,
    encode_payload,
    format_hit_rate,
)

from .invalidation import (
    CacheInvalidator,
    escape_glob,
    render_pattern,
)

from .cache_warming import (
    CacheWarmer,
    WarmingJob,
)

from .admin import (
    CacheAdmin,
    describe_ttl,
    validate_patterns,
)

__all__ = [
    # Keys
    'KeyBuilder',
    'build_cache_key',
    'format_value',
    'param_pattern',
    'resource_pattern',

    # Store
    'CacheStore',
    'TTLState',
    'compute_hit_ratio',
    'decode_payload',
    'encode_payload',
    'format_hit_rate',

    # Invalidation
    'CacheInvalidator',
    'escape_glob',
    'render_pattern',

    # Cache warming
    'CacheWarmer',
    'WarmingJob',

    # Administration
    'CacheAdmin',
    'describe_ttl',
    'validate_patterns',
]
