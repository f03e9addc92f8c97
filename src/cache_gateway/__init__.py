"""
Cache Gateway - HTTP cache-aside layer

FastAPI application and middleware that serve configured read routes from a
Redis cache and invalidate them when mutating routes succeed.

The Cache Gateway provides:
- Read-through caching with X-Cache HIT/MISS reporting
- Pattern invalidation on successful writes
- Administrative cache endpoints (stats, health, flush, invalidate)
"""

from .app import app, create_app, run_server
from .route_rules import InvalidationConfig, ReadThroughConfig

__all__ = [
    'app',
    'create_app',
    'run_server',
    'InvalidationConfig',
    'ReadThroughConfig',
]
