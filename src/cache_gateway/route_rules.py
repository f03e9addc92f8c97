"""
Cache Gateway - Route Rules

Per-route configuration for the read-through and invalidation middlewares,
and the matcher that maps a request path onto a configured route template.
Templates use the same syntax as FastAPI paths (``/products/{product_id}``).
"""
import re
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, FrozenSet, Generic, Iterable, Optional, Tuple, TypeVar

from fastapi import Request
from starlette.routing import compile_path

SAFE_METHODS = frozenset({"GET"})
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class ReadThroughConfig:
    """Caching for a read route. Only GET requests are served from the cache.

    Attributes:
        path: Route template the rule applies to
        resource: Resource segment of the cache key
        ttl_seconds: Entry lifetime; ``None`` uses the configured TTL for the resource
        user_scoped: Include the caller's identity in the key
        vary_by: Request headers whose values become part of the key
        condition: Predicate deciding per request whether to cache at all
    """
    path: str
    resource: str
    ttl_seconds: Optional[int] = None
    user_scoped: bool = False
    vary_by: Tuple[str, ...] = ()
    condition: Optional[Callable[[Request], bool]] = field(default=None, compare=False)
    methods: ClassVar[FrozenSet[str]] = SAFE_METHODS

    def __post_init__(self):
        if not self.resource or ":" in self.resource:
            raise ValueError(f"Invalid cache resource name: {self.resource!r}")
        if self.ttl_seconds is not None and self.ttl_seconds < 1:
            raise ValueError("ttl_seconds must be at least 1")
        object.__setattr__(self, "vary_by", tuple(header.lower() for header in self.vary_by))


@dataclass(frozen=True)
class InvalidationConfig:
    """Invalidation for a mutating route.

    Attributes:
        path: Route template the rule applies to
        patterns: Globs relative to the cache namespace; ``{name}`` is filled from path parameters
        methods: Methods that trigger invalidation on a successful response
    """
    path: str
    patterns: Tuple[str, ...]
    methods: FrozenSet[str] = MUTATING_METHODS

    def __post_init__(self):
        patterns = (self.patterns,) if isinstance(self.patterns, str) else tuple(self.patterns)
        if not patterns or any(not p for p in patterns):
            raise ValueError(f"Invalidation rule for {self.path} needs at least one non-empty pattern")
        object.__setattr__(self, "patterns", patterns)
        object.__setattr__(self, "methods", frozenset(m.upper() for m in self.methods))


C = TypeVar("C", ReadThroughConfig, InvalidationConfig)


class RouteTable(Generic[C]):
    """Ordered set of route rules; the first matching rule wins."""

    def __init__(self, rules: Iterable[C] = ()):
        self._rules: list = []
        for rule in rules:
            self.add(rule)

    def add(self, rule: C) -> None:
        regex, _, _ = compile_path(rule.path)
        self._rules.append((regex, rule))

    def __len__(self) -> int:
        return len(self._rules)

    def match(self, method: str, path: str) -> Optional[Tuple[C, Dict[str, Any]]]:
        """Find the rule for ``method`` and ``path``.

        Returns:
            Tuple of (rule, path parameters as strings), or None
        """
        for regex, rule in self._rules:
            if method.upper() not in rule.methods:
                continue
            match: Optional[re.Match] = regex.match(path)
            if match:
                return rule, match.groupdict()
        return None
