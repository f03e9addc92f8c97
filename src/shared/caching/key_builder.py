"""
Deterministic cache key construction.

Keys have the shape ``{namespace}:{resource}:{params}`` where ``params`` is
either ``all`` or colon-joined ``name=value`` pairs sorted by name. Parameters
whose value is ``None`` are dropped, so ``{"page": 1, "q": None}`` and
``{"page": 1}`` share a key.
"""

from typing import Any, Mapping, Optional

ALL_PARAMS = "all"


def format_value(value: Any) -> str:
    """Render a parameter value as it appears inside a key."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(format_value(item) for item in value if item is not None)
    return str(value)


def canonical_params(params: Optional[Mapping[str, Any]]) -> str:
    """Canonical text for a parameter mapping."""
    if not params:
        return ALL_PARAMS

    pairs = [
        f"{name}={format_value(value)}"
        for name, value in sorted(params.items(), key=lambda item: str(item[0]))
        if value is not None
    ]
    return ":".join(pairs) if pairs else ALL_PARAMS


class KeyBuilder:
    """Builds cache keys under a fixed namespace."""

    def __init__(self, namespace: str):
        self.namespace = namespace

    def build(self, resource: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Build the key for ``resource`` and its parameters.

        Equivalent parameter sets always yield the identical string,
        regardless of insertion order.
        """
        return f"{self.namespace}:{resource}:{canonical_params(params)}"

    def strip_namespace(self, key: str) -> str:
        """Return ``key`` relative to the namespace."""
        prefix = f"{self.namespace}:"
        return key[len(prefix):] if key.startswith(prefix) else key

    def qualify(self, relative_key: str) -> str:
        """Prefix a namespace-relative key or pattern."""
        return f"{self.namespace}:{relative_key}"


def build_cache_key(namespace: str, resource: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Convenience wrapper around :meth:`KeyBuilder.build`."""
    return KeyBuilder(namespace).build(resource, params)


# Invalidation pattern helpers. Patterns are relative to the namespace.

def resource_pattern(resource: str) -> str:
    """Pattern matching every cached variant of ``resource``."""
    return f"{resource}:*"


def param_pattern(resource: str, name: str, value: Any) -> str:
    """Pattern matching variants of ``resource`` keyed on ``name=value``.

    The match is loose: ``id=5`` also matches ``id=55``. Over-invalidation
    only costs a cache miss.
    """
    return f"{resource}:*{name}={format_value(value)}*"
