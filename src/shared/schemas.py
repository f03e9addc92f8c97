"""
Shared Schemas - Pydantic Models for Validation and Serialization
Request and response models for the cache gateway's HTTP surface.
"""
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Union
from enum import Enum
from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Cache health states."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


# Error schemas
class ErrorDetail(BaseModel):
    """Error information."""
    type: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable message")
    request_id: Optional[str] = Field(None, description="Request ID for correlation")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional context")


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: ErrorDetail = Field(..., description="Error information")


# Admin request schemas
class InvalidateRequest(BaseModel):
    """Body of a targeted invalidation request.

    ``patterns`` is optional at the schema level so that a missing list is
    reported with the same validation error as an empty one.
    """
    patterns: Optional[List[str]] = Field(None, description="Glob patterns relative to the cache namespace")


# Admin response schemas
class CacheMemoryInfo(BaseModel):
    """Memory section of the backing store's INFO output."""
    used: Optional[str] = Field(None, description="Used memory (human readable)")
    peak: Optional[str] = Field(None, description="Peak memory (human readable)")
    fragmentation: Optional[float] = Field(None, description="Memory fragmentation ratio")


class CacheServerStats(BaseModel):
    """Stats section of the backing store's INFO output."""
    total_connections: Optional[int] = Field(None, description="Connections received since start")
    total_commands: Optional[int] = Field(None, description="Commands processed since start")
    keyspace_hits: Optional[int] = Field(None, description="Server-side keyspace hits")
    keyspace_misses: Optional[int] = Field(None, description="Server-side keyspace misses")
    hit_rate: str = Field("unknown", description="Hit rate as a percentage, or 'unknown'")


class CacheStatsResponse(BaseModel):
    """Cache statistics."""
    available: bool = Field(..., description="Whether the backing store is reachable")
    size_estimate: Optional[int] = Field(None, description="Number of keys in the backing store")
    memory: Optional[CacheMemoryInfo] = Field(None, description="Memory usage")
    stats: Optional[CacheServerStats] = Field(None, description="Server counters")
    hit_ratio: Optional[float] = Field(None, description="hits / (hits + misses), null when unknown")
    client: Dict[str, Any] = Field(default_factory=dict, description="Counters observed by this process")
    message: Optional[str] = Field(None, description="Reason the store is unavailable")
    error: Optional[str] = Field(None, description="Error raised while collecting stats")
    timestamp: datetime = Field(default_factory=utc_now, description="Collection timestamp")


class CacheHealthResponse(BaseModel):
    """Cache health probe result."""
    status: HealthStatus = Field(..., description="healthy or unhealthy")
    available: bool = Field(..., description="Whether the backing store answered PING")
    latency_ms: Optional[float] = Field(None, description="PING round trip in milliseconds")
    timestamp: datetime = Field(default_factory=utc_now, description="Probe timestamp")


class FlushResponse(BaseModel):
    """Result of a namespace flush."""
    deleted_count: int = Field(..., ge=0, description="Number of keys removed")
    timestamp: datetime = Field(default_factory=utc_now, description="Flush timestamp")


class InvalidateResponse(BaseModel):
    """Result of a targeted invalidation."""
    patterns: List[str] = Field(..., description="Patterns that were applied")
    deleted_count: int = Field(..., ge=0, description="Number of keys removed")
    timestamp: datetime = Field(default_factory=utc_now, description="Invalidation timestamp")


class KeyListResponse(BaseModel):
    """Keys matching a pattern."""
    pattern: str = Field(..., description="Pattern relative to the cache namespace")
    keys: List[str] = Field(..., description="Matching keys")
    count: int = Field(..., ge=0, description="Number of keys returned")
    truncated: bool = Field(..., description="Whether more keys matched than were returned")


class KeyInspectResponse(BaseModel):
    """A single cache entry."""
    key: str = Field(..., description="Full cache key")
    value: Any = Field(None, description="Decoded payload")
    ttl: Union[int, str] = Field(..., description="Remaining seconds, 'no expiry' or 'expired'")


class KeyDeleteResponse(BaseModel):
    """Result of deleting a single key."""
    key: str = Field(..., description="Full cache key")
    deleted: bool = Field(..., description="Whether the key existed and was removed")


class GatewayHealthResponse(BaseModel):
    """Liveness of the gateway process."""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")
    cache: str = Field(..., description="available or unavailable")
    timestamp: datetime = Field(default_factory=utc_now, description="Check timestamp")
