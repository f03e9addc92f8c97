"""
Shared fixtures for cache gateway tests.

``FakeRedis`` is an in-memory stand-in for ``redis.asyncio.Redis`` that
implements the command subset the cache store issues. Setting ``fail`` makes
every command raise a connection error; setting ``delay`` makes every command
sleep first, for timeout tests.
"""
import asyncio
import re
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.shared.caching import CacheStore
from src.shared.config import CacheSettings, RedisSettings, SecuritySettings, Settings
from src.shared.metrics_collector import get_metrics_collector


def glob_to_regex(pattern: str) -> str:
    """Translate a Redis glob (with backslash escapes) into a regex."""
    regex = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            regex.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            regex.append(".*")
        elif char == "?":
            regex.append(".")
        elif char == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                regex.append(re.escape(char))
            else:
                body = pattern[i + 1:end]
                if body.startswith("^"):
                    body = "^" + re.escape(body[1:])
                else:
                    body = re.escape(body)
                regex.append(f"[{body}]")
                i = end
        else:
            regex.append(re.escape(char))
        i += 1
    return "".join(regex)


class FakeRedis:
    """In-memory async Redis double."""

    def __init__(self):
        self.data: Dict[bytes, bytes] = {}
        self.expiry: Dict[bytes, Optional[int]] = {}
        self.fail = False
        self.delay = 0.0
        self.commands: List[str] = []
        self.keyspace_hits = 0
        self.keyspace_misses = 0
        self.closed = False
        self._scan_positions: Dict[int, bytes] = {}
        self._next_cursor = 1

    @staticmethod
    def _key(key: Any) -> bytes:
        return key.encode("utf-8") if isinstance(key, str) else key

    async def _command(self, name: str) -> None:
        self.commands.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def ping(self):
        await self._command("PING")
        return True

    async def get(self, key):
        await self._command("GET")
        value = self.data.get(self._key(key))
        if value is None:
            self.keyspace_misses += 1
        else:
            self.keyspace_hits += 1
        return value

    async def setex(self, key, ttl, value):
        await self._command("SETEX")
        k = self._key(key)
        self.data[k] = value.encode("utf-8") if isinstance(value, str) else value
        self.expiry[k] = int(ttl)
        return True

    async def set(self, key, value):
        await self._command("SET")
        k = self._key(key)
        self.data[k] = value.encode("utf-8") if isinstance(value, str) else value
        self.expiry[k] = None
        return True

    async def delete(self, *keys):
        await self._command("DEL")
        removed = 0
        for key in keys:
            k = self._key(key)
            if k in self.data:
                del self.data[k]
                self.expiry.pop(k, None)
                removed += 1
        return removed

    async def exists(self, *keys):
        await self._command("EXISTS")
        return sum(1 for key in keys if self._key(key) in self.data)

    async def ttl(self, key):
        await self._command("TTL")
        k = self._key(key)
        if k not in self.data:
            return -2
        remaining = self.expiry.get(k)
        return -1 if remaining is None else remaining

    async def scan(self, cursor=0, match=None, count=None):
        """Cursor-based scan that tolerates deletion of already returned keys."""
        await self._command("SCAN")
        after = self._scan_positions.pop(int(cursor), b"") if cursor else b""
        regex = re.compile(glob_to_regex(match), re.S) if match else None

        remaining = sorted(k for k in self.data if k > after)
        batch_size = count or 10
        window = remaining[:batch_size]
        matched = [k for k in window if regex is None or regex.fullmatch(k.decode("utf-8"))]

        if len(remaining) <= batch_size:
            return 0, matched

        next_cursor = self._next_cursor
        self._next_cursor += 1
        self._scan_positions[next_cursor] = window[-1]
        return next_cursor, matched

    async def info(self, section=None):
        await self._command("INFO")
        if section == "memory":
            return {
                "used_memory_human": "1.05M",
                "used_memory_peak_human": "2.10M",
                "mem_fragmentation_ratio": 1.25,
            }
        return {
            "total_connections_received": 3,
            "total_commands_processed": len(self.commands),
            "keyspace_hits": self.keyspace_hits,
            "keyspace_misses": self.keyspace_misses,
        }

    async def dbsize(self):
        await self._command("DBSIZE")
        return len(self.data)

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test with empty metrics."""
    get_metrics_collector().reset()
    yield


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache_settings():
    return CacheSettings(
        cache_enabled=True,
        cache_key_prefix="ns",
        cache_default_ttl=60,
        cache_scan_count=2,
        cache_operation_timeout=0.5,
        cache_resource_ttls={"orders": 30},
    )


@pytest.fixture
def store(cache_settings, fake_redis):
    """Cache store bound to the in-memory Redis double."""
    return CacheStore(cache_settings, RedisSettings(), client=fake_redis)


@pytest.fixture
def api_keys():
    return {
        "admin-key": {"user_id": "ops", "roles": ["admin"]},
        "alice-key": {"user_id": "alice", "roles": ["customer"]},
        "bob-key": {"user_id": "bob", "roles": ["customer"]},
    }


@pytest.fixture
def settings(cache_settings, api_keys):
    return Settings(
        cache=cache_settings,
        security=SecuritySettings(api_keys=api_keys),
    )
