"""State backend with Redis (production) or in-memory (development) storage.

Redis is the shared source of truth when several workers run across a fleet.
The in-memory backend mirrors the same primitives inside one process, so a
single worker (and the test-suite) can run with no Redis server at all.
"""

import asyncio
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Sequence, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.config import Settings
from core.logging import get_logger, log_store_operation

logger = get_logger(__name__)

SOCKET_TIMEOUT = 5.0
SOCKET_TIMEOUT_MARGIN = 1.0

# Compare-and-delete so a worker never releases a lock another worker re-acquired
# after its own lease expired.
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def redis_socket_timeout(settings: Settings) -> float:
    """Socket read timeout for the Redis client.

    BLPOP holds the connection for up to `dequeue_timeout`; the read timeout
    must outlast it or every idle poll fails.
    """
    return max(SOCKET_TIMEOUT, settings.dequeue_timeout + SOCKET_TIMEOUT_MARGIN)


class BackendError(Exception):
    """A backend primitive failed (connection loss, timeout, bad reply)."""


@contextmanager
def _redis_errors(operation: str, key: str):
    """Translate redis-py failures into BackendError."""
    try:
        yield
    except RedisError as e:
        logger.error("Redis operation failed", operation=operation, key=key, error=str(e))
        raise BackendError(f"{operation} failed for {key}: {e}") from e


class StateBackend:
    """Async key/value backend with Redis or in-memory storage.

    Backend selection:
    - Redis: When DAG_REDIS_ENABLED=true (required for more than one worker)
    - Memory: Single-process development and tests
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.use_redis = settings.redis_enabled
        self._release_script = None

        # In-memory storage, one dict per Redis data type
        self._strings: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._lists: Dict[str, List[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}

    async def startup(self):
        """Initialize backend connection."""
        if self.use_redis:
            self.redis = redis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=redis_socket_timeout(self.settings),
                socket_connect_timeout=5,
                retry_on_timeout=True
            )
            self._release_script = self.redis.register_script(RELEASE_LOCK_SCRIPT)

            with _redis_errors("ping", self.settings.redis_url):
                await self.redis.ping()
            logger.info("Redis backend initialized", url=self.settings.redis_url)
        else:
            logger.info("Using in-memory backend (single process only)")

    async def shutdown(self):
        """Close backend connections."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Redis backend connections closed")

    def is_redis_available(self) -> bool:
        """Check if Redis is configured and connected."""
        return self.use_redis and self.redis is not None

    async def ping(self) -> bool:
        """Check backend connectivity."""
        if not self.is_redis_available():
            return not self.use_redis
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    # ============================================================================
    # Strings (locks)
    # ============================================================================

    async def get(self, key: str) -> Optional[str]:
        """Get a string value, honouring expiry."""
        if self.is_redis_available():
            with _redis_errors("get", key):
                value = await self.redis.get(key)
        else:
            value = self._memory_get(key)
        log_store_operation(logger, "get", key, hit=value is not None)
        return value

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        """Set key to value only if it does not exist, expiring after ttl seconds."""
        ttl_ms = max(1, int(ttl * 1000))
        if self.is_redis_available():
            with _redis_errors("set_if_absent", key):
                acquired = bool(await self.redis.set(key, value, px=ttl_ms, nx=True))
        else:
            if self._memory_get(key) is not None:
                acquired = False
            else:
                self._strings[key] = (value, time.monotonic() + ttl_ms / 1000)
                acquired = True
        log_store_operation(logger, "set_if_absent", key, acquired=acquired)
        return acquired

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only while it still holds value."""
        if self.is_redis_available():
            with _redis_errors("delete_if_equals", key):
                deleted = bool(await self._release_script(keys=[key], args=[value]))
        else:
            deleted = self._memory_get(key) == value
            if deleted:
                del self._strings[key]
        log_store_operation(logger, "delete_if_equals", key, deleted=deleted)
        return deleted

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self._strings.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._strings[key]
            return None
        return value

    # ============================================================================
    # Hashes (jobs, workflows, DLQ)
    # ============================================================================

    async def hget(self, key: str, field: str) -> Optional[str]:
        """Get one field of a hash."""
        if self.is_redis_available():
            with _redis_errors("hget", key):
                value = await self.redis.hget(key, field)
        else:
            value = self._hashes.get(key, {}).get(field)
        log_store_operation(logger, "hget", key, field=field, hit=value is not None)
        return value

    async def hset(self, key: str, field: str, value: str) -> None:
        """Overwrite one field of a hash."""
        if self.is_redis_available():
            with _redis_errors("hset", key):
                await self.redis.hset(key, field, value)
        else:
            self._hashes.setdefault(key, {})[field] = value
        log_store_operation(logger, "hset", key, field=field)

    async def hset_many(self, key: str, mapping: Dict[str, str]) -> None:
        """Overwrite several fields of a hash at once."""
        if not mapping:
            return
        if self.is_redis_available():
            with _redis_errors("hset_many", key):
                await self.redis.hset(key, mapping=mapping)
        else:
            self._hashes.setdefault(key, {}).update(mapping)
        log_store_operation(logger, "hset_many", key, fields=len(mapping))

    async def hgetall(self, key: str) -> Dict[str, str]:
        """Get every field of a hash."""
        if self.is_redis_available():
            with _redis_errors("hgetall", key):
                data = await self.redis.hgetall(key)
        else:
            data = dict(self._hashes.get(key, {}))
        log_store_operation(logger, "hgetall", key, fields=len(data))
        return data

    # ============================================================================
    # Lists (queues)
    # ============================================================================

    async def rpush(self, key: str, value: str) -> None:
        """Append a value to the tail of a list."""
        if self.is_redis_available():
            with _redis_errors("rpush", key):
                await self.redis.rpush(key, value)
        else:
            self._lists.setdefault(key, []).append(value)
        log_store_operation(logger, "rpush", key)

    async def blpop(self, keys: Sequence[str], timeout: float) -> Optional[Tuple[str, str]]:
        """Pop the head of the first non-empty list, waiting up to timeout seconds."""
        if self.is_redis_available():
            with _redis_errors("blpop", ",".join(keys)):
                item = await self.redis.blpop(list(keys), timeout=timeout)
            return tuple(item) if item else None

        deadline = time.monotonic() + timeout
        while True:
            for key in keys:
                items = self._lists.get(key)
                if items:
                    return key, items.pop(0)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(0.01, remaining))

    async def lrange(self, key: str) -> List[str]:
        """Get every value of a list without removing it."""
        if self.is_redis_available():
            with _redis_errors("lrange", key):
                return await self.redis.lrange(key, 0, -1)
        return list(self._lists.get(key, []))

    # ============================================================================
    # Sorted sets (delayed delivery)
    # ============================================================================

    async def zadd(self, key: str, member: str, score: float) -> None:
        """Add a member to a sorted set."""
        if self.is_redis_available():
            with _redis_errors("zadd", key):
                await self.redis.zadd(key, {member: score})
        else:
            self._zsets.setdefault(key, {})[member] = score
        log_store_operation(logger, "zadd", key, score=score)

    async def zpop_due(self, key: str, max_score: float, limit: int = 100) -> List[str]:
        """Remove and return members scored at or below max_score.

        Each member is claimed with its own ZREM, so when several workers race
        only the one whose ZREM succeeds gets the member.
        """
        if self.is_redis_available():
            with _redis_errors("zpop_due", key):
                candidates = await self.redis.zrangebyscore(
                    key, "-inf", max_score, start=0, num=limit
                )
                claimed = []
                for member in candidates:
                    if await self.redis.zrem(key, member):
                        claimed.append(member)
        else:
            zset = self._zsets.get(key, {})
            due = sorted(
                (score, member) for member, score in zset.items() if score <= max_score
            )[:limit]
            claimed = [member for _, member in due]
            for member in claimed:
                del zset[member]
        if claimed:
            log_store_operation(logger, "zpop_due", key, claimed=len(claimed))
        return claimed

    async def zmembers(self, key: str) -> List[Tuple[str, float]]:
        """Get every member of a sorted set with its score, lowest first."""
        if self.is_redis_available():
            with _redis_errors("zmembers", key):
                return await self.redis.zrange(key, 0, -1, withscores=True)
        return sorted(self._zsets.get(key, {}).items(), key=lambda item: item[1])

    def describe(self) -> Dict[str, Any]:
        """Summary for health reporting."""
        return {
            "backend": "redis" if self.use_redis else "memory",
            "connected": self.is_redis_available() or not self.use_redis,
        }
