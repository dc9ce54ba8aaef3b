"""
cache.py — Redis record store for Box Scan.

Namespace conventions:
  session:{token}   → serialized ScanSession      TTL 1h while ACTIVE, 24h once COMPLETED
  lock:{token}      → lock holder id              TTL 10s

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x — do NOT use aioredis separately)
  - Pool created once in lifespan, stored on app.state.redis
  - RecordStore wraps the client — values are opaque strings, no partial-field updates;
    all merge logic belongs to the session engine
  - Logs only keys (not values) — record bodies carry image URLs and chat ids
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from boxscan.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# TTL constants (seconds)
# ---------------------------------------------------------------------------
SESSION_TTL: int = 3600             # 1 hour, refreshed on every write while ACTIVE
COMPLETED_SESSION_TTL: int = 86400  # 24 hours once COMPLETED
LOCK_TTL: int = 10                  # bounds staleness if a lock holder crashes

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
SESSION_PREFIX = "session"
LOCK_PREFIX = "lock"

# Compare-and-delete in one round trip: only the holder that wrote the value removes it
_DELETE_IF_EQUALS = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_session_key(token: str) -> str:
    """Build Redis key for a scan session record: session:{token}"""
    return f"{SESSION_PREFIX}:{token}"


def make_lock_key(token: str) -> str:
    """Build Redis key for a session lock: lock:{token}"""
    return f"{LOCK_PREFIX}:{token}"


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup — stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established at %s", settings.redis_url)
    return client


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------

class RecordStore:
    """
    Key/value store with per-key expiration.

    The client must be created with decode_responses=True so reads return str.
    """

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client
        self._delete_if_equals = client.register_script(_DELETE_IF_EQUALS)

    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None if the key expired or never existed."""
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Overwrite the value and reset its TTL."""
        await self._client.setex(key, ttl_seconds, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def exists(self, key: str) -> bool:
        return await self._client.exists(key) == 1

    async def set_if_not_exists(self, key: str, value: str, ttl_seconds: int) -> bool:
        """
        Atomic SET NX EX — the primitive the session lock is built on.
        Returns True only if this call created the key.
        """
        acquired = await self._client.set(key, value, nx=True, ex=ttl_seconds)
        return bool(acquired)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only if it still holds value. Returns True if it was deleted."""
        deleted = await self._delete_if_equals(keys=[key], args=[value])
        return deleted == 1
