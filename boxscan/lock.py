"""
lock.py — Distributed per-session mutual exclusion.

with_lock() is the only correctness mechanism for session mutations: every
read-modify-write on a session record runs inside it. The lock is an
auto-expiring Redis key (lock:{token}) created with SET NX EX.

Release is one atomic compare-and-delete (a Lua script): the key goes only if it
still holds our holder id, so if our TTL expired mid-section and another caller
took the lock, their lock survives.
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, TypeVar

from boxscan.cache import LOCK_TTL, RecordStore, make_lock_key
from boxscan.errors import LockAcquisitionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Retry budget: 20 × 250ms ≈ 5s worst-case wait under contention
# ---------------------------------------------------------------------------
LOCK_MAX_RETRIES = 20
LOCK_RETRY_DELAY_MS = 250


async def with_lock(
    store: RecordStore,
    token: str,
    critical_section: Callable[[], Awaitable[T]],
    max_retries: int = LOCK_MAX_RETRIES,
    retry_delay_ms: int = LOCK_RETRY_DELAY_MS,
    lock_ttl_seconds: int = LOCK_TTL,
) -> T:
    """
    Run critical_section while holding the lock for token.

    Raises LockAcquisitionError after max_retries failed attempts. Exceptions
    from critical_section propagate after the lock is released.
    """
    key = make_lock_key(token)
    holder_id = uuid.uuid4().hex

    for attempt in range(1, max_retries + 1):
        if await store.set_if_not_exists(key, holder_id, lock_ttl_seconds):
            if attempt > 1:
                logger.debug("Lock acquired token=%s attempt=%d", token, attempt)
            try:
                return await critical_section()
            finally:
                await _release(store, key, holder_id, token)
        if attempt < max_retries:
            await asyncio.sleep(retry_delay_ms / 1000)

    logger.warning("Lock acquisition failed token=%s retries=%d", token, max_retries)
    raise LockAcquisitionError(
        "Session is busy, please retry", token=token,
    )


async def _release(store: RecordStore, key: str, holder_id: str, token: str) -> None:
    if not await store.delete_if_equals(key, holder_id):
        # TTL expired while we held it; someone else owns the key now
        logger.warning("Lock expired before release token=%s", token)
