"""
store.py — Session repository facade for Box Scan.

Provides a consistent, high-level API for persisting and retrieving scan sessions.
The engine, the OCR worker and the finalize dispatcher all go through this
class — nothing else touches the record store directly.

Design principles:
  - get() is a lock-free read, fine for display and polling
  - mutate() is the ONLY way to change a session: it takes the session lock,
    re-reads the latest record under it, and hands that fresh record to the
    critical section. There is no API for saving a snapshot read outside the lock.
  - A record is written back only if the critical section changed it
  - Logs only tokens — never chat ids or image URLs
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from boxscan.cache import (
    COMPLETED_SESSION_TTL,
    SESSION_TTL,
    RecordStore,
    make_session_key,
)
from boxscan.errors import SessionNotFoundError
from boxscan.lock import LOCK_MAX_RETRIES, LOCK_RETRY_DELAY_MS, with_lock
from boxscan.sessions.schemas import ScanSession, SessionStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Marker a critical section returns as a side channel: delete the record
# instead of writing it back (session cancellation).
DELETE = object()


def session_ttl(session: ScanSession) -> int:
    """Sliding 1h TTL while active; 24h once completed so the summary stays readable."""
    if session.status == SessionStatus.COMPLETED:
        return COMPLETED_SESSION_TTL
    return SESSION_TTL


class SessionRepository:
    def __init__(
        self,
        store: RecordStore,
        lock_max_retries: int = LOCK_MAX_RETRIES,
        lock_retry_delay_ms: int = LOCK_RETRY_DELAY_MS,
    ) -> None:
        self.store = store
        self._lock_max_retries = lock_max_retries
        self._lock_retry_delay_ms = lock_retry_delay_ms

    async def get(self, token: str) -> Optional[ScanSession]:
        """
        Lock-free read. Returns None if the session expired or never existed.
        Never mutate the returned value — use mutate() instead.
        """
        raw = await self.store.get(make_session_key(token))
        if raw is None:
            return None
        return ScanSession.model_validate_json(raw)

    async def create(self, session: ScanSession) -> None:
        """One-shot write of a brand-new session; the token has no prior record, so no lock."""
        await self._write(session)
        logger.info(
            "Created session token=%s operation_type=%s items=%d",
            session.token,
            session.operation_type.value,
            len(session.invoice_items),
        )

    async def mutate(
        self,
        token: str,
        critical_section: Callable[[ScanSession], Awaitable[T]],
    ) -> T:
        """
        Run critical_section(session) under the session lock.

        The session passed in is re-read after the lock is acquired.
        Raises SessionNotFoundError if it is gone, LockAcquisitionError if the
        lock cannot be taken. If the critical section raises, nothing is written.
        """

        async def locked() -> T:
            session = await self.get(token)
            if session is None:
                raise SessionNotFoundError(f"Session {token} not found", token=token)
            before = session.model_dump_json()

            result = await critical_section(session)

            if result is DELETE:
                await self.store.delete(make_session_key(token))
                logger.info("Deleted session token=%s", token)
            elif session.model_dump_json() != before:
                await self._write(session)
            return result

        return await with_lock(
            self.store,
            token,
            locked,
            max_retries=self._lock_max_retries,
            retry_delay_ms=self._lock_retry_delay_ms,
        )

    async def _write(self, session: ScanSession) -> None:
        ttl = session_ttl(session)
        session.expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        await self.store.set(make_session_key(session.token), session.model_dump_json(), ttl)
        logger.debug("Persisted session token=%s ttl=%ds", session.token, ttl)
