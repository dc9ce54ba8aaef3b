"""
Test configuration for Box Scan tests.

Redis is replaced by fakeredis (one private FakeServer per test), so the real
RecordStore / lock / repository code runs end to end without a live server.
Lock retry delays are shortened so contention tests stay fast.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest
import pytest_asyncio

from boxscan.cache import RecordStore
from boxscan.sessions.engine import ScanSessionEngine
from boxscan.sessions.schemas import CreateSessionRequest, InvoiceItem, OperationType
from boxscan.store import SessionRepository

FAST_RETRY_DELAY_MS = 5


class FakeClock:
    """Callable clock the engine reads; tests move it forward explicitly."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Sample invoice
# ---------------------------------------------------------------------------

MEATBALLS = InvoiceItem(
    item_index=0,
    item_code="1001",
    item_name_english="Meatballs in Red Sauce",
    item_name_hebrew="קציצות ברוטב אדום",
    quantity_kg=10.0,
    expected_boxes=2,
)

SCHNITZEL = InvoiceItem(
    item_index=1,
    item_code="1002",
    item_name_english="Chicken Schnitzel",
    item_name_hebrew="שניצל עוף",
    quantity_kg=24.0,
    expected_boxes=3,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.flushall()


@pytest.fixture
def record_store(redis_client) -> RecordStore:
    return RecordStore(redis_client)


@pytest.fixture
def repository(record_store) -> SessionRepository:
    return SessionRepository(record_store, lock_max_retries=400, lock_retry_delay_ms=FAST_RETRY_DELAY_MS)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(repository, clock) -> ScanSessionEngine:
    return ScanSessionEngine(repository, app_url="https://scan.test", clock=clock)


@pytest_asyncio.fixture
async def scan_token(engine) -> str:
    """An ACTIVE SCAN session with the meatballs + schnitzel invoice."""
    created = await engine.create_session(
        CreateSessionRequest(
            chat_id="chat-42",
            operation_type=OperationType.SCAN,
            invoice_items=[MEATBALLS, SCHNITZEL],
            document_number="INV-2026-0117",
        )
    )
    return created.token


@pytest_asyncio.fixture
async def issue_token(engine) -> str:
    created = await engine.create_session(
        CreateSessionRequest(chat_id="chat-42", operation_type=OperationType.ISSUE)
    )
    return created.token


@pytest.fixture
def invoice_items() -> list[InvoiceItem]:
    return [MEATBALLS, SCHNITZEL]
