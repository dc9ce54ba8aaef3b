"""
Scan session engine — the full reconciliation lifecycle against fakeredis.

Covers:
  - create / dedup / concurrent appends under the session lock
  - OCR merge into aggregates, late results, the timeout sweep
  - manual resolution and manual entries (aggregates never drift)
  - cancellation and mutations on sessions that are no longer ACTIVE
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from boxscan.cache import make_session_key
from boxscan.errors import (
    ScanEntryNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    UnknownInvoiceItemError,
)
from boxscan.matching.aggregates import aggregate_entries
from boxscan.sessions.engine import OCR_TIMEOUT_ERROR
from boxscan.sessions.schemas import (
    CreateSessionRequest,
    OcrData,
    OcrStatus,
    OperationType,
    ScanMethod,
    ScanSession,
    SessionStatus,
    StatusUpdate,
)

MEATBALLS_LABEL = OcrData(product_name="קציצות ברוטב אדום", weight_kg=4.8, expiry_date="12/04/2026")


def _assert_aggregates_consistent(session: ScanSession) -> None:
    """Incrementally maintained scanned_items must equal a from-scratch fold."""
    expected = aggregate_entries(session)
    assert set(session.scanned_items) == set(expected)
    for key, bucket in expected.items():
        actual = session.scanned_items[key]
        assert actual.scanned_count == bucket.scanned_count, key
        assert actual.scanned_weight == bucket.scanned_weight, key
        assert actual.item_index == bucket.item_index


async def _scan(engine, token: str, barcode: str):
    return await engine.append_scan(token, barcode, f"https://img.test/{barcode}.jpg")


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_session_builds_scan_url_and_ttl(engine, redis_client, invoice_items) -> None:
    created = await engine.create_session(
        CreateSessionRequest(chat_id="chat-1", operation_type=OperationType.SCAN, invoice_items=invoice_items)
    )
    assert created.scan_url == f"https://scan.test/scan/{created.token}"

    ttl = await redis_client.ttl(make_session_key(created.token))
    assert 3590 < ttl <= 3600

    session = await engine.get_session(created.token)
    assert session.status == SessionStatus.ACTIVE
    assert session.scanned_barcodes == []
    assert [i.item_index for i in session.invoice_items] == [0, 1]


@pytest.mark.asyncio
async def test_issue_session_gets_issue_url(engine) -> None:
    created = await engine.create_session(
        CreateSessionRequest(chat_id="chat-1", operation_type=OperationType.ISSUE)
    )
    assert created.scan_url == f"https://scan.test/issue/{created.token}"
    session = await engine.get_session(created.token)
    assert session.operation_type == OperationType.ISSUE
    assert session.invoice_items == []


def test_duplicate_invoice_item_indexes_rejected(invoice_items) -> None:
    with pytest.raises(ValueError, match="unique item_index"):
        CreateSessionRequest(
            chat_id="chat-1",
            operation_type=OperationType.SCAN,
            invoice_items=[invoice_items[0], invoice_items[0]],
        )


@pytest.mark.asyncio
async def test_missing_session(engine) -> None:
    with pytest.raises(SessionNotFoundError):
        await engine.get_session("does-not-exist")
    with pytest.raises(SessionNotFoundError):
        await _scan(engine, "does-not-exist", "b1")


# ---------------------------------------------------------------------------
# Appending scans
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_append_scan_adds_pending_entry(engine, scan_token) -> None:
    result = await _scan(engine, scan_token, "7290001")
    assert result.success is True
    assert result.is_duplicate is False
    assert result.overall_progress.total_boxes_expected == 5

    session = await engine.get_session(scan_token)
    [entry] = session.scanned_barcodes
    assert entry.barcode == "7290001"
    assert entry.ocr_status == OcrStatus.pending
    assert entry.scan_method == ScanMethod.barcode
    assert session.scanned_items == {}


@pytest.mark.asyncio
async def test_duplicate_scan_is_reported_not_added(engine, scan_token) -> None:
    await _scan(engine, scan_token, "7290001")
    result = await _scan(engine, scan_token, "7290001")

    assert result.success is False
    assert result.is_duplicate is True
    assert result.barcode == "7290001"
    session = await engine.get_session(scan_token)
    assert len(session.scanned_barcodes) == 1


@pytest.mark.asyncio
async def test_noop_mutation_does_not_rewrite_record(engine, scan_token, redis_client) -> None:
    await _scan(engine, scan_token, "7290001")
    await redis_client.expire(make_session_key(scan_token), 100)

    await _scan(engine, scan_token, "7290001")  # duplicate → nothing changed

    assert await redis_client.ttl(make_session_key(scan_token)) <= 100


@pytest.mark.asyncio
async def test_concurrent_appends_lose_nothing(engine, scan_token) -> None:
    barcodes = [f"72900{n:02d}" for n in range(10)]
    results = await asyncio.gather(*(_scan(engine, scan_token, b) for b in barcodes))

    assert all(r.success for r in results)
    session = await engine.get_session(scan_token)
    assert sorted(e.barcode for e in session.scanned_barcodes) == barcodes


@pytest.mark.asyncio
async def test_concurrent_duplicates_add_exactly_one(engine, scan_token) -> None:
    results = await asyncio.gather(*(_scan(engine, scan_token, "7290001") for _ in range(5)))

    assert sum(1 for r in results if r.success) == 1
    assert sum(1 for r in results if r.is_duplicate) == 4
    session = await engine.get_session(scan_token)
    assert len(session.scanned_barcodes) == 1


# ---------------------------------------------------------------------------
# OCR merge
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ocr_merge_updates_aggregates(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    assert await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL) is True

    session = await engine.get_session(scan_token)
    entry = session.find_entry("b1")
    assert entry.ocr_status == OcrStatus.complete
    assert entry.ocr_data.weight_kg == 4.8
    assert entry.ocr_processed_at is not None

    bucket = session.scanned_items["0"]
    assert bucket.item_index == 0
    assert bucket.item_name == "Meatballs in Red Sauce"
    assert bucket.scanned_count == 1
    assert bucket.scanned_weight == pytest.approx(4.8)
    assert bucket.expected_weight == 10.0
    assert bucket.expected_boxes == 2

    view = await engine.status_view(scan_token)
    assert view.progress.total_boxes_scanned == 1
    assert view.progress.completion_rate == pytest.approx(4.8 / 34.0)
    assert view.issues == []
    assert view.pending_barcodes == []


@pytest.mark.asyncio
async def test_repeated_ocr_result_is_not_double_counted(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL)
    assert await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL) is False

    session = await engine.get_session(scan_token)
    assert session.scanned_items["0"].scanned_count == 1
    _assert_aggregates_consistent(session)


@pytest.mark.asyncio
async def test_ocr_result_for_unknown_barcode_is_ignored(engine, scan_token) -> None:
    assert await engine.merge_ocr_result(scan_token, "ghost", MEATBALLS_LABEL) is False
    session = await engine.get_session(scan_token)
    assert session.scanned_barcodes == []


@pytest.mark.asyncio
async def test_unmatched_product_gets_its_own_bucket(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.merge_ocr_result(scan_token, "b1", OcrData(product_name="Pork Ribs", weight_kg=3.0))

    session = await engine.get_session(scan_token)
    bucket = session.scanned_items["unmatched:porkribs"]
    assert bucket.item_index is None
    assert bucket.item_name == "[Unmatched] Pork Ribs"
    assert bucket.scanned_weight == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_ocr_without_name_contributes_nothing_until_resolved(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.merge_ocr_result(scan_token, "b1", OcrData(product_name=None, weight_kg=7.0))

    view = await engine.status_view(scan_token)
    assert view.session.scanned_items == {}
    assert [i.type for i in view.issues] == ["missing_name"]


@pytest.mark.asyncio
async def test_concurrent_ocr_merges_keep_aggregates_consistent(engine, scan_token) -> None:
    barcodes = [f"b{n}" for n in range(6)]
    for barcode in barcodes:
        await _scan(engine, scan_token, barcode)

    labels = [
        MEATBALLS_LABEL,
        OcrData(product_name="שניצל עוף", weight_kg=8.1),
        OcrData(product_name="Chicken Schnitzel", weight_kg=7.9),
        OcrData(product_name="Pork Ribs", weight_kg=2.0),
        OcrData(product_name="קציצות ברוטב", weight_kg=5.2),
        OcrData(product_name="pork ribs!", weight_kg=1.0),
    ]
    await asyncio.gather(
        *(engine.merge_ocr_result(scan_token, b, label) for b, label in zip(barcodes, labels))
    )

    session = await engine.get_session(scan_token)
    assert session.scanned_items["0"].scanned_count == 2
    assert session.scanned_items["1"].scanned_count == 2
    assert session.scanned_items["unmatched:porkribs"].scanned_count == 2
    _assert_aggregates_consistent(session)


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sweep_fails_stale_pending_entries(engine, scan_token, clock) -> None:
    await _scan(engine, scan_token, "b1")

    assert await engine.sweep_timeouts(scan_token, now=clock.now + timedelta(seconds=39)) == []
    assert await engine.sweep_timeouts(scan_token, now=clock.now + timedelta(seconds=41)) == ["b1"]

    view = await engine.status_view(scan_token)
    entry = view.session.find_entry("b1")
    assert entry.ocr_status == OcrStatus.failed
    assert entry.ocr_error == OCR_TIMEOUT_ERROR
    assert [(i.barcode, i.type) for i in view.issues] == [("b1", "missing_both")]


@pytest.mark.asyncio
async def test_sweep_never_reverts_a_completed_entry(engine, scan_token, clock) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL)
    clock.advance(120)

    assert await engine.sweep_timeouts(scan_token) == []
    session = await engine.get_session(scan_token)
    assert session.find_entry("b1").ocr_status == OcrStatus.complete
    assert session.scanned_items["0"].scanned_count == 1


@pytest.mark.asyncio
async def test_late_ocr_result_rescues_timed_out_entry(engine, scan_token, clock) -> None:
    await _scan(engine, scan_token, "b1")
    clock.advance(41)
    await engine.sweep_timeouts(scan_token)

    assert await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL) is True
    session = await engine.get_session(scan_token)
    entry = session.find_entry("b1")
    assert entry.ocr_status == OcrStatus.complete
    assert entry.ocr_error is None
    assert session.scanned_items["0"].scanned_count == 1


@pytest.mark.asyncio
async def test_status_updates_skip_entries_that_cannot_fail(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    await _scan(engine, scan_token, "b2")
    await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL)

    applied = await engine.apply_status_updates(
        scan_token,
        [
            StatusUpdate(barcode="b1", ocr_error="client_timeout"),
            StatusUpdate(barcode="b2", ocr_error="client_timeout"),
            StatusUpdate(barcode="ghost"),
        ],
    )

    assert applied == 1
    session = await engine.get_session(scan_token)
    assert session.find_entry("b1").ocr_status == OcrStatus.complete
    assert session.find_entry("b2").ocr_status == OcrStatus.failed
    assert session.find_entry("b2").ocr_error == "client_timeout"


@pytest.mark.asyncio
async def test_mark_ocr_failed(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    assert await engine.mark_ocr_failed(scan_token, "b1", "OCR timed out after 30s") is True
    assert await engine.mark_ocr_failed(scan_token, "b1", "again") is False


# ---------------------------------------------------------------------------
# Manual resolution
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_resolve_timed_out_entry(engine, scan_token, clock) -> None:
    await _scan(engine, scan_token, "b1")
    clock.advance(41)
    await engine.sweep_timeouts(scan_token)

    entry = await engine.resolve_manually(
        scan_token, "b1", resolved_item_name="שניצל עוף", resolved_weight=8.0,
    )

    assert entry.ocr_status == OcrStatus.manual
    view = await engine.status_view(scan_token)
    assert view.issues == []
    bucket = view.session.scanned_items["1"]
    assert bucket.scanned_count == 1
    assert bucket.scanned_weight == pytest.approx(8.0)


@pytest.mark.asyncio
async def test_re_resolving_moves_the_contribution(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.merge_ocr_result(scan_token, "b1", OcrData(product_name="Pork Ribs", weight_kg=3.0))

    await engine.resolve_manually(scan_token, "b1", resolved_item_name="שניצל עוף")
    session = await engine.get_session(scan_token)
    assert "unmatched:porkribs" not in session.scanned_items
    assert session.scanned_items["1"].scanned_weight == pytest.approx(3.0)

    await engine.resolve_manually(scan_token, "b1", resolved_weight=8.5)
    session = await engine.get_session(scan_token)
    assert session.scanned_items["1"].scanned_count == 1
    assert session.scanned_items["1"].scanned_weight == pytest.approx(8.5)
    _assert_aggregates_consistent(session)


@pytest.mark.asyncio
async def test_resolve_requires_a_field(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    with pytest.raises(ValueError):
        await engine.resolve_manually(scan_token, "b1")


@pytest.mark.asyncio
async def test_resolve_unknown_barcode(engine, scan_token) -> None:
    with pytest.raises(ScanEntryNotFoundError):
        await engine.resolve_manually(scan_token, "ghost", resolved_weight=1.0)


@pytest.mark.parametrize(
    "resolution",
    [{"resolved_expiry": "01/05/2026"}, {"resolved_weight": 8.0}],
)
@pytest.mark.asyncio
async def test_resolution_leaving_no_name_is_rejected(engine, scan_token, clock, resolution) -> None:
    await _scan(engine, scan_token, "b1")
    clock.advance(41)
    await engine.sweep_timeouts(scan_token)

    with pytest.raises(ValueError, match="no product name"):
        await engine.resolve_manually(scan_token, "b1", **resolution)

    view = await engine.status_view(scan_token)
    assert view.session.find_entry("b1").ocr_status == OcrStatus.failed
    assert view.session.find_entry("b1").resolved_weight is None
    assert [(i.barcode, i.type) for i in view.issues] == [("b1", "missing_both")]


@pytest.mark.asyncio
async def test_resolution_leaving_no_weight_is_rejected(engine, scan_token) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.merge_ocr_result(scan_token, "b1", OcrData(product_name="שניצל עוף", weight_kg=None))

    with pytest.raises(ValueError, match="no weight"):
        await engine.resolve_manually(scan_token, "b1", resolved_expiry="01/05/2026")

    view = await engine.status_view(scan_token)
    assert view.session.find_entry("b1").ocr_status == OcrStatus.complete
    assert [i.type for i in view.issues] == ["missing_weight"]


@pytest.mark.asyncio
async def test_re_resolved_weights_match_a_fresh_fold_exactly(engine, scan_token) -> None:
    for barcode, weight in (("b1", 0.1), ("b2", 0.2), ("b3", 0.7)):
        await _scan(engine, scan_token, barcode)
        await engine.merge_ocr_result(scan_token, barcode, OcrData(product_name="שניצל עוף", weight_kg=weight))

    await engine.resolve_manually(scan_token, "b3", resolved_weight=0.6)

    session = await engine.get_session(scan_token)
    assert session.scanned_items["1"].scanned_weight == 0.9
    assert aggregate_entries(session)["1"].scanned_weight == 0.9
    _assert_aggregates_consistent(session)


# ---------------------------------------------------------------------------
# Manual entries
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_manual_entry_is_created_resolved(engine, scan_token) -> None:
    result = await engine.add_manual_entry(scan_token, "Chicken Schnitzel", 7.5, expiry="01/05/2026")

    assert result.success is True
    assert result.barcode.startswith("manual-")
    session = await engine.get_session(scan_token)
    entry = session.find_entry(result.barcode)
    assert entry.ocr_status == OcrStatus.manual
    assert entry.scan_method == ScanMethod.force_confirm
    assert entry.manual_entry.item_index == 1
    assert session.scanned_items["1"].scanned_weight == pytest.approx(7.5)


@pytest.mark.asyncio
async def test_manual_entries_in_same_millisecond_get_distinct_barcodes(engine, scan_token) -> None:
    first = await engine.add_manual_entry(scan_token, "שניצל עוף", 8.0)
    second = await engine.add_manual_entry(scan_token, "שניצל עוף", 8.0)

    assert first.barcode != second.barcode
    assert second.barcode == f"{first.barcode}-2"
    session = await engine.get_session(scan_token)
    assert session.scanned_items["1"].scanned_count == 2


@pytest.mark.asyncio
async def test_manual_entry_for_unknown_item(engine, scan_token) -> None:
    with pytest.raises(UnknownInvoiceItemError):
        await engine.add_manual_entry(scan_token, "Pork Ribs", 3.0)
    session = await engine.get_session(scan_token)
    assert session.scanned_barcodes == []


# ---------------------------------------------------------------------------
# Cancellation / inactive sessions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_deletes_the_session(engine, scan_token, repository) -> None:
    await _scan(engine, scan_token, "b1")
    await engine.cancel_session(scan_token)

    assert await repository.get(scan_token) is None
    with pytest.raises(SessionNotFoundError):
        await engine.cancel_session(scan_token)


async def _complete(repository, token: str) -> None:
    async def critical(session: ScanSession) -> None:
        session.status = SessionStatus.COMPLETED

    await repository.mutate(token, critical)


@pytest.mark.asyncio
async def test_completed_session_rejects_mutations(engine, scan_token, repository) -> None:
    await _scan(engine, scan_token, "b1")
    await _complete(repository, scan_token)

    with pytest.raises(SessionNotActiveError):
        await _scan(engine, scan_token, "b2")
    with pytest.raises(SessionNotActiveError):
        await engine.merge_ocr_result(scan_token, "b1", MEATBALLS_LABEL)
    with pytest.raises(SessionNotActiveError):
        await engine.sweep_timeouts(scan_token)
    with pytest.raises(SessionNotActiveError):
        await engine.resolve_manually(scan_token, "b1", resolved_weight=1.0)
    with pytest.raises(SessionNotActiveError):
        await engine.cancel_session(scan_token)

    session = await engine.get_session(scan_token)
    assert session.find_entry("b1").ocr_status == OcrStatus.pending
