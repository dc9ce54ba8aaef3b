"""
aggregates.py — Effective outcome of a scan entry and the folds built on it.

The same entry_outcome() drives both the incremental aggregate updates done by
the engine under lock and the from-scratch summary sent on finalize, so the
two can never disagree.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from boxscan.matching.matcher import match_invoice_item
from boxscan.sessions.schemas import (
    InvoiceItem,
    ItemKey,
    OcrStatus,
    Progress,
    ScanEntry,
    ScannedItem,
    ScanSession,
)

_COUNTED_STATUSES = (OcrStatus.complete, OcrStatus.manual)

WEIGHT_DECIMALS = 6


def round_weight(value: float) -> float:
    """Weights are stored rounded so add-then-retract lands on the same float as a fresh fold."""
    return round(value, WEIGHT_DECIMALS)


@dataclass(frozen=True)
class EntryOutcome:
    key: ItemKey
    item_name: str
    weight: float
    item: Optional[InvoiceItem] = None


def entry_product_name(entry: ScanEntry) -> Optional[str]:
    """Manual entry beats a resolution, which beats what OCR read."""
    if entry.manual_entry is not None:
        return entry.manual_entry.item_name
    if entry.resolved_item_name:
        return entry.resolved_item_name
    if entry.ocr_data is not None:
        return entry.ocr_data.product_name
    return None


def entry_weight(entry: ScanEntry) -> Optional[float]:
    if entry.manual_entry is not None:
        return entry.manual_entry.weight
    if entry.resolved_weight is not None:
        return entry.resolved_weight
    if entry.ocr_data is not None:
        return entry.ocr_data.weight_kg
    return None


def entry_outcome(entry: ScanEntry, invoice_items: Sequence[InvoiceItem]) -> Optional[EntryOutcome]:
    """
    What this entry contributes to scanned_items, or None.

    Pending and failed entries contribute nothing, and neither does an entry
    whose product name is still unknown (it is an open issue).
    """
    if entry.ocr_status not in _COUNTED_STATUSES:
        return None
    name = (entry_product_name(entry) or "").strip()
    if not name:
        return None
    weight = round_weight(entry_weight(entry) or 0.0)

    match = match_invoice_item(name, invoice_items)
    if match.item is not None:
        return EntryOutcome(
            key=ItemKey.matched(match.item.item_index),
            item_name=match.item.display_name,
            weight=weight,
            item=match.item,
        )
    return EntryOutcome(key=ItemKey.unmatched(name), item_name=f"[Unmatched] {name}", weight=weight)


def new_bucket(outcome: EntryOutcome) -> ScannedItem:
    item = outcome.item
    if item is None:
        return ScannedItem(item_index=None, item_name=outcome.item_name)
    return ScannedItem(
        item_index=item.item_index,
        item_name=outcome.item_name,
        expected_weight=item.quantity_kg,
        expected_boxes=item.expected_boxes,
    )


def aggregate_entries(session: ScanSession) -> dict[str, ScannedItem]:
    """Recompute scanned_items from scratch out of scanned_barcodes."""
    buckets: dict[str, ScannedItem] = {}
    for entry in session.scanned_barcodes:
        outcome = entry_outcome(entry, session.invoice_items)
        if outcome is None:
            continue
        key = str(outcome.key)
        bucket = buckets.setdefault(key, new_bucket(outcome))
        bucket.scanned_count += 1
        bucket.scanned_weight = round_weight(bucket.scanned_weight + outcome.weight)
    return buckets


def compute_progress(session: ScanSession) -> Progress:
    """
    Progress folded over scanned_items (never re-derived from raw entries).
    completion_rate is 0 when nothing is expected.
    """
    weight_scanned = sum(item.scanned_weight for item in session.scanned_items.values())
    boxes_scanned = sum(item.scanned_count for item in session.scanned_items.values())
    weight_expected = sum(item.quantity_kg for item in session.invoice_items)
    return Progress(
        total_items=len(session.invoice_items),
        total_boxes_scanned=boxes_scanned,
        total_boxes_expected=sum(item.expected_boxes for item in session.invoice_items),
        total_weight_scanned=weight_scanned,
        total_weight_expected=weight_expected,
        completion_rate=weight_scanned / weight_expected if weight_expected > 0 else 0.0,
    )


def summarize(session: ScanSession) -> dict:
    """Finalize summary for SCAN sessions — only complete/manual entries count."""
    scanned_items = aggregate_entries(session)
    total_scans = sum(1 for e in session.scanned_barcodes if e.ocr_status in _COUNTED_STATUSES)
    return {
        "total_items": len(scanned_items),
        "total_scans": total_scans,
        "total_weight_scanned": round(sum(b.scanned_weight for b in scanned_items.values()), 3),
        "scanned_items": {key: bucket.model_dump(mode="json") for key, bucket in scanned_items.items()},
    }


def summarize_issued(session: ScanSession) -> dict:
    """Finalize summary for ISSUE sessions, grouped by item name."""
    breakdown: dict[str, dict] = {}
    for box in session.issued_boxes:
        name = box.item_name or "Unknown"
        row = breakdown.setdefault(name, {"item_name": name, "boxes": 0, "weight": 0.0})
        row["boxes"] += 1
        row["weight"] += box.weight
    return {
        "total_boxes": len(session.issued_boxes),
        "total_weight": round(sum(b.weight for b in session.issued_boxes), 3),
        "item_breakdown": list(breakdown.values()),
        "issued_items": [
            box.model_dump(mode="json", exclude={"issued_at"}) for box in session.issued_boxes
        ],
    }
