"""
inference.py — Open-issue detection and weight suggestions.

Both functions are pure: they read a session value and never mutate it.
An inferred weight is only a suggestion shown to the person resolving the
issue; nothing here writes it into the record.
"""
from __future__ import annotations

import logging
from typing import Optional

from boxscan.matching.aggregates import entry_outcome, entry_product_name, entry_weight
from boxscan.matching.matcher import match_invoice_item
from boxscan.sessions.schemas import OcrIssue, OcrStatus, ScanEntry, ScanSession

logger = logging.getLogger(__name__)


def infer_weight(entry: ScanEntry, session: ScanSession) -> Optional[float]:
    """
    Suggest a weight for an entry whose product matched an invoice item but
    whose weight could not be read.

    remaining_weight = quantity_kg - weight of the other matched boxes
    remaining_boxes  = expected_boxes - other matched boxes - 1 (this box)

    No boxes left after this one → the whole remainder (if positive).
    Otherwise an even split of the remainder over this box and the ones still to come.
    """
    match = match_invoice_item(entry_product_name(entry), session.invoice_items)
    if match.item is None:
        return None
    item = match.item

    weights: list[float] = []
    for other in session.scanned_barcodes:
        if other.barcode == entry.barcode:
            continue
        outcome = entry_outcome(other, session.invoice_items)
        weight = entry_weight(other)
        if outcome is None or outcome.item is None or not weight:
            continue
        if outcome.item.item_index == item.item_index:
            weights.append(weight)

    remaining_weight = item.quantity_kg - sum(weights)
    remaining_boxes = item.expected_boxes - len(weights) - 1

    if remaining_boxes <= 0:
        return remaining_weight if remaining_weight > 0 else None
    return remaining_weight / (remaining_boxes + 1)


def detect_issues(session: ScanSession) -> list[OcrIssue]:
    """
    Entries that block finalization until someone resolves them.

    complete entries: missing product name and/or weight
    failed entries:   nothing usable was read → missing_both
    """
    issues: list[OcrIssue] = []
    for entry in session.scanned_barcodes:
        if entry.ocr_status == OcrStatus.failed:
            issues.append(OcrIssue(barcode=entry.barcode, image_url=entry.image_url, type="missing_both"))
            continue
        if entry.ocr_status != OcrStatus.complete:
            continue

        has_name = bool((entry_product_name(entry) or "").strip())
        has_weight = bool(entry_weight(entry))
        if has_name and has_weight:
            continue
        if not has_name and not has_weight:
            issue_type = "missing_both"
        elif not has_name:
            issue_type = "missing_name"
        else:
            issue_type = "missing_weight"

        issues.append(
            OcrIssue(
                barcode=entry.barcode,
                image_url=entry.image_url,
                type=issue_type,
                inferred_weight=infer_weight(entry, session) if issue_type == "missing_weight" else None,
                ocr_data=entry.ocr_data,
            )
        )

    if issues:
        logger.debug("Open issues token=%s count=%d", session.token, len(issues))
    return issues
