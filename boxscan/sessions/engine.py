"""
engine.py — Scan session reconciliation engine.

Four independent producers mutate the same session record:
  - the scanning client        append_scan(), add_manual_entry()
  - the OCR completion path    merge_ocr_result(), mark_ocr_failed()
  - the timeout watchdog       sweep_timeouts(), apply_status_updates()
  - the person fixing issues   resolve_manually()

Every one of them runs its read-modify-write through SessionRepository.mutate(),
which holds the session lock and passes in the record re-read under it.

Aggregate bookkeeping: each ScanEntry remembers what it currently contributes
to scanned_items (aggregate_key / aggregate_weight). Whenever an entry's
outcome may have changed, _reapply_contribution() retracts the old
contribution and applies the new one in the same critical section, so
scanned_items always equals aggregate_entries(session).

No HTTPException anywhere — this is pure business logic, HTTP layer is routes.py.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from boxscan.config import settings
from boxscan.errors import (
    ScanEntryNotFoundError,
    SessionNotActiveError,
    SessionNotFoundError,
    UnknownInvoiceItemError,
)
from boxscan.matching.aggregates import (
    compute_progress,
    entry_outcome,
    entry_product_name,
    entry_weight,
    new_bucket,
    round_weight,
)
from boxscan.matching.inference import detect_issues
from boxscan.matching.matcher import match_invoice_item
from boxscan.sessions.schemas import (
    AppendResult,
    CreateSessionRequest,
    ManualEntry,
    OcrData,
    OcrStatus,
    OperationType,
    ScanEntry,
    ScanMethod,
    ScanSession,
    SessionCreated,
    SessionStatusView,
    StatusUpdate,
)
from boxscan.store import DELETE, SessionRepository, session_ttl

logger = logging.getLogger(__name__)

# A pending entry older than this is treated as a lost OCR callback
OCR_PENDING_DEADLINE_SECONDS = 40
OCR_TIMEOUT_ERROR = "ocr_timeout"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_active(session: ScanSession) -> None:
    if not session.is_active:
        raise SessionNotActiveError(
            f"Session {session.token} is {session.status.value}", token=session.token,
        )


def _require_entry(session: ScanSession, barcode: str) -> ScanEntry:
    entry = session.find_entry(barcode)
    if entry is None:
        raise ScanEntryNotFoundError(
            f"Barcode {barcode} not found in session", token=session.token,
        )
    return entry


def _reapply_contribution(session: ScanSession, entry: ScanEntry) -> None:
    """Retract the entry's previous aggregate contribution and apply its current one."""
    if entry.aggregate_key is not None:
        bucket = session.scanned_items.get(entry.aggregate_key)
        if bucket is not None:
            bucket.scanned_count -= 1
            bucket.scanned_weight = round_weight(bucket.scanned_weight - entry.aggregate_weight)
            if bucket.scanned_count <= 0:
                del session.scanned_items[entry.aggregate_key]
    entry.aggregate_key = None
    entry.aggregate_weight = 0.0

    outcome = entry_outcome(entry, session.invoice_items)
    if outcome is None:
        return
    key = str(outcome.key)
    bucket = session.scanned_items.get(key)
    if bucket is None:
        bucket = session.scanned_items[key] = new_bucket(outcome)
    bucket.scanned_count += 1
    bucket.scanned_weight = round_weight(bucket.scanned_weight + outcome.weight)
    entry.aggregate_key = key
    entry.aggregate_weight = outcome.weight


class ScanSessionEngine:
    def __init__(
        self,
        repository: SessionRepository,
        app_url: Optional[str] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.repository = repository
        self._app_url = (app_url or settings.app_url).rstrip("/")
        self._clock = clock or _utc_now

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_session(self, request: CreateSessionRequest) -> SessionCreated:
        now = self._clock()
        token = secrets.token_urlsafe(16)
        session = ScanSession(
            token=token,
            chat_id=request.chat_id,
            operation_type=request.operation_type,
            document_number=request.document_number,
            invoice_items=request.invoice_items,
            invoice_image_url=request.invoice_image_url,
            created_at=now,
            expires_at=now,
        )
        session.expires_at = now + timedelta(seconds=session_ttl(session))
        await self.repository.create(session)

        path = "issue" if request.operation_type == OperationType.ISSUE else "scan"
        return SessionCreated(
            token=token,
            scan_url=f"{self._app_url}/{path}/{token}",
            expires_at=session.expires_at,
        )

    async def get_session(self, token: str) -> ScanSession:
        session = await self.repository.get(token)
        if session is None:
            raise SessionNotFoundError(f"Session {token} not found", token=token)
        return session

    async def status_view(self, token: str) -> SessionStatusView:
        """Polling view — lock-free, may be a moment stale."""
        session = await self.get_session(token)
        return SessionStatusView(
            session=session,
            progress=compute_progress(session),
            issues=detect_issues(session),
            pending_barcodes=[
                e.barcode for e in session.scanned_barcodes if e.ocr_status == OcrStatus.pending
            ],
        )

    # ------------------------------------------------------------------
    # Scanning client
    # ------------------------------------------------------------------

    async def append_scan(
        self,
        token: str,
        barcode: str,
        image_url: str,
        image_public_id: str = "",
        scan_method: ScanMethod = ScanMethod.barcode,
        scanned_at: Optional[datetime] = None,
    ) -> AppendResult:
        """Append a pending entry. A repeated barcode is reported, not re-added."""

        async def critical(session: ScanSession) -> AppendResult:
            _require_active(session)
            if session.find_entry(barcode) is not None:
                logger.info("Duplicate scan token=%s barcode=%s", token, barcode)
                return AppendResult(
                    success=False,
                    is_duplicate=True,
                    barcode=barcode,
                    message="Barcode already scanned",
                    overall_progress=compute_progress(session),
                )
            session.scanned_barcodes.append(
                ScanEntry(
                    barcode=barcode,
                    scanned_at=_as_utc(scanned_at) if scanned_at else self._clock(),
                    image_url=image_url,
                    image_public_id=image_public_id,
                    scan_method=scan_method,
                    ocr_status=OcrStatus.pending,
                )
            )
            logger.info(
                "Scan appended token=%s barcode=%s method=%s total=%d",
                token, barcode, scan_method.value, len(session.scanned_barcodes),
            )
            return AppendResult(
                success=True,
                barcode=barcode,
                overall_progress=compute_progress(session),
            )

        return await self.repository.mutate(token, critical)

    async def add_manual_entry(
        self,
        token: str,
        item_name: str,
        weight: float,
        expiry: str = "",
        notes: Optional[str] = None,
        image_url: str = "",
        image_public_id: str = "",
    ) -> AppendResult:
        """
        Record a box that was never barcode-scanned. The item must be on the
        invoice; the entry is created already resolved (ocr_status=manual).
        """

        async def critical(session: ScanSession) -> AppendResult:
            _require_active(session)
            match = match_invoice_item(item_name, session.invoice_items)
            if match.item is None:
                raise UnknownInvoiceItemError(
                    f'Item "{item_name}" not found in invoice', token=token,
                )
            now = self._clock()
            barcode = f"manual-{int(now.timestamp() * 1000)}-{match.item.item_index}"
            # Two entries in the same millisecond for the same item
            suffix = 1
            while session.find_entry(barcode) is not None:
                suffix += 1
                barcode = f"manual-{int(now.timestamp() * 1000)}-{match.item.item_index}-{suffix}"

            entry = ScanEntry(
                barcode=barcode,
                scanned_at=now,
                image_url=image_url,
                image_public_id=image_public_id,
                scan_method=ScanMethod.force_confirm,
                ocr_status=OcrStatus.manual,
                manual_entry=ManualEntry(
                    item_name=item_name,
                    item_index=match.item.item_index,
                    weight=weight,
                    expiry=expiry,
                    notes=notes,
                ),
            )
            session.scanned_barcodes.append(entry)
            _reapply_contribution(session, entry)
            logger.info(
                "Manual entry added token=%s barcode=%s item_index=%d",
                token, barcode, match.item.item_index,
            )
            return AppendResult(success=True, barcode=barcode, overall_progress=compute_progress(session))

        return await self.repository.mutate(token, critical)

    # ------------------------------------------------------------------
    # OCR completion path
    # ------------------------------------------------------------------

    async def merge_ocr_result(self, token: str, barcode: str, ocr_data: OcrData) -> bool:
        """
        Merge an OCR result into the entry. Idempotent: an unknown barcode, or
        an entry already complete / manually resolved, is left untouched.
        Returns True if the result was applied.
        """

        async def critical(session: ScanSession) -> bool:
            _require_active(session)
            entry = session.find_entry(barcode)
            if entry is None:
                logger.warning("OCR result for unknown barcode token=%s barcode=%s", token, barcode)
                return False
            if not entry.ocr_status.can_transition_to(OcrStatus.complete):
                logger.info(
                    "Ignoring late OCR result token=%s barcode=%s status=%s",
                    token, barcode, entry.ocr_status.value,
                )
                return False

            entry.ocr_data = ocr_data
            entry.ocr_processed_at = self._clock()
            entry.ocr_error = None
            entry.transition(OcrStatus.complete)
            _reapply_contribution(session, entry)
            logger.info(
                "OCR merged token=%s barcode=%s bucket=%s",
                token, barcode, entry.aggregate_key,
            )
            return True

        return await self.repository.mutate(token, critical)

    async def mark_ocr_failed(self, token: str, barcode: str, reason: str) -> bool:
        """Returns True if the entry moved to failed; False if it was already past that."""
        applied = await self.apply_status_updates(
            token, [StatusUpdate(barcode=barcode, ocr_error=reason)],
        )
        return applied == 1

    async def apply_status_updates(self, token: str, updates: list[StatusUpdate]) -> int:
        """
        Batched failure marking for the client watchdog. Updates for unknown
        barcodes, or entries that can no longer fail (complete, manual), are skipped.
        Returns the number applied.
        """

        async def critical(session: ScanSession) -> int:
            _require_active(session)
            applied = 0
            for update in updates:
                entry = session.find_entry(update.barcode)
                target = OcrStatus(update.ocr_status)
                if entry is None or not entry.ocr_status.can_transition_to(target):
                    continue
                entry.transition(target)
                entry.ocr_error = update.ocr_error
                applied += 1
            if applied:
                logger.info("Status updates applied token=%s applied=%d of=%d", token, applied, len(updates))
            return applied

        return await self.repository.mutate(token, critical)

    async def sweep_timeouts(self, token: str, now: Optional[datetime] = None) -> list[str]:
        """Fail every entry still pending past the deadline. Returns the barcodes failed."""

        async def critical(session: ScanSession) -> list[str]:
            _require_active(session)
            cutoff = _as_utc(now or self._clock()) - timedelta(seconds=OCR_PENDING_DEADLINE_SECONDS)
            timed_out: list[str] = []
            for entry in session.scanned_barcodes:
                if entry.ocr_status == OcrStatus.pending and _as_utc(entry.scanned_at) < cutoff:
                    entry.transition(OcrStatus.failed)
                    entry.ocr_error = OCR_TIMEOUT_ERROR
                    timed_out.append(entry.barcode)
            if timed_out:
                logger.warning("OCR timed out token=%s barcodes=%s", token, ",".join(timed_out))
            return timed_out

        return await self.repository.mutate(token, critical)

    # ------------------------------------------------------------------
    # Manual resolution
    # ------------------------------------------------------------------

    async def resolve_manually(
        self,
        token: str,
        barcode: str,
        resolved_item_name: Optional[str] = None,
        resolved_weight: Optional[float] = None,
        resolved_expiry: Optional[str] = None,
    ) -> ScanEntry:
        if not resolved_item_name and resolved_weight is None and not resolved_expiry:
            raise ValueError("At least one of resolved_item_name, resolved_weight, resolved_expiry is required")

        async def critical(session: ScanSession) -> ScanEntry:
            _require_active(session)
            entry = _require_entry(session, barcode)
            entry.transition(OcrStatus.manual)
            if resolved_item_name:
                entry.resolved_item_name = resolved_item_name.strip()
            if resolved_weight is not None:
                entry.resolved_weight = resolved_weight
            if resolved_expiry:
                entry.resolved_expiry = resolved_expiry
            # A manual entry is never an open issue, so it must be countable
            if not (entry_product_name(entry) or "").strip():
                raise ValueError(f"Barcode {barcode} still has no product name; resolved_item_name is required")
            if not entry_weight(entry):
                raise ValueError(f"Barcode {barcode} still has no weight; resolved_weight is required")
            _reapply_contribution(session, entry)
            logger.info(
                "Resolved manually token=%s barcode=%s bucket=%s",
                token, barcode, entry.aggregate_key,
            )
            return entry

        return await self.repository.mutate(token, critical)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def cancel_session(self, token: str) -> None:
        """Drop an ACTIVE session outright; finished sessions keep their record."""

        async def critical(session: ScanSession):
            _require_active(session)
            return DELETE

        await self.repository.mutate(token, critical)
        logger.info("Cancelled session token=%s", token)
