"""
service.py — ISSUE flow: boxes issued out of stock to production.

The inventory ledger (box lookup, OUT transaction, quantity decrement) lives
outside this service. The client confirms the box with the ledger first and
passes the resulting transaction id; here we only append it to the session
under the lock, deduplicated by barcode. Completion goes through the same
FinalizationDispatcher as SCAN sessions.
"""
import logging
from datetime import datetime, timezone

from boxscan.errors import SessionNotActiveError
from boxscan.sessions.schemas import AppendResult, IssuedBox, OperationType, ScanSession
from boxscan.store import SessionRepository

logger = logging.getLogger(__name__)


async def record_issued_box(repository: SessionRepository, token: str, box: IssuedBox) -> AppendResult:
    async def critical(session: ScanSession) -> AppendResult:
        if session.operation_type != OperationType.ISSUE or not session.is_active:
            raise SessionNotActiveError("Invalid session state for issuing boxes", token=token)
        if any(b.barcode == box.barcode for b in session.issued_boxes):
            return AppendResult(
                success=False,
                is_duplicate=True,
                barcode=box.barcode,
                message="This box has already been issued in this session",
            )
        issued = box.model_copy(update={"issued_at": box.issued_at or datetime.now(timezone.utc)})
        session.issued_boxes.append(issued)
        logger.info(
            "Box issued token=%s barcode=%s transaction_id=%s",
            token, box.barcode, box.transaction_id,
        )
        return AppendResult(success=True, barcode=box.barcode)

    return await repository.mutate(token, critical)
