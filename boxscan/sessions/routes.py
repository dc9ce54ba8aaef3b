"""
routes.py — Scan session HTTP endpoints.

POST   /api/session                  — create a session, returns token + scan URL
GET    /api/session/{token}          — full session record (lock-free read)
GET    /api/session/{token}/status   — record + progress + open issues, for polling
PUT    /api/session/{token}/status   — batched OCR failure marking (client watchdog)
POST   /api/session/{token}/sweep    — server-side OCR timeout sweep
DELETE /api/session/{token}          — cancel an active session
POST   /api/scan                     — append a scanned box
POST   /api/manual-entry             — add a box that was never scanned
POST   /api/resolve                  — manually resolve an OCR issue

Domain errors (errors.py) propagate to the handlers registered in main.py.
A duplicate scan is a 200 with is_duplicate=true, not an error.
"""
import logging

from fastapi import APIRouter, Depends

from boxscan.deps import get_engine
from boxscan.sessions.engine import ScanSessionEngine
from boxscan.sessions.schemas import (
    AppendResult,
    CreateSessionRequest,
    ManualEntryRequest,
    ResolveRequest,
    ScanEntry,
    ScanRequest,
    ScanSession,
    SessionCreated,
    SessionStatusView,
    StatusUpdateRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["Scan Session"])


@router.post("/session", response_model=SessionCreated)
async def create_session(
    body: CreateSessionRequest,
    engine: ScanSessionEngine = Depends(get_engine),
) -> SessionCreated:
    return await engine.create_session(body)


@router.get("/session/{token}", response_model=ScanSession)
async def get_session(token: str, engine: ScanSessionEngine = Depends(get_engine)) -> ScanSession:
    return await engine.get_session(token)


@router.get("/session/{token}/status", response_model=SessionStatusView)
async def get_session_status(
    token: str,
    engine: ScanSessionEngine = Depends(get_engine),
) -> SessionStatusView:
    return await engine.status_view(token)


@router.put("/session/{token}/status")
async def update_statuses(
    token: str,
    body: StatusUpdateRequest,
    engine: ScanSessionEngine = Depends(get_engine),
) -> dict:
    applied = await engine.apply_status_updates(token, body.updates)
    return {"success": True, "applied": applied}


@router.post("/session/{token}/sweep")
async def sweep_timeouts(token: str, engine: ScanSessionEngine = Depends(get_engine)) -> dict:
    timed_out = await engine.sweep_timeouts(token)
    return {"success": True, "timed_out": timed_out}


@router.delete("/session/{token}")
async def cancel_session(token: str, engine: ScanSessionEngine = Depends(get_engine)) -> dict:
    await engine.cancel_session(token)
    return {"success": True}


@router.post("/scan", response_model=AppendResult)
async def submit_scan(
    body: ScanRequest,
    engine: ScanSessionEngine = Depends(get_engine),
) -> AppendResult:
    """
    Barcodes are box identifiers only — product and weight come from OCR.
    The image must already be hosted; image_url is required.
    """
    return await engine.append_scan(
        body.token,
        body.barcode,
        body.image_url,
        image_public_id=body.image_public_id,
        scan_method=body.scan_method,
        scanned_at=body.detected_at,
    )


@router.post("/manual-entry", response_model=AppendResult)
async def submit_manual_entry(
    body: ManualEntryRequest,
    engine: ScanSessionEngine = Depends(get_engine),
) -> AppendResult:
    return await engine.add_manual_entry(
        body.token,
        body.item_name,
        body.weight,
        expiry=body.expiry,
        notes=body.notes,
        image_url=body.image_url,
        image_public_id=body.image_public_id,
    )


@router.post("/resolve")
async def resolve_issue(
    body: ResolveRequest,
    engine: ScanSessionEngine = Depends(get_engine),
) -> dict:
    entry: ScanEntry = await engine.resolve_manually(
        body.token,
        body.barcode,
        resolved_item_name=body.resolved_item_name,
        resolved_weight=body.resolved_weight,
        resolved_expiry=body.resolved_expiry,
    )
    return {"success": True, "entry": entry.model_dump(mode="json")}
