"""
routes.py — OCR HTTP endpoints.

POST /api/ocr           — start OCR for a scanned box; returns immediately,
                          extraction runs as a background task
POST /api/ocr/callback  — result from an external OCR worker

Both paths end in the engine's locked mutators (merge_ocr_result /
mark_ocr_failed), which re-read the session before merging.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from boxscan.deps import get_engine
from boxscan.errors import ScanEntryNotFoundError, SessionNotActiveError
from boxscan.ocr.ocr_service import run_ocr
from boxscan.ocr.schemas import OcrCallbackRequest, OcrTriggerRequest
from boxscan.sessions.engine import ScanSessionEngine
from boxscan.sessions.schemas import OcrStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["OCR"])


@router.post("/ocr")
async def trigger_ocr(
    body: OcrTriggerRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    engine: ScanSessionEngine = Depends(get_engine),
) -> dict:
    session = await engine.get_session(body.token)
    if not session.is_active:
        raise SessionNotActiveError(f"Session {body.token} is {session.status.value}", token=body.token)
    entry = session.find_entry(body.barcode)
    if entry is None:
        raise ScanEntryNotFoundError(f"Barcode {body.barcode} not found in session", token=body.token)

    if entry.ocr_status == OcrStatus.complete:
        return {"success": True, "ocr_data": entry.ocr_data.model_dump() if entry.ocr_data else None}

    mistral = request.app.state.mistral
    if mistral is None:
        raise HTTPException(status_code=503, detail="OCR service not configured")

    image_url = body.image_url or entry.image_url
    if not image_url:
        raise HTTPException(status_code=400, detail="No image for this barcode")

    background_tasks.add_task(
        run_ocr,
        engine,
        mistral,
        body.token,
        body.barcode,
        image_url,
        request.app.state.ocr_semaphore,
    )
    logger.info("OCR queued token=%s barcode=%s", body.token, body.barcode)
    return {"success": True, "message": "OCR processing started"}


@router.post("/ocr/callback")
async def ocr_callback(
    body: OcrCallbackRequest,
    engine: ScanSessionEngine = Depends(get_engine),
) -> dict:
    if body.status == "success":
        applied = await engine.merge_ocr_result(body.token, body.barcode, body.ocr_data)
    else:
        applied = await engine.mark_ocr_failed(body.token, body.barcode, body.error or "ocr_failed")
    return {"success": True, "applied": applied}
