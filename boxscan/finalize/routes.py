"""
routes.py — POST /api/complete: finalize a SCAN session and notify the bot.

A failed delivery surfaces as 502 DELIVERY_FAILED and leaves the session
ACTIVE; the client simply calls this endpoint again.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from boxscan.deps import get_dispatcher
from boxscan.finalize.dispatcher import FinalizationDispatcher, FinalizeResult

router = APIRouter(prefix="/api", tags=["Finalize"])


class CompleteRequest(BaseModel):
    token: str
    force: bool = False


@router.post("/complete", response_model=FinalizeResult)
async def complete_session(
    body: CompleteRequest,
    dispatcher: FinalizationDispatcher = Depends(get_dispatcher),
) -> FinalizeResult:
    return await dispatcher.finalize(body.token, force=body.force)
