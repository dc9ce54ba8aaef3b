"""
routes.py — ISSUE flow HTTP endpoints.

POST /api/issue-confirm   — record a box the client already issued in the ledger
POST /api/issue-complete  — finalize the ISSUE session and notify the bot
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from boxscan.deps import get_dispatcher, get_repository
from boxscan.finalize.dispatcher import FinalizationDispatcher, FinalizeResult
from boxscan.issue.service import record_issued_box
from boxscan.sessions.schemas import AppendResult, IssuedBox
from boxscan.store import SessionRepository

router = APIRouter(prefix="/api", tags=["Issue"])


class IssueConfirmRequest(IssuedBox):
    token: str


class IssueCompleteRequest(BaseModel):
    token: str


@router.post("/issue-confirm", response_model=AppendResult)
async def confirm_issue(
    body: IssueConfirmRequest,
    repository: SessionRepository = Depends(get_repository),
) -> AppendResult:
    box = IssuedBox.model_validate(body.model_dump(exclude={"token"}))
    return await record_issued_box(repository, body.token, box)


@router.post("/issue-complete", response_model=FinalizeResult)
async def complete_issue(
    body: IssueCompleteRequest,
    dispatcher: FinalizationDispatcher = Depends(get_dispatcher),
) -> FinalizeResult:
    return await dispatcher.finalize(body.token)
