"""
dispatcher.py — One-shot session finalization and bot webhook delivery.

finalize() is idempotent:
  - COMPLETED + webhook_sent  → return the stored summary, deliver nothing
  - otherwise, under the session lock: re-read, build the summary, POST it,
    and ONLY on a 2xx mark COMPLETED / webhook_sent / completed_at and persist
    with the 24h TTL

The lock is held across the webhook call so COMPLETED and webhook_sent are set
together with the summary that was actually delivered. The whole delivery
(connect, send, response) runs under one asyncio deadline below the lock TTL;
httpx timeouts alone are per phase and can add up past it.

If delivery fails the session stays ACTIVE with webhook_sent=false and the
caller retries finalize — downstream inventory booking depends on this
notification, so it is never marked sent without confirmed delivery.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx
from pydantic import BaseModel

from boxscan.config import settings
from boxscan.errors import SessionNotActiveError, SessionNotReadyError, WebhookDeliveryError
from boxscan.matching.aggregates import summarize, summarize_issued
from boxscan.matching.inference import detect_issues
from boxscan.sessions.schemas import OcrStatus, OperationType, ScanSession, SessionStatus
from boxscan.store import SessionRepository

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhook/scan-complete"


class FinalizeResult(BaseModel):
    success: bool = True
    already_completed: bool = False
    delivered: bool
    summary: dict


def build_payload(session: ScanSession) -> dict:
    """Webhook body for the downstream bot."""
    if session.operation_type == OperationType.ISSUE:
        return {
            "chat_id": session.chat_id,
            "token": session.token,
            "operation_type": OperationType.ISSUE.value,
            "summary": summarize_issued(session),
        }
    return {
        "chat_id": session.chat_id,
        "token": session.token,
        "document_number": session.document_number,
        "operation_type": session.operation_type.value,
        "summary": summarize(session),
        "scanned_barcodes": [
            entry.model_dump(mode="json", exclude={"aggregate_key", "aggregate_weight"})
            for entry in session.scanned_barcodes
        ],
    }


def _check_ready(session: ScanSession) -> None:
    if session.operation_type == OperationType.ISSUE:
        if not session.issued_boxes:
            raise SessionNotReadyError("No boxes have been issued in this session", token=session.token)
        return
    pending = [e.barcode for e in session.scanned_barcodes if e.ocr_status == OcrStatus.pending]
    if pending:
        raise SessionNotReadyError(
            f"OCR still pending for {len(pending)} box(es)", token=session.token,
        )
    issues = detect_issues(session)
    if issues:
        raise SessionNotReadyError(
            f"{len(issues)} box(es) need manual resolution", token=session.token,
        )


class FinalizationDispatcher:
    def __init__(
        self,
        repository: SessionRepository,
        http_client: httpx.AsyncClient,
        webhook_url: Optional[str],
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.repository = repository
        self._http = http_client
        self._webhook_url = (webhook_url or "").rstrip("/")
        self._timeout = timeout_seconds if timeout_seconds is not None else settings.webhook_timeout_seconds

    async def finalize(self, token: str, force: bool = False) -> FinalizeResult:
        """
        Complete the session and notify the bot exactly once.

        force=True skips the pending/open-issue check (the UI's force-confirm);
        it never skips delivery.
        """

        async def critical(session: ScanSession) -> FinalizeResult:
            if session.status == SessionStatus.COMPLETED and session.webhook_sent:
                logger.info("Session already completed token=%s", token)
                return FinalizeResult(
                    already_completed=True,
                    delivered=False,
                    summary=build_payload(session)["summary"],
                )
            if not session.is_active:
                raise SessionNotActiveError(
                    f"Session {token} is {session.status.value}", token=token,
                )
            if not force:
                _check_ready(session)

            payload = build_payload(session)
            await self._deliver(token, payload)

            session.status = SessionStatus.COMPLETED
            session.webhook_sent = True
            session.completed_at = datetime.now(timezone.utc)
            logger.info(
                "Session completed token=%s operation_type=%s",
                token, session.operation_type.value,
            )
            return FinalizeResult(delivered=True, summary=payload["summary"])

        return await self.repository.mutate(token, critical)

    async def _deliver(self, token: str, payload: dict) -> None:
        if not self._webhook_url:
            raise WebhookDeliveryError("Bot webhook URL is not configured", token=token)
        url = f"{self._webhook_url}{WEBHOOK_PATH}"
        try:
            response = await asyncio.wait_for(self._http.post(url, json=payload), timeout=self._timeout)
            response.raise_for_status()
        except asyncio.TimeoutError as exc:
            logger.error("Webhook timed out token=%s after=%.1fs", token, self._timeout)
            raise WebhookDeliveryError(
                f"Bot webhook timed out after {self._timeout:.0f}s", token=token,
            ) from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "Webhook rejected token=%s status=%d body=%s",
                token, exc.response.status_code, exc.response.text[:200],
            )
            raise WebhookDeliveryError(
                f"Bot webhook failed: {exc.response.status_code}", token=token,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Webhook unreachable token=%s error=%s", token, exc)
            raise WebhookDeliveryError(f"Bot webhook unreachable: {exc}", token=token) from exc
        logger.info("Webhook delivered token=%s status=%d", token, response.status_code)
