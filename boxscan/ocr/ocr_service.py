"""
ocr_service.py — Box label OCR via the Mistral vision model.

Components:
  LABEL_PROMPT        — extraction instructions (strict JSON out)
  parse_label_json()  — tolerant parsing of the model reply into OcrData
  extract_box_label() — async Mistral call bounded by the OCR timeout (30s)
  run_ocr()           — background task: extract, then merge or mark failed

OCR is fire-and-forget relative to the scan: run_ocr() never raises. Every
outcome lands on the scan entry through the engine's locked mutators, where
the polling client picks it up.

No module-level asyncio.Semaphore — semaphore is created in main.py lifespan
and passed as a parameter (avoids RuntimeError: no running event loop at import).
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from contextlib import nullcontext
from typing import TYPE_CHECKING, Any, Optional

from mistralai import Mistral

from boxscan.config import settings
from boxscan.errors import OcrExtractionError, ScanSessionError
from boxscan.sessions.schemas import OcrData

if TYPE_CHECKING:
    from boxscan.sessions.engine import ScanSessionEngine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Mistral API constants
# ---------------------------------------------------------------------------

OCR_TEMPERATURE = 0.0
OCR_MAX_TOKENS = 400

LABEL_PROMPT = """You are reading a photo of a meat box sticker in an Israeli warehouse.
The label is mostly in Hebrew. Extract these fields and reply with ONE JSON object only:
{
  "product_name": Hebrew product name exactly as printed, or null,
  "weight_kg": net weight in kilograms as a number, or null,
  "production_date": "DD/MM/YYYY" or null,
  "expiry_date": "DD/MM/YYYY" or null,
  "barcode_digits": digits printed under the barcode, or null
}
If a field is not clearly readable, use null. Do not guess."""

_JSON_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_weight(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        weight = float(value)
    else:
        # "12,5 kg" → 12.5
        match = re.search(r"\d+(?:[.,]\d+)?", str(value))
        if match is None:
            return None
        weight = float(match.group(0).replace(",", "."))
    return weight if weight > 0 else None


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_label_json(content: str) -> OcrData:
    """Parse the model's reply. Raises OcrExtractionError if it is not a JSON object."""
    text = _JSON_FENCE.sub("", content.strip())
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise OcrExtractionError(f"OCR reply is not JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise OcrExtractionError("OCR reply is not a JSON object")

    return OcrData(
        product_name=_clean_text(raw.get("product_name")),
        weight_kg=_parse_weight(raw.get("weight_kg")),
        production_date=_clean_text(raw.get("production_date")),
        expiry_date=_clean_text(raw.get("expiry_date")),
        barcode_digits=_clean_text(raw.get("barcode_digits")),
    )


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

async def extract_box_label(
    client: Mistral,
    image_url: str,
    timeout: Optional[float] = None,
    semaphore: Optional[asyncio.Semaphore] = None,
) -> OcrData:
    """
    Run the vision model on a hosted box photo.

    Raises OcrExtractionError on timeout, API failure, or unusable output.
    """
    timeout = timeout if timeout is not None else settings.ocr_timeout_seconds
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": LABEL_PROMPT},
                {"type": "image_url", "image_url": image_url},
            ],
        }
    ]

    logger.info("Calling Mistral OCR model=%s timeout=%.0fs", settings.ocr_model, timeout)
    async with semaphore or nullcontext():
        try:
            response = await asyncio.wait_for(
                client.chat.complete_async(
                    model=settings.ocr_model,
                    messages=messages,
                    temperature=OCR_TEMPERATURE,
                    max_tokens=OCR_MAX_TOKENS,
                    response_format={"type": "json_object"},
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise OcrExtractionError(f"OCR timed out after {timeout:.0f}s") from exc
        except Exception as exc:
            # SDK raises its own error hierarchy (SDKError, HTTPValidationError, httpx errors)
            raise OcrExtractionError(f"OCR request failed: {type(exc).__name__}: {exc}") from exc

    if not response or not response.choices:
        raise OcrExtractionError("OCR returned no choices")
    content = response.choices[0].message.content or ""
    if not isinstance(content, str):
        # Content chunks: join the text parts
        content = "".join(getattr(chunk, "text", "") or "" for chunk in content)
    return parse_label_json(content)


async def run_ocr(
    engine: "ScanSessionEngine",
    client: Mistral,
    token: str,
    barcode: str,
    image_url: str,
    semaphore: Optional[asyncio.Semaphore] = None,
) -> None:
    """
    Background task fired after a scan. Never raises: OCR failures are recorded
    on the entry; a session that vanished or finished meanwhile is just logged.
    """
    try:
        ocr_data = await extract_box_label(client, image_url, semaphore=semaphore)
    except OcrExtractionError as exc:
        logger.warning("OCR failed token=%s barcode=%s error=%s", token, barcode, exc)
        try:
            await engine.mark_ocr_failed(token, barcode, str(exc))
        except ScanSessionError as abort:
            logger.warning("Could not record OCR failure token=%s barcode=%s: %s", token, barcode, abort.message)
        return

    try:
        applied = await engine.merge_ocr_result(token, barcode, ocr_data)
    except ScanSessionError as abort:
        logger.warning("Could not merge OCR result token=%s barcode=%s: %s", token, barcode, abort.message)
        return
    logger.info("OCR finished token=%s barcode=%s applied=%s", token, barcode, applied)
