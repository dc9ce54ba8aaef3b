"""
errors.py — Domain exceptions for the scan session engine.

Every exception carries the HTTP status and error code that main.py renders
into the standard {error: {code, message, details}} envelope. Business logic
raises these; only main.py knows about HTTP.

Duplicates are NOT errors — append operations return a duplicate-shaped result.
"""


class ScanSessionError(Exception):
    """Base class for all session engine failures."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, token: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.token = token


class LockAcquisitionError(ScanSessionError):
    """Session lock not acquired within the retry budget. Retryable."""

    status_code = 503
    code = "SYSTEM_BUSY"


class SessionNotFoundError(ScanSessionError):
    status_code = 404
    code = "SESSION_NOT_FOUND"


class SessionNotActiveError(ScanSessionError):
    status_code = 409
    code = "SESSION_NOT_ACTIVE"


class ScanEntryNotFoundError(ScanSessionError):
    status_code = 404
    code = "BARCODE_NOT_FOUND"


class UnknownInvoiceItemError(ScanSessionError):
    status_code = 422
    code = "UNKNOWN_ITEM"


class InvalidTransitionError(ScanSessionError):
    status_code = 409
    code = "INVALID_TRANSITION"


class SessionNotReadyError(ScanSessionError):
    """Finalize requested while entries are pending or have open issues."""

    status_code = 409
    code = "SESSION_NOT_READY"


class WebhookDeliveryError(ScanSessionError):
    """Outbound notification failed; the session stays ACTIVE."""

    status_code = 502
    code = "DELIVERY_FAILED"


class OcrExtractionError(Exception):
    """
    OCR call failed, timed out, or returned unusable output.
    Recorded on the scan entry (ocr_status=failed) — never surfaced over HTTP.
    """
