"""
schemas.py — Scan session Pydantic v2 data contracts.

Defines:
  - OperationType, SessionStatus, ScanMethod, OcrStatus enums
  - ItemKey             (aggregate key: matched invoice item | unmatched product name)
  - InvoiceItem, OcrData, ManualEntry, ScanEntry, ScannedItem, IssuedBox
  - ScanSession         (the root record stored at session:{token})
  - Request/response models for the session HTTP routes

The session record is stored as one JSON blob; every field here round-trips
through model_dump_json() / model_validate_json().
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from boxscan.errors import InvalidTransitionError
from boxscan.matching.text import normalize_name


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class OperationType(str, Enum):
    SCAN = "SCAN"     # receiving: scan boxes against a supplier invoice
    ISSUE = "ISSUE"   # issuing boxes out of stock to production


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ScanMethod(str, Enum):
    barcode = "barcode"
    manual_capture = "manual_capture"   # photo only, synthesized barcode id
    force_confirm = "force_confirm"     # typed in for a box that was never scanned


class OcrStatus(str, Enum):
    pending = "pending"
    complete = "complete"
    failed = "failed"
    manual = "manual"

    def can_transition_to(self, target: "OcrStatus") -> bool:
        return target in _OCR_TRANSITIONS[self]


# No complete → failed: a timeout sweep never reverts an OCR result that landed first.
_OCR_TRANSITIONS: dict[OcrStatus, frozenset[OcrStatus]] = {
    OcrStatus.pending: frozenset({OcrStatus.complete, OcrStatus.failed, OcrStatus.manual}),
    OcrStatus.failed: frozenset({OcrStatus.complete, OcrStatus.manual}),
    OcrStatus.complete: frozenset({OcrStatus.manual}),
    OcrStatus.manual: frozenset({OcrStatus.manual}),
}


# ---------------------------------------------------------------------------
# Aggregate key
# ---------------------------------------------------------------------------

UNMATCHED_PREFIX = "unmatched:"


@dataclass(frozen=True)
class ItemKey:
    """
    Key into ScanSession.scanned_items.

    Matched(item_index) serializes as "3"; Unmatched(name) as "unmatched:<normalized>".
    The two spaces cannot collide: a normalized name never contains ':'.
    """
    item_index: Optional[int] = None
    unmatched_name: Optional[str] = None

    @classmethod
    def matched(cls, item_index: int) -> "ItemKey":
        return cls(item_index=item_index)

    @classmethod
    def unmatched(cls, product_name: str) -> "ItemKey":
        name = normalize_name(product_name) or product_name.strip()
        return cls(unmatched_name=name)

    @property
    def is_matched(self) -> bool:
        return self.item_index is not None

    def __str__(self) -> str:
        if self.is_matched:
            return str(self.item_index)
        return f"{UNMATCHED_PREFIX}{self.unmatched_name}"


# ---------------------------------------------------------------------------
# Record parts
# ---------------------------------------------------------------------------

class InvoiceItem(BaseModel):
    """One invoice line. Immutable after session creation; item_index is the join key."""
    model_config = ConfigDict(extra="ignore")

    item_index: int
    item_code: str = ""
    item_name_english: str = ""
    item_name_hebrew: str = ""
    quantity_kg: float = Field(default=0.0, ge=0)
    expected_boxes: int = Field(default=0, ge=0)

    @property
    def display_name(self) -> str:
        return self.item_name_english or self.item_name_hebrew


class OcrData(BaseModel):
    """Fields extracted from a box label photo. Any of them may be unreadable."""
    model_config = ConfigDict(extra="ignore")

    product_name: Optional[str] = None
    weight_kg: Optional[float] = None
    production_date: Optional[str] = None
    expiry_date: Optional[str] = None
    barcode_digits: Optional[str] = None


class ManualEntry(BaseModel):
    item_name: str
    item_index: Optional[int] = None
    weight: float = Field(..., gt=0)
    expiry: str = ""
    notes: Optional[str] = None


class ScanEntry(BaseModel):
    """One box in the session, identified by barcode (unique within the session)."""

    barcode: str
    scanned_at: datetime
    image_url: str = ""
    image_public_id: str = ""
    scan_method: ScanMethod = ScanMethod.barcode

    ocr_status: OcrStatus = OcrStatus.pending
    ocr_data: Optional[OcrData] = None
    ocr_processed_at: Optional[datetime] = None
    ocr_error: Optional[str] = None

    resolved_item_name: Optional[str] = None
    resolved_weight: Optional[float] = None
    resolved_expiry: Optional[str] = None
    manual_entry: Optional[ManualEntry] = None

    # What this entry currently contributes to scanned_items. Lets every
    # mutation retract the old contribution before applying the new one.
    aggregate_key: Optional[str] = None
    aggregate_weight: float = 0.0

    def transition(self, target: OcrStatus) -> None:
        if not self.ocr_status.can_transition_to(target):
            raise InvalidTransitionError(
                f"Cannot move barcode {self.barcode} from {self.ocr_status.value} to {target.value}"
            )
        self.ocr_status = target


class ScannedItem(BaseModel):
    """Per-item rollup. item_index is None for unmatched buckets."""

    item_index: Optional[int] = None
    item_name: str
    scanned_count: int = 0
    scanned_weight: float = 0.0
    expected_weight: float = 0.0
    expected_boxes: int = 0


class IssuedBox(BaseModel):
    """A box issued to production (ISSUE sessions). transaction_id comes from the ledger."""

    barcode: str
    sku: str = ""
    item_name: str = ""
    weight: float = Field(default=0.0, ge=0)
    expiry: str = ""
    supplier: str = ""
    invoice_number: str = ""
    box_record_id: str = ""
    batch_id: str = ""
    transaction_id: str
    issued_at: Optional[datetime] = None


class ScanSession(BaseModel):
    """Root record, keyed by token."""

    token: str
    chat_id: str
    operation_type: OperationType
    document_number: str = ""
    invoice_items: list[InvoiceItem] = Field(default_factory=list)
    invoice_image_url: Optional[str] = None

    scanned_barcodes: list[ScanEntry] = Field(default_factory=list)
    scanned_items: dict[str, ScannedItem] = Field(default_factory=dict)
    issued_boxes: list[IssuedBox] = Field(default_factory=list)

    status: SessionStatus = SessionStatus.ACTIVE
    webhook_sent: bool = False
    created_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def find_entry(self, barcode: str) -> Optional[ScanEntry]:
        return next((e for e in self.scanned_barcodes if e.barcode == barcode), None)


# ---------------------------------------------------------------------------
# Derived views
# ---------------------------------------------------------------------------

class Progress(BaseModel):
    total_items: int
    total_boxes_scanned: int
    total_boxes_expected: int
    total_weight_scanned: float
    total_weight_expected: float
    completion_rate: float


IssueType = Literal["missing_name", "missing_weight", "missing_both"]


class OcrIssue(BaseModel):
    """A scan entry that needs manual resolution before the session can finalize."""

    barcode: str
    image_url: str = ""
    type: IssueType
    inferred_weight: Optional[float] = None
    ocr_data: Optional[OcrData] = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chat_id: str = Field(..., min_length=1)
    operation_type: OperationType
    invoice_items: list[InvoiceItem] = Field(default_factory=list)
    document_number: str = ""
    invoice_image_url: Optional[str] = None

    @model_validator(mode="after")
    def _unique_item_indexes(self) -> "CreateSessionRequest":
        indexes = [item.item_index for item in self.invoice_items]
        if len(indexes) != len(set(indexes)):
            raise ValueError("invoice_items must have unique item_index values")
        return self


class ScanRequest(BaseModel):
    token: str
    barcode: str = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1)
    image_public_id: str = ""
    scan_method: ScanMethod = ScanMethod.barcode
    detected_at: Optional[datetime] = None


class ManualEntryRequest(BaseModel):
    token: str
    item_name: str = Field(..., min_length=1)
    weight: float = Field(..., gt=0)
    expiry: str = ""
    notes: Optional[str] = None
    image_url: str = ""
    image_public_id: str = ""


class ResolveRequest(BaseModel):
    token: str
    barcode: str
    resolved_item_name: Optional[str] = None
    resolved_weight: Optional[float] = Field(default=None, gt=0)
    resolved_expiry: Optional[str] = None


class StatusUpdate(BaseModel):
    barcode: str
    # Only failure can be pushed by the watchdog; every other status has its own operation
    ocr_status: Literal["failed"] = "failed"
    ocr_error: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    updates: list[StatusUpdate]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SessionCreated(BaseModel):
    token: str
    scan_url: str
    expires_at: datetime


class AppendResult(BaseModel):
    success: bool
    is_duplicate: bool = False
    barcode: str
    message: Optional[str] = None
    overall_progress: Optional[Progress] = None


class SessionStatusView(BaseModel):
    session: ScanSession
    progress: Progress
    issues: list[OcrIssue]
    pending_barcodes: list[str]
