"""
schemas.py — OCR trigger and callback contracts.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

from boxscan.sessions.schemas import OcrData


class OcrTriggerRequest(BaseModel):
    token: str
    barcode: str
    # Defaults to the image stored on the scan entry
    image_url: Optional[str] = None


class OcrCallbackRequest(BaseModel):
    """Result delivered by an out-of-process OCR worker."""

    token: str
    barcode: str
    status: Literal["success", "failed"]
    ocr_data: Optional[OcrData] = None
    error: Optional[str] = Field(default=None, max_length=500)

    @model_validator(mode="after")
    def _data_on_success(self) -> "OcrCallbackRequest":
        if self.status == "success" and self.ocr_data is None:
            raise ValueError("ocr_data is required when status is 'success'")
        return self
