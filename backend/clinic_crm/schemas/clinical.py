"""Doctor note and quote schemas."""

import uuid
from datetime import datetime
from typing import Optional, Any

from pydantic import BaseModel, Field


class LineItem(BaseModel):
    position: int
    catalog_item_id: Optional[str]
    catalog_item_name: str
    qty: int
    unit_price: float
    notes: Optional[str]

    model_config = {"from_attributes": True}


class DoctorNoteCreateRequest(BaseModel):
    lead_id: str = Field(..., min_length=1)
    note_markdown: Optional[str] = None


class DoctorNoteSaveRequest(BaseModel):
    note_markdown: Optional[str] = None
    items: list[dict[str, Any]] = []  # validated by the notes service


class DoctorNoteResponse(BaseModel):
    id: uuid.UUID
    lead_id: str
    doctor_id: str
    note_markdown: Optional[str]
    status: str
    approved_at: Optional[datetime]
    approved_by: Optional[str]
    items: list[LineItem]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class QuoteFromNoteRequest(BaseModel):
    doctor_note_id: str = Field(..., min_length=1)


class QuoteSaveRequest(BaseModel):
    items: list[dict[str, Any]] = []
    discount: float = Field(0.0, ge=0, le=100)  # percent


class QuoteResponse(BaseModel):
    id: uuid.UUID
    lead_id: str
    doctor_note_id: uuid.UUID
    quote_number: str
    status: str
    currency: str
    subtotal: float
    discount: float
    total: float
    created_by: Optional[str]
    sent_at: Optional[datetime]
    items: list[LineItem]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
