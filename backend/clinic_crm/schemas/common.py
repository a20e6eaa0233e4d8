"""Common response schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class LeadResponse(BaseModel):
    id: str
    lead_uuid: Optional[str]
    case_id: Optional[str]
    name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    treatment: Optional[str]
    timeline: Optional[str]
    message: Optional[str]
    notes: Optional[str]
    source: Optional[str]
    status: str
    doctor_id: Optional[str]
    doctor_review_status: Optional[str]
    assigned_to: Optional[str]
    portal_status: Optional[str]
    email_verified_at: Optional[datetime]
    cal_booking_uid: Optional[str]
    meeting_start: Optional[datetime]
    meeting_end: Optional[datetime]
    ai_risk_score: Optional[int]
    ai_summary: Optional[str]
    ai_last_analyzed_at: Optional[datetime]
    last_contacted_at: Optional[datetime]
    meta: Optional[dict]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class LeadNoteResponse(BaseModel):
    id: uuid.UUID
    lead_id: str
    note: str
    actor_role: Optional[str]
    created_by: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class ContactEventResponse(BaseModel):
    id: uuid.UUID
    lead_id: str
    channel: str
    note: Optional[str]
    created_by: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class AnalyzeResponse(BaseModel):
    ok: bool = True
    leadId: str
    ai_risk_score: int
    ai_summary: str


class BulkAnalyzeResponse(BaseModel):
    ok: bool = True
    job_id: Optional[str] = None
    queued: Optional[int] = None  # None when every open lead is refreshed


class HealthResponse(BaseModel):
    status: str
    version: str = "1.0.0"
    db: str
    redis: str
    cards: str
