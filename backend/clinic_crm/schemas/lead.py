"""Request schemas for the public portal and staff lead endpoints."""

from typing import Optional, Any

from pydantic import BaseModel, Field


class LeadIntakePayload(BaseModel):
    """Public lead form. ``company_website`` is a honeypot and must stay empty."""
    name: Optional[str] = Field(None, max_length=255)
    email: Optional[str] = Field(None, max_length=255)  # EmailStr is too strict for intake forms
    phone: Optional[str] = Field(None, max_length=50)
    treatment: Optional[str] = None
    timeline: Optional[str] = None
    message: Optional[str] = Field(None, max_length=10000)
    source: Optional[str] = None
    lang: Optional[str] = None
    page_url: Optional[str] = None
    referrer: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None
    company_website: Optional[str] = None


class LeadIntakeResponse(BaseModel):
    ok: bool
    id: Optional[str] = None
    case_id: Optional[str] = None
    portal_token: Optional[str] = None


class PortalSession(BaseModel):
    case_id: str = Field(..., min_length=1)
    portal_token: str = Field(..., min_length=1)


class PortalPasswordRequest(PortalSession):
    password: str = Field(..., max_length=200)


class PortalLoginRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=200)


class VerificationSendRequest(PortalSession):
    email: str = Field(..., min_length=3, max_length=255)


class VerificationConfirmRequest(BaseModel):
    token: str = Field(..., min_length=1)


class MagicLinkRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)


class OnboardingSubmitRequest(PortalSession):
    card_id: str = Field(..., min_length=1, max_length=50)
    answers: dict[str, Any]


class LeadUpdateRequest(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None
    doctor_id: Optional[str] = None
    assigned_to: Optional[str] = None


class NoteCreateRequest(BaseModel):
    note: str = Field(..., min_length=1, max_length=10000)


class ContactEventRequest(BaseModel):
    channel: str = "phone"
    note: Optional[str] = None


class BulkAnalyzeRequest(BaseModel):
    lead_ids: Optional[list[str]] = None  # None means every lead without a closed/merged status


class DoctorReviewRequest(BaseModel):
    doctor_review_notes: Optional[str] = None
