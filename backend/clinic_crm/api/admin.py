"""Admin lead management: listing, edits, risk analysis, activity and the unified patient view."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.database import get_db
from clinic_crm.errors import UpdateFailedError, UpstreamError
from clinic_crm.middleware.auth import require_admin
from clinic_crm.schemas.common import (
    AnalyzeResponse,
    BulkAnalyzeResponse,
    ContactEventResponse,
    LeadNoteResponse,
    LeadResponse,
)
from clinic_crm.schemas.lead import BulkAnalyzeRequest, ContactEventRequest, LeadUpdateRequest, NoteCreateRequest
from clinic_crm.services import identity, leads
from clinic_crm.services.risk import analyze_lead
from clinic_crm.workers.risk_refresh import enqueue_risk_refresh
from clinic_crm.api.health import RISK_ANALYSES, ERRORS

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/leads", response_model=list[LeadResponse])
async def list_leads(
    status: str | None = Query(None),
    limit: int = Query(200, ge=1, le=500),
    doctor_id: str | None = Query(None),
    assigned_to: str | None = Query(None),
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await leads.list_leads(db, status=status, limit=limit, doctor_id=doctor_id, assigned_to=assigned_to)


@router.post("/leads/analyze-bulk", response_model=BulkAnalyzeResponse)
async def analyze_bulk(
    req: BulkAnalyzeRequest,
    user: dict = Depends(require_admin),
):
    """Queue a background risk refresh."""
    try:
        job_id = enqueue_risk_refresh(req.lead_ids)
    except Exception as e:
        logger.error("failed_to_enqueue_risk_refresh", error=str(e))
        ERRORS.labels(type="queue").inc()
        raise UpstreamError("Failed to queue risk refresh") from e
    RISK_ANALYSES.labels(mode="bulk").inc()
    return BulkAnalyzeResponse(job_id=job_id, queued=len(req.lead_ids) if req.lead_ids is not None else None)


@router.get("/leads/{lead_id}", response_model=LeadResponse)
async def get_lead(lead_id: str, user: dict = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return await leads.get_lead(db, lead_id)


@router.patch("/leads/{lead_id}", response_model=LeadResponse)
async def update_lead(
    lead_id: str,
    req: LeadUpdateRequest,
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await leads.update_lead(db, lead_id, req.model_dump(exclude_unset=True), actor=user["sub"])


@router.post("/leads/{lead_id}/analyze", response_model=AnalyzeResponse)
async def analyze(lead_id: str, user: dict = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    """Recompute the lead's risk score and call brief."""
    try:
        assessment = await analyze_lead(db, lead_id)
    except UpdateFailedError:
        ERRORS.labels(type="risk_update").inc()
        raise
    RISK_ANALYSES.labels(mode="single").inc()
    return AnalyzeResponse(leadId=lead_id, ai_risk_score=assessment.score, ai_summary=assessment.summary)


@router.get("/leads/{lead_id}/timeline")
async def timeline(lead_id: str, user: dict = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return {"ok": True, "events": await leads.list_timeline(db, lead_id)}


@router.get("/leads/{lead_id}/notes", response_model=list[LeadNoteResponse])
async def list_notes(lead_id: str, user: dict = Depends(require_admin), db: AsyncSession = Depends(get_db)):
    return await leads.list_notes(db, lead_id)


@router.post("/leads/{lead_id}/notes", response_model=LeadNoteResponse)
async def add_note(
    lead_id: str,
    req: NoteCreateRequest,
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await leads.add_note(db, lead_id, req.note, actor_role=user["role"], created_by=user["sub"])


@router.get("/leads/{lead_id}/contact-events", response_model=list[ContactEventResponse])
async def list_contact_events(
    lead_id: str,
    limit: int = Query(5, ge=1, le=50),
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await leads.list_contact_events(db, lead_id, limit=limit)


@router.post("/leads/{lead_id}/contact-events", response_model=ContactEventResponse)
async def add_contact_event(
    lead_id: str,
    req: ContactEventRequest,
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await leads.add_contact_event(db, lead_id, req.channel, req.note, created_by=user["sub"])


@router.post("/leads/{lead_id}/mark-contacted")
async def mark_contacted(
    lead_id: str,
    req: ContactEventRequest,
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await leads.mark_contacted(db, lead_id, req.channel, req.note, created_by=user["sub"])


@router.get("/patients/unified")
async def unified_patient(
    email: str = Query(..., min_length=1),
    user: dict = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await identity.unified_patient_view(db, email)
