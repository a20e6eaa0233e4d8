"""Doctor workspace. Leads only ever leave this router as privacy-safe DTOs."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.database import get_db
from clinic_crm.middleware.auth import require_doctor
from clinic_crm.schemas.clinical import DoctorNoteCreateRequest, DoctorNoteResponse, DoctorNoteSaveRequest
from clinic_crm.schemas.lead import DoctorReviewRequest
from clinic_crm.services import leads, notes

router = APIRouter(prefix="/doctor", tags=["doctor"])


@router.get("/leads")
async def list_leads(
    bucket: str | None = Query("unread"),
    user: dict = Depends(require_doctor),
    db: AsyncSession = Depends(get_db),
):
    items = await leads.list_doctor_leads(db, user["sub"], bucket)
    return {"ok": True, "leads": items}


@router.get("/leads/{ref}")
async def get_lead(ref: str, user: dict = Depends(require_doctor), db: AsyncSession = Depends(get_db)):
    return {"ok": True, "lead": await leads.get_doctor_lead(db, ref, user["sub"])}


@router.post("/leads/{ref}/review")
async def review_lead(
    ref: str,
    req: DoctorReviewRequest,
    user: dict = Depends(require_doctor),
    db: AsyncSession = Depends(get_db),
):
    return {"ok": True, "lead": await leads.review_doctor_lead(db, ref, user["sub"], req.doctor_review_notes)}


@router.post("/notes", response_model=DoctorNoteResponse)
async def create_note(
    req: DoctorNoteCreateRequest,
    user: dict = Depends(require_doctor),
    db: AsyncSession = Depends(get_db),
):
    return await notes.create_doctor_note(db, req.lead_id, user["sub"], req.note_markdown)


@router.put("/notes/{note_id}", response_model=DoctorNoteResponse)
async def save_note(
    note_id: str,
    req: DoctorNoteSaveRequest,
    user: dict = Depends(require_doctor),
    db: AsyncSession = Depends(get_db),
):
    return await notes.save_doctor_note(db, note_id, user["sub"], req.note_markdown, req.items)


@router.post("/notes/{note_id}/approve", response_model=DoctorNoteResponse)
async def approve_note(note_id: str, user: dict = Depends(require_doctor), db: AsyncSession = Depends(get_db)):
    return await notes.approve_doctor_note(db, note_id, user["sub"])
