"""Employee quote workflow."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.database import get_db
from clinic_crm.middleware.auth import require_employee
from clinic_crm.schemas.clinical import QuoteFromNoteRequest, QuoteResponse, QuoteSaveRequest
from clinic_crm.services import notes

router = APIRouter(prefix="/employee", tags=["employee"])


@router.post("/quotes/from-note", response_model=QuoteResponse)
async def quote_from_note(
    req: QuoteFromNoteRequest,
    user: dict = Depends(require_employee),
    db: AsyncSession = Depends(get_db),
):
    return await notes.create_quote_from_note(db, req.doctor_note_id, user["sub"], user["role"])


@router.put("/quotes/{quote_id}", response_model=QuoteResponse)
async def save_quote(
    quote_id: str,
    req: QuoteSaveRequest,
    user: dict = Depends(require_employee),
    db: AsyncSession = Depends(get_db),
):
    return await notes.save_quote(db, quote_id, user["sub"], user["role"], req.items, req.discount)


@router.post("/quotes/{quote_id}/send", response_model=QuoteResponse)
async def send_quote(quote_id: str, user: dict = Depends(require_employee), db: AsyncSession = Depends(get_db)):
    return await notes.send_quote(db, quote_id, user["sub"], user["role"])
