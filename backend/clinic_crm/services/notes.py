"""Doctor treatment notes and the quotes employees build from them.

A note is editable while ``draft`` and frozen once ``approved``. A quote is
created from an approved note, editable while ``draft`` and frozen once ``sent``.
"""

import time
import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.errors import ConflictError, ForbiddenError, NotFoundError, UpstreamError, ValidationError
from clinic_crm.models.clinical import DoctorNote, DoctorNoteItem, Quote, QuoteItem
from clinic_crm.models.lead import Lead
from clinic_crm.services.leads import add_timeline_event

logger = structlog.get_logger()


def _parse_uuid(value: Any, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise NotFoundError(f"{label} not found")


def parse_items(raw_items: Any) -> list[dict]:
    """Validate line items into ``catalog_item_id/catalog_item_name/qty/unit_price/notes`` dicts."""
    if raw_items is None:
        return []
    if not isinstance(raw_items, list):
        raise ValidationError("items must be a list")

    items = []
    for position, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"item {position} must be an object")
        name = str(raw.get("catalog_item_name") or raw.get("name") or "").strip()
        if not name:
            raise ValidationError(f"item {position} requires catalog_item_name")
        try:
            qty = int(raw.get("qty", 1))
            unit_price = float(raw.get("unit_price", 0))
        except (TypeError, ValueError):
            raise ValidationError(f"item {position} has an invalid qty or unit_price")
        if qty < 1 or unit_price < 0:
            raise ValidationError(f"item {position} has an invalid qty or unit_price")
        items.append({
            "position": position,
            "catalog_item_id": raw.get("catalog_item_id"),
            "catalog_item_name": name,
            "qty": qty,
            "unit_price": unit_price,
            "notes": raw.get("notes"),
        })
    return items


def compute_totals(items: list[dict], discount_percent: float = 0.0) -> tuple[float, float, float]:
    """Return ``(subtotal, discount_amount, total)``; the discount is a 0-100 percentage."""
    subtotal = sum(item["qty"] * item["unit_price"] for item in items)
    discount_percent = max(0.0, min(100.0, float(discount_percent or 0)))
    discount_amount = subtotal * discount_percent / 100
    return round(subtotal, 2), round(discount_amount, 2), round(subtotal - discount_amount, 2)


async def _commit(db: AsyncSession, event: str, message: str, **log_context) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(event, error=str(e)[:200], **log_context)
        raise UpstreamError(message) from e


async def _owned_note(db: AsyncSession, note_id: Any, doctor_id: str) -> DoctorNote:
    note = await db.get(DoctorNote, _parse_uuid(note_id, "Note"))
    if not note or note.doctor_id != doctor_id:
        raise NotFoundError("Note not found or not owned by you")
    return note


async def create_doctor_note(db: AsyncSession, lead_id: str, doctor_id: str, note_markdown: str | None = None) -> DoctorNote:
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError("Lead not found")
    if lead.doctor_id != doctor_id:
        raise ForbiddenError("Lead not assigned to you")

    note = DoctorNote(lead_id=lead_id, doctor_id=doctor_id, note_markdown=note_markdown, status="draft", items=[])
    db.add(note)
    await _commit(db, "doctor_note_create_failed", "Failed to create doctor note", lead_id=lead_id)
    logger.info("doctor_note_created", note_id=str(note.id), lead_id=lead_id)
    return note


async def save_doctor_note(
    db: AsyncSession, note_id: Any, doctor_id: str, note_markdown: str | None, raw_items: Any
) -> DoctorNote:
    note = await _owned_note(db, note_id, doctor_id)
    if note.status == "approved":
        raise ConflictError("Cannot edit approved note")

    items = parse_items(raw_items)
    note.note_markdown = note_markdown
    note.items = [DoctorNoteItem(**item) for item in items]
    note.updated_at = datetime.utcnow()
    await _commit(db, "doctor_note_save_failed", "Failed to update note", note_id=str(note.id))
    return note


async def approve_doctor_note(db: AsyncSession, note_id: Any, doctor_id: str) -> DoctorNote:
    note = await _owned_note(db, note_id, doctor_id)
    if note.status == "approved":
        raise ConflictError("Note already approved")

    now = datetime.utcnow()
    note.status = "approved"
    note.approved_at = now
    note.approved_by = doctor_id
    add_timeline_event(db, note.lead_id, "doctor_note_approved", "Treatment note approved", "doctor",
                       {"doctor_note_id": str(note.id)})
    await _commit(db, "doctor_note_approve_failed", "Failed to approve note", note_id=str(note.id))
    logger.info("doctor_note_approved", note_id=str(note.id), lead_id=note.lead_id)
    return note


async def _check_employee_assignment(db: AsyncSession, lead_id: str, user_id: str, role: str) -> None:
    if role == "admin":
        return
    lead = await db.get(Lead, lead_id)
    if not lead or lead.assigned_to != user_id:
        raise ForbiddenError("Lead not assigned to you")


async def create_quote_from_note(db: AsyncSession, doctor_note_id: Any, user_id: str, role: str) -> Quote:
    result = await db.execute(
        select(DoctorNote).where(
            DoctorNote.id == _parse_uuid(doctor_note_id, "Approved doctor note"),
            DoctorNote.status == "approved",
        )
    )
    note = result.scalar_one_or_none()
    if not note:
        raise NotFoundError("Approved doctor note not found")
    await _check_employee_assignment(db, note.lead_id, user_id, role)

    items = [
        QuoteItem(
            position=item.position,
            catalog_item_id=item.catalog_item_id,
            catalog_item_name=item.catalog_item_name,
            qty=item.qty,
            unit_price=item.unit_price,
            notes=item.notes,
        )
        for item in note.items
    ]
    subtotal, _, total = compute_totals([{"qty": i.qty, "unit_price": i.unit_price} for i in note.items])
    quote = Quote(
        lead_id=note.lead_id,
        doctor_note_id=note.id,
        quote_number=f"QUOTE-{int(time.time() * 1000)}",
        status="draft",
        discount=0.0,
        subtotal=subtotal,
        total=total,
        created_by=user_id,
        items=items,
    )
    db.add(quote)
    await _commit(db, "quote_create_failed", "Failed to create quote", doctor_note_id=str(note.id))
    logger.info("quote_created", quote_id=str(quote.id), quote_number=quote.quote_number, lead_id=quote.lead_id)
    return quote


async def _editable_quote(db: AsyncSession, quote_id: Any, user_id: str, role: str) -> Quote:
    quote = await db.get(Quote, _parse_uuid(quote_id, "Quote"))
    if not quote:
        raise NotFoundError("Quote not found")
    await _check_employee_assignment(db, quote.lead_id, user_id, role)
    if quote.status == "sent":
        raise ConflictError("Quote already sent")
    return quote


async def save_quote(
    db: AsyncSession, quote_id: Any, user_id: str, role: str, raw_items: Any, discount: float | None = None
) -> Quote:
    quote = await _editable_quote(db, quote_id, user_id, role)
    items = parse_items(raw_items)

    quote.discount = max(0.0, min(100.0, float(discount or 0)))
    quote.subtotal, _, quote.total = compute_totals(items, quote.discount)
    quote.items = [QuoteItem(**item) for item in items]
    quote.updated_at = datetime.utcnow()
    await _commit(db, "quote_save_failed", "Failed to save quote", quote_id=str(quote.id))
    return quote


async def send_quote(db: AsyncSession, quote_id: Any, user_id: str, role: str) -> Quote:
    quote = await _editable_quote(db, quote_id, user_id, role)

    now = datetime.utcnow()
    quote.status = "sent"
    quote.sent_at = now
    quote.updated_at = now
    add_timeline_event(db, quote.lead_id, "quote_sent", f"Quote {quote.quote_number} sent", role,
                       {"quote_id": str(quote.id), "total": quote.total, "currency": quote.currency})
    await _commit(db, "quote_send_failed", "Failed to update quote", quote_id=str(quote.id))
    logger.info("quote_sent", quote_id=str(quote.id), lead_id=quote.lead_id)
    return quote
