"""Lead lifecycle: intake, staff updates, activity logs, doctor review and the patient portal payload."""

import secrets
import time
from datetime import datetime
from typing import Any
from urllib.parse import unquote

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.errors import ConflictError, NotFoundError, UpstreamError, ValidationError
from clinic_crm.models.events import CalWebhookEvent, LeadContactEvent, LeadNote, LeadTimelineEvent
from clinic_crm.models.lead import Lead
from clinic_crm.services.common import as_naive_utc, optional_rows
from clinic_crm.services.identity import TERMINAL_STATUSES, normalize_email, validate_portal_session
from clinic_crm.services.privacy import filter_leads_by_bucket, to_doctor_lead_dto

logger = structlog.get_logger()

STATUS_ALIASES = {
    "new_lead": "new",
    "appointment": "appointment_set",
    "deposit": "deposit_paid",
}
VALID_STATUSES = frozenset({
    "new", "contacted", "booked", "deposit_paid", "appointment_set",
    "arrived", "completed", "lost", "closed",
})
# Set only by the canonical merge; staff can filter on it but never assign it
LISTABLE_STATUSES = VALID_STATUSES | {"merged"}
CONTACT_CHANNELS = ("phone", "whatsapp", "email", "sms", "other")
UPDATABLE_FIELDS = ("status", "notes", "doctor_id", "assigned_to")
HONEYPOT_FIELD = "company_website"
CASE_ID_ATTEMPTS = 3
MAX_LIST_LIMIT = 500

INTAKE_FIELDS = (
    "name", "phone", "treatment", "timeline", "message", "lang", "page_url", "referrer",
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
)


def generate_lead_id(now: float | None = None) -> str:
    ms = int((now if now is not None else time.time()) * 1000)
    return f"lead_{ms}_{secrets.token_hex(4)}"


def generate_portal_token() -> str:
    return secrets.token_urlsafe(24)


def normalize_status(value: Any, allowed: frozenset = VALID_STATUSES) -> str:
    raw = str(value or "").strip().lower()
    status = STATUS_ALIASES.get(raw, raw)
    if status not in allowed:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(sorted(allowed))}")
    return status


def normalize_ref(raw: Any) -> str | None:
    """Strip a ``CASE-`` prefix and URL escaping from a doctor-facing lead reference."""
    if not raw:
        return None
    ref = unquote(str(raw)).strip()
    if ref.startswith("CASE-"):
        ref = ref[len("CASE-"):]
    return ref.strip() or None


async def next_case_id(db: AsyncSession, now: datetime) -> str:
    """Next ``GH-<year>-NNNN`` after the highest one issued this year."""
    prefix = f"GH-{now.year}-"
    # Longer suffixes sort first so GH-2025-10000 beats GH-2025-9999
    result = await db.execute(
        select(Lead.case_id)
        .where(Lead.case_id.like(f"{prefix}%"))
        .order_by(func.length(Lead.case_id).desc(), Lead.case_id.desc())
        .limit(1)
    )
    latest = result.scalar_one_or_none()
    suffix = latest[len(prefix):] if latest else ""
    return f"{prefix}{(int(suffix) if suffix.isdigit() else 0) + 1:04d}"


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


async def create_lead(db: AsyncSession, data: dict, request_meta: dict | None = None) -> dict:
    """Public intake. A filled honeypot field is accepted silently and nothing is stored."""
    if _clean_text(data.get(HONEYPOT_FIELD)):
        logger.warning("intake_honeypot_triggered")
        return {"ok": True}

    fields = {key: _clean_text(data.get(key)) for key in INTAKE_FIELDS}
    email = normalize_email(data.get("email")) or None
    if not email and not fields["phone"]:
        raise ValidationError("email or phone required")

    source = _clean_text(data.get("source")) or "form"
    now = datetime.utcnow()
    lead_id = generate_lead_id()
    portal_token = generate_portal_token()

    for attempt in range(1, CASE_ID_ATTEMPTS + 1):
        case_id = await next_case_id(db, now)
        db.add(Lead(
            id=lead_id,
            case_id=case_id,
            email=email,
            source=source,
            status="new",
            portal_token=portal_token,
            portal_status="pending_review",
            meta=dict(request_meta or {}),
            created_at=now,
            **fields,
        ))
        try:
            await db.commit()
            break
        except IntegrityError:
            await db.rollback()
            logger.warning("case_id_collision", case_id=case_id, attempt=attempt)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("lead_insert_failed", error=str(e)[:200])
            raise UpstreamError("Failed to create lead") from e
    else:
        raise UpstreamError("Failed to create lead")

    if fields["message"]:
        try:
            db.add(LeadNote(lead_id=lead_id, note=fields["message"], actor_role="patient"))
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning("intake_note_failed", lead_id=lead_id, error=str(e)[:200])

    logger.info("lead_created", lead_id=lead_id, case_id=case_id, source=source)
    return {"ok": True, "id": lead_id, "case_id": case_id, "portal_token": portal_token}


async def get_lead(db: AsyncSession, lead_id: str) -> Lead:
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError("Lead not found")
    return lead


async def list_leads(
    db: AsyncSession,
    status: str | None = None,
    limit: int = 200,
    doctor_id: str | None = None,
    assigned_to: str | None = None,
) -> list[Lead]:
    stmt = select(Lead).order_by(Lead.created_at.desc()).limit(max(1, min(limit, MAX_LIST_LIMIT)))
    if status and status != "all":
        stmt = stmt.where(Lead.status == normalize_status(status, LISTABLE_STATUSES))
    if doctor_id:
        stmt = stmt.where(Lead.doctor_id == doctor_id)
    if assigned_to:
        stmt = stmt.where(Lead.assigned_to == assigned_to)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def add_timeline_event(
    db: AsyncSession,
    lead_id: str,
    stage: str,
    note: str | None = None,
    actor_role: str = "system",
    payload: dict | None = None,
) -> LeadTimelineEvent:
    """Stage a timeline row on the session; the caller commits."""
    event = LeadTimelineEvent(lead_id=lead_id, stage=stage, actor_role=actor_role, note=note, payload=payload)
    db.add(event)
    return event


async def update_lead(db: AsyncSession, lead_id: str, updates: dict, actor: str) -> Lead:
    """Apply an admin edit. Unknown fields are rejected; assignment changes land on the timeline."""
    unknown = sorted(set(updates) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Fields not updatable: {', '.join(unknown)}")
    if not updates:
        raise ValidationError("No updates provided")

    lead = await get_lead(db, lead_id)
    now = datetime.utcnow()

    if "status" in updates:
        status = normalize_status(updates["status"])
        if status != lead.status:
            if lead.status in TERMINAL_STATUSES:
                raise ConflictError(f"Lead is {lead.status}; its status can no longer change")
            add_timeline_event(db, lead.id, "status_changed", f"Status: {lead.status} -> {status}", "admin",
                               {"from": lead.status, "to": status, "by": actor})
            lead.status = status

    if "notes" in updates:
        lead.notes = _clean_text(updates["notes"])

    if "doctor_id" in updates:
        doctor_id = _clean_text(updates["doctor_id"])
        if doctor_id != lead.doctor_id:
            lead.doctor_id = doctor_id
            lead.doctor_assigned_at = now if doctor_id else None
            if doctor_id:
                lead.doctor_review_status = "pending"
            add_timeline_event(db, lead.id, "doctor_assigned",
                               f"Assigned doctor {doctor_id}" if doctor_id else "Doctor unassigned", "admin",
                               {"doctor_id": doctor_id, "by": actor})

    if "assigned_to" in updates:
        assigned_to = _clean_text(updates["assigned_to"])
        if assigned_to != lead.assigned_to:
            lead.assigned_to = assigned_to
            add_timeline_event(db, lead.id, "employee_assigned",
                               f"Assigned to {assigned_to}" if assigned_to else "Unassigned", "admin",
                               {"assigned_to": assigned_to, "by": actor})

    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("lead_update_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to update lead") from e

    logger.info("lead_updated", lead_id=lead_id, fields=sorted(updates), actor=actor)
    return lead


async def list_timeline(db: AsyncSession, lead_id: str) -> list[dict]:
    """Staff timeline and booking webhooks for a lead, newest first."""
    lead = await get_lead(db, lead_id)
    booking_uid = lead.cal_booking_uid

    async def staff_query():
        result = await db.execute(select(LeadTimelineEvent).where(LeadTimelineEvent.lead_id == lead_id))
        return result.scalars().all()

    async def booking_query():
        conditions = [CalWebhookEvent.lead_id == lead_id]
        if booking_uid:
            conditions.append(CalWebhookEvent.cal_booking_uid == booking_uid)
        result = await db.execute(select(CalWebhookEvent).where(or_(*conditions)))
        return result.scalars().all()

    items = [
        {"kind": "timeline", "stage": e.stage, "actor_role": e.actor_role, "note": e.note,
         "payload": e.payload, "at": as_naive_utc(e.created_at)}
        for e in await optional_rows(db, "lead_timeline_events", staff_query, lead_id=lead_id)
    ]
    items += [
        {"kind": "booking", "stage": e.event_type, "actor_role": "system", "note": None,
         "payload": {"cal_booking_uid": e.cal_booking_uid}, "at": as_naive_utc(e.received_at)}
        for e in await optional_rows(db, "cal_webhook_events", booking_query, lead_id=lead_id)
    ]
    return sorted(items, key=lambda i: i["at"] or datetime.min, reverse=True)


async def list_notes(db: AsyncSession, lead_id: str) -> list[LeadNote]:
    await get_lead(db, lead_id)

    async def query():
        result = await db.execute(
            select(LeadNote).where(LeadNote.lead_id == lead_id).order_by(LeadNote.created_at.desc())
        )
        return result.scalars().all()

    return await optional_rows(db, "lead_notes", query, lead_id=lead_id)


async def add_note(db: AsyncSession, lead_id: str, note: str | None, actor_role: str, created_by: str | None) -> LeadNote:
    text = _clean_text(note)
    if not text:
        raise ValidationError("note required")
    await get_lead(db, lead_id)

    row = LeadNote(lead_id=lead_id, note=text, actor_role=actor_role, created_by=created_by)
    db.add(row)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("lead_note_insert_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to save note") from e
    return row


def _validate_channel(channel: Any) -> str:
    value = str(channel or "phone").strip().lower()
    if value not in CONTACT_CHANNELS:
        raise ValidationError(f"Invalid channel. Must be one of: {', '.join(CONTACT_CHANNELS)}")
    return value


async def list_contact_events(db: AsyncSession, lead_id: str, limit: int = 5) -> list[LeadContactEvent]:
    async def query():
        result = await db.execute(
            select(LeadContactEvent)
            .where(LeadContactEvent.lead_id == lead_id)
            .order_by(LeadContactEvent.created_at.desc())
            .limit(max(1, min(limit, 50)))
        )
        return result.scalars().all()

    return await optional_rows(db, "lead_contact_events", query, lead_id=lead_id)


async def add_contact_event(
    db: AsyncSession, lead_id: str, channel: Any, note: str | None, created_by: str | None
) -> LeadContactEvent:
    channel = _validate_channel(channel)
    lead = await get_lead(db, lead_id)
    event = LeadContactEvent(lead_id=lead_id, channel=channel, note=_clean_text(note), created_by=created_by)
    db.add(event)
    lead.last_contacted_at = datetime.utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("contact_event_insert_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to create contact event") from e
    return event


async def mark_contacted(
    db: AsyncSession, lead_id: str, channel: Any = None, note: str | None = None, created_by: str | None = None
) -> dict:
    """Stamp ``last_contacted_at``. The contact-event row is best effort."""
    channel = _validate_channel(channel)
    await get_lead(db, lead_id)

    contact_event = None
    try:
        event = LeadContactEvent(lead_id=lead_id, channel=channel, note=_clean_text(note), created_by=created_by)
        db.add(event)
        await db.commit()
        contact_event = {"id": str(event.id), "channel": event.channel, "note": event.note}
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning("contact_event_insert_failed", lead_id=lead_id, error=str(e)[:200])

    lead = await get_lead(db, lead_id)
    lead.last_contacted_at = datetime.utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("mark_contacted_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to update lead") from e

    return {
        "ok": True,
        "leadId": lead_id,
        "last_contacted_at": lead.last_contacted_at,
        "contact_event": contact_event,
    }


async def resolve_doctor_lead(db: AsyncSession, ref: Any, doctor_id: str) -> Lead:
    """Find a lead by id or ``lead_uuid`` that is assigned to ``doctor_id``."""
    normalized = normalize_ref(ref)
    if not normalized:
        raise ValidationError("Missing ref parameter")

    result = await db.execute(
        select(Lead).where(or_(Lead.id == normalized, Lead.lead_uuid == normalized)).limit(1)
    )
    lead = result.scalar_one_or_none()
    if not lead or lead.doctor_id != doctor_id:
        raise NotFoundError("Lead not found or not assigned to you")
    return lead


async def list_doctor_leads(db: AsyncSession, doctor_id: str, bucket: str | None = None) -> list[dict]:
    result = await db.execute(
        select(Lead).where(Lead.doctor_id == doctor_id).order_by(Lead.updated_at.desc())
    )
    dtos = [to_doctor_lead_dto(lead) for lead in result.scalars().all()]
    return filter_leads_by_bucket(dtos, bucket)


async def get_doctor_lead(db: AsyncSession, ref: Any, doctor_id: str) -> dict:
    return to_doctor_lead_dto(await resolve_doctor_lead(db, ref, doctor_id))


async def review_doctor_lead(db: AsyncSession, ref: Any, doctor_id: str, review_notes: str | None = None) -> dict:
    lead = await resolve_doctor_lead(db, ref, doctor_id)
    now = datetime.utcnow()
    notes = _clean_text(review_notes)

    lead.doctor_review_status = "reviewed"
    lead.doctor_reviewed_at = now
    if notes is not None:
        lead.doctor_review_notes = notes
    add_timeline_event(db, lead.id, "doctor_reviewed", "Doctor review submitted", "doctor",
                       {"doctor_review_notes": notes})
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("doctor_review_failed", lead_id=lead.id, error=str(e)[:200])
        raise UpstreamError("Failed to save review") from e

    logger.info("doctor_review_submitted", lead_id=lead.id, doctor_id=doctor_id)
    return {
        "id": lead.id,
        "doctor_review_status": lead.doctor_review_status,
        "doctor_review_notes": lead.doctor_review_notes,
        "doctor_reviewed_at": lead.doctor_reviewed_at,
    }


async def portal_payload(db: AsyncSession, case_id: str | None, portal_token: str | None) -> dict:
    """The patient's own view of their case."""
    lead = await validate_portal_session(db, case_id, portal_token)
    return {
        "id": lead.id,
        "case_id": lead.case_id,
        "created_at": lead.created_at,
        "name": lead.name,
        "email": lead.email,
        "phone": lead.phone,
        "treatment": lead.treatment,
        "message": lead.message,
        "timeline": lead.timeline,
        "portal_status": lead.portal_status or "pending_review",
        "email_verified_at": lead.email_verified_at,
        "next_step": "upload" if lead.email_verified_at else "verify",
    }
