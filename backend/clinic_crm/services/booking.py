"""Cal.com booking webhook: event history plus lead upsert by booking uid."""

import hmac
import time
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.config import settings
from clinic_crm.errors import UnauthorizedError, UpstreamError
from clinic_crm.models.events import CalWebhookEvent
from clinic_crm.models.lead import Lead
from clinic_crm.services.common import as_naive_utc
from clinic_crm.services.identity import TERMINAL_STATUSES, follow_merge, normalize_email
from clinic_crm.services.risk import BOOKING_CANCELLED, BOOKING_CREATED, BOOKING_RESCHEDULED

logger = structlog.get_logger()

TRIGGER_EVENTS = {
    "BOOKING_CREATED": BOOKING_CREATED,
    "BOOKING_RESCHEDULED": BOOKING_RESCHEDULED,
    "BOOKING_CANCELLED": BOOKING_CANCELLED,
}
UPSERT_EVENTS = frozenset({BOOKING_CREATED, BOOKING_RESCHEDULED})
MAX_UID_IN_ID = 64


def normalize_secret(value: Any) -> str:
    return str(value or "").strip().replace("\r", "").replace("\n", "")


def verify_webhook_secret(provided: str | None) -> None:
    expected = normalize_secret(settings.cal_webhook_secret)
    if not expected:
        logger.error("cal_webhook_secret_not_configured")
        raise UpstreamError("Webhook secret not configured")
    candidate = normalize_secret(provided)
    if not candidate or not hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("cal_webhook_unauthorized")
        raise UnauthorizedError("unauthorized")


def normalize_event_type(raw: Any) -> str | None:
    """``BOOKING_CREATED`` -> ``booking.created``; anything else lower-cased."""
    if not raw:
        return None
    value = str(raw).strip()
    return TRIGGER_EVENTS.get(value.upper(), value.lower())


def booking_lead_id(booking_uid: str, now: float | None = None) -> str:
    """``cal_<uid>_<ms>``, with the uid cut so the id fits ``Lead.id``."""
    ms = int((now if now is not None else time.time()) * 1000)
    return f"cal_{booking_uid[:MAX_UID_IN_ID]}_{ms}"


def _booking_fields(payload: dict) -> dict:
    attendees = payload.get("attendees") or []
    first = attendees[0] if attendees and isinstance(attendees[0], dict) else {}
    booking_id = payload.get("bookingId") or payload.get("id")
    return {
        "email": normalize_email(first.get("email") or payload.get("email")) or None,
        "name": first.get("name") or payload.get("name") or payload.get("title"),
        "meeting_start": as_naive_utc(payload.get("startTime") or payload.get("start")),
        "meeting_end": as_naive_utc(payload.get("endTime") or payload.get("end")),
        "notes": payload.get("additionalNotes") or payload.get("notes") or payload.get("description"),
        "cal_booking_id": str(booking_id) if booking_id else None,
    }


async def handle_cal_webhook(db: AsyncSession, body: dict) -> dict:
    """Record the event and, for created/rescheduled bookings, upsert the lead.

    A merged duplicate's events land on the lead it was merged into. Leads in
    a terminal status get the event row only.
    """
    raw_trigger = body.get("triggerEvent") or body.get("type") or body.get("event") or body.get("eventType")
    event_type = normalize_event_type(raw_trigger)
    payload = body.get("payload") or body.get("data") or body
    if not isinstance(payload, dict):
        payload = {}

    booking_uid = payload.get("uid") or payload.get("id")
    booking_uid = str(booking_uid) if booking_uid else None

    lead = None
    if booking_uid:
        result = await db.execute(select(Lead).where(Lead.cal_booking_uid == booking_uid).limit(1))
        matched = result.scalar_one_or_none()
        lead = await follow_merge(db, matched)
        if matched is not None and lead is not matched:
            logger.info("cal_webhook_redirected_to_canonical", booking_uid=booking_uid,
                        merged_lead_id=matched.id, lead_id=lead.id)

    event_payload = dict(payload)
    if event_type == BOOKING_RESCHEDULED:
        event_payload["previousMeetingStart"] = lead.meeting_start.isoformat() if lead and lead.meeting_start else None
        event_payload["previousMeetingEnd"] = lead.meeting_end.isoformat() if lead and lead.meeting_end else None

    fields = _booking_fields(payload)
    event = CalWebhookEvent(
        event_type=event_type,
        trigger_event=str(raw_trigger) if raw_trigger else None,
        cal_booking_uid=booking_uid,
        cal_booking_id=fields["cal_booking_id"],
        lead_id=lead.id if lead else None,
        payload=event_payload,
    )
    db.add(event)

    response = {"ok": True, "received": True, "eventType": event_type}
    if event_type in UPSERT_EVENTS:
        if not booking_uid:
            logger.warning("cal_webhook_missing_booking_uid", event_type=event_type)
            response["warning"] = "Missing booking UID"
        elif lead is not None and lead.status in TERMINAL_STATUSES:
            logger.info("cal_webhook_terminal_lead", lead_id=lead.id, status=lead.status, event_type=event_type)
            response["skipped"] = lead.status
        else:
            if lead is None:
                lead = Lead(id=booking_lead_id(booking_uid), source="cal.com")
                db.add(lead)
            lead.cal_booking_uid = booking_uid
            lead.status = "booked"
            lead.updated_at = datetime.utcnow()
            for key, value in fields.items():
                if value is None or (key == "email" and lead.email_verified_at):
                    continue
                setattr(lead, key, value)
            event.lead_id = lead.id
    elif event_type not in (BOOKING_CANCELLED, "ping"):
        response["ignored"] = True

    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("cal_webhook_persist_failed", event_type=event_type, booking_uid=booking_uid, error=str(e)[:200])
        raise UpstreamError("Failed to record booking event") from e

    if lead is not None:
        response["leadId"] = lead.id
    logger.info("cal_webhook_received", event_type=event_type, booking_uid=booking_uid,
                lead_id=response.get("leadId"))
    return response
