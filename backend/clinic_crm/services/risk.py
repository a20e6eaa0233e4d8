"""Heuristic lead risk scoring and call-brief generation.

The score is additive over ``RISK_RULES`` and clamped to 0-100. The brief is
assembled from the ``WHAT_HAPPENED`` / ``WHAT_TO_SAY`` template tables and a
priority line picked from ``PRIORITY_LINES``. ``assess_lead_risk`` is pure;
``analyze_lead`` loads the inputs and persists the result on the lead.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.errors import NotFoundError, UpdateFailedError
from clinic_crm.models.events import CalWebhookEvent, LeadNote
from clinic_crm.models.lead import Lead
from clinic_crm.services.common import as_naive_utc, get_field, optional_rows

logger = structlog.get_logger()

BOOKING_CREATED = "booking.created"
BOOKING_RESCHEDULED = "booking.rescheduled"
BOOKING_CANCELLED = "booking.cancelled"

MAX_BULLETS = 3
RAPID_CHANGE_WINDOW = timedelta(hours=24)


@dataclass
class RiskSignals:
    """Facts extracted from a lead, its booking events and its notes."""

    event_count: int = 0
    reschedule_count: int = 0
    has_cancelled: bool = False
    has_booking_created: bool = False
    booking_created_at: datetime | None = None
    rapid_changes: bool = False
    has_phone: bool = False
    has_notes: bool = False
    note_count: int = 0
    source: str | None = None

    @property
    def has_booking_events(self) -> bool:
        return self.has_booking_created or self.reschedule_count > 0 or self.has_cancelled


@dataclass(frozen=True)
class RiskRule:
    name: str
    weight: int
    occurrences: Callable[[RiskSignals], int]


@dataclass(frozen=True)
class BriefTemplate:
    name: str
    applies: Callable[[RiskSignals], bool]
    render: Callable[[RiskSignals, datetime], str]


RISK_RULES: tuple[RiskRule, ...] = (
    RiskRule("rescheduled", 25, lambda s: s.reschedule_count),
    RiskRule("cancelled", 40, lambda s: int(s.has_cancelled)),
    RiskRule("booking_without_context", 15, lambda s: int(s.has_booking_created and not s.has_notes and not s.has_phone)),
    RiskRule("rapid_changes", 10, lambda s: int(s.rapid_changes)),
)


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _booking_created_text(s: RiskSignals, now: datetime) -> str:
    created = s.booking_created_at
    if created is None:
        return "Booking created"
    days = max((now - created).days, 0)
    when = "today" if days == 0 else f"{_plural(days, 'day')} ago"
    return f"Booking created {when} ({created:%b} {created.day})"


def _reschedule_text(s: RiskSignals, now: datetime) -> str:
    text = f"Rescheduled {_plural(s.reschedule_count, 'time')}"
    if s.reschedule_count >= 2:
        text += ", a pattern of changes"
    return text


def _source_text(s: RiskSignals, now: datetime) -> str:
    return "Source: Cal.com booking" if s.source == "cal.com" else f"Source: {s.source}"


WHAT_HAPPENED: tuple[BriefTemplate, ...] = (
    BriefTemplate("booking_created", lambda s: s.has_booking_created, _booking_created_text),
    BriefTemplate("rescheduled", lambda s: s.reschedule_count > 0, _reschedule_text),
    BriefTemplate(
        "cancelled", lambda s: s.has_cancelled,
        lambda s, now: "Booking was cancelled and needs immediate attention",
    ),
)

# Used in order only while fewer than MAX_BULLETS lines exist.
WHAT_HAPPENED_FALLBACKS: tuple[BriefTemplate, ...] = (
    BriefTemplate("no_events", lambda s: not s.has_booking_events, lambda s, now: "No booking events recorded"),
    BriefTemplate(
        "note_count", lambda s: s.note_count > 0,
        lambda s, now: f"{_plural(s.note_count, 'internal note')} on file",
    ),
    BriefTemplate("source", lambda s: bool(s.source), _source_text),
)

# First matching opener wins.
WHAT_TO_SAY_OPENERS: tuple[BriefTemplate, ...] = (
    BriefTemplate(
        "cancelled", lambda s: s.has_cancelled,
        lambda s, now: "Open with empathy: the appointment was cancelled, offer to find a better time",
    ),
    BriefTemplate(
        "rescheduled", lambda s: s.reschedule_count > 0,
        lambda s, now: "Acknowledge the schedule changes and confirm the new slot works",
    ),
    BriefTemplate(
        "confirm", lambda s: True,
        lambda s, now: "Confirm appointment details and answer any questions",
    ),
)

WHAT_TO_SAY_PROMPTS: tuple[BriefTemplate, ...] = (
    BriefTemplate(
        "missing_phone", lambda s: not s.has_phone,
        lambda s, now: "Ask for a phone number for easier communication",
    ),
    BriefTemplate(
        "missing_notes", lambda s: not s.has_notes,
        lambda s, now: "Gather context: treatment interest and preferred travel timeline",
    ),
)

PRIORITY_LINES: tuple[tuple[int, str], ...] = (
    (70, "High risk: call today, this lead is likely to drop off."),
    (40, "Medium risk: follow up within 24 hours."),
    (20, "Low risk: Minor issues, confirm details at the next touchpoint."),
    (0, "Low risk: No major concerns, standard follow-up."),
)


@dataclass
class RiskAssessment:
    score: int
    summary: str
    what_happened: list[str] = field(default_factory=list)
    what_to_say: list[str] = field(default_factory=list)
    priority: str = ""
    matched_rules: list[str] = field(default_factory=list)


def _event_time(event: Any) -> datetime | None:
    return as_naive_utc(get_field(event, "received_at")) or as_naive_utc(get_field(event, "created_at"))


def _has_rapid_changes(events: list) -> bool:
    times = sorted(t for t in (_event_time(e) for e in events) if t is not None)
    return any(later - earlier < RAPID_CHANGE_WINDOW for earlier, later in zip(times, times[1:]))


def collect_signals(lead: Any, events: list | None, notes: list | None) -> RiskSignals:
    events = list(events or [])
    notes = list(notes or [])
    event_types = [get_field(e, "event_type") for e in events]

    created_times = sorted(
        t for t in (_event_time(e) for e in events if get_field(e, "event_type") == BOOKING_CREATED) if t is not None
    )
    lead_notes = get_field(lead, "notes")

    return RiskSignals(
        event_count=len(events),
        reschedule_count=event_types.count(BOOKING_RESCHEDULED),
        has_cancelled=BOOKING_CANCELLED in event_types,
        has_booking_created=BOOKING_CREATED in event_types,
        booking_created_at=created_times[0] if created_times else None,
        rapid_changes=_has_rapid_changes(events),
        has_phone=bool(str(get_field(lead, "phone", "")).strip()),
        has_notes=isinstance(lead_notes, str) and bool(lead_notes.strip()),
        note_count=len(notes),
        source=get_field(lead, "source"),
    )


def score_signals(signals: RiskSignals) -> tuple[int, list[str]]:
    raw = 0
    matched = []
    for rule in RISK_RULES:
        hits = rule.occurrences(signals)
        if hits:
            raw += rule.weight * hits
            matched.append(rule.name)
    return max(0, min(100, raw)), matched


def priority_line(score: int) -> str:
    for threshold, line in PRIORITY_LINES:
        if score >= threshold:
            return line
    return PRIORITY_LINES[-1][1]


def _render(templates, signals: RiskSignals, now: datetime) -> list[str]:
    return [t.render(signals, now) for t in templates if t.applies(signals)]


def build_brief(signals: RiskSignals, score: int, now: datetime) -> tuple[list[str], list[str], str]:
    happened = _render(WHAT_HAPPENED, signals, now)
    for template in WHAT_HAPPENED_FALLBACKS:
        if len(happened) >= MAX_BULLETS:
            break
        if template.applies(signals):
            happened.append(template.render(signals, now))

    opener = next(t for t in WHAT_TO_SAY_OPENERS if t.applies(signals))
    to_say = [opener.render(signals, now)] + _render(WHAT_TO_SAY_PROMPTS, signals, now)

    return happened[:MAX_BULLETS], to_say[:MAX_BULLETS], priority_line(score)


def format_summary(score: int, happened: list[str], to_say: list[str], priority: str) -> str:
    lines = ["CALL BRIEF", f"Risk score: {score}/100", "", "WHAT HAPPENED"]
    lines += [f"• {b}" for b in happened]
    lines += ["", "WHAT TO SAY"]
    lines += [f"• {b}" for b in to_say]
    lines += ["", "PRIORITY", priority]
    return "\n".join(lines)


def assess_lead_risk(lead: Any, events: list | None, notes: list | None = None, now: datetime | None = None) -> RiskAssessment:
    """Score a lead and write its call brief. Pure; never touches the database."""
    now = now or datetime.utcnow()
    signals = collect_signals(lead, events, notes)
    score, matched = score_signals(signals)
    happened, to_say, priority = build_brief(signals, score, now)
    return RiskAssessment(
        score=score,
        summary=format_summary(score, happened, to_say, priority),
        what_happened=happened,
        what_to_say=to_say,
        priority=priority,
        matched_rules=matched,
    )


async def load_booking_events(db: AsyncSession, lead_id: str, booking_uid: str | None) -> list:
    conditions = [CalWebhookEvent.lead_id == lead_id]
    if booking_uid:
        conditions.append(CalWebhookEvent.cal_booking_uid == booking_uid)

    async def query():
        result = await db.execute(
            select(CalWebhookEvent).where(or_(*conditions)).order_by(CalWebhookEvent.received_at.asc())
        )
        return result.scalars().all()

    return await optional_rows(db, "cal_webhook_events", query, lead_id=lead_id)


async def load_lead_notes(db: AsyncSession, lead_id: str) -> list:
    async def query():
        result = await db.execute(
            select(LeadNote).where(LeadNote.lead_id == lead_id).order_by(LeadNote.created_at.desc())
        )
        return result.scalars().all()

    return await optional_rows(db, "lead_notes", query, lead_id=lead_id)


async def analyze_lead(db: AsyncSession, lead_id: str, now: datetime | None = None) -> RiskAssessment:
    """Recompute and persist ``ai_risk_score`` / ``ai_summary`` for one lead."""
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError("Lead not found")
    booking_uid = lead.cal_booking_uid

    events = await load_booking_events(db, lead_id, booking_uid)
    notes = await load_lead_notes(db, lead_id)

    # A degraded read rolls the session back, so reload before writing
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise NotFoundError("Lead not found")

    now = now or datetime.utcnow()
    assessment = assess_lead_risk(lead, events, notes, now=now)

    lead.ai_risk_score = assessment.score
    lead.ai_summary = assessment.summary
    lead.ai_last_analyzed_at = now
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("lead_risk_update_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpdateFailedError("Failed to update lead with AI analysis", result=assessment) from e

    logger.info("lead_risk_analyzed", lead_id=lead_id, score=assessment.score, rules=assessment.matched_rules)
    return assessment
