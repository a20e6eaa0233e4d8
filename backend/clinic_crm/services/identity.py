"""Patient identity: portal sessions, password login, e-mail verification and canonical lead merge.

Every lead sharing a verified e-mail collapses onto one canonical lead, the
earliest-created one that is neither closed nor merged. The same rule drives
verification, magic links and the unified patient view.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Iterable
from urllib.parse import quote

import bcrypt
import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from clinic_crm.adapters.email import send_magic_link_email, send_verification_email
from clinic_crm.config import settings
from clinic_crm.errors import (
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    UnauthorizedError,
    UpstreamError,
    ValidationError,
)
from clinic_crm.models.events import LeadContactEvent, LeadNote, LeadTimelineEvent
from clinic_crm.models.lead import Lead
from clinic_crm.models.portal import LeadEmailVerification, LeadPortalAuth
from clinic_crm.services.common import as_naive_utc, get_field, optional_rows

logger = structlog.get_logger()

INACTIVE_STATUSES = frozenset({"closed", "merged"})
# A lead in one of these never moves to another status
TERMINAL_STATUSES = INACTIVE_STATUSES | {"lost"}
MERGE_REASON = "email_verified_duplicate"
MAGIC_LINK_MESSAGE = "If an account exists, a verification link has been sent."
INVALID_SESSION_MESSAGE = "Invalid portal session"
VERIFICATION_REFUSED_MESSAGE = "Unable to send a verification link for this case"
INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
# bcrypt ignores input past 72 bytes
MAX_PASSWORD_BYTES = 72


def normalize_email(value: Any) -> str:
    return str(value or "").strip().lower()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _created_key(lead: Any) -> datetime:
    return as_naive_utc(get_field(lead, "created_at")) or datetime.max


def select_canonical(leads: Iterable[Any]) -> Any | None:
    """Earliest-created lead that is not closed or merged; ties keep input order."""
    eligible = [lead for lead in leads if get_field(lead, "status") not in INACTIVE_STATUSES]
    if not eligible:
        return None
    return min(eligible, key=_created_key)


async def validate_portal_session(db: AsyncSession, case_id: str | None, portal_token: str | None) -> Lead:
    """Resolve the lead for a ``(case_id, portal_token)`` pair or raise ``UnauthorizedError``."""
    case_id = (case_id or "").strip()
    portal_token = (portal_token or "").strip()
    if not case_id or not portal_token:
        raise UnauthorizedError(INVALID_SESSION_MESSAGE)

    result = await db.execute(select(Lead).where(Lead.case_id == case_id))
    lead = result.scalar_one_or_none()
    if not lead or not lead.portal_token:
        raise UnauthorizedError(INVALID_SESSION_MESSAGE)
    if not hmac.compare_digest(lead.portal_token.encode("utf-8"), portal_token.encode("utf-8")):
        raise UnauthorizedError(INVALID_SESSION_MESSAGE)
    return lead


def build_verify_url(token: str, case_id: str | None) -> str:
    origin = settings.public_site_url.rstrip("/")
    return f"{origin}/verify-email?token={token}&case_id={quote(case_id or '', safe='')}"


async def _issue_verification_token(db: AsyncSession, lead_id: str, email: str, now: datetime) -> tuple[str, datetime]:
    """Replace the lead's pending tokens with a fresh one. Caller commits."""
    token = secrets.token_hex(32)
    expires_at = now + timedelta(minutes=settings.verification_ttl_minutes)

    await db.execute(
        delete(LeadEmailVerification).where(
            LeadEmailVerification.lead_id == lead_id,
            LeadEmailVerification.verified_at.is_(None),
        )
    )
    db.add(LeadEmailVerification(
        lead_id=lead_id,
        email=email,
        token_hash=hash_token(token),
        expires_at=expires_at,
    ))
    return token, expires_at


async def request_verification(
    db: AsyncSession,
    case_id: str | None,
    portal_token: str | None,
    email: str | None,
    now: datetime | None = None,
) -> dict:
    """Issue a verification link for the session's lead and e-mail it."""
    lead = await validate_portal_session(db, case_id, portal_token)
    requested = normalize_email(email)
    if not requested or "@" not in requested:
        raise ValidationError("email required")

    current = normalize_email(lead.email)
    if lead.email_verified_at and current and current != requested:
        logger.warning("verification_email_change_refused", lead_id=lead.id)
        raise ForbiddenError(VERIFICATION_REFUSED_MESSAGE)

    now = now or datetime.utcnow()
    lead_id, lead_case_id = lead.id, lead.case_id
    try:
        token, expires_at = await _issue_verification_token(db, lead_id, requested, now)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("verification_token_insert_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to create verification") from e

    verify_url = build_verify_url(token, lead_case_id)
    await send_verification_email(requested, verify_url)
    logger.info("verification_link_generated", lead_id=lead_id, case_id=lead_case_id, expires_at=expires_at.isoformat())

    response = {"ok": True, "expires_at": expires_at.isoformat()}
    if settings.expose_verify_url and not settings.is_production:
        response["verify_url"] = verify_url
    return response


@dataclass
class VerificationResult:
    already: bool
    lead_id: str | None = None
    case_id: str | None = None
    portal_token: str | None = None
    redirect: bool = False

    def as_response(self) -> dict:
        if self.already:
            return {"ok": True, "already": True}
        return {
            "ok": True,
            "lead_id": self.lead_id,
            "case_id": self.case_id,
            "portal_token": self.portal_token,
            "redirect": self.redirect,
        }


def _mark_verified(lead: Lead, email: str, now: datetime) -> None:
    lead.email = email
    lead.email_verified_at = now
    lead.portal_state = "verified"
    if not lead.portal_status or lead.portal_status == "pending_review":
        lead.portal_status = "active"


def _merge_into(lead: Lead, canonical: Lead, now: datetime) -> None:
    meta = dict(lead.meta or {})
    if lead.status != "merged":
        meta["status_before_merge"] = lead.status
    meta.update(merged_into=canonical.id, merged_at=now.isoformat(), merged_reason=MERGE_REASON)
    lead.meta = meta
    lead.status = "merged"


def _restore_from_merge(lead: Lead) -> None:
    meta = dict(lead.meta or {})
    lead.status = meta.pop("status_before_merge", None) or "new"
    for key in ("merged_into", "merged_at", "merged_reason"):
        meta.pop(key, None)
    lead.meta = meta


async def _leads_for_email(db: AsyncSession, email: str, lock: bool = False) -> list[Lead]:
    stmt = select(Lead).where(func.lower(Lead.email) == email).order_by(Lead.created_at.asc())
    if lock:
        # Rendered as FOR UPDATE on PostgreSQL; SQLite ignores it
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def follow_merge(db: AsyncSession, lead: Lead | None) -> Lead | None:
    """The lead a merged duplicate points at, following chains; ``lead`` itself otherwise."""
    seen = set()
    while lead is not None and lead.status == "merged" and lead.id not in seen:
        seen.add(lead.id)
        target_id = (lead.meta or {}).get("merged_into")
        target = await db.get(Lead, target_id) if target_id else None
        if target is None:
            break
        lead = target
    return lead


async def confirm_verification(db: AsyncSession, token: str | None, now: datetime | None = None) -> VerificationResult:
    """Consume a verification token and collapse the e-mail's leads onto one canonical lead.

    Runs as one transaction. A consumed token returns ``already=True`` without
    touching any row. Leads already merged elsewhere are re-pointed at the new
    canonical lead so ``merged_into`` never targets a merged lead.
    """
    token = (token or "").strip()
    if not token:
        raise InvalidTokenError()
    now = now or datetime.utcnow()

    result = await db.execute(
        select(LeadEmailVerification)
        .where(LeadEmailVerification.token_hash == hash_token(token))
        .with_for_update()
    )
    verification = result.scalar_one_or_none()
    if not verification:
        raise InvalidTokenError()

    if verification.verified_at is not None:
        canonical = await follow_merge(db, await db.get(Lead, verification.lead_id))
        logger.info("verification_already_consumed", lead_id=verification.lead_id)
        return VerificationResult(
            already=True,
            lead_id=canonical.id if canonical else None,
            case_id=canonical.case_id if canonical else None,
        )

    if as_naive_utc(verification.expires_at) < now:
        raise TokenExpiredError()

    try:
        lead_result = await db.execute(select(Lead).where(Lead.id == verification.lead_id).with_for_update())
        lead = lead_result.scalar_one_or_none()
        if not lead:
            raise NotFoundError("Lead not found")

        email = normalize_email(verification.email)
        verification.verified_at = now
        _mark_verified(lead, email, now)
        await db.flush()

        family = await _leads_for_email(db, email, lock=True)
        if lead not in family:
            family.append(lead)

        canonical = select_canonical(family)
        if canonical is None:
            # Only closed or merged rows remain; the verified lead takes over
            canonical = lead
            if lead.status == "merged":
                _restore_from_merge(lead)

        if canonical is not lead:
            _mark_verified(canonical, email, now)
            canonical.portal_status = lead.portal_status

        merged_ids = []
        for row in family:
            if row is canonical or row.status == "closed":
                continue
            if row.status != "merged" or (row.meta or {}).get("merged_into") != canonical.id:
                _merge_into(row, canonical, now)
                merged_ids.append(row.id)

        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("verification_merge_failed", lead_id=verification.lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to confirm verification") from e
    except NotFoundError:
        await db.rollback()
        raise

    redirect = canonical.id != lead.id
    logger.info(
        "email_verified",
        lead_id=lead.id,
        canonical_lead_id=canonical.id,
        merged=merged_ids,
        redirect=redirect,
    )
    return VerificationResult(
        already=False,
        lead_id=canonical.id,
        case_id=canonical.case_id,
        portal_token=canonical.portal_token,
        redirect=redirect,
    )


async def send_magic_link(db: AsyncSession, email: str | None, now: datetime | None = None) -> dict:
    """E-mail a portal access link to the canonical lead. The reply never reveals whether the e-mail exists."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email required")

    canonical = select_canonical(await _leads_for_email(db, normalized))
    if canonical is None:
        logger.info("magic_link_no_match")
        return {"ok": True, "message": MAGIC_LINK_MESSAGE}

    now = now or datetime.utcnow()
    lead_id, case_id = canonical.id, canonical.case_id
    try:
        token, _ = await _issue_verification_token(db, lead_id, normalized, now)
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("magic_link_insert_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to generate link") from e

    await send_magic_link_email(normalized, build_verify_url(token, case_id))
    logger.info("magic_link_issued", lead_id=lead_id, case_id=case_id)
    return {"ok": True, "message": MAGIC_LINK_MESSAGE}


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(settings.password_hash_rounds)).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


@lru_cache(maxsize=1)
def _decoy_hash() -> str:
    # Checked when no password exists so misses cost as much as wrong passwords
    return hash_password(secrets.token_hex(16))


class LoginThrottle:
    """Counts failed password logins per ``client:email`` key.

    A key locks once it reaches ``max_failures``; each failure pushes the
    reset ``window`` forward. State is per process.
    """

    def __init__(self, max_failures: int, window: timedelta):
        self.max_failures = max_failures
        self.window = window
        self._failures: dict[str, tuple[int, datetime]] = {}

    def is_locked(self, key: str, now: datetime) -> bool:
        entry = self._failures.get(key)
        if entry is None:
            return False
        count, reset_at = entry
        if reset_at <= now:
            del self._failures[key]
            return False
        return count >= self.max_failures

    def record_failure(self, key: str, now: datetime) -> None:
        count, reset_at = self._failures.get(key, (0, now))
        if reset_at <= now:
            count = 0
        self._failures[key] = (count + 1, now + self.window)

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._failures.clear()
        else:
            self._failures.pop(key, None)


login_throttle = LoginThrottle(settings.login_max_failures, timedelta(minutes=settings.login_lockout_minutes))


async def set_portal_password(
    db: AsyncSession, case_id: str | None, portal_token: str | None, password: str | None
) -> dict:
    """Attach a login password to the session's lead. The lead's e-mail must be verified."""
    lead = await validate_portal_session(db, case_id, portal_token)
    password = password or ""
    if len(password) < settings.password_min_length:
        raise ValidationError(f"Password must be at least {settings.password_min_length} characters.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError("Password is too long.")

    email = normalize_email(lead.email)
    if not email or not lead.email_verified_at:
        raise ForbiddenError("Verify your email before setting a password")

    lead_id = lead.id
    password_hash = await run_in_threadpool(hash_password, password)
    try:
        auth = await db.get(LeadPortalAuth, lead_id)
        if auth is None:
            db.add(LeadPortalAuth(lead_id=lead_id, email=email, password_hash=password_hash))
        else:
            auth.email = email
            auth.password_hash = password_hash
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("portal_password_save_failed", lead_id=lead_id, error=str(e)[:200])
        raise UpstreamError("Failed to save password") from e

    logger.info("portal_password_set", lead_id=lead_id)
    return {"ok": True, "has_password": True}


async def login_with_password(
    db: AsyncSession,
    email: str | None,
    password: str | None,
    client: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Exchange e-mail and password for the canonical lead's portal credentials.

    A password set on a duplicate that was later merged still opens the
    canonical lead. Every failure reads ``Invalid credentials``.
    """
    normalized = normalize_email(email)
    password = password or ""
    if not normalized or not password:
        raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

    now = now or datetime.utcnow()
    key = f"{client or 'unknown'}:{normalized}"
    if login_throttle.is_locked(key, now):
        logger.warning("portal_login_throttled", client=client)
        raise RateLimitedError()

    family = await _leads_for_email(db, normalized)
    canonical = select_canonical(family)
    candidates = []
    if canonical is not None:
        owner_ids = [canonical.id] + [
            lead.id for lead in family
            if lead.status == "merged" and (lead.meta or {}).get("merged_into") == canonical.id
        ]
        result = await db.execute(select(LeadPortalAuth).where(LeadPortalAuth.lead_id.in_(owner_ids)))
        by_lead = {row.lead_id: row for row in result.scalars().all()}
        candidates = [by_lead[lead_id] for lead_id in owner_ids if lead_id in by_lead]

    matched = False
    for auth in candidates:
        if await run_in_threadpool(check_password, password, auth.password_hash):
            matched = True
            break
    if not candidates:
        await run_in_threadpool(check_password, password, _decoy_hash())

    if not matched:
        login_throttle.record_failure(key, now)
        logger.info("portal_login_failed", client=client)
        raise UnauthorizedError(INVALID_CREDENTIALS_MESSAGE)

    login_throttle.reset(key)
    logger.info("portal_login", lead_id=canonical.id)
    return {"ok": True, "case_id": canonical.case_id, "portal_token": canonical.portal_token}


def _iso(value: Any) -> str | None:
    dt = as_naive_utc(value)
    return dt.isoformat() if dt else None


async def unified_patient_view(db: AsyncSession, email: str | None) -> dict:
    """Every lead for an e-mail with the canonical one singled out and a merged activity feed."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email parameter required")

    result = await db.execute(
        select(Lead).where(func.lower(Lead.email) == normalized).order_by(Lead.created_at.desc())
    )
    # Plain dicts survive the rollback a degraded read performs
    leads = [lead.to_dict() for lead in result.scalars().all()]
    if not leads:
        raise NotFoundError("No patient found")

    canonical = select_canonical(leads) or leads[0]
    lead_ids = [lead["id"] for lead in leads]

    async def notes_query():
        rows = await db.execute(select(LeadNote).where(LeadNote.lead_id.in_(lead_ids)))
        return rows.scalars().all()

    async def timeline_query():
        rows = await db.execute(select(LeadTimelineEvent).where(LeadTimelineEvent.lead_id.in_(lead_ids)))
        return rows.scalars().all()

    async def contacts_query():
        rows = await db.execute(select(LeadContactEvent).where(LeadContactEvent.lead_id.in_(lead_ids)))
        return rows.scalars().all()

    notes = [
        {"type": "note", "lead_id": n.lead_id, "timestamp": _iso(n.created_at), "data": {"note": n.note}}
        for n in await optional_rows(db, "lead_notes", notes_query)
    ]
    timeline = [
        {"type": "timeline", "lead_id": t.lead_id, "timestamp": _iso(t.created_at),
         "data": {"stage": t.stage, "note": t.note}}
        for t in await optional_rows(db, "lead_timeline_events", timeline_query)
    ]
    contacts = [
        {"type": "contact", "lead_id": c.lead_id, "timestamp": _iso(c.created_at),
         "data": {"channel": c.channel, "note": c.note}}
        for c in await optional_rows(db, "lead_contact_events", contacts_query)
    ]
    feed = sorted(notes + timeline + contacts, key=lambda e: e["timestamp"] or "", reverse=True)

    now = datetime.utcnow().isoformat()
    return {
        "ok": True,
        "canonical_lead": {**canonical, "is_canonical": True},
        "historical_leads": [lead for lead in leads if lead["id"] != canonical["id"]],
        "unified_timeline": feed,
        "stats": {
            "total_leads": len(leads),
            "total_notes": len(notes),
            "total_timeline_events": len(timeline),
            "total_contact_events": len(contacts),
            "first_contact": _iso(leads[-1]["created_at"]) or now,
            "last_activity": feed[0]["timestamp"] if feed else now,
        },
    }
