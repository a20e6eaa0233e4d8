"""Privacy-safe projection of leads for doctors, plus review-bucket filtering.

Doctors only ever receive the allowlisted DTO built here. Contact details,
demographics, tracking metadata and internal identifiers other than ``id``
are never copied, regardless of which columns the source row has.
"""

import re
from typing import Any, Iterable

from clinic_crm.services.common import get_field

_EMAIL_RE = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE)
# 7+ digits, optionally punctuated with spaces, dots, dashes or parentheses
_PHONE_RE = re.compile(r"\+?\d[\d\s().-]{5,}\d")
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)

REDACTED_EMAIL = "[redacted email]"
REDACTED_PHONE = "[redacted phone]"
REDACTED_URL = "[redacted url]"

DOCTOR_DTO_FIELDS = (
    "id",
    "ref",
    "case_code",
    "name",
    "treatment",
    "timeline",
    "message",
    "snapshot",
    "doctor_review_status",
    "doctor_assigned_at",
    "updated_at",
)

SAFE_UNREAD = frozenset({"pending", "needs_info"})
SAFE_REVIEWED = frozenset({"reviewed"})
DEFAULT_REVIEW_STATUS = "pending"


def _phone_replacement(match: re.Match) -> str:
    digits = sum(ch.isdigit() for ch in match.group(0))
    return REDACTED_PHONE if digits >= 7 else match.group(0)


def redact_pii(value: Any) -> Any:
    """Mask e-mails, phone numbers and URLs in free text.

    Falsy input is returned unchanged; anything else is coerced to ``str``.
    Running it twice gives the same result as running it once.
    """
    if not value:
        return value
    text = str(value)
    text = _EMAIL_RE.sub(REDACTED_EMAIL, text)
    text = _PHONE_RE.sub(_phone_replacement, text)
    text = _URL_RE.sub(REDACTED_URL, text)
    return text


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def lead_ref(lead: Any) -> str | None:
    return _clean(get_field(lead, "lead_uuid")) or _clean(get_field(lead, "id"))


def case_code_from_lead(lead: Any) -> str | None:
    """``CASE-<id>``, else ``CASE-<first 8 of lead_uuid>``, else None."""
    if lead is None:
        return None
    lead_id = _clean(get_field(lead, "id"))
    if lead_id:
        return f"CASE-{lead_id}"
    lead_uuid = _clean(get_field(lead, "lead_uuid"))
    if lead_uuid:
        return f"CASE-{lead_uuid.replace('-', '')[:8].upper()}"
    return None


def to_doctor_lead_dto(lead: Any) -> dict | None:
    if lead is None:
        return None

    summary = get_field(lead, "ai_summary")
    snapshot = summary if isinstance(summary, str) and summary else None
    message = get_field(lead, "message")

    return {
        "id": _clean(get_field(lead, "id")),
        "ref": lead_ref(lead),
        "case_code": case_code_from_lead(lead),
        "name": get_field(lead, "name", "Unknown") or "Unknown",
        "treatment": get_field(lead, "treatment"),
        "timeline": get_field(lead, "timeline"),
        "message": redact_pii(message) if message else None,
        "snapshot": redact_pii(snapshot) if snapshot else None,
        "doctor_review_status": get_field(lead, "doctor_review_status", DEFAULT_REVIEW_STATUS),
        "doctor_assigned_at": get_field(lead, "doctor_assigned_at"),
        "updated_at": get_field(lead, "updated_at"),
    }


def filter_leads_by_bucket(leads: Iterable[Any], bucket: str | None) -> list:
    """Partition doctor DTOs (or raw leads) into the ``unread`` / ``reviewed`` tabs.

    An unrecognised bucket name returns everything.
    """
    if not isinstance(leads, (list, tuple)):
        return []

    name = str(bucket or "unread").strip().lower()
    if name in ("unread", "pending"):
        allowed = SAFE_UNREAD
    elif name == "reviewed":
        allowed = SAFE_REVIEWED
    else:
        return list(leads)

    return [lead for lead in leads if get_field(lead, "doctor_review_status", DEFAULT_REVIEW_STATUS) in allowed]
