"""Patient onboarding cards: catalogue, per-card answers and completion progress."""

from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

import structlog
import yaml
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.config import settings
from clinic_crm.errors import UpstreamError, ValidationError
from clinic_crm.models.portal import LeadOnboardingAnswer, LeadOnboardingState
from clinic_crm.services.identity import validate_portal_session

logger = structlog.get_logger()

# Check multiple paths: local dev path and Docker mount path
_SAMPLES_CANDIDATES = [
    Path(__file__).parent.parent.parent.parent / "samples",  # Local dev
    Path("/samples"),  # Docker mount
]
SAMPLES_DIR = next((p for p in _SAMPLES_CANDIDATES if p.exists()), _SAMPLES_CANDIDATES[0])
CARDS_FILE = SAMPLES_DIR / "onboarding_cards.yaml"


@lru_cache(maxsize=1)
def load_cards(path: Path = CARDS_FILE) -> list[dict]:
    """Load the onboarding card definitions."""
    if not path.exists():
        raise FileNotFoundError(f"Onboarding cards not found (searched {path})")
    with open(path, encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}
    return list(config.get("cards") or [])


def compute_progress(completed_count: int, total: int | None = None) -> int:
    total = total or settings.onboarding_total_cards
    pct = round(min(completed_count, total) / total * 100)
    return max(0, min(100, pct))


def merge_completed(previous: Iterable[str] | None, card_id: str) -> list[str]:
    """Add ``card_id`` to the completed list, keeping first-seen order and no duplicates."""
    completed = list(dict.fromkeys(previous or []))
    if card_id not in completed:
        completed.append(card_id)
    return completed


async def submit_card(
    db: AsyncSession,
    case_id: str | None,
    portal_token: str | None,
    card_id: str | None,
    answers: Any,
) -> dict:
    """Store the latest answers for one card and update completion progress."""
    card_id = (card_id or "").strip()
    if not card_id or answers is None:
        raise ValidationError("case_id, portal_token, card_id, answers required")

    lead = await validate_portal_session(db, case_id, portal_token)
    lead_id = lead.id

    try:
        result = await db.execute(
            select(LeadOnboardingAnswer).where(
                LeadOnboardingAnswer.lead_id == lead_id,
                LeadOnboardingAnswer.card_id == card_id,
            )
        )
        row = result.scalar_one_or_none()
        if row:
            row.answers = answers
            row.updated_at = datetime.utcnow()
        else:
            db.add(LeadOnboardingAnswer(lead_id=lead_id, card_id=card_id, answers=answers))

        state = await db.get(LeadOnboardingState, lead_id)
        if state is None:
            state = LeadOnboardingState(lead_id=lead_id, completed_card_ids=[])
            db.add(state)

        completed = merge_completed(state.completed_card_ids, card_id)
        state.completed_card_ids = completed
        state.progress_percent = compute_progress(len(completed))
        state.updated_at = datetime.utcnow()

        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("onboarding_submit_failed", lead_id=lead_id, card_id=card_id, error=str(e)[:200])
        raise UpstreamError("Failed to save onboarding answers") from e

    logger.info("onboarding_card_submitted", lead_id=lead_id, card_id=card_id, progress_percent=state.progress_percent)
    return {
        "ok": True,
        "lead_id": lead_id,
        "progress_percent": state.progress_percent,
        "completed_card_ids": completed,
    }


async def get_onboarding_state(db: AsyncSession, case_id: str | None, portal_token: str | None) -> dict:
    lead = await validate_portal_session(db, case_id, portal_token)
    state = await db.get(LeadOnboardingState, lead.id)

    result = await db.execute(
        select(LeadOnboardingAnswer)
        .where(LeadOnboardingAnswer.lead_id == lead.id)
        .order_by(LeadOnboardingAnswer.updated_at.desc())
    )
    latest_answers = {row.card_id: row.answers for row in result.scalars().all()}

    return {
        "ok": True,
        "lead": {
            "id": lead.id,
            "case_id": lead.case_id,
            "portal_status": lead.portal_status,
            "email_verified": lead.email_verified_at is not None,
        },
        "state": {
            "completed_card_ids": list(state.completed_card_ids or []) if state else [],
            "progress_percent": state.progress_percent if state else 0,
            "updated_at": state.updated_at if state else None,
        },
        "latest_answers": latest_answers,
    }
