"""Health check and metrics endpoints."""

import redis as redis_lib
import yaml
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import text

from clinic_crm.config import settings
from clinic_crm.database import async_session
from clinic_crm.schemas.common import HealthResponse
from clinic_crm.services.onboarding import load_cards

router = APIRouter(tags=["health"])

# Prometheus metrics
LEADS_CREATED = Counter("leads_created_total", "Leads created", ["source"])
VERIFICATIONS = Counter("verifications_total", "E-mail verification confirmations", ["outcome"])
RISK_ANALYSES = Counter("risk_analyses_total", "Lead risk analyses", ["mode"])
RISK_REFRESH_DURATION = Histogram("risk_refresh_duration_seconds", "Bulk risk refresh duration")
WEBHOOK_REQUESTS = Counter("webhook_requests_total", "Total webhook requests", ["provider", "event_type"])
ERRORS = Counter("errors_total", "Total errors", ["type"])


async def _check_db() -> str:
    try:
        async with async_session() as session:
            await session.execute(text("SELECT 1"))
        return "ok"
    except Exception:
        return "error"


def _check_redis() -> str:
    try:
        redis_lib.from_url(settings.redis_url, socket_timeout=2).ping()
        return "ok"
    except Exception:
        return "error"


def _check_cards() -> str:
    try:
        return "ok" if len(load_cards()) == settings.onboarding_total_cards else "mismatch"
    except (OSError, yaml.YAMLError):
        return "missing"


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Database, queue and onboarding catalogue status."""
    db_status = await _check_db()
    redis_status = _check_redis()
    cards_status = _check_cards()

    # The queue only backs bulk refresh; the API stays usable without it
    overall = "healthy" if db_status == "ok" and cards_status == "ok" else "unhealthy"
    if overall == "healthy" and redis_status != "ok":
        overall = "degraded"

    return HealthResponse(status=overall, db=db_status, redis=redis_status, cards=cards_status)


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
