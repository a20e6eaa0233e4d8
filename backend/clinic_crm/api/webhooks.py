"""Booking webhook intake (Cal.com)."""

from fastapi import APIRouter, Body, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.database import get_db
from clinic_crm.errors import CRMError
from clinic_crm.services.booking import handle_cal_webhook, verify_webhook_secret
from clinic_crm.api.health import WEBHOOK_REQUESTS, ERRORS

import structlog

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/cal")
async def ingest_cal_booking(
    body: dict = Body(...),
    x_cal_secret: str | None = Header(None),
    x_webhook_secret: str | None = Header(None),
    x_cal_webhook_secret: str | None = Header(None),
    secret: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Record a Cal.com booking event and upsert the booked lead."""
    try:
        verify_webhook_secret(x_cal_secret or x_webhook_secret or x_cal_webhook_secret or secret)
    except CRMError:
        ERRORS.labels(type="webhook_auth").inc()
        raise

    result = await handle_cal_webhook(db, body)
    WEBHOOK_REQUESTS.labels(provider="cal", event_type=result.get("eventType") or "unknown").inc()
    return result
