"""Bulk lead risk refresh worker.

Runs the risk scorer over many leads. One failing lead is logged and
skipped; the rest of the batch still runs.
"""

import time

from rq import Retry
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.api.health import RISK_REFRESH_DURATION
from clinic_crm.errors import CRMError, NotFoundError
from clinic_crm.models.lead import Lead
from clinic_crm.services.identity import INACTIVE_STATUSES
from clinic_crm.services.risk import analyze_lead
from clinic_crm.workers.base import get_queue, run_async, worker_session

import structlog

logger = structlog.get_logger()

QUEUE_NAME = "risk"


async def refresh_leads(db: AsyncSession, lead_ids: list[str] | None = None) -> dict:
    if lead_ids is None:
        result = await db.execute(select(Lead.id).where(Lead.status.not_in(sorted(INACTIVE_STATUSES))))
        lead_ids = list(result.scalars().all())

    analyzed, skipped, failed = [], [], []
    for lead_id in lead_ids:
        try:
            await analyze_lead(db, lead_id)
            analyzed.append(lead_id)
        except NotFoundError:
            skipped.append(lead_id)
        except CRMError as e:
            logger.error("risk_refresh_lead_failed", lead_id=lead_id, error=e.message)
            failed.append(lead_id)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error("risk_refresh_lead_failed", lead_id=lead_id, error=str(e)[:200])
            failed.append(lead_id)

    return {"analyzed": len(analyzed), "skipped": skipped, "failed": failed}


async def _refresh(lead_ids: list[str] | None) -> dict:
    async with worker_session() as db:
        return await refresh_leads(db, lead_ids)


def refresh_risk_scores(lead_ids: list[str] | None = None) -> dict:
    """RQ task: recompute risk scores for ``lead_ids`` (every open lead when None)."""
    start = time.time()
    summary = run_async(_refresh(lead_ids))
    duration = time.time() - start
    RISK_REFRESH_DURATION.observe(duration)
    logger.info("risk_refresh_completed", duration_s=round(duration, 2), **summary)
    return summary


def enqueue_risk_refresh(lead_ids: list[str] | None = None) -> str:
    job = get_queue(QUEUE_NAME).enqueue(
        "clinic_crm.workers.risk_refresh.refresh_risk_scores",
        lead_ids,
        job_timeout=600,
        retry=Retry(max=2, interval=[30, 120]),
    )
    return job.id
