"""Helpers shared by the lead services."""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_crm.errors import TableNotFoundError, UpstreamError

logger = structlog.get_logger()


def get_field(row: Any, field: str, default: Any = None) -> Any:
    """Read a field from a mapping or an ORM row without assuming the column exists."""
    if row is None:
        return default
    if isinstance(row, Mapping):
        value = row.get(field, default)
    else:
        value = getattr(row, field, default)
    return default if value is None else value


def as_naive_utc(value: Any) -> datetime | None:
    """Coerce a datetime or ISO-8601 string to a naive UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _classify_read_error(table: str, exc: SQLAlchemyError) -> UpstreamError | TableNotFoundError:
    text = str(exc).lower()
    if "no such table" in text or "does not exist" in text:
        return TableNotFoundError(table)
    return UpstreamError(f"Failed to read {table}")


async def optional_rows(
    db: AsyncSession,
    table: str,
    query: Callable[[], Awaitable[list]],
    **log_context,
) -> list:
    """Run a read against an optional collaborator table.

    Failures degrade to an empty list with a warning; the session is rolled
    back so the caller's primary work can continue.
    """
    try:
        return list(await query())
    except SQLAlchemyError as e:
        error = _classify_read_error(table, e)
        logger.warning("optional_read_degraded", table=table, reason=error.code, error=str(e)[:200], **log_context)
        await db.rollback()
        return []
