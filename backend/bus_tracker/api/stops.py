"""Stop reference REST API endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bus_tracker.api.buses import error_response
from bus_tracker.db.session import get_session
from bus_tracker.models.tables import Stop
from bus_tracker.schemas.bus import ErrorResponse
from bus_tracker.schemas.route import StopInfo, StopsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stops", tags=["stops"])


def parse_limit(raw: str | None) -> int | None:
    """Positive integer limit, or None (unbounded) for anything else."""
    try:
        limit = int(raw) if raw is not None else None
    except ValueError:
        return None
    if limit is None or limit <= 0:
        return None
    return limit


@router.get("", response_model=StopsResponse, responses={500: {"model": ErrorResponse}})
async def list_stops(limit: str | None = None, session: AsyncSession = Depends(get_session)):
    """Bus stops ordered by name, optionally capped at ``limit``."""
    stmt = select(Stop).order_by(Stop.stop_name)
    max_rows = parse_limit(limit)
    if max_rows is not None:
        stmt = stmt.limit(max_rows)
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as e:
        logger.error("Stops query failed: %s", e)
        return error_response(500, "Stops fetch failed", str(e))
    stops = [StopInfo.model_validate(s) for s in result.scalars().all()]
    return StopsResponse(data=stops, count=len(stops))
