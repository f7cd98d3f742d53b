"""Route reference REST API endpoints."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bus_tracker.api.buses import error_response
from bus_tracker.db.session import get_session
from bus_tracker.models.tables import Route
from bus_tracker.schemas.bus import ErrorResponse
from bus_tracker.schemas.route import RouteInfo, RoutesResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/routes", tags=["routes"])


@router.get("", response_model=RoutesResponse, responses={500: {"model": ErrorResponse}})
async def list_routes(session: AsyncSession = Depends(get_session)):
    """All bus routes, ordered by short name."""
    try:
        result = await session.execute(select(Route).order_by(Route.route_short_name))
    except SQLAlchemyError as e:
        logger.error("Routes query failed: %s", e)
        return error_response(500, "Routes fetch failed", str(e))
    return RoutesResponse(data=[RouteInfo.model_validate(r) for r in result.scalars().all()])
