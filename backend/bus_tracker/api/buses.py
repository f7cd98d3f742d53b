"""Bus position REST API endpoints."""

import logging

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from bus_tracker.core.errors import StoreQueryFailure
from bus_tracker.schemas.bus import (
    BusesResponse,
    BusFilters,
    BusRecord,
    ErrorResponse,
    FilteredBusesResponse,
    PositionRow,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/buses", tags=["buses"])

# Will be set by main.py
orchestrator = None

FALLBACK_MESSAGE = "Using recent data from database"


def error_response(status_code: int, error: str, message: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message).model_dump(),
    )


def parse_routes(raw: str | None) -> list[str] | None:
    """'09, 12,,X2' -> ['09', '12', 'X2']; blank input means no filter."""
    if not raw:
        return None
    routes = sorted({part.strip() for part in raw.split(",") if part.strip()})
    return routes or None


@router.get("", response_model=BusesResponse, responses={500: {"model": ErrorResponse}})
async def list_buses():
    """Current bus positions: fresh cache, live fetch, stale cache or stored rows."""
    if orchestrator is None:
        return error_response(503, "Service not ready")

    result = await orchestrator.get_buses()
    if not result.ok:
        return error_response(500, "Bus data unavailable", result.error)

    return BusesResponse(
        data=[BusRecord.model_validate(r) for r in result.records],
        cached=result.cached,
        last_updated=result.last_updated,
        count=len(result.records),
        fallback=result.fallback,
        message=FALLBACK_MESSAGE if result.fallback else None,
    )


@router.get("/filtered", response_model=FilteredBusesResponse, responses={500: {"model": ErrorResponse}})
async def list_buses_filtered(
    routes: str | None = None,
    bus_number: str | None = Query(default=None, alias="busNumber"),
):
    """Recently stored positions filtered by route list and bus number substring."""
    if orchestrator is None:
        return error_response(503, "Service not ready")

    route_list = parse_routes(routes)
    needle = (bus_number or "").strip() or None
    try:
        rows = await orchestrator.store.query_recent(routes=route_list, bus_number=needle)
    except StoreQueryFailure as e:
        return error_response(500, "Filtered fetch failed", str(e))

    logger.info("Filtered query routes=%s bus=%s matched %d rows", route_list, needle, len(rows))
    return FilteredBusesResponse(
        data=[PositionRow.model_validate(r) for r in rows],
        filters=BusFilters(routes=route_list, bus_number=needle),
        count=len(rows),
    )
