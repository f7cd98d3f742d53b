"""Diagnostic endpoints for poking the upstream feed and the position store."""

from fastapi import APIRouter

from bus_tracker.api.buses import error_response
from bus_tracker.core.errors import FetchFailure, StoreQueryFailure
from bus_tracker.schemas.bus import BusRecord, PositionRow

router = APIRouter(prefix="/api", tags=["diagnostics"])

# Will be set by main.py
orchestrator = None


@router.get("/test-metrobus")
async def test_metrobus():
    """Run a refresh right now and show what came back."""
    if orchestrator is None:
        return {"success": False, "error": "Orchestrator not initialized"}
    try:
        snapshot = await orchestrator.refresh()
    except FetchFailure as e:
        return {"success": False, "error": str(e), "message": "Direct API test failed"}

    buses = [BusRecord.model_validate(r).model_dump(mode="json", by_alias=True) for r in snapshot.batch]
    return {
        "success": True,
        "rawData": buses,
        "count": len(buses),
        "sample": buses[0] if buses else None,
        "upstream": orchestrator.upstream.as_dict(),
        "message": "Direct API test successful",
    }


@router.get("/debug/database")
async def debug_database():
    """Ten most recent stored positions and the total row count."""
    if orchestrator is None:
        return {"success": False, "error": "Orchestrator not initialized"}
    try:
        rows = await orchestrator.store.latest(limit=10)
        total = await orchestrator.store.count()
    except StoreQueryFailure as e:
        return error_response(500, "Database query failed", str(e))
    return {
        "success": True,
        "recentBuses": [PositionRow.model_validate(r).model_dump(mode="json") for r in rows],
        "totalInDatabase": total,
        "message": "Database contents",
    }
