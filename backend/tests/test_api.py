"""HTTP-level tests for the bus, reference and health endpoints."""

import datetime

import httpx
import pytest

from bus_tracker import main
from bus_tracker.core.errors import FetchFailure, StoreQueryFailure
from bus_tracker.core.metrobus_client import FetchResult
from bus_tracker.core.normalizer import PayloadShape, VehicleRecord
from bus_tracker.core.refresh import RefreshOrchestrator
from bus_tracker.core.retention_store import RetentionStore
from bus_tracker.core.snapshot_cache import SnapshotCache
from bus_tracker.db.session import get_session
from bus_tracker.models.tables import BusPosition, Route, Stop

T0 = datetime.datetime(2026, 10, 19, 14, 0, tzinfo=datetime.timezone.utc)


class StubClient:
    def __init__(self, outcome) -> None:
        self.outcome = outcome
        self.calls = 0

    async def fetch_vehicles(self):
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


class RecordingStore:
    def __init__(self, rows=(), error: Exception | None = None) -> None:
        self.rows = list(rows)
        self.error = error
        self.queries: list[dict] = []

    async def persist(self, batch, now=None) -> int:
        return len(batch)

    async def query_recent(self, routes=None, bus_number=None, now=None):
        self.queries.append({"routes": routes, "bus_number": bus_number})
        if self.error:
            raise self.error
        return self.rows


def _record(vehicle_id: str) -> VehicleRecord:
    return VehicleRecord(
        vehicle_id=vehicle_id, route_label="9", latitude=38.9, longitude=-77.03,
        heading=180, speed=15.0, current_location="K St", deviation_status="on time",
        observed_at=T0,
    )


def _row(row_id: int, bus_id: str, route: str = "9") -> BusPosition:
    return BusPosition(
        id=row_id, bus_id=bus_id, route_number=route, latitude=38.9, longitude=-77.0,
        heading="N", speed=0.0, current_location="unknown", deviation="on time",
        observed_at=T0, inserted_at=T0,
    )


def _orchestrator(client, store) -> RefreshOrchestrator:
    return RefreshOrchestrator(
        client=client,
        cache=SnapshotCache(datetime.timedelta(seconds=30)),
        store=store,
        clock=lambda: T0,
    )


async def _get(path: str, **kwargs) -> httpx.Response:
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path, **kwargs)


@pytest.fixture
def wired():
    """Attach an orchestrator to the API modules for one test."""
    def _wire(client, store=None):
        orch = _orchestrator(client, store or RecordingStore())
        main.wire(orch)
        return orch

    yield _wire
    main.wire(None)


@pytest.mark.anyio
async def test_buses_live_fetch(wired):
    result = FetchResult(shape=PayloadShape.FLAT_ARRAY, fetched_at=T0, records=(_record("1203"),), raw_count=1)
    wired(StubClient(result))

    resp = await _get("/api/buses")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["cached"] is False
    assert body["count"] == 1
    assert body["lastUpdated"].startswith("2026-10-19T14:00:00")
    assert body["data"][0]["vehicleId"] == "1203"
    assert body["data"][0]["longitude"] == -77.03


@pytest.mark.anyio
async def test_bus_records_use_camel_case_keys(wired):
    result = FetchResult(shape=PayloadShape.FLAT_ARRAY, fetched_at=T0, records=(_record("1203"),), raw_count=1)
    wired(StubClient(result))

    bus = (await _get("/api/buses")).json()["data"][0]

    assert set(bus) == {
        "vehicleId", "routeLabel", "latitude", "longitude", "heading", "speed",
        "currentLocation", "deviationStatus", "observedAt",
    }
    assert bus["routeLabel"] == "9"
    assert bus["currentLocation"] == "K St"
    assert bus["deviationStatus"] == "on time"

    sample = (await _get("/api/test-metrobus")).json()["sample"]
    assert sample["vehicleId"] == "1203"


@pytest.mark.anyio
async def test_buses_second_call_is_cached(wired):
    client = StubClient(FetchResult(shape=PayloadShape.FLAT_ARRAY, fetched_at=T0, records=(_record("1"),)))
    wired(client)

    await _get("/api/buses")
    body = (await _get("/api/buses")).json()

    assert client.calls == 1
    assert body["cached"] is True


@pytest.mark.anyio
async def test_buses_store_fallback(wired):
    wired(StubClient(FetchFailure("down")), RecordingStore(rows=[_row(2, "77")]))

    resp = await _get("/api/buses")

    assert resp.status_code == 200
    body = resp.json()
    assert body["fallback"] is True
    assert body["cached"] is True
    assert body["message"]
    assert body["data"][0]["vehicleId"] == "77"


@pytest.mark.anyio
async def test_buses_total_failure_is_500(wired):
    wired(StubClient(FetchFailure("down")), RecordingStore(error=StoreQueryFailure("no such table")))

    resp = await _get("/api/buses")

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["error"]
    assert "no such table" in body["message"]


@pytest.mark.anyio
async def test_buses_not_ready_without_orchestrator():
    main.wire(None)
    resp = await _get("/api/buses")
    assert resp.status_code == 503


@pytest.mark.anyio
async def test_filtered_parses_params(wired):
    store = RecordingStore(rows=[_row(1, "1203")])
    wired(StubClient(FetchFailure("unused")), store)

    resp = await _get("/api/buses/filtered", params={"routes": " 9, 12,,", "busNumber": " 12 "})

    assert resp.status_code == 200
    body = resp.json()
    assert store.queries == [{"routes": ["12", "9"], "bus_number": "12"}]
    assert body["filters"] == {"routes": ["12", "9"], "busNumber": "12"}
    assert body["count"] == 1
    assert body["data"][0]["bus_id"] == "1203"
    assert body["data"][0]["inserted_at"].startswith("2026-10-19T14:00:00")


@pytest.mark.anyio
async def test_filtered_blank_params_mean_no_filter(wired):
    store = RecordingStore()
    wired(StubClient(FetchFailure("unused")), store)

    resp = await _get("/api/buses/filtered", params={"routes": ",,", "busNumber": ""})

    assert resp.status_code == 200
    assert store.queries == [{"routes": None, "bus_number": None}]


@pytest.mark.anyio
async def test_filtered_store_failure_is_500(wired):
    wired(StubClient(FetchFailure("unused")), RecordingStore(error=StoreQueryFailure("locked")))

    resp = await _get("/api/buses/filtered")

    assert resp.status_code == 500
    assert resp.json()["error"] == "Filtered fetch failed"


@pytest.mark.anyio
async def test_health_reports_cache(wired):
    orch = wired(StubClient(FetchResult(shape=PayloadShape.GEOJSON, fetched_at=T0, records=(_record("1"),))))
    await orch.refresh()

    resp = await _get("/api/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["cache"]["hasData"] is True
    assert body["cache"]["count"] == 1
    assert body["cache"]["age"] == 0
    assert body["upstream"]["shape"] == "geojson"
    assert body["upstream"]["schemaMismatch"] is False


@pytest.mark.anyio
async def test_health_without_orchestrator():
    main.wire(None)
    resp = await _get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["cache"]["hasData"] is False


@pytest.mark.anyio
async def test_test_metrobus_reports_failure_with_200(wired):
    wired(StubClient(FetchFailure("connection refused")))

    resp = await _get("/api/test-metrobus")

    assert resp.status_code == 200
    assert resp.json()["success"] is False


@pytest.mark.anyio
async def test_debug_database(wired, session_factory):
    store = RetentionStore(session_factory)
    await store.persist([_record("1"), _record("2")], now=T0)
    wired(StubClient(FetchFailure("unused")), store)

    body = (await _get("/api/debug/database")).json()

    assert body["success"] is True
    assert body["totalInDatabase"] == 2
    assert [r["bus_id"] for r in body["recentBuses"]] == ["2", "1"]


@pytest.fixture
def db_override(session_factory):
    async def _session():
        async with session_factory() as session:
            yield session

    main.app.dependency_overrides[get_session] = _session
    yield session_factory
    main.app.dependency_overrides.clear()


@pytest.mark.anyio
async def test_routes_and_stops(db_override):
    async with db_override() as session:
        session.add_all([
            Route(route_id="r2", route_short_name="12", route_long_name="Crosstown"),
            Route(route_id="r1", route_short_name="09", route_long_name="Downtown"),
            Stop(stop_id="s1", stop_name="Oak Ave", stop_lat=38.91, stop_lon=-77.01),
            Stop(stop_id="s2", stop_name="Elm St", stop_lat=38.92, stop_lon=-77.02),
            Stop(stop_id="s3", stop_name="Pine Rd", stop_lat=38.93, stop_lon=-77.03),
        ])
        await session.commit()

    routes = (await _get("/api/routes")).json()
    assert [r["route_short_name"] for r in routes["data"]] == ["09", "12"]

    stops = (await _get("/api/stops")).json()
    assert stops["count"] == 3
    assert [s["stop_name"] for s in stops["data"]] == ["Elm St", "Oak Ave", "Pine Rd"]

    limited = (await _get("/api/stops", params={"limit": "2"})).json()
    assert limited["count"] == 2

    malformed = (await _get("/api/stops", params={"limit": "lots"})).json()
    assert malformed["count"] == 3
