"""FastAPI application entry point."""

import datetime
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bus_tracker.api import buses, diagnostics, routes, stops, ws
from bus_tracker.config import settings
from bus_tracker.core.broadcaster import Broadcaster
from bus_tracker.core.metrobus_client import MetrobusClient
from bus_tracker.core.refresh import RefreshOrchestrator
from bus_tracker.core.retention_store import RetentionStore
from bus_tracker.core.scheduler import create_scheduler
from bus_tracker.core.snapshot_cache import SnapshotCache
from bus_tracker.db.session import async_session, engine
from bus_tracker.models.base import Base
from bus_tracker.models import tables  # noqa: F401

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Will be set on startup
orchestrator: RefreshOrchestrator | None = None


def build_orchestrator(broadcaster: Broadcaster | None = None) -> RefreshOrchestrator:
    return RefreshOrchestrator(
        client=MetrobusClient(),
        cache=SnapshotCache(datetime.timedelta(seconds=settings.cache_freshness_seconds)),
        store=RetentionStore(
            async_session,
            retention=datetime.timedelta(minutes=settings.position_retention_minutes),
            recent_window=datetime.timedelta(minutes=settings.recent_window_minutes),
        ),
        broadcaster=broadcaster,
        follow_up_timeout=settings.follow_up_timeout_seconds,
    )


def wire(instance: RefreshOrchestrator | None) -> None:
    """Point the API modules at an orchestrator (None to detach)."""
    global orchestrator
    orchestrator = instance
    buses.orchestrator = instance
    diagnostics.orchestrator = instance
    ws.broadcaster = instance.broadcaster if instance else None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    broadcaster = Broadcaster()
    await broadcaster.connect()
    instance = build_orchestrator(broadcaster)
    wire(instance)

    scheduler = create_scheduler(instance)
    scheduler.start()
    logger.info("Bus Tracker started - polling Metrobus every %ds", settings.poll_interval_seconds)

    yield

    scheduler.shutdown(wait=False)
    wire(None)
    await instance.drain()
    await instance.client.close()
    await broadcaster.close()
    await engine.dispose()
    logger.info("Bus Tracker shut down")


app = FastAPI(
    title="Metrobus Bus Tracker",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(buses.router)
app.include_router(routes.router)
app.include_router(stops.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    body = {
        "success": True,
        "status": "OK",
        "timestamp": datetime.datetime.now(datetime.timezone.utc),
    }
    if orchestrator is None:
        body["cache"] = {"hasData": False, "lastUpdated": None, "age": None, "count": 0, "fresh": False}
        return body
    body["cache"] = orchestrator.cache_status()
    body["upstream"] = orchestrator.upstream.as_dict()
    body["refreshState"] = orchestrator.state.value
    if orchestrator.broadcaster is not None:
        body["subscribers"] = orchestrator.broadcaster.subscriber_count
        body["feed"] = orchestrator.broadcaster.status
    return body
