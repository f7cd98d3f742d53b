"""Refresh orchestrator: single-flight upstream fetches and the read fallback chain.

    IDLE -> FETCHING -> PUBLISHING -> IDLE
                     -> FAILED_WITH_FALLBACK -> IDLE

Reads go fresh cache -> live fetch -> stale cache -> position store, and only
report an error when all four come up empty.
"""

import asyncio
import datetime
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass

from bus_tracker.core.broadcaster import Broadcaster
from bus_tracker.core.errors import FetchFailure, StoreQueryFailure
from bus_tracker.core.metrobus_client import FetchResult, MetrobusClient
from bus_tracker.core.normalizer import PayloadShape, VehicleRecord
from bus_tracker.core.retention_store import RetentionStore, as_utc, row_to_record
from bus_tracker.core.snapshot_cache import Snapshot, SnapshotCache

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class RefreshState(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PUBLISHING = "publishing"
    FAILED_WITH_FALLBACK = "failed_with_fallback"


class Outcome(str, enum.Enum):
    FRESH = "fresh"
    REFRESHED = "refreshed"
    STALE_FALLBACK = "stale_fallback"
    STORE_FALLBACK = "store_fallback"
    HARD_FAILURE = "hard_failure"


@dataclass(frozen=True)
class BusesResult:
    outcome: Outcome
    records: tuple[VehicleRecord, ...] = ()
    last_updated: datetime.datetime | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.HARD_FAILURE

    @property
    def cached(self) -> bool:
        return self.outcome in (Outcome.FRESH, Outcome.STALE_FALLBACK, Outcome.STORE_FALLBACK)

    @property
    def fallback(self) -> bool:
        return self.outcome is Outcome.STORE_FALLBACK


@dataclass
class UpstreamStatus:
    """Last fetch summary; tells "zero buses right now" apart from "format changed"."""

    shape: PayloadShape | None = None
    raw_count: int = 0
    kept: int = 0
    dropped: int = 0
    skipped: int = 0
    consecutive_mismatches: int = 0
    consecutive_failures: int = 0
    last_success_at: datetime.datetime | None = None
    last_failure_at: datetime.datetime | None = None
    last_error: str | None = None

    def as_dict(self) -> dict:
        return {
            "shape": self.shape.value if self.shape else None,
            "schemaMismatch": self.shape is PayloadShape.UNRECOGNIZED,
            "consecutiveMismatches": self.consecutive_mismatches,
            "consecutiveFailures": self.consecutive_failures,
            "rawCount": self.raw_count,
            "kept": self.kept,
            "dropped": self.dropped,
            "skipped": self.skipped,
            "lastSuccessAt": self.last_success_at,
            "lastFailureAt": self.last_failure_at,
            "lastError": self.last_error,
        }


class RefreshOrchestrator:
    """Owns the snapshot cache and keeps it current.

    The periodic job and on-demand reads both go through ``refresh()``;
    while a fetch is in flight every further caller awaits that same fetch.
    Persisting and broadcasting a new snapshot run afterwards as tracked
    follow-up tasks, so readers only ever wait on the upstream fetch.
    """

    def __init__(
        self,
        client: MetrobusClient,
        cache: SnapshotCache,
        store: RetentionStore,
        broadcaster: Broadcaster | None = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
        follow_up_timeout: float = 20.0,
    ) -> None:
        self.client = client
        self.cache = cache
        self.store = store
        self.broadcaster = broadcaster
        self.follow_up_timeout = follow_up_timeout
        self._clock = clock
        self._inflight: asyncio.Task | None = None
        self._follow_ups: set[asyncio.Task] = set()
        self._publish_lock = asyncio.Lock()
        self.state = RefreshState.IDLE
        self.upstream = UpstreamStatus()
        self.fetch_count = 0

    async def refresh(self) -> Snapshot:
        """Fetch and publish a new snapshot, joining the in-flight fetch if any.

        Raises FetchFailure, shared by every caller that joined the fetch.
        """
        task = self._inflight
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run_refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        # One caller going away must not cancel the fetch the others are waiting on
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            task.exception()  # mark retrieved; joined callers re-raise it themselves

    async def _run_refresh(self) -> Snapshot:
        self.state = RefreshState.FETCHING
        self.fetch_count += 1
        try:
            try:
                result = await self.client.fetch_vehicles()
            except FetchFailure as e:
                self.state = RefreshState.FAILED_WITH_FALLBACK
                self._record_failure(e)
                self._follow_up(self._announce_failure(e))
                raise

            self.state = RefreshState.PUBLISHING
            snapshot = self.cache.replace(result.records, self._clock())
            self._record_success(result, snapshot.fetched_at)
            self._follow_up(self._publish(snapshot))
            return snapshot
        finally:
            self.state = RefreshState.IDLE

    def _record_success(self, result: FetchResult, at: datetime.datetime) -> None:
        status = self.upstream
        status.shape = result.shape
        status.raw_count = result.raw_count
        status.kept = len(result.records)
        status.dropped = result.dropped
        status.skipped = result.skipped
        status.consecutive_failures = 0
        status.last_success_at = at
        status.consecutive_mismatches = status.consecutive_mismatches + 1 if result.schema_mismatch else 0
        if result.dropped or result.skipped:
            logger.info(
                "Refresh dropped %d entries without coordinates, skipped %d malformed",
                result.dropped, result.skipped,
            )

    def _record_failure(self, failure: FetchFailure) -> None:
        self.upstream.consecutive_failures += 1
        self.upstream.last_failure_at = self._clock()
        self.upstream.last_error = str(failure)

    def _follow_up(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._follow_ups.add(task)
        task.add_done_callback(self._collect_follow_up)

    def _collect_follow_up(self, task: asyncio.Task) -> None:
        self._follow_ups.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Refresh follow-up failed", exc_info=error)

    @property
    def pending_follow_ups(self) -> int:
        return len(self._follow_ups)

    async def drain(self) -> None:
        """Wait for every outstanding persist and broadcast to finish."""
        while self._follow_ups:
            await asyncio.gather(*self._follow_ups, return_exceptions=True)

    async def _publish(self, snapshot: Snapshot) -> None:
        # Serialized so stored rows and pushed diffs follow refresh order
        async with self._publish_lock:
            await self._bounded(
                self.store.persist(snapshot.batch, now=snapshot.fetched_at), "persist bus positions"
            )
            if self.broadcaster is not None:
                await self._bounded(self.broadcaster.publish(snapshot), "broadcast bus snapshot")

    async def _announce_failure(self, failure: FetchFailure) -> None:
        if self.broadcaster is None:
            return
        async with self._publish_lock:
            await self._bounded(self.broadcaster.publish_failure(str(failure)), "broadcast feed outage")

    async def _bounded(self, operation, description: str) -> None:
        try:
            await asyncio.wait_for(operation, self.follow_up_timeout)
        except asyncio.TimeoutError:
            logger.warning("Gave up trying to %s after %.1fs", description, self.follow_up_timeout)
        except Exception:
            logger.exception("Failed to %s", description)

    async def poll(self) -> None:
        """Single scheduled cycle; a failure leaves the previous snapshot in place."""
        try:
            await self.refresh()
        except FetchFailure as e:
            logger.warning("Periodic refresh failed, keeping previous snapshot: %s", e)
        except Exception:
            logger.exception("Error in bus refresh cycle")

    async def get_buses(self) -> BusesResult:
        """Serve the current bus list, degrading through the fallback chain."""
        snapshot = self.cache.read()
        if snapshot is not None and snapshot.is_fresh(self._clock()):
            logger.debug("Serving cached snapshot (%d buses)", len(snapshot.batch))
            return BusesResult(Outcome.FRESH, snapshot.batch, snapshot.fetched_at)

        try:
            snapshot = await self.refresh()
        except FetchFailure as e:
            return await self._stale_fallback(e)
        return BusesResult(Outcome.REFRESHED, snapshot.batch, snapshot.fetched_at)

    async def _stale_fallback(self, failure: FetchFailure) -> BusesResult:
        stale = self.cache.read()
        if stale is None:
            return await self._store_fallback(failure)
        logger.warning(
            "Serving stale snapshot from %s (%d buses): %s",
            stale.fetched_at.isoformat(), len(stale.batch), failure,
        )
        return BusesResult(Outcome.STALE_FALLBACK, stale.batch, stale.fetched_at, error=str(failure))

    async def _store_fallback(self, failure: FetchFailure) -> BusesResult:
        try:
            rows = await self.store.query_recent(now=self._clock())
        except StoreQueryFailure as e:
            logger.error("No snapshot and store fallback failed: %s", e)
            return BusesResult(Outcome.HARD_FAILURE, error=str(e))
        if not rows:
            logger.error("No snapshot and no recent stored positions: %s", failure)
            return BusesResult(Outcome.HARD_FAILURE, error=str(failure))

        logger.warning("Serving %d buses from the position store: %s", len(rows), failure)
        return BusesResult(
            Outcome.STORE_FALLBACK,
            tuple(row_to_record(row) for row in rows),
            as_utc(rows[0].inserted_at),
            error=str(failure),
        )

    def cache_status(self) -> dict:
        snapshot = self.cache.read()
        if snapshot is None:
            return {"hasData": False, "lastUpdated": None, "age": None, "count": 0, "fresh": False}
        now = self._clock()
        return {
            "hasData": True,
            "lastUpdated": snapshot.fetched_at,
            "age": int(snapshot.age(now).total_seconds() * 1000),
            "count": len(snapshot.batch),
            "fresh": snapshot.is_fresh(now),
        }
