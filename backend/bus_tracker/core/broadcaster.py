"""Live bus feed: per-refresh diffs and feed outage notices.

Every refresh is compared with the previously published snapshot and only the
buses that appeared, moved or changed status are pushed, together with the ids
that vanished. When the upstream fails, subscribers get one ``stale`` notice
per outage instead of silence. Redis carries the same messages to other
processes when ``REDIS_URL`` is set.
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass

import orjson
import redis.asyncio as aioredis

from bus_tracker.config import settings
from bus_tracker.core.normalizer import VehicleRecord
from bus_tracker.core.snapshot_cache import Snapshot
from bus_tracker.schemas.bus import BusRecord

logger = logging.getLogger(__name__)

CHANNEL = "metrobus:buses"
STATE_KEY = "metrobus:state"

LIVE = "live"
STALE = "stale"
PENDING = "pending"

# Queued in place of a backlog the client fell too far behind on
RESYNC = object()


def _position(record: VehicleRecord) -> tuple:
    return (
        record.route_label, record.latitude, record.longitude, record.heading,
        record.speed, record.current_location, record.deviation_status,
    )


@dataclass(frozen=True)
class SnapshotDiff:
    upserted: tuple[VehicleRecord, ...] = ()
    removed: tuple[str, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.upserted or self.removed)


def diff_snapshots(previous: Snapshot | None, current: Snapshot) -> SnapshotDiff:
    """Buses that are new or whose reported state changed, and ids no longer present.

    ``observed_at`` is ignored: it moves on every refresh.
    """
    before = {} if previous is None else {r.vehicle_id: r for r in previous.batch}
    seen = set()
    upserted = []
    for record in current.batch:
        seen.add(record.vehicle_id)
        old = before.get(record.vehicle_id)
        if old is None or _position(old) != _position(record):
            upserted.append(record)
    return SnapshotDiff(tuple(upserted), tuple(sorted(set(before) - seen)))


def _buses(records) -> list[dict]:
    return [BusRecord.model_validate(r).model_dump(mode="json", by_alias=True) for r in records]


def snapshot_message(snapshot: Snapshot | None, status: str) -> bytes:
    return orjson.dumps({
        "type": "snapshot",
        "status": status,
        "lastUpdated": snapshot.fetched_at if snapshot else None,
        "count": len(snapshot.batch) if snapshot else 0,
        "buses": _buses(snapshot.batch) if snapshot else [],
    })


def diff_message(snapshot: Snapshot, diff: SnapshotDiff) -> bytes:
    return orjson.dumps({
        "type": "diff",
        "status": LIVE,
        "lastUpdated": snapshot.fetched_at,
        "count": len(snapshot.batch),
        "upserted": _buses(diff.upserted),
        "removed": list(diff.removed),
    })


def status_message(status: str, last_updated: datetime.datetime | None, error: str | None = None) -> bytes:
    return orjson.dumps({
        "type": "status",
        "status": status,
        "lastUpdated": last_updated,
        "error": error,
    })


class Subscription:
    """Outbox for one WebSocket client.

    A client that falls ``maxsize`` messages behind loses its backlog and is
    sent a full snapshot instead, so it never applies diffs against state it
    never saw.
    """

    def __init__(self, maxsize: int = 10) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.resyncs = 0

    def offer(self, message) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(RESYNC)
            self.resyncs += 1

    def request_resync(self) -> None:
        self.offer(RESYNC)

    async def next(self):
        return await self._queue.get()


class Broadcaster:
    """Turns refresh results into feed messages for Redis and WebSocket subscribers."""

    def __init__(self, redis_url: str | None = None, timeout: float | None = None) -> None:
        self._redis_url = settings.redis_url if redis_url is None else redis_url
        self._timeout = settings.redis_timeout_seconds if timeout is None else timeout
        self._redis: aioredis.Redis | None = None
        self._subscribers: set[Subscription] = set()
        self._previous: Snapshot | None = None
        self._stale = False

    async def connect(self) -> None:
        if self._redis_url:
            self._redis = aioredis.from_url(
                self._redis_url,
                decode_responses=False,
                socket_timeout=self._timeout,
                socket_connect_timeout=self._timeout,
            )
        else:
            logger.info("No REDIS_URL configured - broadcasting in-process only")

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    @property
    def status(self) -> str:
        if self._stale:
            return STALE
        return PENDING if self._previous is None else LIVE

    async def publish(self, snapshot: Snapshot) -> None:
        """Push what changed since the last published snapshot.

        Unchanged batches are not pushed unless the feed is recovering from
        an outage, in which case subscribers need the ``live`` status back.
        """
        diff = diff_snapshots(self._previous, snapshot)
        recovering = self._stale
        self._previous = snapshot
        self._stale = False
        await self._store_state(snapshot_message(snapshot, LIVE))
        if not diff and not recovering:
            logger.debug("Snapshot unchanged, nothing to push")
            return

        logger.debug("Pushing %d changed and %d removed buses", len(diff.upserted), len(diff.removed))
        await self._send(diff_message(snapshot, diff))

    async def publish_failure(self, error: str) -> None:
        """Tell subscribers the feed is serving stale data; once per outage."""
        if self._stale:
            return
        self._stale = True
        last_updated = self._previous.fetched_at if self._previous else None
        await self._store_state(snapshot_message(self._previous, self.status))
        await self._send(status_message(STALE, last_updated, error))

    def current_snapshot_message(self) -> bytes:
        """Full state for a client that is connecting or resyncing."""
        return snapshot_message(self._previous, self.status)

    async def _store_state(self, payload: bytes) -> None:
        if self._redis:
            try:
                await self._redis.set(STATE_KEY, payload)
            except Exception:
                logger.exception("Failed to store feed state in Redis")

    async def _send(self, message: bytes) -> None:
        if self._redis:
            try:
                await self._redis.publish(CHANNEL, message)
            except Exception:
                logger.exception("Failed to publish to Redis")
        for subscription in self._subscribers:
            subscription.offer(message)

    def subscribe(self) -> Subscription:
        subscription = Subscription()
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
