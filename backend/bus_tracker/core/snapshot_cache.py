"""Single-slot in-memory cache of the latest normalized vehicle batch."""

import datetime
import threading
from dataclasses import dataclass

from bus_tracker.core.normalizer import VehicleRecord


@dataclass(frozen=True)
class Snapshot:
    batch: tuple[VehicleRecord, ...]
    fetched_at: datetime.datetime
    freshness_window: datetime.timedelta

    def age(self, now: datetime.datetime) -> datetime.timedelta:
        return now - self.fetched_at

    def is_fresh(self, now: datetime.datetime) -> bool:
        return self.age(now) < self.freshness_window


class SnapshotCache:
    """Holds one Snapshot; replaced wholesale on every successful refresh.

    Readers take the current reference without locking. The writer builds
    the new Snapshot first and publishes it with a single assignment, so a
    reader sees either the previous batch or the new one, never a mix.
    """

    def __init__(self, freshness_window: datetime.timedelta) -> None:
        self.freshness_window = freshness_window
        self._snapshot: Snapshot | None = None
        self._write_lock = threading.Lock()

    def read(self) -> Snapshot | None:
        return self._snapshot

    def is_fresh(self, now: datetime.datetime) -> bool:
        snapshot = self._snapshot
        return snapshot is not None and snapshot.is_fresh(now)

    def replace(self, batch, now: datetime.datetime) -> Snapshot:
        """Publish ``batch`` as the current snapshot taken at ``now``."""
        batch = tuple(batch)
        with self._write_lock:
            current = self._snapshot
            if current is not None and current.fetched_at == now and current.batch == batch:
                return current
            snapshot = Snapshot(batch=batch, fetched_at=now, freshness_window=self.freshness_window)
            self._snapshot = snapshot
            return snapshot
