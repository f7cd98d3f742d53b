"""Rolling store of recent bus positions (prune-then-insert on every refresh)."""

import datetime
import logging
from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from bus_tracker.core.errors import StoreQueryFailure
from bus_tracker.core.normalizer import VehicleRecord
from bus_tracker.models.tables import BusPosition

logger = logging.getLogger(__name__)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=datetime.timezone.utc)


def row_to_record(row: BusPosition) -> VehicleRecord:
    return VehicleRecord(
        vehicle_id=row.bus_id,
        route_label=row.route_number,
        latitude=row.latitude,
        longitude=row.longitude,
        heading=row.heading,
        speed=row.speed or 0.0,
        current_location=row.current_location,
        deviation_status=row.deviation,
        observed_at=as_utc(row.observed_at or row.inserted_at),
    )


class RetentionStore:
    """Persists normalized batches and answers recent-history queries."""

    def __init__(
        self,
        session_factory,
        retention: datetime.timedelta = datetime.timedelta(minutes=10),
        recent_window: datetime.timedelta = datetime.timedelta(minutes=5),
    ) -> None:
        self.session_factory = session_factory
        self.retention = retention
        self.recent_window = recent_window

    async def persist(
        self, batch: Iterable[VehicleRecord], now: datetime.datetime | None = None
    ) -> int:
        """Prune rows older than the retention horizon, then insert one row per record.

        The whole cycle is one transaction with a savepoint per row, so a
        failing row is rolled back, logged and skipped without costing the
        others. Returns the number of rows inserted.
        """
        now = now or _utcnow()
        batch = list(batch)
        inserted = 0
        async with self.session_factory() as session:
            async with session.begin():
                try:
                    async with session.begin_nested():
                        result = await session.execute(
                            delete(BusPosition).where(BusPosition.inserted_at < now - self.retention)
                        )
                    logger.debug("Pruned %d expired positions", result.rowcount or 0)
                except SQLAlchemyError:
                    logger.exception("Failed to prune expired positions")

                for record in batch:
                    try:
                        async with session.begin_nested():
                            session.add(BusPosition(
                                bus_id=record.vehicle_id,
                                route_number=record.route_label,
                                latitude=record.latitude,
                                longitude=record.longitude,
                                heading=None if record.heading is None else str(record.heading),
                                speed=record.speed,
                                current_location=record.current_location,
                                deviation=record.deviation_status,
                                observed_at=record.observed_at,
                                inserted_at=now,
                            ))
                    except SQLAlchemyError as e:
                        logger.warning("Failed to insert position for bus %s: %s", record.vehicle_id, e)
                        continue
                    inserted += 1

        logger.info("Stored %d/%d bus positions", inserted, len(batch))
        return inserted

    async def query_recent(
        self,
        routes: Iterable[str] | None = None,
        bus_number: str | None = None,
        now: datetime.datetime | None = None,
    ) -> list[BusPosition]:
        """Rows inserted within the recent window, newest first.

        ``routes`` is an any-of exact match on route_number; ``bus_number`` a
        substring match on bus_id.
        """
        now = now or _utcnow()
        stmt = select(BusPosition).where(BusPosition.inserted_at > now - self.recent_window)
        route_list = sorted(set(routes or ()))
        if route_list:
            stmt = stmt.where(BusPosition.route_number.in_(route_list))
        if bus_number:
            stmt = stmt.where(BusPosition.bus_id.contains(bus_number, autoescape=True))
        stmt = stmt.order_by(BusPosition.inserted_at.desc(), BusPosition.id.desc())
        return await self._fetch_all(stmt)

    async def latest(self, limit: int = 10) -> list[BusPosition]:
        stmt = (
            select(BusPosition)
            .order_by(BusPosition.inserted_at.desc(), BusPosition.id.desc())
            .limit(limit)
        )
        return await self._fetch_all(stmt)

    async def count(self) -> int:
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(func.count()).select_from(BusPosition))
                return result.scalar_one()
        except SQLAlchemyError as e:
            logger.error("Failed to count bus positions: %s", e)
            raise StoreQueryFailure(e) from e

    async def _fetch_all(self, stmt) -> list[BusPosition]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Bus position query failed: %s", e)
            raise StoreQueryFailure(e) from e
