"""Async client for the Metrobus live timetrack feed."""

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from bus_tracker.config import settings
from bus_tracker.core.errors import FetchFailure
from bus_tracker.core.normalizer import (
    DROPPED,
    PayloadShape,
    ShapeProfile,
    VehicleRecord,
    build_profiles,
    classify,
    normalize,
)

logger = logging.getLogger(__name__)


def profiles_from_settings() -> dict[PayloadShape, ShapeProfile]:
    return build_profiles({
        PayloadShape.FLAT_ARRAY: settings.route_policy_flat_array,
        PayloadShape.WRAPPED: settings.route_policy_wrapped,
        PayloadShape.GEOJSON: settings.route_policy_geojson,
    })


@dataclass(frozen=True)
class FetchResult:
    shape: PayloadShape
    fetched_at: datetime.datetime
    records: tuple[VehicleRecord, ...] = ()
    raw_count: int = 0
    dropped: int = 0  # entries without usable coordinates
    skipped: int = 0  # entries that could not be read at all

    @property
    def schema_mismatch(self) -> bool:
        return self.shape is PayloadShape.UNRECOGNIZED


class MetrobusClient:
    """Fetches vehicle positions from Metrobus. One request per call, no retries."""

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        profiles: dict[PayloadShape, ShapeProfile] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url or settings.metrobus_url
        self.timeout = settings.fetch_timeout_seconds if timeout is None else timeout
        self.profiles = profiles or profiles_from_settings()
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "User-Agent": "Mozilla/5.0 (compatible; BusTracker/1.0)",
                "Referer": settings.metrobus_referer,
                "Accept": "application/json",
            },
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch_raw(self) -> Any:
        """GET the feed and decode JSON. Raises FetchFailure on any transport-level problem."""
        try:
            # httpx timeouts are per phase; wait_for bounds the whole exchange
            resp = await asyncio.wait_for(self._client.get(self.url), timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()
        except asyncio.TimeoutError as e:
            logger.warning("Metrobus request timed out after %gs", self.timeout)
            raise FetchFailure(f"timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            logger.warning("Metrobus request failed: %s: %s", type(e).__name__, e)
            raise FetchFailure(e) from e
        except ValueError as e:
            logger.warning("Metrobus returned an undecodable body: %s", e)
            raise FetchFailure(f"undecodable response body: {e}") from e

    async def fetch_vehicles(self) -> FetchResult:
        """Fetch and normalize all current vehicle positions."""
        payload = await self.fetch_raw()
        observed_at = datetime.datetime.now(datetime.timezone.utc)

        classified = classify(payload)
        if classified.shape is PayloadShape.UNRECOGNIZED:
            logger.warning(
                "Unrecognised Metrobus payload (type=%s), treating as zero vehicles. Sample: %.300s",
                type(payload).__name__, payload,
            )
            return FetchResult(shape=classified.shape, fetched_at=observed_at)

        records: list[VehicleRecord] = []
        dropped = 0
        skipped = 0
        for index, item in enumerate(classified.items):
            try:
                record = normalize(
                    item, classified.shape,
                    observed_at=observed_at, index=index, profiles=self.profiles,
                )
            except (TypeError, ValueError, AttributeError) as e:
                logger.debug("Skipping malformed vehicle entry #%d: %s", index, e)
                skipped += 1
                continue
            if record is DROPPED:
                dropped += 1
                continue
            records.append(record)

        if not classified.items:
            logger.info("Metrobus reported no active vehicles (%s)", classified.shape.value)
        logger.info(
            "Fetched %d vehicles from Metrobus (shape=%s raw=%d dropped=%d skipped=%d)",
            len(records), classified.shape.value, len(classified.items), dropped, skipped,
        )
        return FetchResult(
            shape=classified.shape,
            fetched_at=observed_at,
            records=tuple(records),
            raw_count=len(classified.items),
            dropped=dropped,
            skipped=skipped,
        )
