"""Normalization of raw Metrobus vehicle entries into VehicleRecord.

The live feed has shipped three payload shapes over time:

- FLAT_ARRAY: ``[{"vehicle": "1203", "bus_lat": "38.90", "bus_lon": "-77.03", ...}]``
- WRAPPED: ``{"Bus": [{"unit": "1203", ...}]}``
- GEOJSON: ``{"features": [{"geometry": {"coordinates": [lon, lat]}, "properties": {...}}]}``

Each shape has a ShapeProfile with its own field precedence and route label
policy. Entries without usable coordinates are dropped; every other missing
field falls back to a sentinel default.
"""

import datetime
import enum
import math
import re
from dataclasses import dataclass
from typing import Any

UNKNOWN = "unknown"
ON_TIME = "on time"

# Named array properties recognised in the WRAPPED shape, in lookup order
WRAPPER_KEYS = ("Bus", "buses", "vehicles")

_ROUTE_SEPARATOR = re.compile(r"[-_/\s]")


class PayloadShape(str, enum.Enum):
    FLAT_ARRAY = "flat_array"
    WRAPPED = "wrapped"
    GEOJSON = "geojson"
    UNRECOGNIZED = "unrecognized"


class RoutePolicy(str, enum.Enum):
    PASSTHROUGH = "passthrough"
    STRIP = "strip"  # keep the segment before the first separator
    NUMERIC = "numeric"  # strip, then drop leading zeros from all-digit labels


class Dropped(enum.Enum):
    """Outcome for an entry whose latitude/longitude is missing or invalid."""

    DROPPED = "dropped"


DROPPED = Dropped.DROPPED


@dataclass(frozen=True)
class VehicleRecord:
    vehicle_id: str
    route_label: str
    latitude: float
    longitude: float
    heading: str | float
    speed: float
    current_location: str
    deviation_status: str
    observed_at: datetime.datetime


@dataclass(frozen=True)
class ClassifiedPayload:
    shape: PayloadShape
    items: list


@dataclass(frozen=True)
class ShapeProfile:
    """Field precedence for one payload shape. First present field wins."""

    id_fields: tuple[str, ...]
    route_fields: tuple[str, ...]
    lat_fields: tuple[str, ...]
    lon_fields: tuple[str, ...]
    heading_fields: tuple[str, ...] = ("heading", "hdg")
    speed_fields: tuple[str, ...] = ("speed", "spd")
    location_fields: tuple[str, ...] = ("current_location", "location")
    deviation_fields: tuple[str, ...] = ("deviation", "status")
    route_policy: RoutePolicy = RoutePolicy.STRIP
    geometry_coordinates: bool = False  # GeoJSON [lon, lat] instead of flat fields


_FLAT_LAT = ("bus_lat", "lat", "latitude")
_FLAT_LON = ("bus_lon", "lon", "lng", "longitude")
_FLAT_ROUTE = ("routenumber", "current_route", "route")

DEFAULT_ROUTE_POLICIES: dict[PayloadShape, RoutePolicy] = {
    PayloadShape.FLAT_ARRAY: RoutePolicy.STRIP,
    PayloadShape.WRAPPED: RoutePolicy.STRIP,
    PayloadShape.GEOJSON: RoutePolicy.NUMERIC,
}


def build_profiles(
    route_policies: dict[PayloadShape, RoutePolicy | str] | None = None,
) -> dict[PayloadShape, ShapeProfile]:
    """Build the per-shape profile table, overriding route policies where given."""
    policies = dict(DEFAULT_ROUTE_POLICIES)
    for shape, policy in (route_policies or {}).items():
        policies[PayloadShape(shape)] = RoutePolicy(policy)

    return {
        PayloadShape.FLAT_ARRAY: ShapeProfile(
            id_fields=("vehicle", "unit", "id"),
            route_fields=_FLAT_ROUTE,
            lat_fields=_FLAT_LAT,
            lon_fields=_FLAT_LON,
            route_policy=policies[PayloadShape.FLAT_ARRAY],
        ),
        PayloadShape.WRAPPED: ShapeProfile(
            id_fields=("unit", "id", "vehicle"),
            route_fields=_FLAT_ROUTE,
            lat_fields=_FLAT_LAT,
            lon_fields=_FLAT_LON,
            route_policy=policies[PayloadShape.WRAPPED],
        ),
        PayloadShape.GEOJSON: ShapeProfile(
            id_fields=("unit", "vehicle", "id"),
            route_fields=("route", "routenumber", "current_route"),
            lat_fields=(),
            lon_fields=(),
            route_policy=policies[PayloadShape.GEOJSON],
            geometry_coordinates=True,
        ),
    }


DEFAULT_PROFILES = build_profiles()


def classify(payload: Any) -> ClassifiedPayload:
    """Decide which known shape a decoded payload has and extract its vehicle list."""
    if isinstance(payload, list):
        return ClassifiedPayload(PayloadShape.FLAT_ARRAY, payload)
    if isinstance(payload, dict):
        features = payload.get("features")
        if isinstance(features, list):
            return ClassifiedPayload(PayloadShape.GEOJSON, features)
        for key in WRAPPER_KEYS:
            items = payload.get(key)
            if isinstance(items, list):
                return ClassifiedPayload(PayloadShape.WRAPPED, items)
    return ClassifiedPayload(PayloadShape.UNRECOGNIZED, [])


def simplify_route_label(raw: Any, policy: RoutePolicy) -> str:
    """Apply a route label policy, e.g. '09-1' -> '09' (strip) or '9' (numeric)."""
    if raw is None:
        return UNKNOWN
    label = str(raw).strip()
    if not label:
        return UNKNOWN
    if policy is RoutePolicy.PASSTHROUGH:
        return label

    head = _ROUTE_SEPARATOR.split(label, maxsplit=1)[0] or label
    if policy is RoutePolicy.NUMERIC and head.isascii() and head.isdigit():
        return str(int(head))
    return head


def _first(source: dict, fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = source.get(name)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _parse_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def _parse_coordinate(value: Any, limit: float) -> float | None:
    number = _parse_float(value)
    if number is None or abs(number) > limit:
        return None
    return number


def _geometry_coordinates(feature: dict) -> tuple[Any, Any]:
    """Return (lon, lat) from a GeoJSON feature, or (None, None)."""
    geometry = feature.get("geometry")
    if not isinstance(geometry, dict):
        return None, None
    coords = geometry.get("coordinates")
    if not isinstance(coords, (list, tuple)) or len(coords) < 2:
        return None, None
    return coords[0], coords[1]


def _text(value: Any, default: str) -> str:
    if value is None:
        return default
    return str(value).strip() or default


def _heading(value: Any) -> str | float:
    if value is None:
        return UNKNOWN
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return _text(value, UNKNOWN)


def normalize(
    raw: dict,
    shape: PayloadShape,
    *,
    observed_at: datetime.datetime,
    index: int = 0,
    profiles: dict[PayloadShape, ShapeProfile] | None = None,
) -> VehicleRecord | Dropped:
    """Map one raw entry of a classified payload to a VehicleRecord.

    Returns DROPPED when latitude or longitude is absent, non-numeric,
    non-finite or out of range. ``index`` is the entry's position in the
    batch and only feeds the synthesized vehicle id.

    Raises TypeError if ``raw`` is not an object, and KeyError for a shape
    without a profile (UNRECOGNIZED).
    """
    if not isinstance(raw, dict):
        raise TypeError(f"expected an object, got {type(raw).__name__}")
    profile = (profiles or DEFAULT_PROFILES)[shape]

    if profile.geometry_coordinates:
        lon_raw, lat_raw = _geometry_coordinates(raw)
        source = raw.get("properties")
        if not isinstance(source, dict):
            source = {}
    else:
        source = raw
        lat_raw = _first(source, profile.lat_fields)
        lon_raw = _first(source, profile.lon_fields)

    latitude = _parse_coordinate(lat_raw, 90.0)
    longitude = _parse_coordinate(lon_raw, 180.0)
    if latitude is None or longitude is None:
        return DROPPED

    vehicle_id = _first(source, profile.id_fields)
    if vehicle_id is None:
        vehicle_id = f"bus_{int(observed_at.timestamp() * 1000)}_{index}"

    return VehicleRecord(
        vehicle_id=str(vehicle_id).strip(),
        route_label=simplify_route_label(_first(source, profile.route_fields), profile.route_policy),
        latitude=latitude,
        longitude=longitude,
        heading=_heading(_first(source, profile.heading_fields)),
        speed=_parse_float(_first(source, profile.speed_fields)) or 0.0,
        current_location=_text(_first(source, profile.location_fields), UNKNOWN),
        deviation_status=_text(_first(source, profile.deviation_fields), ON_TIME),
        observed_at=observed_at,
    )
