import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from bus_tracker.core.retention_store import as_utc


class BusRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    vehicle_id: str
    route_label: str
    latitude: float
    longitude: float
    heading: str | float | None = None
    speed: float = 0.0
    current_location: str | None = None
    deviation_status: str | None = None
    observed_at: datetime.datetime | None = None


class PositionRow(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bus_id: str
    route_number: str
    latitude: float
    longitude: float
    heading: str | None = None
    speed: float | None = None
    current_location: str | None = None
    deviation: str | None = None
    observed_at: datetime.datetime | None = None
    inserted_at: datetime.datetime

    @field_validator("observed_at", "inserted_at")
    @classmethod
    def _stored_as_utc(cls, value: datetime.datetime | None) -> datetime.datetime | None:
        return as_utc(value)


class BusesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    data: list[BusRecord]
    cached: bool
    last_updated: datetime.datetime | None = Field(default=None, alias="lastUpdated")
    count: int
    fallback: bool = False
    message: str | None = None


class BusFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    routes: list[str] | None = None
    bus_number: str | None = Field(default=None, alias="busNumber")


class FilteredBusesResponse(BaseModel):
    success: bool = True
    data: list[PositionRow]
    filters: BusFilters
    count: int


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str | None = None
