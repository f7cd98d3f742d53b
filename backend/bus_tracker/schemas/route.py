from pydantic import BaseModel, ConfigDict


class RouteInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    route_id: str
    route_short_name: str
    route_long_name: str | None = None
    route_color: str | None = None
    route_text_color: str | None = None


class StopInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stop_id: str
    stop_code: str | None = None
    stop_name: str
    stop_lat: float
    stop_lon: float
    wheelchair_boarding: int = 0


class RoutesResponse(BaseModel):
    success: bool = True
    data: list[RouteInfo]


class StopsResponse(BaseModel):
    success: bool = True
    data: list[StopInfo]
    count: int
