from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite+aiosqlite:///./bus_data.db"
    redis_url: str = ""  # empty disables Redis; WebSocket fan-out still works in-process
    metrobus_url: str = "https://www.metrobusmobile.com/apilive/timetrack/json/"
    metrobus_referer: str = "https://www.metrobusmobile.com/"
    fetch_timeout_seconds: float = 10.0
    follow_up_timeout_seconds: float = 20.0  # cap on persist and broadcast after each refresh
    redis_timeout_seconds: float = 2.0
    poll_interval_seconds: int = 30
    cache_freshness_seconds: int = 30
    position_retention_minutes: int = 10
    recent_window_minutes: int = 5

    # Route label policy per upstream payload shape: passthrough | strip | numeric
    route_policy_flat_array: str = "strip"
    route_policy_wrapped: str = "strip"
    route_policy_geojson: str = "numeric"

    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    model_config = {"env_prefix": "", "case_sensitive": False}


settings = Settings()
