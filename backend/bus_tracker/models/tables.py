import datetime

from sqlalchemy import DateTime, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from bus_tracker.models.base import Base


class Route(Base):
    __tablename__ = "routes"

    route_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    route_short_name: Mapped[str] = mapped_column(String(32), nullable=False)
    route_long_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    route_color: Mapped[str | None] = mapped_column(String(7), nullable=True)
    route_text_color: Mapped[str | None] = mapped_column(String(7), nullable=True)


class Stop(Base):
    __tablename__ = "stops"

    stop_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stop_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stop_name: Mapped[str] = mapped_column(String(255), nullable=False)
    stop_lat: Mapped[float] = mapped_column(Float, nullable=False)
    stop_lon: Mapped[float] = mapped_column(Float, nullable=False)
    wheelchair_boarding: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class BusPosition(Base):
    __tablename__ = "bus_positions"
    __table_args__ = (
        Index("ix_bp_inserted_at", "inserted_at"),
        Index("ix_bp_route_inserted", "route_number", "inserted_at"),
    )

    # Integer (not BigInteger) so SQLite uses it as the rowid alias
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bus_id: Mapped[str] = mapped_column(String(64), nullable=False)
    route_number: Mapped[str] = mapped_column(String(32), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    heading: Mapped[str | None] = mapped_column(String(32), nullable=True)
    speed: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    deviation: Mapped[str | None] = mapped_column(String(64), nullable=True)
    observed_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    inserted_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
