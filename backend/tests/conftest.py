import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from bus_tracker.db.session import make_engine
from bus_tracker.models import tables  # noqa: F401
from bus_tracker.models.base import Base


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path):
    """Session factory bound to a throwaway SQLite file with all tables created."""
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'positions.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()
