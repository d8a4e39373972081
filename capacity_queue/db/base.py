"""SQLAlchemy declarative base plus the process-wide async engine.

The agent, assignment, business-hours and escalation tables are created with
``create_all`` on startup; there are no migrations.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from capacity_queue.core.config import get_settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str, debug: bool) -> dict:
    options: dict = {"echo": debug}
    if not url.startswith("sqlite"):
        # SQLite's pool can't ping or size
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=5)
    return options


async def init_db(url: str | None = None) -> None:
    """Create the engine and session factory, then the tables. No-op if already done."""
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    db_url = url or settings.database_url

    _engine = create_async_engine(db_url, **_engine_options(db_url, settings.debug))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    # Populate Base.metadata
    import capacity_queue.db.models  # noqa: F401

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the SQL-backed services.

    Raises RuntimeError before init_db() has run.
    """
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
