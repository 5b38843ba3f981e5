"""
Database Connection Manager
===========================

Async connection to the project's event database at ``.hyle/events.db``.
"""

from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from hyle.db.models import Base

DB_FILENAME = "events.db"

_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None
_engine: Optional[AsyncEngine] = None


def database_url(project_dir: Path) -> str:
    return f"sqlite+aiosqlite:///{Path(project_dir) / '.hyle' / DB_FILENAME}"


async def init_db(project_dir: Path) -> async_sessionmaker[AsyncSession]:
    """
    Open the event database for a project, creating the file and tables
    if they don't exist.
    """
    global _async_session_maker, _engine

    db_dir = Path(project_dir) / ".hyle"
    db_dir.mkdir(parents=True, exist_ok=True)

    _engine = create_async_engine(database_url(project_dir), echo=False)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _async_session_maker = async_sessionmaker(_engine, expire_on_commit=False)
    return _async_session_maker


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get the configured session maker."""
    if _async_session_maker is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _async_session_maker


async def close_db() -> None:
    """Dispose of the engine opened by ``init_db``."""
    global _async_session_maker, _engine
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _async_session_maker = None
