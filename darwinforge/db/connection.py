"""
Database Connection Manager
===========================

Handles the async connection to the project-specific SQLite database.

The handle is explicit: construct one ``Database`` at process start, pass it
(or sessions created from it) to the components that persist state, and close
it on shutdown.

Usage:
    async with Database(project_dir) as db:
        async with db.session() as session:
            monitor = SelfHealingMonitor(project_dir)
            await monitor.init_async(session)
"""

import logging
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from darwinforge.db.models import Base


logger = logging.getLogger(__name__)

DATA_DIR = ".darwin"
DB_FILENAME = "darwin.db"


class Database:
    """Owns the async engine and session factory for one project database."""

    def __init__(self, project_dir: Path, filename: str = DB_FILENAME):
        self.project_dir = Path(project_dir)
        self.db_path = self.project_dir / DATA_DIR / filename
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    async def open(self) -> async_sessionmaker[AsyncSession]:
        """
        Open the database and create tables if they don't exist.

        Opening an already-open handle is a no-op.
        """
        if self._session_maker is not None:
            return self._session_maker

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db_url = f"sqlite+aiosqlite:///{self.db_path}"

        self._engine = create_async_engine(db_url, echo=False)

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self._session_maker = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.debug("Opened database at %s", self.db_path)
        return self._session_maker

    def session(self) -> AsyncSession:
        """Create a new session. The database must be open."""
        if self._session_maker is None:
            raise RuntimeError("Database not opened. Call open() first.")
        return self._session_maker()

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            logger.debug("Closed database at %s", self.db_path)
        self._engine = None
        self._session_maker = None

    async def __aenter__(self) -> "Database":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


async def init_db(project_path: Path) -> Database:
    """
    Open the database for a project.
    The database file is stored in .darwin/darwin.db within the project root.
    """
    db = Database(project_path)
    await db.open()
    return db
