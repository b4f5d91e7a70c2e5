"""Database engine and session management."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from filecatalog.config import Settings

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 30_000


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    """Enable foreign keys and WAL on every new SQLite connection.

    Foreign keys back the backend -> file entry cascade; WAL lets readers keep
    reading the last committed index while a reconciliation pass writes.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        result = cursor.fetchone()
        if result is not None and str(result[0]).lower() not in ("wal", "memory"):
            logger.warning("WAL mode not active, got: %s", result[0])
        cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
    )
    if engine.dialect.name == "sqlite":
        _install_sqlite_pragmas(engine)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory
