"""Shared API dependencies: settings, DB session, scan scheduler."""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from filecatalog.config import Settings
from filecatalog.scanner.scheduler import ScanScheduler


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_scheduler(request: Request) -> ScanScheduler:
    """Get the process-wide scan scheduler from app state."""
    scheduler: ScanScheduler = request.app.state.scheduler
    return scheduler


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session
