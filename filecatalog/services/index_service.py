"""Read access to the file index for the explorer, search, and view endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select

from filecatalog.models.file_entry import FileEntry
from filecatalog.schemas.file_entry import FileEntryResponse
from filecatalog.services.datetime_service import format_iso, format_optional_iso
from filecatalog.services.url_service import canonical_dir_path

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_SEARCH_LIMIT = 100


def entry_to_response(entry: FileEntry) -> FileEntryResponse:
    """Client view of an index row."""
    return FileEntryResponse(
        id=entry.id,
        backend_id=entry.backend_id,
        path=entry.path,
        name=entry.name,
        direct_link=entry.direct_link,
        is_directory=entry.is_directory,
        size_bytes=entry.size_bytes,
        modified_at=format_optional_iso(entry.modified_at),
        last_seen_at=format_iso(entry.last_seen_at),
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def list_entries(
    session: AsyncSession, backend_id: int, directory_path: str = "/"
) -> list[FileEntry]:
    """Immediate children of a directory: directories first, then by name."""
    parent = canonical_dir_path(directory_path)
    stmt = (
        select(FileEntry)
        .where(FileEntry.backend_id == backend_id, FileEntry.parent_path == parent)
        .order_by(FileEntry.is_directory.desc(), FileEntry.name)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def search_entries(
    session: AsyncSession, query: str, limit: int = DEFAULT_SEARCH_LIMIT
) -> list[FileEntry]:
    """Entries of all backends whose path contains ``query`` (case-insensitive).

    A blank query matches nothing.
    """
    needle = query.strip()
    if not needle:
        return []
    pattern = f"%{_escape_like(needle.lower())}%"
    stmt = (
        select(FileEntry)
        .where(func.lower(FileEntry.path).like(pattern, escape="\\"))
        .order_by(FileEntry.backend_id, FileEntry.path)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry(session: AsyncSession, backend_id: int, path: str) -> FileEntry | None:
    """The index row for an exact (backend, path) pair, or None."""
    stmt = select(FileEntry).where(FileEntry.backend_id == backend_id, FileEntry.path == path)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_entries(session: AsyncSession, backend_id: int | None = None) -> int:
    """Number of indexed entries, optionally of one backend."""
    stmt = select(func.count()).select_from(FileEntry)
    if backend_id is not None:
        stmt = stmt.where(FileEntry.backend_id == backend_id)
    result = await session.execute(stmt)
    return result.scalar() or 0
