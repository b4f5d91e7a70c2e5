"""Merge one walk of a backend into the persisted file index."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, not_, or_, select

from filecatalog.models.backend import Backend
from filecatalog.models.file_entry import FileEntry
from filecatalog.services.url_service import parent_dir_path

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from filecatalog.scanner.listing import RemoteEntry
    from filecatalog.scanner.walker import WalkFailure

logger = logging.getLogger(__name__)

SCAN_STATUS_OK = "ok"
SCAN_STATUS_FAILED = "failed"


@dataclass
class WalkResult:
    """Everything one walk of a backend produced."""

    entries: list[RemoteEntry] = field(default_factory=list)
    failures: list[WalkFailure] = field(default_factory=list)


@dataclass
class ReconcileOutcome:
    """Counts of one reconciliation pass.

    ``failed`` is set when the root listing failed and nothing was merged.
    """

    backend_id: int
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    deleted: int = 0
    failed: bool = False
    error: str | None = None
    failed_directories: list[str] = field(default_factory=list)


def _differs(row: FileEntry, entry: RemoteEntry) -> bool:
    return (
        row.is_directory != entry.is_directory
        or row.size_bytes != entry.size
        or row.modified_at != entry.modified_at
    )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def reconcile(
    session: AsyncSession,
    backend_id: int,
    walk_result: WalkResult,
    scan_started_at: datetime,
    *,
    prune_failed_subtrees: bool = True,
) -> ReconcileOutcome:
    """Merge ``walk_result`` into the index of ``backend_id``.

    Inserts unseen paths, updates rows whose size, type, or modification time
    changed, stamps ``last_seen_at = scan_started_at`` on every confirmed row,
    deletes rows the walk did not confirm, and stamps the backend's
    ``last_scanned_at``.

    Only flushes; the caller owns the transaction so the whole pass commits
    or rolls back as one unit.

    With ``prune_failed_subtrees`` False, unconfirmed rows below a directory
    whose listing failed are kept until a pass lists it again.

    Raises LookupError if the backend no longer exists.
    """
    backend = await session.get(Backend, backend_id)
    if backend is None:
        raise LookupError(f"Backend {backend_id} does not exist")

    outcome = ReconcileOutcome(
        backend_id=backend_id,
        failed_directories=[failure.path for failure in walk_result.failures],
    )

    result = await session.execute(select(FileEntry).where(FileEntry.backend_id == backend_id))
    existing: dict[str, FileEntry] = {row.path: row for row in result.scalars().all()}

    for entry in walk_result.entries:
        row = existing.get(entry.path)
        if row is None:
            row = FileEntry(
                backend_id=backend_id,
                path=entry.path,
                parent_path=parent_dir_path(entry.path),
                name=entry.name,
                is_directory=entry.is_directory,
                size_bytes=entry.size,
                modified_at=entry.modified_at,
                last_seen_at=scan_started_at,
            )
            session.add(row)
            existing[entry.path] = row
            outcome.inserted += 1
            continue

        if row.last_seen_at == scan_started_at:
            # Listed twice in one walk; the first sighting already counted.
            continue
        if _differs(row, entry):
            row.is_directory = entry.is_directory
            row.size_bytes = entry.size
            row.modified_at = entry.modified_at
            outcome.updated += 1
        else:
            outcome.unchanged += 1
        row.last_seen_at = scan_started_at

    await session.flush()

    stale = and_(FileEntry.backend_id == backend_id, FileEntry.last_seen_at < scan_started_at)
    if not prune_failed_subtrees and outcome.failed_directories:
        under_failed = or_(
            *(
                FileEntry.path.like(_escape_like(path) + "%", escape="\\")
                for path in outcome.failed_directories
            )
        )
        stale = and_(stale, not_(under_failed))
    deleted = await session.execute(
        delete(FileEntry).where(stale).execution_options(synchronize_session="fetch")
    )
    outcome.deleted = deleted.rowcount or 0

    backend.last_scanned_at = scan_started_at
    backend.last_scan_attempt_at = scan_started_at
    backend.last_scan_status = SCAN_STATUS_OK
    backend.last_scan_error = None
    await session.flush()

    logger.info(
        "Backend %d reconciled: %d inserted, %d updated, %d unchanged, %d deleted, "
        "%d directories skipped",
        backend_id,
        outcome.inserted,
        outcome.updated,
        outcome.unchanged,
        outcome.deleted,
        len(outcome.failed_directories),
    )
    return outcome
