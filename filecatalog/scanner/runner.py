"""One reconciliation pass: walk a backend, then merge the result into the index."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from filecatalog.exceptions import RemoteListingError
from filecatalog.models.backend import Backend
from filecatalog.scanner.reconciler import (
    SCAN_STATUS_FAILED,
    ReconcileOutcome,
    WalkResult,
    reconcile,
)
from filecatalog.scanner.walker import BackendTarget, RemoteTreeWalker
from filecatalog.services.credential_service import open_password
from filecatalog.services.datetime_service import now_utc

if TYPE_CHECKING:
    from datetime import datetime

    import httpx
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from filecatalog.config import Settings

logger = logging.getLogger(__name__)

_MIN_STAMP_STEP = timedelta(microseconds=1)


def next_scan_stamp(previous: datetime | None, now: datetime) -> datetime:
    """Pass start time, kept strictly after the previous successful pass.

    Guards ``last_seen_at`` monotonicity against clock steps backwards.
    """
    if previous is not None and now <= previous:
        return previous + _MIN_STAMP_STEP
    return now


def build_target(backend: Backend, secret_key: str) -> BackendTarget:
    """Connection details of a backend row, password opened."""
    if not backend.auth_enabled:
        return BackendTarget(id=backend.id, base_url=backend.base_url)
    password = open_password(backend.password, secret_key) if backend.password else None
    return BackendTarget(
        id=backend.id,
        base_url=backend.base_url,
        username=backend.username,
        password=password,
    )


async def _mark_failed(
    session_factory: async_sessionmaker[AsyncSession],
    backend_id: int,
    attempted_at: datetime,
    error: str,
) -> None:
    """Record a failed pass on the backend row; the index is not touched."""
    async with session_factory() as session, session.begin():
        backend = await session.get(Backend, backend_id)
        if backend is None:
            return
        backend.last_scan_attempt_at = attempted_at
        backend.last_scan_status = SCAN_STATUS_FAILED
        backend.last_scan_error = error[:1000]


async def run_scan(
    session_factory: async_sessionmaker[AsyncSession],
    backend_id: int,
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    root_path: str = "/",
) -> ReconcileOutcome:
    """Run one full reconciliation pass for ``backend_id``.

    The walk runs outside any transaction; its result is then merged in one
    transaction. A root-level listing failure leaves the index and
    ``last_scanned_at`` untouched and only records the failure on the backend.

    Raises LookupError if the backend does not exist.
    """
    target: BackendTarget | None
    error = ""
    async with session_factory() as session:
        backend = await session.get(Backend, backend_id)
        if backend is None:
            raise LookupError(f"Backend {backend_id} does not exist")
        scan_started_at = next_scan_stamp(backend.last_scanned_at, now_utc())
        try:
            target = build_target(backend, settings.secret_key)
        except ValueError as exc:
            target = None
            error = str(exc)

    if target is None:
        logger.error("Scan of backend %d aborted: %s", backend_id, error)
        await _mark_failed(session_factory, backend_id, scan_started_at, error)
        return ReconcileOutcome(backend_id=backend_id, failed=True, error=error)

    logger.info("Scanning backend %d (%s)", backend_id, target.base_url)
    walker = RemoteTreeWalker(
        target,
        timeout=settings.scan_request_timeout_seconds,
        max_depth=settings.scan_max_depth,
        transport=transport,
    )
    walk_result = WalkResult()
    try:
        async for entry in walker.walk(root_path):
            walk_result.entries.append(entry)
    except RemoteListingError as exc:
        logger.warning("Scan of backend %d failed at the root: %s", backend_id, exc)
        await _mark_failed(session_factory, backend_id, scan_started_at, str(exc))
        return ReconcileOutcome(backend_id=backend_id, failed=True, error=str(exc))
    walk_result.failures = list(walker.failures)

    async with session_factory() as session, session.begin():
        return await reconcile(
            session,
            backend_id,
            walk_result,
            scan_started_at,
            prune_failed_subtrees=settings.scan_prune_failed_subtrees,
        )
