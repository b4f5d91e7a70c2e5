"""Backend registry: CRUD over backend records and dense id compaction."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from filecatalog.exceptions import BackendValidationError, IndexIntegrityError
from filecatalog.models.backend import Backend
from filecatalog.models.file_entry import FileEntry
from filecatalog.schemas.backend import BackendResponse
from filecatalog.services.credential_service import seal_password
from filecatalog.services.datetime_service import format_optional_iso
from filecatalog.services.url_service import normalize_base_url

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from filecatalog.scanner.scheduler import ScanState
    from filecatalog.schemas.backend import BackendSpec

logger = logging.getLogger(__name__)

_CREATE_ATTEMPTS = 3


def backend_to_response(backend: Backend, scan_state: ScanState | str = "idle") -> BackendResponse:
    """Client view of a backend row."""
    return BackendResponse(
        id=backend.id,
        name=backend.name,
        base_url=backend.base_url,
        auth_enabled=backend.auth_enabled,
        username=backend.username,
        has_password=backend.password is not None,
        rescan_interval_minutes=backend.rescan_interval_minutes,
        last_scanned_at=format_optional_iso(backend.last_scanned_at),
        last_scan_attempt_at=format_optional_iso(backend.last_scan_attempt_at),
        last_scan_status=backend.last_scan_status,
        last_scan_error=backend.last_scan_error,
        scan_state=str(scan_state),
    )


def _apply_spec(
    backend: Backend,
    spec: BackendSpec,
    secret_key: str,
    *,
    keep_password: bool,
) -> None:
    """Validate ``spec`` and copy it onto ``backend``.

    Raises BackendValidationError before touching ``backend`` when invalid.
    """
    base_url = normalize_base_url(spec.base_url)
    interval = spec.rescan_interval_minutes
    if interval is not None and (isinstance(interval, bool) or interval < 1):
        raise BackendValidationError("Rescan interval must be a positive number of minutes")

    username = (spec.username or "").strip() or None
    if spec.auth_enabled and username is None:
        raise BackendValidationError("A username is required when authentication is enabled")

    backend.name = spec.name.strip() or base_url
    backend.base_url = base_url
    backend.auth_enabled = spec.auth_enabled
    backend.rescan_interval_minutes = interval
    if not spec.auth_enabled:
        backend.username = None
        backend.password = None
        return
    backend.username = username
    if spec.password:
        backend.password = seal_password(spec.password, secret_key)
    elif not keep_password:
        backend.password = None


async def list_backends(session: AsyncSession) -> list[Backend]:
    """All backends in id order."""
    result = await session.execute(select(Backend).order_by(Backend.id))
    return list(result.scalars().all())


async def get_backend(session: AsyncSession, backend_id: int) -> Backend | None:
    """A backend by id, or None."""
    return await session.get(Backend, backend_id)


async def next_backend_id(session: AsyncSession) -> int:
    """The id a new backend gets: one past the current maximum."""
    result = await session.execute(select(func.max(Backend.id)))
    current = result.scalar()
    return (current or 0) + 1


async def create_backend(session: AsyncSession, spec: BackendSpec, secret_key: str) -> Backend:
    """Register a backend under the next dense id and commit.

    The caller must keep id compaction out (``ScanScheduler.registry_write``)
    or the new id can land past a gap.

    Raises BackendValidationError on an invalid spec (nothing is written).
    """
    attempt = 0
    while True:
        attempt += 1
        backend = Backend(id=await next_backend_id(session))
        _apply_spec(backend, spec, secret_key, keep_password=False)
        session.add(backend)
        try:
            await session.commit()
        except IntegrityError:
            # A concurrent create took the same id.
            await session.rollback()
            if attempt >= _CREATE_ATTEMPTS:
                raise
            logger.warning("Backend id %d taken concurrently, retrying", backend.id)
            continue
        logger.info("Created backend %d (%s)", backend.id, backend.base_url)
        return backend


async def update_backend(
    session: AsyncSession, backend_id: int, spec: BackendSpec, secret_key: str
) -> Backend | None:
    """Edit a backend and commit. Returns None if it does not exist.

    The caller must keep id compaction out (``ScanScheduler.registry_write``)
    or the edit can land on the backend renumbered into ``backend_id``.

    Raises BackendValidationError on an invalid spec (nothing is written).
    """
    backend = await session.get(Backend, backend_id)
    if backend is None:
        return None
    try:
        _apply_spec(backend, spec, secret_key, keep_password=True)
    except BackendValidationError:
        await session.rollback()
        raise
    await session.commit()
    logger.info("Updated backend %d (%s)", backend.id, backend.base_url)
    return backend


async def _verify_registry_integrity(session: AsyncSession) -> None:
    """Raise IndexIntegrityError unless ids are dense and no entry is orphaned."""
    count_result = await session.execute(
        select(func.count(), func.max(Backend.id)).select_from(Backend)
    )
    count, max_id = count_result.one()
    if (max_id or 0) != count:
        msg = f"Backend ids are not dense after compaction (count={count}, max={max_id})"
        raise IndexIntegrityError(msg)

    orphan_result = await session.execute(
        select(func.count())
        .select_from(FileEntry)
        .where(FileEntry.backend_id.not_in(select(Backend.id)))
    )
    orphans = orphan_result.scalar() or 0
    if orphans:
        msg = f"{orphans} file entries reference a missing backend after compaction"
        raise IndexIntegrityError(msg)


async def delete_backend(session: AsyncSession, backend_id: int) -> bool:
    """Delete a backend with its entries and close the id gap, in one transaction.

    Every backend above ``backend_id`` moves down by one, in ascending order,
    and its file entries follow. The caller must make sure no scan is in
    flight (``ScanScheduler.exclusive``).

    Returns False if the backend does not exist. Raises IndexIntegrityError
    (after rolling back) if the registry and index would end up inconsistent.
    """
    backend = await session.get(Backend, backend_id)
    if backend is None:
        return False

    try:
        await session.execute(
            delete(FileEntry)
            .where(FileEntry.backend_id == backend_id)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            delete(Backend)
            .where(Backend.id == backend_id)
            .execution_options(synchronize_session=False)
        )

        higher = await session.execute(
            select(Backend.id).where(Backend.id > backend_id).order_by(Backend.id)
        )
        for old_id in higher.scalars().all():
            new_id = old_id - 1
            # ON UPDATE CASCADE moves the entries with the backend; the explicit
            # update covers databases running without foreign key enforcement.
            await session.execute(
                update(Backend)
                .where(Backend.id == old_id)
                .values(id=new_id)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(FileEntry)
                .where(FileEntry.backend_id == old_id)
                .values(backend_id=new_id)
                .execution_options(synchronize_session=False)
            )

        await _verify_registry_integrity(session)
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        logger.error("Id compaction after deleting backend %d failed: %s", backend_id, exc)
        raise IndexIntegrityError(f"Id compaction failed: {exc}") from exc
    except IndexIntegrityError as exc:
        await session.rollback()
        logger.error("Id compaction after deleting backend %d failed: %s", backend_id, exc)
        raise

    # Identity map still holds the pre-compaction rows.
    session.expunge_all()
    logger.info("Deleted backend %d and compacted backend ids", backend_id)
    return True
