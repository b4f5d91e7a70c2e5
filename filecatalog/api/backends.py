"""Backend registry API endpoints."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from filecatalog.api.deps import get_scheduler, get_session, get_settings
from filecatalog.config import Settings
from filecatalog.scanner.scheduler import ScanScheduler, ScanState
from filecatalog.schemas.backend import (
    BackendCreate,
    BackendDeleteResponse,
    BackendResponse,
    BackendUpdate,
    ScanRequest,
    ScanResponse,
)
from filecatalog.services.backend_service import (
    backend_to_response,
    create_backend,
    delete_backend,
    get_backend,
    list_backends,
    update_backend,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backends", tags=["backends"])


@router.get("", response_model=list[BackendResponse])
async def list_backends_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[ScanScheduler, Depends(get_scheduler)],
) -> list[BackendResponse]:
    """List all backends with their current scan state."""
    backends = await list_backends(session)
    return [backend_to_response(b, scheduler.state(b.id)) for b in backends]


@router.post("/scan", response_model=ScanResponse, status_code=202)
async def trigger_scan_endpoint(
    body: ScanRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[ScanScheduler, Depends(get_scheduler)],
) -> ScanResponse:
    """Request an on-demand scan of one backend, or of every backend."""
    if body.backend_id == "all":
        queued, already_running = await scheduler.request_all()
        return ScanResponse(queued=queued, already_running=already_running)

    backend_id = body.backend_id
    if await get_backend(session, backend_id) is None:
        raise HTTPException(status_code=404, detail="Backend not found")
    was_scanning = scheduler.state(backend_id) is ScanState.SCANNING
    # A None task means the request waits for the id compaction in progress.
    task = scheduler.request_scan(backend_id)
    if task is not None and was_scanning:
        return ScanResponse(already_running=[backend_id])
    return ScanResponse(queued=[backend_id])


@router.get("/{backend_id}", response_model=BackendResponse)
async def get_backend_endpoint(
    backend_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[ScanScheduler, Depends(get_scheduler)],
) -> BackendResponse:
    """Get one backend."""
    backend = await get_backend(session, backend_id)
    if backend is None:
        raise HTTPException(status_code=404, detail="Backend not found")
    return backend_to_response(backend, scheduler.state(backend_id))


@router.post("", response_model=BackendResponse, status_code=201)
async def create_backend_endpoint(
    body: BackendCreate,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    scheduler: Annotated[ScanScheduler, Depends(get_scheduler)],
) -> BackendResponse:
    """Register a backend and start its first scan."""
    async with scheduler.registry_write():
        backend = await create_backend(session, body, settings.secret_key)
        scheduler.request_scan(backend.id)
    return backend_to_response(backend, scheduler.state(backend.id))


@router.put("/{backend_id}", response_model=BackendResponse)
async def update_backend_endpoint(
    backend_id: int,
    body: BackendUpdate,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    scheduler: Annotated[ScanScheduler, Depends(get_scheduler)],
) -> BackendResponse:
    """Edit a backend and rescan it."""
    async with scheduler.registry_write():
        backend = await update_backend(session, backend_id, body, settings.secret_key)
        if backend is None:
            raise HTTPException(status_code=404, detail="Backend not found")
        scheduler.request_scan(backend.id)
    return backend_to_response(backend, scheduler.state(backend.id))


@router.delete("/{backend_id}", response_model=BackendDeleteResponse)
async def delete_backend_endpoint(
    backend_id: int,
    session: Annotated[AsyncSession, Depends(get_session)],
    scheduler: Annotated[ScanScheduler, Depends(get_scheduler)],
) -> BackendDeleteResponse:
    """Delete a backend and its index, then renumber the backends above it."""
    async with scheduler.exclusive() as compaction:
        deleted = await delete_backend(session, backend_id)
        if deleted:
            compaction.removed_id = backend_id
    if not deleted:
        raise HTTPException(status_code=404, detail="Backend not found")
    return BackendDeleteResponse(id=backend_id)
