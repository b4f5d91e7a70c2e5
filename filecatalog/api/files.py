"""File index API endpoints: explorer, search, and the view proxy."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from filecatalog.api.deps import get_session, get_settings
from filecatalog.config import Settings
from filecatalog.exceptions import RemoteConnectionError
from filecatalog.scanner.runner import build_target
from filecatalog.schemas.file_entry import FileEntryResponse
from filecatalog.services.backend_service import get_backend
from filecatalog.services.index_service import (
    entry_to_response,
    get_entry,
    list_entries,
    search_entries,
)
from filecatalog.services.view_service import open_remote_file

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/files", tags=["files"])


@router.get("/explorer", response_model=list[FileEntryResponse])
async def explorer_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    backend_id: Annotated[int, Query(alias="backendId", ge=1)],
    path: Annotated[str, Query(max_length=4096)] = "/",
) -> list[FileEntryResponse]:
    """Immediate children of a directory, directories first."""
    if await get_backend(session, backend_id) is None:
        raise HTTPException(status_code=404, detail="Backend not found")
    entries = await list_entries(session, backend_id, path)
    return [entry_to_response(e) for e in entries]


@router.get("/search", response_model=list[FileEntryResponse])
async def search_endpoint(
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    q: Annotated[str, Query(min_length=1, max_length=500)],
    limit: Annotated[int | None, Query(ge=1)] = None,
) -> list[FileEntryResponse]:
    """Case-insensitive substring search over paths of all backends."""
    cap = settings.search_max_results
    effective = cap if limit is None else min(limit, cap)
    entries = await search_entries(session, q, effective)
    return [entry_to_response(e) for e in entries]


@router.get("/view")
async def view_endpoint(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    backend_id: Annotated[int, Query(alias="backendId", ge=1)],
    path: Annotated[str, Query(min_length=1, max_length=4096)],
) -> StreamingResponse:
    """Stream an indexed file's bytes from its backend."""
    backend = await get_backend(session, backend_id)
    entry = await get_entry(session, backend_id, path) if backend is not None else None
    if backend is None or entry is None or entry.is_directory:
        raise HTTPException(status_code=404, detail="File not found")

    try:
        target = build_target(backend, settings.secret_key)
    except ValueError as exc:
        logger.error("Cannot open credentials of backend %d: %s", backend_id, exc)
        raise HTTPException(status_code=502, detail="Backend credentials unavailable") from exc

    try:
        remote = await open_remote_file(
            target,
            entry.path,
            timeout=settings.scan_request_timeout_seconds,
            transport=request.app.state.remote_transport,
        )
    except RemoteConnectionError as exc:
        logger.warning("View of %s on backend %d failed: %s", path, backend_id, exc)
        raise HTTPException(status_code=502, detail="Backend request failed") from exc

    return StreamingResponse(
        remote.response.aiter_bytes(),
        media_type=remote.media_type,
        headers=remote.headers,
        background=BackgroundTask(remote.aclose),
    )
