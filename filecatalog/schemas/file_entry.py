"""File index schemas."""

from __future__ import annotations

from pydantic import BaseModel


class FileEntryResponse(BaseModel):
    """One indexed file or directory."""

    id: int
    backend_id: int
    path: str
    name: str
    direct_link: str
    is_directory: bool
    size_bytes: int | None = None
    modified_at: str | None = None
    last_seen_at: str
