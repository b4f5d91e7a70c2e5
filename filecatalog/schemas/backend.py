"""Backend registry request/response schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

from filecatalog.services.url_service import normalize_base_url

# One year; anything longer is almost certainly a unit mistake.
MAX_RESCAN_INTERVAL_MINUTES = 525_600


class BackendSpec(BaseModel):
    """Fields shared by backend create and update requests."""

    name: str = Field(default="", max_length=200)
    base_url: str = Field(min_length=1, max_length=2048)
    auth_enabled: bool = False
    username: str | None = Field(default=None, max_length=200)
    password: str | None = Field(default=None, max_length=1024)
    rescan_interval_minutes: int | None = Field(
        default=None, ge=1, le=MAX_RESCAN_INTERVAL_MINUTES
    )

    @field_validator("base_url")
    @classmethod
    def base_url_must_be_http(cls, v: str) -> str:
        """Normalize bare host:port to http:// and reject non-HTTP(S) URLs."""
        _ = cls
        return normalize_base_url(v)


class BackendCreate(BackendSpec):
    """Request to register a new backend."""


class BackendUpdate(BackendSpec):
    """Request to edit a backend.

    An omitted (null) password keeps the stored one while auth stays enabled.
    """


class BackendResponse(BaseModel):
    """Backend as exposed to clients; never carries the password."""

    id: int
    name: str
    base_url: str
    auth_enabled: bool
    username: str | None = None
    has_password: bool = False
    rescan_interval_minutes: int | None = None
    last_scanned_at: str | None = None
    last_scan_attempt_at: str | None = None
    last_scan_status: str | None = None
    last_scan_error: str | None = None
    scan_state: Literal["idle", "scanning"] = "idle"


class BackendDeleteResponse(BaseModel):
    """Response after deleting a backend."""

    id: int
    deleted: bool = True


class ScanRequest(BaseModel):
    """Request an on-demand scan of one backend or of all of them."""

    backend_id: int | Literal["all"]


class ScanResponse(BaseModel):
    """Backends a scan request started, and those it coalesced into running passes."""

    queued: list[int] = Field(default_factory=list)
    already_running: list[int] = Field(default_factory=list)
