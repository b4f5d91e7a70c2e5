"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients.
  The global handler logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``ValueError``: for validation errors that are safe to forward to clients.
  ``BackendValidationError`` is the registry's flavor of it; the global
  ``ValueError`` handler returns ``str(exc)`` as the 422 detail.
- ``RemoteListingError``: a directory listing could not be obtained or read.
  These never reach API callers: the walker records them per directory and
  the scan runner turns a root-level one into a failed pass.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``filecatalog/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class IndexIntegrityError(InternalServerError):
    """The backend registry and the file index would disagree.

    Raised when id compaction or the delete cascade fails. The enclosing
    transaction is rolled back; this is a defect to report, not to retry.
    """


class BackendValidationError(ValueError):
    """A backend create/update request carries an invalid definition."""


class RemoteListingError(Exception):
    """A remote directory listing failed."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"{reason} ({url})")
        self.url = url
        self.reason = reason


class RemoteConnectionError(RemoteListingError):
    """The backend was unreachable, timed out, or answered with an error status."""

    def __init__(self, url: str, reason: str, status_code: int | None = None) -> None:
        super().__init__(url, reason)
        self.status_code = status_code


class RemoteProtocolError(RemoteListingError):
    """The backend answered, but the listing body could not be parsed."""
