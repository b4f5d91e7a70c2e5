"""SQLAlchemy ORM models for the file catalog."""

from filecatalog.models.backend import Backend
from filecatalog.models.base import Base, UTCDateTime
from filecatalog.models.file_entry import FileEntry

__all__ = [
    "Backend",
    "Base",
    "FileEntry",
    "UTCDateTime",
]
