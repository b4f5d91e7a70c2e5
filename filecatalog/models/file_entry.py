"""File index model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from urllib.parse import urlencode

from sqlalchemy import BigInteger, Boolean, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from filecatalog.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from filecatalog.models.backend import Backend

VIEW_ENDPOINT = "/api/files/view"


def build_direct_link(backend_id: int, path: str) -> str:
    """URL that streams the entry's bytes through the view proxy."""
    return f"{VIEW_ENDPOINT}?{urlencode({'backendId': backend_id, 'path': path})}"


class FileEntry(Base):
    """One indexed file or directory of a backend (written only by the reconciler)."""

    __tablename__ = "file_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    backend_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("backends.id", ondelete="CASCADE", onupdate="CASCADE"),
        nullable=False,
    )
    path: Mapped[str] = mapped_column(Text, nullable=False)
    parent_path: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    is_directory: Mapped[bool] = mapped_column(Boolean, nullable=False)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    modified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    backend: Mapped[Backend] = relationship(back_populates="entries")

    __table_args__ = (
        UniqueConstraint("backend_id", "path", name="uq_file_entries_backend_path"),
        Index("idx_file_entries_parent", "backend_id", "parent_path"),
        Index("idx_file_entries_last_seen", "backend_id", "last_seen_at"),
    )

    @property
    def direct_link(self) -> str:
        # Derived, so it follows the backend id through compaction.
        return build_direct_link(self.backend_id, self.path)
