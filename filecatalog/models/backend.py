"""Backend registry model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from filecatalog.models.base import Base, UTCDateTime

if TYPE_CHECKING:
    from filecatalog.models.file_entry import FileEntry


class Backend(Base):
    """A registered remote file-serving endpoint.

    Ids are assigned densely from 1 by the registry (never by autoincrement)
    and are renumbered on delete, see ``backend_service.delete_backend``.
    """

    __tablename__ = "backends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    base_url: Mapped[str] = mapped_column(Text, nullable=False)
    auth_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    # Fernet token, see credential_service
    password: Mapped[str | None] = mapped_column(Text, nullable=True)
    rescan_interval_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_scanned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_scan_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_scan_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_scan_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    entries: Mapped[list[FileEntry]] = relationship(
        back_populates="backend",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("id >= 1", name="ck_backends_id_positive"),
        CheckConstraint(
            "rescan_interval_minutes IS NULL OR rescan_interval_minutes > 0",
            name="ck_backends_rescan_interval_positive",
        ),
    )
