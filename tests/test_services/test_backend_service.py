"""Tests for the backend registry."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from filecatalog.exceptions import BackendValidationError, IndexIntegrityError
from filecatalog.models.backend import Backend
from filecatalog.models.file_entry import FileEntry
from filecatalog.schemas.backend import BackendCreate, BackendUpdate
from filecatalog.services.backend_service import (
    backend_to_response,
    create_backend,
    delete_backend,
    get_backend,
    list_backends,
    next_backend_id,
    update_backend,
)
from filecatalog.services.credential_service import open_password

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

KEY = "test-secret-key-with-at-least-32-characters"
SEEN = datetime(2026, 1, 1, tzinfo=UTC)


def _entry(backend_id: int, path: str) -> FileEntry:
    return FileEntry(
        backend_id=backend_id,
        path=path,
        parent_path="/",
        name=path.strip("/"),
        is_directory=False,
        size_bytes=1,
        last_seen_at=SEEN,
    )


async def _seed(session: AsyncSession, count: int) -> None:
    for backend_id in range(1, count + 1):
        session.add(
            Backend(id=backend_id, name=f"b{backend_id}", base_url=f"http://b{backend_id}.test")
        )
    await session.flush()
    for backend_id in range(1, count + 1):
        session.add(_entry(backend_id, f"/file-of-{backend_id}"))
    await session.commit()


class TestSchemas:
    def test_bare_host_gets_http(self) -> None:
        assert BackendCreate(base_url="nas.lan:8080").base_url == "http://nas.lan:8080"

    def test_bad_url_is_a_validation_error(self) -> None:
        with pytest.raises(ValidationError):
            BackendCreate(base_url="ftp://nas.lan")

    @pytest.mark.parametrize("interval", [0, -5])
    def test_interval_must_be_positive(self, interval: int) -> None:
        with pytest.raises(ValidationError):
            BackendCreate(base_url="nas.lan", rescan_interval_minutes=interval)


class TestCreate:
    async def test_ids_are_dense_from_one(self, db_session: AsyncSession) -> None:
        first = await create_backend(db_session, BackendCreate(base_url="a.lan"), KEY)
        second = await create_backend(db_session, BackendCreate(base_url="b.lan"), KEY)
        assert (first.id, second.id) == (1, 2)
        assert await next_backend_id(db_session) == 3

    async def test_blank_name_falls_back_to_url(self, db_session: AsyncSession) -> None:
        backend = await create_backend(db_session, BackendCreate(base_url="a.lan/share/"), KEY)
        assert backend.name == "http://a.lan/share"
        assert backend.base_url == "http://a.lan/share"

    async def test_password_is_sealed(self, db_session: AsyncSession) -> None:
        spec = BackendCreate(base_url="a.lan", auth_enabled=True, username="alice", password="pw")
        backend = await create_backend(db_session, spec, KEY)
        assert backend.password is not None
        assert backend.password != "pw"
        assert open_password(backend.password, KEY) == "pw"

    async def test_auth_requires_username(self, db_session: AsyncSession) -> None:
        spec = BackendCreate(base_url="a.lan", auth_enabled=True, username="  ")
        with pytest.raises(BackendValidationError, match="username"):
            await create_backend(db_session, spec, KEY)
        assert await list_backends(db_session) == []

    async def test_credentials_dropped_without_auth(self, db_session: AsyncSession) -> None:
        spec = BackendCreate(base_url="a.lan", auth_enabled=False, username="alice", password="pw")
        backend = await create_backend(db_session, spec, KEY)
        assert backend.username is None
        assert backend.password is None


class TestUpdate:
    async def test_update_fields(self, db_session: AsyncSession) -> None:
        await create_backend(db_session, BackendCreate(base_url="a.lan", name="A"), KEY)
        updated = await update_backend(
            db_session,
            1,
            BackendUpdate(
                base_url="https://a.lan:8443", name="Renamed", rescan_interval_minutes=15
            ),
            KEY,
        )
        assert updated is not None
        assert (updated.name, updated.base_url, updated.rescan_interval_minutes) == (
            "Renamed",
            "https://a.lan:8443",
            15,
        )

    async def test_omitted_password_is_kept(self, db_session: AsyncSession) -> None:
        spec = BackendCreate(base_url="a.lan", auth_enabled=True, username="alice", password="pw")
        await create_backend(db_session, spec, KEY)
        updated = await update_backend(
            db_session,
            1,
            BackendUpdate(base_url="a.lan", auth_enabled=True, username="bob"),
            KEY,
        )
        assert updated is not None
        assert updated.username == "bob"
        assert updated.password is not None
        assert open_password(updated.password, KEY) == "pw"

    async def test_disabling_auth_clears_credentials(self, db_session: AsyncSession) -> None:
        spec = BackendCreate(base_url="a.lan", auth_enabled=True, username="alice", password="pw")
        await create_backend(db_session, spec, KEY)
        updated = await update_backend(db_session, 1, BackendUpdate(base_url="a.lan"), KEY)
        assert updated is not None
        assert (updated.username, updated.password) == (None, None)

    async def test_invalid_update_writes_nothing(self, db_session: AsyncSession) -> None:
        await create_backend(db_session, BackendCreate(base_url="a.lan", name="A"), KEY)
        with pytest.raises(BackendValidationError):
            await update_backend(
                db_session, 1, BackendUpdate(base_url="b.lan", name="B", auth_enabled=True), KEY
            )
        db_session.expunge_all()
        stored = await get_backend(db_session, 1)
        assert stored is not None
        assert (stored.name, stored.base_url) == ("A", "http://a.lan")

    async def test_missing_backend(self, db_session: AsyncSession) -> None:
        assert await update_backend(db_session, 5, BackendUpdate(base_url="a.lan"), KEY) is None


class TestResponse:
    async def test_never_exposes_password(self, db_session: AsyncSession) -> None:
        spec = BackendCreate(base_url="a.lan", auth_enabled=True, username="alice", password="pw")
        backend = await create_backend(db_session, spec, KEY)
        response = backend_to_response(backend, "scanning")
        dumped = response.model_dump()
        assert "password" not in dumped
        assert dumped["has_password"] is True
        assert dumped["scan_state"] == "scanning"
        assert dumped["last_scanned_at"] is None


class TestDeleteCompaction:
    async def test_delete_middle_shifts_higher_ids(self, db_session: AsyncSession) -> None:
        await _seed(db_session, 3)
        assert await delete_backend(db_session, 2) is True

        backends = await list_backends(db_session)
        assert [(b.id, b.name) for b in backends] == [(1, "b1"), (2, "b3")]

        result = await db_session.execute(
            select(FileEntry.backend_id, FileEntry.path).order_by(FileEntry.backend_id)
        )
        assert result.all() == [(1, "/file-of-1"), (2, "/file-of-3")]

    async def test_delete_last_needs_no_shift(self, db_session: AsyncSession) -> None:
        await _seed(db_session, 2)
        assert await delete_backend(db_session, 2) is True
        assert [b.id for b in await list_backends(db_session)] == [1]

    async def test_delete_first_of_many(self, db_session: AsyncSession) -> None:
        await _seed(db_session, 4)
        await delete_backend(db_session, 1)
        backends = await list_backends(db_session)
        assert [(b.id, b.name) for b in backends] == [(1, "b2"), (2, "b3"), (3, "b4")]
        count = await db_session.execute(select(func.count()).select_from(FileEntry))
        assert count.scalar() == 3

    async def test_delete_missing_returns_false(self, db_session: AsyncSession) -> None:
        await _seed(db_session, 1)
        assert await delete_backend(db_session, 7) is False
        assert [b.id for b in await list_backends(db_session)] == [1]

    async def test_new_backend_reuses_freed_slot(self, db_session: AsyncSession) -> None:
        await _seed(db_session, 3)
        await delete_backend(db_session, 1)
        created = await create_backend(db_session, BackendCreate(base_url="new.lan"), KEY)
        assert created.id == 3

    async def test_integrity_failure_rolls_back(
        self, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        await _seed(db_session, 3)

        async def broken_check(session: AsyncSession) -> None:
            raise IndexIntegrityError("simulated")

        monkeypatch.setattr(
            "filecatalog.services.backend_service._verify_registry_integrity", broken_check
        )
        with pytest.raises(IndexIntegrityError):
            await delete_backend(db_session, 2)

        db_session.expunge_all()
        assert [b.id for b in await list_backends(db_session)] == [1, 2, 3]
        count = await db_session.execute(select(func.count()).select_from(FileEntry))
        assert count.scalar() == 3


class TestConcurrentCreate:
    async def test_id_collision_is_retried(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        make_backend: Any,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        import filecatalog.services.backend_service as backend_service

        real_next = backend_service.next_backend_id
        calls = 0

        async def racing_next(session: AsyncSession) -> int:
            nonlocal calls
            calls += 1
            value = await real_next(session)
            if calls == 1:
                # Another writer takes the id between the lookup and the insert.
                await make_backend(value)
            return value

        monkeypatch.setattr(backend_service, "next_backend_id", racing_next)
        async with session_factory() as session:
            created = await create_backend(session, BackendCreate(base_url="a.lan"), KEY)
        assert created.id == 2
        assert calls == 2
