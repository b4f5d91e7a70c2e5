"""Shared test fixtures for the file catalog."""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filecatalog.config import Settings
from filecatalog.database import create_engine as create_db_engine
from filecatalog.main import create_app
from filecatalog.models.backend import Backend
from filecatalog.models.base import Base
from filecatalog.scanner.scheduler import ScanScheduler

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from fastapi import FastAPI
    from sqlalchemy.ext.asyncio import AsyncEngine


TEST_SECRET_KEY = "test-secret-key-with-at-least-32-characters"
FAKE_BASE_URL = "http://files.test"
FAKE_MTIME = "Wed, 05 Mar 2025 10:00:00 GMT"


class FakeBackend:
    """In-memory nginx-style file server behind an ``httpx.MockTransport``.

    ``tree`` maps names to either a nested dict (directory), an int (file of
    that many bytes) or bytes (file content). Directory requests get a JSON
    autoindex listing; file requests get the content.
    """

    def __init__(
        self,
        tree: dict[str, Any],
        *,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self.tree = tree
        self.username = username
        self.password = password
        self.status_overrides: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.mtimes: dict[str, str] = {}
        self.requests: list[str] = []
        self.transport = httpx.MockTransport(self.handle)

    def _resolve(self, path: str) -> Any:
        node: Any = self.tree
        for part in [p for p in path.split("/") if p]:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def _parent_and_name(self, path: str) -> tuple[dict[str, Any], str]:
        parts = [p for p in path.split("/") if p]
        parent = self.tree
        for part in parts[:-1]:
            parent = parent.setdefault(part, {})
        return parent, parts[-1]

    def put(self, path: str, node: Any) -> None:
        """Create or replace the node at ``path``."""
        parent, name = self._parent_and_name(path)
        parent[name] = node

    def remove(self, path: str) -> None:
        """Delete the node at ``path``."""
        parent, name = self._parent_and_name(path)
        del parent[name]

    def _authorized(self, request: httpx.Request) -> bool:
        if self.username is None:
            return True
        token = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
        return request.headers.get("authorization") == f"Basic {token}"

    def _listing(self, dir_path: str, node: dict[str, Any]) -> list[dict[str, Any]]:
        items = []
        for name, child in node.items():
            child_path = f"{dir_path}{name}"
            item: dict[str, Any] = {
                "name": name,
                "type": "directory" if isinstance(child, dict) else "file",
                "mtime": self.mtimes.get(child_path, FAKE_MTIME),
            }
            if isinstance(child, bytes):
                item["size"] = len(child)
            elif isinstance(child, int):
                item["size"] = child
            items.append(item)
        return items

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path or "/"
        self.requests.append(path)
        if path in self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path])
        if not self._authorized(request):
            return httpx.Response(401, headers={"WWW-Authenticate": 'Basic realm="files"'})

        node = self._resolve(path)
        if node is None:
            return httpx.Response(404)
        if isinstance(node, dict):
            dir_path = path if path.endswith("/") else path + "/"
            return httpx.Response(200, json=self._listing(dir_path, node))
        content = node if isinstance(node, bytes) else b"x" * node
        return httpx.Response(
            200,
            content=content,
            headers={"content-type": "application/octet-stream"},
        )


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    db_path = tmp_path / "test.db"
    return Settings(
        secret_key=TEST_SECRET_KEY,
        debug=True,
        database_url=f"sqlite+aiosqlite:///{db_path}",
        scan_request_timeout_seconds=2.0,
        scan_on_startup=False,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with the schema in place."""
    engine, _ = create_db_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_fake_backend() -> type[FakeBackend]:
    """The fake server class, for tests that need their own tree."""
    return FakeBackend


@pytest.fixture
def fake_backend() -> FakeBackend:
    """The tree used throughout the scanner tests."""
    return FakeBackend(
        {
            "a": {
                "f1.txt": 100,
                "sub": {"f2.txt": 50},
            },
        }
    )


async def add_backend(
    session_factory: async_sessionmaker[AsyncSession],
    backend_id: int,
    *,
    base_url: str = FAKE_BASE_URL,
    name: str | None = None,
    auth_enabled: bool = False,
    **fields: Any,
) -> Backend:
    """Insert a backend row directly, bypassing the registry."""
    async with session_factory() as session:
        backend = Backend(
            id=backend_id,
            name=name or f"backend-{backend_id}",
            base_url=base_url,
            auth_enabled=auth_enabled,
            **fields,
        )
        session.add(backend)
        await session.commit()
        return backend


@pytest.fixture
def make_backend(
    session_factory: async_sessionmaker[AsyncSession],
) -> Any:
    """Factory fixture: ``await make_backend(id, **fields)``."""

    async def _make(backend_id: int, **fields: Any) -> Backend:
        return await add_backend(session_factory, backend_id, **fields)

    return _make


@pytest.fixture
async def app(
    test_settings: Settings,
    db_engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    fake_backend: FakeBackend,
) -> AsyncGenerator[FastAPI]:
    """A fully initialized app talking to ``fake_backend``.

    Performs the work of the application lifespan manually because
    ASGITransport does not trigger it. The scheduler is not started, so only
    on-demand scans run.
    """
    application = create_app(test_settings, remote_transport=fake_backend.transport)
    test_settings.validate_runtime_security()
    application.state.engine = db_engine
    application.state.session_factory = session_factory

    scheduler = ScanScheduler(session_factory, test_settings, transport=fake_backend.transport)
    application.state.scheduler = scheduler
    yield application
    await scheduler.stop()


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """HTTP client for ``app``."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
