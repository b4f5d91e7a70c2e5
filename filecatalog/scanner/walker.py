"""Depth-first traversal of a backend's remote directory tree over HTTP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from filecatalog.exceptions import RemoteConnectionError, RemoteListingError
from filecatalog.scanner.listing import RemoteEntry, parse_listing
from filecatalog.services.credential_service import basic_auth
from filecatalog.services.url_service import canonical_dir_path, join_remote_url

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator

logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 64
_LISTING_ACCEPT = "application/json, text/html;q=0.9, */*;q=0.1"


@dataclass(frozen=True)
class BackendTarget:
    """Connection details of one backend, with the password already opened."""

    id: int
    base_url: str
    username: str | None = None
    password: str | None = None


@dataclass(frozen=True)
class WalkFailure:
    """A directory whose subtree was skipped during a walk."""

    path: str
    reason: str


class RemoteTreeWalker:
    """Walk one backend, yielding every entry below a starting directory.

    Each directory is listed with one GET request. Listing failures below the
    root are recorded in ``failures`` and only skip that subtree; a failure
    listing the root itself is raised from the iterator.

    Args:
        target: Backend to walk.
        timeout: Per-request timeout in seconds.
        max_depth: Directories nested deeper than this are yielded but not
            listed.
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        target: BackendTarget,
        *,
        timeout: float = 10.0,
        max_depth: int = DEFAULT_MAX_DEPTH,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if max_depth < 1:
            msg = f"max_depth must be >= 1, got {max_depth}"
            raise ValueError(msg)
        self._target = target
        self._timeout = timeout
        self._max_depth = max_depth
        self._transport = transport
        self.failures: list[WalkFailure] = []
        self.directories_listed = 0

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=basic_auth(self._target.username, self._target.password),
            timeout=self._timeout,
            follow_redirects=True,
            transport=self._transport,
            headers={"Accept": _LISTING_ACCEPT},
        )

    async def list_directory(self, client: httpx.AsyncClient, dir_path: str) -> list[RemoteEntry]:
        """Fetch and parse the listing of one directory.

        Raises:
            RemoteConnectionError: Transport failure, timeout, or HTTP status >= 400.
            RemoteProtocolError: The body is not a recognizable listing.
        """
        url = join_remote_url(self._target.base_url, dir_path)
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise RemoteConnectionError(url, "Listing request timed out") from exc
        except httpx.HTTPError as exc:
            raise RemoteConnectionError(url, f"Listing request failed: {exc}") from exc

        if response.status_code >= 400:
            raise RemoteConnectionError(
                url,
                f"Listing request returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        entries = parse_listing(
            response.text,
            response.headers.get("content-type", ""),
            dir_path,
            url,
        )
        self.directories_listed += 1
        return sorted(entries, key=lambda e: e.name)

    async def walk(self, root_path: str = "/") -> AsyncIterator[RemoteEntry]:
        """Yield entries below ``root_path`` depth-first; the root itself is not yielded.

        A directory is yielded and then immediately descended into, before
        its later siblings. Each call starts a fresh walk with an empty
        visited set and failure list. Directories are keyed by normalized
        path so none is expanded twice; ``max_depth`` bounds backends that
        loop back into themselves under ever-new paths.
        """
        self.failures = []
        self.directories_listed = 0
        root = canonical_dir_path(root_path)
        visited: set[str] = {root}

        async with self._client() as client:
            # Listed eagerly: a root failure propagates and aborts the walk.
            root_entries = await self.list_directory(client, root)
            stack: list[tuple[Iterator[RemoteEntry], int]] = [(iter(root_entries), 1)]

            while stack:
                entries, depth = stack[-1]
                entry = next(entries, None)
                if entry is None:
                    stack.pop()
                    continue

                yield entry
                if not entry.is_directory:
                    continue

                canonical = canonical_dir_path(entry.path)
                if canonical in visited:
                    logger.debug("Skipping already visited directory %s", canonical)
                    continue
                visited.add(canonical)

                if depth >= self._max_depth:
                    self._record_failure(entry.path, f"max depth {self._max_depth} reached")
                    continue
                try:
                    children = await self.list_directory(client, entry.path)
                except RemoteListingError as exc:
                    self._record_failure(entry.path, exc.reason)
                    continue
                stack.append((iter(children), depth + 1))

    def _record_failure(self, path: str, reason: str) -> None:
        logger.warning("Backend %d: skipping subtree %s: %s", self._target.id, path, reason)
        self.failures.append(WalkFailure(path=path, reason=reason))
