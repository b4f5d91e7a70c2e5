"""Fetch the bytes of an indexed file from its backend."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from filecatalog.exceptions import RemoteConnectionError
from filecatalog.services.credential_service import basic_auth
from filecatalog.services.url_service import join_remote_url

if TYPE_CHECKING:
    from filecatalog.scanner.walker import BackendTarget

logger = logging.getLogger(__name__)

# Upstream headers worth passing on to the client.
FORWARDED_HEADERS = ("content-type", "content-length", "last-modified", "etag")


class RemoteFile:
    """An open upstream response; the body must be consumed or closed."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self.response = response

    @property
    def headers(self) -> dict[str, str]:
        """Upstream headers to forward.

        The body is forwarded decoded, so an encoded upstream length is dropped.
        """
        upstream = self.response.headers
        forwarded = {name: upstream[name] for name in FORWARDED_HEADERS if name in upstream}
        if "content-encoding" in upstream:
            forwarded.pop("content-length", None)
        return forwarded

    @property
    def media_type(self) -> str:
        return self.response.headers.get("content-type", "application/octet-stream")

    async def aclose(self) -> None:
        """Release the upstream connection."""
        await self.response.aclose()
        await self._client.aclose()


async def open_remote_file(
    target: BackendTarget,
    path: str,
    *,
    timeout: float,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RemoteFile:
    """Start streaming ``path`` from ``target``.

    Raises RemoteConnectionError when the backend is unreachable or answers
    with an error status; nothing is left open in that case.
    """
    url = join_remote_url(target.base_url, path)
    client = httpx.AsyncClient(
        auth=basic_auth(target.username, target.password),
        timeout=timeout,
        follow_redirects=True,
        transport=transport,
    )
    try:
        request = client.build_request("GET", url)
        response = await client.send(request, stream=True)
    except httpx.HTTPError as exc:
        await client.aclose()
        raise RemoteConnectionError(url, f"File request failed: {exc}") from exc

    if response.status_code >= 400:
        await response.aclose()
        await client.aclose()
        raise RemoteConnectionError(
            url,
            f"File request returned HTTP {response.status_code}",
            status_code=response.status_code,
        )
    logger.debug("Streaming %s from backend %d", path, target.id)
    return RemoteFile(client, response)
