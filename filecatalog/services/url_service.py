"""Backend URL normalization and remote path helpers."""

from __future__ import annotations

import posixpath
from urllib.parse import quote, urlparse

from filecatalog.exceptions import BackendValidationError

_ALLOWED_SCHEMES = frozenset({"http", "https"})


def normalize_base_url(raw_url: str) -> str:
    """Return a canonical ``http(s)://host[:port][/path]`` base URL.

    A bare ``host:port`` (or ``host/path``) gets an ``http://`` scheme. The
    trailing slash is dropped so paths can be appended verbatim.

    Raises BackendValidationError for anything that is not a plain HTTP(S)
    address.
    """
    candidate = raw_url.strip()
    if not candidate:
        raise BackendValidationError("Base URL must not be empty")
    if "://" not in candidate:
        candidate = f"http://{candidate}"

    parsed = urlparse(candidate)
    scheme = parsed.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        raise BackendValidationError(f"Unsupported URL scheme {parsed.scheme!r}")
    if not parsed.hostname:
        raise BackendValidationError("Base URL must include a host")
    if parsed.username is not None or parsed.password is not None:
        raise BackendValidationError("Put credentials in the username/password fields")
    if parsed.params or parsed.query or parsed.fragment:
        raise BackendValidationError("Base URL must not carry a query or fragment")
    try:
        port = parsed.port
    except ValueError as exc:
        raise BackendValidationError("Base URL has an invalid port") from exc

    host = parsed.hostname
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None else f"{host}:{port}"
    path = parsed.path.rstrip("/")
    return f"{scheme}://{netloc}{path}"


def canonical_dir_path(path: str) -> str:
    """Canonical form of a directory path: normalized and ``/``-terminated.

    Paths are stored and passed around decoded, so ``%`` is an ordinary
    character here.
    """
    absolute = path or "/"
    if not absolute.startswith("/"):
        absolute = "/" + absolute
    normalized = posixpath.normpath(absolute)
    # normpath keeps a leading "//" as-is
    normalized = "/" + normalized.lstrip("/")
    if normalized == "/":
        return "/"
    return normalized + "/"


def parent_dir_path(path: str) -> str:
    """Directory containing ``path`` (``/`` for top-level entries)."""
    trimmed = path.rstrip("/")
    parent = posixpath.dirname(trimmed)
    return "/" if parent in ("", "/") else parent + "/"


def join_remote_url(base_url: str, path: str) -> str:
    """Absolute URL of a backend-relative path."""
    return base_url.rstrip("/") + quote(path, safe="/")
