"""Backend credentials: sealed at rest, opened only to build auth for requests."""

from __future__ import annotations

import base64
import hashlib

import httpx
from cryptography.fernet import Fernet, InvalidToken


def _fernet(secret_key: str) -> Fernet:
    """Fernet keyed by SHA-256 of the application secret."""
    digest = hashlib.sha256(secret_key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def seal_password(password: str, secret_key: str) -> str:
    """Encrypt a backend password for storage."""
    return _fernet(secret_key).encrypt(password.encode()).decode()


def open_password(sealed: str, secret_key: str) -> str:
    """Decrypt a stored backend password. Raises ValueError on failure."""
    try:
        return _fernet(secret_key).decrypt(sealed.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("Failed to decrypt backend credentials") from exc


def basic_auth(username: str | None, password: str | None) -> httpx.BasicAuth | None:
    """httpx auth for a backend, or None when it has no username."""
    if not username:
        return None
    return httpx.BasicAuth(username, password or "")
