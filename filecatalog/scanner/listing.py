"""Directory listing parsers.

Two listing formats are understood:

- nginx ``autoindex_format json``: a JSON array of
  ``{"name": ..., "type": "directory" | "file", "mtime": ..., "size": ...}``
- HTML autoindex pages (nginx, Apache, ``python -m http.server``): one anchor
  per entry with a relative href, directories ending in ``/``, optionally
  followed by a date and size column.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime
from html.parser import HTMLParser
from typing import Any
from urllib.parse import unquote, urlparse

from filecatalog.exceptions import RemoteProtocolError
from filecatalog.services.datetime_service import parse_remote_timestamp

_TAIL_RE = re.compile(
    r"(?P<date>\d{1,2}-[A-Za-z]{3}-\d{4} \d{2}:\d{2}(?::\d{2})?"
    r"|\d{4}-\d{2}-\d{2} \d{2}:\d{2}(?::\d{2})?)"
    r"\s+(?P<size>-|\d+(?:\.\d+)?[KMGTP]?)(?=\s|$)"
)
_SIZE_SUFFIXES = {"K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4, "P": 1024**5}


@dataclass(frozen=True)
class RemoteEntry:
    """One file or directory as reported by a backend listing."""

    path: str
    name: str
    is_directory: bool
    size: int | None
    modified_at: datetime | None


def is_valid_entry_name(name: str) -> bool:
    """Reject names that would escape or alias the listed directory."""
    return bool(name) and name not in (".", "..") and "/" not in name and "\x00" not in name


def make_entry(
    dir_path: str,
    name: str,
    is_directory: bool,
    size: int | None,
    modified_at: datetime | None,
) -> RemoteEntry:
    """Build an entry below ``dir_path`` (which must end with ``/``)."""
    path = f"{dir_path}{name}/" if is_directory else f"{dir_path}{name}"
    return RemoteEntry(
        path=path,
        name=name,
        is_directory=is_directory,
        size=None if is_directory else size,
        modified_at=modified_at,
    )


def parse_size(value: Any) -> int | None:
    """Parse a listing size: plain bytes, or human-readable ``1.5K``/``3M``."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        return int(value) if value >= 0 else None
    text = str(value).strip()
    if not text or text == "-":
        return None
    multiplier = _SIZE_SUFFIXES.get(text[-1].upper())
    number = text[:-1] if multiplier else text
    try:
        parsed = float(number)
    except ValueError:
        return None
    if parsed < 0:
        return None
    return int(parsed * (multiplier or 1))


def parse_json_listing(body: str, dir_path: str, url: str) -> list[RemoteEntry]:
    """Parse an nginx JSON autoindex document."""
    try:
        items = json.loads(body)
    except json.JSONDecodeError as exc:
        raise RemoteProtocolError(url, f"Invalid JSON listing: {exc.msg}") from exc
    if not isinstance(items, list):
        raise RemoteProtocolError(url, "JSON listing is not an array")

    entries: list[RemoteEntry] = []
    seen: set[str] = set()
    for item in items:
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise RemoteProtocolError(url, "JSON listing item without a name")
        name = item["name"]
        if not is_valid_entry_name(name) or name in seen:
            continue
        seen.add(name)
        mtime = item.get("mtime")
        entries.append(
            make_entry(
                dir_path,
                name,
                item.get("type") == "directory",
                parse_size(item.get("size")),
                parse_remote_timestamp(mtime if isinstance(mtime, (str, int, float)) else None),
            )
        )
    return entries


class _AutoindexParser(HTMLParser):
    """Collect (href, trailing text) pairs from an autoindex page."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.links: list[tuple[str, list[str]]] = []
        self._in_anchor = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag != "a":
            return
        href = dict(attrs).get("href")
        if href is None:
            return
        self.links.append((href, []))
        self._in_anchor = True

    def handle_endtag(self, tag: str) -> None:
        if tag == "a":
            self._in_anchor = False

    def handle_data(self, data: str) -> None:
        if self.links and not self._in_anchor:
            self.links[-1][1].append(data)


def _href_to_name(href: str) -> tuple[str, bool] | None:
    """Map a relative autoindex href to (name, is_directory); None to ignore it."""
    parsed = urlparse(href)
    if parsed.scheme or parsed.netloc or parsed.query or parsed.fragment:
        return None
    raw = parsed.path
    if not raw or raw.startswith("/"):
        return None
    is_directory = raw.endswith("/")
    name = unquote(raw.rstrip("/") if is_directory else raw)
    if not is_valid_entry_name(name):
        return None
    return name, is_directory


def parse_html_listing(body: str, dir_path: str) -> list[RemoteEntry]:
    """Parse an HTML autoindex page."""
    parser = _AutoindexParser()
    parser.feed(body)
    parser.close()

    entries: list[RemoteEntry] = []
    seen: set[str] = set()
    for href, tail_parts in parser.links:
        mapped = _href_to_name(href)
        if mapped is None:
            continue
        name, is_directory = mapped
        if name in seen:
            continue
        seen.add(name)
        modified_at: datetime | None = None
        size: int | None = None
        match = _TAIL_RE.search(" ".join(tail_parts))
        if match is not None:
            modified_at = parse_remote_timestamp(match.group("date"))
            size = parse_size(match.group("size"))
        entries.append(make_entry(dir_path, name, is_directory, size, modified_at))
    return entries


def parse_listing(body: str, content_type: str, dir_path: str, url: str) -> list[RemoteEntry]:
    """Parse one directory listing response into entries of ``dir_path``.

    Raises RemoteProtocolError when the body is neither format.
    """
    stripped = body.lstrip()
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type.endswith("json") or stripped.startswith("["):
        return parse_json_listing(stripped, dir_path, url)
    if "html" in media_type or stripped.startswith("<"):
        return parse_html_listing(body, dir_path)
    kind = media_type or "no content type"
    raise RemoteProtocolError(url, f"Unrecognized listing format ({kind})")
