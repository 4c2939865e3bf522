"""File-system helpers shared by the storage core.

This module isolates the low-level persistence rules so the user store, quota
accountant, image library and favorites store can stay focused on their own
semantics:

- JSON documents are read forgivingly (missing or corrupt files fall back to a
  default) and written atomically (temp file in the same directory, then
  rename), so readers never observe a half-written document.
- Stored files get immutable names of the form ``<epochMillis>_<12 hex>.<ext>``.
- Thumbnails live in a ``thumbs/`` directory beside the original and are keyed
  by the original's base filename.
- ``resolve_within`` is the single path-traversal guard used by every route
  that maps a URL path onto the disk.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import re
import secrets
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, NamedTuple
from urllib.parse import quote

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"data:([^;,]+);base64,(.+)", re.DOTALL)

_MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".css": "text/css; charset=utf-8",
    ".js": "text/javascript; charset=utf-8",
    ".html": "text/html; charset=utf-8",
}


class DecodedImage(NamedTuple):
    """Binary payload recovered from a ``data:`` URL."""

    mime: str
    data: bytes


# ---------------------------------------------------------------------------
# Time and naming.
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_ms() -> int:
    return int(time.time() * 1000)


def mime_to_ext(mime: str | None) -> str:
    """Map an image MIME type to the extension used for stored files."""
    return _MIME_EXTENSIONS.get((mime or "").strip().lower(), "bin")


def guess_content_type(path: Path) -> str:
    return _CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")


def new_filename(suffix: str) -> str:
    """Return a fresh, practically unique filename.

    Args:
        suffix: Extension including the leading dot (``".png"``), or ``""``.
    """
    return f"{now_ms()}_{secrets.token_hex(6)}{suffix}"


def new_filename_for_mime(mime: str) -> str:
    return new_filename(f".{mime_to_ext(mime)}")


def thumb_path_for(image_path: Path) -> Path:
    """Return the thumbnail location for an original image."""
    return image_path.parent / "thumbs" / f"{image_path.stem}.webp"


def file_uri(username: str, *parts: str) -> str:
    """Build the ``/files/<username>/...`` URI that serves a stored file."""
    segments = [quote(username, safe="")] + [quote(p, safe="") for p in parts]
    return "/files/" + "/".join(segments)


# ---------------------------------------------------------------------------
# Data URLs.
# ---------------------------------------------------------------------------


def decode_base64(payload: str) -> bytes | None:
    """Strictly decode standard base64, tolerating whitespace and missing padding.

    Returns:
        The decoded bytes, or ``None`` if *payload* is not valid base64 or
        decodes to nothing.
    """
    compact = "".join(payload.split())
    if not compact:
        return None
    compact += "=" * (-len(compact) % 4)
    try:
        data = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        return None
    return data or None


def parse_data_url(value: Any) -> DecodedImage | None:
    """Parse ``data:<mime>;base64,<payload>``.

    Returns:
        The decoded image, or ``None`` when *value* is not a well-formed
        base64 data URL.
    """
    if not isinstance(value, str):
        return None
    match = _DATA_URL_RE.fullmatch(value)
    if not match:
        return None
    data = decode_base64(match.group(2))
    if data is None:
        return None
    return DecodedImage(mime=match.group(1).strip().lower(), data=data)


# ---------------------------------------------------------------------------
# JSON persistence.
# ---------------------------------------------------------------------------


def read_json(path: Path, default: Any) -> Any:
    """Load a JSON document, returning *default* if it is missing or corrupt.

    Other I/O failures (permissions, a directory in the way) propagate.
    """
    try:
        with open(path, encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError:
        return default
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(f"Ignoring unparseable JSON document: {path}")
        return default


def write_json_atomic(path: Path, value: Any) -> None:
    """Persist *value* as JSON via a temp file and an atomic rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{secrets.token_hex(6)}")
    try:
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(value, handle, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Paths and files.
# ---------------------------------------------------------------------------


def resolve_within(root: Path, rel: str) -> Path | None:
    """Resolve *rel* against *root*, refusing anything that escapes it.

    Args:
        root: Directory that must contain the result.
        rel: Untrusted relative path taken from a URL.

    Returns:
        The absolute resolved path, or ``None`` if it lies outside *root*.
    """
    base = root.resolve()
    candidate = (base / rel).resolve()
    if candidate == base or candidate.is_relative_to(base):
        return candidate
    return None


def write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def file_size(path: Path) -> int:
    """Size of a regular file, 0 if it does not exist."""
    try:
        stat = path.stat()
    except FileNotFoundError:
        return 0
    return stat.st_size if path.is_file() else 0


def safe_unlink(path: Path) -> bool:
    """Delete a file, returning ``False`` if it was already gone."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def dir_bytes(directory: Path, *, recursive: bool = True) -> int:
    """Sum the sizes of the regular files under *directory*."""
    if not directory.is_dir():
        return 0
    total = 0
    for entry in directory.iterdir():
        if entry.is_dir():
            if recursive:
                total += dir_bytes(entry)
        elif entry.is_file():
            total += file_size(entry)
    return total


def clear_directory(directory: Path) -> None:
    """Remove everything inside *directory*, leaving the directory itself."""
    directory.mkdir(parents=True, exist_ok=True)
    for entry in directory.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            safe_unlink(entry)
