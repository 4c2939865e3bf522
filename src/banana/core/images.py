"""Metered image library: the ``uploads`` and ``generated`` namespaces.

Images arrive as base64 data URLs (or are fetched from a remote URL) and are
written to ``<user>/<kind>/<epochMillis>_<hex>.<ext>``.  Each may have a WebP
thumbnail at ``<user>/<kind>/thumbs/<base>.webp``; the browser usually sends
one, otherwise Pillow derives it.  Every write is checked against the quota
first and charged to the usage counters afterwards; deletes refund the bytes
they free.
"""

from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from urllib.parse import unquote

from PIL import Image, UnidentifiedImageError

from banana.core.errors import ForbiddenError, ValidationError
from banana.core.fetch import RemoteFetcher, is_http_url
from banana.core.quota import METERED_KINDS, QuotaAccountant
from banana.core.storage import (
    DecodedImage,
    clear_directory,
    file_size,
    file_uri,
    new_filename_for_mime,
    parse_data_url,
    resolve_within,
    safe_unlink,
    thumb_path_for,
    write_bytes,
)
from banana.core.users import UserStore

logger = logging.getLogger(__name__)

_DELETABLE_URI_RE = re.compile(r"/files/([^/]+)/(uploads|generated)/([^/?#]+)")

MAX_LIST_LIMIT = 1000


def validate_kind(kind: object) -> str:
    normalized = str(kind or "").lower()
    if normalized not in METERED_KINDS:
        raise ValidationError("Invalid kind")
    return normalized


def make_thumbnail(data: bytes, size: int) -> bytes | None:
    """Render a WebP thumbnail whose longest edge is at most *size* pixels.

    Returns:
        The encoded thumbnail, or ``None`` if Pillow cannot read *data*.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.thumbnail((size, size))
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            buffer = io.BytesIO()
            image.save(buffer, format="WEBP", quality=80)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        logger.debug(f"No thumbnail derived: {e}")
        return None
    return buffer.getvalue()


class ImageLibrary:
    """Save, list, thumbnail, delete and clear a user's metered images.

    Args:
        users: User store (for user roots).
        quota: Quota accountant charged for every byte written.
        fetcher: Downloader used by :meth:`fetch_remote`.
        generate_thumbnails: Derive thumbnails when the client sends none.
        thumbnail_size: Longest edge of derived thumbnails.
    """

    def __init__(
        self,
        users: UserStore,
        quota: QuotaAccountant,
        fetcher: RemoteFetcher,
        *,
        generate_thumbnails: bool = True,
        thumbnail_size: int = 256,
    ):
        self.users = users
        self.quota = quota
        self.fetcher = fetcher
        self.generate_thumbnails = generate_thumbnails
        self.thumbnail_size = thumbnail_size

    def _kind_dir(self, username: str, kind: str) -> Path:
        return self.users.user_root(username) / kind

    def _thumb_uri(self, username: str, kind: str, thumb_path: Path) -> str:
        return file_uri(username, kind, "thumbs", thumb_path.name)

    def _thumbnail_for(self, image: DecodedImage, thumb_data_url: str | None) -> bytes | None:
        if thumb_data_url:
            supplied = parse_data_url(thumb_data_url)
            if supplied is not None:
                return supplied.data
        if self.generate_thumbnails:
            return make_thumbnail(image.data, self.thumbnail_size)
        return None

    def _store(self, username: str, kind: str, image: DecodedImage, thumb: bytes | None) -> dict:
        filename = new_filename_for_mime(image.mime)
        path = self._kind_dir(username, kind) / filename
        write_bytes(path, image.data)
        self.quota.add_usage(username, kind, len(image.data))

        thumb_uri = None
        if thumb:
            thumb_path = thumb_path_for(path)
            write_bytes(thumb_path, thumb)
            self.quota.add_usage(username, kind, len(thumb))
            thumb_uri = self._thumb_uri(username, kind, thumb_path)

        return {"fileUri": file_uri(username, kind, filename), "mime": image.mime, "thumbUri": thumb_uri}

    def save(self, username: str, kind: object, data_url: str | None, thumb_data_url: str | None = None) -> dict:
        """Store one image (and its thumbnail).

        Returns:
            ``{"fileUri", "mime", "thumbUri"}``.

        Raises:
            ValidationError: Bad kind or undecodable data URL.
            QuotaExceededError: Not enough space left.
        """
        kind = validate_kind(kind)
        image = parse_data_url(data_url)
        if image is None:
            raise ValidationError("Invalid dataUrl")
        thumb = self._thumbnail_for(image, thumb_data_url)
        self.quota.assert_has_space(username, kind, len(image.data) + len(thumb or b""))
        return self._store(username, kind, image, thumb)

    def save_batch(self, username: str, kind: object, images: list) -> list[dict | None]:
        """Store several images after a single quota check for their total size.

        Entries without a valid ``dataUrl`` yield ``None`` at their position.
        """
        kind = validate_kind(kind)
        prepared: list[tuple[DecodedImage, bytes | None] | None] = []
        total = 0
        for entry in images:
            entry = entry if isinstance(entry, dict) else {}
            image = parse_data_url(entry.get("dataUrl"))
            if image is None:
                prepared.append(None)
                continue
            thumb = self._thumbnail_for(image, entry.get("thumbDataUrl"))
            total += len(image.data) + len(thumb or b"")
            prepared.append((image, thumb))

        self.quota.assert_has_space(username, kind, total)
        return [self._store(username, kind, *item) if item else None for item in prepared]

    def list(self, username: str, kind: object, limit: int = 200, cursor: str | None = None) -> dict:
        """List stored images newest-first, paginated by filename cursor.

        Args:
            username: Owner.
            kind: ``uploads`` or ``generated``.
            limit: Page size, clamped to 1..1000.
            cursor: Name of the last file of the previous page.

        Returns:
            ``{"items": [...], "nextCursor": str | None}``.
        """
        kind = validate_kind(kind)
        limit = max(1, min(MAX_LIST_LIMIT, limit))
        directory = self._kind_dir(username, kind)
        directory.mkdir(parents=True, exist_ok=True)

        files = []
        for entry in directory.iterdir():
            if not entry.is_file():
                continue
            try:
                stat = entry.stat()
            except FileNotFoundError:
                continue
            files.append((entry, stat))
        files.sort(key=lambda pair: pair[1].st_mtime, reverse=True)

        start = 0
        if cursor:
            names = [path.name for path, _ in files]
            start = names.index(cursor) + 1 if cursor in names else 0
        page = files[start : start + limit]

        items = []
        for path, stat in page:
            thumb_path = thumb_path_for(path)
            items.append(
                {
                    "name": path.name,
                    "size": stat.st_size,
                    "mtimeMs": int(stat.st_mtime * 1000),
                    "fileUri": file_uri(username, kind, path.name),
                    "thumbUri": self._thumb_uri(username, kind, thumb_path) if thumb_path.is_file() else None,
                }
            )
        return {"items": items, "nextCursor": page[-1][0].name if page else None}

    def attach_thumbnail(
        self, username: str, kind: object, original_file_uri: str, thumb_data_url: str | None
    ) -> str:
        """Store (or replace) the thumbnail of an existing image.

        Returns:
            The thumbnail's URI.
        """
        kind = validate_kind(kind)
        prefix = f"/files/{username}/{kind}/"
        if not original_file_uri.startswith(prefix):
            raise ValidationError("Invalid originalFileUri")
        thumb = parse_data_url(thumb_data_url)
        if thumb is None:
            raise ValidationError("Invalid thumbDataUrl")

        original = resolve_within(
            self._kind_dir(username, kind), unquote(original_file_uri[len(prefix) :])
        )
        if original is None:
            raise ValidationError("Bad path")
        thumb_path = thumb_path_for(original)
        previous = file_size(thumb_path)

        self.quota.assert_has_space(username, kind, max(0, len(thumb.data) - previous))
        write_bytes(thumb_path, thumb.data)
        self.quota.change_usage(username, kind, len(thumb.data) - previous)
        return self._thumb_uri(username, kind, thumb_path)

    def delete(self, username: str, uri: str) -> None:
        """Delete one image and its thumbnail, refunding the freed bytes.

        Raises:
            ValidationError: Malformed URI or filename.
            ForbiddenError: The URI belongs to another user.
        """
        match = _DELETABLE_URI_RE.fullmatch(uri or "")
        if not match:
            raise ValidationError("Invalid fileUri")
        owner, kind, filename = unquote(match.group(1)), match.group(2), unquote(match.group(3))
        if owner != username:
            raise ForbiddenError("Forbidden")
        if "/" in filename or "\\" in filename or filename in (".", ".."):
            raise ValidationError("Bad filename")

        path = self._kind_dir(username, kind) / filename
        for target in (path, thumb_path_for(path)):
            freed = file_size(target)
            if safe_unlink(target) and freed:
                self.quota.change_usage(username, kind, -freed)

    def clear(self, username: str, kind: object) -> dict:
        """Empty one namespace (or ``"all"``) and return the recomputed usage."""
        raw_kind = str(kind or "").lower()
        kinds = METERED_KINDS if raw_kind == "all" else (validate_kind(raw_kind),)
        for name in kinds:
            clear_directory(self._kind_dir(username, name))
        logger.info(f"Cleared {', '.join(kinds)} for {username}")
        return self.quota.recompute_usage(username).model_dump(by_alias=True)

    async def fetch_remote(self, username: str, kind: object, url: str | None) -> dict:
        """Download a remote image into ``generated/``.

        Raises:
            ValidationError: Wrong kind, non-http URL or non-image response.
            RemoteFetchError: The download itself failed.
            QuotaExceededError: Not enough space left.
        """
        if str(kind or "").lower() != "generated":
            raise ValidationError("Invalid kind")
        if not is_http_url(url):
            raise ValidationError("Invalid url")

        resource = await self.fetcher.fetch(url)
        if not resource.is_image:
            raise ValidationError(f"Not an image: {resource.mime or 'unknown'}")

        image = DecodedImage(mime=resource.mime, data=resource.content)
        thumb = self._thumbnail_for(image, None)
        self.quota.assert_has_space(username, "generated", len(image.data) + len(thumb or b""))
        return self._store(username, "generated", image, thumb)
