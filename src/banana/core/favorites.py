"""File-backed favorites collections.

Favorites of each type live in one JSON array per user,
``favorites/<type>.json``, ordered most-recent-first.  Every mutation rewrites
the whole file through :func:`~banana.core.storage.write_json_atomic`, so a
reader never sees a partial file, although two concurrent writers can still
lose one update (last writer wins).

Media referenced by a favorite is materialized into
``favorites/<type>/<id>/`` before the item is stored; see
:mod:`banana.core.materializer`.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any

from banana.core.errors import ValidationError
from banana.core.materializer import MaterializeContext, Materializer
from banana.core.storage import now_ms, read_json, write_json_atomic

logger = logging.getLogger(__name__)

FAVORITE_TYPES = ("presets", "chats", "collections")

# A favorite id doubles as a directory name.
_FAVORITE_ID_RE = re.compile(r"[A-Za-z0-9_.-]{1,128}")


def validate_type(favorite_type: object) -> str:
    normalized = str(favorite_type or "").lower()
    if normalized not in FAVORITE_TYPES:
        raise ValidationError("Invalid type")
    return normalized


def id_to_str(value: Any) -> str:
    """Render a JSON id the way the browser does: ``1.0`` is ``"1"``, ``true`` is ``"true"``."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def favorite_id_for(item: Any) -> str:
    """Derive the id of a favorite: its own ``id`` or the current epoch millis."""
    raw_id = item.get("id") if isinstance(item, dict) else None
    favorite_id = id_to_str(raw_id) if raw_id else str(now_ms())
    if not _FAVORITE_ID_RE.fullmatch(favorite_id) or favorite_id in (".", ".."):
        raise ValidationError("Invalid favorite id")
    return favorite_id


def _item_id(item: Any) -> str | None:
    if isinstance(item, dict) and "id" in item:
        return id_to_str(item["id"])
    return None


class FavoritesStore:
    """Append/list/remove favorites for every user under ``users_dir``."""

    def __init__(self, users_dir: Path):
        self.users_dir = Path(users_dir)

    def favorites_dir(self, username: str) -> Path:
        return self.users_dir / username / "favorites"

    def _list_path(self, username: str, favorite_type: str) -> Path:
        return self.favorites_dir(username) / f"{favorite_type}.json"

    def media_dir(self, username: str, favorite_type: str, favorite_id: str) -> Path:
        return self.favorites_dir(username) / favorite_type / favorite_id

    def list(self, username: str, favorite_type: str) -> list:
        """Return the stored favorites, newest first.

        A missing, corrupt or non-array file reads as an empty list.
        """
        items = read_json(self._list_path(username, validate_type(favorite_type)), [])
        return items if isinstance(items, list) else []

    def append(self, username: str, favorite_type: str, item: Any) -> None:
        favorite_type = validate_type(favorite_type)
        items = self.list(username, favorite_type)
        items.insert(0, item)
        write_json_atomic(self._list_path(username, favorite_type), items)

    def remove(self, username: str, favorite_type: str, favorite_id: object) -> None:
        """Drop every favorite whose ``id`` matches; unknown ids are a no-op.

        The favorite's media directory is deleted with it.
        """
        favorite_type = validate_type(favorite_type)
        target = id_to_str(favorite_id)
        items = self.list(username, favorite_type)
        remaining = [item for item in items if _item_id(item) != target]
        write_json_atomic(self._list_path(username, favorite_type), remaining)

        if _FAVORITE_ID_RE.fullmatch(target) and target not in (".", ".."):
            media_dir = self.media_dir(username, favorite_type, target)
            if media_dir.is_dir():
                shutil.rmtree(media_dir)
        if len(remaining) != len(items):
            logger.info(f"Removed favorite {favorite_type}/{target} for {username}")

    async def save(
        self,
        username: str,
        favorite_type: object,
        item: Any,
        make_materializer: Callable[[MaterializeContext], Materializer],
    ) -> Any:
        """Materialize the media of *item* and store it at the head of its list.

        Args:
            username: Owner of the favorite.
            favorite_type: ``presets``, ``chats`` or ``collections``.
            item: JSON object or array supplied by the client.
            make_materializer: Builds the materializer for the favorite.

        Returns:
            The stored (rewritten) item.

        Raises:
            ValidationError: Unknown type, non-container item or unsafe id.
        """
        favorite_type = validate_type(favorite_type)
        if not isinstance(item, (dict, list)):
            raise ValidationError("Invalid item")
        favorite_id = favorite_id_for(item)

        # The media directory is created by the first file written into it.
        context = MaterializeContext(
            username=username,
            favorite_type=favorite_type,
            favorite_id=favorite_id,
            favorite_dir=self.media_dir(username, favorite_type, favorite_id),
            user_root=self.users_dir / username,
        )
        stored = await make_materializer(context).materialize(item)
        if isinstance(stored, dict) and not stored.get("id"):
            stored["id"] = favorite_id

        self.append(username, favorite_type, stored)
        logger.info(f"Saved favorite {favorite_type}/{favorite_id} for {username}")
        return stored
