"""Favorite media materialization.

A favorite is an arbitrary JSON value sent by the browser.  Before it is
persisted, every image embedded in it is written to the favorite's own
directory (``favorites/<type>/<id>/``) and replaced by a ``/files/...``
reference, so the stored JSON never carries inline image payloads and keeps
working after the user deletes the original upload.

Object nodes are matched against an ordered list of shape matchers:

1. **packed asset** -- ``{"mime" | "mime_type": "image/...", "data": <base64>}``
   without an existing ``file_uri``/``fileUri``: becomes a shallow copy with
   ``file_uri`` added and ``data`` removed.
2. **provider inline image** -- ``{"inline_data" | "inlineData" | "inLineData":
   {"mime_type" | "mimeType": ..., "data": <base64>}}``: the whole part is
   replaced by ``{"file_data": {"mime_type": ..., "file_uri": ...}}``.

A matcher transform answers :class:`Transformed` or :class:`Unchanged`; an
unchanged answer falls through to the next matcher and finally to plain
recursion into the children.  String leaves are checked, in order, for a
base64 image data URL, a file of the same user (copied as a snapshot), and an
``http(s)`` URL (downloaded if it really is an image).  Anything that fails to
decode or download is left exactly as it was; only storage I/O errors
propagate.

Files written here are not charged to the user's quota.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Union
from urllib.parse import unquote

from banana.core.errors import RemoteFetchError
from banana.core.fetch import RemoteFetcher, is_http_url
from banana.core.storage import (
    file_uri,
    new_filename,
    new_filename_for_mime,
    parse_data_url,
    resolve_within,
    write_bytes,
)

logger = logging.getLogger(__name__)

INLINE_DATA_KEYS = ("inline_data", "inlineData", "inLineData")


@dataclass(frozen=True)
class MaterializeContext:
    """Where a favorite's media goes and whose files it may snapshot."""

    username: str
    favorite_type: str
    favorite_id: str
    favorite_dir: Path
    user_root: Path

    @property
    def own_files_prefix(self) -> str:
        return f"/files/{self.username}/"

    def uri_for(self, filename: str) -> str:
        return file_uri(self.username, "favorites", self.favorite_type, self.favorite_id, filename)


@dataclass(frozen=True)
class Transformed:
    value: Any


@dataclass(frozen=True)
class Unchanged:
    pass


UNCHANGED = Unchanged()

Outcome = Union[Transformed, Unchanged]


@dataclass(frozen=True)
class NodeMatcher:
    """A shape predicate paired with the transform applied on a match."""

    name: str
    matches: Callable[[Any], bool]
    transform: Callable[["Materializer", Any], Awaitable[Outcome]]


# ---------------------------------------------------------------------------
# Object shapes.
# ---------------------------------------------------------------------------


def _asset_mime(node: dict) -> str | None:
    for key in ("mime", "mime_type"):
        value = node.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def is_packed_asset(node: dict) -> bool:
    mime = _asset_mime(node)
    data = node.get("data")
    return (
        mime is not None
        and mime.startswith("image/")
        and isinstance(data, str)
        and bool(data)
        and not node.get("file_uri")
        and not node.get("fileUri")
    )


async def _materialize_packed_asset(materializer: Materializer, node: dict) -> Outcome:
    outcome = await materializer.materialize_data_url(f"data:{_asset_mime(node)};base64,{node['data']}")
    if isinstance(outcome, Unchanged):
        return outcome
    replaced = {key: value for key, value in node.items() if key != "data"}
    replaced["file_uri"] = outcome.value
    return Transformed(replaced)


def find_inline_data(node: dict) -> dict | None:
    """Return the provider inline-image payload of a part, if it has one."""
    for key in INLINE_DATA_KEYS:
        inline = node.get(key)
        if isinstance(inline, dict) and inline.get("data"):
            return inline
    return None


def is_inline_image_part(node: dict) -> bool:
    return find_inline_data(node) is not None


async def _materialize_inline_part(materializer: Materializer, node: dict) -> Outcome:
    inline = find_inline_data(node)
    mime = inline.get("mime_type") or inline.get("mimeType") or "image/png"
    outcome = await materializer.materialize_data_url(f"data:{mime};base64,{inline['data']}")
    if isinstance(outcome, Unchanged):
        return outcome
    return Transformed({"file_data": {"mime_type": mime, "file_uri": outcome.value}})


# Evaluated in order; the first Transformed answer wins.
NODE_MATCHERS: tuple[NodeMatcher, ...] = (
    NodeMatcher("packed_asset", is_packed_asset, _materialize_packed_asset),
    NodeMatcher("inline_image_part", is_inline_image_part, _materialize_inline_part),
)


# ---------------------------------------------------------------------------
# String leaves.
# ---------------------------------------------------------------------------


def is_image_data_url(value: str) -> bool:
    return value.startswith("data:image/") and ";base64," in value


class Materializer:
    """Rewrite one favorite, writing its media under ``context.favorite_dir``.

    A materializer is meant for a single favorite: its memo tables make the
    same data URL or remote URL referenced twice produce one stored file.

    Args:
        context: Target favorite and owning user.
        fetcher: Downloader for ``http(s)`` references.
        node_matchers: Object-shape matchers, in priority order.
    """

    def __init__(
        self,
        context: MaterializeContext,
        fetcher: RemoteFetcher,
        node_matchers: tuple[NodeMatcher, ...] = NODE_MATCHERS,
    ):
        self.context = context
        self.fetcher = fetcher
        self.node_matchers = node_matchers
        self._data_urls: dict[str, Outcome] = {}
        self._remote_urls: dict[str, Outcome] = {}

    async def materialize(self, item: Any) -> Any:
        """Return a rewritten copy of *item*; *item* itself is never mutated."""
        return await self._visit(item)

    async def _visit(self, node: Any) -> Any:
        if isinstance(node, dict):
            for matcher in self.node_matchers:
                if not matcher.matches(node):
                    continue
                outcome = await matcher.transform(self, node)
                if isinstance(outcome, Transformed):
                    logger.debug(f"Materialized {matcher.name} for favorite {self.context.favorite_id}")
                    return outcome.value
            return {key: await self._visit(value) for key, value in node.items()}
        if isinstance(node, list):
            return [await self._visit(value) for value in node]
        if isinstance(node, str):
            outcome = await self._visit_string(node)
            return outcome.value if isinstance(outcome, Transformed) else node
        return node

    async def _visit_string(self, value: str) -> Outcome:
        if is_image_data_url(value):
            return await self.materialize_data_url(value)
        if value.startswith(self.context.own_files_prefix):
            return self.snapshot_file_uri(value)
        if is_http_url(value):
            return await self.materialize_remote_url(value)
        return UNCHANGED

    def _store(self, data: bytes, filename: str) -> str:
        write_bytes(self.context.favorite_dir / filename, data)
        return self.context.uri_for(filename)

    async def materialize_data_url(self, data_url: str) -> Outcome:
        """Store a base64 data URL; malformed input is left unchanged."""
        if data_url in self._data_urls:
            return self._data_urls[data_url]
        decoded = parse_data_url(data_url)
        if decoded is None:
            outcome: Outcome = UNCHANGED
        else:
            outcome = Transformed(self._store(decoded.data, new_filename_for_mime(decoded.mime)))
        self._data_urls[data_url] = outcome
        return outcome

    def snapshot_file_uri(self, uri: str) -> Outcome:
        """Copy one of the user's stored files into the favorite directory.

        References that escape the user's root or point at nothing are left
        unchanged.
        """
        rel = unquote(uri[len(self.context.own_files_prefix) :])
        source = resolve_within(self.context.user_root, rel)
        if source is None or not source.is_file():
            logger.debug(f"Not snapshotting {uri}: no such file for {self.context.username}")
            return UNCHANGED
        filename = new_filename(source.suffix)
        target = self.context.favorite_dir / filename
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        return Transformed(self.context.uri_for(filename))

    async def materialize_remote_url(self, url: str) -> Outcome:
        """Download an ``http(s)`` image; any failure leaves the URL as is."""
        if url in self._remote_urls:
            return self._remote_urls[url]
        try:
            resource = await self.fetcher.fetch(url)
        except RemoteFetchError as e:
            logger.warning(f"Keeping remote reference {url}: {e}")
            outcome: Outcome = UNCHANGED
        else:
            if resource.is_image:
                outcome = Transformed(self._store(resource.content, new_filename_for_mime(resource.mime)))
            else:
                logger.debug(f"Keeping remote reference {url}: not an image ({resource.mime or 'unknown'})")
                outcome = UNCHANGED
        self._remote_urls[url] = outcome
        return outcome
