"""Per-user byte accounting for the metered storage namespaces.

Only ``uploads`` and ``generated`` are metered; calls for any other kind are
no-ops.  Usage is cached in ``usage.json`` and is *not* transactional with the
file writes it describes:

1. callers call :meth:`QuotaAccountant.assert_has_space` before writing,
2. :meth:`QuotaAccountant.add_usage` after the write succeeds, and
3. :meth:`QuotaAccountant.change_usage` with a negative delta after a delete.

The cache can therefore drift (crash mid-write, files removed by hand).
:meth:`QuotaAccountant.recompute_usage` re-scans both directories and is used
lazily: once before rejecting a write, and whenever the cache is missing or
reads zero while files exist.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from banana.core.errors import QuotaExceededError
from banana.core.storage import dir_bytes, now_iso, read_json, write_json_atomic
from banana.core.users import UserStore

logger = logging.getLogger(__name__)

METERED_KINDS = ("uploads", "generated")


class UsageRecord(BaseModel):
    """Persisted ``usage.json`` record."""

    model_config = ConfigDict(populate_by_name=True)

    uploads_bytes: int = Field(default=0, alias="uploadsBytes")
    generated_bytes: int = Field(default=0, alias="generatedBytes")
    updated_at: str = Field(default_factory=now_iso, alias="updatedAt")

    @property
    def total(self) -> int:
        return self.uploads_bytes + self.generated_bytes

    def add(self, kind: str, delta: int) -> None:
        if kind == "uploads":
            self.uploads_bytes = max(0, self.uploads_bytes + delta)
        elif kind == "generated":
            self.generated_bytes = max(0, self.generated_bytes + delta)


def _format_gb(num_bytes: int) -> str:
    return f"{num_bytes / 1024**3:.2f}GB"


class QuotaAccountant:
    """Tracks and enforces the gallery quota of every user."""

    def __init__(self, users: UserStore, default_quota_bytes: int):
        self.users = users
        self.default_quota_bytes = default_quota_bytes

    def _user_root(self, username: str) -> Path:
        return self.users.user_root(username)

    def read_usage(self, username: str) -> UsageRecord:
        raw = read_json(self._user_root(username) / "usage.json", None)
        if not isinstance(raw, dict):
            return UsageRecord()
        try:
            return UsageRecord.model_validate(raw)
        except ValueError:
            logger.warning(f"Discarding malformed usage.json for {username}")
            return UsageRecord()

    def cached_usage(self, username: str) -> UsageRecord:
        """Read the cached usage, recomputing it first when it cannot be trusted.

        A missing ``usage.json``, or one reading zero while either metered
        directory holds bytes, is rebuilt from disk.
        """
        root = self._user_root(username)
        if not (root / "usage.json").is_file():
            return self.recompute_usage(username)
        usage = self.read_usage(username)
        if usage.total == 0 and any(dir_bytes(root / kind) > 0 for kind in METERED_KINDS):
            return self.recompute_usage(username)
        return usage

    def write_usage(self, username: str, usage: UsageRecord) -> UsageRecord:
        usage.updated_at = now_iso()
        write_json_atomic(self._user_root(username) / "usage.json", usage.model_dump(by_alias=True))
        return usage

    def recompute_usage(self, username: str) -> UsageRecord:
        """Re-scan ``uploads/`` and ``generated/`` (thumbs included) and persist."""
        root = self._user_root(username)
        usage = UsageRecord(
            uploads_bytes=dir_bytes(root / "uploads"),
            generated_bytes=dir_bytes(root / "generated"),
        )
        logger.debug(f"Recomputed usage for {username}: {usage.total} bytes")
        return self.write_usage(username, usage)

    def quota_bytes(self, username: str) -> int | None:
        """Return the user's ceiling in bytes, or ``None`` for unlimited (admins)."""
        if self.users.is_admin(username):
            return None
        override = read_json(self._user_root(username) / "quota.json", None)
        if isinstance(override, dict):
            value = override.get("galleryBytes")
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                return int(value)
        return self.default_quota_bytes

    def assert_has_space(self, username: str, kind: str, incoming_bytes: int) -> None:
        """Raise :class:`QuotaExceededError` unless *incoming_bytes* fit.

        The cached usage is tried first; if it says no, usage is recomputed
        from disk and the check is repeated once.
        """
        if kind not in METERED_KINDS:
            return
        quota = self.quota_bytes(username)
        if quota is None:
            return

        incoming = max(0, incoming_bytes)
        if self.cached_usage(username).total + incoming <= quota:
            return

        used = self.recompute_usage(username).total
        if used + incoming <= quota:
            return

        left = max(0, quota - used)
        raise QuotaExceededError(
            f"Gallery quota exceeded: {left} bytes left of {quota} bytes "
            f"({_format_gb(left)} / {_format_gb(quota)})"
        )

    def add_usage(self, username: str, kind: str, num_bytes: int) -> None:
        if kind not in METERED_KINDS:
            return
        usage = self.read_usage(username)
        usage.add(kind, max(0, num_bytes))
        self.write_usage(username, usage)

    def change_usage(self, username: str, kind: str, delta_bytes: int) -> None:
        """Apply a signed delta; counters never go below zero."""
        if kind not in METERED_KINDS:
            return
        usage = self.read_usage(username)
        usage.add(kind, delta_bytes)
        self.write_usage(username, usage)

    def usage_report(self, username: str) -> dict:
        """Quota and usage summary, self-healing a missing or zeroed cache."""
        quota = self.quota_bytes(username)
        usage = self.cached_usage(username)
        return {
            "quotaBytes": quota,
            "usedBytes": usage.total,
            "uploadsBytes": usage.uploads_bytes,
            "generatedBytes": usage.generated_bytes,
            "updatedAt": usage.updated_at,
        }
