"""File-backed user store.

Each user is a directory under ``users_dir`` named after the username.  The
directory holds ``meta.json`` (credentials and admin flag), ``usage.json``
(byte counters, see :mod:`banana.core.quota`) and the storage namespaces
``uploads/``, ``generated/`` and ``favorites/``.

There is no delete operation.  The first account ever registered becomes the
admin; the check is a plain directory listing, so two simultaneous first
registrations can both be promoted.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from banana.core.errors import AuthError, ConflictError, NotFoundError, ValidationError
from banana.core.security import check_password, hash_password, new_salt
from banana.core.storage import now_iso, read_json, write_json_atomic

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"[A-Za-z0-9_-]{3,32}")
MIN_PASSWORD_LENGTH = 6

USER_SUBDIRS = ("uploads", "generated", "favorites")


class UserMeta(BaseModel):
    """Persisted ``meta.json`` record."""

    model_config = ConfigDict(populate_by_name=True)

    username: str
    password_salt: str = Field(alias="passwordSalt")
    password_hash: str = Field(alias="passwordHash")
    is_admin: bool = Field(default=False, alias="isAdmin")
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")


def sanitize_username(username: object) -> str | None:
    """Return the trimmed username if it is valid, else ``None``."""
    candidate = str(username or "").strip()
    if not USERNAME_RE.fullmatch(candidate):
        return None
    return candidate


class UserStore:
    """Registration, login and admin management over ``users_dir``."""

    def __init__(self, users_dir: Path):
        self.users_dir = Path(users_dir)
        self.users_dir.mkdir(parents=True, exist_ok=True)

    def user_root(self, username: str) -> Path:
        return self.users_dir / username

    def _meta_path(self, username: str) -> Path:
        return self.user_root(username) / "meta.json"

    def list_usernames(self) -> list[str]:
        return sorted(entry.name for entry in self.users_dir.iterdir() if entry.is_dir())

    def get(self, username: str) -> UserMeta | None:
        raw = read_json(self._meta_path(username), None)
        if not isinstance(raw, dict):
            return None
        return UserMeta.model_validate(raw)

    def is_admin(self, username: str) -> bool:
        meta = self.get(username)
        return bool(meta and meta.is_admin)

    def save(self, meta: UserMeta) -> None:
        write_json_atomic(self._meta_path(meta.username), meta.model_dump(by_alias=True))

    def ensure_dirs(self, username: str) -> None:
        root = self.user_root(username)
        for name in USER_SUBDIRS:
            (root / name).mkdir(parents=True, exist_ok=True)

    def register(self, username: object, password: object) -> dict:
        """Create a new account.

        Returns:
            ``{"isAdmin": bool}``, true only for the first registered user.

        Raises:
            ValidationError: Invalid username or too-short password.
            ConflictError: The username is taken.
        """
        name = sanitize_username(username)
        if not name:
            raise ValidationError(
                "Username must be 3-32 characters: letters, digits, '_' or '-'"
            )
        password = str(password or "")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        if self.get(name) is not None:
            raise ConflictError("Username already exists")

        first_user_becomes_admin = not self.list_usernames()

        salt = new_salt()
        timestamp = now_iso()
        self.save(
            UserMeta(
                username=name,
                password_salt=salt,
                password_hash=hash_password(password, salt),
                is_admin=first_user_becomes_admin,
                created_at=timestamp,
                updated_at=timestamp,
            )
        )
        self.ensure_dirs(name)
        write_json_atomic(
            self.user_root(name) / "usage.json",
            {"uploadsBytes": 0, "generatedBytes": 0, "updatedAt": timestamp},
        )

        logger.info(f"Registered user {name} (admin={first_user_becomes_admin})")
        return {"isAdmin": first_user_becomes_admin}

    def authenticate(self, username: object, password: object) -> UserMeta:
        """Check credentials and return the user record.

        Raises:
            ValidationError: Username or password missing/malformed.
            AuthError: Unknown user or wrong password (same message for both).
        """
        name = sanitize_username(username)
        password = str(password or "")
        if not name or not password:
            raise ValidationError("Missing username or password")
        meta = self.get(name)
        if meta is None or not check_password(password, meta.password_salt, meta.password_hash):
            raise AuthError("Invalid username or password")
        return meta

    def promote(self, username: object) -> None:
        name = sanitize_username(username)
        if not name:
            raise ValidationError("Invalid username")
        meta = self.get(name)
        if meta is None:
            raise NotFoundError("User not found")
        meta.is_admin = True
        meta.updated_at = now_iso()
        self.save(meta)
        logger.info(f"Promoted {name} to admin")

    def list_users(self) -> list[dict]:
        """Summaries for the admin listing."""
        out = []
        for name in self.list_usernames():
            meta = self.get(name)
            if meta is None:
                continue
            out.append({"username": name, "isAdmin": meta.is_admin, "createdAt": meta.created_at})
        return out

    def bootstrap_admin(self, username: str | None, password: str | None) -> bool:
        """Ensure a configured admin account exists with the given password.

        An existing salt and creation time are kept.  Invalid settings are
        ignored.

        Returns:
            Whether the admin account was written.
        """
        name = sanitize_username(username)
        password = password or ""
        if not name or len(password) < MIN_PASSWORD_LENGTH:
            return False

        existing = self.get(name)
        salt = existing.password_salt if existing else new_salt()
        timestamp = now_iso()
        self.save(
            UserMeta(
                username=name,
                password_salt=salt,
                password_hash=hash_password(password, salt),
                is_admin=True,
                created_at=existing.created_at if existing else timestamp,
                updated_at=timestamp,
            )
        )
        self.ensure_dirs(name)
        logger.info(f"Ensured admin user: {name}")
        return True
