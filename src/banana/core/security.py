"""Token signing, password hashing and the signing-secret lifecycle.

Tokens are self-contained and stateless::

    base64url(JSON payload) + "." + base64url(HMAC-SHA256(secret, payload_b64))

with the payload ``{"u": username, "a": is_admin, "exp": epoch_millis}``.
Verification never raises: anything malformed, tampered with or expired simply
yields ``None``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from typing import Any

from banana.core.config import BananaConfig
from banana.core.storage import now_ms

logger = logging.getLogger(__name__)

COOKIE_NAME = "banana_token"

PBKDF2_ITERATIONS = 150_000
PBKDF2_KEY_BYTES = 32
SALT_BYTES = 16


def b64url_encode(data: bytes | str) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def _sign(secret: str, payload_b64: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).digest()
    return b64url_encode(digest)


def create_token(secret: str, payload: dict[str, Any]) -> str:
    """Encode and sign *payload*."""
    payload_b64 = b64url_encode(json.dumps(payload, separators=(",", ":")))
    return f"{payload_b64}.{_sign(secret, payload_b64)}"


def verify_token(secret: str, token: str | None) -> dict[str, Any] | None:
    """Return the payload of a valid, unexpired token, else ``None``.

    Args:
        secret: Process-wide signing secret.
        token: Raw cookie value (may be ``None`` or empty).
    """
    if not token:
        return None
    parts = token.split(".")
    if len(parts) != 2:
        return None
    payload_b64, signature = parts
    try:
        expected = _sign(secret, payload_b64)
        if not hmac.compare_digest(signature.encode("ascii"), expected.encode("ascii")):
            return None
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None

    if not isinstance(payload, dict):
        return None
    exp = payload.get("exp")
    if exp and (not isinstance(exp, (int, float)) or now_ms() > exp):
        return None
    if not payload.get("u"):
        return None
    return payload


def issue_token(secret: str, username: str, is_admin: bool, ttl_days: int) -> str:
    """Create a login token expiring *ttl_days* from now."""
    return create_token(
        secret,
        {"u": username, "a": bool(is_admin), "exp": now_ms() + ttl_days * 24 * 60 * 60 * 1000},
    )


# ---------------------------------------------------------------------------
# Passwords.
# ---------------------------------------------------------------------------


def new_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def hash_password(password: str, salt_hex: str) -> str:
    """PBKDF2-HMAC-SHA256 of *password*, hex-encoded."""
    derived = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        bytes.fromhex(salt_hex),
        PBKDF2_ITERATIONS,
        dklen=PBKDF2_KEY_BYTES,
    )
    return derived.hex()


def check_password(password: str, salt_hex: str, expected_hash: str) -> bool:
    return hmac.compare_digest(hash_password(password, salt_hex), expected_hash)


# ---------------------------------------------------------------------------
# Secret lifecycle.
# ---------------------------------------------------------------------------


def load_or_create_secret(cfg: BananaConfig) -> str:
    """Resolve the token signing secret.

    Order: ``BANANA_SECRET`` → ``data_dir/secret.txt`` → a freshly generated
    32-byte secret that is persisted to ``secret.txt``.
    """
    if cfg.secret and cfg.secret.strip():
        return cfg.secret.strip()

    try:
        stored = cfg.secret_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        stored = ""
    if stored:
        return stored

    generated = secrets.token_hex(32)
    cfg.secret_path.parent.mkdir(parents=True, exist_ok=True)
    cfg.secret_path.write_text(generated, encoding="utf-8")
    logger.info(f"Generated new signing secret at {cfg.secret_path}")
    return generated
