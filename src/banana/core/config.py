"""Configuration management for the Banana storage backend.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the BANANA_ prefix,
allowing deployments to be customised without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (BANANA_* prefix)
2. .env file in the working directory
3. Default values defined in BananaConfig

Example .env file:
    BANANA_DATA_DIR=/srv/banana/data
    BANANA_SECRET=change-me
    BANANA_ADMIN_USER=admin
    BANANA_ADMIN_PASS=correct-horse
    BANANA_ENVIRONMENT=production

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time and
is used by ``banana.api.main`` when no explicit configuration is passed to
``create_app()``.  Tests build their own instances pointing at temporary
directories.

Directory Layout
----------------
Everything the server persists lives under ``data_dir``::

    data_dir/
        secret.txt                  token signing secret (unless BANANA_SECRET)
        users/<username>/
            meta.json               credentials and admin flag
            usage.json              cached byte counters
            quota.json              optional {"galleryBytes": N} override
            uploads/ generated/     metered image namespaces (+ thumbs/)
            favorites/<type>.json   favorite lists
            favorites/<type>/<id>/  materialized favorite media
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Package-relative default for the front-end assets.
_PACKAGE_DIR = Path(__file__).resolve().parent.parent

GIB = 1024**3
MIB = 1024**2


class BananaConfig(BaseSettings):
    """Main configuration for the Banana storage backend.

    Attributes
    ----------
    Paths:
        data_dir : Path
            Root of all persisted state (users, secret).
        static_dir : Path
            Directory holding ``banana.html`` and the ``assets/`` tree.

    Auth:
        secret : str | None
            Token signing secret.  When unset, the secret is read from (or
            generated into) ``data_dir/secret.txt``.
        admin_user / admin_pass : str | None
            Optional admin account ensured at startup.
        environment : Literal["development", "production"]
            Production mode enables the ``Secure`` cookie flag on HTTPS.
        token_ttl_days : int
            Lifetime encoded into issued tokens.

    Storage limits:
        default_quota_bytes : int
            Per-user ceiling for uploads + generated (admins are unlimited).
        max_body_bytes : int
            Largest accepted request body.
        max_download_bytes : int
            Largest remote image the server will fetch.
        max_redirects : int
            Redirects followed by a remote fetch.

    Thumbnails:
        generate_thumbnails : bool
            Derive a WebP thumbnail with Pillow when the client sends none.
        thumbnail_size : int
            Longest edge of derived thumbnails in pixels.

    Server:
        server_host / server_port / log_level
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BANANA_",
        case_sensitive=False,
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Root directory for users, files and the signing secret",
    )
    static_dir: Path = Field(
        default=_PACKAGE_DIR / "static",
        description="Directory containing banana.html and assets/",
    )

    # Auth
    secret: str | None = Field(
        default=None,
        description="Token signing secret (falls back to data_dir/secret.txt)",
    )
    admin_user: str | None = Field(
        default=None,
        description="Admin username ensured at startup",
    )
    admin_pass: str | None = Field(
        default=None,
        description="Password for admin_user (minimum 6 characters)",
    )
    environment: Literal["development", "production"] = Field(
        default="development",
        description="Production enables Secure cookies on HTTPS requests",
    )
    token_ttl_days: int = Field(default=7, ge=1, le=365)

    # Storage limits
    default_quota_bytes: int = Field(
        default=1 * GIB,
        description="Default gallery quota for non-admin users",
        gt=0,
    )
    max_body_bytes: int = Field(default=50 * MIB, gt=0)
    max_download_bytes: int = Field(default=50 * MIB, gt=0)
    max_redirects: int = Field(default=3, ge=0, le=10)

    # Thumbnails
    generate_thumbnails: bool = Field(
        default=True,
        description="Derive thumbnails server-side when none is uploaded",
    )
    thumbnail_size: int = Field(default=256, ge=16, le=2048)

    # Server
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=3000, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create the data directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.users_dir.mkdir(parents=True, exist_ok=True)

    @property
    def users_dir(self) -> Path:
        """Directory holding one subdirectory per registered user."""
        return self.data_dir / "users"

    @property
    def secret_path(self) -> Path:
        return self.data_dir / "secret.txt"

    @property
    def assets_dir(self) -> Path:
        return self.static_dir / "assets"


# Global configuration instance
# Loads values from environment variables (BANANA_* prefix) and .env file.
config = BananaConfig()
