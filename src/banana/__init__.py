"""Banana - per-user image and favorites storage for a generative-AI front-end."""

__version__ = "0.3.0"

from banana.core.config import BananaConfig, config

__all__ = [
    "BananaConfig",
    "config",
]
