"""Storage core for the Banana backend.

This package holds everything below the HTTP layer:

- **config.py**: Configuration management using Pydantic Settings (BANANA_ prefix)
- **errors.py**: Typed errors carrying their HTTP status
- **security.py**: Signed tokens, password hashing, signing-secret lifecycle
- **storage.py**: Atomic JSON, data URLs, file naming, path-traversal guard
- **users.py**: File-backed user store (registration, login, admin)
- **quota.py**: Byte accounting and quota enforcement for uploads/generated
- **images.py**: Metered image library with Pillow thumbnails
- **fetch.py**: Bounded remote downloads (httpx)
- **materializer.py**: Rewrites embedded images in favorites into stored files
- **favorites.py**: Favorites collections (presets, chats, collections)

Every component is a plain object constructed from explicit paths and limits;
``banana.api.main`` wires them together once at startup.
"""

from banana.core.config import BananaConfig, config
from banana.core.errors import BananaError
from banana.core.favorites import FavoritesStore
from banana.core.images import ImageLibrary
from banana.core.materializer import Materializer
from banana.core.quota import QuotaAccountant
from banana.core.users import UserStore

__all__ = [
    "BananaConfig",
    "BananaError",
    "FavoritesStore",
    "ImageLibrary",
    "Materializer",
    "QuotaAccountant",
    "UserStore",
    "config",
]
