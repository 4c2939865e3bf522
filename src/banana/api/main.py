"""Banana storage backend - FastAPI Application.

This module is the single entry point for the web application.  It defines
the application factory, all REST API routes, the protected file routes and
the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
The application is a thin HTTP shell over :mod:`banana.core`:

- **Configuration** comes from :class:`~banana.core.config.BananaConfig`
  (``BANANA_*`` environment variables).
- **Startup** (the lifespan hook) resolves the token signing secret, ensures
  the configured admin account and builds one immutable :class:`AppContext`
  holding every store.  Handlers receive it through a dependency.
- **Authentication** is a signed token in the ``banana_token`` cookie.
- **Errors** raised by the core are typed (:mod:`banana.core.errors`) and are
  turned into ``{"error": message}`` JSON responses here, at the request
  boundary only.
- **Persistence** is the file system; there is no database.

Endpoints
---------
========  =================================  ==================================
Method    Path                               Purpose
========  =================================  ==================================
GET       ``/``, ``/banana.html``            Serve the front-end page
GET       ``/assets/{path}``                 Static assets
GET       ``/files/{username}/{path}``       Protected user files
GET       ``/api/health``                    Liveness probe
GET       ``/api/me``                        Current user (or null)
POST      ``/api/auth/register``             Create an account
POST      ``/api/auth/login``                Log in, set the auth cookie
POST      ``/api/auth/logout``               Clear the auth cookie
POST      ``/api/images/save``               Save one image (+ thumbnail)
POST      ``/api/images/save-batch``         Save several images
GET       ``/api/images/list``               Paginated image listing
GET       ``/api/storage/usage``             Quota and usage
POST      ``/api/images/thumb``              Attach a thumbnail to an image
POST      ``/api/images/delete``             Delete an image
POST      ``/api/images/clear``              Empty uploads/generated/all
POST      ``/api/images/fetch``              Store a remote image
POST      ``/api/favorites/add``             Materialize and store a favorite
GET       ``/api/favorites/{type}``          List favorites of a type
DELETE    ``/api/favorites/{type}/{id}``     Delete a favorite
GET       ``/api/admin/users``               List users (admin)
POST      ``/api/admin/promote/{username}``  Grant admin (admin)
========  =================================  ==================================

Usage
-----
CLI (installed entry point)::

    banana

Direct invocation::

    python -m banana.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from banana import __version__
from banana.api.models import (
    AddFavoriteRequest,
    ClearImagesRequest,
    CredentialsRequest,
    DeleteImageRequest,
    FetchImageRequest,
    SaveBatchRequest,
    SaveImageRequest,
    ThumbRequest,
)
from banana.core.config import BananaConfig, config
from banana.core.errors import (
    AuthError,
    BananaError,
    ForbiddenError,
    NotFoundError,
    PayloadTooLargeError,
    ValidationError,
)
from banana.core.favorites import FavoritesStore
from banana.core.fetch import RemoteFetcher
from banana.core.images import ImageLibrary
from banana.core.materializer import MaterializeContext, Materializer
from banana.core.quota import QuotaAccountant
from banana.core.security import COOKIE_NAME, issue_token, load_or_create_secret, verify_token
from banana.core.storage import guess_content_type, resolve_within
from banana.core.users import UserStore, sanitize_username

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application context: built once at startup, read-only afterwards.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AppContext:
    """Everything a request handler needs, wired from one configuration."""

    config: BananaConfig
    secret: str
    users: UserStore
    quota: QuotaAccountant
    images: ImageLibrary
    favorites: FavoritesStore
    fetcher: RemoteFetcher

    def materializer_for(self, context: MaterializeContext) -> Materializer:
        return Materializer(context, self.fetcher)


def build_context(
    cfg: BananaConfig,
    fetch_transport: httpx.AsyncBaseTransport | None = None,
) -> AppContext:
    """Resolve the secret and construct the stores for *cfg*."""
    users = UserStore(cfg.users_dir)
    quota = QuotaAccountant(users, cfg.default_quota_bytes)
    fetcher = RemoteFetcher(
        max_bytes=cfg.max_download_bytes,
        max_redirects=cfg.max_redirects,
        transport=fetch_transport,
    )
    return AppContext(
        config=cfg,
        secret=load_or_create_secret(cfg),
        users=users,
        quota=quota,
        images=ImageLibrary(
            users,
            quota,
            fetcher,
            generate_thumbnails=cfg.generate_thumbnails,
            thumbnail_size=cfg.thumbnail_size,
        ),
        favorites=FavoritesStore(cfg.users_dir),
        fetcher=fetcher,
    )


# ---------------------------------------------------------------------------
# Dependencies.
# ---------------------------------------------------------------------------


def get_context(request: Request) -> AppContext:
    return request.app.state.context


def optional_auth(request: Request, ctx: AppContext = Depends(get_context)) -> dict | None:
    """Payload of the request's auth token, or ``None``."""
    return verify_token(ctx.secret, request.cookies.get(COOKIE_NAME))


def require_auth(auth: dict | None = Depends(optional_auth)) -> dict:
    if auth is None:
        raise AuthError("Unauthorized")
    return auth


def require_admin(auth: dict | None = Depends(optional_auth)) -> dict:
    if auth is None or auth.get("a") is not True:
        raise ForbiddenError("Forbidden")
    return auth


# ---------------------------------------------------------------------------
# Cookie helpers.
# ---------------------------------------------------------------------------


def is_request_secure(request: Request) -> bool:
    """Whether the request reached us (or the proxy in front of us) over HTTPS."""
    if request.url.scheme == "https":
        return True
    for header in ("x-forwarded-proto", "x-scheme"):
        if request.headers.get(header, "").lower() == "https":
            return True
    return False


def set_auth_cookie(request: Request, response: Response, token: str, cfg: BananaConfig) -> None:
    # Expiry lives in the token payload; the cookie itself is a session cookie.
    response.set_cookie(
        COOKIE_NAME,
        token,
        path="/",
        httponly=True,
        samesite="lax",
        secure=cfg.environment == "production" and is_request_secure(request),
    )


def clear_auth_cookie(response: Response) -> None:
    response.set_cookie(COOKIE_NAME, "", path="/", max_age=0, httponly=True, samesite="lax")


# ---------------------------------------------------------------------------
# File responses.
# ---------------------------------------------------------------------------


def _static_cache_control(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix == ".html":
        return "no-store"
    if suffix in (".js", ".css"):
        return "public, max-age=0, must-revalidate"
    return "public, max-age=3600"


def serve_file(request: Request, path: Path, cache_control: str) -> Response:
    """Serve *path* with a weak ETag, answering 304 when it still matches."""
    if not path.is_file():
        raise NotFoundError("Not found")
    stat = path.stat()
    etag = f'W/"{stat.st_size}-{int(stat.st_mtime * 1000)}"'
    headers = {"etag": etag, "cache-control": cache_control}
    if request.headers.get("if-none-match") == etag:
        return Response(status_code=304, headers=headers)
    return FileResponse(path, media_type=guess_content_type(path), headers=headers)


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/")
@router.get("/banana.html")
async def index(request: Request, ctx: AppContext = Depends(get_context)) -> Response:
    """Serve the front-end page (``static_dir/banana.html``)."""
    page = ctx.config.static_dir / "banana.html"
    return serve_file(request, page, "no-store")


@router.get("/assets/{rel_path:path}")
async def assets(rel_path: str, request: Request, ctx: AppContext = Depends(get_context)) -> Response:
    """Serve a static asset, refusing paths that escape ``assets/``."""
    path = resolve_within(ctx.config.assets_dir, rel_path)
    if path is None:
        raise ValidationError("Bad path")
    return serve_file(request, path, _static_cache_control(path))


@router.get("/files/{username}/{rel_path:path}")
async def user_file(
    username: str,
    rel_path: str,
    request: Request,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> Response:
    """Serve a file from a user's root.

    Checks, in order: a valid token (401), a path that stays inside the
    user's root (400), ownership or admin (403), existence (404).
    """
    if sanitize_username(username) != username:
        raise ValidationError("Bad path")
    path = resolve_within(ctx.users.user_root(username), rel_path)
    if path is None:
        raise ValidationError("Bad path")
    if auth["u"] != username and auth.get("a") is not True:
        raise ForbiddenError("Forbidden")
    return serve_file(request, path, "private, max-age=3600")


@router.get("/api/health")
async def health() -> dict:
    return {"ok": True, "version": __version__}


@router.get("/api/me")
async def me(ctx: AppContext = Depends(get_context), auth: dict | None = Depends(optional_auth)) -> dict:
    """Return the logged-in user, or ``{"user": null}``."""
    if auth is None:
        return {"user": None}
    meta = ctx.users.get(auth["u"])
    if meta is None:
        return {"user": None}
    return {"user": {"username": meta.username, "isAdmin": meta.is_admin}}


@router.post("/api/auth/register")
def register(req: CredentialsRequest, ctx: AppContext = Depends(get_context)) -> dict:
    """Create an account; the very first account becomes the admin."""
    result = ctx.users.register(req.username, req.password)
    return {"ok": True, "isAdmin": result["isAdmin"]}


@router.post("/api/auth/login")
def login(
    req: CredentialsRequest,
    request: Request,
    response: Response,
    ctx: AppContext = Depends(get_context),
) -> dict:
    """Check credentials and set the ``banana_token`` cookie."""
    meta = ctx.users.authenticate(req.username, req.password)
    token = issue_token(ctx.secret, meta.username, meta.is_admin, ctx.config.token_ttl_days)
    set_auth_cookie(request, response, token, ctx.config)
    return {"ok": True, "user": {"username": meta.username, "isAdmin": meta.is_admin}}


@router.post("/api/auth/logout")
async def logout(response: Response) -> dict:
    clear_auth_cookie(response)
    return {"ok": True}


@router.post("/api/images/save")
async def save_image(
    req: SaveImageRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    return ctx.images.save(auth["u"], req.kind, req.data_url, req.thumb_data_url)


@router.post("/api/images/save-batch")
async def save_images(
    req: SaveBatchRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    return {"items": ctx.images.save_batch(auth["u"], req.kind, req.images)}


@router.get("/api/images/list")
async def list_images(
    kind: str = "",
    limit: int = 200,
    cursor: str | None = None,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    return ctx.images.list(auth["u"], kind, limit=limit, cursor=cursor)


@router.get("/api/storage/usage")
async def storage_usage(ctx: AppContext = Depends(get_context), auth: dict = Depends(require_auth)) -> dict:
    return ctx.quota.usage_report(auth["u"])


@router.post("/api/images/thumb")
async def attach_thumb(
    req: ThumbRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    thumb_uri = ctx.images.attach_thumbnail(auth["u"], req.kind, req.original_file_uri, req.thumb_data_url)
    return {"ok": True, "thumbUri": thumb_uri}


@router.post("/api/images/delete")
async def delete_image(
    req: DeleteImageRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    ctx.images.delete(auth["u"], req.file_uri)
    return {"ok": True}


@router.post("/api/images/clear")
async def clear_images(
    req: ClearImagesRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    return {"ok": True, "usage": ctx.images.clear(auth["u"], req.kind)}


@router.post("/api/images/fetch")
async def fetch_image(
    req: FetchImageRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    return await ctx.images.fetch_remote(auth["u"], req.kind, req.url)


@router.post("/api/favorites/add")
async def add_favorite(
    req: AddFavoriteRequest,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    """Materialize the item's images and store it at the head of its list."""
    stored = await ctx.favorites.save(auth["u"], req.type, req.item, ctx.materializer_for)
    return {"ok": True, "item": stored}


@router.get("/api/favorites/{favorite_type}")
async def list_favorites(
    favorite_type: str,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    return {"items": ctx.favorites.list(auth["u"], favorite_type)}


@router.delete("/api/favorites/{favorite_type}/{favorite_id}")
async def delete_favorite(
    favorite_type: str,
    favorite_id: str,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_auth),
) -> dict:
    ctx.favorites.remove(auth["u"], favorite_type, favorite_id)
    return {"ok": True}


@router.get("/api/admin/users")
async def admin_users(ctx: AppContext = Depends(get_context), auth: dict = Depends(require_admin)) -> dict:
    return {"items": ctx.users.list_users()}


@router.post("/api/admin/promote/{username}")
async def admin_promote(
    username: str,
    ctx: AppContext = Depends(get_context),
    auth: dict = Depends(require_admin),
) -> dict:
    ctx.users.promote(username)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Error translation: the only place errors are caught.
# ---------------------------------------------------------------------------


async def _banana_error(request: Request, exc: BananaError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = [str(err.get("msg", "Invalid request")) for err in exc.errors()]
    return JSONResponse({"error": "; ".join(messages) or "Invalid request"}, status_code=400)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)


async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse({"error": "Internal error"}, status_code=500)


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    cfg: BananaConfig | None = None,
    *,
    fetch_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the FastAPI application for *cfg* (defaults to the global config).

    Args:
        cfg: Configuration to serve.
        fetch_transport: Optional httpx transport for remote image fetches.

    Returns:
        The configured application.  Its context is built on startup.
    """
    cfg = cfg or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build the application context and ensure the configured admin."""
        context = build_context(cfg, fetch_transport)
        if context.users.bootstrap_admin(cfg.admin_user, cfg.admin_pass):
            logger.info(f"[admin] ensured admin user: {cfg.admin_user}")
        app.state.context = context
        logger.info(f"Banana storage ready (data dir: {cfg.data_dir})")
        yield

    app = FastAPI(
        title="Banana Storage",
        description="Per-user image and favorites storage for a generative-AI front-end.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow the front-end to be served from another port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length", "")
        if length.isdigit() and int(length) > cfg.max_body_bytes:
            return await _banana_error(request, PayloadTooLargeError("Body too large"))
        return await call_next(request)

    app.add_exception_handler(BananaError, _banana_error)
    app.add_exception_handler(RequestValidationError, _request_validation_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(Exception, _unexpected_error)

    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~banana.core.config.config`
    (``BANANA_SERVER_HOST``, ``BANANA_SERVER_PORT``, ``BANANA_LOG_LEVEL``).
    Defaults to ``0.0.0.0:3000``.

    This function is registered as the ``banana`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "banana.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
