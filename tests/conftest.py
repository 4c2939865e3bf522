"""Shared pytest fixtures for Banana tests."""

import base64
import io
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from banana.api.main import create_app
from banana.core.config import BananaConfig
from banana.core.fetch import RemoteFetcher
from banana.core.quota import QuotaAccountant
from banana.core.users import UserStore


def make_png(color=(255, 0, 0), size=(8, 8)) -> bytes:
    """Encode a solid-colour PNG."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def data_url(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


REMOTE_PNG = make_png((0, 0, 255))


def remote_handler(request: httpx.Request) -> httpx.Response:
    """Fake internet used by every remote-fetch test.

    Routes:
        /cat.png        a PNG image
        /page.html      an HTML page
        /missing.png    404
        /hop/<n>        redirects n times, then serves /cat.png
        /loop           redirects to itself forever
        /huge.png       an image larger than any test byte cap
    """
    path = request.url.path
    if path == "/cat.png":
        return httpx.Response(200, content=REMOTE_PNG, headers={"content-type": "image/png"})
    if path == "/page.html":
        return httpx.Response(200, content=b"<html></html>", headers={"content-type": "text/html"})
    if path.startswith("/hop/"):
        remaining = int(path.rsplit("/", 1)[1])
        location = "/cat.png" if remaining <= 1 else f"/hop/{remaining - 1}"
        return httpx.Response(302, headers={"location": location})
    if path == "/loop":
        return httpx.Response(302, headers={"location": "/loop"})
    if path == "/huge.png":
        return httpx.Response(200, content=b"\x89PNG" + b"\0" * 4096, headers={"content-type": "image/png"})
    return httpx.Response(404)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> BananaConfig:
    """Create a test configuration rooted in a temporary directory.

    Thumbnail derivation is off so byte counts in tests are exact.
    """
    static_dir = temp_dir / "static"
    (static_dir / "assets").mkdir(parents=True)
    (static_dir / "banana.html").write_text("<html><title>Banana</title></html>")
    (static_dir / "assets" / "app.js").write_text("console.log('banana');")

    return BananaConfig(
        _env_file=None,
        data_dir=str(temp_dir / "data"),
        static_dir=str(static_dir),
        secret="test-secret",
        admin_user=None,
        admin_pass=None,
        default_quota_bytes=1000,
        max_download_bytes=1024,
        generate_thumbnails=False,
    )


@pytest.fixture
def users(test_config: BananaConfig) -> UserStore:
    return UserStore(test_config.users_dir)


@pytest.fixture
def quota(users: UserStore, test_config: BananaConfig) -> QuotaAccountant:
    return QuotaAccountant(users, test_config.default_quota_bytes)


@pytest.fixture
def remote_transport() -> httpx.MockTransport:
    return httpx.MockTransport(remote_handler)


@pytest.fixture
def fetcher(remote_transport: httpx.MockTransport) -> RemoteFetcher:
    return RemoteFetcher(max_bytes=1024, max_redirects=3, transport=remote_transport)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def test_client(test_config: BananaConfig, remote_transport) -> Generator[TestClient, None, None]:
    """TestClient over an app wired to the temporary config and fake internet."""
    app = create_app(test_config, fetch_transport=remote_transport)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def alice_client(test_client: TestClient) -> TestClient:
    """Client logged in as ``alice`` (the first user, hence admin)."""
    test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
    resp = test_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})
    assert resp.status_code == 200
    return test_client
