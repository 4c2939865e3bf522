"""Integration tests for banana.api.main - FastAPI REST API endpoints.

All tests use the FastAPI TestClient over an application rooted in a
temporary data directory, with remote fetches answered by an
``httpx.MockTransport``.  Tests cover:

- ``GET /``, ``/assets/...`` - front-end serving.
- ``/api/auth/*`` and ``/api/me`` - registration, login, logout.
- ``/files/...`` - protected file access (401 / 400 / 403 / 404 / 304).
- ``/api/images/*`` and ``/api/storage/usage`` - the metered library.
- ``/api/favorites/*`` - favorites with media materialization.
- ``/api/admin/*`` - admin-only routes.
- Error shape and the request body limit.
"""

from __future__ import annotations

import base64
import re

from fastapi.testclient import TestClient

from banana.api.main import create_app
from conftest import REMOTE_PNG, data_url


def login_as(client: TestClient, username: str, password: str) -> dict:
    client.cookies.clear()
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200
    return resp.json()


def register_bob(client: TestClient) -> None:
    """Register ``bob`` (a regular user) and switch the client to him."""
    client.post("/api/auth/register", json={"username": "bob", "password": "password2"})
    login_as(client, "bob", "password2")


# ---------------------------------------------------------------------------
# Front-end serving.
# ---------------------------------------------------------------------------


class TestStaticFiles:
    """Test GET / and /assets/... - the front-end."""

    def test_index_returns_html(self, test_client):
        """GET / should return the page uncached."""
        resp = test_client.get("/")
        assert resp.status_code == 200
        assert "text/html" in resp.headers["content-type"]
        assert "Banana" in resp.text
        assert resp.headers["cache-control"] == "no-store"

    def test_banana_html_alias(self, test_client):
        assert test_client.get("/banana.html").status_code == 200

    def test_asset_served(self, test_client):
        resp = test_client.get("/assets/app.js")
        assert resp.status_code == 200
        assert "banana" in resp.text
        assert "must-revalidate" in resp.headers["cache-control"]

    def test_asset_traversal_rejected(self, test_client):
        resp = test_client.get("/assets/%2e%2e/banana.html")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Bad path"}

    def test_missing_asset(self, test_client):
        assert test_client.get("/assets/nope.js").status_code == 404


# ---------------------------------------------------------------------------
# Authentication.
# ---------------------------------------------------------------------------


class TestAuth:
    """Test /api/auth/* and /api/me."""

    def test_health(self, test_client):
        resp = test_client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert "version" in resp.json()

    def test_first_user_is_admin(self, test_client):
        """The very first registration becomes the admin; later ones do not."""
        first = test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
        second = test_client.post("/api/auth/register", json={"username": "bob", "password": "password2"})
        assert first.json() == {"ok": True, "isAdmin": True}
        assert second.json() == {"ok": True, "isAdmin": False}

    def test_duplicate_registration(self, test_client):
        test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
        resp = test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
        assert resp.status_code == 409
        assert "error" in resp.json()

    def test_register_validation(self, test_client):
        bad_name = test_client.post("/api/auth/register", json={"username": "a!", "password": "password1"})
        short_pass = test_client.post("/api/auth/register", json={"username": "alice", "password": "123"})
        assert bad_name.status_code == 400
        assert short_pass.status_code == 400

    def test_login_sets_httponly_cookie(self, test_client):
        test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
        resp = test_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "user": {"username": "alice", "isAdmin": True}}
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("banana_token=")
        assert "httponly" in cookie.lower()
        assert "samesite=lax" in cookie.lower()
        assert "secure" not in cookie.lower()

    def test_wrong_password(self, test_client):
        test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
        resp = test_client.post("/api/auth/login", json={"username": "alice", "password": "nope-nope"})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Invalid username or password"}

    def test_me(self, test_client):
        assert test_client.get("/api/me").json() == {"user": None}
        test_client.post("/api/auth/register", json={"username": "alice", "password": "password1"})
        test_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})
        assert test_client.get("/api/me").json() == {"user": {"username": "alice", "isAdmin": True}}

    def test_forged_cookie_is_anonymous(self, test_client):
        test_client.cookies.set("banana_token", "eyJ1IjoiYWxpY2UifQ.bogus")
        assert test_client.get("/api/me").json() == {"user": None}
        assert test_client.get("/api/storage/usage").status_code == 401

    def test_logout_expires_cookie(self, alice_client):
        resp = alice_client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert "max-age=0" in resp.headers["set-cookie"].lower()

    def test_configured_admin_bootstrapped(self, test_config, remote_transport):
        """BANANA_ADMIN_USER/PASS create an admin account on startup."""
        cfg = test_config.model_copy(update={"admin_user": "root", "admin_pass": "rootpass"})
        with TestClient(create_app(cfg, fetch_transport=remote_transport)) as client:
            body = login_as(client, "root", "rootpass")
            assert body["user"]["isAdmin"] is True


# ---------------------------------------------------------------------------
# Protected files.
# ---------------------------------------------------------------------------


class TestFiles:
    """Test GET /files/{username}/{path}."""

    def _saved_uri(self, client) -> str:
        resp = client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"pixels")})
        assert resp.status_code == 200
        return resp.json()["fileUri"]

    def test_owner_can_read(self, alice_client):
        uri = self._saved_uri(alice_client)
        resp = alice_client.get(uri)
        assert resp.status_code == 200
        assert resp.content == b"pixels"
        assert resp.headers["content-type"].startswith("image/png")
        assert resp.headers["cache-control"] == "private, max-age=3600"

    def test_requires_login(self, alice_client):
        uri = self._saved_uri(alice_client)
        alice_client.cookies.clear()
        assert alice_client.get(uri).status_code == 401

    def test_other_user_forbidden(self, alice_client):
        uri = self._saved_uri(alice_client)
        register_bob(alice_client)
        resp = alice_client.get(uri)
        assert resp.status_code == 403
        assert resp.json() == {"error": "Forbidden"}

    def test_admin_can_read_any_user(self, alice_client):
        register_bob(alice_client)
        uri = self._saved_uri(alice_client)
        login_as(alice_client, "alice", "password1")
        assert alice_client.get(uri).status_code == 200

    def test_traversal_is_bad_request(self, alice_client):
        """Escaping the user root is a 400, even for the owner."""
        resp = alice_client.get("/files/alice/%2e%2e/%2e%2e/secret.txt")
        assert resp.status_code == 400
        assert resp.json() == {"error": "Bad path"}

    def test_traversal_is_bad_request_for_other_users(self, alice_client):
        """A non-owner gets 400, not 403, for a path that escapes the root."""
        register_bob(alice_client)
        resp = alice_client.get("/files/alice/%2e%2e/bob/secret.png")
        assert resp.status_code == 400

    def test_dotdot_username_rejected(self, alice_client):
        assert alice_client.get("/files/%2e%2e/secret.txt").status_code == 400

    def test_missing_file(self, alice_client):
        assert alice_client.get("/files/alice/uploads/none.png").status_code == 404

    def test_etag_revalidation(self, alice_client):
        uri = self._saved_uri(alice_client)
        etag = alice_client.get(uri).headers["etag"]
        assert etag.startswith('W/"')
        resp = alice_client.get(uri, headers={"If-None-Match": etag})
        assert resp.status_code == 304
        assert resp.content == b""


# ---------------------------------------------------------------------------
# Image library.
# ---------------------------------------------------------------------------


class TestImages:
    """Test /api/images/* and /api/storage/usage."""

    def test_requires_login(self, test_client):
        resp = test_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x")})
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized"}

    def test_save_list_delete(self, alice_client):
        saved = alice_client.post(
            "/api/images/save",
            json={"kind": "generated", "dataUrl": data_url(b"abc"), "thumbDataUrl": data_url(b"t", "image/webp")},
        ).json()
        assert saved["thumbUri"].startswith("/files/alice/generated/thumbs/")

        listing = alice_client.get("/api/images/list", params={"kind": "generated"}).json()
        assert [item["fileUri"] for item in listing["items"]] == [saved["fileUri"]]

        resp = alice_client.post("/api/images/delete", json={"fileUri": saved["fileUri"]})
        assert resp.json() == {"ok": True}
        assert alice_client.get("/api/images/list", params={"kind": "generated"}).json()["items"] == []

    def test_save_bad_kind(self, alice_client):
        resp = alice_client.post("/api/images/save", json={"kind": "favorites", "dataUrl": data_url(b"x")})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid kind"}

    def test_save_batch(self, alice_client):
        resp = alice_client.post(
            "/api/images/save-batch",
            json={"kind": "uploads", "images": [{"dataUrl": data_url(b"1")}, {"dataUrl": "bad"}]},
        )
        items = resp.json()["items"]
        assert items[0]["fileUri"].startswith("/files/alice/uploads/")
        assert items[1] is None

    def test_thumb(self, alice_client):
        uri = alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x")}).json()["fileUri"]
        resp = alice_client.post(
            "/api/images/thumb",
            json={"kind": "uploads", "originalFileUri": uri, "thumbDataUrl": data_url(b"thumb", "image/webp")},
        )
        assert resp.status_code == 200
        assert alice_client.get(resp.json()["thumbUri"]).content == b"thumb"

    def test_quota_exceeded_is_507(self, alice_client):
        """A non-admin whose upload would pass the quota gets 507 and nothing is written."""
        register_bob(alice_client)
        ok = alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x" * 990)})
        assert ok.status_code == 200

        resp = alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x" * 20)})
        assert resp.status_code == 507
        assert resp.json()["error"].startswith("Gallery quota exceeded: 10 bytes left of 1000 bytes")
        assert len(alice_client.get("/api/images/list", params={"kind": "uploads"}).json()["items"]) == 1

    def test_usage(self, alice_client):
        register_bob(alice_client)
        alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x" * 100)})
        usage = alice_client.get("/api/storage/usage").json()
        assert usage["quotaBytes"] == 1000
        assert usage["usedBytes"] == 100
        assert usage["uploadsBytes"] == 100
        assert usage["generatedBytes"] == 0

    def test_admin_usage_is_unlimited(self, alice_client):
        assert alice_client.get("/api/storage/usage").json()["quotaBytes"] is None

    def test_clear(self, alice_client):
        alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x" * 10)})
        resp = alice_client.post("/api/images/clear", json={"kind": "all"})
        assert resp.json()["ok"] is True
        assert resp.json()["usage"]["uploadsBytes"] == 0

    def test_fetch_remote(self, alice_client):
        resp = alice_client.post("/api/images/fetch", json={"kind": "generated", "url": "https://images.example/cat.png"})
        assert resp.status_code == 200
        assert alice_client.get(resp.json()["fileUri"]).content == REMOTE_PNG

    def test_fetch_remote_errors(self, alice_client):
        too_big = alice_client.post("/api/images/fetch", json={"kind": "generated", "url": "https://images.example/huge.png"})
        missing = alice_client.post("/api/images/fetch", json={"kind": "generated", "url": "https://images.example/x.png"})
        html = alice_client.post("/api/images/fetch", json={"kind": "generated", "url": "https://images.example/page.html"})
        assert too_big.status_code == 413
        assert missing.status_code == 502
        assert html.status_code == 400

    def test_delete_other_users_file(self, alice_client):
        uri = alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"x")}).json()["fileUri"]
        register_bob(alice_client)
        assert alice_client.post("/api/images/delete", json={"fileUri": uri}).status_code == 403


# ---------------------------------------------------------------------------
# Favorites.
# ---------------------------------------------------------------------------


class TestFavorites:
    """Test /api/favorites/*."""

    def test_inline_image_is_materialized(self, alice_client, png_bytes):
        """A chat favorite with an inline image is stored as a file reference."""
        b64 = base64.b64encode(png_bytes).decode()
        item = {"id": 1, "messages": [{"parts": [{"inline_data": {"mime_type": "image/png", "data": b64}}]}]}

        resp = alice_client.post("/api/favorites/add", json={"type": "chats", "item": item})

        assert resp.status_code == 200
        part = resp.json()["item"]["messages"][0]["parts"][0]
        uri = part["file_data"]["file_uri"]
        assert re.fullmatch(r"/files/alice/favorites/chats/1/\d+_[0-9a-f]{12}\.png", uri)
        assert alice_client.get(uri).content == png_bytes

        listing = alice_client.get("/api/favorites/chats").json()["items"]
        assert len(listing) == 1
        assert listing[0] == resp.json()["item"]

    def test_snapshot_survives_upload_deletion(self, alice_client):
        uri = alice_client.post("/api/images/save", json={"kind": "uploads", "dataUrl": data_url(b"orig")}).json()["fileUri"]
        stored = alice_client.post("/api/favorites/add", json={"type": "presets", "item": {"id": "p1", "ref": uri}}).json()
        alice_client.post("/api/images/delete", json={"fileUri": uri})

        assert stored["item"]["ref"] != uri
        assert alice_client.get(stored["item"]["ref"]).content == b"orig"

    def test_malformed_link_does_not_fail_the_save(self, alice_client):
        """An unfetchable URL inside a favorite is kept as is."""
        item = {"id": 2, "links": ["http://xn--/x.png", "https://images.example/cat.png"]}
        resp = alice_client.post("/api/favorites/add", json={"type": "collections", "item": item})
        assert resp.status_code == 200
        links = resp.json()["item"]["links"]
        assert links[0] == "http://xn--/x.png"
        assert links[1].startswith("/files/alice/favorites/collections/2/")

    def test_favorites_not_metered(self, alice_client):
        register_bob(alice_client)
        alice_client.post("/api/favorites/add", json={"type": "collections", "item": {"img": data_url(b"x" * 5000)}})
        assert alice_client.get("/api/storage/usage").json()["usedBytes"] == 0

    def test_delete_favorite(self, alice_client):
        alice_client.post("/api/favorites/add", json={"type": "presets", "item": {"id": 5}})
        alice_client.post("/api/favorites/add", json={"type": "presets", "item": {"id": 6}})
        assert alice_client.delete("/api/favorites/presets/5").json() == {"ok": True}
        assert [i["id"] for i in alice_client.get("/api/favorites/presets").json()["items"]] == [6]

    def test_invalid_type(self, alice_client):
        assert alice_client.get("/api/favorites/images").status_code == 400
        resp = alice_client.post("/api/favorites/add", json={"type": "nope", "item": {}})
        assert resp.json() == {"error": "Invalid type"}

    def test_invalid_item(self, alice_client):
        resp = alice_client.post("/api/favorites/add", json={"type": "chats", "item": "text"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid item"}


# ---------------------------------------------------------------------------
# Admin.
# ---------------------------------------------------------------------------


class TestAdmin:
    """Test /api/admin/*."""

    def test_list_users(self, alice_client):
        register_bob(alice_client)
        login_as(alice_client, "alice", "password1")
        items = alice_client.get("/api/admin/users").json()["items"]
        assert [(u["username"], u["isAdmin"]) for u in items] == [("alice", True), ("bob", False)]

    def test_non_admin_forbidden(self, alice_client):
        register_bob(alice_client)
        assert alice_client.get("/api/admin/users").status_code == 403
        assert alice_client.post("/api/admin/promote/bob").status_code == 403

    def test_anonymous_forbidden(self, test_client):
        assert test_client.get("/api/admin/users").status_code == 403

    def test_promote(self, alice_client):
        register_bob(alice_client)
        login_as(alice_client, "alice", "password1")
        assert alice_client.post("/api/admin/promote/bob").json() == {"ok": True}
        body = login_as(alice_client, "bob", "password2")
        assert body["user"]["isAdmin"] is True

    def test_promote_unknown(self, alice_client):
        assert alice_client.post("/api/admin/promote/nobody").status_code == 404


# ---------------------------------------------------------------------------
# Errors and limits.
# ---------------------------------------------------------------------------


class TestErrors:
    """Test the error envelope and request limits."""

    def test_unknown_route(self, test_client):
        resp = test_client.get("/api/nope")
        assert resp.status_code == 404
        assert "error" in resp.json()

    def test_malformed_body(self, alice_client):
        resp = alice_client.post("/api/images/save", content=b"{not json", headers={"content-type": "application/json"})
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_body_too_large(self, test_config, remote_transport):
        cfg = test_config.model_copy(update={"max_body_bytes": 100})
        with TestClient(create_app(cfg, fetch_transport=remote_transport)) as client:
            resp = client.post("/api/auth/register", json={"username": "alice", "password": "p" * 200})
            assert resp.status_code == 413
            assert resp.json() == {"error": "Body too large"}
