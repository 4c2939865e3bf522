"""Typed errors raised by the storage core.

Every error carries the HTTP status the API layer should answer with.  Core
helpers raise these and never translate them; ``banana.api.main`` catches them
at the request boundary and renders ``{"error": message}``.
"""


class BananaError(Exception):
    """Base class for all expected, user-facing failures."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BananaError):
    """Bad input shape or constraint (invalid username, missing dataUrl...)."""

    status_code = 400


class AuthError(BananaError):
    """Missing, invalid or expired credentials."""

    status_code = 401


class ForbiddenError(BananaError):
    """Authenticated, but not allowed to touch the resource."""

    status_code = 403


class NotFoundError(BananaError):
    status_code = 404


class ConflictError(BananaError):
    """Resource already exists (duplicate username)."""

    status_code = 409


class PayloadTooLargeError(BananaError):
    status_code = 413


class QuotaExceededError(BananaError):
    """Write would push the user's gallery past its quota."""

    status_code = 507


class RemoteFetchError(BananaError):
    """Remote image could not be fetched (HTTP error, transport error, redirects)."""

    status_code = 502


class DownloadTooLargeError(RemoteFetchError):
    status_code = 413
