"""Bounded remote downloads for ``http(s)://`` image references.

A fetch follows at most ``max_redirects`` redirects and streams the body,
aborting as soon as more than ``max_bytes`` have arrived.  No explicit timeout
is configured beyond httpx's defaults, and nothing is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from banana.core.errors import DownloadTooLargeError, RemoteFetchError

logger = logging.getLogger(__name__)


def is_http_url(value: object) -> bool:
    return isinstance(value, str) and (value.startswith("http://") or value.startswith("https://"))


@dataclass(frozen=True)
class FetchedResource:
    content: bytes
    content_type: str

    @property
    def mime(self) -> str:
        """Bare, lower-cased MIME type without parameters."""
        return self.content_type.split(";")[0].strip().lower()

    @property
    def is_image(self) -> bool:
        return self.mime.startswith("image/")


class RemoteFetcher:
    """Download remote resources with a byte cap and a redirect cap.

    Args:
        max_bytes: Largest body accepted.
        max_redirects: Redirect hops followed before giving up.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        max_bytes: int,
        max_redirects: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_bytes = max_bytes
        self.max_redirects = max_redirects
        self.transport = transport

    async def fetch(self, url: str) -> FetchedResource:
        """Fetch *url*.

        Raises:
            RemoteFetchError: Not an http(s) URL, non-2xx status, transport
                failure, or too many redirects.
            DownloadTooLargeError: The body exceeded ``max_bytes``.
        """
        if not is_http_url(url):
            raise RemoteFetchError(f"Not an http(s) URL: {url[:80]}")

        async with httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=self.max_redirects,
            transport=self.transport,
        ) as client:
            try:
                async with client.stream("GET", url) as response:
                    if not response.is_success:
                        raise RemoteFetchError(f"HTTP {response.status_code}")

                    chunks: list[bytes] = []
                    total = 0
                    async for chunk in response.aiter_bytes():
                        total += len(chunk)
                        if total > self.max_bytes:
                            # Leaving the stream context closes the connection.
                            raise DownloadTooLargeError("Download too large")
                        chunks.append(chunk)

                    content_type = response.headers.get("content-type", "")
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                raise RemoteFetchError(f"Fetch failed: {e}") from e
            except ValueError as e:
                # Raised while parsing a malformed host (idna.IDNAError, UnicodeError).
                raise RemoteFetchError(f"Invalid URL: {e}") from e

        logger.debug(f"Fetched {url} ({total} bytes, {content_type or 'no content-type'})")
        return FetchedResource(content=b"".join(chunks), content_type=content_type)
