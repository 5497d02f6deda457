"""
Upstream image fetching.

Requests look like a regular browser image request, which keeps most CDNs
from rate limiting or hotlink-blocking the proxy.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:132.0) Gecko/20100101 Firefox/132.0",
    "Accept": "image/avif,image/webp,image/png,image/svg+xml,image/*;q=0.8,*/*;q=0.5",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "DNT": "1",
    "Upgrade-Insecure-Requests": "1",
}


class FetchError(Exception):
    """Upstream fetch failed; reason goes into the X-Info header"""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class FetchedImage:
    content: bytes
    content_type: str
    status_code: int = 200


def create_httpx_client(timeout: float = 30.0, proxy: Optional[str] = None, **kwargs) -> httpx.Client:
    client_kwargs = {
        "timeout": timeout,
        "follow_redirects": True,
        "headers": DEFAULT_HEADERS,
        **kwargs,
    }
    if proxy:
        client_kwargs["proxy"] = proxy
        logger.info(f"Fetching upstream images through proxy {proxy}")

    return httpx.Client(**client_kwargs)


class ImageFetcher:
    def __init__(self, timeout: float = 30.0, proxy: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        kwargs = {"transport": transport} if transport is not None else {}
        self.client = create_httpx_client(timeout=timeout, proxy=proxy, **kwargs)

    def fetch(self, url: str) -> FetchedImage:
        """GET an upstream image.

        Raises:
            FetchError: transport failure, non-200 status or empty body
        """
        try:
            response = self.client.get(url)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            logger.warning(f"Image fetch failed for {url}: {e}")
            raise FetchError(f"fetch-failed; {e}") from e

        if response.status_code != 200:
            logger.warning(f"Image fetch failed: {response.status_code} for {url}")
            raise FetchError(f"fetch-failed; status={response.status_code}")

        if not response.content:
            raise FetchError("empty-data")

        return FetchedImage(
            content=response.content,
            content_type=response.headers.get("content-type", ""),
            status_code=response.status_code,
        )

    def close(self):
        self.client.close()
