"""
Resize request pipeline.

cache lookup -> domain gate -> upstream fetch -> decode -> resize -> encode,
with cache writes and referer tracking pushed to the background pool.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
from urllib.parse import unquote_plus

from .cache_store import ImageCacheStore
from .encoder import (
    CONTENT_TYPES,
    DecodeError,
    FormatEncoder,
    decode_image,
    generate_error_svg,
    is_svg,
)
from .fetcher import FetchError, ImageFetcher
from .referers import RefererTracker, extract_base_domain
from .resize import InvalidParametersError, ResizeParams, cache_width, parse_resize_params, resize_image
from .retry import StoreUnavailableError

logger = logging.getLogger(__name__)

SVG_MEDIA_TYPE = CONTENT_TYPES["svg"]

# "%" not followed by two hex digits
BAD_ESCAPE_RE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class InvalidSourceError(ValueError):
    pass


@dataclass
class ResizeResponse:
    status_code: int
    body: bytes
    media_type: str = "text/plain; charset=utf-8"
    headers: Dict[str, str] = field(default_factory=dict)


def normalize_source_url(src: str) -> str:
    """Decode once more (query rules, "+" is a space) and repair a scheme that lost one of its slashes.

    Raises InvalidSourceError on a malformed percent escape.
    """
    bad = BAD_ESCAPE_RE.search(src)
    if bad:
        escape = src[bad.start():bad.start() + 3]
        raise InvalidSourceError(f'invalid URL escape "{escape}"')

    url = unquote_plus(src)
    for scheme in ("https:/", "http:/"):
        if url.startswith(scheme) and not url.startswith(scheme + "/"):
            return url.replace(scheme, scheme + "/", 1)
    return url


def wants_fresh_copy(headers: Mapping[str, str]) -> bool:
    cache_control = headers.get("cache-control", "")
    return (
        "no-cache" in cache_control
        or "no-store" in cache_control
        or headers.get("pragma", "") == "no-cache"
    )


class ResizeService:
    def __init__(self, cache_store: ImageCacheStore, referers: RefererTracker, fetcher: ImageFetcher,
                 encoder: FormatEncoder, runner, max_age: int = 86400, max_dimension: int = 0):
        self.cache_store = cache_store
        self.referers = referers
        self.fetcher = fetcher
        self.encoder = encoder
        self.runner = runner
        self.max_age = max_age
        self.max_dimension = max_dimension

    @property
    def cache_control(self) -> str:
        return f"public, max-age={self.max_age}"

    def handle(self, src: Optional[str], query: Mapping[str, str], headers: Mapping[str, str]) -> ResizeResponse:
        headers = {key.lower(): value for key, value in headers.items()}

        if not src:
            return ResizeResponse(400, b"Missing src parameter")

        try:
            url = normalize_source_url(src)
        except InvalidSourceError as e:
            return ResizeResponse(400, f"Invalid src URL: {e}".encode("utf-8"))

        referer = headers.get("referer", "")
        self.runner.submit(self.referers.track, referer, description="referer tracking")

        try:
            params = parse_resize_params(query, self.max_dimension)
        except InvalidParametersError as e:
            return ResizeResponse(400, f"Invalid parameters: {e}".encode("utf-8"))

        width_key = cache_width(params)

        skip_cache = wants_fresh_copy(headers)
        if skip_cache:
            logger.info(
                f"Skipping cache due to client headers (Cache-Control: {headers.get('cache-control', '')}, "
                f"Pragma: {headers.get('pragma', '')})"
            )
        else:
            cached = self._cached(url, width_key)
            if cached is not None:
                logger.debug(f"Serving cached image for {url} (params: {params.cache_key})")
                return ResizeResponse(200, cached.data, cached.content_type, {
                    "Cache-Control": self.cache_control,
                    "X-Cache": "HIT",
                    "X-Info": f"from-cache; params={params.cache_key}; format={cached.response_format}",
                })

        domain = extract_base_domain(referer)
        if self._domain_disabled(domain):
            return ResizeResponse(
                403, f"Domain '{domain}' is forbidden from using this resize service".encode("utf-8")
            )

        try:
            fetched = self.fetcher.fetch(url)
        except FetchError as e:
            return self._placeholder(params, e.reason)

        if is_svg(fetched.content_type, url):
            return self._passthrough_svg(url, fetched.content)

        try:
            decoded = decode_image(fetched.content)
        except DecodeError as e:
            return self._placeholder(params, f"decode-failed; {e}")

        self.runner.submit(
            self.cache_store.put_original, url, fetched.content, fetched.content_type, decoded.format,
            description="cache original image",
        )

        resized = decoded.map(lambda frame: resize_image(frame, params))
        encoded = self.encoder.encode(resized)

        if params.has_dimensions:
            self.runner.submit(
                self.cache_store.put, url, width_key, fetched.content, encoded.data,
                encoded.content_type, encoded.format,
                description="cache resized image",
            )

        return ResizeResponse(200, encoded.data, encoded.content_type, {
            "Cache-Control": self.cache_control,
            "X-Cache": "BYPASS" if skip_cache else "MISS",
            "X-Info": f"fresh-fetch; params={params.cache_key}; input={decoded.format}; output={encoded.format}",
        })

    def _cached(self, url: str, width_key: int):
        try:
            return self.cache_store.get(url, width_key)
        except StoreUnavailableError as e:
            logger.error(f"Error checking cache: {e}")
            return None

    def _domain_disabled(self, domain: str) -> bool:
        try:
            return self.referers.is_disabled(domain)
        except StoreUnavailableError as e:
            logger.error(f"Error checking domain status: {e}")
            return False

    def _placeholder(self, params: ResizeParams, reason: str) -> ResizeResponse:
        return ResizeResponse(200, generate_error_svg(params.width, params.height), SVG_MEDIA_TYPE, {
            "X-Cache": "MISS",
            "X-Info": f"error; {reason}",
        })

    def _passthrough_svg(self, url: str, data: bytes) -> ResizeResponse:
        self.runner.submit(
            self.cache_store.put_original, url, data, SVG_MEDIA_TYPE, "svg",
            description="cache original svg",
        )
        return ResizeResponse(200, data, SVG_MEDIA_TYPE, {
            "Cache-Control": self.cache_control,
            "X-Cache": "MISS",
            "X-Info": "fresh-fetch; format=svg; no-manipulation",
        })
