"""
Resize directive parsing, cache key derivation and resize geometry.

Query directives:
    c / crop    N or WxH. Fill the box, then crop (focus 30% from the top)
    w / width   N or WxH. Width only, or fit inside WxH
    h / height  N. Height only, or combined with a width into a box

Crop wins over w/h. Each request gets a canonical key (c_WxH, w_N, w_WxH,
h_N) which is folded into the integer width key used by the image cache.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from PIL import Image

logger = logging.getLogger(__name__)

MAX_REQUEST_DIMENSION = 99999
HASH_BAND_START = 100000
HASH_BAND_SIZE = 100000

_UINT64_MASK = (1 << 64) - 1
_NUMBER_RE = re.compile(r"[+-]?[0-9]+")

# Fraction of the vertical overflow kept above the crop window
CROP_FOCUS_Y = 0.3


class InvalidParametersError(ValueError):
    """Raised when resize directives cannot be parsed"""


@dataclass(frozen=True)
class ResizeParams:
    width: int = 0
    height: int = 0
    crop: bool = False
    cache_key: str = ""

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 or self.height > 0

    def to_query(self) -> Dict[str, str]:
        """Query directives that parse back into these params"""
        if self.crop:
            return {"c": f"{self.width}x{self.height}"}
        if self.width and self.height:
            return {"w": f"{self.width}x{self.height}"}
        if self.width:
            return {"w": str(self.width)}
        if self.height:
            return {"h": str(self.height)}
        return {}


@dataclass(frozen=True)
class CropPlan:
    scaled_width: int
    scaled_height: int
    x: int
    y: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.x, self.y, self.x + self.width, self.y + self.height)


def _parse_dimension(value: str, message: str) -> int:
    if not _NUMBER_RE.fullmatch(value):
        raise InvalidParametersError(message)
    number = int(value)
    if number <= 0 or number > MAX_REQUEST_DIMENSION:
        raise InvalidParametersError(message)
    return number


def _parse_pair(value: str, format_message: str, width_message: str, height_message: str) -> Tuple[int, int]:
    parts = value.split("x")
    if len(parts) != 2:
        raise InvalidParametersError(format_message)
    return _parse_dimension(parts[0], width_message), _parse_dimension(parts[1], height_message)


def _first(query: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = query.get(name)
        if value:
            return value
    return ""


def clamp_dimensions(width: int, height: int, max_dimension: int) -> Tuple[int, int]:
    """Cap requested dimensions at max_dimension, keeping the aspect ratio of a box"""
    if max_dimension <= 0:
        return width, height

    if width and height:
        scale = min(1.0, max_dimension / width, max_dimension / height)
        if scale >= 1.0:
            return width, height
        return max(1, int(width * scale + 0.5)), max(1, int(height * scale + 0.5))

    return min(width, max_dimension), min(height, max_dimension)


def build_cache_key(width: int, height: int, crop: bool) -> str:
    """Canonical key string for a set of dimensions"""
    if crop:
        return f"c_{width}x{height}"
    if width and height:
        return f"w_{width}x{height}"
    if width:
        return f"w_{width}"
    if height:
        return f"h_{height}"
    return ""


def parse_resize_params(query: Mapping[str, str], max_dimension: int = 0) -> ResizeParams:
    """Parse resize directives from a query mapping.

    Raises:
        InvalidParametersError: malformed or out-of-range dimension
    """
    crop_value = _first(query, "c", "crop")
    if crop_value:
        if "x" in crop_value:
            width, height = _parse_pair(
                crop_value,
                "invalid crop format, use c=100 or c=100x100",
                "invalid crop width",
                "invalid crop height",
            )
        else:
            width = height = _parse_dimension(crop_value, "invalid crop size")

        width, height = clamp_dimensions(width, height, max_dimension)
        return ResizeParams(width, height, True, build_cache_key(width, height, True))

    width = height = 0
    width_value = _first(query, "w", "width")
    height_value = _first(query, "h", "height")

    if width_value:
        if "x" in width_value:
            width, height = _parse_pair(
                width_value,
                "invalid dimension format, use w=100x100",
                "invalid width",
                "invalid height",
            )
        else:
            width = _parse_dimension(width_value, "invalid width parameter")

    if height_value:
        # An explicit height overrides the one from w=WxH
        height = _parse_dimension(height_value, "invalid height parameter")

    width, height = clamp_dimensions(width, height, max_dimension)
    return ResizeParams(width, height, False, build_cache_key(width, height, False))


def hash_band(cache_key: str) -> int:
    """Fold a canonical key into [100000, 199999] with a 64-bit wrapping polynomial hash"""
    h = 0
    for ch in cache_key:
        h = (h * 31 + ord(ch)) & _UINT64_MASK
    return (h & 0x7FFFFFFF) % HASH_BAND_SIZE + HASH_BAND_START


def cache_width(params: ResizeParams) -> int:
    """Width key for the image cache.

    Plain width requests use the literal width so they share rows with
    older width-only clients. Every other shape uses the hash band. 0 is
    the untransformed original.
    """
    if params.height > 0 or params.crop:
        return hash_band(params.cache_key)
    return params.width


def crop_geometry(orig_width: int, orig_height: int, width: int, height: int) -> CropPlan:
    scale = max(width / orig_width, height / orig_height)
    scaled_width = max(width, int(orig_width * scale))
    scaled_height = max(height, int(orig_height * scale))

    x = max(0, (scaled_width - width) // 2)
    y = max(0, int(CROP_FOCUS_Y * (scaled_height - height) + 0.5))
    return CropPlan(scaled_width, scaled_height, x, y, width, height)


def fit_size(orig_width: int, orig_height: int, max_width: int, max_height: int) -> Optional[Tuple[int, int]]:
    """Size that fits inside the box, or None when the image already fits"""
    if orig_width <= max_width and orig_height <= max_height:
        return None

    aspect = orig_width / orig_height
    if aspect > max_width / max_height:
        return max_width, max(1, int(max_width / aspect + 0.5))
    return max(1, int(max_height * aspect + 0.5)), max_height


def resize_image(image: Image.Image, params: ResizeParams) -> Image.Image:
    if not params.has_dimensions:
        return image

    orig_width, orig_height = image.size

    if params.crop:
        plan = crop_geometry(orig_width, orig_height, params.width, params.height)
        logger.debug(
            f"Crop {orig_width}x{orig_height} -> {plan.scaled_width}x{plan.scaled_height}, "
            f"window {plan.width}x{plan.height} at ({plan.x}, {plan.y})"
        )
        scaled = image.resize((plan.scaled_width, plan.scaled_height), Image.Resampling.LANCZOS)
        return scaled.crop(plan.box)

    if params.width and params.height:
        size = fit_size(orig_width, orig_height, params.width, params.height)
        if size is None:
            return image
        return image.resize(size, Image.Resampling.LANCZOS)

    if params.width:
        height = max(1, int(orig_height * params.width / orig_width + 0.5))
        return image.resize((params.width, height), Image.Resampling.LANCZOS)

    width = max(1, int(orig_width * params.height / orig_height + 0.5))
    return image.resize((width, params.height), Image.Resampling.LANCZOS)
