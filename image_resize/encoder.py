"""
Image decoding and output encoding.

Output policy: GIF stays GIF (animation preserved), everything else is
re-encoded as lossy WebP. When the WebP encoder fails the image falls back
to its input format (JPEG or PNG), or JPEG for anything else.
"""

import io
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

from PIL import Image, ImageOps, ImageSequence

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
}

ERROR_SVG_TEMPLATE = """<svg width="{width}" height="{height}" xmlns="http://www.w3.org/2000/svg">
  <rect width="100%" height="100%" fill="#eeeeee"/>
  <text x="50%" y="50%" text-anchor="middle" dominant-baseline="middle" fill="#999999" font-family="Arial, sans-serif" font-size="16">
    Image not available
  </text>
</svg>"""


class DecodeError(Exception):
    """Raised when upstream bytes are not a decodable image"""


@dataclass
class DecodedImage:
    frames: List[Image.Image]
    format: str
    durations: List[int] = field(default_factory=list)
    loop: Optional[int] = None

    @property
    def is_animated(self) -> bool:
        return len(self.frames) > 1

    @property
    def size(self):
        return self.frames[0].size

    def map(self, transform: Callable[[Image.Image], Image.Image]) -> "DecodedImage":
        """Apply a transform to every frame"""
        return replace(self, frames=[transform(frame) for frame in self.frames])


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    content_type: str
    format: str


def is_svg(content_type: str, url: str) -> bool:
    return "svg" in (content_type or "") or url.lower().endswith(".svg")


def generate_error_svg(width: int = 0, height: int = 0) -> bytes:
    """Grey "Image not available" placeholder, 400x300 unless a size was requested"""
    if width == 0 and height == 0:
        width, height = 400, 300
    elif width == 0:
        width = height
    elif height == 0:
        height = width

    return ERROR_SVG_TEMPLATE.format(width=width, height=height).encode("utf-8")


def _normalize_mode(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA", "L"):
        return image
    if image.mode in ("P", "PA", "LA") or "transparency" in image.info:
        return image.convert("RGBA")
    return image.convert("RGB")


def decode_image(data: bytes) -> DecodedImage:
    """Decode upstream bytes into frames.

    Raises:
        DecodeError: the data is corrupt or in an unsupported format
    """
    try:
        image = Image.open(io.BytesIO(data))
        image_format = (image.format or "").lower()
        if image_format == "mpo":
            image_format = "jpeg"

        if image_format == "gif":
            # Seeking past frame 0 drops the loop count from info
            loop = image.info.get("loop")
            frames = []
            durations = []
            for frame in ImageSequence.Iterator(image):
                frames.append(frame.convert("RGBA"))
                durations.append(frame.info.get("duration", 100))
            return DecodedImage(frames, image_format, durations, loop)

        image.load()
        image = ImageOps.exif_transpose(image)
        return DecodedImage([_normalize_mode(image)], image_format)
    except Image.DecompressionBombError as e:
        raise DecodeError(str(e)) from e
    except (OSError, ValueError, SyntaxError) as e:
        raise DecodeError(str(e)) from e


class FormatEncoder:
    def __init__(self, quality: int = 90):
        self.quality = quality

    def encode(self, decoded: DecodedImage) -> EncodedImage:
        if decoded.format == "gif":
            return self._encode_gif(decoded)

        image = decoded.frames[0]
        try:
            return self._encode_webp(image)
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"WebP encoding failed, falling back to {decoded.format or 'jpeg'}: {e}")

        if decoded.format == "png":
            return self._encode_png(image)
        return self._encode_jpeg(image)

    def _encode_webp(self, image: Image.Image) -> EncodedImage:
        buffer = io.BytesIO()
        image.save(buffer, "WEBP", quality=self.quality, lossless=False)
        return EncodedImage(buffer.getvalue(), CONTENT_TYPES["webp"], "webp")

    def _encode_jpeg(self, image: Image.Image) -> EncodedImage:
        if image.mode in ("RGBA", "LA"):
            # JPEG has no alpha channel, flatten onto white
            background = Image.new("RGB", image.size, "white")
            background.paste(image, mask=image.split()[-1])
            image = background
        elif image.mode not in ("RGB", "L"):
            image = image.convert("RGB")

        buffer = io.BytesIO()
        image.save(buffer, "JPEG", quality=self.quality)
        return EncodedImage(buffer.getvalue(), CONTENT_TYPES["jpeg"], "jpeg")

    def _encode_png(self, image: Image.Image) -> EncodedImage:
        buffer = io.BytesIO()
        image.save(buffer, "PNG")
        return EncodedImage(buffer.getvalue(), CONTENT_TYPES["png"], "png")

    def _encode_gif(self, decoded: DecodedImage) -> EncodedImage:
        buffer = io.BytesIO()
        first, rest = decoded.frames[0], decoded.frames[1:]

        if decoded.is_animated:
            options = {"save_all": True, "append_images": rest, "duration": decoded.durations}
            if decoded.loop is not None:
                options["loop"] = decoded.loop
            first.save(buffer, "GIF", **options)
        else:
            first.save(buffer, "GIF")

        return EncodedImage(buffer.getvalue(), CONTENT_TYPES["gif"], "gif")
