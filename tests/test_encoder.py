import io

import pytest
from unittest.mock import patch
from PIL import Image

from image_resize.encoder import (
    DecodeError,
    FormatEncoder,
    decode_image,
    generate_error_svg,
    is_svg,
)
from image_resize.resize import parse_resize_params, resize_image

from conftest import make_animated_gif, make_image_bytes


@pytest.fixture
def encoder():
    return FormatEncoder(quality=80)


class TestDecodeImage:

    def test_png(self):
        decoded = decode_image(make_image_bytes("PNG"))
        assert decoded.format == "png"
        assert decoded.size == (400, 300)
        assert not decoded.is_animated

    def test_jpeg(self):
        assert decode_image(make_image_bytes("JPEG")).format == "jpeg"

    def test_palette_png_is_normalized(self):
        decoded = decode_image(make_image_bytes("PNG", mode="P", color=3))
        assert decoded.frames[0].mode == "RGBA"

    def test_animated_gif_keeps_frames(self):
        decoded = decode_image(make_animated_gif())
        assert decoded.format == "gif"
        assert decoded.is_animated
        assert len(decoded.frames) == 3
        assert len(decoded.durations) == 3
        assert decoded.loop == 0

    def test_corrupt_data(self):
        with pytest.raises(DecodeError):
            decode_image(b"definitely not an image")

    def test_truncated_data(self):
        data = make_image_bytes("PNG")
        with pytest.raises(DecodeError):
            decode_image(data[:60])


class TestFormatEncoder:

    def test_png_becomes_webp(self, encoder):
        encoded = encoder.encode(decode_image(make_image_bytes("PNG")))
        assert encoded.format == "webp"
        assert encoded.content_type == "image/webp"
        assert Image.open(io.BytesIO(encoded.data)).format == "WEBP"

    def test_gif_stays_gif(self, encoder):
        encoded = encoder.encode(decode_image(make_animated_gif()))
        assert encoded.format == "gif"
        assert encoded.content_type == "image/gif"
        output = Image.open(io.BytesIO(encoded.data))
        assert output.format == "GIF"
        assert getattr(output, "n_frames", 1) == 3

    def test_still_gif_stays_gif(self, encoder):
        encoded = encoder.encode(decode_image(make_image_bytes("GIF", size=(20, 20))))
        assert encoded.format == "gif"

    def test_resized_animation_keeps_frames(self, encoder):
        decoded = decode_image(make_animated_gif(size=(60, 40)))
        params = parse_resize_params({"c": "20"})
        resized = decoded.map(lambda frame: resize_image(frame, params))
        output = Image.open(io.BytesIO(encoder.encode(resized).data))
        assert output.size == (20, 20)
        assert getattr(output, "n_frames", 1) == 3

    def test_png_fallback_when_webp_fails(self, encoder):
        with patch.object(FormatEncoder, "_encode_webp", side_effect=OSError("encoder unavailable")):
            encoded = encoder.encode(decode_image(make_image_bytes("PNG", mode="RGBA", color=(1, 2, 3, 100))))
        assert encoded.format == "png"
        assert encoded.content_type == "image/png"
        assert Image.open(io.BytesIO(encoded.data)).mode == "RGBA"

    def test_jpeg_fallback_when_webp_fails(self, encoder):
        with patch.object(FormatEncoder, "_encode_webp", side_effect=OSError("encoder unavailable")):
            encoded = encoder.encode(decode_image(make_image_bytes("JPEG")))
        assert encoded.format == "jpeg"
        assert encoded.content_type == "image/jpeg"

    def test_other_formats_fall_back_to_jpeg(self, encoder):
        with patch.object(FormatEncoder, "_encode_webp", side_effect=ValueError("unsupported")):
            encoded = encoder.encode(decode_image(make_image_bytes("BMP", size=(30, 30))))
        assert encoded.format == "jpeg"
        assert Image.open(io.BytesIO(encoded.data)).format == "JPEG"


class TestErrorSvg:

    def test_default_size(self):
        svg = generate_error_svg(0, 0).decode()
        assert 'width="400" height="300"' in svg
        assert "Image not available" in svg

    def test_requested_size(self):
        assert 'width="120" height="80"' in generate_error_svg(120, 80).decode()

    def test_missing_side_copies_other(self):
        assert 'width="50" height="50"' in generate_error_svg(50, 0).decode()
        assert 'width="70" height="70"' in generate_error_svg(0, 70).decode()


class TestIsSvg:

    def test_content_type(self):
        assert is_svg("image/svg+xml; charset=utf-8", "https://example.com/logo")

    def test_extension(self):
        assert is_svg("", "https://example.com/LOGO.SVG")

    def test_raster(self):
        assert not is_svg("image/png", "https://example.com/photo.png")
