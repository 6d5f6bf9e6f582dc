"""Tests for data-URI helpers and the pre-model resize."""

import base64
import io

import pytest
from PIL import Image

from deskgarden.utils.image import image_to_bytes, resize_image_for_ai, split_data_uri, to_data_uri


def _png_data_uri(width: int, height: int) -> str:
    image = Image.new("RGB", (width, height), color=(200, 180, 150))
    return to_data_uri(image_to_bytes(image, fmt="PNG"), "image/png")


class TestDataUri:
    def test_split_data_uri(self):
        mime_type, data = split_data_uri("data:image/webp;base64," + base64.b64encode(b"abc").decode())
        assert mime_type == "image/webp"
        assert data == b"abc"

    def test_bare_base64_defaults_to_jpeg(self):
        mime_type, data = split_data_uri(base64.b64encode(b"abc").decode())
        assert mime_type == "image/jpeg"
        assert data == b"abc"

    def test_invalid_base64_raises(self):
        with pytest.raises(ValueError):
            split_data_uri("data:image/png;base64,@@@")

    def test_round_trip(self):
        assert split_data_uri(to_data_uri(b"\x89PNG", "image/png")) == ("image/png", b"\x89PNG")


class TestResize:
    def test_large_image_is_downscaled(self):
        resized = resize_image_for_ai(_png_data_uri(2000, 1000), max_size=1280)
        mime_type, data = split_data_uri(resized)
        assert mime_type == "image/jpeg"
        assert Image.open(io.BytesIO(data)).size == (1280, 640)

    def test_small_image_unchanged(self):
        original = _png_data_uri(200, 100)
        assert resize_image_for_ai(original, max_size=1280) == original

    def test_undecodable_image_unchanged(self):
        original = "data:image/png;base64,aGVsbG8="
        assert resize_image_for_ai(original) == original

    def test_rgba_flattened_for_jpeg(self):
        image = Image.new("RGBA", (10, 10), color=(0, 0, 0, 0))
        data = image_to_bytes(image)
        assert Image.open(io.BytesIO(data)).mode == "RGB"
