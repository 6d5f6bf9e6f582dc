"""Data-URI and resize helpers for images sent to Gemini."""

from __future__ import annotations

import base64
import binascii
import io
import re

import structlog
from PIL import Image

logger = structlog.get_logger()

DEFAULT_MIME_TYPE = "image/jpeg"
JPEG_QUALITY = 90

_DATA_URI_RE = re.compile(r"^data:(image/[a-z0-9.+-]+);base64,", re.IGNORECASE)


def split_data_uri(data_uri: str) -> tuple[str, bytes]:
    """Split a base64 data URI (or bare base64) into (mime_type, raw bytes).

    Raises ValueError when the payload is not valid base64.
    """
    match = _DATA_URI_RE.match(data_uri)
    mime_type = match.group(1).lower() if match else DEFAULT_MIME_TYPE
    payload = data_uri.split(",", 1)[1] if "," in data_uri else data_uri
    try:
        return mime_type, base64.b64decode(payload, validate=True)
    except binascii.Error as exc:
        raise ValueError("image is not valid base64") from exc


def to_data_uri(data: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def image_to_bytes(image: Image.Image, fmt: str = "JPEG", quality: int = JPEG_QUALITY) -> bytes:
    """Encode a PIL Image; JPEG output is flattened to RGB first."""
    buf = io.BytesIO()
    if fmt.upper() == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.save(buf, format=fmt, quality=quality)
    return buf.getvalue()


def resize_image_for_ai(data_uri: str, max_size: int = 1280) -> str:
    """Downscale so the longest side is at most `max_size`, re-encoded as JPEG.

    Images already small enough, and anything that fails to decode, are
    returned unchanged.
    """
    try:
        _, raw = split_data_uri(data_uri)
        img = Image.open(io.BytesIO(raw))
        img.load()  # Force full decode to catch truncation
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning("image_resize_skipped", error=str(exc))
        return data_uri

    width, height = img.size
    scale = min(max_size / width, max_size / height, 1.0)
    if scale >= 1.0:
        return data_uri

    resized = img.resize((max(1, round(width * scale)), max(1, round(height * scale))), Image.LANCZOS)
    logger.info("image_resized", before=f"{width}x{height}", after=f"{resized.width}x{resized.height}")
    return to_data_uri(image_to_bytes(resized), DEFAULT_MIME_TYPE)
