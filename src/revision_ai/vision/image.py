"""Image inspection and encoding helpers."""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from PIL import Image, UnidentifiedImageError

from revision_ai.errors import ImageValidationError

MAX_IMAGE_BYTES: Final[int] = 10 * 1024 * 1024
ALLOWED_FORMATS: Final[frozenset[str]] = frozenset({"JPEG", "PNG", "WEBP", "GIF"})

_MIME_BY_FORMAT: Final[dict[str, str]] = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}

_SIGNATURES: Final[tuple[tuple[str, bytes], ...]] = (
    ("JPEG", b"\xff\xd8\xff"),
    ("PNG", b"\x89PNG\r\n\x1a\n"),
    ("GIF", b"GIF87a"),
    ("GIF", b"GIF89a"),
)


@dataclass(frozen=True)
class ImageInfo:
    """Basic facts about an encoded image."""

    width: int
    height: int
    format: str
    size_bytes: int

    @property
    def mime_type(self) -> str:
        return mime_for_format(self.format)


def mime_for_format(fmt: str) -> str:
    return _MIME_BY_FORMAT.get(fmt.upper(), "application/octet-stream")


def sniff_format(data: bytes) -> str | None:
    """Detect the container format from magic bytes."""
    for fmt, sig in _SIGNATURES:
        if data.startswith(sig):
            return fmt
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "WEBP"
    return None


def inspect_image(
    data: bytes,
    *,
    max_bytes: int = MAX_IMAGE_BYTES,
    allowed_formats: frozenset[str] = ALLOWED_FORMATS,
) -> ImageInfo:
    """Validate encoded image bytes and return their dimensions and format.

    Args:
        data: Encoded image bytes.
        max_bytes: Upper bound on the encoded size.
        allowed_formats: Pillow format names accepted by the pipeline.

    Returns:
        The decoded :class:`ImageInfo`.

    Raises:
        ImageValidationError: If the bytes are empty, too large, not an image,
            or in a format outside ``allowed_formats``.
    """
    if not data:
        raise ImageValidationError("Image data is empty")
    if len(data) > max_bytes:
        raise ImageValidationError(
            f"Image is too large: {len(data)} bytes (max {max_bytes})"
        )
    sniffed = sniff_format(data)
    if sniffed is None:
        raise ImageValidationError("Unsupported image format: unrecognized file signature")
    if sniffed not in allowed_formats:
        raise ImageValidationError(f"Unsupported image format: {sniffed}")
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            fmt = (img.format or sniffed).upper()
    except Image.DecompressionBombError as e:
        raise ImageValidationError(f"Image dimensions are too large: {e}") from e
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise ImageValidationError(f"Image data could not be decoded: {e}") from e
    if width <= 0 or height <= 0:
        raise ImageValidationError(f"Image has invalid dimensions {width}x{height}")
    return ImageInfo(width=width, height=height, format=fmt, size_bytes=len(data))


def read_image_bytes(path: Path) -> bytes:
    return Path(path).read_bytes()


def to_data_url(data: bytes, mime_type: str) -> str:
    """Encode bytes as a ``data:`` URL."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def from_data_url(url: str) -> bytes:
    """Decode a ``data:...;base64,`` URL, or a bare base64 string."""
    _, sep, payload = url.partition(";base64,")
    return base64.b64decode(payload if sep else url, validate=True)


def extension_for(data: bytes) -> str:
    """File extension matching the encoded bytes, ``.bin`` when unknown."""
    fmt = sniff_format(data)
    return {"JPEG": ".jpg", "PNG": ".png", "WEBP": ".webp", "GIF": ".gif"}.get(fmt or "", ".bin")
