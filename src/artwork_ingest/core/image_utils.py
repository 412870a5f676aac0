"""Image and object-key utilities for the ingestion pipeline."""

import io
import re
from typing import Dict, Optional, Tuple

from PIL import Image

DERIVATIVE_SUFFIXES: Dict[str, str] = {
    "thumbnail": ".thumb.jpg",
    "medium": ".medium.jpg",
    "manifest": ".manifest.json",
}

_CONTENT_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_FILENAME_LENGTH = 100


def sniff_format(data: bytes) -> Optional[str]:
    """
    Identify the image container from its leading magic bytes.

    Args:
        data: Raw object bytes

    Returns:
        "JPEG", "PNG", "WEBP" or "TIFF", or None for anything else
    """
    if data[:3] == b"\xff\xd8\xff":
        return "JPEG"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "PNG"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "WEBP"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return "TIFF"
    return None


def normalize_content_type(content_type: str) -> str:
    """Lower-case a MIME type, drop parameters and fold common aliases."""
    base = content_type.split(";", 1)[0].strip().lower()
    return _CONTENT_TYPE_ALIASES.get(base, base)


def sanitize_file_name(file_name: str) -> str:
    """
    Reduce a client-supplied file name to a safe final key segment.

    Directory components are dropped so a name can never escape its
    owner's namespace.
    """
    base = re.split(r"[\\/]", file_name or "")[-1]
    cleaned = _UNSAFE_FILENAME_CHARS.sub("-", base).lstrip(".-")
    cleaned = cleaned[:_MAX_FILENAME_LENGTH]
    return cleaned or "upload"


def build_object_key(prefix: str, owner_id: str, token: str, file_name: str) -> str:
    """
    Build an owner-namespaced source key.

    Args:
        prefix: Storage prefix for raw uploads (may be empty)
        owner_id: Owner the ticket is issued to
        token: Per-ticket unique token
        file_name: Client-declared file name

    Returns:
        Key of the form ``<prefix>/<owner_id>/<token>/<file_name>``
    """
    relative_key = f"{owner_id}/{token}/{sanitize_file_name(file_name)}"
    if prefix:
        return f"{prefix.strip('/')}/{relative_key}"
    return relative_key


def derivative_key(source_key: str, kind: str) -> str:
    """
    Calculate the storage key of a derivative from its source key.

    Args:
        source_key: Key of the uploaded original
        kind: One of "thumbnail", "medium", "manifest"

    Returns:
        Derivative key

    Raises:
        ValueError: If kind is unknown
    """
    try:
        return f"{source_key}{DERIVATIVE_SUFFIXES[kind]}"
    except KeyError:
        raise ValueError(f"Unknown derivative kind: {kind}") from None


def derivative_keys(source_key: str) -> Dict[str, str]:
    """All derivative keys for a source key, by kind."""
    return {kind: derivative_key(source_key, kind) for kind in DERIVATIVE_SUFFIXES}


def center_crop_box(width: int, height: int) -> Tuple[int, int, int, int]:
    """Largest centered square; the longer axis is trimmed equally on both sides."""
    side = min(width, height)
    left = (width - side) // 2
    top = (height - side) // 2
    return (left, top, left + side, top + side)


def bounded_dimensions(width: int, height: int, max_edge: int) -> Tuple[int, int]:
    """
    Scale (width, height) so the long axis is at most ``max_edge``.

    Never upscales. Rounds half up with integer arithmetic so the result is
    identical on every platform.
    """
    if max(width, height) <= max_edge:
        return (width, height)
    if width >= height:
        scaled = (height * max_edge * 2 + width) // (2 * width)
        return (max_edge, max(1, scaled))
    scaled = (width * max_edge * 2 + height) // (2 * height)
    return (max(1, scaled), max_edge)


def flatten_to_rgb(
    img: "Image.Image", background: Tuple[int, int, int] = (255, 255, 255)
) -> "Image.Image":
    """
    Convert any decoded mode to 8-bit RGB.

    Transparent pixels are composited onto ``background``; 16/32-bit
    greyscale is scaled down to 8 bits.
    """
    if img.mode in ("I;16", "I;16B", "I;16L", "I;16N"):
        img = img.convert("I")
    if img.mode == "I":
        img = img.point(lambda v: v * (1 / 256)).convert("L")

    has_alpha = img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )
    if has_alpha:
        rgba = img.convert("RGBA")
        canvas = Image.new("RGB", rgba.size, background)
        canvas.paste(rgba, mask=rgba.getchannel("A"))
        return canvas
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def encode_jpeg(img: "Image.Image", quality: int, progressive: bool = False) -> bytes:
    """Encode an RGB image as (optionally progressive) JPEG without metadata."""
    output_stream = io.BytesIO()
    img.save(
        output_stream,
        format="JPEG",
        quality=quality,
        optimize=True,
        progressive=progressive,
    )
    return output_stream.getvalue()
