"""
Utility functions for lyricslides.

This module provides helpers shared by the cache and the provider adapters:
    - Filename component sanitization for cache file names
    - Image format detection and validation (Pillow)
    - Human-readable size formatting

Usage:
    from lyricslides.utils import (
        sanitize_component,
        detect_image_format,
        format_size
    )
"""

import re
from io import BytesIO

from PIL import Image, UnidentifiedImageError


# Characters that are invalid in filenames on various operating systems.
# "_" is included because it separates the components of a cache file name.
_INVALID_CHARS_PATTERN = re.compile(r'[<>:"/\\|?*\x00-\x1f_]')
_WHITESPACE_PATTERN = re.compile(r"\s+")

# Per-component limit keeps the full name well under 255 bytes
_MAX_COMPONENT_LENGTH = 60

# Pillow format name -> file extension
IMAGE_EXTENSIONS = {
    "PNG": "png",
    "JPEG": "jpg",
    "WEBP": "webp",
    "GIF": "gif",
    "BMP": "bmp",
}


def sanitize_component(value: str | None, fold_case: bool = False) -> str:
    """
    Sanitize one component of a cache file name.

    Args:
        value: The raw value (song title, artist, model, ...). None is allowed.
        fold_case: Case-fold the result so case variants share one name.

    Returns:
        The sanitized component, "" for empty input.

    Behavior:
        - Replaces invalid characters and "_" with "-"
        - Collapses whitespace runs to a single space
        - Strips leading/trailing whitespace and dots
        - Truncates to a fixed maximum length

    Examples:
        sanitize_component("AC/DC")                        # "AC-DC"
        sanitize_component("Amazing Grace", fold_case=True)  # "amazing grace"
    """
    if not value:
        return ""

    result = _INVALID_CHARS_PATTERN.sub("-", value)
    result = _WHITESPACE_PATTERN.sub(" ", result).strip(" .")

    if fold_case:
        result = result.casefold()

    if len(result) > _MAX_COMPONENT_LENGTH:
        result = result[:_MAX_COMPONENT_LENGTH].rstrip(" .")

    return result


def detect_image_format(data: bytes) -> str | None:
    """
    Identify image bytes with Pillow.

    Args:
        data: Raw file content.

    Returns:
        Pillow format name ("PNG", "JPEG", ...) or None if the bytes are
        not a decodable image.
    """
    if not data:
        return None

    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            return img.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None


def image_extension(image_format: str | None) -> str:
    """Map a Pillow format name to a file extension, defaulting to png."""
    if image_format is None:
        return "png"
    return IMAGE_EXTENSIONS.get(image_format.upper(), image_format.lower())


def format_size(num_bytes: int) -> str:
    """Human-readable byte size, e.g. 1536 -> "1.5 KB"."""
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{int(size)} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


__all__ = [
    "IMAGE_EXTENSIONS",
    "sanitize_component",
    "detect_image_format",
    "image_extension",
    "format_size",
]
