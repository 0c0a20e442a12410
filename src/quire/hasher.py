"""Content and perceptual hashing helpers for images."""

from __future__ import annotations

import hashlib
import string
from dataclasses import dataclass
from typing import Final, Iterable

import numpy as np
from PIL import Image

from quire.imaging import decode_image, downscale_to_fit, luminance, resize
from utils.logging import get_logger

LOGGER = get_logger(__name__)

CONTENT_HASH_ALGO: Final[str] = "sha256-rgb1024-v1"
DHASH_ALGO: Final[str] = "dhash64-v1"
AHASH_ALGO: Final[str] = "ahash1024-v1"

CONTENT_CANVAS_MAX: Final[int] = 1024

_DHASH_WIDTH: Final[int] = 9
_DHASH_HEIGHT: Final[int] = 8
_AHASH_SIZE: Final[int] = 32
_HEX_DIGITS: Final[frozenset[str]] = frozenset(string.hexdigits)


@dataclass(frozen=True)
class ImageHashes:
    """Hashes and upright dimensions computed from one decode of an original file."""

    content_hash: str
    perceptual_hash: str
    width: int
    height: int


def _as_image(data: bytes | Image.Image) -> Image.Image:
    if isinstance(data, Image.Image):
        return data.convert("RGB")
    return decode_image(data)


def _bits_to_hex(bits: Iterable[int]) -> str:
    """Pack a bit sequence MSB-first into lowercase hex, four bits per character."""

    flat = [int(bit) for bit in bits]
    value = 0
    for bit in flat:
        value = (value << 1) | bit
    return f"{value:0{len(flat) // 4}x}"


def _content_hash_of(image: Image.Image) -> str:
    normalized = downscale_to_fit(image, CONTENT_CANVAS_MAX)
    return hashlib.sha256(normalized.tobytes()).hexdigest()


def _difference_hash_of(image: Image.Image) -> str:
    small = luminance(resize(image, (_DHASH_WIDTH, _DHASH_HEIGHT))).astype(np.int16)
    bits = (small[:, :-1] > small[:, 1:]).astype(np.uint8).flatten()
    return _bits_to_hex(bits)


def compute_content_hash(data: bytes | Image.Image) -> str:
    """Compute the content hash for an image.

    The digest covers decoded pixels rather than file bytes: EXIF orientation
    is applied, alpha is flattened onto white and the image is downscaled
    (never upscaled) to fit a 1024×1024 box before SHA-256 runs over the RGB
    buffer. Re-encoding the same picture therefore keeps its hash as long as
    the decoded pixels are identical.

    Args:
        data: Encoded image bytes, or an already decoded upright image.

    Returns:
        Content hash as a 64-character lowercase hexadecimal string.

    Raises:
        ImageDecodeError: If ``data`` cannot be decoded.
    """

    return _content_hash_of(_as_image(data))


def compute_difference_hash(data: bytes | Image.Image) -> str:
    """Compute the 64-bit difference hash (dHash) for an image.

    - Convert to luminance and resize to 9×8 pixels.
    - For each row, set a bit when a pixel is brighter than its right neighbour.
    - The 64 bits are encoded as a 16-character hexadecimal string.
    """

    return _difference_hash_of(_as_image(data))


def compute_average_hash(data: bytes | Image.Image) -> str:
    """Compute the 1024-bit average hash used on canonical-normalized images.

    The image is resized to 32×32, each luminance value is compared with the
    mean of all 1024 values, and the bits are packed into 256 hex characters.
    """

    small = luminance(resize(_as_image(data), (_AHASH_SIZE, _AHASH_SIZE))).astype(np.float64)
    bits = (small > small.mean()).astype(np.uint8).flatten()
    return _bits_to_hex(bits)


def hash_image(data: bytes) -> ImageHashes:
    """Decode ``data`` once and return its content hash, dHash and upright size."""

    image = decode_image(data)
    return ImageHashes(
        content_hash=_content_hash_of(image),
        perceptual_hash=_difference_hash_of(image),
        width=image.width,
        height=image.height,
    )


def hash_similarity(a_hex: str, b_hex: str) -> float:
    """Return the fraction of agreeing bits between two hex-encoded hashes.

    Hashes of different length score 0. Strings that are not hexadecimal are
    logged and also score 0.
    """

    if len(a_hex) != len(b_hex) or not a_hex:
        return 0.0

    if not (set(a_hex) <= _HEX_DIGITS and set(b_hex) <= _HEX_DIGITS):
        LOGGER.error("hash_hex_parse_error", extra={"a": a_hex, "b": b_hex})
        return 0.0

    total_bits = len(a_hex) * 4
    distance = (int(a_hex, 16) ^ int(b_hex, 16)).bit_count()
    return 1.0 - distance / total_bits


__all__ = [
    "AHASH_ALGO",
    "CONTENT_CANVAS_MAX",
    "CONTENT_HASH_ALGO",
    "DHASH_ALGO",
    "ImageHashes",
    "compute_average_hash",
    "compute_content_hash",
    "compute_difference_hash",
    "hash_image",
    "hash_similarity",
]
