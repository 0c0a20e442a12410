"""Pillow helpers shared by hashing and artefact derivation."""

from __future__ import annotations

import math
from io import BytesIO

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
from PIL.Image import Resampling

from quire.errors import ImageDecodeError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "imaging"})

WHITE = (255, 255, 255)


def _get_resample_filter() -> Resampling:
    """Return the preferred resample filter compatible with the current Pillow."""

    return Resampling.LANCZOS


def round_half_up(value: float) -> int:
    """Round to the nearest integer with ties going up (``2.5 -> 3``)."""

    return int(math.floor(value + 0.5))


def flatten_on_white(image: Image.Image) -> Image.Image:
    """Return an RGB copy of ``image`` with any transparency composited onto white."""

    has_alpha = image.mode in ("RGBA", "LA", "PA") or (image.mode == "P" and "transparency" in image.info)
    if not has_alpha:
        return image.convert("RGB")

    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, WHITE)
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def decode_image(data: bytes) -> Image.Image:
    """Decode image bytes into an upright RGB image.

    EXIF orientation is applied and alpha is flattened onto white. Bytes that
    Pillow cannot decode raise :class:`ImageDecodeError`.
    """

    try:
        with Image.open(BytesIO(data)) as raw:
            raw.load()
            upright = ImageOps.exif_transpose(raw)
            return flatten_on_white(upright)
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        LOGGER.warning("image_decode_error", extra={"size_bytes": len(data), "error": str(exc)})
        raise ImageDecodeError(f"cannot decode image ({len(data)} bytes): {exc}") from exc


def fit_within(width: int, height: int, max_side: int) -> tuple[int, int]:
    """Return ``(width, height)`` scaled so the larger side is at most ``max_side``.

    Images already inside the bound keep their size; nothing is upscaled.
    """

    largest = max(width, height)
    if largest <= max_side:
        return width, height
    scale = max_side / largest
    return max(1, round_half_up(width * scale)), max(1, round_half_up(height * scale))


def resize(image: Image.Image, size: tuple[int, int]) -> Image.Image:
    if image.size == size:
        return image.copy()
    return image.resize(size, resample=_get_resample_filter())


def downscale_to_fit(image: Image.Image, max_side: int) -> Image.Image:
    return resize(image, fit_within(image.width, image.height, max_side))


def place_on_square(image: Image.Image, side: int) -> tuple[Image.Image, tuple[int, int, int, int]]:
    """Scale ``image`` so its larger side equals ``side`` and centre it on a white square.

    Returns the canvas and the ``(left, top, right, bottom)`` box the image occupies.
    """

    scale = side / max(image.width, image.height)
    width = max(1, round_half_up(image.width * scale))
    height = max(1, round_half_up(image.height * scale))
    left = round_half_up((side - width) / 2)
    top = round_half_up((side - height) / 2)

    canvas = Image.new("RGB", (side, side), WHITE)
    canvas.paste(resize(image.convert("RGB"), (width, height)), (left, top))
    return canvas, (left, top, left + width, top + height)


def luminance(image: Image.Image) -> np.ndarray:
    """Return ``round(0.299R + 0.587G + 0.114B)`` per pixel as a ``uint8`` array."""

    rgb = np.asarray(image.convert("RGB"), dtype=np.float64)
    weighted = rgb[..., 0] * 0.299 + rgb[..., 1] * 0.587 + rgb[..., 2] * 0.114
    return np.clip(np.floor(weighted + 0.5), 0, 255).astype(np.uint8)


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def encode_png(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


__all__ = [
    "WHITE",
    "decode_image",
    "downscale_to_fit",
    "encode_jpeg",
    "encode_png",
    "fit_within",
    "flatten_on_white",
    "luminance",
    "place_on_square",
    "resize",
    "round_half_up",
]
