"""HSV colour profiles used by the visual-profile grouping strategy."""

from __future__ import annotations

from typing import Sequence

import numpy as np
from PIL import Image


def extract_visual_profile(image: Image.Image, bins: int = 16) -> list[float]:
    """Return the concatenated, L1-normalized H, S and V histograms of the centre square.

    Each channel contributes ``bins`` buckets, so the profile has ``3 * bins``
    entries summing to 1. Hue uses degrees in ``[0, 360)``; saturation and
    value of exactly 1.0 fall into the last bucket.
    """

    if bins <= 0:
        raise ValueError("bins must be positive")

    width, height = image.size
    side = min(width, height)
    left = (width - side) // 2
    top = (height - side) // 2
    square = image.convert("RGB").crop((left, top, left + side, top + side))

    rgb = np.asarray(square, dtype=np.float64).reshape(-1, 3) / 255.0
    r, g, b = rgb[:, 0], rgb[:, 1], rgb[:, 2]
    maximum = rgb.max(axis=1)
    minimum = rgb.min(axis=1)
    delta = maximum - minimum

    value = maximum
    saturation = np.divide(delta, maximum, out=np.zeros_like(maximum), where=maximum > 0)

    hue = np.zeros_like(maximum)
    chromatic = delta > 0
    safe_delta = np.where(chromatic, delta, 1.0)
    red_max = chromatic & (maximum == r)
    green_max = chromatic & ~red_max & (maximum == g)
    blue_max = chromatic & ~red_max & ~green_max
    hue[red_max] = ((g - b) / safe_delta)[red_max]
    hue[green_max] = (2.0 + (b - r) / safe_delta)[green_max]
    hue[blue_max] = (4.0 + (r - g) / safe_delta)[blue_max]
    hue = np.mod(hue * 60.0 + 360.0, 360.0)

    def _bucket(values: np.ndarray) -> np.ndarray:
        indices = np.floor(values * bins).astype(np.int64)
        return np.clip(indices, 0, bins - 1)

    histogram = np.concatenate(
        [
            np.bincount(_bucket(hue / 360.0), minlength=bins),
            np.bincount(_bucket(saturation), minlength=bins),
            np.bincount(_bucket(value), minlength=bins),
        ]
    ).astype(np.float64)

    total = histogram.sum()
    if total == 0:
        return histogram.tolist()
    return (histogram / total).tolist()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two profiles; 0 for zero-norm or mismatched vectors."""

    if len(a) != len(b) or not len(a):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


__all__ = ["cosine_similarity", "extract_visual_profile"]
