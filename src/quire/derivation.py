"""Deterministic derivation of cached image artefacts.

Every derivative is built from a bounded *working* image rather than the
original file, so the original never has to be kept around:

    original bytes  -> working    (work::<hash>::v1_2048)
    working + prep  -> prepared   (prep::<hash>::v1_2048)
    prepared        -> canonical  (norm::<hash>::v3_from_working)
    working         -> thumbnail  (thumb::<hash>::v2_from_working)

The cache is disposable. Clearing it costs recomputation, never correctness,
except for the working tier which needs the original bytes to rebuild.
"""

from __future__ import annotations

import math
from io import BytesIO
from threading import Lock
from typing import Dict, Final, Optional

from PIL import Image
from PIL.Image import Transform, Transpose

from quire.artifact_store import ArtifactCache, ArtifactTier
from quire.errors import (
    ImageDecodeError,
    PreparedImageMissingError,
    StaleDerivationError,
    WorkingImageMissingError,
)
from quire.hasher import compute_average_hash
from quire.imaging import (
    WHITE,
    decode_image,
    downscale_to_fit,
    encode_jpeg,
    encode_png,
    luminance,
    place_on_square,
)
from quire.models import Preparation
from utils.logging import get_logger


LOGGER = get_logger(__name__, extra={"component": "derivation"})

WORKING_VERSION: Final[str] = "v1_2048"
PREPARED_VERSION: Final[str] = WORKING_VERSION
NORMALIZED_VERSION: Final[str] = "v3_from_working"
THUMBNAIL_VERSION: Final[str] = "v2_from_working"

WORKING_MAX_SIDE: Final[int] = 2048
CANONICAL_SIDE: Final[int] = 512
THUMBNAIL_SIDE: Final[int] = 256

WORKING_JPEG_QUALITY: Final[int] = 90
THUMBNAIL_JPEG_QUALITY: Final[int] = 80

_QUARTER_TURNS: Final[Dict[int, Optional[Transpose]]] = {
    0: None,
    90: Transpose.ROTATE_270,
    180: Transpose.ROTATE_180,
    270: Transpose.ROTATE_90,
}


def _open_blob(blob: bytes) -> Image.Image:
    """Open a blob this module wrote earlier; no EXIF handling is needed."""

    try:
        with Image.open(BytesIO(blob)) as raw:
            return raw.convert("RGB")
    except OSError as exc:
        raise ImageDecodeError(f"cannot decode cached artefact: {exc}") from exc


def build_working(original: bytes) -> bytes:
    """Downscale an original (never upscale) so its larger side is at most 2048px."""

    image = decode_image(original)
    return encode_jpeg(downscale_to_fit(image, WORKING_MAX_SIDE), WORKING_JPEG_QUALITY)


def rotated_canvas_size(width: int, height: int, rotation: float) -> tuple[int, int]:
    """Return the bounding canvas of a ``width``×``height`` image rotated by ``rotation`` degrees."""

    radians = math.radians(rotation)
    sin = abs(math.sin(radians))
    cos = abs(math.cos(radians))
    canvas_width = math.floor(width * cos + height * sin + 1e-9)
    canvas_height = math.floor(width * sin + height * cos + 1e-9)
    return max(1, canvas_width), max(1, canvas_height)


def _rotate(image: Image.Image, rotation: float) -> Image.Image:
    """Rotate clockwise (on screen) about the centre, filling uncovered corners white."""

    normalized = rotation % 360
    if float(normalized).is_integer() and int(normalized) in _QUARTER_TURNS:
        method = _QUARTER_TURNS[int(normalized)]
        return image.copy() if method is None else image.transpose(method)

    out_width, out_height = rotated_canvas_size(image.width, image.height, rotation)
    radians = math.radians(rotation)
    cos = math.cos(radians)
    sin = math.sin(radians)

    # Inverse mapping: for each output pixel, where to sample in the source.
    cx_in, cy_in = image.width / 2, image.height / 2
    cx_out, cy_out = out_width / 2, out_height / 2
    coefficients = (
        cos,
        sin,
        cx_in - cos * cx_out - sin * cy_out,
        -sin,
        cos,
        cy_in + sin * cx_out - cos * cy_out,
    )
    return image.transform(
        (out_width, out_height),
        Transform.AFFINE,
        coefficients,
        resample=Image.Resampling.BICUBIC,
        fillcolor=WHITE,
    )


def apply_preparation(image: Image.Image, preparation: Preparation) -> Image.Image:
    """Rotate ``image`` and crop it by the preparation's fractional rectangle."""

    rotated = _rotate(image.convert("RGB"), preparation.rotation)
    width, height = rotated.size
    rect = preparation.rect

    left = min(int(rect.x * width), width - 1)
    top = min(int(rect.y * height), height - 1)
    crop_width = max(1, int(rect.width * width))
    crop_height = max(1, int(rect.height * height))
    right = min(width, left + crop_width)
    bottom = min(height, top + crop_height)
    return rotated.crop((left, top, right, bottom))


def build_prepared(working: bytes, preparation: Preparation) -> bytes:
    return encode_jpeg(apply_preparation(_open_blob(working), preparation), WORKING_JPEG_QUALITY)


def build_canonical(prepared: bytes) -> bytes:
    """Centre the prepared image on a 512px white square and store its luminance as PNG."""

    canvas, _ = place_on_square(_open_blob(prepared), CANONICAL_SIDE)
    # White padding maps to 255, so converting the whole canvas equals converting the occupied region.
    return encode_png(Image.fromarray(luminance(canvas)))


def build_thumbnail(working: bytes) -> bytes:
    canvas, _ = place_on_square(_open_blob(working), THUMBNAIL_SIDE)
    return encode_jpeg(canvas, THUMBNAIL_JPEG_QUALITY)


class DerivationPipeline:
    """Build, cache and invalidate the derivative tiers for content hashes.

    Preparation confirmations for the same content hash are serialised through
    a generation counter: :meth:`begin_preparation` and :meth:`invalidate_prepared`
    advance it, and a derivation started under an older generation is
    discarded instead of overwriting a newer result.
    """

    def __init__(self, cache: ArtifactCache) -> None:
        self._cache = cache
        self._generations: Dict[str, int] = {}
        self._lock = Lock()

    @property
    def cache(self) -> ArtifactCache:
        return self._cache

    def current_generation(self, content_hash: str) -> int:
        with self._lock:
            return self._generations.get(content_hash, 0)

    def begin_preparation(self, content_hash: str) -> int:
        with self._lock:
            generation = self._generations.get(content_hash, 0) + 1
            self._generations[content_hash] = generation
            return generation

    def _put_current(
        self, tier: ArtifactTier, content_hash: str, version: str, blob: bytes, generation: Optional[int]
    ) -> None:
        """Store ``blob`` unless ``generation`` has been superseded; check and write hold the lock together."""

        if generation is None:
            self._cache.put(tier, content_hash, version, blob)
            return
        with self._lock:
            current = self._generations.get(content_hash, 0)
            if generation >= current:
                self._cache.put(tier, content_hash, version, blob)
                return
            LOGGER.warning(
                "derivation_discarded_stale",
                extra={"content_hash": content_hash, "tier": tier.value, "generation": generation, "current": current},
            )
        raise StaleDerivationError(content_hash, generation, current)

    def working_available(self, content_hash: str) -> bool:
        return self._cache.get(ArtifactTier.WORKING, content_hash, WORKING_VERSION) is not None

    def ensure_working(self, content_hash: str, original: bytes) -> bytes:
        """Return the working image for ``content_hash``, building it from ``original`` when absent."""

        existing = self._cache.get(ArtifactTier.WORKING, content_hash, WORKING_VERSION)
        if existing is not None:
            return existing

        blob = build_working(original)
        self._cache.put(ArtifactTier.WORKING, content_hash, WORKING_VERSION, blob)
        return blob

    def load_working(self, content_hash: str) -> bytes:
        blob = self._cache.get(ArtifactTier.WORKING, content_hash, WORKING_VERSION)
        if blob is None:
            LOGGER.error("working_image_missing", extra={"content_hash": content_hash})
            raise WorkingImageMissingError(content_hash)
        return blob

    def regenerate_prepared(
        self,
        content_hash: str,
        preparation: Preparation,
        generation: Optional[int] = None,
    ) -> bytes:
        """Rebuild the prepared image from the working image, overwriting any cached copy."""

        blob = build_prepared(self.load_working(content_hash), preparation)
        self._put_current(ArtifactTier.PREPARED, content_hash, PREPARED_VERSION, blob, generation)
        return blob

    def load_prepared(self, content_hash: str, preparation: Preparation) -> bytes:
        """Return the cached prepared image, rebuilding it on a cache miss."""

        blob = self._cache.get(ArtifactTier.PREPARED, content_hash, PREPARED_VERSION)
        if blob is not None:
            return blob
        return self.regenerate_prepared(content_hash, preparation)

    def regenerate_canonical(
        self,
        content_hash: str,
        preparation: Preparation,
        generation: Optional[int] = None,
    ) -> bytes:
        """Rebuild the canonical 512px grayscale image, rebuilding the prepared tier first if needed."""

        prepared = self._cache.get(ArtifactTier.PREPARED, content_hash, PREPARED_VERSION)
        if prepared is None:
            self.regenerate_prepared(content_hash, preparation, generation)
            prepared = self._cache.get(ArtifactTier.PREPARED, content_hash, PREPARED_VERSION)
        if prepared is None:
            LOGGER.error("prepared_image_missing", extra={"content_hash": content_hash})
            raise PreparedImageMissingError(content_hash)

        blob = build_canonical(prepared)
        self._put_current(ArtifactTier.NORMALIZED, content_hash, NORMALIZED_VERSION, blob, generation)
        return blob

    def ensure_thumbnail(self, content_hash: str) -> bytes:
        existing = self._cache.get(ArtifactTier.THUMBNAIL, content_hash, THUMBNAIL_VERSION)
        if existing is not None:
            return existing

        blob = build_thumbnail(self.load_working(content_hash))
        self._cache.put(ArtifactTier.THUMBNAIL, content_hash, THUMBNAIL_VERSION, blob)
        return blob

    def invalidate_prepared(self, content_hash: str) -> None:
        """Drop the prepared and canonical tiers; working and thumbnail stay cached."""

        with self._lock:
            self._generations[content_hash] = self._generations.get(content_hash, 0) + 1
            self._cache.delete(ArtifactTier.PREPARED, content_hash, PREPARED_VERSION)
            self._cache.delete(ArtifactTier.NORMALIZED, content_hash, NORMALIZED_VERSION)

    def compute_perceptual_hash_from_canonical(self, content_hash: str) -> Optional[str]:
        """Average-hash the cached canonical image; ``None`` when it is not cached."""

        canonical = self._cache.get(ArtifactTier.NORMALIZED, content_hash, NORMALIZED_VERSION)
        if canonical is None:
            return None
        return compute_average_hash(_open_blob(canonical))


__all__ = [
    "CANONICAL_SIDE",
    "DerivationPipeline",
    "NORMALIZED_VERSION",
    "PREPARED_VERSION",
    "THUMBNAIL_SIDE",
    "THUMBNAIL_VERSION",
    "WORKING_MAX_SIDE",
    "WORKING_VERSION",
    "apply_preparation",
    "build_canonical",
    "build_prepared",
    "build_thumbnail",
    "build_working",
    "rotated_canvas_size",
]
