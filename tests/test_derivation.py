"""Tests for artefact builders and the derivation pipeline."""

from __future__ import annotations

from io import BytesIO
from typing import Optional

import pytest
from PIL import Image

from quire.artifact_store import ArtifactCache, ArtifactTier, MemoryBlobStore
from quire.derivation import (
    NORMALIZED_VERSION,
    PREPARED_VERSION,
    THUMBNAIL_VERSION,
    WORKING_VERSION,
    DerivationPipeline,
    apply_preparation,
    build_working,
    rotated_canvas_size,
)
from quire.errors import PreparedImageMissingError, StaleDerivationError, WorkingImageMissingError
from quire.models import CropRect, Preparation


HASH = "c0ffee"
IDENTITY = Preparation(rotation=0.0, rect=CropRect.full())


def _png(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _open(blob: bytes) -> Image.Image:
    return Image.open(BytesIO(blob))


def _two_tone(size: tuple[int, int] = (100, 50)) -> Image.Image:
    """Left half red, right half blue."""

    image = Image.new("RGB", size, (220, 0, 0))
    image.paste((0, 0, 220), (size[0] // 2, 0, size[0], size[1]))
    return image


class _DropPreparedStore(MemoryBlobStore):
    """Blob store that silently loses prepared artefacts."""

    def put(self, key: str, blob: bytes) -> None:
        if key.startswith("prep::"):
            return
        super().put(key, blob)


def test_working_downscales_large_images() -> None:
    working = _open(build_working(_png(Image.new("RGB", (4096, 2048), (10, 10, 10)))))

    assert working.size == (2048, 1024)
    assert working.format == "JPEG"


def test_working_never_upscales() -> None:
    working = _open(build_working(_png(Image.new("RGB", (100, 40), (10, 10, 10)))))

    assert working.size == (100, 40)


def test_working_rounds_half_up() -> None:
    # 3000x1001 scales by 2048/3000: 1001 * 0.68266... = 683.35 -> 683.
    working = _open(build_working(_png(Image.new("RGB", (3000, 1001), (0, 0, 0)))))

    assert working.size == (2048, 683)


def test_ensure_working_is_idempotent(pipeline: DerivationPipeline, cache: ArtifactCache) -> None:
    first = pipeline.ensure_working(HASH, _png(_two_tone()))

    # A cached working image is returned without decoding the original again.
    second = pipeline.ensure_working(HASH, b"not an image")

    assert first == second
    assert cache.get(ArtifactTier.WORKING, HASH, WORKING_VERSION) == first
    assert pipeline.working_available(HASH)


@pytest.mark.parametrize(
    ("size", "rotation", "expected"),
    [
        ((100, 50), 0, (100, 50)),
        ((100, 50), 90, (50, 100)),
        ((100, 50), 180, (100, 50)),
        ((100, 100), 45, (141, 141)),
        ((100, 50), 30, (111, 93)),
    ],
)
def test_rotated_canvas_size(size: tuple[int, int], rotation: float, expected: tuple[int, int]) -> None:
    assert rotated_canvas_size(size[0], size[1], rotation) == expected


def test_quarter_turn_is_clockwise() -> None:
    """Rotating by 90 degrees moves the left half of the page to the top."""

    rotated = apply_preparation(_two_tone((2, 1)), Preparation(rotation=90, rect=CropRect.full()))

    assert rotated.size == (1, 2)
    assert rotated.getpixel((0, 0)) == (220, 0, 0)
    assert rotated.getpixel((0, 1)) == (0, 0, 220)


def test_arbitrary_rotation_fills_corners_white() -> None:
    black = Image.new("RGB", (100, 50), (0, 0, 0))

    rotated = apply_preparation(black, Preparation(rotation=30, rect=CropRect.full()))

    assert rotated.size == (111, 93)
    assert rotated.getpixel((0, 0)) == (255, 255, 255)
    assert rotated.getpixel((55, 46)) == (0, 0, 0)


def test_crop_uses_fractions_of_rotated_canvas() -> None:
    prepared = apply_preparation(
        _two_tone(),
        Preparation(rotation=0, rect=CropRect(x=0.5, y=0.0, width=0.5, height=1.0)),
    )

    assert prepared.size == (50, 50)
    assert prepared.getpixel((0, 0)) == (0, 0, 220)


def test_prepared_is_deterministic(pipeline: DerivationPipeline) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone()))
    preparation = Preparation(rotation=12.5, rect=CropRect(x=0.1, y=0.1, width=0.8, height=0.8))

    first = pipeline.regenerate_prepared(HASH, preparation)
    second = pipeline.regenerate_prepared(HASH, preparation)

    assert first == second


def test_canonical_is_512_grayscale_png_on_white(pipeline: DerivationPipeline) -> None:
    pipeline.ensure_working(HASH, _png(Image.new("RGB", (100, 50), (0, 0, 0))))

    canonical = _open(pipeline.regenerate_canonical(HASH, IDENTITY))

    assert canonical.format == "PNG"
    assert canonical.mode == "L"
    assert canonical.size == (512, 512)
    # 100x50 scales to 512x256, centred with 128px of white above and below.
    assert canonical.getpixel((0, 0)) == 255
    assert canonical.getpixel((256, 256)) < 16


def test_canonical_rebuilds_missing_prepared(pipeline: DerivationPipeline, cache: ArtifactCache) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone()))
    assert cache.get(ArtifactTier.PREPARED, HASH, PREPARED_VERSION) is None

    pipeline.regenerate_canonical(HASH, IDENTITY)

    assert cache.get(ArtifactTier.PREPARED, HASH, PREPARED_VERSION) is not None
    assert cache.get(ArtifactTier.NORMALIZED, HASH, NORMALIZED_VERSION) is not None


def test_canonical_raises_when_prepared_cannot_be_cached() -> None:
    pipeline = DerivationPipeline(ArtifactCache(_DropPreparedStore()))
    pipeline.ensure_working(HASH, _png(_two_tone()))

    with pytest.raises(PreparedImageMissingError):
        pipeline.regenerate_canonical(HASH, IDENTITY)


def test_missing_working_is_fatal(pipeline: DerivationPipeline) -> None:
    with pytest.raises(WorkingImageMissingError):
        pipeline.regenerate_prepared(HASH, IDENTITY)
    with pytest.raises(WorkingImageMissingError):
        pipeline.regenerate_canonical(HASH, IDENTITY)
    with pytest.raises(WorkingImageMissingError):
        pipeline.ensure_thumbnail(HASH)


def test_thumbnail_is_256_square(pipeline: DerivationPipeline, cache: ArtifactCache) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone((40, 10))))

    thumbnail = _open(pipeline.ensure_thumbnail(HASH))

    assert thumbnail.size == (256, 256)
    assert thumbnail.format == "JPEG"
    assert cache.get(ArtifactTier.THUMBNAIL, HASH, THUMBNAIL_VERSION) is not None


def test_invalidate_keeps_working_and_thumbnail(pipeline: DerivationPipeline, cache: ArtifactCache) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone()))
    pipeline.ensure_thumbnail(HASH)
    pipeline.regenerate_canonical(HASH, IDENTITY)

    pipeline.invalidate_prepared(HASH)

    assert cache.get(ArtifactTier.PREPARED, HASH, PREPARED_VERSION) is None
    assert cache.get(ArtifactTier.NORMALIZED, HASH, NORMALIZED_VERSION) is None
    assert cache.get(ArtifactTier.WORKING, HASH, WORKING_VERSION) is not None
    assert cache.get(ArtifactTier.THUMBNAIL, HASH, THUMBNAIL_VERSION) is not None


def test_perceptual_hash_from_canonical(pipeline: DerivationPipeline) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone()))
    assert pipeline.compute_perceptual_hash_from_canonical(HASH) is None

    pipeline.regenerate_canonical(HASH, IDENTITY)
    value: Optional[str] = pipeline.compute_perceptual_hash_from_canonical(HASH)

    assert value is not None
    assert len(value) == 256


def test_stale_generation_is_discarded(pipeline: DerivationPipeline, cache: ArtifactCache) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone()))
    stale = pipeline.begin_preparation(HASH)
    current = pipeline.begin_preparation(HASH)

    with pytest.raises(StaleDerivationError):
        pipeline.regenerate_prepared(HASH, IDENTITY, stale)
    assert cache.get(ArtifactTier.PREPARED, HASH, PREPARED_VERSION) is None

    pipeline.regenerate_prepared(HASH, IDENTITY, current)
    assert cache.get(ArtifactTier.PREPARED, HASH, PREPARED_VERSION) is not None


def test_invalidation_supersedes_running_generation(pipeline: DerivationPipeline) -> None:
    pipeline.ensure_working(HASH, _png(_two_tone()))
    generation = pipeline.begin_preparation(HASH)

    pipeline.invalidate_prepared(HASH)

    with pytest.raises(StaleDerivationError):
        pipeline.regenerate_canonical(HASH, IDENTITY, generation)


class _InvalidatingStore(MemoryBlobStore):
    """Blob store that invalidates the prepared tiers the first time the working image is read."""

    def __init__(self) -> None:
        super().__init__()
        self.pipeline: Optional[DerivationPipeline] = None

    def get(self, key: str) -> Optional[bytes]:
        blob = super().get(key)
        if self.pipeline is not None and key.startswith("work::"):
            pipeline, self.pipeline = self.pipeline, None
            pipeline.invalidate_prepared(HASH)
        return blob


def test_invalidation_during_build_leaves_no_artefact() -> None:
    store = _InvalidatingStore()
    cache = ArtifactCache(store)
    pipeline = DerivationPipeline(cache)
    pipeline.ensure_working(HASH, _png(_two_tone()))
    generation = pipeline.begin_preparation(HASH)
    store.pipeline = pipeline

    with pytest.raises(StaleDerivationError):
        pipeline.regenerate_prepared(HASH, IDENTITY, generation)

    assert cache.get(ArtifactTier.PREPARED, HASH, PREPARED_VERSION) is None
    assert pipeline.current_generation(HASH) == generation + 1
