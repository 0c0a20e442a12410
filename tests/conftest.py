"""Shared fixtures: in-memory caches, small synthetic images and project records."""

from __future__ import annotations

from io import BytesIO
from typing import Callable

import pytest
from PIL import Image

from quire.artifact_store import ArtifactCache, MemoryBlobStore
from quire.derivation import DerivationPipeline
from quire.models import Dimensions, ImageSource, ImageWorkflow, WorkflowStage


def encode(image: Image.Image, fmt: str = "PNG", **params: object) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
    """Factory returning encoded bytes for a solid-colour image."""

    def _make(
        size: tuple[int, int] = (64, 48),
        color: tuple[int, ...] | str = (200, 30, 30),
        mode: str = "RGB",
        fmt: str = "PNG",
    ) -> bytes:
        return encode(Image.new(mode, size, color), fmt)

    return _make


@pytest.fixture
def cache() -> ArtifactCache:
    return ArtifactCache(MemoryBlobStore())


@pytest.fixture
def pipeline(cache: ArtifactCache) -> DerivationPipeline:
    return DerivationPipeline(cache)


@pytest.fixture
def make_image() -> Callable[..., ImageSource]:
    """Factory for :class:`ImageSource` records with readable defaults."""

    def _make(
        image_id: str,
        *,
        content_hash: str | None = None,
        stage: WorkflowStage = WorkflowStage.INGESTED,
        label: str | None = None,
        structural_path: str | None = None,
        perceptual_hash: str | None = None,
    ) -> ImageSource:
        return ImageSource(
            id=image_id,
            content_hash=content_hash or f"hash-{image_id}",
            dimensions=Dimensions(64, 48),
            perceptual_hash=perceptual_hash,
            workflow=ImageWorkflow(stage=stage),
            label=label,
            structural_path=structural_path,
        )

    return _make
