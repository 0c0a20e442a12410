"""End-to-end tests for the orchestration services on an in-memory session."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import replace
from io import BytesIO
from typing import Callable, List

import pytest
from PIL import Image

from quire.artifact_store import ArtifactCache, ArtifactTier, MemoryBlobStore
from quire.config import CacheConfig, HashingConfig, Settings
from quire.derivation import (
    NORMALIZED_VERSION,
    PREPARED_VERSION,
    THUMBNAIL_VERSION,
    WORKING_VERSION,
    DerivationPipeline,
)
from quire.models import (
    AlignmentTransform,
    CropRect,
    ImageAlignment,
    ImageGroup,
    ImageSource,
    Preparation,
    WorkflowStage,
)
from quire.project import ProjectState
from quire.services import IngestService, IngestSource, QuireSession, load_project, open_session

ImageBytes = Callable[..., bytes]
MakeImage = Callable[..., ImageSource]

ROTATE = Preparation(rotation=90.0, rect=CropRect(x=0.0, y=0.1, width=1.0, height=0.8))


@pytest.fixture
def session() -> Iterator[QuireSession]:
    settings = Settings(cache=CacheConfig(backend="memory"), hashing=HashingConfig(executor="thread", max_workers=2))
    with open_session(settings) as opened:
        yield opened


def _with_speck(color: tuple[int, int, int]) -> bytes:
    image = Image.new("RGB", (64, 48), color)
    image.putpixel((3, 3), (color[0] ^ 8, color[1], color[2]))
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _ingest(session: QuireSession, *sources: IngestSource) -> List[ImageSource]:
    result = session.ingest.ingest(list(sources))
    assert result.warnings == []
    return result.images


def test_ingest_hashes_and_caches(session: QuireSession, image_bytes: ImageBytes) -> None:
    progress: List[int] = []

    result = session.ingest.ingest(
        [
            IngestSource(image_bytes(color=(200, 0, 0)), label="p1.jpg", structural_path="book/p1.jpg"),
            IngestSource(image_bytes(color=(0, 0, 200)), label="p2.jpg", structural_path="book/p2.jpg"),
        ],
        progress_callback=lambda label, pct: progress.append(pct),
    )

    assert [image.label for image in result.images] == ["p1.jpg", "p2.jpg"]
    assert max(progress) == 100
    for image in result.images:
        assert image.stage is WorkflowStage.INGESTED
        assert image.dimensions.width == 64
        assert image.perceptual_hash is not None and len(image.perceptual_hash) == 16
        assert session.cache.get(ArtifactTier.WORKING, image.content_hash, WORKING_VERSION) is not None
        assert session.cache.get(ArtifactTier.THUMBNAIL, image.content_hash, THUMBNAIL_VERSION) is not None
    assert [image.id for image in session.project.images] == [image.id for image in result.images]


def test_ingest_deduplicates_by_content_hash(session: QuireSession, image_bytes: ImageBytes) -> None:
    red = image_bytes(color=(200, 0, 0))

    result = session.ingest.ingest(
        [
            IngestSource(red, label="first.png"),
            IngestSource(image_bytes(color=(0, 200, 0)), label="green.png"),
            IngestSource(red, label="copy.png"),
        ]
    )

    assert len(session.project.images) == 2
    assert result.images[0].id == result.images[2].id
    assert session.project.get_image(result.images[0].id).label == "first.png"


def test_ingest_reports_undecodable_files(session: QuireSession, image_bytes: ImageBytes) -> None:
    result = session.ingest.ingest([IngestSource(b"not an image", label="broken.jpg"), IngestSource(image_bytes())])

    assert len(result.images) == 1
    assert [warning.code for warning in result.warnings] == ["hashing_failed"]
    assert result.warnings[0].image_id is None
    assert result.warnings[0].label == "broken.jpg"


class _FailingStore(MemoryBlobStore):
    def put(self, key: str, blob: bytes) -> None:
        raise RuntimeError("disk full")


def test_ingest_reports_store_failures(session: QuireSession, image_bytes: ImageBytes) -> None:
    project = ProjectState()
    ingest = IngestService(project, DerivationPipeline(ArtifactCache(_FailingStore())), session.hashing)

    result = ingest.ingest([IngestSource(image_bytes(), label="p1.png")])

    assert result.images == []
    assert [(warning.code, warning.label) for warning in result.warnings] == [("failed", "p1.png")]
    assert "disk full" in result.warnings[0].message
    assert project.images == ()


def test_confirm_preparation_rebuilds_and_rehashes(session: QuireSession, image_bytes: ImageBytes) -> None:
    first, second = _ingest(
        session,
        IngestSource(image_bytes(color=(10, 10, 10))),
        IngestSource(image_bytes(color=(240, 240, 240))),
    )
    session.project.add_group(ImageGroup(id="g1", base_image_id=first.id, image_ids=(first.id, second.id)))

    warnings = session.preparation.confirm_preparation([first.id, "missing"], ROTATE)

    assert [(warning.image_id, warning.code) for warning in warnings] == [("missing", "unknown_image")]
    prepared = session.project.get_image(first.id)
    assert prepared.stage is WorkflowStage.PREPARED
    assert prepared.preparation == ROTATE
    assert prepared.perceptual_hash is not None and len(prepared.perceptual_hash) == 256
    assert session.project.get_group("g1").image_ids == (second.id,)

    blob = session.cache.get(ArtifactTier.PREPARED, first.content_hash, PREPARED_VERSION)
    assert blob is not None
    # 64x48 rotated a quarter turn is 48x64; the crop keeps 80% of the height.
    assert Image.open(BytesIO(blob)).size == (48, 51)
    assert session.cache.get(ArtifactTier.NORMALIZED, first.content_hash, NORMALIZED_VERSION) is not None


def test_failed_repreparation_clears_perceptual_hash(session: QuireSession, image_bytes: ImageBytes) -> None:
    (image,) = _ingest(session, IngestSource(image_bytes(), label="p1.png"))
    first_crop = Preparation(rotation=0.0, rect=CropRect(x=0.0, y=0.0, width=0.5, height=1.0))
    assert session.preparation.confirm_preparation([image.id], first_crop) == []
    assert session.project.get_image(image.id).perceptual_hash is not None

    session.cache.delete(ArtifactTier.WORKING, image.content_hash, WORKING_VERSION)
    warnings = session.preparation.confirm_preparation([image.id], ROTATE)

    assert [(warning.code, warning.label) for warning in warnings] == [("working_missing", "p1.png")]
    updated = session.project.get_image(image.id)
    assert updated.preparation == ROTATE
    assert updated.perceptual_hash is None


def test_phash_grouping_fills_missing_hashes(session: QuireSession) -> None:
    first, second = _ingest(session, IngestSource(_with_speck((30, 30, 30))), IngestSource(_with_speck((32, 30, 30))))
    for image in (first, second):
        session.project.update_image(
            image.id, lambda current: replace(current, perceptual_hash=None, preparation=Preparation(0, CropRect.full()))
        )

    run = session.grouping.run_perceptual_hash_grouping()

    assert run.warnings == []
    assert [set(proposal.image_ids) for proposal in run.proposals] == [{first.id, second.id}]
    assert all(len(image.perceptual_hash or "") == 256 for image in session.project.images)


def test_phash_grouping_skips_unprepared_images_without_hash(
    session: QuireSession, make_image: MakeImage
) -> None:
    session.project.add_image(make_image("bare"))

    run = session.grouping.run_perceptual_hash_grouping()

    assert [(warning.image_id, warning.code) for warning in run.warnings] == [("bare", "not_prepared")]
    assert run.proposals == []


def test_visual_profile_grouping(session: QuireSession, image_bytes: ImageBytes) -> None:
    red, red_again, blue = _ingest(
        session,
        IngestSource(image_bytes(color=(220, 0, 0))),
        IngestSource(_with_speck((220, 0, 0))),
        IngestSource(image_bytes(color=(0, 0, 220))),
    )

    run = session.grouping.run_visual_profile_grouping()

    assert run.warnings == []
    assert [proposal.image_ids for proposal in run.proposals] == [(red.id, red_again.id)]
    assert blue.id not in run.proposals[0].image_ids


def test_filename_and_folder_grouping(session: QuireSession, image_bytes: ImageBytes) -> None:
    _ingest(
        session,
        IngestSource(image_bytes(color=(1, 2, 3)), label="leaf01.jpg", structural_path="ms/quire1/leaf01.jpg"),
        IngestSource(image_bytes(color=(4, 5, 6)), label="leaf02.jpg", structural_path="ms/quire2/leaf02.jpg"),
    )

    assert len(session.grouping.run_filename_grouping()) == 1
    assert session.grouping.run_leaf_folder_grouping() == []
    assert len(session.grouping.run_individual_grouping()) == 2


def test_alignment_service(session: QuireSession, image_bytes: ImageBytes) -> None:
    source, target = _ingest(
        session,
        IngestSource(image_bytes(color=(50, 60, 70))),
        IngestSource(image_bytes(color=(70, 60, 50))),
    )
    transform = AlignmentTransform(type="affine", matrix=(1, 0, 2, 0, 1, 3, 0, 0, 1))

    with pytest.raises(ValueError):
        session.alignment.ensure_prepared_image(source.id)
    assert session.alignment.ensure_prepared_image(source.id, ROTATE)

    with pytest.raises(ValueError):
        session.alignment.record_alignment(
            ImageAlignment(source.id, target.id, "stale", target.content_hash, 0.9, "orb", transform)
        )

    alignment = ImageAlignment(source.id, target.id, source.content_hash, target.content_hash, 0.9, "orb", transform)
    session.alignment.record_alignment(alignment)
    assert session.alignment.alignments_for_image(source.id) == [alignment]

    assert session.alignment.clear_image_alignments(target.id) == 1
    assert session.alignment.alignments_for_image(source.id) == []


def test_load_project_reports_missing_working_images(
    pipeline: DerivationPipeline, make_image: MakeImage, image_bytes: ImageBytes
) -> None:
    present, absent = make_image("present"), make_image("absent")
    pipeline.ensure_working(present.content_hash, image_bytes())
    stale = ImageAlignment(
        "present",
        "absent",
        present.content_hash,
        "hash-before-rescan",
        0.5,
        "manual",
        AlignmentTransform(type="affine", matrix=(1, 0, 0, 0, 1, 0, 0, 0, 1)),
    )
    project = ProjectState()

    report = load_project(project, pipeline, [present, absent], alignments=[stale])

    assert report.available == ["present"]
    assert report.missing == ["absent"]
    assert [warning.code for warning in report.warnings] == ["working_missing"]
    assert report.pruned_alignments == 1
    assert project.alignments == ()
    assert pipeline.cache.get(ArtifactTier.THUMBNAIL, present.content_hash, THUMBNAIL_VERSION) is not None
