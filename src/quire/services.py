"""Orchestration services for ingest, preparation, grouping, alignment and load.

Services own the per-image error policy: derivation and hashing failures for
one image are logged and returned as :class:`ProcessWarning` entries so a
batch never aborts half-way.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from io import BytesIO
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from PIL import Image

from quire.artifact_store import ArtifactCache, build_blob_store
from quire.config import GroupingConfig, Settings, load_settings
from quire.derivation import DerivationPipeline
from quire.errors import (
    DerivationError,
    HashingError,
    ImageDecodeError,
    StaleDerivationError,
    UnknownImageError,
    WorkingImageMissingError,
)
from quire.grouping import (
    group_by_filename,
    group_by_leaf_folder,
    group_by_perceptual_hash,
    group_by_visual_profile,
    group_individually,
)
from quire.hash_worker import HashingService
from quire.hasher import ImageHashes
from quire.job_queue import BoundedJobQueue, ProgressCallback
from quire.models import (
    Annotation,
    Dimensions,
    GroupingProposal,
    ImageAlignment,
    ImageGroup,
    ImageSource,
    ImageWorkflow,
    Preparation,
    WorkflowStage,
    new_id,
    utc_timestamp,
)
from quire.project import ProjectState
from quire.visual_profile import extract_visual_profile
from quire.workflow import WorkflowStateMachine
from utils.logging import get_logger


LOGGER = get_logger(__name__, extra={"component": "services"})


@dataclass(frozen=True)
class IngestSource:
    """One file handed to ingest: its bytes plus the name and relative path it was found under."""

    data: bytes
    label: Optional[str] = None
    structural_path: Optional[str] = None


@dataclass(frozen=True)
class ProcessWarning:
    """Per-image failure reported to the caller; ``label`` names the file when no image id exists yet."""

    image_id: Optional[str]
    code: str
    message: str
    label: Optional[str] = None


@dataclass
class IngestResult:
    images: List[ImageSource] = field(default_factory=list)
    warnings: List[ProcessWarning] = field(default_factory=list)


@dataclass
class GroupingRun:
    proposals: List[GroupingProposal] = field(default_factory=list)
    warnings: List[ProcessWarning] = field(default_factory=list)


@dataclass
class LoadReport:
    """Outcome of loading a project: which images have a cached working image."""

    available: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    pruned_alignments: int = 0
    warnings: List[ProcessWarning] = field(default_factory=list)


def _warn(
    image_id: Optional[str],
    code: str,
    exc: Exception,
    label: Optional[str] = None,
    **extra: object,
) -> ProcessWarning:
    LOGGER.warning(
        "image_processing_warning",
        extra={"image_id": image_id, "code": code, "label": label, "error": str(exc), **extra},
    )
    return ProcessWarning(image_id=image_id, code=code, message=str(exc), label=label)


def _warning_code(exc: Exception) -> str:
    if isinstance(exc, StaleDerivationError):
        return "stale_derivation"
    if isinstance(exc, WorkingImageMissingError):
        return "working_missing"
    if isinstance(exc, DerivationError):
        return "derivation_failed"
    if isinstance(exc, HashingError):
        return "hashing_failed"
    if isinstance(exc, ImageDecodeError):
        return "decode_failed"
    return "failed"


class IngestService:
    """Hash new files, cache their working image and thumbnail, and upsert them by content hash."""

    def __init__(
        self,
        project: ProjectState,
        pipeline: DerivationPipeline,
        hashing: HashingService,
        job_limit: int = 10,
    ) -> None:
        self._project = project
        self._pipeline = pipeline
        self._hashing = hashing
        self._job_limit = job_limit

    def _process(self, source: IngestSource) -> ImageHashes:
        hashes = self._hashing.hash_image(source.data)
        self._pipeline.ensure_working(hashes.content_hash, source.data)
        self._pipeline.ensure_thumbnail(hashes.content_hash)
        return hashes

    def ingest(
        self,
        sources: Sequence[IngestSource],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IngestResult:
        """Ingest ``sources`` concurrently; results are applied to the project in input order."""

        outcomes: List[Optional[ImageHashes]] = [None] * len(sources)
        result = IngestResult()

        def _job(index: int, source: IngestSource) -> Callable[[], None]:
            def run() -> None:
                try:
                    outcomes[index] = self._process(source)
                except (HashingError, ImageDecodeError, DerivationError) as exc:
                    result.warnings.append(_warn(None, _warning_code(exc), exc, label=source.label))
                except Exception as exc:
                    # Store and pool failures still surface as a warning for this file.
                    result.warnings.append(
                        _warn(None, "failed", exc, label=source.label, structural_path=source.structural_path)
                    )

            return run

        if sources:
            with BoundedJobQueue(self._job_limit, label="ingest", progress_callback=progress_callback) as queue:
                queue.set_total(len(sources))
                for index, source in enumerate(sources):
                    queue.submit(_job(index, source))
                queue.wait()

        for source, hashes in zip(sources, outcomes):
            if hashes is None:
                continue
            result.images.append(self._upsert(source, hashes))

        LOGGER.info(
            "ingest_done",
            extra={"sources": len(sources), "images": len(result.images), "warnings": len(result.warnings)},
        )
        return result

    def _upsert(self, source: IngestSource, hashes: ImageHashes) -> ImageSource:
        def create() -> ImageSource:
            return ImageSource(
                id=new_id("img"),
                content_hash=hashes.content_hash,
                dimensions=Dimensions(hashes.width, hashes.height),
                perceptual_hash=hashes.perceptual_hash,
                workflow=ImageWorkflow(stage=WorkflowStage.INGESTED, updated_at=utc_timestamp()),
                label=source.label,
                structural_path=source.structural_path,
            )

        def update(existing: ImageSource) -> ImageSource:
            return replace(
                existing,
                label=existing.label or source.label,
                structural_path=existing.structural_path or source.structural_path,
            )

        return self._project.upsert_image_by_content_hash(hashes.content_hash, create, update)


class PreparationService:
    """Confirm human-chosen geometry and rebuild the derivatives that depend on it."""

    def __init__(self, project: ProjectState, pipeline: DerivationPipeline) -> None:
        self._project = project
        self._pipeline = pipeline
        self._workflow = WorkflowStateMachine(project)

    def confirm_preparation(self, image_ids: Iterable[str], preparation: Preparation) -> List[ProcessWarning]:
        """Apply ``preparation`` to each image.

        For every image: record the geometry and move it to ``prepared``
        (cascading away groups, alignments and annotations), drop the old
        prepared and canonical artefacts, rebuild both, and store the
        average hash of the new canonical image as its perceptual hash.
        The previous hash is cleared when the geometry is recorded, so a failed
        rebuild leaves the image without one. Unknown ids and per-image
        failures become warnings.
        """

        warnings: List[ProcessWarning] = []
        for image_id in image_ids:
            try:
                image = self._workflow.record_preparation(image_id, preparation)
            except UnknownImageError as exc:
                warnings.append(_warn(image_id, "unknown_image", exc))
                continue

            content_hash = image.content_hash
            self._pipeline.invalidate_prepared(content_hash)
            generation = self._pipeline.begin_preparation(content_hash)
            try:
                self._pipeline.regenerate_prepared(content_hash, preparation, generation)
                self._pipeline.regenerate_canonical(content_hash, preparation, generation)
                perceptual_hash = self._pipeline.compute_perceptual_hash_from_canonical(content_hash)
            except (DerivationError, ImageDecodeError) as exc:
                warnings.append(_warn(image_id, _warning_code(exc), exc, label=image.label, content_hash=content_hash))
                if not isinstance(exc, StaleDerivationError):
                    self._store_perceptual_hash(image_id, content_hash, generation, None)
                continue

            if not self._store_perceptual_hash(image_id, content_hash, generation, perceptual_hash):
                continue
            LOGGER.info(
                "preparation_confirmed",
                extra={"image_id": image_id, "content_hash": content_hash, "generation": generation},
            )
        return warnings

    def _store_perceptual_hash(
        self,
        image_id: str,
        content_hash: str,
        generation: int,
        perceptual_hash: Optional[str],
    ) -> bool:
        """Write the hash unless a newer preparation of the same content has started since."""

        with self._project.transaction():
            if self._pipeline.current_generation(content_hash) != generation:
                return False
            self._project.update_image(image_id, lambda current: replace(current, perceptual_hash=perceptual_hash))
        return True


class GroupingService:
    """Run grouping strategies against the project and apply confirmed proposals."""

    def __init__(
        self,
        project: ProjectState,
        pipeline: DerivationPipeline,
        config: GroupingConfig | None = None,
    ) -> None:
        self._project = project
        self._pipeline = pipeline
        self._config = config or GroupingConfig()

    def run_filename_grouping(self) -> List[GroupingProposal]:
        return group_by_filename(self._project.images)

    def run_leaf_folder_grouping(self) -> List[GroupingProposal]:
        return group_by_leaf_folder(self._project.images)

    def run_individual_grouping(self) -> List[GroupingProposal]:
        return group_individually(self._project.images)

    def run_perceptual_hash_grouping(self, threshold: Optional[float] = None) -> GroupingRun:
        """Group by perceptual hash, first filling in hashes for prepared images that lack one.

        Missing hashes are computed from a lazily built canonical image.
        Unprepared images without a hash are skipped with a warning.
        """

        run = GroupingRun()
        for image in self._project.images:
            if image.perceptual_hash:
                continue
            if image.preparation is None:
                LOGGER.warning("phash_skipped_unprepared", extra={"image_id": image.id})
                run.warnings.append(
                    ProcessWarning(image.id, "not_prepared", "image not prepared; perceptual hash skipped", image.label)
                )
                continue
            try:
                self._pipeline.regenerate_canonical(image.content_hash, image.preparation)
                perceptual_hash = self._pipeline.compute_perceptual_hash_from_canonical(image.content_hash)
            except (DerivationError, ImageDecodeError) as exc:
                run.warnings.append(_warn(image.id, _warning_code(exc), exc, label=image.label))
                continue
            if perceptual_hash:
                self._project.update_image(image.id, lambda current: replace(current, perceptual_hash=perceptual_hash))

        active = threshold if threshold is not None else self._config.phash_threshold
        run.proposals = group_by_perceptual_hash(self._project.images, active)
        return run

    def _profile_source(self, image: ImageSource) -> bytes:
        if image.preparation is not None:
            return self._pipeline.load_prepared(image.content_hash, image.preparation)
        return self._pipeline.load_working(image.content_hash)

    def compute_visual_profiles(self, bins: Optional[int] = None) -> tuple[Dict[str, List[float]], List[ProcessWarning]]:
        """Profile each image from its prepared artefact, or its working image when unprepared."""

        active_bins = bins if bins is not None else self._config.profile_bins
        profiles: Dict[str, List[float]] = {}
        warnings: List[ProcessWarning] = []
        for image in self._project.images:
            try:
                blob = self._profile_source(image)
                with Image.open(BytesIO(blob)) as decoded:
                    profiles[image.id] = extract_visual_profile(decoded.convert("RGB"), active_bins)
            except (DerivationError, ImageDecodeError, OSError) as exc:
                warnings.append(_warn(image.id, _warning_code(exc), exc, label=image.label))
        return profiles, warnings

    def run_visual_profile_grouping(
        self,
        profiles: Optional[Dict[str, List[float]]] = None,
        threshold: Optional[float] = None,
    ) -> GroupingRun:
        run = GroupingRun()
        if profiles is None:
            profiles, run.warnings = self.compute_visual_profiles()
        active = threshold if threshold is not None else self._config.profile_threshold
        run.proposals = group_by_visual_profile(self._project.images, profiles, active)
        return run

    def apply_proposal(self, proposal: GroupingProposal) -> Optional[ImageGroup]:
        return self._project.apply_proposal(proposal)

    def split_group(self, group_id: str) -> List[ImageGroup]:
        return self._project.split_group(group_id)


class AlignmentService:
    """Provide prepared images to the aligner and record its results."""

    def __init__(self, project: ProjectState, pipeline: DerivationPipeline) -> None:
        self._project = project
        self._pipeline = pipeline

    def ensure_prepared_image(self, image_id: str, preparation: Optional[Preparation] = None) -> bytes:
        """Rebuild and return the prepared image, using the image's own preparation by default."""

        image = self._project.get_image(image_id)
        active = preparation or image.preparation
        if active is None:
            raise ValueError(f"image {image_id} has no preparation")
        return self._pipeline.regenerate_prepared(image.content_hash, active)

    def record_alignment(self, alignment: ImageAlignment) -> None:
        """Store an alignment whose recorded hashes match both images' current content hashes."""

        source = self._project.get_image(alignment.source_image_id)
        target = self._project.get_image(alignment.target_image_id)
        if source.content_hash != alignment.source_content_hash:
            raise ValueError(f"source hash does not match image {source.id}")
        if target.content_hash != alignment.target_content_hash:
            raise ValueError(f"target hash does not match image {target.id}")
        self._project.add_alignment(alignment)
        LOGGER.info(
            "alignment_recorded",
            extra={"source_image_id": source.id, "target_image_id": target.id, "method": alignment.method},
        )

    def clear_image_alignments(self, image_id: str) -> int:
        return self._project.remove_alignments_for_image(image_id)

    def alignments_for_image(self, image_id: str) -> List[ImageAlignment]:
        return self._project.alignments_by_source_image().get(image_id, [])


def load_project(
    project: ProjectState,
    pipeline: DerivationPipeline,
    images: Iterable[ImageSource],
    groups: Iterable[ImageGroup] = (),
    alignments: Iterable[ImageAlignment] = (),
    annotations: Iterable[Annotation] = (),
) -> LoadReport:
    """Populate ``project`` from already-parsed records and rehydrate cached artefacts.

    Thumbnails are rebuilt from cached working images where possible. Images
    whose working image is gone are reported as ``missing``; they need their
    original file re-ingested before any derivative can be rebuilt.
    """

    with project.transaction():
        project.set_images(images)
        project.set_groups(groups)
        project.set_alignments(alignments)
        project.set_annotations(annotations)
        pruned = project.prune_stale_alignments()

    report = LoadReport(pruned_alignments=pruned)
    for image in project.images:
        try:
            pipeline.ensure_thumbnail(image.content_hash)
        except WorkingImageMissingError as exc:
            report.missing.append(image.id)
            report.warnings.append(_warn(image.id, "working_missing", exc, label=image.label))
            continue
        except (DerivationError, ImageDecodeError) as exc:
            report.warnings.append(_warn(image.id, _warning_code(exc), exc, label=image.label))
        report.available.append(image.id)

    LOGGER.info(
        "project_loaded",
        extra={"images": len(report.available) + len(report.missing), "missing": len(report.missing)},
    )
    return report


@dataclass
class QuireSession:
    """Wires the cache, pipeline, worker pool and services around one project."""

    settings: Settings
    project: ProjectState
    cache: ArtifactCache
    pipeline: DerivationPipeline
    hashing: HashingService
    ingest: IngestService
    preparation: PreparationService
    grouping: GroupingService
    alignment: AlignmentService

    def close(self) -> None:
        self.hashing.close()

    def __enter__(self) -> "QuireSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def open_session(settings: Optional[Settings] = None, project: Optional[ProjectState] = None) -> QuireSession:
    settings = settings or load_settings()
    project = project or ProjectState()
    cache = ArtifactCache(build_blob_store(settings.cache))
    pipeline = DerivationPipeline(cache)
    hashing = HashingService(settings.hashing)
    return QuireSession(
        settings=settings,
        project=project,
        cache=cache,
        pipeline=pipeline,
        hashing=hashing,
        ingest=IngestService(project, pipeline, hashing, job_limit=settings.queue.job_limit),
        preparation=PreparationService(project, pipeline),
        grouping=GroupingService(project, pipeline, settings.grouping),
        alignment=AlignmentService(project, pipeline),
    )


__all__ = [
    "AlignmentService",
    "GroupingRun",
    "GroupingService",
    "IngestResult",
    "IngestService",
    "IngestSource",
    "LoadReport",
    "PreparationService",
    "ProcessWarning",
    "QuireSession",
    "load_project",
    "open_session",
]
