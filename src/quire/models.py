"""Domain records for images, groups, alignments, annotations and proposals."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class WorkflowStage(str, Enum):
    """Per-image workflow stage, strictly ordered by declaration."""

    INGESTED = "ingested"
    PREPARED = "prepared"
    GROUPED = "grouped"
    ALIGNED = "aligned"
    ANNOTATED = "annotated"

    @property
    def index(self) -> int:
        return _STAGE_ORDER.index(self)

    @classmethod
    def parse(cls, value: "WorkflowStage | str") -> "WorkflowStage":
        """Return the stage for ``value``; unknown names (for example ``dewarped``) raise ValueError."""

        if isinstance(value, WorkflowStage):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown workflow stage: {value!r}") from None


_STAGE_ORDER: tuple[WorkflowStage, ...] = tuple(WorkflowStage)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int


@dataclass(frozen=True)
class CropRect:
    """Crop box expressed as fractions (0–1) of the rotated canvas."""

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        for name in ("x", "y", "width", "height"):
            value = float(getattr(self, name))
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"crop {name} must be within [0, 1], got {value}")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("crop width and height must be positive")

    @classmethod
    def full(cls) -> "CropRect":
        return cls(x=0.0, y=0.0, width=1.0, height=1.0)


@dataclass(frozen=True)
class Preparation:
    """Human-confirmed geometry: rotation in degrees plus a normalized crop."""

    rotation: float
    rect: CropRect

    def to_dict(self) -> dict[str, Any]:
        return {
            "rotation": self.rotation,
            "rect": {"x": self.rect.x, "y": self.rect.y, "width": self.rect.width, "height": self.rect.height},
        }


@dataclass(frozen=True)
class ImageWorkflow:
    stage: WorkflowStage = WorkflowStage.INGESTED
    updated_at: str | None = None


@dataclass(frozen=True)
class ImageSource:
    """Authoritative record for one image's identity, hashes and workflow state."""

    id: str
    content_hash: str
    dimensions: Dimensions
    perceptual_hash: str | None = None
    preparation: Preparation | None = None
    workflow: ImageWorkflow = field(default_factory=ImageWorkflow)
    label: str | None = None
    structural_path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def stage(self) -> WorkflowStage:
        return self.workflow.stage

    def with_stage(self, stage: WorkflowStage, updated_at: str | None = None) -> "ImageSource":
        return replace(self, workflow=ImageWorkflow(stage=stage, updated_at=updated_at or utc_timestamp()))


@dataclass(frozen=True)
class ImageGroup:
    """A confirmed set of images sharing one logical page; the base image anchors alignment."""

    id: str
    base_image_id: str
    image_ids: tuple[str, ...]
    locked: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "image_ids", tuple(self.image_ids))
        if not self.image_ids:
            raise ValueError(f"group {self.id} must have at least one image")
        if self.base_image_id not in self.image_ids:
            raise ValueError(f"group {self.id} base image {self.base_image_id} is not a member")

    def without(self, image_ids: set[str]) -> "ImageGroup | None":
        """Return this group minus ``image_ids``; ``None`` when nothing remains.

        A removed base image is replaced by the first remaining member.
        """

        remaining = tuple(image_id for image_id in self.image_ids if image_id not in image_ids)
        if not remaining:
            return None
        if len(remaining) == len(self.image_ids):
            return self
        base = self.base_image_id if self.base_image_id in remaining else remaining[0]
        return replace(self, image_ids=remaining, base_image_id=base)


TRANSFORM_TYPES = frozenset({"affine", "homography"})


@dataclass(frozen=True)
class AlignmentTransform:
    type: str
    matrix: tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "matrix", tuple(float(value) for value in self.matrix))
        if self.type not in TRANSFORM_TYPES:
            raise ValueError(f"Unsupported transform type: {self.type!r}")
        if len(self.matrix) != 9:
            raise ValueError(f"transform matrix must have 9 entries, got {len(self.matrix)}")


@dataclass(frozen=True)
class ImageAlignment:
    source_image_id: str
    target_image_id: str
    source_content_hash: str
    target_content_hash: str
    confidence: float
    method: str
    transform: AlignmentTransform
    id: str = field(default_factory=lambda: new_id("alignment"))

    def references(self, image_id: str) -> bool:
        return image_id in (self.source_image_id, self.target_image_id)


@dataclass(frozen=True)
class Annotation:
    """Annotation payload keyed by content hash so it survives image id churn."""

    base_image_content_hash: str
    data: dict[str, Any] = field(default_factory=dict)
    compared_image_content_hash: str | None = None
    alignment_id: str | None = None

    def references_hash(self, content_hash: str) -> bool:
        return content_hash in (self.base_image_content_hash, self.compared_image_content_hash)


@dataclass(frozen=True)
class GroupingProposal:
    """Transient grouping suggestion; never persisted as project data."""

    id: str
    image_ids: tuple[str, ...]
    reason: str | None = None
    confidence: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "image_ids", tuple(self.image_ids))


__all__ = [
    "WorkflowStage",
    "Dimensions",
    "CropRect",
    "Preparation",
    "ImageWorkflow",
    "ImageSource",
    "ImageGroup",
    "AlignmentTransform",
    "ImageAlignment",
    "Annotation",
    "GroupingProposal",
    "TRANSFORM_TYPES",
    "new_id",
    "utc_timestamp",
]
