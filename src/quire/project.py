"""In-memory project state: images, groups, alignments and annotations.

:class:`ProjectState` is the single authoritative container for project
data. Every mutation goes through one of its methods and holds the state
lock, and :meth:`ProjectState.transaction` lets callers apply several
mutations that readers observe together or not at all.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from threading import RLock
from typing import Callable, Dict, Iterable, Iterator, List, Literal, Optional

from quire.errors import UnknownGroupError, UnknownImageError
from quire.models import (
    Annotation,
    GroupingProposal,
    ImageAlignment,
    ImageGroup,
    ImageSource,
    new_id,
)
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "project"})

AnnotationStatus = Literal["none", "valid", "mismatch"]


def _dedupe(ids: Iterable[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for image_id in ids:
        if image_id not in seen:
            seen.add(image_id)
            ordered.append(image_id)
    return ordered


class ProjectState:
    """Thread-safe project container with whole-field setters and targeted mutations."""

    def __init__(self) -> None:
        self._lock = RLock()
        self._images: List[ImageSource] = []
        self._groups: List[ImageGroup] = []
        self._alignments: List[ImageAlignment] = []
        self._annotations: List[Annotation] = []

    @contextmanager
    def transaction(self) -> Iterator["ProjectState"]:
        """Hold the state lock across several mutations."""

        with self._lock:
            yield self

    # ------------------------------------------------------------------
    # Snapshots

    @property
    def images(self) -> tuple[ImageSource, ...]:
        with self._lock:
            return tuple(self._images)

    @property
    def groups(self) -> tuple[ImageGroup, ...]:
        with self._lock:
            return tuple(self._groups)

    @property
    def alignments(self) -> tuple[ImageAlignment, ...]:
        with self._lock:
            return tuple(self._alignments)

    @property
    def annotations(self) -> tuple[Annotation, ...]:
        with self._lock:
            return tuple(self._annotations)

    def set_images(self, images: Iterable[ImageSource]) -> None:
        with self._lock:
            self._images = list(images)

    def set_groups(self, groups: Iterable[ImageGroup]) -> None:
        with self._lock:
            self._groups = list(groups)

    def set_alignments(self, alignments: Iterable[ImageAlignment]) -> None:
        with self._lock:
            self._alignments = list(alignments)

    def set_annotations(self, annotations: Iterable[Annotation]) -> None:
        with self._lock:
            self._annotations = list(annotations)

    # ------------------------------------------------------------------
    # Images

    def _image_index(self, image_id: str) -> int:
        for index, image in enumerate(self._images):
            if image.id == image_id:
                return index
        raise UnknownImageError(image_id)

    def get_image(self, image_id: str) -> ImageSource:
        with self._lock:
            return self._images[self._image_index(image_id)]

    def has_image(self, image_id: str) -> bool:
        with self._lock:
            return any(image.id == image_id for image in self._images)

    def add_image(self, image: ImageSource) -> None:
        with self._lock:
            if self.has_image(image.id):
                raise ValueError(f"image {image.id} already exists")
            self._images.append(image)

    def update_image(self, image_id: str, updater: Callable[[ImageSource], ImageSource]) -> ImageSource:
        with self._lock:
            index = self._image_index(image_id)
            updated = updater(self._images[index])
            if updated.content_hash != self._images[index].content_hash:
                raise ValueError(f"content hash of image {image_id} is immutable")
            self._images[index] = updated
            return updated

    def find_image_by_content_hash(self, content_hash: str) -> Optional[ImageSource]:
        with self._lock:
            for image in self._images:
                if image.content_hash == content_hash:
                    return image
            return None

    def upsert_image_by_content_hash(
        self,
        content_hash: str,
        create: Callable[[], ImageSource],
        update: Callable[[ImageSource], ImageSource],
    ) -> ImageSource:
        """Update the image with ``content_hash`` or append a newly created one."""

        with self._lock:
            existing = self.find_image_by_content_hash(content_hash)
            if existing is None:
                created = create()
                self._images.append(created)
                return created
            return self.update_image(existing.id, update)

    def remove_image(self, image_id: str) -> ImageSource:
        """Delete an image record together with its group memberships and alignments.

        Annotations are keyed by content hash and are left in place; they
        surface as ``mismatch`` in :meth:`annotation_status`.
        """

        with self._lock:
            removed = self._images.pop(self._image_index(image_id))
            self.remove_from_all_groups(image_id)
            self.remove_alignments_for_image(image_id)
        LOGGER.info("image_removed", extra={"image_id": image_id, "content_hash": removed.content_hash})
        return removed

    # ------------------------------------------------------------------
    # Groups

    def _group_index(self, group_id: str) -> int:
        for index, group in enumerate(self._groups):
            if group.id == group_id:
                return index
        raise UnknownGroupError(group_id)

    def get_group(self, group_id: str) -> ImageGroup:
        with self._lock:
            return self._groups[self._group_index(group_id)]

    def add_group(self, group: ImageGroup) -> None:
        self.add_groups([group])

    def add_groups(self, groups: Iterable[ImageGroup]) -> None:
        pending = list(groups)
        with self._lock:
            for group in pending:
                for image_id in group.image_ids:
                    self._image_index(image_id)
            self._groups.extend(pending)

    def update_group(self, group_id: str, updater: Callable[[ImageGroup], ImageGroup]) -> ImageGroup:
        with self._lock:
            index = self._group_index(group_id)
            updated = updater(self._groups[index])
            self._groups[index] = updated
            return updated

    def remove_group(self, group_id: str) -> ImageGroup:
        with self._lock:
            return self._groups.pop(self._group_index(group_id))

    def _detach(self, image_ids: set[str]) -> None:
        kept: List[ImageGroup] = []
        for group in self._groups:
            remaining = group.without(image_ids)
            if remaining is None:
                LOGGER.info("group_emptied", extra={"group_id": group.id})
                continue
            kept.append(remaining)
        self._groups = kept

    def remove_from_all_groups(self, image_id: str) -> None:
        """Drop ``image_id`` from every group; emptied groups are deleted."""

        with self._lock:
            self._detach({image_id})

    def add_image_to_group(self, group_id: str, image_id: str) -> ImageGroup:
        """Move ``image_id`` into ``group_id``, leaving any other group it belonged to."""

        with self._lock:
            self._image_index(image_id)
            group = self.get_group(group_id)
            if image_id in group.image_ids:
                return group
            self._detach({image_id})
            return self.update_group(group_id, lambda current: replace(current, image_ids=(*current.image_ids, image_id)))

    def remove_image_from_group(self, group_id: str, image_id: str) -> Optional[ImageGroup]:
        """Remove one member; returns ``None`` when the group became empty and was deleted."""

        with self._lock:
            index = self._group_index(group_id)
            remaining = self._groups[index].without({image_id})
            if remaining is None:
                del self._groups[index]
                return None
            self._groups[index] = remaining
            return remaining

    def set_group_base_image(self, group_id: str, image_id: str) -> ImageGroup:
        with self._lock:
            group = self.get_group(group_id)
            if image_id not in group.image_ids:
                raise ValueError(f"image {image_id} is not a member of group {group_id}")
            return self.update_group(group_id, lambda current: replace(current, base_image_id=image_id))

    def split_group(self, group_id: str) -> List[ImageGroup]:
        """Replace a group with one single-image group per member."""

        with self._lock:
            target = self.remove_group(group_id)
            singles = [
                ImageGroup(id=new_id("group"), base_image_id=image_id, image_ids=(image_id,))
                for image_id in target.image_ids
            ]
            self._groups.extend(singles)
        LOGGER.info("group_split", extra={"group_id": group_id, "members": len(singles)})
        return singles

    def apply_proposal(self, proposal: GroupingProposal) -> Optional[ImageGroup]:
        """Turn a proposal into a confirmed group.

        Proposal images are detached from their current groups (bases are
        reassigned, emptied groups deleted), then one unlocked group is
        created whose base is the first proposal image. Returns ``None`` for
        an empty proposal.
        """

        image_ids = _dedupe(proposal.image_ids)
        if not image_ids:
            return None

        with self._lock:
            for image_id in image_ids:
                self._image_index(image_id)
            self._detach(set(image_ids))
            group = ImageGroup(id=new_id("group"), base_image_id=image_ids[0], image_ids=tuple(image_ids))
            self._groups.append(group)

        LOGGER.info(
            "proposal_applied",
            extra={"proposal_id": proposal.id, "group_id": group.id, "members": len(image_ids)},
        )
        return group

    # ------------------------------------------------------------------
    # Alignments

    def add_alignment(self, alignment: ImageAlignment) -> None:
        with self._lock:
            self._image_index(alignment.source_image_id)
            self._image_index(alignment.target_image_id)
            self._alignments.append(alignment)

    def remove_alignments_for_image(self, image_id: str) -> int:
        with self._lock:
            before = len(self._alignments)
            self._alignments = [alignment for alignment in self._alignments if not alignment.references(image_id)]
            return before - len(self._alignments)

    def prune_stale_alignments(self) -> int:
        """Drop alignments whose images are gone or whose content hashes changed."""

        with self._lock:
            hashes = {image.id: image.content_hash for image in self._images}
            kept = [
                alignment
                for alignment in self._alignments
                if hashes.get(alignment.source_image_id) == alignment.source_content_hash
                and hashes.get(alignment.target_image_id) == alignment.target_content_hash
            ]
            pruned = len(self._alignments) - len(kept)
            self._alignments = kept
        if pruned:
            LOGGER.info("alignments_pruned", extra={"count": pruned})
        return pruned

    # ------------------------------------------------------------------
    # Annotations

    def add_annotation(self, annotation: Annotation) -> None:
        with self._lock:
            self._annotations.append(annotation)

    def remove_annotations_for_image(self, image_id: str) -> int:
        """Drop annotations whose base or compared hash is this image's content hash."""

        with self._lock:
            content_hash = self.get_image(image_id).content_hash
            before = len(self._annotations)
            self._annotations = [
                annotation for annotation in self._annotations if not annotation.references_hash(content_hash)
            ]
            return before - len(self._annotations)

    # ------------------------------------------------------------------
    # Derived views

    def images_by_id(self) -> Dict[str, ImageSource]:
        with self._lock:
            return {image.id: image for image in self._images}

    def groups_by_id(self) -> Dict[str, ImageGroup]:
        with self._lock:
            return {group.id: group for group in self._groups}

    def alignments_by_source_image(self) -> Dict[str, List[ImageAlignment]]:
        with self._lock:
            mapping: Dict[str, List[ImageAlignment]] = {}
            for alignment in self._alignments:
                mapping.setdefault(alignment.source_image_id, []).append(alignment)
            return mapping

    def ungrouped_image_ids(self) -> List[str]:
        with self._lock:
            grouped = {image_id for group in self._groups for image_id in group.image_ids}
            return [image.id for image in self._images if image.id not in grouped]

    def annotation_status(self) -> AnnotationStatus:
        """``none`` without annotations, ``mismatch`` if any base hash has no image, else ``valid``."""

        with self._lock:
            if not self._annotations:
                return "none"
            hashes = {image.content_hash for image in self._images}
            if any(annotation.base_image_content_hash not in hashes for annotation in self._annotations):
                return "mismatch"
            return "valid"


__all__ = ["AnnotationStatus", "ProjectState"]
