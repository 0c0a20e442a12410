"""Similarity grouping strategies that turn images into grouping proposals.

Every strategy is a pure function of its inputs and returns transient
:class:`~quire.models.GroupingProposal` objects; nothing is written to the
project until a proposal is confirmed.
"""

from __future__ import annotations

import re
from typing import Dict, List, Mapping, Sequence

from quire.hasher import hash_similarity
from quire.models import GroupingProposal, ImageSource, new_id
from quire.visual_profile import cosine_similarity
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "grouping"})

DEFAULT_PHASH_THRESHOLD = 0.85
DEFAULT_PROFILE_THRESHOLD = 0.8

_IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|tif|tiff)$", re.IGNORECASE)
_TRAILING_NUMBER = re.compile(r"[_-]?\d+$")


def _proposal(image_ids: List[str], reason: str, confidence: float | None = None) -> GroupingProposal:
    return GroupingProposal(id=new_id("proposal"), image_ids=tuple(image_ids), reason=reason, confidence=confidence)


def _percent(threshold: float) -> int:
    return int(round(threshold * 100))


def filename_stem(label: str) -> str:
    """Lowercase ``label`` and strip the image extension and a trailing page number."""

    stem = _IMAGE_EXTENSION.sub("", label.lower())
    return _TRAILING_NUMBER.sub("", stem)


def group_by_filename(images: Sequence[ImageSource]) -> List[GroupingProposal]:
    """Bucket images whose labels share a stem, e.g. ``page01.jpg`` and ``page02.jpg``."""

    buckets: Dict[str, List[str]] = {}
    for image in images:
        if not image.label:
            continue
        buckets.setdefault(filename_stem(image.label), []).append(image.id)

    return [_proposal(ids, f"Filename stem: {stem}") for stem, ids in buckets.items() if len(ids) > 1]


def group_by_leaf_folder(images: Sequence[ImageSource]) -> List[GroupingProposal]:
    """Bucket images by the folder that directly contains them."""

    buckets: Dict[str, List[str]] = {}
    for image in images:
        if not image.structural_path:
            continue
        parts = [part for part in image.structural_path.split("/") if part]
        if len(parts) < 2:
            continue
        buckets.setdefault("/".join(parts[:-1]), []).append(image.id)

    return [_proposal(ids, f"Leaf folder: {folder}") for folder, ids in buckets.items() if len(ids) > 1]


def group_by_perceptual_hash(
    images: Sequence[ImageSource],
    threshold: float = DEFAULT_PHASH_THRESHOLD,
) -> List[GroupingProposal]:
    """Greedy single-link grouping over perceptual-hash similarity.

    Images are scanned in order; each unclaimed image with a hash collects
    every later unclaimed image whose similarity reaches ``threshold``. An
    image joins the first group that claims it. Images without a hash are
    skipped.
    """

    used: set[str] = set()
    proposals: List[GroupingProposal] = []

    for index, anchor in enumerate(images):
        if not anchor.perceptual_hash or anchor.id in used:
            continue

        members = [anchor.id]
        for candidate in images[index + 1 :]:
            if not candidate.perceptual_hash or candidate.id in used:
                continue
            if hash_similarity(anchor.perceptual_hash, candidate.perceptual_hash) >= threshold:
                members.append(candidate.id)
                used.add(candidate.id)

        if len(members) > 1:
            used.update(members)
            proposals.append(_proposal(members, f"pHash ≥ {_percent(threshold)}%", confidence=threshold))

    LOGGER.info("phash_grouping_done", extra={"images": len(images), "proposals": len(proposals), "threshold": threshold})
    return proposals


def group_by_visual_profile(
    images: Sequence[ImageSource],
    profiles: Mapping[str, Sequence[float]],
    threshold: float = DEFAULT_PROFILE_THRESHOLD,
) -> List[GroupingProposal]:
    """Greedy single-link grouping over cosine similarity of HSV profiles keyed by image id."""

    used: set[str] = set()
    proposals: List[GroupingProposal] = []

    for index, anchor in enumerate(images):
        anchor_profile = profiles.get(anchor.id)
        if anchor_profile is None or anchor.id in used:
            continue

        members = [anchor.id]
        for candidate in images[index + 1 :]:
            if candidate.id in used:
                continue
            candidate_profile = profiles.get(candidate.id)
            if candidate_profile is None:
                continue
            if cosine_similarity(anchor_profile, candidate_profile) >= threshold:
                members.append(candidate.id)
                used.add(candidate.id)

        if len(members) > 1:
            used.update(members)
            proposals.append(_proposal(members, f"Visual profile ≥ {_percent(threshold)}%", confidence=threshold))

    LOGGER.info(
        "profile_grouping_done",
        extra={"images": len(images), "proposals": len(proposals), "threshold": threshold},
    )
    return proposals


def group_individually(images: Sequence[ImageSource]) -> List[GroupingProposal]:
    """One single-image proposal per image, as a baseline."""

    return [_proposal([image.id], f"Individual: {image.label or 'Unnamed'}") for image in images]


__all__ = [
    "DEFAULT_PHASH_THRESHOLD",
    "DEFAULT_PROFILE_THRESHOLD",
    "filename_stem",
    "group_by_filename",
    "group_by_leaf_folder",
    "group_by_perceptual_hash",
    "group_by_visual_profile",
    "group_individually",
]
