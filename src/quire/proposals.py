"""Working set of grouping proposals awaiting confirmation."""

from __future__ import annotations

from dataclasses import replace
from threading import RLock
from typing import Iterable, List, Optional

from quire.models import GroupingProposal, ImageGroup
from quire.project import ProjectState
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "proposals"})

INITIAL_REASON = "Initial state"
SPLIT_REASON = "Split from suggestion"
EDITED_SUFFIX = " (manually edited)"
EDITED_REASON = "Manually edited"


def single_proposal_id(image_id: str) -> str:
    return f"single_{image_id}"


class ProposalBoard:
    """Holds transient proposals plus a set of selected image ids.

    Nothing here touches project data until :meth:`confirm` applies a
    proposal to a :class:`~quire.project.ProjectState`.
    """

    def __init__(self, proposals: Iterable[GroupingProposal] = ()) -> None:
        self._lock = RLock()
        self._proposals: List[GroupingProposal] = list(proposals)
        self._selected: set[str] = set()

    @property
    def proposals(self) -> tuple[GroupingProposal, ...]:
        with self._lock:
            return tuple(self._proposals)

    @property
    def selected(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._selected)

    def get(self, proposal_id: str) -> Optional[GroupingProposal]:
        with self._lock:
            return next((proposal for proposal in self._proposals if proposal.id == proposal_id), None)

    def initialise_single_image_proposals(self, image_ids: Iterable[str]) -> bool:
        """Seed one single-image proposal per image; a non-empty board is left alone."""

        ids = list(image_ids)
        with self._lock:
            if not ids or self._proposals:
                return False
            self._proposals = [
                GroupingProposal(id=single_proposal_id(image_id), image_ids=(image_id,), reason=INITIAL_REASON, confidence=1.0)
                for image_id in ids
            ]
        return True

    def replace(self, proposals: Iterable[GroupingProposal]) -> None:
        with self._lock:
            self._proposals = list(proposals)

    def discard(self, proposal_id: str) -> None:
        with self._lock:
            self._proposals = [proposal for proposal in self._proposals if proposal.id != proposal_id]

    def ensure_single_image_proposal(self, image_id: str, reason: str = SPLIT_REASON) -> GroupingProposal:
        with self._lock:
            for proposal in self._proposals:
                if proposal.image_ids == (image_id,):
                    return proposal
            proposal = GroupingProposal(
                id=single_proposal_id(image_id), image_ids=(image_id,), reason=reason, confidence=1.0
            )
            self._proposals.append(proposal)
            return proposal

    def ungroup_image(self, proposal_id: str, image_id: str) -> None:
        """Pull ``image_id`` out of a proposal and give it its own single-image proposal."""

        with self._lock:
            target = self.get(proposal_id)
            if target is None or image_id not in target.image_ids:
                return

            updated: List[GroupingProposal] = []
            for proposal in self._proposals:
                if proposal.id != proposal_id:
                    updated.append(proposal)
                    continue
                remaining = tuple(member for member in proposal.image_ids if member != image_id)
                if not remaining:
                    continue
                reason = f"{proposal.reason}{EDITED_SUFFIX}" if proposal.reason else EDITED_REASON
                updated.append(replace(proposal, image_ids=remaining, reason=reason))
            self._proposals = updated
            self.ensure_single_image_proposal(image_id)

    def confirm(self, proposal_id: str, project: ProjectState) -> Optional[ImageGroup]:
        """Apply a proposal to ``project`` and drop every proposal and selection it overlaps."""

        with self._lock:
            proposal = self.get(proposal_id)
            if proposal is None:
                return None
            group = project.apply_proposal(proposal)
            if group is None:
                return None

            members = set(group.image_ids)
            self._proposals = [
                other for other in self._proposals if not members.intersection(other.image_ids)
            ]
            self._selected -= members
        LOGGER.info("proposal_confirmed", extra={"proposal_id": proposal_id, "group_id": group.id})
        return group

    def select(self, image_id: str) -> None:
        with self._lock:
            self._selected.add(image_id)

    def deselect(self, image_id: str) -> None:
        with self._lock:
            self._selected.discard(image_id)

    def toggle(self, image_id: str) -> bool:
        """Flip selection of ``image_id``; returns whether it is now selected."""

        with self._lock:
            if image_id in self._selected:
                self._selected.discard(image_id)
                return False
            self._selected.add(image_id)
            return True

    def clear_selection(self) -> None:
        with self._lock:
            self._selected.clear()


__all__ = ["ProposalBoard", "single_proposal_id"]
