"""Per-image workflow stages and cascading invalidation of downstream data."""

from __future__ import annotations

from dataclasses import replace

from quire.models import ImageSource, ImageWorkflow, Preparation, WorkflowStage, utc_timestamp
from quire.project import ProjectState
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "workflow"})


class WorkflowStateMachine:
    """Move images between stages and drop whatever a lower stage invalidates.

    Moving an image to a stage removes data produced by later stages:

    - ``ingested`` / ``prepared``: group memberships, alignments and annotations;
    - ``grouped``: alignments and annotations;
    - ``aligned``: annotations;
    - ``annotated``: nothing.

    The stage write and its cascade run in one project transaction.
    """

    def __init__(self, project: ProjectState) -> None:
        self._project = project

    @property
    def project(self) -> ProjectState:
        return self._project

    def set_stage(self, image_id: str, stage: WorkflowStage | str) -> ImageSource:
        target = WorkflowStage.parse(stage)
        with self._project.transaction():
            updated = self._project.update_image(image_id, lambda image: image.with_stage(target))
            self.invalidate_downstream(image_id, target)
        LOGGER.info("workflow_stage_set", extra={"image_id": image_id, "stage": target.value})
        return updated

    def record_preparation(self, image_id: str, preparation: Preparation) -> ImageSource:
        """Store confirmed geometry, move the image to ``prepared`` and cascade.

        The perceptual hash is cleared with it; it described the old geometry
        and is only restored once the new canonical image has been hashed.
        """

        with self._project.transaction():
            updated = self._project.update_image(
                image_id,
                lambda image: replace(
                    image,
                    preparation=preparation,
                    perceptual_hash=None,
                    workflow=ImageWorkflow(stage=WorkflowStage.PREPARED, updated_at=utc_timestamp()),
                ),
            )
            self.invalidate_downstream(image_id, WorkflowStage.PREPARED)
        LOGGER.info("workflow_preparation_recorded", extra={"image_id": image_id, "rotation": preparation.rotation})
        return updated

    def invalidate_downstream(self, image_id: str, stage: WorkflowStage | str) -> None:
        index = WorkflowStage.parse(stage).index
        with self._project.transaction():
            if index <= WorkflowStage.PREPARED.index:
                self._project.remove_from_all_groups(image_id)
            if index <= WorkflowStage.GROUPED.index:
                self._project.remove_alignments_for_image(image_id)
            if index <= WorkflowStage.ALIGNED.index:
                self._project.remove_annotations_for_image(image_id)


__all__ = ["WorkflowStateMachine"]
