"""Checkpoint store: durable per-goal artifact snapshots.

Checkpoints are immutable. The only way one disappears is retention
eviction once a project holds more than the cap.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from taskpilot.core.locks import KeyedLock
from taskpilot.core.models import Checkpoint
from taskpilot.db.repository import Repository

logger = logging.getLogger("taskpilot.memory.checkpoint_store")


class CheckpointStore:
    """Creates and lists checkpoints with a per-project cap.

    Injected dependencies:
        repository: Database access for the checkpoints table.
        max_per_project: Retention cap (default 20).
    """

    def __init__(self, repository: Repository, max_per_project: int = 20):
        if max_per_project < 1:
            raise ValueError("max_per_project must be at least 1")
        self.repository = repository
        self.max_per_project = max_per_project
        self._locks = KeyedLock()

    def create(
        self,
        project_id: str,
        goal_id: str,
        summary: str,
        artifact_content: str,
    ) -> Checkpoint:
        """Persist a checkpoint, then evict the project's oldest beyond the cap."""
        checkpoint = Checkpoint(
            project_id=project_id,
            goal_id=goal_id,
            summary=summary,
            artifact_content=artifact_content,
        )
        with self._locks.hold(project_id):
            self.repository.save_checkpoint(checkpoint)
            existing = self.repository.list_checkpoints_by_project(project_id)
            evicted = existing[self.max_per_project:]
            if evicted:
                self.repository.delete_checkpoints(c.id for c in evicted)
                logger.info(
                    "Evicted %d checkpoint(s) for project %s (cap %d)",
                    len(evicted), project_id, self.max_per_project,
                )
        logger.info("Checkpoint %s saved for goal %s: %s", checkpoint.id, goal_id, summary)
        return checkpoint

    def list_by_project(self, project_id: str) -> list[Checkpoint]:
        return self.repository.list_checkpoints_by_project(project_id)

    def list_by_goal(self, goal_id: str) -> list[Checkpoint]:
        return self.repository.list_checkpoints_by_goal(goal_id)

    def get(self, checkpoint_id: uuid.UUID) -> Optional[Checkpoint]:
        return self.repository.get_checkpoint(checkpoint_id)
