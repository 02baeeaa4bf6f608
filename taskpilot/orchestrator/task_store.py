"""Durable task queue for TaskPilot.

Ordering is priority first (higher is more urgent), then FIFO by
created_at. Tasks flow: pending -> in_progress -> {completed, failed}.
Statuses never move backward and never skip in_progress.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime, timedelta
from typing import Optional

from taskpilot.core.exceptions import InvalidTransitionError, NotFoundError
from taskpilot.core.models import Task, TaskSpec, TaskStatus, TaskType, TrainingTaskMetadata
from taskpilot.db.repository import Repository

logger = logging.getLogger("taskpilot.orchestrator.task_store")

# Legal state transitions; each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),  # Terminal
    TaskStatus.FAILED: set(),     # Terminal
}

OPEN_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class TaskStore:
    """Queue of work items backed by the tasks table.

    Claims are serialized by an in-process lock; the repository's claim
    statement uses SKIP LOCKED so separate processes never share a task
    either.

    Injected dependencies:
        repository: Database access for the tasks table.
    """

    def __init__(self, repository: Repository):
        self.repository = repository
        self._lock = threading.Lock()
        self._last_created_at: Optional[datetime] = None

    def _next_created_at(self) -> datetime:
        now = datetime.now(UTC)
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    def enqueue(self, spec: TaskSpec) -> Task:
        """Create a pending task from a caller-supplied spec."""
        with self._lock:
            created_at = self._next_created_at()
            task = Task(
                type=spec.type,
                project_id=spec.project_id,
                priority=spec.priority,
                status=TaskStatus.PENDING,
                metadata=spec.metadata,
                created_at=created_at,
                updated_at=created_at,
            )
            self.repository.create_task(task)
        logger.info(
            "Enqueued %s task '%s' (%s) for project %s at priority %d",
            task.type.value, task.title, task.id, task.project_id, task.priority,
        )
        return task

    def next_ready(self, project_id: Optional[str] = None) -> Optional[Task]:
        """Claim the most urgent pending task, moving it to in_progress.

        Args:
            project_id: Restrict the claim to one project's tasks.

        Returns:
            The claimed task (already in_progress), or None if nothing is pending.
        """
        with self._lock:
            task = self.repository.claim_next_task(project_id)
        if task is not None:
            logger.debug("Claimed task '%s' (%s)", task.title, task.id)
        return task

    def get(self, task_id: uuid.UUID) -> Task:
        task = self.repository.get_task(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def set_status(self, task_id: uuid.UUID, status: TaskStatus) -> Task:
        """Move a task to a new status.

        Setting the current status again is a no-op.

        Raises:
            NotFoundError: If no task has this id.
            InvalidTransitionError: If the move is backward or skips in_progress.
        """
        with self._lock:
            task = self.get(task_id)
            if task.status == status:
                return task
            if not self.can_transition(task.status, status):
                raise InvalidTransitionError(
                    f"Invalid transition: {task.status.value} -> {status.value} "
                    f"for task '{task.title}' ({task.id})"
                )
            updated = self.repository.update_task_status(task_id, status, expected=task.status)
            if updated is None:
                raise NotFoundError("task", task_id)
        logger.info("Task '%s': %s -> %s", task.title, task.status.value, status.value)
        return updated

    def can_transition(self, from_status: TaskStatus, to_status: TaskStatus) -> bool:
        """Check if a transition is legal."""
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    def remove(self, task_id: uuid.UUID) -> None:
        """Delete a task regardless of status."""
        with self._lock:
            if not self.repository.delete_task(task_id):
                raise NotFoundError("task", task_id)
        logger.info("Removed task %s", task_id)

    def list(
        self,
        project_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[Task]:
        return self.repository.list_tasks(project_id=project_id, status=status)

    def status_summary(self, project_id: Optional[str] = None) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        counts.update(self.repository.get_task_status_summary(project_id))
        return counts

    def has_open_goal_task(self, project_id: str, goal_id: str) -> bool:
        """True if the goal already has a pending, in_progress or completed task.

        A goal whose tasks all failed is open for another attempt.
        """
        tasks = self.repository.find_tasks_for_goal(project_id, goal_id)
        return any(t.status != TaskStatus.FAILED for t in tasks)

    def has_open_training_task(self, agent_id: str, skill_tag: str) -> bool:
        tasks = self.repository.find_training_tasks(agent_id, skill_tag)
        return any(
            t.status in OPEN_STATUSES
            and t.type == TaskType.AGENT_TRAINING
            and isinstance(t.metadata, TrainingTaskMetadata)
            for t in tasks
        )

    def interrupted(self, project_id: str, stale_after: Optional[timedelta] = None) -> list[Task]:
        """Tasks left in_progress, e.g. by a crash mid-execution.

        Args:
            project_id: Project to inspect.
            stale_after: Only tasks not updated for at least this long; fresher
                ones may still be running in another loop.
        """
        tasks = self.repository.list_tasks(project_id=project_id, status=TaskStatus.IN_PROGRESS)
        if stale_after is None:
            return tasks
        cutoff = datetime.now(UTC) - stale_after
        return [t for t in tasks if t.updated_at <= cutoff]
