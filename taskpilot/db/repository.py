"""Data access layer for TaskPilot.

All SQL queries live here. Stores never write raw SQL; they call Repository
methods that return Pydantic models. Retention and ordering rules belong to
the stores, so every method here is a single statement or a short
transaction.
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Any, Iterable, Optional

from taskpilot.core.models import (
    ArtifactOutput,
    Checkpoint,
    Feature,
    Goal,
    Milestone,
    OutputKind,
    PerformanceAttempt,
    Project,
    SessionMode,
    SessionSnapshot,
    Task,
    TaskStatus,
    TaskType,
)
from taskpilot.db.engine import DatabaseEngine


class Repository:
    """Data access layer wrapping DatabaseEngine with typed methods."""

    def __init__(self, engine: DatabaseEngine):
        self.engine = engine

    # -------------------------------------------------------------------
    # Project tree
    # -------------------------------------------------------------------

    def upsert_project(self, project: Project) -> Project:
        self.engine.execute(
            """INSERT INTO projects (id, name, prompt, created_at)
               VALUES (%s, %s, %s, %s)
               ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, prompt = EXCLUDED.prompt""",
            [project.id, project.name, project.prompt, project.created_at],
        )
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        row = self.engine.fetch_one("SELECT * FROM projects WHERE id = %s", [project_id])
        if row is None:
            return None
        return _row_to_project(row)

    def list_projects(self) -> list[Project]:
        rows = self.engine.fetch_all("SELECT * FROM projects ORDER BY created_at ASC")
        return [_row_to_project(r) for r in rows]

    def upsert_feature(self, feature: Feature) -> Feature:
        self.engine.execute(
            """INSERT INTO features (id, project_id, title, description, completed)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title,
                   description = EXCLUDED.description, completed = EXCLUDED.completed""",
            [feature.id, feature.project_id, feature.title, feature.description, feature.completed],
        )
        return feature

    def upsert_milestone(self, milestone: Milestone) -> Milestone:
        self.engine.execute(
            """INSERT INTO milestones (id, feature_id, title, description, completed)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title,
                   description = EXCLUDED.description, completed = EXCLUDED.completed""",
            [milestone.id, milestone.feature_id, milestone.title,
             milestone.description, milestone.completed],
        )
        return milestone

    def upsert_goal(self, goal: Goal) -> Goal:
        self.engine.execute(
            """INSERT INTO goals (id, milestone_id, title, description, completed)
               VALUES (%s, %s, %s, %s, %s)
               ON CONFLICT (id) DO UPDATE SET title = EXCLUDED.title,
                   description = EXCLUDED.description, completed = EXCLUDED.completed""",
            [goal.id, goal.milestone_id, goal.title, goal.description, goal.completed],
        )
        return goal

    def list_features(self, project_id: str) -> list[Feature]:
        rows = self.engine.fetch_all(
            "SELECT * FROM features WHERE project_id = %s ORDER BY position ASC", [project_id]
        )
        return [_row_to_feature(r) for r in rows]

    def list_milestones(self, feature_id: str) -> list[Milestone]:
        rows = self.engine.fetch_all(
            "SELECT * FROM milestones WHERE feature_id = %s ORDER BY position ASC", [feature_id]
        )
        return [_row_to_milestone(r) for r in rows]

    def list_goals(self, milestone_id: str) -> list[Goal]:
        rows = self.engine.fetch_all(
            "SELECT * FROM goals WHERE milestone_id = %s ORDER BY position ASC", [milestone_id]
        )
        return [_row_to_goal(r) for r in rows]

    # -------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        self.engine.execute(
            """INSERT INTO tasks (id, type, project_id, goal_id, priority, status, metadata,
                                  created_at, updated_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(task.id),
                task.type.value,
                task.project_id,
                task.goal_id,
                task.priority,
                task.status.value,
                json.dumps(task.metadata.model_dump(mode="json")),
                task.created_at,
                task.updated_at,
            ],
        )
        return task

    def get_task(self, task_id: uuid.UUID) -> Optional[Task]:
        row = self.engine.fetch_one("SELECT * FROM tasks WHERE id = %s", [str(task_id)])
        if row is None:
            return None
        return _row_to_task(row)

    def claim_next_task(self, project_id: Optional[str] = None) -> Optional[Task]:
        """Atomically pick the most urgent pending task and mark it in_progress.

        Highest priority first, then oldest created_at, then insertion order.
        SKIP LOCKED keeps concurrent claimers on distinct rows.
        """
        project_clause = "AND project_id = %s" if project_id is not None else ""
        params: list[Any] = [project_id] if project_id is not None else []
        row = self.engine.fetch_one(
            f"""
            UPDATE tasks SET status = 'in_progress', updated_at = now()
            WHERE id = (
                SELECT id FROM tasks
                WHERE status = 'pending' {project_clause}
                ORDER BY priority DESC, created_at ASC, seq ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """,
            params,
        )
        if row is None:
            return None
        return _row_to_task(row)

    def update_task_status(
        self,
        task_id: uuid.UUID,
        status: TaskStatus,
        expected: Optional[TaskStatus] = None,
    ) -> Optional[Task]:
        """Set a task's status. With ``expected``, only moves a row still in that status."""
        if expected is None:
            row = self.engine.fetch_one(
                """UPDATE tasks SET status = %s, updated_at = now()
                   WHERE id = %s RETURNING *""",
                [status.value, str(task_id)],
            )
        else:
            row = self.engine.fetch_one(
                """UPDATE tasks SET status = %s, updated_at = now()
                   WHERE id = %s AND status = %s RETURNING *""",
                [status.value, str(task_id), expected.value],
            )
        if row is None:
            return None
        return _row_to_task(row)

    def delete_task(self, task_id: uuid.UUID) -> bool:
        return self.engine.execute("DELETE FROM tasks WHERE id = %s", [str(task_id)]) > 0

    def list_tasks(
        self,
        project_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
    ) -> list[Task]:
        clauses: list[str] = []
        params: list[Any] = []
        if project_id is not None:
            clauses.append("project_id = %s")
            params.append(project_id)
        if status is not None:
            clauses.append("status = %s")
            params.append(status.value)
        if task_type is not None:
            clauses.append("type = %s")
            params.append(task_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.engine.fetch_all(
            f"SELECT * FROM tasks {where} ORDER BY priority DESC, created_at ASC, seq ASC",
            params,
        )
        return [_row_to_task(r) for r in rows]

    def find_tasks_for_goal(self, project_id: str, goal_id: str) -> list[Task]:
        rows = self.engine.fetch_all(
            """SELECT * FROM tasks WHERE project_id = %s AND goal_id = %s
               ORDER BY created_at ASC, seq ASC""",
            [project_id, goal_id],
        )
        return [_row_to_task(r) for r in rows]

    def find_training_tasks(self, agent_id: str, skill_tag: str) -> list[Task]:
        rows = self.engine.fetch_all(
            """SELECT * FROM tasks
               WHERE type = 'agent_training'
                 AND metadata->>'agent_id' = %s
                 AND metadata->>'skill_tag' = %s
               ORDER BY created_at ASC, seq ASC""",
            [agent_id, skill_tag],
        )
        return [_row_to_task(r) for r in rows]

    def get_task_status_summary(self, project_id: Optional[str] = None) -> dict[str, int]:
        """Return counts of tasks grouped by status."""
        if project_id is None:
            rows = self.engine.fetch_all(
                """
                SELECT status, COUNT(*) AS cnt
                FROM tasks
                GROUP BY status
                """
            )
        else:
            rows = self.engine.fetch_all(
                """
                SELECT status, COUNT(*) AS cnt
                FROM tasks
                WHERE project_id = %s
                GROUP BY status
                """,
                [project_id],
            )
        return {str(row["status"]): int(row["cnt"]) for row in rows}

    # -------------------------------------------------------------------
    # Session snapshots
    # -------------------------------------------------------------------

    def save_session_snapshot(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        self.engine.execute(
            """INSERT INTO session_snapshots
                   (id, agent_id, project_id, goal_id, feature_id, milestone_id,
                    task_summary, mode, timestamp)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(snapshot.id),
                snapshot.agent_id,
                snapshot.project_id,
                snapshot.goal_id,
                snapshot.feature_id,
                snapshot.milestone_id,
                snapshot.task_summary,
                snapshot.mode.value,
                snapshot.timestamp,
            ],
        )
        return snapshot

    def list_session_snapshots(self, agent_id: str) -> list[SessionSnapshot]:
        """Newest first."""
        rows = self.engine.fetch_all(
            """SELECT * FROM session_snapshots WHERE agent_id = %s
               ORDER BY timestamp DESC, seq DESC""",
            [agent_id],
        )
        return [_row_to_session_snapshot(r) for r in rows]

    def delete_session_snapshots(self, snapshot_ids: Iterable[uuid.UUID]) -> int:
        ids = [str(i) for i in snapshot_ids]
        if not ids:
            return 0
        return self.engine.execute(
            "DELETE FROM session_snapshots WHERE id = ANY(%s::uuid[])", [ids]
        )

    # -------------------------------------------------------------------
    # Checkpoints
    # -------------------------------------------------------------------

    def save_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        self.engine.execute(
            """INSERT INTO checkpoints (id, project_id, goal_id, summary, artifact_content, timestamp)
               VALUES (%s, %s, %s, %s, %s, %s)""",
            [
                str(checkpoint.id),
                checkpoint.project_id,
                checkpoint.goal_id,
                checkpoint.summary,
                checkpoint.artifact_content,
                checkpoint.timestamp,
            ],
        )
        return checkpoint

    def get_checkpoint(self, checkpoint_id: uuid.UUID) -> Optional[Checkpoint]:
        row = self.engine.fetch_one(
            "SELECT * FROM checkpoints WHERE id = %s", [str(checkpoint_id)]
        )
        if row is None:
            return None
        return _row_to_checkpoint(row)

    def list_checkpoints_by_project(self, project_id: str) -> list[Checkpoint]:
        rows = self.engine.fetch_all(
            """SELECT * FROM checkpoints WHERE project_id = %s
               ORDER BY timestamp DESC, seq DESC""",
            [project_id],
        )
        return [_row_to_checkpoint(r) for r in rows]

    def list_checkpoints_by_goal(self, goal_id: str) -> list[Checkpoint]:
        rows = self.engine.fetch_all(
            """SELECT * FROM checkpoints WHERE goal_id = %s
               ORDER BY timestamp DESC, seq DESC""",
            [goal_id],
        )
        return [_row_to_checkpoint(r) for r in rows]

    def delete_checkpoints(self, checkpoint_ids: Iterable[uuid.UUID]) -> int:
        ids = [str(i) for i in checkpoint_ids]
        if not ids:
            return 0
        return self.engine.execute(
            "DELETE FROM checkpoints WHERE id = ANY(%s::uuid[])", [ids]
        )

    # -------------------------------------------------------------------
    # Artifact outputs
    # -------------------------------------------------------------------

    def save_output(self, output: ArtifactOutput) -> ArtifactOutput:
        self.engine.execute(
            """INSERT INTO artifact_outputs
                   (id, project_id, goal_id, kind, content, source_checkpoint_id, created_at)
               VALUES (%s, %s, %s, %s, %s, %s, %s)""",
            [
                str(output.id),
                output.project_id,
                output.goal_id,
                output.kind.value,
                output.content,
                str(output.source_checkpoint_id) if output.source_checkpoint_id else None,
                output.created_at,
            ],
        )
        return output

    def list_outputs(
        self, project_id: str, kind: Optional[OutputKind] = None
    ) -> list[ArtifactOutput]:
        if kind is None:
            rows = self.engine.fetch_all(
                "SELECT * FROM artifact_outputs WHERE project_id = %s ORDER BY created_at DESC",
                [project_id],
            )
        else:
            rows = self.engine.fetch_all(
                """SELECT * FROM artifact_outputs WHERE project_id = %s AND kind = %s
                   ORDER BY created_at DESC""",
                [project_id, kind.value],
            )
        return [_row_to_output(r) for r in rows]

    # -------------------------------------------------------------------
    # Performance attempts (append-only)
    # -------------------------------------------------------------------

    def log_attempt(self, attempt: PerformanceAttempt) -> PerformanceAttempt:
        self.engine.execute(
            """INSERT INTO performance_attempts
                   (id, agent_id, skill_tag, task_type, success, fail_reason, notes, timestamp)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
            [
                str(attempt.id),
                attempt.agent_id,
                attempt.skill_tag,
                attempt.task_type,
                attempt.success,
                attempt.fail_reason,
                attempt.notes,
                attempt.timestamp,
            ],
        )
        return attempt

    def list_attempts(self, agent_id: str, skill_tag: str) -> list[PerformanceAttempt]:
        """Newest first."""
        rows = self.engine.fetch_all(
            """SELECT * FROM performance_attempts
               WHERE agent_id = %s AND skill_tag = %s
               ORDER BY timestamp DESC, seq DESC""",
            [agent_id, skill_tag],
        )
        return [_row_to_attempt(r) for r in rows]

    def list_skill_tags(self, agent_id: str) -> list[str]:
        rows = self.engine.fetch_all(
            """SELECT DISTINCT skill_tag FROM performance_attempts
               WHERE agent_id = %s ORDER BY skill_tag""",
            [agent_id],
        )
        return [str(r["skill_tag"]) for r in rows]


# ---------------------------------------------------------------------------
# Row-to-model converters
# ---------------------------------------------------------------------------

def _row_to_project(row: dict) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        prompt=row.get("prompt") or "",
        created_at=row.get("created_at", datetime.now(UTC)),
    )


def _row_to_feature(row: dict) -> Feature:
    return Feature(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row.get("description"),
        completed=bool(row.get("completed", False)),
    )


def _row_to_milestone(row: dict) -> Milestone:
    return Milestone(
        id=row["id"],
        feature_id=row["feature_id"],
        title=row["title"],
        description=row.get("description"),
        completed=bool(row.get("completed", False)),
    )


def _row_to_goal(row: dict) -> Goal:
    return Goal(
        id=row["id"],
        milestone_id=row["milestone_id"],
        title=row["title"],
        description=row.get("description"),
        completed=bool(row.get("completed", False)),
    )


def _row_to_task(row: dict) -> Task:
    metadata = row["metadata"]
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Task(
        id=uuid.UUID(str(row["id"])),
        type=TaskType(row["type"]),
        project_id=row["project_id"],
        priority=row.get("priority", 0),
        status=TaskStatus(row["status"]),
        metadata=metadata,
        created_at=row.get("created_at", datetime.now(UTC)),
        updated_at=row.get("updated_at", datetime.now(UTC)),
    )


def _row_to_session_snapshot(row: dict) -> SessionSnapshot:
    return SessionSnapshot(
        id=uuid.UUID(str(row["id"])),
        agent_id=row["agent_id"],
        project_id=row.get("project_id"),
        goal_id=row.get("goal_id"),
        feature_id=row.get("feature_id"),
        milestone_id=row.get("milestone_id"),
        task_summary=row.get("task_summary") or "",
        mode=SessionMode(row["mode"]),
        timestamp=row["timestamp"],
    )


def _row_to_checkpoint(row: dict) -> Checkpoint:
    return Checkpoint(
        id=uuid.UUID(str(row["id"])),
        project_id=row["project_id"],
        goal_id=row["goal_id"],
        summary=row["summary"],
        artifact_content=row["artifact_content"],
        timestamp=row["timestamp"],
    )


def _row_to_output(row: dict) -> ArtifactOutput:
    return ArtifactOutput(
        id=uuid.UUID(str(row["id"])),
        project_id=row["project_id"],
        goal_id=row.get("goal_id"),
        kind=OutputKind(row["kind"]),
        content=row["content"],
        source_checkpoint_id=(
            uuid.UUID(str(row["source_checkpoint_id"])) if row.get("source_checkpoint_id") else None
        ),
        created_at=row.get("created_at", datetime.now(UTC)),
    )


def _row_to_attempt(row: dict) -> PerformanceAttempt:
    return PerformanceAttempt(
        id=uuid.UUID(str(row["id"])),
        agent_id=row["agent_id"],
        skill_tag=row["skill_tag"],
        task_type=row["task_type"],
        success=bool(row["success"]),
        fail_reason=row.get("fail_reason"),
        notes=row.get("notes") or "",
        timestamp=row["timestamp"],
    )
