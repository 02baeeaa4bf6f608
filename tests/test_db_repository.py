"""Tests for taskpilot/db/repository.py: SQL against a real PostgreSQL.

Each test scopes its rows by a unique project/agent id so tests never see
each other's data.
"""

from datetime import UTC, datetime, timedelta

import pytest

from taskpilot.core.models import (
    ArtifactOutput,
    Checkpoint,
    Feature,
    Goal,
    GoalTaskMetadata,
    Milestone,
    OutputKind,
    PerformanceAttempt,
    Project,
    SessionMode,
    SessionSnapshot,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
    TrainingGoal,
    TrainingTaskMetadata,
)
from taskpilot.memory.checkpoint_store import CheckpointStore
from taskpilot.memory.performance_tracker import PerformanceTracker
from taskpilot.memory.session_tracker import SessionTracker
from taskpilot.orchestrator.task_store import TaskStore

from tests.conftest import requires_postgres


BASE = datetime(2024, 3, 1, tzinfo=UTC)


def _goal_task(project_id, goal_id="g1", priority=0, created_at=None):
    return Task(
        type=TaskType.CODE_GENERATION,
        project_id=project_id,
        priority=priority,
        metadata=GoalTaskMetadata(goal_id=goal_id, goal_title=f"Goal {goal_id}"),
        created_at=created_at or datetime.now(UTC),
    )


@requires_postgres
class TestProjectTree:
    def test_upsert_and_list(self, repository, unique_id):
        pid = f"proj-{unique_id}"
        repository.upsert_project(Project(id=pid, name="Shop", prompt="Build"))
        repository.upsert_feature(Feature(id=f"{pid}-f1", project_id=pid, title="Catalog"))
        repository.upsert_milestone(Milestone(id=f"{pid}-m1", feature_id=f"{pid}-f1", title="Listing"))
        repository.upsert_goal(Goal(id=f"{pid}-g1", milestone_id=f"{pid}-m1", title="List"))
        repository.upsert_goal(Goal(id=f"{pid}-g1", milestone_id=f"{pid}-m1", title="List v2", completed=True))

        assert repository.get_project(pid).prompt == "Build"
        assert [f.title for f in repository.list_features(pid)] == ["Catalog"]
        goals = repository.list_goals(f"{pid}-m1")
        assert len(goals) == 1
        assert goals[0].title == "List v2"
        assert goals[0].completed is True

    def test_unknown_project(self, repository, unique_id):
        assert repository.get_project(f"missing-{unique_id}") is None


@requires_postgres
class TestTasks:
    def test_create_get_round_trip(self, repository, unique_id):
        task = _goal_task(f"p-{unique_id}")
        repository.create_task(task)
        loaded = repository.get_task(task.id)
        assert loaded.id == task.id
        assert loaded.status == TaskStatus.PENDING
        assert isinstance(loaded.metadata, GoalTaskMetadata)
        assert loaded.goal_id == "g1"

    def test_training_metadata_round_trip(self, repository, unique_id):
        agent = f"agent-{unique_id}"
        task = Task(
            type=TaskType.AGENT_TRAINING,
            project_id="training-project",
            priority=2,
            metadata=TrainingTaskMetadata(
                agent_id=agent,
                skill_tag="testing",
                training_goal=TrainingGoal(title="Retrain testing skill", description="d"),
            ),
        )
        repository.create_task(task)
        found = repository.find_training_tasks(agent, "testing")
        assert [t.id for t in found] == [task.id]
        assert found[0].metadata.training_goal.title == "Retrain testing skill"
        repository.delete_task(task.id)

    def test_claim_order(self, repository, unique_id):
        pid = f"p-{unique_id}"
        low = _goal_task(pid, "low", priority=0, created_at=BASE)
        high_old = _goal_task(pid, "h1", priority=5, created_at=BASE + timedelta(seconds=1))
        high_new = _goal_task(pid, "h2", priority=5, created_at=BASE + timedelta(seconds=2))
        for task in (high_new, low, high_old):
            repository.create_task(task)

        claimed = [repository.claim_next_task(pid) for _ in range(3)]
        assert [t.id for t in claimed] == [high_old.id, high_new.id, low.id]
        assert all(t.status == TaskStatus.IN_PROGRESS for t in claimed)
        assert repository.claim_next_task(pid) is None

    def test_update_status_with_expected(self, repository, unique_id):
        task = _goal_task(f"p-{unique_id}")
        repository.create_task(task)
        assert repository.update_task_status(task.id, TaskStatus.FAILED, expected=TaskStatus.IN_PROGRESS) is None
        updated = repository.update_task_status(task.id, TaskStatus.IN_PROGRESS, expected=TaskStatus.PENDING)
        assert updated.status == TaskStatus.IN_PROGRESS

    def test_summary_and_delete(self, repository, unique_id):
        pid = f"p-{unique_id}"
        a = _goal_task(pid, "a")
        repository.create_task(a)
        repository.create_task(_goal_task(pid, "b"))
        assert repository.get_task_status_summary(pid) == {"pending": 2}
        assert repository.delete_task(a.id) is True
        assert repository.delete_task(a.id) is False
        assert len(repository.list_tasks(project_id=pid)) == 1
        assert len(repository.find_tasks_for_goal(pid, "b")) == 1

    def test_task_store_over_postgres(self, repository, unique_id):
        pid = f"p-{unique_id}"
        store = TaskStore(repository)
        first = store.enqueue(_spec(pid, "g1"))
        store.enqueue(_spec(pid, "g2"))
        claimed = store.next_ready(pid)
        assert claimed.id == first.id
        done = store.set_status(claimed.id, TaskStatus.COMPLETED)
        assert done.status == TaskStatus.COMPLETED
        assert store.status_summary(pid)["completed"] == 1


def _spec(project_id, goal_id):
    return TaskSpec(
        type=TaskType.CODE_GENERATION,
        project_id=project_id,
        metadata=GoalTaskMetadata(goal_id=goal_id, goal_title=goal_id),
    )


@requires_postgres
class TestSessionsAndCheckpoints:
    def test_session_retention(self, repository, unique_id):
        agent = f"agent-{unique_id}"
        tracker = SessionTracker(repository, max_per_agent=3)
        for i in range(5):
            tracker.save(SessionSnapshot(
                agent_id=agent,
                project_id="p",
                task_summary=f"t{i}",
                mode=SessionMode.BUILD,
                timestamp=BASE + timedelta(minutes=i),
            ))
        assert [s.task_summary for s in tracker.history_for(agent)] == ["t4", "t3", "t2"]

    def test_checkpoint_retention(self, repository, unique_id):
        pid = f"p-{unique_id}"
        store = CheckpointStore(repository, max_per_project=5)
        created = [store.create(pid, "g1", f"s{i}", f"code {i}") for i in range(7)]
        remaining = store.list_by_project(pid)
        assert [c.id for c in remaining] == [c.id for c in reversed(created[2:])]
        assert store.get(created[0].id) is None
        assert store.get(created[6].id).artifact_content == "code 6"

    def test_checkpoint_timestamp_ties_use_insert_order(self, repository, unique_id):
        pid = f"p-{unique_id}"
        first = Checkpoint(project_id=pid, goal_id="g", summary="a", artifact_content="x", timestamp=BASE)
        second = Checkpoint(project_id=pid, goal_id="g", summary="b", artifact_content="y", timestamp=BASE)
        repository.save_checkpoint(first)
        repository.save_checkpoint(second)
        assert [c.id for c in repository.list_checkpoints_by_project(pid)] == [second.id, first.id]


@requires_postgres
class TestOutputsAndAttempts:
    def test_outputs(self, repository, unique_id):
        pid = f"p-{unique_id}"
        cp = Checkpoint(project_id=pid, goal_id="g", summary="s", artifact_content="x")
        repository.save_output(ArtifactOutput(project_id=pid, goal_id="g", content="{}"))
        repository.save_output(ArtifactOutput(
            project_id=pid, goal_id="g", kind=OutputKind.ROLLBACK, content="x",
            source_checkpoint_id=cp.id,
        ))
        rollbacks = repository.list_outputs(pid, kind=OutputKind.ROLLBACK)
        assert len(rollbacks) == 1
        assert rollbacks[0].source_checkpoint_id == cp.id
        assert len(repository.list_outputs(pid)) == 2

    def test_attempts_and_stats(self, repository, unique_id):
        agent = f"agent-{unique_id}"
        for i, success in enumerate([False, False, True]):
            repository.log_attempt(PerformanceAttempt(
                agent_id=agent,
                skill_tag="testing",
                task_type="code_generation",
                success=success,
                fail_reason=None if success else f"reason {i}",
                timestamp=BASE + timedelta(minutes=i),
            ))
        assert repository.list_skill_tags(agent) == ["testing"]
        stats = PerformanceTracker(repository).stats_for(agent, "testing")
        assert stats.accuracy == 33.33
        assert stats.recent_fails == ["reason 1", "reason 0"]
