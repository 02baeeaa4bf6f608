"""Shared fixtures for TaskPilot tests.

Store, loop and scanner tests run against FakeRepository, an in-memory
store with the real Repository method signatures and ordering rules.
Tests requiring PostgreSQL use the requires_postgres skip marker.
"""

from __future__ import annotations

import itertools
import json
import os
import threading
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pytest
from dotenv import load_dotenv

# Load .env from project root so DATABASE_URL, API keys, etc. are available
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from taskpilot.core.config import (
    AppConfig,
    DatabaseConfig,
    ModelRegistry,
    OrchestratorConfig,
    PromptLoader,
    TrainingConfig,
    load_config,
    load_model_registry,
)
from taskpilot.core.exceptions import GenerationError, StorageError
from taskpilot.core.models import (
    ArtifactOutput,
    Checkpoint,
    Feature,
    Goal,
    Milestone,
    OutputKind,
    PerformanceAttempt,
    Project,
    SessionSnapshot,
    Task,
    TaskStatus,
    TaskType,
)
from taskpilot.memory.checkpoint_store import CheckpointStore
from taskpilot.memory.performance_tracker import PerformanceTracker
from taskpilot.memory.session_tracker import SessionTracker
from taskpilot.orchestrator.events import EventBus, RecordingSubscriber
from taskpilot.orchestrator.loop import ExecutionLoop
from taskpilot.orchestrator.project_tree import RepositoryProjectTree
from taskpilot.orchestrator.task_store import TaskStore
from taskpilot.orchestrator.training import TrainingScanner


# ---------------------------------------------------------------------------
# Service availability checks
# ---------------------------------------------------------------------------

def _get_db_config() -> DatabaseConfig:
    """Build a DatabaseConfig from environment or defaults."""
    db_url = os.getenv("DATABASE_URL")
    if db_url and db_url.startswith("postgresql://"):
        from urllib.parse import urlparse
        parsed = urlparse(db_url)
        return DatabaseConfig(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            dbname=(parsed.path[1:] if parsed.path and len(parsed.path) > 1 else "taskpilot"),
            user=parsed.username or "taskpilot",
            password=parsed.password or "taskpilot",
        )
    return DatabaseConfig()


def _postgres_available() -> bool:
    """Check if PostgreSQL is reachable."""
    try:
        import psycopg
        config = _get_db_config()
        conn = psycopg.connect(config.connection_string, connect_timeout=5)
        conn.close()
        return True
    except Exception:
        return False


requires_postgres = pytest.mark.skipif(
    not _postgres_available(),
    reason="PostgreSQL not available",
)


# ---------------------------------------------------------------------------
# In-memory fakes
# ---------------------------------------------------------------------------

class FakeRepository:
    """In-memory store with real Repository method signatures.

    Rows carry an insertion sequence so newest-first listings break
    timestamp ties the same way the SQL does (timestamp DESC, seq DESC).
    Use fail_next() to make a method raise StorageError.
    """

    def __init__(self):
        self._seq = itertools.count(1)
        self._lock = threading.Lock()
        self.projects: dict[str, Project] = {}
        self.features: list[Feature] = []
        self.milestones: list[Milestone] = []
        self.goals: list[Goal] = []
        self.tasks: dict[uuid.UUID, tuple[int, Task]] = {}
        self.sessions: list[tuple[int, SessionSnapshot]] = []
        self.checkpoints: list[tuple[int, Checkpoint]] = []
        self.outputs: list[ArtifactOutput] = []
        self.attempts: list[tuple[int, PerformanceAttempt]] = []
        self._failures: dict[str, int] = {}
        self.calls: list[str] = []

    def fail_next(self, method: str, times: int = 1) -> None:
        self._failures[method] = self._failures.get(method, 0) + times

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        remaining = self._failures.get(method, 0)
        if remaining:
            self._failures[method] = remaining - 1
            raise StorageError(f"Query failed: simulated outage in {method}")

    # --- project tree ---

    def upsert_project(self, project: Project) -> Project:
        self._enter("upsert_project")
        self.projects[project.id] = project
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        return self.projects.get(project_id)

    def list_projects(self) -> list[Project]:
        return list(self.projects.values())

    def _upsert(self, rows: list, item: Any) -> Any:
        for i, existing in enumerate(rows):
            if existing.id == item.id:
                rows[i] = item
                return item
        rows.append(item)
        return item

    def upsert_feature(self, feature: Feature) -> Feature:
        return self._upsert(self.features, feature)

    def upsert_milestone(self, milestone: Milestone) -> Milestone:
        return self._upsert(self.milestones, milestone)

    def upsert_goal(self, goal: Goal) -> Goal:
        return self._upsert(self.goals, goal)

    def list_features(self, project_id: str) -> list[Feature]:
        return [f for f in self.features if f.project_id == project_id]

    def list_milestones(self, feature_id: str) -> list[Milestone]:
        return [m for m in self.milestones if m.feature_id == feature_id]

    def list_goals(self, milestone_id: str) -> list[Goal]:
        return [g for g in self.goals if g.milestone_id == milestone_id]

    # --- tasks ---

    def create_task(self, task: Task) -> Task:
        self._enter("create_task")
        with self._lock:
            self.tasks[task.id] = (next(self._seq), task.model_copy(deep=True))
        return task

    def get_task(self, task_id: uuid.UUID) -> Optional[Task]:
        self._enter("get_task")
        entry = self.tasks.get(task_id)
        return entry[1].model_copy(deep=True) if entry else None

    def claim_next_task(self, project_id: Optional[str] = None) -> Optional[Task]:
        self._enter("claim_next_task")
        with self._lock:
            candidates = [
                (seq, t) for seq, t in self.tasks.values()
                if t.status == TaskStatus.PENDING
                and (project_id is None or t.project_id == project_id)
            ]
            if not candidates:
                return None
            seq, task = min(candidates, key=lambda e: (-e[1].priority, e[1].created_at, e[0]))
            claimed = task.model_copy(update={
                "status": TaskStatus.IN_PROGRESS,
                "updated_at": datetime.now(UTC),
            })
            self.tasks[task.id] = (seq, claimed)
            return claimed.model_copy(deep=True)

    def update_task_status(
        self,
        task_id: uuid.UUID,
        status: TaskStatus,
        expected: Optional[TaskStatus] = None,
    ) -> Optional[Task]:
        self._enter("update_task_status")
        with self._lock:
            entry = self.tasks.get(task_id)
            if entry is None:
                return None
            seq, task = entry
            if expected is not None and task.status != expected:
                return None
            updated = task.model_copy(update={"status": status, "updated_at": datetime.now(UTC)})
            self.tasks[task_id] = (seq, updated)
            return updated.model_copy(deep=True)

    def delete_task(self, task_id: uuid.UUID) -> bool:
        self._enter("delete_task")
        return self.tasks.pop(task_id, None) is not None

    def _ordered_tasks(self) -> list[Task]:
        entries = sorted(self.tasks.values(), key=lambda e: (-e[1].priority, e[1].created_at, e[0]))
        return [t.model_copy(deep=True) for _, t in entries]

    def list_tasks(
        self,
        project_id: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        task_type: Optional[TaskType] = None,
    ) -> list[Task]:
        self._enter("list_tasks")
        return [
            t for t in self._ordered_tasks()
            if (project_id is None or t.project_id == project_id)
            and (status is None or t.status == status)
            and (task_type is None or t.type == task_type)
        ]

    def find_tasks_for_goal(self, project_id: str, goal_id: str) -> list[Task]:
        self._enter("find_tasks_for_goal")
        return [
            t for t in self._ordered_tasks()
            if t.project_id == project_id and t.goal_id == goal_id
        ]

    def find_training_tasks(self, agent_id: str, skill_tag: str) -> list[Task]:
        self._enter("find_training_tasks")
        return [
            t for t in self._ordered_tasks()
            if t.type == TaskType.AGENT_TRAINING
            and t.metadata.agent_id == agent_id
            and t.metadata.skill_tag == skill_tag
        ]

    def get_task_status_summary(self, project_id: Optional[str] = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for t in self.list_tasks(project_id=project_id):
            counts[t.status.value] = counts.get(t.status.value, 0) + 1
        return counts

    # --- sessions ---

    def save_session_snapshot(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        self._enter("save_session_snapshot")
        self.sessions.append((next(self._seq), snapshot))
        return snapshot

    def list_session_snapshots(self, agent_id: str) -> list[SessionSnapshot]:
        rows = [e for e in self.sessions if e[1].agent_id == agent_id]
        rows.sort(key=lambda e: (e[1].timestamp, e[0]), reverse=True)
        return [s for _, s in rows]

    def delete_session_snapshots(self, snapshot_ids: Iterable[uuid.UUID]) -> int:
        ids = set(snapshot_ids)
        before = len(self.sessions)
        self.sessions = [e for e in self.sessions if e[1].id not in ids]
        return before - len(self.sessions)

    # --- checkpoints ---

    def save_checkpoint(self, checkpoint: Checkpoint) -> Checkpoint:
        self._enter("save_checkpoint")
        self.checkpoints.append((next(self._seq), checkpoint))
        return checkpoint

    def get_checkpoint(self, checkpoint_id: uuid.UUID) -> Optional[Checkpoint]:
        for _, c in self.checkpoints:
            if c.id == checkpoint_id:
                return c
        return None

    def _newest_checkpoints(self, predicate: Callable[[Checkpoint], bool]) -> list[Checkpoint]:
        rows = [e for e in self.checkpoints if predicate(e[1])]
        rows.sort(key=lambda e: (e[1].timestamp, e[0]), reverse=True)
        return [c for _, c in rows]

    def list_checkpoints_by_project(self, project_id: str) -> list[Checkpoint]:
        return self._newest_checkpoints(lambda c: c.project_id == project_id)

    def list_checkpoints_by_goal(self, goal_id: str) -> list[Checkpoint]:
        return self._newest_checkpoints(lambda c: c.goal_id == goal_id)

    def delete_checkpoints(self, checkpoint_ids: Iterable[uuid.UUID]) -> int:
        ids = set(checkpoint_ids)
        before = len(self.checkpoints)
        self.checkpoints = [e for e in self.checkpoints if e[1].id not in ids]
        return before - len(self.checkpoints)

    # --- outputs ---

    def save_output(self, output: ArtifactOutput) -> ArtifactOutput:
        self._enter("save_output")
        self.outputs.append(output)
        return output

    def list_outputs(self, project_id: str, kind: Optional[OutputKind] = None) -> list[ArtifactOutput]:
        rows = [
            o for o in self.outputs
            if o.project_id == project_id and (kind is None or o.kind == kind)
        ]
        return list(reversed(rows))

    # --- attempts ---

    def log_attempt(self, attempt: PerformanceAttempt) -> PerformanceAttempt:
        self._enter("log_attempt")
        self.attempts.append((next(self._seq), attempt))
        return attempt

    def list_attempts(self, agent_id: str, skill_tag: str) -> list[PerformanceAttempt]:
        self._enter("list_attempts")
        rows = [
            e for e in self.attempts
            if e[1].agent_id == agent_id and e[1].skill_tag == skill_tag
        ]
        rows.sort(key=lambda e: (e[1].timestamp, e[0]), reverse=True)
        return [a for _, a in rows]

    def list_skill_tags(self, agent_id: str) -> list[str]:
        self._enter("list_skill_tags")
        return sorted({a.skill_tag for _, a in self.attempts if a.agent_id == agent_id})


class FakeGenerator:
    """Scripted Generator: returns or raises queued responses in order.

    With an empty script it returns a valid artifact for the prompt.
    """

    def __init__(self, responses: Optional[list[Any]] = None):
        self.responses = list(responses or [])
        self.calls: list[dict[str, Any]] = []

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        timeout: Optional[float] = None,
    ) -> str:
        self.calls.append({
            "system_prompt": system_prompt,
            "user_prompt": user_prompt,
            "max_tokens": max_tokens,
            "timeout": timeout,
        })
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return artifact_json()


def artifact_json(code: str = "print('hello')", language: str = "python", **extra: Any) -> str:
    return json.dumps({
        "code": code,
        "language": language,
        "filename": extra.get("filename", "main.py"),
        "description": extra.get("description", "generated"),
    })


def age_task(repo: FakeRepository, task_id: uuid.UUID, seconds: float = 3600) -> Task:
    """Push a stored task's updated_at into the past, as if its run had crashed."""
    seq, task = repo.tasks[task_id]
    aged = task.model_copy(update={"updated_at": task.updated_at - timedelta(seconds=seconds)})
    repo.tasks[task_id] = (seq, aged)
    return aged


def record_attempts(
    repo: FakeRepository,
    agent_id: str,
    skill_tag: str,
    outcomes: list[bool],
    fail_reason: str = "boom",
    start: Optional[datetime] = None,
) -> None:
    """Append attempts oldest-first, one minute apart."""
    base = start or datetime(2024, 1, 1, tzinfo=UTC)
    for i, success in enumerate(outcomes):
        repo.log_attempt(PerformanceAttempt(
            agent_id=agent_id,
            skill_tag=skill_tag,
            task_type="code_generation",
            success=success,
            fail_reason=None if success else f"{fail_reason} {i}",
            timestamp=base + timedelta(minutes=i),
        ))


def seed_tree(repo: FakeRepository, project_id: str = "p1", goals: Optional[list[str]] = None) -> None:
    """One feature, one milestone, and the given goal titles (ids g1, g2, ...)."""
    repo.upsert_project(Project(id=project_id, name="Shop", prompt="Build a shop"))
    repo.upsert_feature(Feature(id=f"{project_id}-f1", project_id=project_id, title="Catalog"))
    repo.upsert_milestone(Milestone(id=f"{project_id}-m1", feature_id=f"{project_id}-f1", title="Listing"))
    for i, title in enumerate(goals or ["Implement product list"], start=1):
        repo.upsert_goal(Goal(id=f"g{i}", milestone_id=f"{project_id}-m1", title=title))


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config_dir() -> Path:
    return Path(__file__).parent.parent / "config"


@pytest.fixture
def app_config(config_dir: Path) -> AppConfig:
    return load_config(config_dir=config_dir)


@pytest.fixture
def model_registry(config_dir: Path) -> ModelRegistry:
    return load_model_registry(config_dir=config_dir)


@pytest.fixture
def fast_config() -> OrchestratorConfig:
    return OrchestratorConfig(
        agent_id="agent-a",
        poll_interval_seconds=0,
        inter_task_delay_seconds=0,
        storage_backoff_seconds=0,
        generation_timeout_seconds=5,
    )


# ---------------------------------------------------------------------------
# Store / loop fixtures (in-memory)
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def event_bus(recorder: RecordingSubscriber) -> EventBus:
    bus = EventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def make_loop(fake_repo, event_bus, generator, fast_config, config_dir):
    """Build an ExecutionLoop over the fake repository."""

    def _make(
        generator_override: Optional[FakeGenerator] = None,
        max_checkpoints: int = 20,
        config: Optional[OrchestratorConfig] = None,
    ) -> ExecutionLoop:
        return ExecutionLoop(
            task_store=TaskStore(fake_repo),
            session_tracker=SessionTracker(fake_repo, max_per_agent=5),
            checkpoint_store=CheckpointStore(fake_repo, max_per_project=max_checkpoints),
            performance_tracker=PerformanceTracker(fake_repo),
            generator=generator_override or generator,
            project_tree=RepositoryProjectTree(fake_repo),
            repository=fake_repo,
            event_bus=event_bus,
            config=config or fast_config,
            prompts=PromptLoader(config_dir / "prompts"),
        )

    return _make


@pytest.fixture
def make_scanner(fake_repo, event_bus, generator, config_dir):
    def _make(
        generator_override: Optional[FakeGenerator] = None,
        config: Optional[TrainingConfig] = None,
    ) -> TrainingScanner:
        return TrainingScanner(
            performance_tracker=PerformanceTracker(fake_repo),
            task_store=TaskStore(fake_repo),
            generator=generator_override or generator,
            event_bus=event_bus,
            config=config or TrainingConfig(agents=["agent-a"]),
            prompts=PromptLoader(config_dir / "prompts"),
        )

    return _make


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_config() -> DatabaseConfig:
    return _get_db_config()


@pytest.fixture
def db_engine(db_config):
    """Real PostgreSQL engine: creates schema, yields, cleans up."""
    from taskpilot.db.engine import DatabaseEngine
    engine = DatabaseEngine(db_config)
    engine.initialize_schema()
    yield engine
    engine.close()


@pytest.fixture
def repository(db_engine):
    from taskpilot.db.repository import Repository
    return Repository(db_engine)


@pytest.fixture
def unique_id() -> str:
    """Per-test suffix so rows from different tests never collide."""
    return uuid.uuid4().hex[:8]


__all__ = [
    "FakeGenerator",
    "FakeRepository",
    "GenerationError",
    "artifact_json",
    "record_attempts",
    "requires_postgres",
    "seed_tree",
]
