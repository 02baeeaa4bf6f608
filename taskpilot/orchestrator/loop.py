"""Execution loop for TaskPilot.

Expands a project's goals into tasks, then polls the task store and runs
each claimed task to a terminal status:

  snapshot -> prompt (role + memory digest + behavior instructions)
           -> generate -> validate -> output/checkpoint/attempt -> status

Generation and validation failures end the task as failed; there is no
automatic retry. Storage failures keep the computed outcome and replay the
remaining writes on the next cycle, committing the terminal status last.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from taskpilot.core.config import OrchestratorConfig, PromptLoader
from taskpilot.core.exceptions import (
    ForbiddenError,
    GenerationError,
    GenerationTimeoutError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from taskpilot.core.models import (
    ArtifactOutput,
    Checkpoint,
    GeneratedArtifact,
    GoalTaskMetadata,
    OutputKind,
    SessionMode,
    SessionSnapshot,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
    TrainingTaskMetadata,
)
from taskpilot.db.repository import Repository
from taskpilot.llm.generation import Generator
from taskpilot.llm.response_parser import parse_generated_artifact
from taskpilot.memory.checkpoint_store import CheckpointStore
from taskpilot.memory.performance_tracker import PerformanceTracker, infer_skill_tag
from taskpilot.memory.session_tracker import SessionTracker
from taskpilot.orchestrator import events
from taskpilot.orchestrator.events import EventBus
from taskpilot.orchestrator.project_tree import ProjectTree, iter_incomplete_goals
from taskpilot.orchestrator.task_store import TaskStore

logger = logging.getLogger("taskpilot.orchestrator.loop")

DEFAULT_BUILDER_PROMPT = (
    "You are an expert software developer. Generate working code for the given goal. "
    "Respond with ONLY valid JSON with the keys code, language, filename and description."
)
DEFAULT_TRAINING_PROMPT = (
    "You are an expert software developer practicing a weak skill. Solve the training "
    "exercise with a small working code sample. Respond with ONLY valid JSON with the "
    "keys code, language, filename and description."
)
INTERRUPTED_REASON = "interrupted"
TIMEOUT_REASON = "timeout"


@dataclass
class _PendingOutcome:
    """A task whose result is known but not yet fully persisted."""

    task: Task
    agent_id: str
    skill_tag: str
    artifact: Optional[GeneratedArtifact] = None
    fail_reason: Optional[str] = None
    output_done: bool = False
    checkpoint_done: bool = False
    attempt_done: bool = False
    checkpoint: Optional[Checkpoint] = None

    @property
    def success(self) -> bool:
        return self.artifact is not None


class ExecutionLoop:
    """Orchestrates goal expansion and the poll-execute cycle for one agent.

    Injected dependencies:
        task_store: Durable task queue.
        session_tracker: Snapshot log for resume.
        checkpoint_store: Per-goal artifact snapshots.
        performance_tracker: Attempt log and prompt shaping text.
        generator: Generation capability for goal and training tasks.
        project_tree: Read-only feature/milestone/goal access.
        repository: Artifact output writes.
        event_bus: Lifecycle event sink.
        config: Orchestrator settings (agent id, delays, timeouts).
        prompts: Prompt template loader.
    """

    def __init__(
        self,
        task_store: TaskStore,
        session_tracker: SessionTracker,
        checkpoint_store: CheckpointStore,
        performance_tracker: PerformanceTracker,
        generator: Generator,
        project_tree: ProjectTree,
        repository: Repository,
        event_bus: EventBus,
        config: Optional[OrchestratorConfig] = None,
        prompts: Optional[PromptLoader] = None,
        training_max_tokens: int = 500,
    ):
        self.task_store = task_store
        self.session_tracker = session_tracker
        self.checkpoint_store = checkpoint_store
        self.performance_tracker = performance_tracker
        self.generator = generator
        self.project_tree = project_tree
        self.repository = repository
        self.event_bus = event_bus
        self.config = config or OrchestratorConfig()
        self.prompts = prompts or PromptLoader()
        self.training_max_tokens = training_max_tokens
        self.agent_id = self.config.agent_id
        self._running = False
        self._wake = threading.Event()
        self._pending: Optional[_PendingOutcome] = None
        self._unstarted: Optional[Task] = None

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop before the next claim. An in-flight task still finishes."""
        if self._running:
            logger.info("Stopping execution loop for agent %s", self.agent_id)
        self._running = False
        self._wake.set()

    @property
    def has_deferred_work(self) -> bool:
        """True while a claimed task still owes writes or its terminal status."""
        return self._pending is not None or self._unstarted is not None

    def _sleep(self, seconds: float) -> None:
        if seconds > 0 and self._running:
            self._wake.wait(seconds)

    def _backoff(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._running:
            self._wake.wait(seconds)
        else:
            # Stopped with deferred writes; the wake flag is already set
            threading.Event().wait(seconds)

    def run(self, project_id: str, max_cycles: Optional[int] = None) -> int:
        """Run the loop for a project until stop() or max_cycles.

        Args:
            project_id: The project whose goals and tasks to process.
            max_cycles: Optional cap on poll cycles (idle polls count).

        Returns:
            Number of tasks brought to a terminal status.
        """
        self._running = True
        self._wake.clear()
        logger.info("Starting execution loop for project %s (agent %s)", project_id, self.agent_id)

        self.resume(project_id)
        try:
            if self.config.recover_interrupted_tasks:
                self.recover_interrupted(project_id)
            self.expand_goals(project_id)
        except StorageError:
            logger.exception("Startup bookkeeping failed for project %s", project_id)

        processed = 0
        cycles = 0
        while self._running or self.has_deferred_work:
            # Deferred work of a claimed task finishes even past stop() or max_cycles
            if not self.has_deferred_work and max_cycles is not None and cycles >= max_cycles:
                break
            cycles += 1
            try:
                task = self.run_once(project_id)
            except StorageError:
                logger.exception(
                    "Storage failure in execution loop; retrying in %.1fs",
                    self.config.storage_backoff_seconds,
                )
                self._backoff(self.config.storage_backoff_seconds)
                continue

            if task is None:
                logger.debug("No ready tasks for project %s", project_id)
                self._sleep(self.config.poll_interval_seconds)
                continue

            processed += 1
            logger.info("Task '%s' -> %s", task.title, task.status.value)
            self._sleep(self.config.inter_task_delay_seconds)

        self._running = False
        logger.info("Execution loop stopped after %d task(s)", processed)
        return processed

    def run_once(self, project_id: str) -> Optional[Task]:
        """Execute one cycle: finish deferred writes, or claim and run one task.

        Returns:
            The task brought to a terminal status, or None if nothing was ready.

        Raises:
            StorageError: Persistence failed; the outcome is kept for the next cycle.
        """
        if self._pending is not None:
            logger.info("Replaying deferred writes for task %s", self._pending.task.id)
            return self._commit(self._pending)

        if self._unstarted is not None:
            task, self._unstarted = self._unstarted, None
            return self._process(task)

        task = self.task_store.next_ready(project_id)
        if task is None:
            return None
        self._emit(events.TASK_STARTED, self._task_payload(task))
        return self._process(task)

    # -------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------

    def resume(self, project_id: str) -> Optional[SessionSnapshot]:
        """Announce the agent's last snapshot if it was for this project."""
        try:
            snapshot = self.session_tracker.last_for(self.agent_id)
        except StorageError:
            logger.exception("Could not read last session for agent %s", self.agent_id)
            return None
        if snapshot is None or snapshot.project_id != project_id:
            return None

        message = self.session_tracker.describe(snapshot)
        logger.info(message)
        self._emit(events.AGENT_SESSION_RESUMED, {
            "projectId": project_id,
            "agentId": self.agent_id,
            "session": snapshot.model_dump(mode="json"),
            "message": message,
        })
        return snapshot

    def recover_interrupted(self, project_id: str) -> list[Task]:
        """Finalize tasks a crashed run left in_progress as failed.

        Only tasks idle for longer than the generation timeout plus the
        recovery grace period count as interrupted.
        """
        stale_after = timedelta(
            seconds=self.config.generation_timeout_seconds + self.config.recovery_grace_seconds
        )
        recovered: list[Task] = []
        for task in self.task_store.interrupted(project_id, stale_after=stale_after):
            skill_tag, agent_id, task_type = self._attempt_identity(task)
            self.performance_tracker.record_attempt(
                agent_id=agent_id,
                skill_tag=skill_tag,
                task_type=task_type,
                success=False,
                fail_reason=INTERRUPTED_REASON,
                notes=f"Task: {task.title}, Project: {task.project_id}",
            )
            failed = self.task_store.set_status(task.id, TaskStatus.FAILED)
            logger.warning("Recovered interrupted task '%s' (%s) as failed", task.title, task.id)
            self._emit(events.TASK_FAILED, {
                **self._task_payload(failed),
                "error": INTERRUPTED_REASON,
            })
            recovered.append(failed)
        return recovered

    def expand_goals(self, project_id: str) -> list[Task]:
        """Enqueue one code_generation task per incomplete goal.

        Goals that already have a pending, in_progress or completed task are
        skipped; goals whose only tasks failed are enqueued again.
        """
        enqueued: list[Task] = []
        for feature, milestone, goal in iter_incomplete_goals(self.project_tree, project_id):
            if self.task_store.has_open_goal_task(project_id, goal.id):
                continue
            task = self.task_store.enqueue(TaskSpec(
                type=TaskType.CODE_GENERATION,
                project_id=project_id,
                priority=self.config.goal_task_priority,
                metadata=GoalTaskMetadata(
                    goal_id=goal.id,
                    goal_title=goal.title,
                    milestone_id=milestone.id,
                    feature_id=feature.id,
                ),
            ))
            self._emit(events.GOAL_ENQUEUED, {
                "projectId": project_id,
                "taskId": str(task.id),
                "goalId": goal.id,
                "goalTitle": goal.title,
            })
            enqueued.append(task)
        if enqueued:
            logger.info("Enqueued %d goal task(s) for project %s", len(enqueued), project_id)
        return enqueued

    # -------------------------------------------------------------------
    # Per-task processing
    # -------------------------------------------------------------------

    def _process(self, task: Task) -> Task:
        try:
            self._save_session(task)
            system_prompt, user_prompt, max_tokens = self._build_prompts(task)
        except StorageError:
            self._unstarted = task
            raise

        skill_tag, agent_id, _ = self._attempt_identity(task)
        outcome = _PendingOutcome(task=task, agent_id=agent_id, skill_tag=skill_tag)
        try:
            raw = self.generator.generate(
                system_prompt,
                user_prompt,
                max_tokens,
                timeout=self.config.generation_timeout_seconds,
            )
            outcome.artifact = parse_generated_artifact(raw)
        except GenerationTimeoutError as e:
            logger.warning("Generation timed out for task '%s': %s", task.title, e)
            outcome.fail_reason = TIMEOUT_REASON
        except (GenerationError, ValidationError) as e:
            logger.warning("Task '%s' failed: %s", task.title, e)
            outcome.fail_reason = str(e) or type(e).__name__

        self._pending = outcome
        return self._commit(outcome)

    def _commit(self, outcome: _PendingOutcome) -> Task:
        """Write outcome records in order, then the terminal status.

        Each completed step is flagged so a retry after a StorageError never
        repeats it.
        """
        task = outcome.task
        if outcome.artifact is not None:
            self._write_success_records(outcome, outcome.artifact)
        elif not outcome.attempt_done:
            self.performance_tracker.record_attempt(
                agent_id=outcome.agent_id,
                skill_tag=outcome.skill_tag,
                task_type=task.type.value,
                success=False,
                fail_reason=outcome.fail_reason,
                notes=f"Task: {task.title}, Project: {task.project_id}",
            )
            outcome.attempt_done = True

        final_status = TaskStatus.COMPLETED if outcome.success else TaskStatus.FAILED
        try:
            updated = self.task_store.set_status(task.id, final_status)
        except NotFoundError:
            logger.warning("Task %s was removed while running; dropping its status", task.id)
            self._pending = None
            return task
        except InvalidTransitionError as e:
            logger.warning("Task %s changed status while running; dropping its status: %s", task.id, e)
            self._pending = None
            return task
        self._pending = None

        payload = self._task_payload(updated)
        if outcome.success:
            self._emit(events.TASK_COMPLETED, payload)
        else:
            self._emit(events.TASK_FAILED, {**payload, "error": outcome.fail_reason})
        return updated

    def _write_success_records(self, outcome: _PendingOutcome, artifact: GeneratedArtifact) -> None:
        task = outcome.task
        is_goal = isinstance(task.metadata, GoalTaskMetadata)

        if not outcome.output_done:
            content: dict[str, Any] = {**artifact.model_dump(), "taskId": str(task.id)}
            if is_goal:
                content.update(goalId=task.metadata.goal_id, goalTitle=task.metadata.goal_title)
            else:
                content.update(skillTag=outcome.skill_tag, agentId=outcome.agent_id)
            self.repository.save_output(ArtifactOutput(
                project_id=task.project_id,
                goal_id=task.goal_id,
                kind=OutputKind.CODE if is_goal else OutputKind.TRAINING,
                content=json.dumps(content),
            ))
            outcome.output_done = True

        if is_goal and not outcome.checkpoint_done:
            outcome.checkpoint = self.checkpoint_store.create(
                project_id=task.project_id,
                goal_id=task.metadata.goal_id,
                summary=f"Generated {artifact.language} code for {task.metadata.goal_title}",
                artifact_content=artifact.code,
            )
            outcome.checkpoint_done = True

        if not outcome.attempt_done:
            self.performance_tracker.record_attempt(
                agent_id=outcome.agent_id,
                skill_tag=outcome.skill_tag,
                task_type=task.type.value,
                success=True,
                notes=f"Task: {task.title}, Project: {task.project_id}, Language: {artifact.language}",
            )
            outcome.attempt_done = True
            payload: dict[str, Any] = {
                **self._task_payload(task),
                **artifact.summary_payload(),
            }
            if is_goal:
                payload["goalId"] = task.metadata.goal_id
            if outcome.checkpoint is not None:
                payload["checkpointId"] = str(outcome.checkpoint.id)
            self._emit(events.CODE_GENERATED, payload)

    def _save_session(self, task: Task) -> SessionSnapshot:
        meta = task.metadata
        if isinstance(meta, GoalTaskMetadata):
            snapshot = SessionSnapshot(
                agent_id=self.agent_id,
                project_id=task.project_id,
                goal_id=meta.goal_id,
                feature_id=meta.feature_id,
                milestone_id=meta.milestone_id,
                task_summary=meta.goal_title,
                mode=SessionMode.BUILD,
            )
        else:
            snapshot = SessionSnapshot(
                agent_id=self.agent_id,
                project_id=task.project_id,
                task_summary=meta.training_goal.title,
                mode=SessionMode.OPTIMIZE,
            )
        self.session_tracker.save(snapshot)
        self._emit(events.AGENT_SESSION_SAVED, {
            "projectId": task.project_id,
            "taskId": str(task.id),
            "agentId": self.agent_id,
            "session": snapshot.model_dump(mode="json"),
        })
        return snapshot

    def _attempt_identity(self, task: Task) -> tuple[str, str, str]:
        """(skill_tag, agent_id, task_type) under which the attempt is recorded."""
        meta = task.metadata
        if isinstance(meta, TrainingTaskMetadata):
            return meta.skill_tag, meta.agent_id, TaskType.AGENT_TRAINING.value
        return infer_skill_tag(meta.goal_title), self.agent_id, task.type.value

    def _build_prompts(self, task: Task) -> tuple[str, str, int]:
        meta = task.metadata
        if isinstance(meta, TrainingTaskMetadata):
            role = self.prompts.load("training_exercise_system.txt", DEFAULT_TRAINING_PROMPT)
            system_prompt = self._shape_prompt(role, meta.agent_id, meta.training_goal.title)
            failures = "\n".join(f"- {r}" for r in meta.training_goal.fail_reasons) or "- none recorded"
            user_prompt = (
                f"Skill: {meta.skill_tag}\n"
                f"Current accuracy: {meta.current_accuracy:.0f}% (target {meta.target_accuracy:.0f}%)\n"
                f"Training goal: {meta.training_goal.title}\n"
                f"{meta.training_goal.description}\n\n"
                f"Recent failures:\n{failures}\n\n"
                "Write a practice solution for this training goal."
            )
            return system_prompt, user_prompt, self.training_max_tokens

        role = self.prompts.load("builder_system.txt", DEFAULT_BUILDER_PROMPT)
        system_prompt = self._shape_prompt(role, self.agent_id, meta.goal_title)
        user_prompt = (
            f"{self._project_context(task.project_id)}\n"
            f"Goal: {meta.goal_title}\n\n"
            "Generate working code for this goal."
        )
        return system_prompt, user_prompt, self.config.generation_max_tokens

    def _shape_prompt(self, role_prompt: str, agent_id: str, goal_title: str) -> str:
        parts = [role_prompt]
        digest = self.performance_tracker.memory_digest(agent_id)
        if digest:
            parts.append(digest)
        instructions = self.performance_tracker.behavior_instructions(agent_id, goal_title)
        if instructions:
            parts.append(f"Behavior Instructions:\n{instructions}")
        return "\n\n".join(parts)

    def _project_context(self, project_id: str) -> str:
        project = self.project_tree.get_project(project_id)
        if project is None:
            return f"Project: {project_id}"
        lines = [f"Project: {project.name}", f"Prompt: {project.prompt}", "", "Features:"]
        for feature in self.project_tree.features(project_id):
            lines.append(f"- {feature.title}: {feature.description or ''}".rstrip())
        return "\n".join(lines)

    # -------------------------------------------------------------------
    # Revert
    # -------------------------------------------------------------------

    def revert(self, checkpoint_id: uuid.UUID, project_id: str) -> ArtifactOutput:
        """Restore a checkpoint's content as a new rollback output.

        The checkpoint itself is never modified.

        Raises:
            NotFoundError: Unknown checkpoint id.
            ForbiddenError: Checkpoint belongs to another project.
        """
        checkpoint = self.checkpoint_store.get(checkpoint_id)
        if checkpoint is None:
            raise NotFoundError("checkpoint", checkpoint_id)
        if checkpoint.project_id != project_id:
            raise ForbiddenError("checkpoint", checkpoint_id, project_id)

        output = self.repository.save_output(ArtifactOutput(
            project_id=project_id,
            goal_id=checkpoint.goal_id,
            kind=OutputKind.ROLLBACK,
            content=checkpoint.artifact_content,
            source_checkpoint_id=checkpoint.id,
        ))
        logger.info("Reverted project %s to checkpoint %s", project_id, checkpoint.id)
        self._emit(events.CHECKPOINT_REVERTED, {
            "projectId": project_id,
            "checkpointId": str(checkpoint.id),
            "goalId": checkpoint.goal_id,
            "summary": checkpoint.summary,
            "outputId": str(output.id),
        })
        return output

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------

    @staticmethod
    def _task_payload(task: Task) -> dict[str, Any]:
        return {
            "projectId": task.project_id,
            "taskId": str(task.id),
            "goalTitle": task.title,
            "taskType": task.type.value,
            "status": task.status.value,
        }

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            self.event_bus.publish(event_type, payload)
        except Exception as e:
            logger.warning("Failed to emit %s: %s", event_type, e)
