"""Training scanner: turns underperforming skills into retraining tasks."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from taskpilot.core.config import PromptLoader, TrainingConfig
from taskpilot.core.exceptions import GenerationError, TaskPilotError
from taskpilot.core.models import (
    SkillStats,
    Task,
    TaskSpec,
    TaskType,
    TrainingGoal,
    TrainingTaskMetadata,
)
from taskpilot.llm.generation import Generator
from taskpilot.memory.performance_tracker import PerformanceTracker
from taskpilot.orchestrator import events
from taskpilot.orchestrator.events import EventBus
from taskpilot.orchestrator.task_store import TaskStore

logger = logging.getLogger("taskpilot.orchestrator.training")

DEFAULT_TRAINER_PROMPT = (
    "You are a training goal generator for AI agents. Create a specific, actionable "
    "training goal to improve the agent's performance in a given skill area."
)


class TrainingScanner:
    """Periodic scan of the performance log for skills below threshold.

    Injected dependencies:
        performance_tracker: Source of per-skill stats.
        task_store: Where retraining tasks are enqueued.
        generator: Writes the training goal description.
        event_bus: Receives retraining_enqueued events.
        config: Agents to scan, training project, priority and target.
        underperformance_threshold: Accuracy below which a skill is retrained.
    """

    def __init__(
        self,
        performance_tracker: PerformanceTracker,
        task_store: TaskStore,
        generator: Generator,
        event_bus: EventBus,
        config: Optional[TrainingConfig] = None,
        prompts: Optional[PromptLoader] = None,
        underperformance_threshold: float = 70.0,
    ):
        self.performance_tracker = performance_tracker
        self.task_store = task_store
        self.generator = generator
        self.event_bus = event_bus
        self.config = config or TrainingConfig()
        self.prompts = prompts or PromptLoader()
        self.underperformance_threshold = underperformance_threshold
        self._stop = threading.Event()

    def scan(self) -> list[Task]:
        """Enqueue one retraining task per underperforming skill of each agent."""
        logger.info("Scanning %d agent(s) for low-performing skills", len(self.config.agents))
        created: list[Task] = []
        for agent_id in self.config.agents:
            weak = self.performance_tracker.underperforming(agent_id, self.underperformance_threshold)
            if not weak:
                logger.info("All skills performing well for agent %s", agent_id)
                continue
            logger.info("Found %d low-performing skill(s) for agent %s", len(weak), agent_id)
            for stats in weak:
                task = self._retrain(agent_id, stats)
                if task is not None:
                    created.append(task)
        return created

    def _retrain(self, agent_id: str, stats: SkillStats) -> Optional[Task]:
        if self.config.dedupe_pending and self.task_store.has_open_training_task(
            agent_id, stats.skill_tag
        ):
            logger.info(
                "Retraining for skill %s (agent %s) already queued; skipping",
                stats.skill_tag, agent_id,
            )
            return None

        try:
            goal = self.generate_training_goal(stats.skill_tag, stats.recent_fails)
        except GenerationError as e:
            logger.error("Could not generate training goal for skill %s: %s", stats.skill_tag, e)
            return None

        task = self.task_store.enqueue(TaskSpec(
            type=TaskType.AGENT_TRAINING,
            project_id=self.config.project_id,
            priority=self.config.task_priority,
            metadata=TrainingTaskMetadata(
                agent_id=agent_id,
                skill_tag=stats.skill_tag,
                training_goal=goal,
                target_accuracy=self.config.target_accuracy,
                current_accuracy=stats.accuracy,
            ),
        ))
        logger.info("Created training task for skill %s (agent %s)", stats.skill_tag, agent_id)
        try:
            self.event_bus.publish(events.RETRAINING_ENQUEUED, {
                "projectId": task.project_id,
                "taskId": str(task.id),
                "goalTitle": goal.title,
                "agentId": agent_id,
                "skillTag": stats.skill_tag,
                "currentAccuracy": stats.accuracy,
                "targetAccuracy": self.config.target_accuracy,
            })
        except Exception as e:
            logger.warning("Failed to emit %s: %s", events.RETRAINING_ENQUEUED, e)
        return task

    def generate_training_goal(self, skill_tag: str, fail_reasons: list[str]) -> TrainingGoal:
        """Ask the generator for a goal addressing the skill's recent failures.

        Raises:
            GenerationError: The generator failed or returned nothing.
        """
        system_prompt = self.prompts.load("trainer_system.txt", DEFAULT_TRAINER_PROMPT)
        reasons = ", ".join(fail_reasons) if fail_reasons else "none recorded"
        user_prompt = (
            f'Generate a training goal for skill: "{skill_tag}". '
            f"Recent failure reasons: {reasons}. "
            "Create a goal that addresses these specific weaknesses."
        )
        description = self.generator.generate(
            system_prompt,
            user_prompt,
            self.config.generation_max_tokens,
        ).strip()
        if not description:
            raise GenerationError(f"Empty training goal for skill {skill_tag}")
        return TrainingGoal(
            title=f"Retrain {skill_tag} skill",
            description=description,
            fail_reasons=list(fail_reasons),
        )

    def run_forever(self, interval_seconds: Optional[float] = None) -> int:
        """Scan on a fixed schedule until stop(). Returns the number of scans."""
        interval = interval_seconds if interval_seconds is not None else self.config.scan_interval_seconds
        self._stop.clear()
        scans = 0
        logger.info("Starting training schedule every %.0fs", interval)
        while not self._stop.is_set():
            try:
                self.scan()
            except TaskPilotError:
                logger.exception("Training scan failed")
            scans += 1
            self._stop.wait(interval)
        return scans

    def stop(self) -> None:
        self._stop.set()
