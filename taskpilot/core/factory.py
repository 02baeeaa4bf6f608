"""Component factory for TaskPilot.

Creates and wires all infrastructure components (database, stores, LLM
client, event bus) so the execution loop and training scanner receive
fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from taskpilot.core.config import (
    AppConfig,
    ModelRegistry,
    PromptLoader,
    load_config,
    load_model_registry,
)
from taskpilot.db.engine import DatabaseEngine
from taskpilot.db.repository import Repository
from taskpilot.llm.client import OpenRouterClient
from taskpilot.llm.generation import OpenRouterGenerator
from taskpilot.llm.router import ModelRouter
from taskpilot.memory.checkpoint_store import CheckpointStore
from taskpilot.memory.performance_tracker import PerformanceTracker
from taskpilot.memory.session_tracker import SessionTracker
from taskpilot.orchestrator.events import EventBus, JsonlEventSink, logging_subscriber
from taskpilot.orchestrator.loop import ExecutionLoop
from taskpilot.orchestrator.project_tree import RepositoryProjectTree
from taskpilot.orchestrator.task_store import TaskStore
from taskpilot.orchestrator.training import TrainingScanner

logger = logging.getLogger("taskpilot.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components.

    The factory builds the bundle once; the CLI hands the pieces to the
    loop and scanner, or uses the stores directly for inspection commands.
    """

    config: AppConfig
    model_registry: ModelRegistry
    db_engine: DatabaseEngine
    repository: Repository
    llm_client: OpenRouterClient
    model_router: ModelRouter
    prompts: PromptLoader
    event_bus: EventBus
    task_store: TaskStore
    session_tracker: SessionTracker
    checkpoint_store: CheckpointStore
    performance_tracker: PerformanceTracker
    project_tree: RepositoryProjectTree
    event_sink: Optional[JsonlEventSink] = None

    def build_loop(self) -> ExecutionLoop:
        return ExecutionLoop(
            task_store=self.task_store,
            session_tracker=self.session_tracker,
            checkpoint_store=self.checkpoint_store,
            performance_tracker=self.performance_tracker,
            generator=OpenRouterGenerator(self.llm_client, self.model_router, role="builder"),
            project_tree=self.project_tree,
            repository=self.repository,
            event_bus=self.event_bus,
            config=self.config.orchestrator,
            prompts=self.prompts,
            training_max_tokens=self.config.training.generation_max_tokens,
        )

    def build_training_scanner(self) -> TrainingScanner:
        return TrainingScanner(
            performance_tracker=self.performance_tracker,
            task_store=self.task_store,
            generator=OpenRouterGenerator(self.llm_client, self.model_router, role="trainer"),
            event_bus=self.event_bus,
            config=self.config.training,
            prompts=self.prompts,
            underperformance_threshold=self.config.performance.underperformance_threshold,
        )


class ComponentFactory:
    """Factory for creating and wiring all TaskPilot infrastructure.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"))
        loop = bundle.build_loop()
        loop.run("my-project")
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        initialize_schema: bool = True,
    ) -> ComponentBundle:
        """Create and wire all infrastructure components.

        Args:
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test", "production").
            api_key: OpenRouter API key. Falls back to OPENROUTER_API_KEY env var.
            initialize_schema: Whether to run schema.sql on startup. Default True.

        Returns:
            ComponentBundle with all components ready to use.
        """
        logger.info("Initializing components...")

        # --- Config ---
        config = load_config(config_dir=config_dir, env=env)
        model_registry = load_model_registry(config_dir=config_dir)
        prompts = PromptLoader(config_dir / "prompts" if config_dir else None)
        logger.info("Config loaded (%d model roles)", len(model_registry.roles))

        # --- Database ---
        db_engine = DatabaseEngine(config.database)
        if initialize_schema:
            db_engine.initialize_schema()

        repository = Repository(db_engine)

        # --- LLM ---
        llm_client = OpenRouterClient(config=config.llm, api_key=api_key)
        model_router = ModelRouter(model_registry)
        logger.info("LLM client configured (base_url=%s)", config.llm.base_url)

        # --- Events ---
        event_bus = EventBus()
        if config.events.log_events:
            event_bus.subscribe(logging_subscriber)
        event_sink = None
        if config.events.jsonl_path:
            event_sink = JsonlEventSink(Path(config.events.jsonl_path))
            event_bus.subscribe(event_sink)

        # --- Stores ---
        task_store = TaskStore(repository)
        session_tracker = SessionTracker(
            repository, max_per_agent=config.retention.max_sessions_per_agent
        )
        checkpoint_store = CheckpointStore(
            repository, max_per_project=config.retention.max_checkpoints_per_project
        )
        performance_tracker = PerformanceTracker(
            repository,
            underperformance_threshold=config.performance.underperformance_threshold,
            high_performance_threshold=config.performance.high_performance_threshold,
            digest_max_chars=config.performance.digest_max_chars,
            recent_fail_limit=config.performance.recent_fail_limit,
        )
        project_tree = RepositoryProjectTree(repository)

        logger.info("All components initialized")

        return ComponentBundle(
            config=config,
            model_registry=model_registry,
            db_engine=db_engine,
            repository=repository,
            llm_client=llm_client,
            model_router=model_router,
            prompts=prompts,
            event_bus=event_bus,
            task_store=task_store,
            session_tracker=session_tracker,
            checkpoint_store=checkpoint_store,
            performance_tracker=performance_tracker,
            project_tree=project_tree,
            event_sink=event_sink,
        )

    @staticmethod
    def close(bundle: ComponentBundle) -> None:
        """Cleanly shut down all components."""
        bundle.llm_client.close()
        bundle.db_engine.close()
        logger.info("All components shut down")
