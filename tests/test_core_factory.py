"""Tests for taskpilot/core/factory.py: ComponentFactory wiring.

The engine and HTTP client connect lazily, so wiring is testable without
PostgreSQL; schema tests require it.
"""

from pathlib import Path

import pytest
import yaml

from taskpilot.core.factory import ComponentBundle, ComponentFactory
from taskpilot.orchestrator.events import JsonlEventSink, logging_subscriber
from taskpilot.orchestrator.loop import ExecutionLoop
from taskpilot.orchestrator.training import TrainingScanner

from tests.conftest import requires_postgres


@pytest.fixture
def bundle(config_dir, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    b = ComponentFactory.create(config_dir=config_dir, api_key="test-key", initialize_schema=False)
    yield b
    ComponentFactory.close(b)


class TestComponentWiring:
    def test_create_returns_bundle(self, bundle):
        assert isinstance(bundle, ComponentBundle)
        assert bundle.task_store.repository is bundle.repository
        assert bundle.session_tracker.max_per_agent == 5
        assert bundle.checkpoint_store.max_per_project == 20
        assert bundle.performance_tracker.digest_max_chars == 1000
        assert bundle.llm_client.api_key == "test-key"

    def test_event_subscribers(self, bundle):
        subscribers = bundle.event_bus._subscribers
        assert logging_subscriber in subscribers
        assert isinstance(bundle.event_sink, JsonlEventSink)
        assert bundle.event_sink in subscribers

    def test_build_loop(self, bundle):
        loop = bundle.build_loop()
        assert isinstance(loop, ExecutionLoop)
        assert loop.agent_id == "autonomous-project-agent"
        assert loop.generator.role == "builder"
        assert loop.training_max_tokens == 500

    def test_build_training_scanner(self, bundle):
        scanner = bundle.build_training_scanner()
        assert isinstance(scanner, TrainingScanner)
        assert scanner.generator.role == "trainer"
        assert scanner.underperformance_threshold == 70.0
        assert scanner.config.project_id == "training-project"

    def test_overlay_changes_caps(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        (tmp_path / "default.yaml").write_text(yaml.safe_dump({
            "retention": {"max_sessions_per_agent": 2},
            "events": {"jsonl_path": None, "log_events": False},
        }))
        (tmp_path / "models.yaml").write_text(yaml.safe_dump({"roles": {"builder": "m/b", "trainer": "m/t"}}))
        b = ComponentFactory.create(config_dir=tmp_path, api_key="k", initialize_schema=False)
        try:
            assert b.session_tracker.max_per_agent == 2
            assert b.event_sink is None
            assert b.event_bus._subscribers == []
        finally:
            ComponentFactory.close(b)


@requires_postgres
class TestComponentFactoryDatabase:
    def test_schema_initialized(self, config_dir):
        bundle = ComponentFactory.create(config_dir=config_dir, api_key="test-key")
        try:
            tables = bundle.db_engine.fetch_all(
                """SELECT table_name FROM information_schema.tables
                   WHERE table_schema = 'public' AND table_type = 'BASE TABLE'"""
            )
            table_names = {r["table_name"] for r in tables}
            assert "tasks" in table_names
            assert "checkpoints" in table_names
        finally:
            ComponentFactory.close(bundle)

    def test_close_shuts_down(self, config_dir):
        bundle = ComponentFactory.create(config_dir=config_dir, api_key="test-key")
        ComponentFactory.close(bundle)
        assert bundle.db_engine._conn is None or bundle.db_engine._conn.closed
