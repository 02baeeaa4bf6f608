"""Lifecycle event bus for TaskPilot.

publish() is fire-and-forget with at-most-once delivery: each subscriber is
called once, and a subscriber that raises is logged and skipped.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("taskpilot.orchestrator.events")

Subscriber = Callable[[str, dict[str, Any]], None]

GOAL_ENQUEUED = "goal_enqueued"
TASK_STARTED = "task_started"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
CODE_GENERATED = "code_generated"
AGENT_SESSION_SAVED = "agent_session_saved"
AGENT_SESSION_RESUMED = "agent_session_resumed"
CHECKPOINT_REVERTED = "checkpoint_reverted"
RETRAINING_ENQUEUED = "retraining_enqueued"


class EventBus:
    """Synchronous in-process publish/subscribe."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event_type, payload)
            except Exception as e:
                logger.warning("Event subscriber failed on %s: %s", event_type, e, exc_info=True)


def logging_subscriber(event_type: str, payload: dict[str, Any]) -> None:
    """Mirror events into the log."""
    logger.info("event %s %s", event_type, json.dumps(payload, default=str, sort_keys=True))


@dataclass
class JsonlEventSink:
    """Writes JSONL events and per-event counters."""

    jsonl_path: Path
    counters: dict[str, int] = field(default_factory=dict)

    def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        self.counters[event_type] = self.counters.get(event_type, 0) + 1
        record = {
            "timestamp": datetime.now(UTC).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")


@dataclass
class RecordingSubscriber:
    """Keeps every event in memory, in publish order."""

    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def __call__(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((event_type, payload))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [p for t, p in self.events if t == event_type]

    @property
    def types(self) -> list[str]:
        return [t for t, _ in self.events]
