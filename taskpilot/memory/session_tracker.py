"""Session tracker: where each agent last was.

An append-only log of SessionSnapshots. Only the most recent N snapshots per
agent are kept; older ones are evicted strictly by timestamp after each save.
"""

from __future__ import annotations

import logging
from typing import Optional

from taskpilot.core.locks import KeyedLock
from taskpilot.core.models import SessionSnapshot
from taskpilot.db.repository import Repository

logger = logging.getLogger("taskpilot.memory.session_tracker")


class SessionTracker:
    """Persists session snapshots with per-agent retention.

    Injected dependencies:
        repository: Database access for session_snapshots.
        max_per_agent: Retention cap (default 5).
    """

    def __init__(self, repository: Repository, max_per_agent: int = 5):
        if max_per_agent < 1:
            raise ValueError("max_per_agent must be at least 1")
        self.repository = repository
        self.max_per_agent = max_per_agent
        self._locks = KeyedLock()

    def save(self, snapshot: SessionSnapshot) -> SessionSnapshot:
        """Append a snapshot, then evict the agent's oldest beyond the cap."""
        with self._locks.hold(snapshot.agent_id):
            self.repository.save_session_snapshot(snapshot)
            history = self.repository.list_session_snapshots(snapshot.agent_id)
            evicted = history[self.max_per_agent:]
            if evicted:
                self.repository.delete_session_snapshots(s.id for s in evicted)
                logger.debug(
                    "Evicted %d session snapshot(s) for agent %s",
                    len(evicted), snapshot.agent_id,
                )
        return snapshot

    def last_for(self, agent_id: str) -> Optional[SessionSnapshot]:
        history = self.repository.list_session_snapshots(agent_id)
        return history[0] if history else None

    def history_for(self, agent_id: str) -> list[SessionSnapshot]:
        """Newest first."""
        return self.repository.list_session_snapshots(agent_id)

    @staticmethod
    def describe(snapshot: SessionSnapshot) -> str:
        """Human-readable resume line for a snapshot."""
        return (
            f"Resuming from last session: Project {snapshot.project_id or '-'} / "
            f"Goal {snapshot.goal_id or '-'} / Task {snapshot.task_summary or '-'} / "
            f"Mode: {snapshot.mode.value}. "
            f"Last touched at {snapshot.timestamp.isoformat()}"
        )
