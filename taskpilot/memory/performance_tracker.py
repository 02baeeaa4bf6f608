"""Per-(agent, skill) performance memory.

Records every attempt in an append-only log and derives accuracy stats from
it. The stats feed two pieces of prompt text: a compact memory digest and a
set of behavior instructions tuned to how well the agent has done on the
skills a goal touches. Underperforming skills drive retraining.

Key capabilities:
- Record attempts (pure append, no update path)
- Fold attempts into SkillStats
- Detect underperforming skills
- Render the memory digest and behavior instructions
- Classify free text into a skill tag
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Optional

from taskpilot.core.models import PerformanceAttempt, SkillStats
from taskpilot.db.repository import Repository

logger = logging.getLogger("taskpilot.memory.performance_tracker")


# Keyword classifier in priority order. The first tag with a substring
# match wins in infer_skill_tag(); match_skill_tags() returns every hit.
SKILL_KEYWORDS: dict[str, list[str]] = {
    "code-generation": ["code", "generate", "implement"],
    "testing": ["test", "validate"],
    "deployment": ["deploy", "build"],
    "diff-parsing": ["parse", "diff"],
    "queue-routing": ["queue", "route"],
    "schema-validation": ["schema", "validate"],
}

DEFAULT_SKILL_TAG = "general-task"
UNKNOWN_FAIL_REASON = "Unknown error"
FALLBACK_INSTRUCTION = "If skill match uncertain, default to safe verbose mode."
MAX_INSTRUCTIONS = 3
DIGEST_TOP_SKILLS = 3


def match_skill_tags(text: str) -> list[str]:
    """Every skill tag whose keywords appear in text, in classifier order."""
    lowered = text.lower()
    return [
        tag for tag, keywords in SKILL_KEYWORDS.items()
        if any(keyword in lowered for keyword in keywords)
    ]


def infer_skill_tag(text: str) -> str:
    """Deterministic keyword classifier: first match wins, else general-task."""
    matches = match_skill_tags(text)
    return matches[0] if matches else DEFAULT_SKILL_TAG


def _fmt_pct(value: float) -> str:
    return f"{value:.0f}%"


class PerformanceTracker:
    """Attempt log and the stats derived from it.

    Injected dependencies:
        repository: Database access for performance_attempts.
        underperformance_threshold: Accuracy below which a skill needs retraining.
        high_performance_threshold: Accuracy above which the agent may be concise.
        digest_max_chars: Hard cap on the memory digest length.
        recent_fail_limit: How many failure reasons SkillStats keeps.
    """

    def __init__(
        self,
        repository: Repository,
        underperformance_threshold: float = 70.0,
        high_performance_threshold: float = 90.0,
        digest_max_chars: int = 1000,
        recent_fail_limit: int = 5,
    ):
        self.repository = repository
        self.underperformance_threshold = underperformance_threshold
        self.high_performance_threshold = high_performance_threshold
        self.digest_max_chars = digest_max_chars
        self.recent_fail_limit = recent_fail_limit

    def record_attempt(
        self,
        agent_id: str,
        skill_tag: str,
        task_type: str,
        success: bool,
        fail_reason: Optional[str] = None,
        notes: str = "",
    ) -> PerformanceAttempt:
        """Append one attempt to the log.

        Args:
            agent_id: The agent that made the attempt.
            skill_tag: Skill the attempt exercised.
            task_type: Kind of task (code_generation, agent_training).
            success: Whether the attempt produced a valid artifact.
            fail_reason: Error text for failures.
            notes: Free-form context (task id, language, ...).

        Returns:
            The saved PerformanceAttempt.
        """
        attempt = PerformanceAttempt(
            agent_id=agent_id,
            skill_tag=skill_tag,
            task_type=task_type,
            success=success,
            fail_reason=fail_reason,
            notes=notes,
        )
        self.repository.log_attempt(attempt)
        logger.info(
            "Recorded attempt for agent %s, skill %s: %s",
            agent_id, skill_tag, "success" if success else f"failure ({fail_reason})",
        )
        return attempt

    def stats_for(self, agent_id: str, skill_tag: str) -> SkillStats:
        """Fold the agent's attempts at a skill, most recent first."""
        attempts = self.repository.list_attempts(agent_id, skill_tag)
        return self._fold(skill_tag, attempts)

    def _fold(self, skill_tag: str, attempts: list[PerformanceAttempt]) -> SkillStats:
        total = len(attempts)
        successes = sum(1 for a in attempts if a.success)
        failures = [a for a in attempts if not a.success]
        accuracy = round(successes / total * 100, 2) if total else 0.0
        last_failure = failures[0] if failures else None
        return SkillStats(
            skill_tag=skill_tag,
            total_attempts=total,
            successful_attempts=successes,
            accuracy=accuracy,
            last_used=attempts[0].timestamp if attempts else None,
            last_fail_reason=(
                (last_failure.fail_reason or UNKNOWN_FAIL_REASON) if last_failure else None
            ),
            last_failed_at=last_failure.timestamp if last_failure else None,
            recent_fails=[
                a.fail_reason or UNKNOWN_FAIL_REASON
                for a in failures[: self.recent_fail_limit]
            ],
        )

    def summarize(self, agent_id: str) -> list[SkillStats]:
        """One row per distinct skill, worst accuracy first."""
        stats = [self.stats_for(agent_id, tag) for tag in self.repository.list_skill_tags(agent_id)]
        return sorted(stats, key=lambda s: (s.accuracy, s.skill_tag))

    def underperforming(self, agent_id: str, threshold: Optional[float] = None) -> list[SkillStats]:
        if threshold is None:
            threshold = self.underperformance_threshold
        return [s for s in self.summarize(agent_id) if s.accuracy < threshold]

    def memory_digest(self, agent_id: str) -> str:
        """Compact summary of the agent's track record for prompt injection.

        Lists the most recently used skills, then every underperforming skill
        flagged for retraining, then the most recent failure reason. Returns
        an empty string for an agent with no history.
        """
        all_stats = self.summarize(agent_id)
        if not all_stats:
            return ""

        by_recency = sorted(all_stats, key=_last_used_key, reverse=True)
        parts = [
            f"Skill[{s.skill_tag}]: {_fmt_pct(s.accuracy)} ({s.successful_attempts}/{s.total_attempts})"
            for s in by_recency[:DIGEST_TOP_SKILLS]
        ]
        parts.extend(
            f"Skill[{s.skill_tag}]: {_fmt_pct(s.accuracy)} "
            f"({s.successful_attempts}/{s.total_attempts}) - retraining recommended"
            for s in all_stats
            if s.accuracy < self.underperformance_threshold
        )

        failed = [s for s in all_stats if s.last_fail_reason and s.last_failed_at]
        if failed:
            latest = max(failed, key=lambda s: s.last_failed_at)
            parts.append(f"Last Failure: {latest.last_fail_reason}")

        digest = "PerformanceMemory: " + "; ".join(parts)
        if len(digest) > self.digest_max_chars:
            digest = digest[: self.digest_max_chars - 3] + "..."
        return digest

    def behavior_instructions(self, agent_id: str, goal_title: str) -> str:
        """Up to three directives tuned to the agent's accuracy on the goal's skills."""
        all_stats = self.summarize(agent_id)
        if not all_stats:
            return FALLBACK_INSTRUCTION

        stats_by_tag = {s.skill_tag: s for s in all_stats}
        relevant = match_skill_tags(goal_title)
        if not relevant:
            most_used = sorted(all_stats, key=lambda s: (-s.total_attempts, s.skill_tag))
            relevant = [s.skill_tag for s in most_used[:MAX_INSTRUCTIONS]]

        instructions: list[str] = []
        for tag in relevant:
            if len(instructions) >= MAX_INSTRUCTIONS:
                break
            stats = stats_by_tag.get(tag)
            if stats is None:
                continue
            instructions.append(self._instruction_for(stats))

        if not instructions:
            return FALLBACK_INSTRUCTION
        return "\n".join(instructions)

    def _instruction_for(self, stats: SkillStats) -> str:
        tag = stats.skill_tag
        if stats.accuracy < self.underperformance_threshold:
            return (
                f"If task involves Skill[{tag}], be cautious with implementation "
                "and provide verbose explanations with fallback examples."
            )
        if stats.accuracy > self.high_performance_threshold:
            return (
                f"If using Skill[{tag}] ({_fmt_pct(stats.accuracy)} accuracy), "
                "use compact code patterns and concise explanations."
            )
        return (
            f"If using Skill[{tag}] ({_fmt_pct(stats.accuracy)} accuracy), "
            "provide clear explanations with moderate detail."
        )


def _last_used_key(stats: SkillStats) -> datetime:
    return stats.last_used or datetime.min.replace(tzinfo=UTC)
