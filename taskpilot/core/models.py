"""All Pydantic data models for TaskPilot.

Defines the data contracts used across the stores, the execution loop,
and the training scanner. Every table row and every structured generation
output has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, enum.Enum):
    CODE_GENERATION = "code_generation"
    AGENT_TRAINING = "agent_training"


class SessionMode(str, enum.Enum):
    BUILD = "build"
    DEBUG = "debug"
    OPTIMIZE = "optimize"


class OutputKind(str, enum.Enum):
    CODE = "code"
    TRAINING = "training"
    ROLLBACK = "rollback"


# ---------------------------------------------------------------------------
# Task metadata (tagged by task type)
# ---------------------------------------------------------------------------

class GoalTaskMetadata(BaseModel):
    kind: Literal["code_generation"] = "code_generation"
    goal_id: str
    goal_title: str
    milestone_id: Optional[str] = None
    feature_id: Optional[str] = None


class TrainingGoal(BaseModel):
    title: str
    description: str
    fail_reasons: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)


class TrainingTaskMetadata(BaseModel):
    kind: Literal["agent_training"] = "agent_training"
    agent_id: str
    skill_tag: str
    training_goal: TrainingGoal
    target_accuracy: float = 85.0
    current_accuracy: float = 0.0


TaskMetadata = Annotated[
    Union[GoalTaskMetadata, TrainingTaskMetadata],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Database row models
# ---------------------------------------------------------------------------

class Task(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    type: TaskType
    project_id: str
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    metadata: TaskMetadata
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @model_validator(mode="after")
    def _metadata_matches_type(self) -> "Task":
        if self.metadata.kind != self.type.value:
            raise ValueError(
                f"metadata kind '{self.metadata.kind}' does not match task type '{self.type.value}'"
            )
        return self

    @property
    def title(self) -> str:
        """Human-readable label used in logs and event payloads."""
        if isinstance(self.metadata, GoalTaskMetadata):
            return self.metadata.goal_title
        return self.metadata.training_goal.title

    @property
    def goal_id(self) -> Optional[str]:
        if isinstance(self.metadata, GoalTaskMetadata):
            return self.metadata.goal_id
        return None


class TaskSpec(BaseModel):
    """Caller input to TaskStore.enqueue()."""
    type: TaskType
    project_id: str
    priority: int = 0
    metadata: TaskMetadata


class SessionSnapshot(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    agent_id: str
    project_id: Optional[str] = None
    goal_id: Optional[str] = None
    feature_id: Optional[str] = None
    milestone_id: Optional[str] = None
    task_summary: str = ""
    mode: SessionMode = SessionMode.BUILD
    timestamp: datetime = Field(default_factory=_now)


class Checkpoint(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    project_id: str
    goal_id: str
    summary: str
    artifact_content: str
    timestamp: datetime = Field(default_factory=_now)


class ArtifactOutput(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    project_id: str
    goal_id: Optional[str] = None
    kind: OutputKind = OutputKind.CODE
    content: str
    source_checkpoint_id: Optional[uuid.UUID] = None
    created_at: datetime = Field(default_factory=_now)


class PerformanceAttempt(BaseModel):
    id: uuid.UUID = Field(default_factory=_new_uuid)
    agent_id: str
    skill_tag: str
    task_type: str
    success: bool
    fail_reason: Optional[str] = None
    notes: str = ""
    timestamp: datetime = Field(default_factory=_now)


class SkillStats(BaseModel):
    """Derived per-(agent, skill) aggregate. Never persisted."""
    skill_tag: str
    total_attempts: int = 0
    successful_attempts: int = 0
    accuracy: float = 0.0
    last_used: Optional[datetime] = None
    last_fail_reason: Optional[str] = None
    last_failed_at: Optional[datetime] = None
    recent_fails: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Project tree (read-only input)
# ---------------------------------------------------------------------------

class Project(BaseModel):
    id: str
    name: str
    prompt: str = ""
    created_at: datetime = Field(default_factory=_now)


class Feature(BaseModel):
    id: str
    project_id: str
    title: str
    description: Optional[str] = None
    completed: bool = False


class Milestone(BaseModel):
    id: str
    feature_id: str
    title: str
    description: Optional[str] = None
    completed: bool = False


class Goal(BaseModel):
    id: str
    milestone_id: str
    title: str
    description: Optional[str] = None
    completed: bool = False


# ---------------------------------------------------------------------------
# Generation output contract
# ---------------------------------------------------------------------------

class GeneratedArtifact(BaseModel):
    """Validated shape of a code-generation response."""
    code: str
    language: str
    filename: str = ""
    description: str = ""

    @field_validator("code", "language")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must be a non-empty string")
        return value

    def summary_payload(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "filename": self.filename,
            "description": self.description,
        }
