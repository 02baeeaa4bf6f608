"""Custom exception hierarchy for TaskPilot.

All exceptions inherit from TaskPilotError so callers can catch broadly
or narrowly as needed.
"""

from __future__ import annotations


class TaskPilotError(Exception):
    """Base exception for all TaskPilot errors."""


# ---------------------------------------------------------------------------
# Lookup / authorization
# ---------------------------------------------------------------------------

class NotFoundError(TaskPilotError):
    """Unknown task or checkpoint id."""

    def __init__(self, kind: str, identifier: object):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ForbiddenError(TaskPilotError):
    """Resource belongs to a different project than the caller's."""

    def __init__(self, kind: str, identifier: object, project_id: str):
        self.kind = kind
        self.identifier = identifier
        self.project_id = project_id
        super().__init__(f"{kind} {identifier} does not belong to project {project_id}")


class InvalidTransitionError(TaskPilotError):
    """Illegal task status move (backward or skipping in_progress)."""


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StorageError(TaskPilotError):
    """Persistence layer unavailable or a query failed."""


class SchemaInitError(StorageError):
    """Failed to initialize database schema."""


class ConnectionError(StorageError):
    """Failed to connect to database."""


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GenerationError(TaskPilotError):
    """External generation capability failed."""


class GenerationTimeoutError(GenerationError):
    """Generation call exceeded the caller-supplied timeout."""


class RateLimitError(GenerationError):
    """Hit API rate limit."""


class AuthenticationError(GenerationError):
    """Invalid API key or unauthorized."""


class ModelNotFoundError(GenerationError):
    """Requested model not available."""


class ValidationError(TaskPilotError):
    """Generation output could not be parsed into the expected artifact shape."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(TaskPilotError):
    """Invalid or missing configuration."""
