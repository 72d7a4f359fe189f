"""
Exception types shared across the engine.

Only failures that callers are expected to act on get their own class.
Tool failures never surface as exceptions; dispatch turns them into text.
"""


class AgentDeckError(Exception):
    """Base class for engine errors."""


class AgentNotFoundError(AgentDeckError):
    """Raised when an agent id or name does not resolve to a stored agent."""

    def __init__(self, key: str):
        super().__init__(f"Agent not found: {key}")
        self.key = key


class InvalidScheduleError(AgentDeckError):
    """Raised for cron expressions croniter cannot parse."""


class RunFinalizedError(AgentDeckError):
    """Raised when a run record is finalized a second time."""


class EmbeddingError(AgentDeckError):
    """Raised when the embedding provider fails or returns a malformed batch."""


class ToolArgumentError(AgentDeckError):
    """Raised when model-supplied arguments do not match a tool's schema."""
