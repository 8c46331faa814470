"""Structured error types for the crew planning and execution core."""

from typing import Any, List, Optional


class CrewError(Exception):
    """Base error for all crew operations."""
    pass


class TaskPlanningError(CrewError):
    """Raised when a candidate plan cannot be produced or fails validation."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"
    PARSE_ERROR = "PARSE_ERROR"

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        self.code = code
        self.details = details
        super().__init__(message)


class TaskExecutionError(CrewError):
    """Raised for a single failed execution attempt (missing/unavailable executor, timeout)."""

    def __init__(self, message: str, task_id: str, agent_id: str, details: Optional[Any] = None):
        self.task_id = task_id
        self.agent_id = agent_id
        self.details = details
        super().__init__(message)


class SchedulingError(CrewError):
    """Raised when the scheduler cannot make progress (deadlock)."""

    def __init__(self, message: str, remaining: Optional[List[str]] = None):
        self.remaining = remaining or []
        super().__init__(message)


class CommunicationError(CrewError):
    """Error raised by the inter-agent communication protocol."""
    pass


class MessageTimeoutError(CommunicationError):
    """Raised when no response arrives for a message before its timeout."""

    def __init__(self, message_id: str, timeout: float):
        self.message_id = message_id
        self.timeout = timeout
        super().__init__(f"Message timeout: {message_id} (no response after {timeout:g}s)")


class NoCapableAgentsError(CommunicationError):
    """Raised when an assistance request matches no registered worker."""

    def __init__(self, capabilities: List[str]):
        self.capabilities = list(capabilities)
        super().__init__(
            f"No agents found with required capabilities: {', '.join(capabilities)}"
        )


class ContextStoreError(CrewError):
    """Raised when the context store cannot load or persist data."""
    pass
