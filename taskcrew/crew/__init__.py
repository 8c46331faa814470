"""Multi-agent planning, scheduling and messaging core."""

from .tasks import (
    AgentInteraction,
    ExecutionContext,
    ExecutionMode,
    ExecutionPlan,
    Task,
    TaskArtifact,
    TaskDependency,
    TaskPriority,
    TaskResult,
    TaskStatus,
)
from .registry import AgentCapability, CapabilityRegistry, load_registry_from_config
from .planner import DecompositionRequest, DecompositionResult, TaskDecomposer, validate_plan
from .engine import EngineConfig, ExecutionEngine, ExecutionOutcome, TaskExecutor
from .memory import ContextStore, CrewMemory, JsonFileContextStore, MemoryContextStore
from .messages import AgentMessage, CommunicationProtocol, MessagePriority, MessageResponse, MessageType
from .worker import CallableTaskExecutor, LLMTaskExecutor
from .crew import Crew, CrewConfig, CrewResult

__all__ = [
    "AgentInteraction",
    "ExecutionContext",
    "ExecutionMode",
    "ExecutionPlan",
    "Task",
    "TaskArtifact",
    "TaskDependency",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "AgentCapability",
    "CapabilityRegistry",
    "load_registry_from_config",
    "DecompositionRequest",
    "DecompositionResult",
    "TaskDecomposer",
    "validate_plan",
    "EngineConfig",
    "ExecutionEngine",
    "ExecutionOutcome",
    "TaskExecutor",
    "ContextStore",
    "CrewMemory",
    "JsonFileContextStore",
    "MemoryContextStore",
    "AgentMessage",
    "CommunicationProtocol",
    "MessagePriority",
    "MessageResponse",
    "MessageType",
    "CallableTaskExecutor",
    "LLMTaskExecutor",
    "Crew",
    "CrewConfig",
    "CrewResult",
]
