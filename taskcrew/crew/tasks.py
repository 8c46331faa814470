"""Task, plan and execution-context definitions for crew execution."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ExecutionMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class DependencyKind(str, Enum):
    HARD = "hard"    # blocks the target until the source has completed
    SOFT = "soft"    # ordering hint only, never a blocking gate


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Complexity(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class ArtifactKind(str, Enum):
    DOCUMENT = "document"
    CODE = "code"
    DATA = "data"
    SUMMARY = "summary"
    ANALYSIS = "analysis"


class InteractionType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    ERROR = "error"


def new_id(prefix: str) -> str:
    """Short unique id such as ``plan_3f2a9c1b04de``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass
class TaskMetadata:
    """Context and risk/approval details attached to a task."""

    conversation_id: str = ""
    user_intent: str = ""
    estimated_duration: Optional[float] = None  # minutes
    actual_duration: Optional[float] = None     # seconds
    confidence: float = 0.8
    requires_approval: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    tags: List[str] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_intent": self.user_intent,
            "estimated_duration": self.estimated_duration,
            "actual_duration": self.actual_duration,
            "confidence": self.confidence,
            "requires_approval": self.requires_approval,
            "risk_level": self.risk_level.value,
            "tags": list(self.tags),
            "context": dict(self.context),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TaskMetadata":
        data = data or {}
        return cls(
            conversation_id=data.get("conversation_id", ""),
            user_intent=data.get("user_intent", ""),
            estimated_duration=data.get("estimated_duration"),
            actual_duration=data.get("actual_duration"),
            confidence=data.get("confidence", 0.8),
            requires_approval=bool(data.get("requires_approval", False)),
            risk_level=RiskLevel(data.get("risk_level", "low")),
            tags=list(data.get("tags", [])),
            context=dict(data.get("context", {})),
        )


@dataclass
class Task:
    """A single atomic unit of work in an execution plan."""

    id: str
    type: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    agent_id: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    children: List[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def reset(self) -> None:
        """Clear run state so the task can be executed again from scratch."""
        self.status = TaskStatus.PENDING
        self.retry_count = 0
        self.output = None
        self.started_at = None
        self.completed_at = None
        self.metadata.actual_duration = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "agent_id": self.agent_id,
            "dependencies": list(self.dependencies),
            "children": list(self.children),
            "parent_id": self.parent_id,
            "input": dict(self.input),
            "output": self.output,
            "metadata": self.metadata.to_dict(),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            id=str(data["id"]),
            type=data.get("type", "general"),
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", "pending")),
            priority=TaskPriority(data.get("priority", "medium")),
            agent_id=data.get("agent_id"),
            dependencies=[str(d) for d in data.get("dependencies", [])],
            children=[str(c) for c in data.get("children", [])],
            parent_id=data.get("parent_id"),
            input=dict(data.get("input") or {}),
            output=data.get("output"),
            metadata=TaskMetadata.from_dict(data.get("metadata")),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", 3)),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class TaskDependency:
    """Directed edge: ``source`` must finish before ``target`` may start (when hard)."""

    source: str
    target: str
    kind: DependencyKind = DependencyKind.HARD
    condition: Optional[str] = None

    @property
    def is_hard(self) -> bool:
        return self.kind == DependencyKind.HARD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.source,
            "to": self.target,
            "type": self.kind.value,
            "condition": self.condition,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskDependency":
        return cls(
            source=str(data["from"]),
            target=str(data["to"]),
            kind=DependencyKind(data.get("type", "hard")),
            condition=data.get("condition"),
        )


@dataclass
class PlanMetadata:
    conversation_id: str = ""
    user_query: str = ""
    complexity: Complexity = Complexity.SIMPLE
    requires_user_approval: bool = False


@dataclass
class ExecutionPlan:
    """A task DAG plus scheduling mode and metadata; the unit submitted to the engine."""

    id: str
    name: str
    description: str = ""
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    tasks: List[Task] = field(default_factory=list)
    dependencies: List[TaskDependency] = field(default_factory=list)
    estimated_duration: float = 0.0  # minutes
    status: TaskStatus = TaskStatus.PENDING
    metadata: PlanMetadata = field(default_factory=PlanMetadata)
    created_at: datetime = field(default_factory=datetime.now)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_ids(self) -> List[str]:
        return [t.id for t in self.tasks]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "mode": self.mode.value,
            "tasks": [t.to_dict() for t in self.tasks],
            "dependencies": [d.to_dict() for d in self.dependencies],
            "estimated_duration": self.estimated_duration,
            "status": self.status.value,
            "metadata": {
                "conversation_id": self.metadata.conversation_id,
                "user_query": self.metadata.user_query,
                "complexity": self.metadata.complexity.value,
                "requires_user_approval": self.metadata.requires_user_approval,
            },
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionPlan":
        meta = data.get("metadata") or {}
        return cls(
            id=str(data.get("id") or new_id("plan")),
            name=data.get("name", ""),
            description=data.get("description", ""),
            mode=ExecutionMode(data.get("mode", "sequential")),
            tasks=[Task.from_dict(t) for t in data.get("tasks", [])],
            dependencies=[TaskDependency.from_dict(d) for d in data.get("dependencies", [])],
            estimated_duration=float(data.get("estimated_duration", 0.0)),
            status=TaskStatus(data.get("status", "pending")),
            metadata=PlanMetadata(
                conversation_id=meta.get("conversation_id", ""),
                user_query=meta.get("user_query", ""),
                complexity=Complexity(meta.get("complexity", "simple")),
                requires_user_approval=bool(meta.get("requires_user_approval", False)),
            ),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(),
        )


@dataclass
class TaskArtifact:
    """Something a worker produced while executing a task."""

    id: str
    kind: ArtifactKind
    name: str
    content: str
    created_by: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "content": self.content,
            "created_by": self.created_by,
            "metadata": dict(self.metadata),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskArtifact":
        return cls(
            id=str(data.get("id") or new_id("artifact")),
            kind=ArtifactKind(data.get("kind", "document")),
            name=data.get("name", ""),
            content=data.get("content", ""),
            created_by=data.get("created_by", ""),
            metadata=dict(data.get("metadata") or {}),
            created_at=_parse_dt(data.get("created_at")) or datetime.now(),
        )


@dataclass
class QualityScore:
    score: float = 0.0
    factors: Dict[str, float] = field(default_factory=dict)
    feedback: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "factors": dict(self.factors), "feedback": self.feedback}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QualityScore":
        data = data or {}
        return cls(
            score=float(data.get("score", 0.0)),
            factors={k: float(v) for k, v in (data.get("factors") or {}).items()},
            feedback=data.get("feedback"),
        )


@dataclass
class TaskResult:
    """Terminal outcome of a single task."""

    task_id: str
    status: TaskStatus
    agent_used: str
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration: float = 0.0  # seconds
    tokens_used: int = 0
    quality: QualityScore = field(default_factory=QualityScore)
    artifacts: List[TaskArtifact] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "agent_used": self.agent_used,
            "output": self.output,
            "error": self.error,
            "duration": self.duration,
            "tokens_used": self.tokens_used,
            "quality": self.quality.to_dict(),
            "artifacts": [a.to_dict() for a in self.artifacts],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskResult":
        return cls(
            task_id=str(data["task_id"]),
            status=TaskStatus(data.get("status", "pending")),
            agent_used=data.get("agent_used", ""),
            output=data.get("output"),
            error=data.get("error"),
            duration=float(data.get("duration", 0.0)),
            tokens_used=int(data.get("tokens_used", 0)),
            quality=QualityScore.from_dict(data.get("quality")),
            artifacts=[TaskArtifact.from_dict(a) for a in data.get("artifacts", [])],
        )


@dataclass
class AgentInteraction:
    """One logged exchange between workers (or a worker and the engine)."""

    from_agent: str
    type: InteractionType
    content: str
    task_id: str
    to_agent: Optional[str] = None  # None for broadcasts and engine records
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("interaction"))
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from_agent": self.from_agent,
            "to_agent": self.to_agent,
            "type": self.type.value,
            "content": self.content,
            "timestamp": _iso(self.timestamp),
            "task_id": self.task_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentInteraction":
        return cls(
            id=data.get("id") or new_id("interaction"),
            from_agent=data.get("from_agent", ""),
            to_agent=data.get("to_agent"),
            type=InteractionType(data.get("type", "notification")),
            content=data.get("content", ""),
            timestamp=_parse_dt(data.get("timestamp")) or datetime.now(),
            task_id=data.get("task_id", ""),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class ExecutionContext:
    """Mutable state shared by every task of one plan run.

    Owned by the execution engine while a run is in progress, then handed to
    the context store for persistence.
    """

    plan_id: str
    conversation_id: str = ""
    current_task: Optional[str] = None
    completed_tasks: List[str] = field(default_factory=list)
    failed_tasks: List[str] = field(default_factory=list)
    shared_data: Dict[str, Any] = field(default_factory=dict)
    user_preferences: Dict[str, Any] = field(default_factory=dict)
    total_tokens_used: int = 0
    agent_interactions: List[AgentInteraction] = field(default_factory=list)
    session_start_time: datetime = field(default_factory=datetime.now)

    def add_interaction(self, interaction: AgentInteraction) -> None:
        self.agent_interactions.append(interaction)

    def interactions_for(self, task_id: str) -> List[AgentInteraction]:
        return [i for i in self.agent_interactions if i.task_id == task_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "conversation_id": self.conversation_id,
            "current_task": self.current_task,
            "completed_tasks": list(self.completed_tasks),
            "failed_tasks": list(self.failed_tasks),
            "shared_data": self.shared_data,
            "user_preferences": self.user_preferences,
            "total_tokens_used": self.total_tokens_used,
            "agent_interactions": [i.to_dict() for i in self.agent_interactions],
            "session_start_time": _iso(self.session_start_time),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionContext":
        return cls(
            plan_id=data["plan_id"],
            conversation_id=data.get("conversation_id", ""),
            current_task=data.get("current_task"),
            completed_tasks=list(data.get("completed_tasks", [])),
            failed_tasks=list(data.get("failed_tasks", [])),
            shared_data=dict(data.get("shared_data", {})),
            user_preferences=dict(data.get("user_preferences", {})),
            total_tokens_used=int(data.get("total_tokens_used", 0)),
            agent_interactions=[
                AgentInteraction.from_dict(i) for i in data.get("agent_interactions", [])
            ],
            session_start_time=_parse_dt(data.get("session_start_time")) or datetime.now(),
        )
