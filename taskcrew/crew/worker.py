"""Concrete task executors: one LLM call per task, or a wrapped coroutine."""

import json
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..llm import LLMAdapter
from ..logger import get_logger
from .engine import TaskExecutor
from .registry import AgentCapability
from .tasks import (
    ArtifactKind,
    ExecutionContext,
    QualityScore,
    Task,
    TaskArtifact,
    TaskPriority,
    TaskResult,
    TaskStatus,
)

_log = get_logger(__name__)

_CODE_BLOCK_RE = re.compile(r'```(\w*)\s*\n(.*?)```', re.DOTALL)

# Shared data injected into prompts is cut to this many characters.
_MAX_SHARED_CHARS = 8000

TASK_SYSTEM_PROMPT = """\
You are the "{agent_id}" agent executing one task of a larger plan.
{role}
Task: {description}
Priority: {priority}

Results from earlier tasks:
{shared}

Focus on completing this specific task efficiently and give a clear, self-contained answer.
"""


def _format_shared(shared: Dict[str, Any]) -> str:
    if not shared:
        return "(none)"
    text = json.dumps(shared, ensure_ascii=False, indent=2, default=str)
    if len(text) > _MAX_SHARED_CHARS:
        text = text[:_MAX_SHARED_CHARS] + "\n... (truncated)"
    return text


def format_task_input(task: Task) -> str:
    lines = [f"{k}: {json.dumps(v, ensure_ascii=False, default=str)}" for k, v in task.input.items()]
    body = "\n".join(lines) or "(no input)"
    return f"Task Input:\n{body}\n\nPlease complete this task and provide a clear response."


def assess_quality(content: str, task: Task) -> QualityScore:
    factors = {
        "completeness": 1.0 if len(content) > 50 else 0.5,
        "relevance": 0.8,
    }
    if task.priority == TaskPriority.CRITICAL:
        factors["completeness"] *= 1.2
    elif task.priority == TaskPriority.LOW:
        factors["relevance"] *= 0.9
    score = sum(factors.values()) / len(factors)
    return QualityScore(score=min(score, 1.0), factors=factors)


def extract_code_artifacts(content: str, task: Task, agent_id: str) -> List[TaskArtifact]:
    """Each fenced code block in ``content`` becomes a code artifact."""
    artifacts = []
    for i, m in enumerate(_CODE_BLOCK_RE.finditer(content)):
        lang = m.group(1) or "text"
        artifacts.append(TaskArtifact(
            id=f"artifact_{task.id}_{i}",
            kind=ArtifactKind.CODE,
            name=f"{task.id} snippet {i + 1} ({lang})",
            content=m.group(2),
            created_by=agent_id,
            metadata={"task_id": task.id, "language": lang},
        ))
    return artifacts


class LLMTaskExecutor(TaskExecutor):
    """Executes a task with a single chat completion."""

    def __init__(self, agent_id: str, llm: LLMAdapter,
                 capability: Optional[AgentCapability] = None):
        self.agent_id = agent_id
        self.llm = llm
        self.capability = capability
        self.available = True

    def get_worker_id(self) -> str:
        return self.agent_id

    def is_available(self) -> bool:
        return self.available

    def build_messages(self, task: Task, context: ExecutionContext) -> List[Dict[str, str]]:
        role = ""
        if self.capability is not None:
            role = (f"Capabilities: {', '.join(self.capability.capabilities)}; "
                    f"specializations: {', '.join(self.capability.specializations)}")
        system = TASK_SYSTEM_PROMPT.format(
            agent_id=self.agent_id,
            role=role,
            description=task.description,
            priority=task.priority.value,
            shared=_format_shared(context.shared_data),
        )
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": format_task_input(task)},
        ]

    async def execute_task(self, task: Task, context: ExecutionContext) -> TaskResult:
        t0 = time.monotonic()
        try:
            response = await self.llm.achat(self.build_messages(task, context))
        except ConnectionError as e:
            _log.warning("Agent %s: task %s LLM call failed: %s", self.agent_id, task.id, e)
            return TaskResult(
                task_id=task.id,
                status=TaskStatus.FAILED,
                agent_used=self.agent_id,
                error=str(e),
                duration=time.monotonic() - t0,
                quality=QualityScore(score=0.0, factors={"error": 1.0}),
            )

        content = response.content or ""
        artifacts = extract_code_artifacts(content, task, self.agent_id)
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            agent_used=self.agent_id,
            output={"content": content, "artifacts": [a.id for a in artifacts]},
            duration=time.monotonic() - t0,
            tokens_used=response.total_tokens,
            quality=assess_quality(content, task),
            artifacts=artifacts,
        )


TaskFunction = Callable[[Task, ExecutionContext], Awaitable[Union[TaskResult, Dict[str, Any], str, None]]]


class CallableTaskExecutor(TaskExecutor):
    """Adapts a coroutine function into an executor.

    The function may return a full :class:`TaskResult`, an output dict or a
    plain string (wrapped as ``{"content": ...}``). Exceptions propagate to
    the engine, which treats them as a failed attempt.
    """

    def __init__(self, agent_id: str, fn: TaskFunction, available: bool = True):
        self.agent_id = agent_id
        self.fn = fn
        self.available = available

    def get_worker_id(self) -> str:
        return self.agent_id

    def is_available(self) -> bool:
        return self.available

    async def execute_task(self, task: Task, context: ExecutionContext) -> TaskResult:
        t0 = time.monotonic()
        out = await self.fn(task, context)
        if isinstance(out, TaskResult):
            return out
        if isinstance(out, str):
            out = {"content": out}
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.COMPLETED,
            agent_used=self.agent_id,
            output=out,
            duration=time.monotonic() - t0,
        )
