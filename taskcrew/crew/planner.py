"""Plan builder: turns a free-form request into a validated execution plan."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..errors import TaskPlanningError
from ..logger import get_logger
from .graph import dangling_references, find_cycle
from .registry import CapabilityRegistry
from .tasks import (
    Complexity,
    DependencyKind,
    ExecutionMode,
    ExecutionPlan,
    PlanMetadata,
    RiskLevel,
    Task,
    TaskDependency,
    TaskMetadata,
    TaskPriority,
    new_id,
)

_log = get_logger(__name__)

# async (system_prompt, user_prompt) -> candidate dict or raw model text
PlanGenerator = Callable[[str, str], Awaitable[Union[Dict[str, Any], str]]]

_JSON_FENCE_RE = re.compile(r'```(?:\w*)\s*\n(.*?)```', re.DOTALL)

SYSTEM_PROMPT = """\
You are an expert task planner for a multi-agent system. Analyze the user's request
and decompose it into executable tasks that can be assigned to specialized agents.

Available agents:
{agents}

Guidelines:
1. Break complex requests into atomic, executable tasks
2. Identify dependencies between tasks (what must complete before what)
3. Choose the most appropriate agent type for each task
4. Prefer parallel execution when tasks are independent
5. Assess risk levels and approval requirements
6. Give clear, actionable task descriptions and realistic duration estimates
7. Always include an "input" object for each task (may be empty)

Task types: search, analyze, create, modify, summarize, validate, coordinate
Agent types: {agent_types}

Reply with ONE JSON object and nothing else:
{{
  "planName": str, "planDescription": str,
  "complexity": "simple" | "moderate" | "complex",
  "executionMode": "sequential" | "parallel",
  "requiresApproval": bool, "estimatedDuration": minutes,
  "tasks": [{{"id": str, "type": str, "description": str,
             "priority": "low" | "medium" | "high" | "critical",
             "agentType": str, "dependencies": [task ids], "input": {{}},
             "estimatedDuration": minutes, "requiresApproval": bool,
             "riskLevel": "low" | "medium" | "high", "tags": [str]}}],
  "dependencies": [{{"from": task id, "to": task id, "type": "hard" | "soft",
                    "condition": optional str}}],
  "reasoning": str
}}
"""

USER_PROMPT = """\
Please decompose this request into an executable plan:

Request: "{query}"

Context:
- Conversation ID: {conversation_id}
- Available agents: {agent_ids}
- Recent conversation:
{history}
{workspace}
Create a complete execution plan that breaks the request into specific, actionable tasks.
"""


@dataclass
class WorkspaceContext:
    document_count: int = 0
    tags: List[str] = field(default_factory=list)


@dataclass
class DecompositionRequest:
    """Input to :meth:`TaskDecomposer.decompose`."""

    user_query: str
    conversation_id: str = ""
    chat_history: List[Dict[str, str]] = field(default_factory=list)
    workspace: Optional[WorkspaceContext] = None
    execution_mode: Optional[ExecutionMode] = None  # overrides the generated mode


@dataclass
class PlanValidation:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class DecompositionResult:
    success: bool
    plan: ExecutionPlan
    reasoning: str = ""
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None  # TaskPlanningError code, when known


def validate_plan(plan: ExecutionPlan, registry: Optional[CapabilityRegistry] = None) -> PlanValidation:
    """Check structural invariants; errors reject the plan, warnings are advisory."""
    errors: List[str] = []
    warnings: List[str] = []

    if not plan.tasks:
        errors.append("Plan contains no tasks")

    seen = set()
    dupes = []
    for task in plan.tasks:
        if task.id in seen and task.id not in dupes:
            dupes.append(task.id)
        seen.add(task.id)
    if dupes:
        errors.append(f"Duplicate task ids: {', '.join(dupes)}")

    cycle = find_cycle(plan)
    if cycle:
        errors.append(f"Circular dependencies detected in task graph: {' -> '.join(cycle)}")

    dangling = dangling_references(plan)
    if dangling:
        refs = ", ".join(f"{owner} (missing {missing})" for owner, missing in dangling)
        errors.append(f"Tasks with invalid dependencies: {refs}")

    unassigned = [
        t.id for t in plan.tasks
        if not t.agent_id or (registry is not None and t.agent_id not in registry)
    ]
    if unassigned:
        warnings.append(f"Tasks without assigned agents: {', '.join(unassigned)}")

    risky = [
        t.id for t in plan.tasks
        if t.metadata.risk_level == RiskLevel.HIGH and not t.metadata.requires_approval
    ]
    if risky:
        warnings.append(f"High-risk tasks without approval requirement: {', '.join(risky)}")

    return PlanValidation(is_valid=not errors, errors=errors, warnings=warnings)


def parse_candidate(raw: Union[Dict[str, Any], str]) -> Dict[str, Any]:
    """Extract the candidate plan object from a generator reply."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise TaskPlanningError(
            f"Unexpected generator output type: {type(raw).__name__}",
            TaskPlanningError.PARSE_ERROR,
        )

    text = raw.strip()
    m = _JSON_FENCE_RE.search(text)
    if m:
        text = m.group(1).strip()
    if not text.startswith("{"):
        start = text.find("{")
        end = text.rfind("}")
        if start >= 0 and end > start:
            text = text[start:end + 1]

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise TaskPlanningError(
            f"Failed to parse plan JSON: {e}",
            TaskPlanningError.PARSE_ERROR,
            {"raw": raw[:200]},
        ) from e
    if not isinstance(data, dict):
        raise TaskPlanningError("Plan JSON is not an object", TaskPlanningError.PARSE_ERROR)
    return data


def _enum(enum_cls, value, default):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default


def _number(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class TaskDecomposer:
    """Builds execution plans through an external, untrusted generator."""

    def __init__(
        self,
        generate: PlanGenerator,
        registry: CapabilityRegistry,
        default_agent: str = "supervisor",
        default_max_retries: int = 3,
    ):
        self.generate = generate
        self.registry = registry
        self.default_agent = default_agent
        self.default_max_retries = default_max_retries

    async def decompose(self, request: DecompositionRequest) -> DecompositionResult:
        """Never raises for expected failures; a fallback plan is returned instead."""
        try:
            raw = await self._generate(request)
            candidate = parse_candidate(raw)
            plan, unresolved = self.convert(candidate, request)

            validation = validate_plan(plan, self.registry)
            if not validation.is_valid:
                raise TaskPlanningError(
                    f"Plan validation failed: {'; '.join(validation.errors)}",
                    TaskPlanningError.VALIDATION_ERROR,
                    {"errors": validation.errors},
                )

            warnings = list(validation.warnings)
            if unresolved:
                warnings.append(
                    f"Tasks assigned to default agent '{self.default_agent}': "
                    f"{', '.join(unresolved)}"
                )
            for w in warnings:
                _log.warning("Plan %s: %s", plan.id, w)

            return DecompositionResult(
                success=True,
                plan=plan,
                reasoning=str(candidate.get("reasoning", "")),
                warnings=warnings,
            )
        except Exception as e:
            _log.error("Task decomposition failed, using fallback plan: %s", e)
            return DecompositionResult(
                success=False,
                plan=self.fallback_plan(request),
                reasoning="Decomposition failed, using fallback plan",
                error=str(e),
                error_code=e.code if isinstance(e, TaskPlanningError) else None,
            )

    async def _generate(self, request: DecompositionRequest) -> Any:
        try:
            return await self.generate(self.build_system_prompt(), self.build_user_prompt(request))
        except Exception as e:
            raise TaskPlanningError(
                f"Plan generation failed: {e}", TaskPlanningError.GENERATION_ERROR,
                {"cause": type(e).__name__},
            ) from e

    # ── Prompts ───────────────────────────────────────────────

    def build_system_prompt(self) -> str:
        return SYSTEM_PROMPT.format(
            agents=self.registry.describe() or "- (none registered)",
            agent_types=", ".join(self.registry.ids()) or self.default_agent,
        )

    def build_user_prompt(self, request: DecompositionRequest) -> str:
        history = "\n".join(
            f"{msg.get('role', 'user')}: {msg.get('content', '')}"
            for msg in request.chat_history[-3:]
        ) or "(none)"
        workspace = ""
        if request.workspace is not None:
            workspace = (
                "\nWorkspace context:\n"
                f"- Document count: {request.workspace.document_count}\n"
                f"- Available tags: {', '.join(request.workspace.tags)}\n"
            )
        return USER_PROMPT.format(
            query=request.user_query,
            conversation_id=request.conversation_id or "(none)",
            agent_ids=", ".join(self.registry.ids()),
            history=history,
            workspace=workspace,
        )

    # ── Conversion ────────────────────────────────────────────

    def convert(self, candidate: Dict[str, Any],
                request: DecompositionRequest) -> Tuple[ExecutionPlan, List[str]]:
        """Map a candidate object onto an :class:`ExecutionPlan`.

        Returns the plan and the ids of tasks that fell back to the default agent.
        """
        raw_tasks = candidate.get("tasks")
        raw_deps = candidate.get("dependencies") or []
        if not isinstance(raw_tasks, list) or not isinstance(raw_deps, list):
            raise TaskPlanningError(
                "Candidate plan must contain 'tasks' and 'dependencies' arrays",
                TaskPlanningError.PARSE_ERROR,
            )

        tasks: List[Task] = []
        unresolved: List[str] = []
        for i, item in enumerate(raw_tasks):
            if not isinstance(item, dict):
                raise TaskPlanningError(
                    f"Task #{i + 1} is not an object", TaskPlanningError.PARSE_ERROR)
            task_id = str(item.get("id") or f"t{i + 1}")
            task_type = str(item.get("type") or "general")
            agent_id, resolved = self.registry.select_agent(
                item.get("agentType"), task_type, self.default_agent)
            if not resolved:
                unresolved.append(task_id)
            deps = item.get("dependencies") or []
            if not isinstance(deps, list):
                deps = [deps]
            tags = item.get("tags") or []
            if not isinstance(tags, list):
                tags = [tags]
            task_input = item.get("input")
            tasks.append(Task(
                id=task_id,
                type=task_type,
                description=str(item.get("description", "")),
                priority=_enum(TaskPriority, item.get("priority", "medium"), TaskPriority.MEDIUM),
                agent_id=agent_id,
                dependencies=[str(d) for d in deps],
                input=dict(task_input) if isinstance(task_input, dict) else {},
                metadata=TaskMetadata(
                    conversation_id=request.conversation_id,
                    user_intent=request.user_query,
                    estimated_duration=_number(item.get("estimatedDuration"), 0.0) or None,
                    requires_approval=bool(item.get("requiresApproval", False)),
                    risk_level=_enum(RiskLevel, item.get("riskLevel", "low"), RiskLevel.LOW),
                    tags=[str(t) for t in tags],
                ),
                max_retries=self.default_max_retries,
            ))

        edges: List[TaskDependency] = []
        for dep in raw_deps:
            if not isinstance(dep, dict) or "from" not in dep or "to" not in dep:
                raise TaskPlanningError(
                    f"Malformed dependency edge: {dep!r}", TaskPlanningError.PARSE_ERROR)
            edges.append(TaskDependency(
                source=str(dep["from"]),
                target=str(dep["to"]),
                kind=_enum(DependencyKind, dep.get("type", "hard"), DependencyKind.HARD),
                condition=dep.get("condition"),
            ))

        mode = request.execution_mode or _enum(
            ExecutionMode, candidate.get("executionMode", "sequential"), ExecutionMode.SEQUENTIAL)

        plan = ExecutionPlan(
            id=new_id("plan"),
            name=str(candidate.get("planName") or "Execution Plan"),
            description=str(candidate.get("planDescription", "")),
            mode=mode,
            tasks=tasks,
            dependencies=edges,
            estimated_duration=_number(candidate.get("estimatedDuration"), 0.0),
            metadata=PlanMetadata(
                conversation_id=request.conversation_id,
                user_query=request.user_query,
                complexity=_enum(Complexity, candidate.get("complexity", "simple"),
                                 Complexity.SIMPLE),
                requires_user_approval=bool(candidate.get("requiresApproval", False)),
            ),
        )
        return plan, unresolved

    def fallback_plan(self, request: DecompositionRequest) -> ExecutionPlan:
        """Single sequential task on the default agent carrying the raw request."""
        task = Task(
            id=new_id("task"),
            type="search",
            description=f"Process user query: {request.user_query}",
            agent_id=self.default_agent,
            input={"query": request.user_query},
            metadata=TaskMetadata(
                conversation_id=request.conversation_id,
                user_intent=request.user_query,
                confidence=0.5,
                tags=["fallback"],
                context={"fallback": True},
            ),
            max_retries=1,
        )
        return ExecutionPlan(
            id=new_id("fallback"),
            name="Fallback Plan",
            description="Simple fallback execution plan",
            mode=ExecutionMode.SEQUENTIAL,
            tasks=[task],
            estimated_duration=5.0,
            metadata=PlanMetadata(
                conversation_id=request.conversation_id,
                user_query=request.user_query,
            ),
        )
