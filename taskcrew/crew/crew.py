"""Crew facade: decompose, (optionally) wait for approval, execute, persist, synthesize."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..config import Config, _coerce_bool, _coerce_positive_float, _coerce_positive_int
from ..errors import ContextStoreError
from ..llm import LLMAdapter
from ..logger import get_logger
from .engine import EngineConfig, ExecutionEngine, ExecutionOutcome, TaskExecutor
from .memory import CrewMemory, create_memory
from .messages import CommunicationProtocol
from .planner import DecompositionRequest, DecompositionResult, PlanGenerator, TaskDecomposer
from .registry import CapabilityRegistry, load_registry_from_config
from .tasks import ExecutionContext, ExecutionMode, ExecutionPlan, TaskStatus, new_id
from .worker import LLMTaskExecutor

_log = get_logger(__name__)

EXECUTION_MODES = {"auto", "sequential", "parallel"}

SYNTHESIZE_PROMPT = """\
You are synthesizing the results from a multi-agent crew execution.

The original user request was:
{request}

Here are the results from each task:

{results}
{failures}
Write one coherent answer that directly addresses the user's request.
Be concise but complete.
"""


@dataclass
class CrewConfig:
    """Configuration for crew planning and execution.

    Parsed from the ``crew:`` section of ``.taskcrew.yml``. Durations are seconds.
    """

    max_concurrent_tasks: int = 3
    task_timeout: float = 300.0
    enable_retries: bool = True
    retry_base_delay: float = 1.0
    max_retry_delay: float = 10.0
    default_max_retries: int = 3
    default_agent: str = "supervisor"
    response_timeout: float = 30.0
    execution_mode: str = "auto"       # "auto" | "sequential" | "parallel"
    agents: Dict[str, Any] = field(default_factory=dict)
    memory_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CrewConfig":
        """Parse a CrewConfig from a raw config dictionary (YAML crew: section)."""
        if not data:
            return cls()

        mode = str(data.get("execution-mode", "auto")).strip().lower()
        if mode not in EXECUTION_MODES:
            _log.warning("Unknown execution-mode %r, using auto", mode)
            mode = "auto"
        agents = data.get("agents") or {}

        return cls(
            max_concurrent_tasks=_coerce_positive_int(
                data.get("max-concurrent-tasks", 3), 3, max_value=64),
            task_timeout=_coerce_positive_float(data.get("task-timeout", 300.0), 300.0),
            enable_retries=_coerce_bool(data.get("enable-retries", True), True),
            retry_base_delay=_coerce_positive_float(data.get("retry-base-delay", 1.0), 1.0),
            max_retry_delay=_coerce_positive_float(data.get("max-retry-delay", 10.0), 10.0),
            default_max_retries=_coerce_positive_int(
                data.get("default-max-retries", 3), 3, min_value=0, max_value=20),
            default_agent=str(data.get("default-agent") or "supervisor"),
            response_timeout=_coerce_positive_float(data.get("response-timeout", 30.0), 30.0),
            execution_mode=mode,
            agents=dict(agents) if isinstance(agents, dict) else {},
            memory_file=data.get("memory-file") or None,
        )

    @property
    def mode_override(self) -> Optional[ExecutionMode]:
        return None if self.execution_mode == "auto" else ExecutionMode(self.execution_mode)

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            max_concurrent_tasks=self.max_concurrent_tasks,
            task_timeout=self.task_timeout,
            enable_retries=self.enable_retries,
            retry_base_delay=self.retry_base_delay,
            max_retry_delay=self.max_retry_delay,
            default_agent=self.default_agent,
        )


@dataclass
class CrewResult:
    success: bool
    plan: ExecutionPlan
    response: str = ""
    reasoning: str = ""
    requires_approval: bool = False
    used_fallback: bool = False
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    outcome: Optional[ExecutionOutcome] = None
    context: Optional[ExecutionContext] = None

    def summary(self) -> Dict[str, Any]:
        results = self.outcome.results if self.outcome else []
        return {
            "tasks_completed": sum(1 for r in results if r.succeeded),
            "tasks_failed": sum(1 for r in results if r.status == TaskStatus.FAILED),
            "tasks_cancelled": sum(1 for r in results if r.status == TaskStatus.CANCELLED),
            "total_duration": self.outcome.duration if self.outcome else 0.0,
            "tokens_used": self.context.total_tokens_used if self.context else 0,
        }


def llm_plan_generator(llm: LLMAdapter) -> PlanGenerator:
    """Plan generator backed by a chat completion; returns the raw reply text."""

    async def generate(system_prompt: str, user_prompt: str) -> str:
        response = await llm.achat(
            [{"role": "system", "content": system_prompt},
             {"role": "user", "content": user_prompt}],
            temperature=0.3,
        )
        return response.content or ""

    return generate


class Crew:
    """Top-level plan-and-execute interface used by the CLI."""

    def __init__(
        self,
        crew_cfg: CrewConfig,
        registry: CapabilityRegistry,
        generate: PlanGenerator,
        llm: Optional[LLMAdapter] = None,
        memory: Optional[CrewMemory] = None,
    ):
        self.crew_cfg = crew_cfg
        self.registry = registry
        self.llm = llm
        self.memory = memory or create_memory(crew_cfg.memory_file)
        self.decomposer = TaskDecomposer(
            generate, registry,
            default_agent=crew_cfg.default_agent,
            default_max_retries=crew_cfg.default_max_retries,
        )
        self.engine = ExecutionEngine(crew_cfg.engine_config(), registry)
        self.protocol = CommunicationProtocol(
            registry, self.memory, default_timeout=crew_cfg.response_timeout)

    @classmethod
    def from_config(cls, config: Config, llm: Optional[LLMAdapter] = None) -> "Crew":
        """Wire an LLM-backed crew: one LLMTaskExecutor per configured worker."""
        crew_cfg = CrewConfig.from_dict(config.crew_config)
        llm = llm or LLMAdapter(**config.get_active_preset().get_llm_kwargs())
        registry = load_registry_from_config(crew_cfg.agents)
        crew = cls(crew_cfg, registry, llm_plan_generator(llm), llm=llm)
        for agent in registry.all():
            crew.register_executor(agent.agent_id, LLMTaskExecutor(agent.agent_id, llm, agent))
        return crew

    def register_executor(self, worker_id: str, executor: TaskExecutor) -> None:
        self.engine.register_executor(worker_id, executor)

    async def plan(self, query: str, conversation_id: str = "",
                   chat_history: Optional[List[Dict[str, str]]] = None,
                   execution_mode: Optional[ExecutionMode] = None) -> DecompositionResult:
        request = DecompositionRequest(
            user_query=query,
            conversation_id=conversation_id,
            chat_history=list(chat_history or []),
            execution_mode=execution_mode or self.crew_cfg.mode_override,
        )
        return await self.decomposer.decompose(request)

    async def execute(self, plan: ExecutionPlan,
                      conversation_id: str = "") -> Tuple[ExecutionOutcome, ExecutionContext]:
        context = ExecutionContext(plan_id=plan.id, conversation_id=conversation_id)
        await self.protocol.initialize()
        outcome = await self.engine.execute_plan(plan, context)
        return outcome, context

    async def run(
        self,
        query: str,
        conversation_id: Optional[str] = None,
        chat_history: Optional[List[Dict[str, str]]] = None,
        execution_mode: Optional[ExecutionMode] = None,
        auto_approve: bool = False,
    ) -> CrewResult:
        """Execute a crew request end-to-end."""
        conversation_id = conversation_id or new_id("conv")
        decomposition = await self.plan(query, conversation_id, chat_history, execution_mode)
        plan = decomposition.plan
        warnings = list(decomposition.warnings)
        errors: List[str] = []
        if not decomposition.success:
            warnings.append(f"Planning failed, running fallback plan: {decomposition.error}")

        if plan.metadata.requires_user_approval and not auto_approve:
            _log.info("Plan %s requires approval; not executing", plan.id)
            return CrewResult(
                success=True,
                plan=plan,
                reasoning=decomposition.reasoning,
                requires_approval=True,
                used_fallback=not decomposition.success,
                warnings=warnings,
            )

        outcome, context = await self.execute(plan, conversation_id)
        warnings.extend(outcome.warnings)
        errors.extend(outcome.errors)

        response = await self.synthesize(query, outcome)
        try:
            await self._persist(conversation_id, query, response, outcome, context)
        except ContextStoreError as e:
            _log.error("Failed to persist run of plan %s: %s", plan.id, e)
            warnings.append(f"Results were not persisted: {e}")

        return CrewResult(
            success=outcome.success,
            plan=plan,
            response=response,
            reasoning=decomposition.reasoning,
            used_fallback=not decomposition.success,
            warnings=warnings,
            errors=errors,
            outcome=outcome,
            context=context,
        )

    async def _persist(self, conversation_id: str, query: str, response: str,
                       outcome: ExecutionOutcome, context: ExecutionContext) -> None:
        await self.memory.save_execution_context(context)
        for interaction in context.agent_interactions:
            await self.memory.store_interaction(interaction)
        for result in outcome.results:
            for artifact in result.artifacts:
                await self.memory.store_artifact(artifact)
        await self.memory.append_conversation_message(conversation_id, "user", query)
        await self.memory.append_conversation_message(conversation_id, "assistant", response)

    async def synthesize(self, query: str, outcome: ExecutionOutcome) -> str:
        """Merge task outputs into one answer; plain concatenation without an LLM."""
        parts = []
        for r in outcome.results:
            if r.succeeded and r.output:
                parts.append(f"## {r.task_id} ({r.agent_used})\n{r.output.get('content', r.output)}")
        combined = "\n\n".join(parts)
        failed = sum(1 for r in outcome.results if r.status == TaskStatus.FAILED)

        if self.llm is None or not parts:
            return combined

        prompt = SYNTHESIZE_PROMPT.format(
            request=query,
            results=combined,
            failures=f"\nNote: {failed} task(s) failed during execution.\n" if failed else "",
        )
        try:
            response = await self.llm.achat([{"role": "user", "content": prompt}])
        except ConnectionError as e:
            _log.warning("Result synthesis failed, returning raw outputs: %s", e)
            return combined
        return response.content or combined
