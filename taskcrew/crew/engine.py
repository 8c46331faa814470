"""Execution engine: runs a validated plan against registered task executors.

All scheduling state lives on the event loop thread. The engine suspends only
while waiting for the first running task to settle, for an executor call (or
its timeout), and for retry backoff.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..errors import SchedulingError, TaskExecutionError
from ..logger import get_logger
from .graph import dependency_map, downstream_of, topological_order
from .registry import CapabilityRegistry
from .tasks import (
    AgentInteraction,
    ExecutionContext,
    ExecutionMode,
    ExecutionPlan,
    InteractionType,
    QualityScore,
    Task,
    TaskPriority,
    TaskResult,
    TaskStatus,
)

_log = get_logger(__name__)


class TaskExecutor(ABC):
    """Per-worker adapter between the scheduler and whatever does the work."""

    @abstractmethod
    async def execute_task(self, task: Task, context: ExecutionContext) -> TaskResult:
        ...

    @abstractmethod
    def get_worker_id(self) -> str:
        ...

    def is_available(self) -> bool:
        return True


@dataclass
class EngineConfig:
    max_concurrent_tasks: int = 3
    task_timeout: float = 300.0      # seconds, per attempt
    enable_retries: bool = True
    retry_base_delay: float = 1.0    # seconds
    max_retry_delay: float = 10.0    # seconds
    default_agent: str = "supervisor"


@dataclass
class ExecutionOutcome:
    success: bool
    results: List[TaskResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duration: float = 0.0  # seconds

    def result_for(self, task_id: str) -> Optional[TaskResult]:
        for r in self.results:
            if r.task_id == task_id:
                return r
        return None


class ExecutionEngine:
    """Schedules plan tasks sequentially or in parallel with retries and timeouts."""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[CapabilityRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or EngineConfig()
        self.registry = registry
        self._sleep = sleep
        self._executors: Dict[str, TaskExecutor] = {}
        self._running: Dict[str, Set[str]] = {}   # plan id -> in-flight task ids
        self._cancelled: Set[str] = set()
        self._total_executions = 0

    # ── Executor registration ─────────────────────────────────

    def register_executor(self, worker_id: str, executor: TaskExecutor) -> None:
        """Bind an executor to a worker id, replacing any previous binding."""
        self._executors[worker_id] = executor

    def unregister_executor(self, worker_id: str) -> bool:
        return self._executors.pop(worker_id, None) is not None

    def get_executor(self, worker_id: str) -> Optional[TaskExecutor]:
        return self._executors.get(worker_id)

    @property
    def max_concurrent_tasks(self) -> int:
        return max(1, self.config.max_concurrent_tasks)

    # ── Plan execution ────────────────────────────────────────

    async def execute_plan(self, plan: ExecutionPlan, context: ExecutionContext) -> ExecutionOutcome:
        """Run every task of ``plan``. Expected failures are reported, never raised."""
        start = time.monotonic()
        results: List[TaskResult] = []
        errors: List[str] = []
        warnings: List[str] = []

        for task in plan.tasks:
            task.reset()
        plan.status = TaskStatus.IN_PROGRESS
        self._running[plan.id] = set()
        self._cancelled.discard(plan.id)

        try:
            if plan.mode == ExecutionMode.PARALLEL:
                await self._execute_parallel(plan, context, results, errors)
            else:
                await self._execute_sequential(plan, context, results, errors, warnings)
        except SchedulingError as e:
            _log.error("Plan %s aborted: %s", plan.id, e)
            errors.append(str(e))
        finally:
            self._running.pop(plan.id, None)

        cancelled = plan.id in self._cancelled
        self._cancelled.discard(plan.id)
        if cancelled:
            errors.append(f"Execution of plan {plan.id} was cancelled")

        failed = [r for r in results if r.status == TaskStatus.FAILED]
        if cancelled:
            plan.status = TaskStatus.CANCELLED
        elif failed or errors:
            plan.status = TaskStatus.FAILED
        else:
            plan.status = TaskStatus.COMPLETED

        context.completed_tasks = [r.task_id for r in results if r.succeeded]
        context.failed_tasks = [r.task_id for r in failed]
        context.total_tokens_used += sum(r.tokens_used for r in results)
        context.current_task = None

        return ExecutionOutcome(
            success=not failed and not errors,
            results=results,
            errors=errors,
            warnings=warnings,
            duration=time.monotonic() - start,
        )

    async def _execute_sequential(self, plan: ExecutionPlan, context: ExecutionContext,
                                  results: List[TaskResult], errors: List[str],
                                  warnings: List[str]) -> None:
        order, complete = topological_order(plan)
        if not complete:
            msg = (f"Could not order all tasks of plan {plan.id} topologically; "
                   "falling back to plan order")
            _log.warning(msg)
            warnings.append(msg)
            order = list(plan.tasks)

        deps = dependency_map(plan)
        blocked: Set[str] = set()
        stop_reason: Optional[str] = None

        for task in order:
            if plan.id in self._cancelled:
                stop_reason = "plan execution cancelled"
            if stop_reason:
                results.append(self._cancel(task, stop_reason))
                blocked.add(task.id)
                continue

            bad = [d for d in deps.get(task.id, []) if d in blocked]
            if bad:
                results.append(self._cancel(task, f"dependency {bad[0]} did not complete"))
                blocked.add(task.id)
                continue

            result = await self._run_tracked(plan, task, context)
            results.append(result)
            if result.output:
                context.shared_data[task.id] = result.output

            if not result.succeeded:
                blocked.add(task.id)
            if result.status == TaskStatus.FAILED:
                errors.append(f"Task {task.id} failed: {result.error}")
                if task.priority == TaskPriority.CRITICAL:
                    stop_reason = f"critical task {task.id} failed"

    async def _execute_parallel(self, plan: ExecutionPlan, context: ExecutionContext,
                                results: List[TaskResult], errors: List[str]) -> None:
        deps = dependency_map(plan)
        succeeded: Set[str] = set()
        settled: Set[str] = set()
        running: Dict[asyncio.Task, Task] = {}

        try:
            while len(settled) < len(plan.tasks):
                cancelled = plan.id in self._cancelled
                ready: List[Task] = []
                if not cancelled:
                    in_flight = {t.id for t in running.values()}
                    ready = [
                        t for t in plan.tasks
                        if t.id not in settled and t.id not in in_flight
                        and all(d in succeeded for d in deps[t.id])
                    ]
                    slots = self.max_concurrent_tasks - len(running)
                    for task in ready[:slots]:
                        fut = asyncio.ensure_future(self._run_tracked(plan, task, context))
                        running[fut] = task

                if not running:
                    if cancelled:
                        break
                    remaining = [t.id for t in plan.tasks if t.id not in settled]
                    raise SchedulingError(
                        f"Execution deadlock: tasks {', '.join(remaining)} have unmet dependencies",
                        remaining,
                    )

                done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
                for fut in done:
                    task = running.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        result = self._failed_result(task, task.agent_id or self.config.default_agent,
                                                     f"Task {task.id} error: {e}", 0.0)
                    results.append(result)
                    settled.add(task.id)
                    if result.output:
                        context.shared_data[task.id] = result.output

                    if result.succeeded:
                        succeeded.add(task.id)
                        continue
                    if result.status == TaskStatus.FAILED:
                        errors.append(f"Task {task.id} failed: {result.error}")
                    for child_id in downstream_of(plan, task.id):
                        if child_id in settled:
                            continue
                        child = plan.get_task(child_id)
                        results.append(self._cancel(child, f"dependency {task.id} did not complete"))
                        settled.add(child_id)
        finally:
            if running:
                # Dispatched work is never recalled; let it settle before returning.
                await asyncio.wait(running.keys())

        for task in plan.tasks:
            if not task.is_terminal and plan.id in self._cancelled:
                results.append(self._cancel(task, "plan execution cancelled"))

    async def _run_tracked(self, plan: ExecutionPlan, task: Task,
                           context: ExecutionContext) -> TaskResult:
        in_flight = self._running.setdefault(plan.id, set())
        in_flight.add(task.id)
        try:
            return await self.execute_task(task, context)
        finally:
            in_flight.discard(task.id)

    # ── Single task ───────────────────────────────────────────

    def backoff_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (1-based)."""
        delay = self.config.retry_base_delay * (2 ** (retry_count - 1))
        return min(delay, self.config.max_retry_delay)

    async def execute_task(self, task: Task, context: ExecutionContext) -> TaskResult:
        """Run one task with timeout and retries; always returns a terminal result."""
        agent_id = task.agent_id or self.config.default_agent
        start = time.monotonic()
        task.retry_count = 0
        task.status = TaskStatus.IN_PROGRESS
        task.started_at = datetime.now()
        context.current_task = task.id

        while True:
            try:
                result = await self._attempt(task, agent_id, context)
                if result.status == TaskStatus.FAILED:
                    raise TaskExecutionError(
                        result.error or f"Executor for agent {agent_id} reported failure",
                        task.id, agent_id,
                    )
                break
            except Exception as e:
                if self.config.enable_retries and task.retry_count < task.max_retries:
                    task.retry_count += 1
                    delay = self.backoff_delay(task.retry_count)
                    _log.warning("Task %s attempt %d/%d failed: %s; retrying in %.2fs",
                                 task.id, task.retry_count, task.max_retries + 1, e, delay)
                    await self._sleep(delay)
                    continue
                return self._fail(task, agent_id, str(e), time.monotonic() - start, context)

        elapsed = time.monotonic() - start
        self._total_executions += 1
        task.status = result.status
        task.completed_at = datetime.now()
        task.output = result.output
        task.metadata.actual_duration = elapsed
        if not result.duration:
            result.duration = elapsed
        context.add_interaction(AgentInteraction(
            from_agent=result.agent_used or agent_id,
            type=InteractionType.RESPONSE,
            content=f"Task completed: {task.description}",
            task_id=task.id,
            metadata={
                "duration": result.duration,
                "tokens_used": result.tokens_used,
                "quality": result.quality.score,
                "attempts": task.retry_count + 1,
            },
        ))
        return result

    async def _attempt(self, task: Task, agent_id: str, context: ExecutionContext) -> TaskResult:
        executor = self._executors.get(agent_id)
        if executor is None:
            raise TaskExecutionError(f"No executor found for agent: {agent_id}", task.id, agent_id)
        if not executor.is_available():
            raise TaskExecutionError(
                f"Executor for agent {agent_id} is not available", task.id, agent_id)

        if self.registry is not None:
            self.registry.acquire(agent_id)
        try:
            return await asyncio.wait_for(
                executor.execute_task(task, context), timeout=self.config.task_timeout)
        except asyncio.TimeoutError:
            raise TaskExecutionError(
                f"Task execution timeout after {self.config.task_timeout:g}s",
                task.id, agent_id,
            ) from None
        finally:
            if self.registry is not None:
                self.registry.release(agent_id)

    def _fail(self, task: Task, agent_id: str, error: str, elapsed: float,
              context: ExecutionContext) -> TaskResult:
        self._total_executions += 1
        task.status = TaskStatus.FAILED
        task.completed_at = datetime.now()
        task.metadata.actual_duration = elapsed
        _log.error("Task %s failed permanently after %d attempt(s): %s",
                   task.id, task.retry_count + 1, error)
        context.add_interaction(AgentInteraction(
            from_agent=agent_id,
            type=InteractionType.ERROR,
            content=f"Task failed: {error}",
            task_id=task.id,
            metadata={"error": error, "duration": elapsed, "attempts": task.retry_count + 1},
        ))
        return self._failed_result(task, agent_id, error, elapsed)

    @staticmethod
    def _failed_result(task: Task, agent_id: str, error: str, elapsed: float) -> TaskResult:
        task.status = TaskStatus.FAILED
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.FAILED,
            agent_used=agent_id,
            error=error,
            duration=elapsed,
            quality=QualityScore(score=0.0, factors={"error": 1.0}),
        )

    def _cancel(self, task: Task, reason: str) -> TaskResult:
        task.status = TaskStatus.CANCELLED
        task.completed_at = datetime.now()
        return TaskResult(
            task_id=task.id,
            status=TaskStatus.CANCELLED,
            agent_used=task.agent_id or self.config.default_agent,
            error=f"Skipped: {reason}",
        )

    # ── Control ───────────────────────────────────────────────

    def cancel_execution(self, plan_id: str) -> bool:
        """Stop scheduling new tasks for ``plan_id``.

        Tasks already handed to an executor run to completion. Returns False
        when the plan is not currently executing.
        """
        if plan_id not in self._running:
            return False
        _log.info("Execution cancellation requested for plan %s", plan_id)
        self._cancelled.add(plan_id)
        return True

    def get_execution_stats(self) -> Dict[str, int]:
        return {
            "running_tasks": sum(len(ids) for ids in self._running.values()),
            "registered_executors": len(self._executors),
            "total_executions": self._total_executions,
        }
