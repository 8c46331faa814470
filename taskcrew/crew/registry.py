"""Capability registry: worker id -> declared capabilities, load and limits."""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..logger import get_logger

_log = get_logger(__name__)


@dataclass
class AgentCapability:
    """What a worker can do and how busy it currently is."""

    agent_id: str
    capabilities: List[str] = field(default_factory=list)
    specializations: List[str] = field(default_factory=list)
    average_response_time: float = 5.0  # seconds
    success_rate: float = 0.9
    current_load: int = 0
    max_concurrent_tasks: int = 2
    is_available: bool = True
    last_seen: float = field(default_factory=time.time)

    @property
    def has_capacity(self) -> bool:
        return self.current_load < self.max_concurrent_tasks

    def matches(self, tag: str) -> bool:
        """Case-insensitive substring match against capabilities and specializations."""
        needle = tag.lower()
        return any(needle in t.lower() for t in self.capabilities + self.specializations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capabilities": list(self.capabilities),
            "specializations": list(self.specializations),
            "average_response_time": self.average_response_time,
            "success_rate": self.success_rate,
            "current_load": self.current_load,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "is_available": self.is_available,
        }


DEFAULT_AGENTS = {
    "research": AgentCapability(
        agent_id="research",
        capabilities=["search", "analyze", "retrieve", "summarize"],
        specializations=["semantic_search", "knowledge_retrieval", "document_analysis"],
        average_response_time=3.0,
        success_rate=0.95,
    ),
    "refactoring": AgentCapability(
        agent_id="refactoring",
        capabilities=["code_analysis", "create", "modify", "optimize"],
        specializations=["code_improvement", "document_creation", "content_structuring"],
        average_response_time=4.0,
        success_rate=0.90,
    ),
    "safety": AgentCapability(
        agent_id="safety",
        capabilities=["validate", "assess_risk", "approve"],
        specializations=["risk_assessment", "operation_validation", "data_protection"],
        average_response_time=2.0,
        success_rate=0.98,
    ),
    "supervisor": AgentCapability(
        agent_id="supervisor",
        capabilities=["coordinate", "plan", "synthesize"],
        specializations=["multi_agent_coordination", "task_planning", "result_synthesis"],
        average_response_time=2.5,
        success_rate=0.92,
    ),
}


class CapabilityRegistry:
    """Mutable catalogue of workers.

    The registry owns capability metadata at rest. During a run the execution
    engine is the only caller of :meth:`acquire` / :meth:`release`, and it
    brackets each in-flight task with exactly one pair of calls.
    """

    def __init__(self, agents: Optional[List[AgentCapability]] = None):
        self._agents: Dict[str, AgentCapability] = {}
        for agent in agents or []:
            self.register(agent)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def register(self, capability: AgentCapability) -> None:
        """Add or replace a worker entry."""
        capability.last_seen = time.time()
        self._agents[capability.agent_id] = capability

    def unregister(self, agent_id: str) -> bool:
        return self._agents.pop(agent_id, None) is not None

    def get(self, agent_id: str) -> Optional[AgentCapability]:
        return self._agents.get(agent_id)

    def all(self) -> List[AgentCapability]:
        return list(self._agents.values())

    def ids(self) -> List[str]:
        return list(self._agents)

    def update_status(self, agent_id: str, is_available: Optional[bool] = None,
                      current_load: Optional[int] = None) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        if is_available is not None:
            agent.is_available = is_available
        if current_load is not None:
            agent.current_load = max(0, current_load)
        agent.last_seen = time.time()

    def acquire(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is not None:
            agent.current_load += 1

    def release(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is not None:
            agent.current_load = max(0, agent.current_load - 1)

    def find_capable(self, required: List[str]) -> List[AgentCapability]:
        """Available workers matching every required tag, least loaded first."""
        matches = [
            a for a in self._agents.values()
            if a.is_available and all(a.matches(tag) for tag in required)
        ]
        # sorted() is stable, so equal loads keep registration order
        return sorted(matches, key=lambda a: a.current_load)

    def select_agent(self, agent_type: Optional[str], task_type: Optional[str],
                     default: str) -> Tuple[str, bool]:
        """Resolve the worker for a task.

        Returns ``(agent_id, resolved)``. ``resolved`` is False when nothing
        matched and the default worker was used instead.
        """
        if agent_type:
            wanted = agent_type.lower()
            for agent in self._agents.values():
                if wanted in agent.agent_id.lower() and agent.has_capacity:
                    return agent.agent_id, True

        if task_type:
            candidates = [a for a in self._agents.values() if a.matches(task_type)]
            if candidates:
                best = min(candidates, key=lambda a: a.current_load)
                return best.agent_id, True

        return default, False

    def describe(self) -> str:
        """One line per worker, used in plan generation prompts."""
        return "\n".join(
            f"- {a.agent_id}: {', '.join(a.capabilities)} "
            f"(specializes in: {', '.join(a.specializations)})"
            for a in self._agents.values()
        )


def _copy(agent: AgentCapability) -> AgentCapability:
    return AgentCapability(
        agent_id=agent.agent_id,
        capabilities=list(agent.capabilities),
        specializations=list(agent.specializations),
        average_response_time=agent.average_response_time,
        success_rate=agent.success_rate,
        max_concurrent_tasks=agent.max_concurrent_tasks,
    )


def load_registry_from_config(agents_cfg: Optional[Dict[str, Any]] = None) -> CapabilityRegistry:
    """Build a registry from the ``crew.agents`` config mapping, merged over the defaults."""
    agents = {name: _copy(entry) for name, entry in DEFAULT_AGENTS.items()}

    for name, entry in (agents_cfg or {}).items():
        entry = entry or {}
        base = agents.get(name) or AgentCapability(
            agent_id=name, capabilities=["general"], specializations=["general_purpose"],
        )
        try:
            max_tasks = max(1, int(entry.get("max-concurrent-tasks", base.max_concurrent_tasks)))
        except (TypeError, ValueError):
            _log.warning("Invalid max-concurrent-tasks for agent %s, keeping %d",
                         name, base.max_concurrent_tasks)
            max_tasks = base.max_concurrent_tasks
        agents[name] = AgentCapability(
            agent_id=name,
            capabilities=list(entry.get("capabilities", base.capabilities)),
            specializations=list(entry.get("specializations", base.specializations)),
            average_response_time=float(
                entry.get("average-response-time", base.average_response_time)),
            success_rate=float(entry.get("success-rate", base.success_rate)),
            max_concurrent_tasks=max_tasks,
        )

    return CapabilityRegistry(list(agents.values()))
