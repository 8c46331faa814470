"""Tests for plan decomposition, candidate parsing and validation."""

import asyncio
import json

import pytest

from taskcrew.crew.planner import (
    DecompositionRequest,
    TaskDecomposer,
    WorkspaceContext,
    parse_candidate,
    validate_plan,
)
from taskcrew.crew.tasks import (
    DependencyKind,
    ExecutionMode,
    ExecutionPlan,
    RiskLevel,
    Task,
    TaskMetadata,
    TaskPriority,
)
from taskcrew.errors import TaskPlanningError


def _candidate(**overrides):
    data = {
        "planName": "Research and summarize",
        "planDescription": "Find sources then summarize them",
        "complexity": "moderate",
        "executionMode": "parallel",
        "requiresApproval": False,
        "estimatedDuration": 4,
        "tasks": [
            {"id": "t1", "type": "search", "description": "Find sources",
             "priority": "high", "agentType": "research", "dependencies": [],
             "input": {"query": "llm agents"}, "estimatedDuration": 2},
            {"id": "t2", "type": "summarize", "description": "Summarize sources",
             "agentType": "supervisor", "dependencies": ["t1"], "input": {}},
        ],
        "dependencies": [{"from": "t1", "to": "t2", "type": "hard"}],
        "reasoning": "Search first, then summarize.",
    }
    data.update(overrides)
    return data


def _generator(reply):
    calls = []

    async def generate(system_prompt, user_prompt):
        calls.append((system_prompt, user_prompt))
        if isinstance(reply, Exception):
            raise reply
        return reply

    generate.calls = calls
    return generate


def _decompose(decomposer, query="find and summarize papers", **kwargs):
    return asyncio.run(decomposer.decompose(DecompositionRequest(user_query=query, **kwargs)))


def _task(id, deps=None, agent="research", **meta):
    return Task(id=id, type="analyze", description=id, agent_id=agent,
                dependencies=deps or [], metadata=TaskMetadata(**meta))


class TestDecompose:

    def test_valid_candidate(self, registry):
        result = _decompose(TaskDecomposer(_generator(_candidate()), registry))
        assert result.success
        assert result.error is None
        plan = result.plan
        assert plan.name == "Research and summarize"
        assert plan.mode == ExecutionMode.PARALLEL
        assert [t.id for t in plan.tasks] == ["t1", "t2"]
        assert plan.get_task("t1").agent_id == "research"
        assert plan.get_task("t1").priority == TaskPriority.HIGH
        assert plan.get_task("t1").input == {"query": "llm agents"}
        assert plan.get_task("t2").dependencies == ["t1"]
        assert plan.dependencies[0].kind == DependencyKind.HARD
        assert result.reasoning == "Search first, then summarize."

    def test_candidate_as_fenced_text(self, registry):
        reply = "Here is the plan:\n```json\n" + json.dumps(_candidate()) + "\n```\n"
        result = _decompose(TaskDecomposer(_generator(reply), registry))
        assert result.success
        assert len(result.plan.tasks) == 2

    def test_ghost_dependency_falls_back(self, registry):
        candidate = _candidate(tasks=[
            {"id": "t1", "type": "search", "description": "x", "agentType": "research",
             "dependencies": ["t_ghost"]},
        ], dependencies=[])
        result = _decompose(TaskDecomposer(_generator(candidate), registry))
        assert not result.success
        assert "t_ghost" in result.error
        assert result.plan.name == "Fallback Plan"

    def test_cycle_falls_back(self, registry):
        candidate = _candidate(tasks=[
            {"id": "a", "type": "search", "description": "a", "dependencies": ["b"]},
            {"id": "b", "type": "search", "description": "b", "dependencies": ["a"]},
        ], dependencies=[])
        result = _decompose(TaskDecomposer(_generator(candidate), registry))
        assert not result.success
        assert "Circular dependencies" in result.error

    def test_generator_failure_falls_back(self, registry):
        result = _decompose(TaskDecomposer(_generator(ConnectionError("LLM down")), registry))
        assert not result.success
        assert result.error == "Plan generation failed: LLM down"
        assert result.error_code == TaskPlanningError.GENERATION_ERROR

    def test_unparseable_reply_falls_back(self, registry):
        result = _decompose(TaskDecomposer(_generator("no json here"), registry))
        assert not result.success
        assert "parse" in result.error.lower()
        assert result.error_code == TaskPlanningError.PARSE_ERROR

    def test_string_tags_are_kept_whole(self, registry):
        candidate = _candidate()
        candidate["tasks"][0]["tags"] = "security"
        result = _decompose(TaskDecomposer(_generator(candidate), registry))
        assert result.success
        assert result.plan.get_task("t1").metadata.tags == ["security"]

    def test_unresolved_agent_warns(self, registry):
        candidate = _candidate(tasks=[
            {"id": "t1", "type": "paint", "description": "x", "agentType": "painter"},
        ], dependencies=[])
        result = _decompose(TaskDecomposer(_generator(candidate), registry))
        assert result.success
        assert result.plan.get_task("t1").agent_id == "supervisor"
        assert any("default agent 'supervisor'" in w for w in result.warnings)

    def test_high_risk_without_approval_warns(self, registry):
        candidate = _candidate(tasks=[
            {"id": "t1", "type": "search", "description": "x", "agentType": "research",
             "riskLevel": "high", "requiresApproval": False},
        ], dependencies=[])
        result = _decompose(TaskDecomposer(_generator(candidate), registry))
        assert result.success
        assert any("High-risk" in w for w in result.warnings)

    def test_mode_override(self, registry):
        decomposer = TaskDecomposer(_generator(_candidate()), registry)
        result = _decompose(decomposer, execution_mode=ExecutionMode.SEQUENTIAL)
        assert result.plan.mode == ExecutionMode.SEQUENTIAL

    def test_unknown_enum_values_use_defaults(self, registry):
        candidate = _candidate(executionMode="whenever", tasks=[
            {"id": "t1", "type": "search", "description": "x", "priority": "urgent",
             "riskLevel": "extreme"},
        ], dependencies=[])
        result = _decompose(TaskDecomposer(_generator(candidate), registry))
        task = result.plan.get_task("t1")
        assert result.plan.mode == ExecutionMode.SEQUENTIAL
        assert task.priority == TaskPriority.MEDIUM
        assert task.metadata.risk_level == RiskLevel.LOW

    def test_max_retries_from_decomposer(self, registry):
        decomposer = TaskDecomposer(_generator(_candidate()), registry, default_max_retries=5)
        result = _decompose(decomposer)
        assert all(t.max_retries == 5 for t in result.plan.tasks)


class TestFallbackPlan:

    def test_shape(self, registry):
        decomposer = TaskDecomposer(_generator(ConnectionError("x")), registry)
        plan = _decompose(decomposer, query="what changed?", conversation_id="c1").plan
        assert plan.id.startswith("fallback_")
        assert plan.mode == ExecutionMode.SEQUENTIAL
        assert len(plan.tasks) == 1
        task = plan.tasks[0]
        assert task.type == "search"
        assert task.agent_id == "supervisor"
        assert task.input == {"query": "what changed?"}
        assert task.max_retries == 1
        assert task.metadata.tags == ["fallback"]
        assert plan.metadata.conversation_id == "c1"

    def test_fallback_is_valid(self, registry):
        decomposer = TaskDecomposer(_generator(ConnectionError("x")), registry)
        plan = _decompose(decomposer).plan
        assert validate_plan(plan, registry).is_valid


class TestPrompts:

    def test_user_prompt_keeps_last_three_turns(self, registry):
        generate = _generator(_candidate())
        history = [{"role": "user", "content": f"msg{i}"} for i in range(5)]
        _decompose(TaskDecomposer(generate, registry), chat_history=history,
                   workspace=WorkspaceContext(document_count=7, tags=["ml"]))
        system_prompt, user_prompt = generate.calls[0]
        assert "- research:" in system_prompt
        assert "msg0" not in user_prompt and "msg1" not in user_prompt
        assert "msg2" in user_prompt and "msg4" in user_prompt
        assert "Document count: 7" in user_prompt


class TestParseCandidate:

    def test_dict_passthrough(self):
        data = {"tasks": []}
        assert parse_candidate(data) is data

    def test_surrounding_prose(self):
        assert parse_candidate('Sure! {"tasks": []} Hope that helps.') == {"tasks": []}

    def test_invalid_json(self):
        with pytest.raises(TaskPlanningError) as exc:
            parse_candidate("{not json}")
        assert exc.value.code == TaskPlanningError.PARSE_ERROR

    def test_non_object(self):
        with pytest.raises(TaskPlanningError):
            parse_candidate("[1, 2, 3]")


class TestValidatePlan:

    def test_empty_plan(self):
        result = validate_plan(ExecutionPlan(id="p", name="p"))
        assert not result.is_valid
        assert "no tasks" in result.errors[0]

    def test_duplicate_ids(self):
        result = validate_plan(ExecutionPlan(id="p", name="p", tasks=[_task("a"), _task("a")]))
        assert not result.is_valid
        assert any("Duplicate" in e for e in result.errors)

    def test_dangling_reference(self):
        result = validate_plan(ExecutionPlan(id="p", name="p", tasks=[_task("a", ["ghost"])]))
        assert any("ghost" in e for e in result.errors)

    def test_unassigned_agents_warn_only(self, registry):
        plan = ExecutionPlan(id="p", name="p", tasks=[_task("a", agent=None), _task("b", agent="ghost")])
        result = validate_plan(plan, registry)
        assert result.is_valid
        assert result.warnings == ["Tasks without assigned agents: a, b"]

    def test_high_risk_with_approval_is_clean(self):
        plan = ExecutionPlan(id="p", name="p", tasks=[
            _task("a", risk_level=RiskLevel.HIGH, requires_approval=True),
        ])
        assert validate_plan(plan).warnings == []
