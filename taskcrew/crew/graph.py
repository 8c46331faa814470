"""Dependency-graph algorithms over an execution plan.

Edges point from a prerequisite to the task that waits on it. A task's
blocking prerequisites are its own ``dependencies`` plus every *hard*
explicit edge targeting it; soft edges only participate in cycle detection.
"""

from collections import deque
from typing import Dict, List, Optional, Set, Tuple

from .tasks import ExecutionPlan, Task


def _merge(target: List[str], extra: str) -> None:
    if extra not in target:
        target.append(extra)


def dependency_map(plan: ExecutionPlan, include_soft: bool = False) -> Dict[str, List[str]]:
    """task id -> prerequisite ids, in declaration order without duplicates."""
    deps: Dict[str, List[str]] = {}
    for task in plan.tasks:
        merged = deps.setdefault(task.id, [])
        for dep in task.dependencies:
            _merge(merged, dep)
    for edge in plan.dependencies:
        if not edge.is_hard and not include_soft:
            continue
        if edge.target in deps:
            _merge(deps[edge.target], edge.source)
    return deps


def dangling_references(plan: ExecutionPlan) -> List[Tuple[str, str]]:
    """Return ``(referrer, missing_id)`` pairs for dependencies naming unknown tasks."""
    known = set(plan.task_ids())
    missing: List[Tuple[str, str]] = []
    for task in plan.tasks:
        for dep in task.dependencies:
            if dep not in known:
                missing.append((task.id, dep))
    for edge in plan.dependencies:
        for end in (edge.source, edge.target):
            if end not in known:
                missing.append((f"{edge.source}->{edge.target}", end))
    return missing


def find_cycle(plan: ExecutionPlan) -> Optional[List[str]]:
    """Depth-first search over every edge (hard and soft).

    Returns the cycle as a path that starts and ends on the same id, or
    ``None`` when the graph is acyclic. Unknown ids are ignored here; they
    are reported by :func:`dangling_references`.
    """
    deps = dependency_map(plan, include_soft=True)
    white, grey, black = 0, 1, 2
    color = {tid: white for tid in deps}

    for root in deps:
        if color[root] != white:
            continue
        # Iterative DFS: stack of (node, iterator over its prerequisites)
        path: List[str] = [root]
        color[root] = grey
        stack = [iter(deps[root])]
        while stack:
            advanced = False
            for nxt in stack[-1]:
                if nxt not in color:
                    continue
                if color[nxt] == grey:
                    start = path.index(nxt)
                    return path[start:] + [nxt]
                if color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    stack.append(iter(deps[nxt]))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = black
                stack.pop()
    return None


def topological_order(plan: ExecutionPlan) -> Tuple[List[Task], bool]:
    """Kahn's algorithm over blocking edges.

    Ties are broken by plan order. Returns ``(order, complete)``; when
    ``complete`` is False some tasks could not be ordered and are missing
    from ``order``.
    """
    deps = dependency_map(plan)
    by_id = {t.id: t for t in plan.tasks}
    indegree = {tid: len(d) for tid, d in deps.items()}
    dependents: Dict[str, List[str]] = {tid: [] for tid in deps}
    for tid, prereqs in deps.items():
        for p in prereqs:
            if p in dependents:
                dependents[p].append(tid)

    queue = deque(t.id for t in plan.tasks if indegree[t.id] == 0)
    order: List[Task] = []
    while queue:
        tid = queue.popleft()
        order.append(by_id[tid])
        for child in dependents[tid]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    return order, len(order) == len(plan.tasks)


def topo_layers(plan: ExecutionPlan) -> List[List[Task]]:
    """Group tasks into layers; every task sits below all of its prerequisites."""
    deps = dependency_map(plan)
    placed: Set[str] = set()
    layers: List[List[Task]] = []
    remaining = list(plan.tasks)

    while remaining:
        layer = [t for t in remaining if all(d in placed or d not in deps for d in deps[t.id])]
        if not layer:
            layer = remaining[:]  # cycle
        placed.update(t.id for t in layer)
        remaining = [t for t in remaining if t.id not in placed]
        layers.append(layer)
    return layers


def downstream_of(plan: ExecutionPlan, task_id: str) -> List[str]:
    """Every task that transitively waits on ``task_id``, in plan order."""
    deps = dependency_map(plan)
    hit: Set[str] = set()
    frontier = [task_id]
    while frontier:
        current = frontier.pop()
        for tid, prereqs in deps.items():
            if current in prereqs and tid not in hit:
                hit.add(tid)
                frontier.append(tid)
    return [t.id for t in plan.tasks if t.id in hit]
