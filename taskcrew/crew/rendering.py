"""Console rendering for plans, validation reports and execution summaries."""

from typing import Dict, List, Optional, Sequence, Tuple

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .engine import ExecutionOutcome
from .graph import dependency_map, topo_layers
from .planner import PlanValidation
from .tasks import ExecutionPlan, RiskLevel, TaskPriority, TaskStatus

ACCENT = "#82AAE3"
BORDER = "#434C5E"
DIM = "#707A8A"
SUCCESS = "#62D2A2"
WARN = "#E3CF82"
ERROR = "#E38282"
INFO = "#82D4E3"

# agents get a stable color from this wheel
AGENT_COLORS = [ACCENT, SUCCESS, "#E3A982", "#D48AE3", INFO, WARN, "#A58AE3", ERROR]

_STATUS_DISPLAY = {
    TaskStatus.PENDING:     ("○", DIM),
    TaskStatus.IN_PROGRESS: ("▸", INFO),
    TaskStatus.COMPLETED:   ("✓", SUCCESS),
    TaskStatus.FAILED:      ("✗", ERROR),
    TaskStatus.CANCELLED:   ("–", DIM),
}

_PRIORITY_COLORS = {
    TaskPriority.LOW: DIM,
    TaskPriority.MEDIUM: INFO,
    TaskPriority.HIGH: WARN,
    TaskPriority.CRITICAL: ERROR,
}

# (header, min width, right aligned)
Column = Tuple[str, int, bool]
_PLAN_COLUMNS: Sequence[Column] = (
    ("ID", 6, False), ("Agent", 10, False), ("Type", 8, False),
    ("Priority", 8, False), ("Description", 30, False), ("Depends On", 10, False),
)
_SUMMARY_COLUMNS: Sequence[Column] = (
    ("Task", 8, False), ("Agent", 12, False), ("Status", 8, False),
    ("Quality", 7, True), ("Tokens", 8, True), ("Time", 8, True),
)


def color_for_agent(agent_id: Optional[str]) -> str:
    # sum() instead of hash() keeps colors stable across runs
    name = agent_id or "-"
    return AGENT_COLORS[sum(map(ord, name)) % len(AGENT_COLORS)]


def _fmt_tokens(n: int) -> str:
    for limit, suffix, fmt in ((1_000_000, "M", ".1f"), (1_000, "k", ".0f")):
        if n >= limit:
            return f"{n / limit:{fmt}}{suffix}"
    return str(n)


def _tint(value: str, color: str) -> str:
    return f"[{color}]{value}[/{color}]"


def _table(columns: Sequence[Column]) -> Table:
    table = Table(header_style=f"bold {ACCENT}", border_style=BORDER, padding=(0, 1))
    for header, width, right in columns:
        table.add_column(header, min_width=width, justify="right" if right else "left")
    return table


def _panel(body, title: str, subtitle: Optional[str] = None) -> Panel:
    return Panel(
        body,
        title=f"[bold {ACCENT}] {title} [/bold {ACCENT}]",
        subtitle=_tint(subtitle, DIM) if subtitle else None,
        title_align="left",
        border_style=BORDER,
        padding=(0, 1),
    )


class CrewRenderer:
    """Prints plans and run summaries with rich."""

    def __init__(self, console: Console):
        self.console = console

    # ── Plan: task table + layered DAG ───────────────────────

    def build_plan_table(self, plan: ExecutionPlan) -> Table:
        table = _table(_PLAN_COLUMNS)
        deps = dependency_map(plan)
        for task in plan.tasks:
            desc = task.description
            if task.metadata.risk_level == RiskLevel.HIGH:
                desc += " " + _tint("(high risk)", ERROR)
            table.add_row(
                f"[bold]{task.id}[/bold]",
                _tint(task.agent_id or "-", color_for_agent(task.agent_id)),
                task.type,
                _tint(task.priority.value, _PRIORITY_COLORS[task.priority]),
                desc,
                ", ".join(deps.get(task.id, [])) or "-",
            )
        return table

    def build_dag(self, plan: ExecutionPlan) -> Text:
        """One line per topological layer; each task lists what it waits on."""
        layers = topo_layers(plan)
        if not layers:
            return Text("  (no tasks)")

        deps = dependency_map(plan)
        out = Text()
        for depth, layer in enumerate(layers, start=1):
            if depth > 1:
                out.append("    │\n", style=DIM)
            out.append(f"  {depth:>2} ", style=DIM)
            for pos, task in enumerate(layer):
                if pos:
                    out.append("  ")
                icon, color = _STATUS_DISPLAY[task.status]
                out.append(f"{icon} ", style=color)
                out.append(task.id, style=f"bold {color_for_agent(task.agent_id)}")
                waits = deps.get(task.id)
                if waits:
                    out.append(" ← " + ", ".join(waits), style=DIM)
            out.append("\n")
        return out

    def render_plan(self, plan: ExecutionPlan, warnings: Optional[List[str]] = None,
                    reasoning: str = "") -> None:
        body = [self.build_plan_table(plan), Text(""), self.build_dag(plan)]
        if reasoning:
            body.append(Text(reasoning, style=DIM))
        subtitle = " | ".join([plan.mode.value, f"{len(plan.tasks)} task(s)",
                               f"~{plan.estimated_duration:g} min"])
        self.console.print(_panel(Group(*body), plan.name or plan.id, subtitle))
        self._notes(warnings or [], "!", WARN)

    def render_validation(self, validation: PlanValidation) -> None:
        self._notes(validation.errors, "✗", ERROR)
        self._notes(validation.warnings, "!", WARN)
        if validation.is_valid:
            self._notes(["Plan is valid"], "✓", SUCCESS)

    def _notes(self, lines: List[str], mark: str, color: str) -> None:
        for line in lines:
            self.console.print("  " + _tint(f"{mark} {line}", color))

    # ── Final summary table ──────────────────────────────────

    def render_summary(self, outcome: ExecutionOutcome, tokens_used: Optional[int] = None) -> None:
        table = _table(_SUMMARY_COLUMNS)
        tally: Dict[TaskStatus, int] = dict.fromkeys(TaskStatus, 0)
        for res in outcome.results:
            tally[res.status] += 1
            icon, status_color = _STATUS_DISPLAY[res.status]
            done = res.succeeded
            table.add_row(
                res.task_id,
                _tint(res.agent_used, color_for_agent(res.agent_used)),
                _tint(f"{icon} {res.status.value}", status_color),
                f"{res.quality.score:.2f}" if done else "-",
                f"{res.tokens_used:,}",
                f"{res.duration:.1f}s",
            )

        if tokens_used is None:
            tokens_used = sum(res.tokens_used for res in outcome.results)
        footer = (f"{outcome.duration:.1f}s total | {_fmt_tokens(tokens_used)} tokens | "
                  f"{tally[TaskStatus.COMPLETED]} done, {tally[TaskStatus.FAILED]} failed, "
                  f"{tally[TaskStatus.CANCELLED]} cancelled")
        self.console.print(_panel(table, "Crew Summary", footer))
        self._notes(outcome.errors, "✗", ERROR)
