"""
taskcrew: plan and run multi-agent task graphs from the terminal.

Commands: taskcrew plan | validate | run
"""

import asyncio
import json
import sys
from typing import Optional

import click
from rich.console import Console

from . import __version__
from .config import Config, ModelPreset
from .crew import Crew, CrewConfig, ExecutionPlan, load_registry_from_config, validate_plan
from .crew.rendering import CrewRenderer
from .crew.tasks import ExecutionMode
from .logger import setup_logger

console = Console()
BANNER = (
    f"[bold #7FA6D9]taskcrew[/bold #7FA6D9] "
    f"[dim]v{__version__} · multi-agent task planner[/dim]"
)

_MODE_CHOICE = click.Choice(["auto", "sequential", "parallel"])


def _load_config(project_dir: str, model: Optional[str], verbose: bool) -> Config:
    config = Config.load(project_dir)
    if model:
        if model in config.models:
            config.active_model = model
        else:
            config.models["_cli"] = ModelPreset(name="_cli", provider="openai", model=model)
            config.active_model = "_cli"
    if verbose:
        config.verbose = True
    setup_logger(verbose=config.verbose, log_file=config.log_file)
    return config


def _mode(value: Optional[str]) -> Optional[ExecutionMode]:
    if not value or value == "auto":
        return None
    return ExecutionMode(value)


def common_options(fn):
    fn = click.option("--verbose", "-v", is_flag=True, help="Verbose output")(fn)
    fn = click.option("--model", "-m", default=None, help="Model preset name")(fn)
    fn = click.option("--project-dir", "-d", default=".", help="Project directory")(fn)
    return fn


@click.group()
@click.version_option(__version__, prog_name="taskcrew")
def cli():
    """taskcrew: decompose requests into task graphs and execute them with a crew of agents."""


@cli.command()
@click.argument("request")
@click.option("--mode", type=_MODE_CHOICE, default=None, help="Override the execution mode")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@common_options
def plan(request, mode, as_json, project_dir, model, verbose):
    """Decompose REQUEST into an execution plan without running it."""
    config = _load_config(project_dir, model, verbose)
    crew = Crew.from_config(config)
    result = asyncio.run(crew.plan(request, execution_mode=_mode(mode)))

    if as_json:
        click.echo(json.dumps(result.plan.to_dict(), ensure_ascii=False, indent=2))
        if not result.success:
            sys.exit(1)
        return

    console.print(BANNER)
    if not result.success:
        console.print(f"  [red]Planning failed: {result.error}[/red]")
        console.print("  [dim]Showing fallback plan[/dim]")
    CrewRenderer(console).render_plan(result.plan, result.warnings, result.reasoning)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("plan_file", type=click.Path(exists=True, dir_okay=False))
@common_options
def validate(plan_file, project_dir, model, verbose):
    """Check a saved plan JSON file for cycles, dangling references and risk warnings."""
    config = _load_config(project_dir, model, verbose)
    try:
        with open(plan_file, encoding="utf-8") as f:
            data = json.load(f)
        execution_plan = ExecutionPlan.from_dict(data)
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        console.print(f"  [red]Cannot load plan {plan_file}: {e}[/red]")
        sys.exit(1)

    crew_cfg = CrewConfig.from_dict(config.crew_config)
    registry = load_registry_from_config(crew_cfg.agents)
    validation = validate_plan(execution_plan, registry)

    renderer = CrewRenderer(console)
    renderer.render_plan(execution_plan)
    renderer.render_validation(validation)
    if not validation.is_valid:
        sys.exit(1)


@cli.command()
@click.argument("request")
@click.option("--mode", type=_MODE_CHOICE, default=None, help="Override the execution mode")
@click.option("--max-concurrent", type=int, default=None, help="Parallel task ceiling")
@click.option("--yes", "-y", "auto_approve", is_flag=True, help="Run plans that require approval")
@common_options
def run(request, mode, max_concurrent, auto_approve, project_dir, model, verbose):
    """Plan REQUEST and execute it end to end."""
    config = _load_config(project_dir, model, verbose)
    if max_concurrent is not None:
        config.crew_config["max-concurrent-tasks"] = max_concurrent
    crew = Crew.from_config(config)

    console.print(BANNER)
    console.print(f"  [dim]model: {config.get_active_preset().model} | "
                  f"config: {config.config_source}[/dim]")
    try:
        result = asyncio.run(crew.run(request, execution_mode=_mode(mode),
                                      auto_approve=auto_approve))
    except KeyboardInterrupt:
        console.print("\n  [red]Crew interrupted by user[/red]")
        sys.exit(130)

    renderer = CrewRenderer(console)
    renderer.render_plan(result.plan, result.warnings, result.reasoning)
    if result.requires_approval:
        console.print("  [yellow]Plan requires approval; re-run with --yes to execute.[/yellow]")
        return

    renderer.render_summary(result.outcome, result.summary()["tokens_used"])
    if result.response:
        console.print()
        console.print(result.response)
    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    cli()
