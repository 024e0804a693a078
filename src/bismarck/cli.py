"""CLI interface for Bismarck using Typer.

Bismarck runs plans (dependency graphs of tasks) across parallel coding
agents in isolated git worktrees, and runs "repeat until done" agent loops.
"""

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from bismarck import __version__
from bismarck.agents import ClaudeAgentRunner
from bismarck.config import DEFAULT_LOOP_MAX_ITERATIONS, EngineConfig, RalphLoopConfig
from bismarck.errors import BismarckError
from bismarck.events import EngineEvent, EventBus, EventKind, Subscription
from bismarck.plans import PlanManager
from bismarck.project import BismarckPaths, find_git_root
from bismarck.ralph_loop import RalphLoopEngine
from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    BranchStrategy,
    LoopStatus,
    NodeStatus,
    PlanStatus,
    RalphLoopState,
    Task,
    TeamMode,
)

logger = logging.getLogger(__name__)

app = typer.Typer(help="Bismarck - plan orchestration for parallel coding agents")
plan_app = typer.Typer(help="Create, run and manage plans")
loop_app = typer.Typer(help="Run an agent repeatedly until it reports completion")
app.add_typer(plan_app, name="plan")
app.add_typer(loop_app, name="loop")

console = Console()

LEVEL_STYLES = {
    "info": "white",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


def _format_plan_status(status: PlanStatus) -> str:
    """Format status with color."""
    status_colors = {
        PlanStatus.DRAFT: "[dim]draft[/dim]",
        PlanStatus.DISCUSSING: "[cyan]discussing[/cyan]",
        PlanStatus.DISCUSSED: "[cyan]discussed[/cyan]",
        PlanStatus.DELEGATING: "[blue]delegating[/blue]",
        PlanStatus.IN_PROGRESS: "[blue]in_progress[/blue]",
        PlanStatus.READY_FOR_REVIEW: "[magenta]ready_for_review[/magenta]",
        PlanStatus.COMPLETED: "[green]completed[/green]",
        PlanStatus.FAILED: "[red]failed[/red]",
    }
    return status_colors.get(status, status.value)


def _format_node_status(status: NodeStatus) -> str:
    node_colors = {
        NodeStatus.BLOCKED: "[dim]blocked[/dim]",
        NodeStatus.READY: "[cyan]ready[/cyan]",
        NodeStatus.SENT: "[blue]sent[/blue]",
        NodeStatus.IN_PROGRESS: "[blue]in_progress[/blue]",
        NodeStatus.COMPLETED: "[green]completed[/green]",
        NodeStatus.FAILED: "[red]failed[/red]",
    }
    return node_colors.get(status, status.value)


def _format_loop_status(status: LoopStatus) -> str:
    loop_colors = {
        LoopStatus.RUNNING: "[blue]running[/blue]",
        LoopStatus.PAUSED: "[cyan]paused[/cyan]",
        LoopStatus.COMPLETED: "[green]completed[/green]",
        LoopStatus.MAX_ITERATIONS: "[yellow]max_iterations[/yellow]",
        LoopStatus.FAILED: "[red]failed[/red]",
        LoopStatus.CANCELLED: "[red]cancelled[/red]",
    }
    return loop_colors.get(status, status.value)


def _print_event(event: EngineEvent) -> None:
    if event.kind in (EventKind.TASK_OUTPUT, EventKind.LOOP_OUTPUT):
        if event.task_id:
            console.print(f"[dim]{event.task_id}[/dim] ", end="")
        console.print(event.message, markup=False, highlight=False)
        return
    style = LEVEL_STYLES.get(event.level, "white")
    task = f" [{event.task_id}]" if event.task_id else ""
    status = f" -> {event.status}" if event.status else ""
    console.print(
        f"[dim]{event.timestamp.strftime('%H:%M:%S')}[/dim] [{style}]{event.kind}{task}{status}[/{style}] {event.message}",
        highlight=False,
    )


@dataclass
class Engine:
    """Everything a command needs, wired from the on-disk configuration."""

    paths: BismarckPaths
    config: EngineConfig
    db: BismarckDB
    bus: EventBus
    plans: PlanManager
    loops: RalphLoopEngine


@contextmanager
def _open_engine(**overrides) -> Iterator[Engine]:
    paths = BismarckPaths().ensure()
    config = EngineConfig.load(paths.config_path).merged(**overrides)
    if config.worktrees_dir:
        paths = BismarckPaths(home=paths.home, worktrees_dir=config.worktrees_dir).ensure()
    db = BismarckDB(str(paths.db_path))
    try:
        bus = EventBus(store=db, buffer_size=config.event_buffer_size)
        runner = ClaudeAgentRunner(max_attempts=config.agent_max_attempts)
        yield Engine(
            paths=paths,
            config=config,
            db=db,
            bus=bus,
            plans=PlanManager(db, bus, runner, config, paths),
            loops=RalphLoopEngine(runner, db, bus, config, paths),
        )
    finally:
        db.close()


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def _resolve_repo(repo: Optional[str]) -> str:
    root = find_git_root(Path(repo) if repo else None)
    if root is None:
        _fail(f"Not a git repository: {repo or Path.cwd()}")
    return str(root)


def load_tasks(path: Path) -> list[Task]:
    """Load tasks from a JSON file.

    Accepts a list of task objects or an object with a "tasks" list. Each task
    has an id, a subject (or title), an optional description and an optional
    blocked_by (or blockedBy) list of task ids.
    """
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise BismarckError(f"Could not read tasks from {path}: {e}", original_error=e) from e
    if isinstance(data, dict):
        data = data.get("tasks", [])
    if not isinstance(data, list):
        raise BismarckError(f"Tasks file {path} must hold a list of tasks")
    try:
        return [Task.from_dict(item) for item in data]
    except (KeyError, TypeError) as e:
        raise BismarckError(f"Invalid task in {path}: {e}", original_error=e) from e


async def _drain(subscription: Subscription) -> None:
    async for event in subscription:
        _print_event(event)


@app.command()
def version():
    """Show the installed version."""
    console.print(f"bismarck {__version__}")


# Plans


@plan_app.command("create")
def plan_create(
    title: str = typer.Argument(..., help="Plan title"),
    tasks_file: Path = typer.Option(..., "--tasks", "-t", help="JSON file with the plan's tasks"),
    description: str = typer.Option("", "--description", "-d", help="Plan description"),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository (defaults to current)"),
    strategy: BranchStrategy = typer.Option(
        BranchStrategy.FEATURE_BRANCH, "--strategy", "-s", help="How finished work is integrated"
    ),
    team_mode: TeamMode = typer.Option(TeamMode.TOP_DOWN, "--team-mode", help="Team mode"),
    max_parallel: Optional[int] = typer.Option(
        None, "--max-parallel", "-p", help="Maximum concurrent agents for this plan"
    ),
):
    """
    Create a draft plan from a tasks file.

    Examples:
        bismarck plan create "Auth rework" --tasks tasks.json
        bismarck plan create "Docs" -t docs.json --strategy raise_prs
    """
    repo_path = _resolve_repo(repo)
    with _open_engine() as engine:
        try:
            plan = engine.plans.create_plan(
                title,
                description,
                load_tasks(tasks_file),
                repo_path,
                branch_strategy=strategy,
                team_mode=team_mode,
                max_parallel_agents=max_parallel,
            )
        except (BismarckError, ValueError) as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Created plan {plan.id}")


@plan_app.command("list")
def plan_list():
    """List plans with their status."""
    with _open_engine() as engine:
        plans = engine.plans.list_plans()
        if not plans:
            console.print("[yellow]No plans found[/yellow]")
            return

        table = Table(title="Plans")
        table.add_column("Plan ID", style="cyan")
        table.add_column("Title", style="white")
        table.add_column("Status", style="white")
        table.add_column("Strategy", style="dim")
        table.add_column("Tasks", style="white", justify="right")
        table.add_column("Updated", style="white")

        for plan in plans:
            table.add_row(
                plan.id,
                plan.title,
                _format_plan_status(plan.status),
                plan.branch_strategy.value,
                str(len(engine.plans.get_tasks(plan.id))),
                plan.updated_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)


@plan_app.command("show")
def plan_show(plan_id: str = typer.Argument(..., help="Plan ID")):
    """Show a plan, its task graph and its git summary."""
    with _open_engine() as engine:
        try:
            plan = engine.plans.get_plan(plan_id)
            graph = engine.plans.get_graph(plan_id)
            tasks = {t.id: t for t in engine.plans.get_tasks(plan_id)}
        except BismarckError as e:
            _fail(str(e))

        table = Table(title=plan.title)
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Plan ID", plan.id)
        table.add_row("Status", _format_plan_status(plan.status))
        table.add_row("Repository", plan.repo_path)
        table.add_row("Strategy", plan.branch_strategy.value)
        if plan.base_branch:
            table.add_row("Base", plan.base_branch)
        if plan.feature_branch:
            table.add_row("Feature branch", plan.feature_branch)
        table.add_row("Critical path", " → ".join(graph.critical_path) or "-")
        console.print(table)

        task_table = Table(title="Tasks")
        task_table.add_column("Task", style="cyan")
        task_table.add_column("Subject", style="white")
        task_table.add_column("Status", style="white")
        task_table.add_column("Blocked by", style="dim")
        for task_id in graph.topological_order:
            node = graph.get(task_id)
            task_table.add_row(
                task_id,
                tasks[task_id].subject,
                _format_node_status(node.status),
                ", ".join(sorted(node.dependencies)) or "-",
            )
        console.print(task_table)

        if plan.git_summary.commits:
            console.print(f"\n[bold]Commits:[/bold] {len(plan.git_summary.commits)}")
            for commit in plan.git_summary.commits[-10:]:
                owner = f" [dim]({commit.task_id})[/dim]" if commit.task_id else ""
                console.print(f"  {commit.short_sha} {commit.message}{owner}")
        for pr in plan.git_summary.pull_requests:
            console.print(f"  PR #{pr.number} [{pr.status}] {pr.title} {pr.url}")


@plan_app.command("discuss")
def plan_discuss(plan_id: str = typer.Argument(..., help="Plan ID")):
    """Start the discussion phase of a draft plan."""
    with _open_engine() as engine:
        try:
            engine.plans.start_discussion(plan_id)
        except BismarckError as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Plan {plan_id} is being discussed")


@plan_app.command("discussed")
def plan_discussed(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    criteria: Optional[str] = typer.Option(None, "--criteria", "-c", help="Critic criteria"),
    output_file: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Discussion transcript to read critic criteria from"
    ),
):
    """Finish the discussion phase, recording critic criteria."""
    with _open_engine() as engine:
        try:
            discussion_output = output_file.read_text() if output_file else None
            plan = engine.plans.complete_discussion(plan_id, criteria, discussion_output)
        except (BismarckError, OSError) as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Plan {plan.id} discussed")
        if plan.critic_criteria:
            console.print(f"[dim]Critic criteria:[/dim]\n{plan.critic_criteria}")


async def _run_plan(engine: Engine, plan_id: str) -> PlanStatus:
    engine.plans.recover()
    subscription = engine.bus.subscribe(plan_id)
    engine.plans.execute_plan(plan_id)
    printer = asyncio.create_task(_drain(subscription))
    try:
        return await engine.plans.wait_for_plan(plan_id)
    except asyncio.CancelledError:
        console.print("\n[yellow]⚠️  Interrupted, cancelling plan...[/yellow]")
        await engine.plans.cancel_plan(plan_id)
        raise
    finally:
        subscription.close()
        await printer


@plan_app.command("run")
def plan_run(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    max_parallel: Optional[int] = typer.Option(
        None, "--max-parallel", "-p", help="Override the maximum concurrent agents"
    ),
    no_critic: bool = typer.Option(False, "--no-critic", help="Skip critic reviews"),
):
    """
    Execute a plan and stream its events until it finishes.

    Ctrl-C cancels the plan: agents are stopped and worktrees cleaned up.
    """
    overrides = {"max_parallel_agents": max_parallel}
    if no_critic:
        overrides["critic_enabled"] = False
    try:
        with _open_engine(**overrides) as engine:
            status = asyncio.run(_run_plan(engine, plan_id))
    except BismarckError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Interrupted by user[/yellow]")
        raise typer.Exit(130)

    console.print(f"\n{'='*60}")
    if status == PlanStatus.READY_FOR_REVIEW:
        console.print("[green]✅ All tasks finished. Plan is ready for review.[/green]")
    else:
        console.print(f"[red]Plan ended {status.value}[/red]")
        raise typer.Exit(1)


@plan_app.command("restart")
def plan_restart(plan_id: str = typer.Argument(..., help="Plan ID")):
    """Reset a failed plan so it can run again."""
    with _open_engine() as engine:
        try:
            plan = asyncio.run(engine.plans.restart_plan(plan_id))
        except BismarckError as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Plan {plan.id} restarted ({plan.status.value})")


@plan_app.command("clone")
def plan_clone(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    title: Optional[str] = typer.Option(None, "--title", help="Title of the copy"),
):
    """Copy a plan's tasks and settings into a new draft plan."""
    with _open_engine() as engine:
        try:
            plan = engine.plans.clone_plan(plan_id, title)
        except BismarckError as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Created plan {plan.id}")


@plan_app.command("complete")
def plan_complete(plan_id: str = typer.Argument(..., help="Plan ID")):
    """Mark a reviewed plan as completed."""
    with _open_engine() as engine:
        try:
            engine.plans.complete_plan(plan_id)
        except BismarckError as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Plan {plan_id} completed")


@plan_app.command("delete")
def plan_delete(
    plan_id: str = typer.Argument(..., help="Plan ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a plan with its worktrees, branches and history."""
    if not yes:
        typer.confirm(f"Delete plan {plan_id}?", abort=True)
    with _open_engine() as engine:
        try:
            asyncio.run(engine.plans.delete_plan(plan_id))
        except BismarckError as e:
            _fail(str(e))
        console.print(f"[green]✓[/green] Deleted plan {plan_id}")


# Loops


async def _follow_loop(
    engine: Engine, begin: Callable[[], Awaitable[RalphLoopState]]
) -> LoopStatus:
    """Start or continue a loop, print its events and wait for it to settle."""
    subscription = engine.bus.subscribe()
    printer = asyncio.create_task(_drain(subscription))
    try:
        state = await begin()
        console.print(f"[green]✓[/green] Loop {state.id} on {state.worktree.branch}")
        try:
            await engine.loops.wait_for_completion(state.id)
        except asyncio.CancelledError:
            console.print("\n[yellow]⚠️  Interrupted, cancelling loop...[/yellow]")
            await engine.loops.cancel(state.id)
            raise
        return state.status
    finally:
        subscription.close()
        await printer
        await engine.loops.shutdown()


def _report_loop(status: LoopStatus) -> None:
    console.print(f"\n{'='*60}")
    if status == LoopStatus.COMPLETED:
        console.print("[green]✅ Completion phrase detected. Loop completed.[/green]")
    elif status == LoopStatus.MAX_ITERATIONS:
        console.print("[yellow]⏱️  Max iterations reached.[/yellow]")
        raise typer.Exit(1)
    else:
        console.print(f"[red]Loop ended {status.value}[/red]")
        raise typer.Exit(1)


@loop_app.command("start")
def loop_start(
    prompt: str = typer.Argument(..., help="Prompt resent to the agent every iteration"),
    completion_phrase: str = typer.Option(
        "<promise>COMPLETE</promise>", "--phrase", "-c", help="Exact phrase that ends the loop"
    ),
    max_iterations: int = typer.Option(
        DEFAULT_LOOP_MAX_ITERATIONS, "--max-iterations", "-m", help="Iteration budget"
    ),
    repo: Optional[str] = typer.Option(None, "--repo", "-r", help="Repository (defaults to current)"),
    model: str = typer.Option("sonnet", "--model", help="Model for every iteration"),
):
    """
    Start a loop and follow it until it finishes.

    Examples:
        bismarck loop start "Fix every failing test" -m 5
        bismarck loop start "$(cat PROMPT.md)" --phrase DONE
    """
    repo_path = _resolve_repo(repo)
    try:
        config = RalphLoopConfig(
            reference_agent_id=Path(repo_path).name,
            repo_path=repo_path,
            prompt=prompt,
            completion_phrase=completion_phrase,
            max_iterations=max_iterations,
            model=model,
        )
    except ValueError as e:
        _fail(str(e))
    try:
        with _open_engine() as engine:
            engine.loops.recover()
            status = asyncio.run(_follow_loop(engine, lambda: engine.loops.start_loop(config)))
    except BismarckError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Interrupted by user[/yellow]")
        raise typer.Exit(130)
    _report_loop(status)


@loop_app.command("retry")
def loop_retry(loop_id: str = typer.Argument(..., help="Loop ID")):
    """Retry a failed loop with a new iteration in the same worktree."""
    try:
        with _open_engine() as engine:
            status = asyncio.run(_follow_loop(engine, lambda: engine.loops.retry(loop_id)))
    except BismarckError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Interrupted by user[/yellow]")
        raise typer.Exit(130)
    _report_loop(status)


@loop_app.command("resume")
def loop_resume(loop_id: str = typer.Argument(..., help="Loop ID")):
    """Resume a paused loop."""
    try:
        with _open_engine() as engine:
            status = asyncio.run(_follow_loop(engine, lambda: engine.loops.resume(loop_id)))
    except BismarckError as e:
        _fail(str(e))
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠️  Interrupted by user[/yellow]")
        raise typer.Exit(130)
    _report_loop(status)


@loop_app.command("list")
def loop_list():
    """List loops with their status."""
    with _open_engine() as engine:
        loops = engine.loops.list_loops()
        if not loops:
            console.print("[yellow]No loops found[/yellow]")
            return

        table = Table(title="Loops")
        table.add_column("Loop ID", style="cyan")
        table.add_column("Status", style="white")
        table.add_column("Iterations", style="white", justify="right")
        table.add_column("Commits", style="white", justify="right")
        table.add_column("Branch", style="dim")
        table.add_column("Started", style="white")

        for state in loops:
            table.add_row(
                state.id,
                _format_loop_status(state.status),
                f"{state.current_iteration}/{state.config.max_iterations}",
                str(len(state.git_summary.commits)),
                state.worktree.branch,
                state.started_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)


@loop_app.command("cleanup")
def loop_cleanup(loop_id: str = typer.Argument(..., help="Loop ID")):
    """Remove a finished loop's worktree, branches and record."""
    try:
        with _open_engine() as engine:
            asyncio.run(engine.loops.cleanup(loop_id))
    except BismarckError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Cleaned up loop {loop_id}")


# Events


@app.command()
def events(
    subject_id: str = typer.Argument(..., help="Plan or loop ID"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Only the most recent N events"),
):
    """Replay the recorded events of a plan or loop."""
    with _open_engine() as engine:
        recorded = engine.bus.replay(subject_id, limit)
        if not recorded:
            console.print(f"[yellow]No events recorded for {subject_id}[/yellow]")
            return
        for event in recorded:
            _print_event(event)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Bismarck - plan orchestration for parallel coding agents."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s: %(name)s: %(message)s",
    )


if __name__ == "__main__":
    app()
