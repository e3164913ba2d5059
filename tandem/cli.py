"""Click CLI interface for tandem."""

import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import anyio
import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tandem import __version__
from tandem.config import ConfigError, config_manager, get_config, load_env_files
from tandem.errors import ErrorKind, TandemError
from tandem.events import EventKind, WorkflowEvent
from tandem.integrations.git import GitWorktreeManager
from tandem.models import TaskStatus, WorkflowOptions, WorkflowResult
from tandem.preflight import validate_environment
from tandem.state import TaskStateStore, get_state_dir
from tandem.teams import TeamRegistry
from tandem.utils.cancellation import CancellationToken
from tandem.utils.logger import enable_verbose_logging, get_logger
from tandem.workflows.team import execute_team_workflow

logger = get_logger(__name__)
console = Console()

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130

REMEDIATION_HINTS = {
    ErrorKind.BUDGET_EXHAUSTED: [
        "Raise the review limit with --max-reviews",
        "Make the specification more specific so the reviewer can approve sooner",
    ],
    ErrorKind.SPEC_NOT_FOUND: [
        "Check that the specification path exists and is readable",
        "Issue references look like #123, gh-123 or a GitHub issue URL",
    ],
    ErrorKind.VALIDATION: ["Check that the specification file is non-empty UTF-8 text"],
    ErrorKind.ENVIRONMENT: [
        "Run 'tandem doctor' to see every environment check",
        "Re-run with --verbose for detailed diagnostics",
    ],
    ErrorKind.CONFIGURATION: ["Check ~/.tandem/config.yaml and .tandem/config.yaml for invalid values"],
    ErrorKind.TEAM_NOT_FOUND: ["Run 'tandem teams' to list the available teams"],
    ErrorKind.TEAM_INVALID: [
        "Team modules must define callable CODER and REVIEWER",
        "Run 'tandem teams' to see why the team was rejected",
    ],
    ErrorKind.GIT_REPOSITORY_NOT_FOUND: ["Run tandem from inside the repository to work on"],
    ErrorKind.WORKTREE_CREATION: [
        "Choose another --branch-name or remove the stale branch",
        "Run 'tandem cleanup' to remove leftover worktrees",
    ],
    ErrorKind.AGENT_EXECUTION: [
        "Confirm the claude CLI is installed and logged in",
        "See ~/.tandem/logs/tandem.log for the full agent error",
    ],
    ErrorKind.GITHUB: ["Verify the GitHub token and run 'gh auth status'"],
    ErrorKind.CANCELLED: ["Re-run the command to start a fresh task"],
}

DEFAULT_HINTS = ["Re-run with --verbose for detailed diagnostics"]


def remediation_hints(kind: Optional[ErrorKind]) -> List[str]:
    if kind is None:
        return DEFAULT_HINTS
    return REMEDIATION_HINTS.get(kind, DEFAULT_HINTS)


def exit_code_for(result: WorkflowResult) -> int:
    if result.success:
        return EXIT_SUCCESS
    if result.error_kind is ErrorKind.CANCELLED:
        return EXIT_INTERRUPTED
    return EXIT_FAILURE


class ConsoleReporter:
    """Prints workflow events to the terminal."""

    STYLES = {
        EventKind.TASK_STARTED: "blue",
        EventKind.ITERATION_ADVANCED: "yellow",
        EventKind.COMPLETED: "green",
        EventKind.FAILED: "red",
        EventKind.CLEANUP_FAILED: "yellow",
    }

    def __init__(self, output: Console):
        self.console = output

    def emit(self, event: WorkflowEvent) -> None:
        style = self.STYLES.get(event.kind, "white")
        prefix = f"[dim]{event.task_id}[/dim] " if event.task_id else ""
        label = event.kind.value.replace("_", " ")
        self.console.print(f"{prefix}[{style}]{label}[/{style}] {event.message}")


@contextmanager
def cancel_on_interrupt(cancellation: CancellationToken) -> Iterator[None]:
    """Turn the first Ctrl+C into a cancellation request.

    A second Ctrl+C restores the default handler and aborts immediately.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.getsignal(signal.SIGINT)

    def handle(signum, frame):
        if cancellation.cancelled:
            signal.signal(signal.SIGINT, signal.default_int_handler)
            raise KeyboardInterrupt
        cancellation.cancel("Interrupted by user")
        console.print(
            "\n[yellow]Interrupt received; stopping after the current step "
            "(press Ctrl+C again to abort).[/yellow]"
        )

    signal.signal(signal.SIGINT, handle)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def print_summary(result: WorkflowResult) -> None:
    console.print()
    if result.success:
        console.print("[green]✓ Workflow completed[/green]")
        console.print(f"  Pull request: {result.pr_url}")
    else:
        console.print("[red]✗ Workflow failed[/red]")

    console.print(f"  Task: {result.task_id or 'not created'}")
    console.print(f"  Iterations: {result.iterations}")
    console.print(f"  Elapsed: {result.duration_seconds:.1f}s")
    if result.total_cost_usd:
        console.print(f"  Cost: ${result.total_cost_usd:.4f}")

    if result.cleanup is not None:
        for error in result.cleanup.errors:
            console.print(f"  [yellow]Cleanup warning:[/yellow] {escape(error)}")

    if result.success:
        return

    if result.preflight is not None and result.preflight.errors:
        console.print("  [red]Environment problems:[/red]")
        for error in result.preflight.errors:
            console.print(f"    • {escape(error)}")
    elif result.error:
        console.print(f"  [red]Error:[/red] {escape(result.error)}")

    if result.error_kind is not None and result.error_kind.is_pre_mutation:
        console.print("  [dim]Nothing was created; no worktree or task record to clean up.[/dim]")

    console.print("\n[bold]Troubleshooting:[/bold]")
    for hint in remediation_hints(result.error_kind):
        console.print(f"  • {hint}")


def load_config_or_exit():
    try:
        return get_config()
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_FAILURE)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx: click.Context, version: bool, verbose: bool) -> None:
    """Tandem - coder/reviewer agent orchestration.

    Runs a coding agent and a reviewing agent in turns in an isolated git
    worktree until the reviewer opens a pull request.
    """
    if version:
        click.echo(f"tandem version {__version__}")
        sys.exit(EXIT_SUCCESS)

    if verbose:
        enable_verbose_logging()

    load_env_files(Path.cwd())

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command()
@click.argument("team_name", metavar="TEAM")
@click.argument("spec_or_issue")
@click.option("--max-reviews", "-r", type=click.IntRange(1, 10), help="Review budget (default 3)")
@click.option("--branch-name", "-b", help="Branch to create instead of tandem/<task-id>")
@click.option("--base-branch", help="Branch to start from (default: current branch)")
@click.option("--cleanup/--no-cleanup", default=None, help="Remove the worktree when done")
@click.option("--keep-state", is_flag=True, help="Keep the task record after cleanup")
def team(
    team_name: str,
    spec_or_issue: str,
    max_reviews: Optional[int],
    branch_name: Optional[str],
    base_branch: Optional[str],
    cleanup: Optional[bool],
    keep_state: bool,
) -> None:
    """Run TEAM on a specification file or GitHub issue."""
    config = load_config_or_exit()
    options = WorkflowOptions(
        team=team_name,
        spec_or_issue=spec_or_issue,
        max_iterations=max_reviews or config.defaults.max_reviews,
        branch_name=branch_name,
        base_branch=base_branch,
        cleanup=config.defaults.cleanup if cleanup is None else cleanup,
        keep_state=keep_state,
    )

    console.print(
        f"[blue]Info:[/blue] Running team '{team_name}' on {spec_or_issue} "
        f"(max {options.max_iterations} reviews)"
    )
    cancellation = CancellationToken()
    try:
        with cancel_on_interrupt(cancellation):
            result = anyio.run(
                execute_team_workflow, options, config, Path.cwd(), ConsoleReporter(console), cancellation
            )
    except KeyboardInterrupt:
        console.print("[red]Aborted.[/red] Run 'tandem cleanup --force' to remove leftover worktrees.")
        sys.exit(EXIT_INTERRUPTED)

    print_summary(result)
    sys.exit(exit_code_for(result))


@cli.command()
def teams() -> None:
    """List available teams."""
    config = load_config_or_exit()
    registry = TeamRegistry.from_config(config.teams)

    if not registry.teams and not registry.invalid:
        console.print("[yellow]No teams found.[/yellow]")
        return

    table = Table(title="Teams")
    table.add_column("Name", style="cyan")
    table.add_column("Source", style="dim")
    for name in registry.names():
        table.add_row(name, str(registry.teams[name].source))
    console.print(table)

    for name, reason in sorted(registry.invalid.items()):
        console.print(f"[red]✗ {name}:[/red] {reason}")


@cli.command()
def doctor() -> None:
    """Check the environment without starting a workflow."""
    config = load_config_or_exit()
    result = validate_environment(config, Path.cwd())

    for error in result.errors:
        console.print(f"[red]✗[/red] {error}")
    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")

    if result.success:
        console.print("[green]✓ Environment ready[/green]")
        return
    sys.exit(EXIT_FAILURE)


@cli.command()
@click.argument("task_id", required=False)
def status(task_id: Optional[str]) -> None:
    """Show persisted tasks, or the full record of TASK_ID."""
    config = load_config_or_exit()
    store = TaskStateStore(get_state_dir(config))

    if task_id:
        try:
            task = store.get(task_id)
        except TandemError as e:
            console.print(f"[red]Error:[/red] {e}")
            sys.exit(EXIT_FAILURE)
        console.print(
            yaml.safe_dump(task.model_dump(mode="json"), default_flow_style=False, sort_keys=False),
            markup=False,
            highlight=False,
        )
        return

    tasks, errors = store.scan()
    if not tasks and not errors:
        console.print("[yellow]No tasks found.[/yellow]")
        return

    status_styles = {
        TaskStatus.RUNNING: "[yellow]",
        TaskStatus.COMPLETED: "[green]",
        TaskStatus.FAILED: "[red]",
    }
    table = Table(title="Tasks")
    table.add_column("Task", style="cyan")
    table.add_column("Team")
    table.add_column("Status")
    table.add_column("Reviews", justify="right")
    table.add_column("Branch", style="blue")
    table.add_column("PR", style="green")
    table.add_column("Updated", style="dim")
    for task in sorted(tasks, key=lambda t: t.updated_at, reverse=True):
        table.add_row(
            task.task_id,
            task.team,
            f"{status_styles[task.status]}{task.status.value}[/]",
            f"{task.current_iteration}/{task.max_iterations}",
            task.branch_name,
            task.pr_url or "N/A",
            task.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)

    for path, error in errors.items():
        console.print(f"[red]✗ {path.name}:[/red] {error}")


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Also remove running tasks")
def cleanup(force: bool) -> None:
    """Remove finished tasks together with their worktrees and branches."""
    config = load_config_or_exit()
    store = TaskStateStore(get_state_dir(config))
    tasks = store.list_tasks()

    if not tasks:
        console.print("[yellow]No tasks to clean up.[/yellow]")
        return

    worktrees = GitWorktreeManager(config)
    cleaned = 0
    failures = 0
    for task in tasks:
        if not task.is_terminal and not force:
            continue
        try:
            report = worktrees.cleanup_worktree(task.worktree_info)
            store.cleanup(task.task_id)
        except TandemError as e:
            failures += 1
            console.print(f"[red]✗ {task.task_id}:[/red] {e}")
            continue
        cleaned += 1
        console.print(f"[green]✓[/green] {task.task_id} ({task.status.value})")
        for error in report.errors:
            console.print(f"  [yellow]Warning:[/yellow] {error}")

    skipped = len(tasks) - cleaned - failures
    console.print(f"\nCleaned {cleaned} task(s), {failures} failed, {skipped} still running.")
    if failures:
        sys.exit(EXIT_FAILURE)


@cli.group()
def config() -> None:
    """Configuration commands."""


@config.command("show")
def config_show() -> None:
    """Show the merged configuration."""
    resolved = load_config_or_exit()
    console.print(
        yaml.safe_dump(resolved.model_dump(mode="json"), default_flow_style=False, sort_keys=False),
        markup=False,
        highlight=False,
    )

    for config_type, path in config_manager.list_config_files().items():
        if path:
            console.print(f"  [green]✓[/green] {config_type}: {path}")
        else:
            console.print(f"  [dim]✗ {config_type}: Not found[/dim]")


@config.command("init")
@click.option("--project", is_flag=True, help="Write the project config instead of the user config")
def config_init(project: bool) -> None:
    """Write a default configuration file."""
    try:
        path = config_manager.create_default_config(user_level=not project)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(EXIT_FAILURE)
    console.print(f"[green]✓[/green] Configuration: {path}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
