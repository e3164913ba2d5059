"""Coder/reviewer iteration loop.

One task runs through these states::

    Initializing -> Coding -> Reviewing -> Completed        (a PR exists)
                               Reviewing -> Coding          (rejected, budget left)
                               Reviewing -> Failed          (rejected, budget spent)
    any step raises                      -> Failed

Every transition is persisted through :class:`TaskStateStore` before the
next step starts, so a crash never loses an agent response that was
already produced.
"""

import secrets
import string
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from tandem.errors import ErrorKind, TandemError
from tandem.events import EventKind, LoggingReporter, Reporter, WorkflowEvent
from tandem.integrations.agent import AgentInvoker
from tandem.integrations.git import GitWorktreeManager
from tandem.integrations.github import PullRequestFinalizer
from tandem.models import (
    AgentResult,
    AgentRole,
    CleanupReport,
    Config,
    IssueReference,
    McpServerConfig,
    PreflightResult,
    Task,
    TaskStatus,
    WorkflowOptions,
    WorkflowResult,
    WorktreeInfo,
)
from tandem.preflight import validate_environment
from tandem.prompts import compose_coder_prompt, compose_reviewer_prompt, extract_handoff
from tandem.state import TaskStateStore, get_state_dir
from tandem.teams import Team, TeamRegistry
from tandem.utils.cancellation import CancellationToken
from tandem.utils.logger import get_logger

logger = get_logger(__name__)

PreflightCheck = Callable[[Config, Optional[Path]], PreflightResult]

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_task_id() -> str:
    """``task-<unix millis>-<6 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"task-{int(time.time() * 1000)}-{suffix}"


def resolve_specification(
    spec_or_issue: str,
    finalizer: PullRequestFinalizer,
    cwd: Optional[Path] = None,
) -> Tuple[str, str]:
    """Turn the caller's argument into frozen specification text.

    Args:
        spec_or_issue: Path to a specification file, or a GitHub issue reference
        finalizer: Used to fetch issue bodies
        cwd: Base directory for relative paths

    Returns:
        Tuple of (source, text)

    Raises:
        TandemError: SPEC_NOT_FOUND or VALIDATION
    """
    path = Path(spec_or_issue).expanduser()
    if not path.is_absolute():
        path = (cwd or Path.cwd()) / path

    if path.is_file():
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise TandemError(ErrorKind.VALIDATION, f"Cannot read specification {path}: {e}", e) from e
        if not text.strip():
            raise TandemError(ErrorKind.VALIDATION, f"Specification file {path} is empty")
        return str(path), text

    if IssueReference.matches(spec_or_issue):
        return spec_or_issue, finalizer.fetch_issue(IssueReference.parse(spec_or_issue))

    raise TandemError(ErrorKind.SPEC_NOT_FOUND, f"Specification file not found: {spec_or_issue}")


class TeamWorkflow:
    """Drives one task from preflight to a terminal status.

    Every collaborator is injected so the loop can run against fakes.
    """

    def __init__(
        self,
        config: Config,
        *,
        team_registry: TeamRegistry,
        worktree_manager: GitWorktreeManager,
        state_store: TaskStateStore,
        invoker: AgentInvoker,
        finalizer: PullRequestFinalizer,
        reporter: Optional[Reporter] = None,
        preflight: PreflightCheck = validate_environment,
        cwd: Optional[Path] = None,
    ):
        self.config = config
        self.team_registry = team_registry
        self.worktrees = worktree_manager
        self.store = state_store
        self.invoker = invoker
        self.finalizer = finalizer
        self.reporter = reporter or LoggingReporter()
        self.preflight = preflight
        self.cwd = cwd
        self._rounds = 0
        self._cost = 0.0

    async def run(
        self,
        options: WorkflowOptions,
        cancellation: Optional[CancellationToken] = None,
    ) -> WorkflowResult:
        """Run the coder/reviewer loop for one specification.

        Failures before the worktree exists leave nothing on disk. Failures
        after that end the task as ``failed``; they are reported in the
        result rather than raised.
        """
        started = time.monotonic()
        cancellation = cancellation or CancellationToken()
        self._rounds = 0
        self._cost = 0.0

        preflight = self.preflight(self.config, self.cwd)
        for warning in preflight.warnings:
            logger.warning(f"Preflight: {warning}")
        if not preflight.success:
            return self._early_failure(
                TandemError(ErrorKind.ENVIRONMENT, "; ".join(preflight.errors)), started, preflight
            )

        try:
            team = self.team_registry.get(options.team)
            spec_path, spec = resolve_specification(options.spec_or_issue, self.finalizer, self.cwd)
            cancellation.raise_if_cancelled()
        except TandemError as e:
            return self._early_failure(e, started, preflight)

        task_id = generate_task_id()
        try:
            worktree = self.worktrees.create_worktree(
                task_id, base_branch=options.base_branch, branch_name=options.branch_name
            )
        except TandemError as e:
            return self._early_failure(e, started, preflight, task_id)

        task = Task(
            task_id=task_id,
            team=team.name,
            spec_path=spec_path,
            original_spec=spec,
            max_iterations=options.max_iterations,
            branch_name=worktree.branch,
            worktree_info=worktree,
        )
        try:
            self.store.initialize(task)
        except TandemError as e:
            self._discard_worktree(worktree)
            return self._early_failure(e, started, preflight, task_id)

        self._emit(EventKind.TASK_STARTED, task, f"Working in {worktree.path} on {worktree.branch}")

        try:
            task = await self._iterate(task, team, cancellation)
        except TandemError as e:
            task = self._mark_failed(task, e.message, e.kind)
        except Exception as e:
            logger.exception(f"Unexpected error in task {task_id}")
            task = self._mark_failed(task, str(e) or type(e).__name__, None)

        cleanup = None
        if options.cleanup:
            task, cleanup = self._cleanup(task, options.keep_state)

        return WorkflowResult(
            success=task.status is TaskStatus.COMPLETED,
            task_id=task.task_id,
            iterations=self._rounds,
            pr_url=task.pr_url,
            error=task.error,
            error_kind=task.error_kind,
            preflight=preflight,
            duration_seconds=time.monotonic() - started,
            total_cost_usd=self._cost,
            task=task,
            cleanup=cleanup,
        )

    async def _iterate(self, task: Task, team: Team, cancellation: CancellationToken) -> Task:
        mcp_servers = self._mcp_servers_for(team)
        while True:
            logger.info(
                f"Round {task.current_iteration + 1}/{task.max_iterations} for {task.task_id}: coding"
            )
            coder_prompt = compose_coder_prompt(
                team, task.original_spec, task.branch_name, task.latest_feedback
            )
            self._rounds += 1
            coder = await self._invoke(AgentRole.CODER, coder_prompt, task, cancellation, mcp_servers)
            handoff = extract_handoff(coder)
            task = self.store.update(task.task_id, lambda t: t.with_coder_response(handoff))
            cancellation.raise_if_cancelled()

            logger.info(f"Round {task.current_iteration + 1}/{task.max_iterations}: reviewing")
            reviewer_prompt = compose_reviewer_prompt(
                team, task.original_spec, task.branch_name, task.latest_handoff
            )
            reviewer = await self._invoke(
                AgentRole.REVIEWER, reviewer_prompt, task, cancellation, mcp_servers
            )
            review = extract_handoff(reviewer)

            pr = self.finalizer.has_open_or_merged_pr(task.branch_name)
            if pr is not None:
                pr_url = self.finalizer.require_pr_url(pr)
                task = self.store.update(task.task_id, lambda t: t.mark_completed(pr_url, review))
                self._emit(
                    EventKind.COMPLETED, task, f"Pull request #{pr.number} opened: {pr_url}",
                    pr_number=pr.number, pr_url=pr_url,
                )
                return task

            task = self.store.update(task.task_id, lambda t: t.with_rejection(review))
            if task.budget_exhausted:
                raise TandemError(
                    ErrorKind.BUDGET_EXHAUSTED,
                    f"{task.max_iterations} review round(s) ended without a pull request",
                )
            self._emit(
                EventKind.ITERATION_ADVANCED, task,
                f"Changes requested ({task.current_iteration}/{task.max_iterations})",
            )
            cancellation.raise_if_cancelled()

    def _mcp_servers_for(self, team: Team) -> Dict[str, McpServerConfig]:
        servers, undefined = self.config.mcp_servers_for(team.name)
        for name in undefined:
            logger.warning(f"Team {team.name} enables MCP server '{name}', which is not defined")
        if servers:
            logger.info(f"MCP servers for {team.name}: {', '.join(servers)}")
        return servers

    async def _invoke(
        self,
        role: AgentRole,
        prompt: str,
        task: Task,
        cancellation: CancellationToken,
        mcp_servers: Dict[str, McpServerConfig],
    ) -> AgentResult:
        result = await self.invoker.invoke(
            role,
            prompt,
            cwd=task.worktree_info.path,
            cancellation=cancellation,
            mcp_servers=mcp_servers,
        )
        self._cost += result.cost_usd
        cancellation.raise_if_cancelled()
        if not result.success:
            detail = result.final_response.strip()[:500] or "no details"
            raise TandemError(ErrorKind.AGENT_EXECUTION, f"{role.value} agent reported an error: {detail}")
        return result

    def _mark_failed(self, task: Task, message: str, kind: Optional[ErrorKind]) -> Task:
        try:
            task = self.store.update(task.task_id, lambda t: t.mark_failed(message, kind))
        except TandemError as e:
            logger.error(f"Could not record failure of task {task.task_id}: {e}")
            if not task.is_terminal:
                task = task.mark_failed(message, kind)
        if task.status is TaskStatus.FAILED:
            self._emit(EventKind.FAILED, task, message, error_kind=kind.value if kind else None)
        return task

    def _cleanup(self, task: Task, keep_state: bool) -> Tuple[Task, CleanupReport]:
        try:
            report = self.worktrees.cleanup_worktree(task.worktree_info)
        except TandemError as e:
            report = CleanupReport(errors=[e.message])

        if report.errors:
            self._emit(EventKind.CLEANUP_FAILED, task, "; ".join(report.errors), errors=report.errors)

        task = task.with_cleanup(report.success, report.errors)
        try:
            # Leftovers keep the record so 'tandem cleanup' can retry.
            if keep_state or not report.complete:
                task = self.store.update(
                    task.task_id, lambda t: t.with_cleanup(report.success, report.errors)
                )
            else:
                self.store.cleanup(task.task_id)
        except TandemError as e:
            logger.warning(f"Could not update state of task {task.task_id} after cleanup: {e}")
        return task, report

    def _discard_worktree(self, worktree: WorktreeInfo) -> None:
        try:
            self.worktrees.cleanup_worktree(worktree)
        except TandemError as e:
            logger.warning(f"Could not remove worktree {worktree.path}: {e}")

    def _early_failure(
        self,
        error: TandemError,
        started: float,
        preflight: PreflightResult,
        task_id: Optional[str] = None,
    ) -> WorkflowResult:
        logger.error(str(error))
        self.reporter.emit(
            WorkflowEvent(
                kind=EventKind.FAILED,
                task_id=task_id,
                message=str(error),
                data={"error_kind": error.kind.value},
            )
        )
        return WorkflowResult(
            success=False,
            task_id=task_id,
            error=error.message,
            error_kind=error.kind,
            preflight=preflight,
            duration_seconds=time.monotonic() - started,
        )

    def _emit(self, kind: EventKind, task: Task, message: str, **data) -> None:
        self.reporter.emit(
            WorkflowEvent(
                kind=kind,
                task_id=task.task_id,
                iteration=task.current_iteration,
                message=message,
                data=data,
            )
        )


def build_workflow(
    config: Config,
    cwd: Optional[Path] = None,
    reporter: Optional[Reporter] = None,
) -> TeamWorkflow:
    """Wire the default collaborators for the repository containing cwd."""
    return TeamWorkflow(
        config,
        team_registry=TeamRegistry.from_config(config.teams),
        worktree_manager=GitWorktreeManager(config, repo_path=cwd),
        state_store=TaskStateStore(get_state_dir(config, cwd)),
        invoker=AgentInvoker(config.agent),
        finalizer=PullRequestFinalizer(config.github, repo_path=cwd),
        reporter=reporter,
        cwd=cwd,
    )


async def execute_team_workflow(
    options: WorkflowOptions,
    config: Config,
    cwd: Optional[Path] = None,
    reporter: Optional[Reporter] = None,
    cancellation: Optional[CancellationToken] = None,
) -> WorkflowResult:
    workflow = build_workflow(config, cwd=cwd, reporter=reporter)
    return await workflow.run(options, cancellation=cancellation)
