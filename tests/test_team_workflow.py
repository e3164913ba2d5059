"""Tests for the coder/reviewer iteration loop."""

import re
from pathlib import Path
from unittest.mock import Mock

import pytest

from tandem.errors import ErrorKind, TandemError
from tandem.events import EventKind, RecordingReporter
from tandem.models import (
    AgentResult,
    AgentRole,
    CleanupReport,
    Config,
    McpServerConfig,
    PreflightResult,
    PRInfo,
    TaskStatus,
    TeamsConfig,
    WorkflowOptions,
    WorktreeInfo,
)
from tandem.state import TaskStateStore
from tandem.teams import BUILTIN_TEAMS_DIR, TeamRegistry
from tandem.utils.cancellation import CancellationToken
from tandem.workflows import TeamWorkflow, generate_task_id, resolve_specification

SPEC_TEXT = "Add a /health endpoint that returns 200."
PR_URL = "https://github.com/owner/repo/pull/7"


class FakeWorktrees:
    """Creates plain directories instead of git worktrees."""

    def __init__(self, root: Path):
        self.root = root
        self.created = []
        self.cleaned = []
        self.cleanup_error = None
        self.report = CleanupReport(worktree_removed=True, branch_deleted=True)

    def create_worktree(self, task_id, base_branch=None, branch_name=None):
        path = self.root / task_id
        path.mkdir(parents=True)
        info = WorktreeInfo(
            path=str(path), branch=branch_name or f"tandem/{task_id}", base_branch=base_branch or "main"
        )
        self.created.append(info)
        return info

    def cleanup_worktree(self, info):
        self.cleaned.append(info)
        if self.cleanup_error is not None:
            raise self.cleanup_error
        return self.report


class ScriptedInvoker:
    """Replays scripted agent responses per role.

    A script entry is response text, an exception to raise, or a callable
    producing either.
    """

    def __init__(self, coder=(), reviewer=()):
        self.scripts = {AgentRole.CODER: list(coder), AgentRole.REVIEWER: list(reviewer)}
        self.calls = []
        self.mcp_servers = []

    async def invoke(self, role, prompt, cwd, max_turns=None, cancellation=None, timeout=None,
                     mcp_servers=None):
        self.calls.append((role, prompt, cwd))
        self.mcp_servers.append(mcp_servers)
        outcome = self.scripts[role].pop(0)
        if callable(outcome):
            outcome = outcome()
        if isinstance(outcome, AgentResult):
            return outcome
        if isinstance(outcome, Exception):
            raise outcome
        return AgentResult(role=role, final_response=outcome, cost_usd=0.1)

    def roles(self):
        return [role for role, _, _ in self.calls]


def open_pr(url=PR_URL):
    return PRInfo(number=7, url=url, state="OPEN", head_branch="tandem/task")


def make_finalizer(*lookups):
    finalizer = Mock()
    finalizer.has_open_or_merged_pr.side_effect = list(lookups)
    finalizer.require_pr_url.side_effect = lambda pr: pr.url
    finalizer.fetch_issue.return_value = "# Issue #12: From GitHub\n\nDo the thing\n"
    return finalizer


@pytest.fixture
def spec_file(tmp_path):
    path = tmp_path / "spec.md"
    path.write_text(SPEC_TEXT)
    return path


@pytest.fixture
def worktrees(tmp_path):
    return FakeWorktrees(tmp_path / "worktrees")


@pytest.fixture
def store(tmp_path):
    return TaskStateStore(tmp_path / "state")


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def build(tmp_path, worktrees, store, reporter):
    def factory(invoker, finalizer, preflight=None, config=None):
        return TeamWorkflow(
            config or Config(),
            team_registry=TeamRegistry.load([BUILTIN_TEAMS_DIR]),
            worktree_manager=worktrees,
            state_store=store,
            invoker=invoker,
            finalizer=finalizer,
            reporter=reporter,
            preflight=lambda config, cwd: preflight or PreflightResult(),
            cwd=tmp_path,
        )

    return factory


def options(**overrides):
    data = {"team": "standard", "spec_or_issue": "spec.md", "max_iterations": 3, "cleanup": False}
    data.update(overrides)
    return WorkflowOptions(**data)


class TestIterationLoop:
    """Test the review loop outcomes."""

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, build, spec_file, store, reporter):
        invoker = ScriptedInvoker(coder=["Implemented endpoint"], reviewer=["Needs tests"])
        workflow = build(invoker, make_finalizer(None))

        result = await workflow.run(options(max_iterations=1))

        assert not result.success
        assert result.error_kind == ErrorKind.BUDGET_EXHAUSTED
        assert result.iterations == 1
        task = store.get(result.task_id)
        assert task.status == TaskStatus.FAILED
        assert task.current_iteration == 1
        assert task.coder_responses == ["Implemented endpoint"]
        assert task.reviewer_responses == ["Needs tests"]
        assert task.error_kind == ErrorKind.BUDGET_EXHAUSTED
        assert reporter.kinds() == [EventKind.TASK_STARTED, EventKind.FAILED]

    @pytest.mark.asyncio
    async def test_approval_after_two_rejections(self, build, spec_file, store, reporter):
        invoker = ScriptedInvoker(
            coder=["v1", "v2", "v3"],
            reviewer=["Fix the status code", "Add a test", "LGTM, opened PR"],
        )
        finalizer = make_finalizer(None, None, open_pr())
        workflow = build(invoker, finalizer)

        result = await workflow.run(options(max_iterations=3))

        assert result.success
        assert result.pr_url == PR_URL
        assert result.iterations == 3
        assert result.total_cost_usd == pytest.approx(0.6)
        task = store.get(result.task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.current_iteration == 2
        assert task.pr_url == PR_URL
        assert task.coder_responses == ["v1", "v2", "v3"]
        assert task.reviewer_responses == ["Fix the status code", "Add a test"]
        assert task.approval_response == "LGTM, opened PR"
        assert reporter.kinds() == [
            EventKind.TASK_STARTED,
            EventKind.ITERATION_ADVANCED,
            EventKind.ITERATION_ADVANCED,
            EventKind.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_feedback_reaches_next_coder_prompt(self, build, spec_file):
        invoker = ScriptedInvoker(coder=["v1", "v2"], reviewer=["Fix the status code", "ok"])
        workflow = build(invoker, make_finalizer(None, open_pr()))

        await workflow.run(options())

        first_prompt = invoker.calls[0][1]
        second_prompt = invoker.calls[2][1]
        assert SPEC_TEXT in first_prompt
        assert "<review_feedback>" not in first_prompt
        assert "Fix the status code" in second_prompt
        assert "<coder_handoff>\nv1\n</coder_handoff>" in invoker.calls[1][1]

    @pytest.mark.asyncio
    async def test_pr_overrules_feedback(self, build, spec_file, store):
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["Opened PR, but nit: rename foo"])
        workflow = build(invoker, make_finalizer(open_pr()))

        result = await workflow.run(options(max_iterations=1))

        assert result.success
        assert store.get(result.task_id).current_iteration == 0

    @pytest.mark.asyncio
    async def test_agents_run_in_worktree(self, build, spec_file, worktrees):
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()))

        await workflow.run(options())

        worktree_path = worktrees.created[0].path
        assert all(cwd == worktree_path for _, _, cwd in invoker.calls)

    @pytest.mark.asyncio
    async def test_team_mcp_servers_reach_both_agents(self, build, spec_file):
        config = Config(
            mcp_servers={
                "github": McpServerConfig(command="npx", args=["-y", "github-mcp"]),
                "browser": McpServerConfig(command="browser-mcp"),
            },
            teams=TeamsConfig(mcps={"standard": ["github", "missing"], "frontend": ["browser"]}),
        )
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()), config=config)

        result = await workflow.run(options())

        assert result.success
        assert len(invoker.mcp_servers) == 2
        for servers in invoker.mcp_servers:
            assert list(servers) == ["github"]
            assert servers["github"].command == "npx"

    @pytest.mark.asyncio
    async def test_team_without_mcp_entry_gets_none(self, build, spec_file):
        config = Config(
            mcp_servers={"browser": McpServerConfig(command="browser-mcp")},
            teams=TeamsConfig(mcps={"frontend": ["browser"]}),
        )
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()), config=config)

        await workflow.run(options())

        assert invoker.mcp_servers == [{}, {}]

    @pytest.mark.asyncio
    async def test_empty_coder_response_uses_placeholder(self, build, spec_file, store):
        invoker = ScriptedInvoker(coder=["   "], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()))

        result = await workflow.run(options())

        assert store.get(result.task_id).coder_responses == [
            "[Agent conversation incomplete - no response content available]"
        ]


class TestFailures:
    """Test failure handling."""

    @pytest.mark.asyncio
    async def test_preflight_failure_touches_nothing(self, build, spec_file, worktrees, store, tmp_path):
        invoker = ScriptedInvoker()
        preflight = PreflightResult(errors=["GITHUB_TOKEN environment variable is not set."])
        workflow = build(invoker, make_finalizer(), preflight=preflight)

        result = await workflow.run(options())

        assert not result.success
        assert result.error_kind == ErrorKind.ENVIRONMENT
        assert result.task_id is None
        assert result.preflight.errors == ["GITHUB_TOKEN environment variable is not set."]
        assert worktrees.created == []
        assert not (tmp_path / "worktrees").exists()
        assert not store.state_dir.exists()
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_coder_error_skips_review(self, build, spec_file, store):
        invoker = ScriptedInvoker(
            coder=[TandemError(ErrorKind.AGENT_EXECUTION, "coder agent failed: CLI crashed")],
            reviewer=["never used"],
        )
        finalizer = make_finalizer()
        workflow = build(invoker, finalizer)

        result = await workflow.run(options())

        assert not result.success
        assert result.error_kind == ErrorKind.AGENT_EXECUTION
        assert "CLI crashed" in result.error
        assert invoker.roles() == [AgentRole.CODER]
        finalizer.has_open_or_merged_pr.assert_not_called()
        task = store.get(result.task_id)
        assert task.status == TaskStatus.FAILED
        assert "CLI crashed" in task.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_task(self, build, spec_file, store):
        invoker = ScriptedInvoker(coder=[RuntimeError("socket closed")])
        workflow = build(invoker, make_finalizer())

        result = await workflow.run(options())

        assert not result.success
        assert result.error == "socket closed"
        assert result.error_kind is None
        assert store.get(result.task_id).status == TaskStatus.FAILED

    @pytest.mark.asyncio
    async def test_unsuccessful_agent_result(self, build, spec_file):
        failed = AgentResult(role=AgentRole.CODER, final_response="max turns reached", success=False)
        invoker = ScriptedInvoker(coder=[failed])
        workflow = build(invoker, make_finalizer())

        result = await workflow.run(options())

        assert result.error_kind == ErrorKind.AGENT_EXECUTION
        assert "max turns reached" in result.error

    @pytest.mark.asyncio
    async def test_unknown_team(self, build, spec_file, worktrees):
        workflow = build(ScriptedInvoker(), make_finalizer())

        result = await workflow.run(options(team="ghost"))

        assert result.error_kind == ErrorKind.TEAM_NOT_FOUND
        assert worktrees.created == []

    @pytest.mark.asyncio
    async def test_missing_spec(self, build, worktrees):
        workflow = build(ScriptedInvoker(), make_finalizer())

        result = await workflow.run(options(spec_or_issue="missing.md"))

        assert result.error_kind == ErrorKind.SPEC_NOT_FOUND
        assert result.error == "Specification file not found: missing.md"
        assert worktrees.created == []

    @pytest.mark.asyncio
    async def test_state_init_failure_removes_worktree(self, build, spec_file, worktrees, store):
        store.state_dir.parent.mkdir(parents=True, exist_ok=True)
        store.state_dir.write_text("blocked")
        workflow = build(ScriptedInvoker(), make_finalizer())

        result = await workflow.run(options())

        assert result.error_kind == ErrorKind.STATE_MANAGEMENT
        assert worktrees.cleaned == worktrees.created


class TestCancellation:
    """Test cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_during_coding(self, build, spec_file, store):
        token = CancellationToken()

        def code_then_interrupt():
            token.cancel("Interrupted by user")
            return "partial work"

        invoker = ScriptedInvoker(coder=[code_then_interrupt], reviewer=["never used"])
        workflow = build(invoker, make_finalizer())

        result = await workflow.run(options(), cancellation=token)

        assert result.error_kind == ErrorKind.CANCELLED
        assert invoker.roles() == [AgentRole.CODER]
        task = store.get(result.task_id)
        assert task.status == TaskStatus.FAILED
        assert task.coder_responses == ["partial work"]

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, build, spec_file, worktrees):
        token = CancellationToken()
        token.cancel()
        workflow = build(ScriptedInvoker(), make_finalizer())

        result = await workflow.run(options(), cancellation=token)

        assert result.error_kind == ErrorKind.CANCELLED
        assert worktrees.created == []

    @pytest.mark.asyncio
    async def test_interrupted_agent_run_is_cancelled(self, build, spec_file, store):
        token = CancellationToken()

        def interrupted_run():
            token.cancel("Interrupted by user")
            return AgentResult(role=AgentRole.CODER, final_response="killed by SIGINT", success=False)

        workflow = build(ScriptedInvoker(coder=[interrupted_run]), make_finalizer())

        result = await workflow.run(options(), cancellation=token)

        assert result.error_kind is ErrorKind.CANCELLED
        assert store.get(result.task_id).error_kind is ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_invoker_cancellation_ends_task(self, build, spec_file, store):
        invoker = ScriptedInvoker(
            coder=["v1"],
            reviewer=[TandemError(ErrorKind.CANCELLED, "Interrupted by user")],
        )
        workflow = build(invoker, make_finalizer())

        result = await workflow.run(options())

        assert not result.success
        assert result.error_kind is ErrorKind.CANCELLED
        assert result.error == "Interrupted by user"
        assert store.get(result.task_id).status == TaskStatus.FAILED


class TestCleanup:
    """Test end-of-run cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_record(self, build, spec_file, store, worktrees):
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()))

        result = await workflow.run(options(cleanup=True))

        assert result.success
        assert result.cleanup.complete
        assert worktrees.cleaned == worktrees.created
        assert result.task.worktree_cleaned
        with pytest.raises(TandemError) as exc_info:
            store.get(result.task_id)
        assert exc_info.value.kind == ErrorKind.TASK_NOT_FOUND

    @pytest.mark.asyncio
    async def test_keep_state(self, build, spec_file, store):
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()))

        result = await workflow.run(options(cleanup=True, keep_state=True))

        task = store.get(result.task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.worktree_cleaned is True

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_outcome(self, build, spec_file, store, worktrees, reporter):
        worktrees.cleanup_error = TandemError(
            ErrorKind.WORKTREE_CLEANUP, "Failed to remove worktree; Failed to delete branch"
        )
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["ok"])
        workflow = build(invoker, make_finalizer(open_pr()))

        result = await workflow.run(options(cleanup=True))

        assert result.success
        assert result.pr_url == PR_URL
        assert result.cleanup.errors
        task = store.get(result.task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.worktree_cleaned is False
        assert task.cleanup_errors == ["Failed to remove worktree; Failed to delete branch"]
        assert EventKind.CLEANUP_FAILED in reporter.kinds()

    @pytest.mark.asyncio
    async def test_partial_cleanup_keeps_record(self, build, spec_file, store, worktrees):
        worktrees.report = CleanupReport(
            worktree_removed=True, branch_deleted=False, errors=["branch is checked out"]
        )
        invoker = ScriptedInvoker(coder=["v1"], reviewer=["Needs tests"])
        workflow = build(invoker, make_finalizer(None))

        result = await workflow.run(options(max_iterations=1, cleanup=True))

        assert result.error_kind == ErrorKind.BUDGET_EXHAUSTED
        task = store.get(result.task_id)
        assert task.status == TaskStatus.FAILED
        assert task.cleanup_errors == ["branch is checked out"]


class TestSpecificationResolution:
    """Test turning the argument into specification text."""

    def test_file(self, spec_file, tmp_path):
        source, text = resolve_specification("spec.md", Mock(), tmp_path)
        assert source == str(spec_file)
        assert text == SPEC_TEXT

    def test_empty_file(self, tmp_path):
        (tmp_path / "empty.md").write_text("  \n")
        with pytest.raises(TandemError) as exc_info:
            resolve_specification("empty.md", Mock(), tmp_path)
        assert exc_info.value.kind == ErrorKind.VALIDATION

    def test_issue(self, tmp_path):
        finalizer = make_finalizer()
        source, text = resolve_specification("#12", finalizer, tmp_path)

        assert source == "#12"
        assert "Do the thing" in text
        assert finalizer.fetch_issue.call_args.args[0].number == 12

    def test_missing(self, tmp_path):
        with pytest.raises(TandemError) as exc_info:
            resolve_specification("nope.md", Mock(), tmp_path)
        assert exc_info.value.kind == ErrorKind.SPEC_NOT_FOUND


class TestTaskId:
    """Test task id generation."""

    def test_format(self):
        assert re.fullmatch(r"task-\d{13}-[a-z0-9]{6}", generate_task_id())

    def test_unique(self):
        assert len({generate_task_id() for _ in range(50)}) == 50
