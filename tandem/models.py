"""Data models for tandem."""

import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from tandem.errors import ErrorKind, TandemError

TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
INCOMPLETE_RESPONSE_PLACEHOLDER = "[Agent conversation incomplete - no response content available]"
DEFAULT_CREDENTIAL_ENV_VARS = ["ANTHROPIC_API_KEY", "CLAUDE_API_KEY", "ANTHROPIC_KEY", "CLAUDE_KEY"]


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.RUNNING


class AgentRole(str, Enum):
    """Agent personas driven by the workflow."""

    CODER = "coder"
    REVIEWER = "reviewer"


class WorktreeInfo(BaseModel):
    """Worktree information model."""

    path: str = Field(description="Absolute worktree path")
    branch: str = Field(description="Branch checked out in the worktree")
    base_branch: str | None = Field(default=None, description="Branch the worktree was created from")

    @property
    def path_obj(self) -> Path:
        return Path(self.path)

    def exists(self) -> bool:
        """Check if worktree path exists."""
        return self.path_obj.exists()


class Task(BaseModel):
    """Persistent record of one coder/reviewer run.

    ``current_iteration`` counts completed rejection rounds. Reviewer feedback
    is appended once per rejection, so ``reviewer_responses`` always has
    ``current_iteration`` entries, while ``coder_responses`` has one more
    entry once the current round's coding has finished.

    Mutating helpers return a new validated instance and never modify
    ``self``, so they can be handed to :meth:`TaskStateStore.update`.
    """

    task_id: str = Field(description="Unique task identifier")
    team: str = Field(default="standard", description="Team providing the role prompts")
    spec_path: str = Field(description="Specification file path or issue reference")
    original_spec: str = Field(description="Frozen specification text")
    current_iteration: int = Field(default=0, description="Completed rejection rounds")
    max_iterations: int = Field(description="Review budget")
    branch_name: str = Field(description="Task branch")
    worktree_info: WorktreeInfo = Field(description="Isolated workspace")
    coder_responses: list[str] = Field(default_factory=list, description="Coder handoffs")
    reviewer_responses: list[str] = Field(default_factory=list, description="Reviewer feedback")
    approval_response: str | None = Field(default=None, description="Review that opened the PR")
    status: TaskStatus = Field(default=TaskStatus.RUNNING, description="Lifecycle status")
    pr_url: str | None = Field(default=None, description="Pull request URL once approved")
    error: str | None = Field(default=None, description="Failure message")
    error_kind: ErrorKind | None = Field(default=None, description="Failure kind")
    worktree_cleaned: bool = Field(default=False, description="Worktree cleanup succeeded")
    cleanup_errors: list[str] = Field(default_factory=list, description="Cleanup problems")
    created_at: datetime = Field(default_factory=datetime.now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=datetime.now, description="Last write timestamp")

    @field_validator("task_id")
    @classmethod
    def validate_task_id(cls, v: str) -> str:
        if not TASK_ID_PATTERN.match(v):
            raise ValueError(f"Invalid task id: {v!r}")
        return v

    @field_validator("max_iterations")
    @classmethod
    def validate_max_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_iterations must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_counters(self) -> "Task":
        """Keep iteration counters and response lists consistent."""
        if not 0 <= self.current_iteration <= self.max_iterations:
            raise ValueError(
                f"current_iteration {self.current_iteration} outside 0..{self.max_iterations}"
            )
        if len(self.reviewer_responses) != self.current_iteration:
            raise ValueError(
                f"{len(self.reviewer_responses)} reviewer responses for iteration "
                f"{self.current_iteration}"
            )
        if len(self.coder_responses) not in (self.current_iteration, self.current_iteration + 1):
            raise ValueError(
                f"{len(self.coder_responses)} coder responses for iteration "
                f"{self.current_iteration}"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def latest_feedback(self) -> str | None:
        return self.reviewer_responses[-1] if self.reviewer_responses else None

    @property
    def latest_handoff(self) -> str | None:
        return self.coder_responses[-1] if self.coder_responses else None

    @property
    def budget_exhausted(self) -> bool:
        return self.current_iteration >= self.max_iterations

    def _evolve(self, **changes: Any) -> "Task":
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)

    def _require_running(self, action: str) -> None:
        if self.is_terminal:
            raise TandemError(
                ErrorKind.STATE_MANAGEMENT,
                f"Cannot {action} task {self.task_id}: already {self.status.value}",
            )

    def with_coder_response(self, response: str) -> "Task":
        self._require_running("record coder response for")
        return self._evolve(coder_responses=[*self.coder_responses, response])

    def with_rejection(self, feedback: str) -> "Task":
        """Record reviewer feedback and consume one unit of review budget."""
        self._require_running("record rejection for")
        return self._evolve(
            reviewer_responses=[*self.reviewer_responses, feedback],
            current_iteration=self.current_iteration + 1,
        )

    def mark_completed(self, pr_url: str, approval_response: str | None = None) -> "Task":
        self._require_running("complete")
        return self._evolve(
            status=TaskStatus.COMPLETED,
            pr_url=pr_url,
            approval_response=approval_response,
        )

    def mark_failed(self, error: str, kind: ErrorKind | None = None) -> "Task":
        self._require_running("fail")
        return self._evolve(status=TaskStatus.FAILED, error=error, error_kind=kind)

    def with_cleanup(self, worktree_cleaned: bool, errors: list[str]) -> "Task":
        """Cleanup bookkeeping, the only change allowed after a terminal status."""
        return self._evolve(worktree_cleaned=worktree_cleaned, cleanup_errors=list(errors))


# Fields that may still change once a task is terminal.
CLEANUP_FIELDS = frozenset({"worktree_cleaned", "cleanup_errors", "updated_at"})


class PRInfo(BaseModel):
    """Snapshot of a pull request found for a branch."""

    number: int = Field(description="PR number")
    title: str = Field(default="", description="PR title")
    url: str = Field(default="", description="PR URL")
    state: str = Field(description="OPEN, CLOSED or MERGED")
    head_branch: str = Field(description="Head branch")
    base_branch: str | None = Field(default=None, description="Base branch")

    @property
    def is_open_or_merged(self) -> bool:
        return self.state.upper() in ("OPEN", "MERGED")


class AgentResult(BaseModel):
    """Normalized outcome of one agent invocation."""

    role: AgentRole = Field(description="Role that was invoked")
    final_response: str = Field(default="", description="Text of the final assistant turn")
    success: bool = Field(default=True, description="False when the result event flagged an error")
    cost_usd: float = Field(default=0.0, description="Reported cost")
    duration_ms: int = Field(default=0, description="Wall-clock duration")
    message_count: int = Field(default=0, description="Streamed messages seen")


class PreflightResult(BaseModel):
    """Aggregated environment checks."""

    errors: list[str] = Field(default_factory=list, description="Blocking problems")
    warnings: list[str] = Field(default_factory=list, description="Non-blocking problems")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return not self.errors


class CleanupReport(BaseModel):
    """Outcome of removing a task's worktree and branch."""

    worktree_removed: bool = Field(default=False, description="Workspace is gone")
    branch_deleted: bool = Field(default=False, description="Branch is gone")
    errors: list[str] = Field(default_factory=list, description="Collected failures")

    @property
    def success(self) -> bool:
        return self.worktree_removed or self.branch_deleted

    @property
    def complete(self) -> bool:
        return self.worktree_removed and self.branch_deleted


class IssueReference(BaseModel):
    """GitHub issue reference given instead of a specification file."""

    raw: str = Field(description="Raw identifier")
    number: int = Field(description="Issue number")
    url: str | None = Field(default=None, description="Issue URL when given as a link")

    @classmethod
    def parse(cls, identifier: str) -> "IssueReference":
        """Parse an issue reference.

        Supported formats: ``#123``, ``gh-123``,
        ``https://github.com/owner/repo/issues/123``.
        """
        identifier = identifier.strip()

        if "github.com" in identifier and "/issues/" in identifier:
            number = identifier.split("/issues/")[-1].split("/")[0].split("?")[0]
            if number.isdigit():
                return cls(raw=identifier, number=int(number), url=identifier)

        for prefix in ("#", "gh-"):
            if identifier.startswith(prefix) and identifier[len(prefix):].isdigit():
                return cls(raw=identifier, number=int(identifier[len(prefix):]))

        raise ValueError(f"Unable to parse issue reference: {identifier}")

    @classmethod
    def matches(cls, identifier: str) -> bool:
        try:
            cls.parse(identifier)
        except ValueError:
            return False
        return True


class WorkflowOptions(BaseModel):
    """Caller input for one workflow run."""

    team: str = Field(default="standard", description="Team name")
    spec_or_issue: str = Field(description="Specification path or issue reference")
    max_iterations: int = Field(default=3, description="Review budget")
    branch_name: str | None = Field(default=None, description="Branch override")
    base_branch: str | None = Field(default=None, description="Base branch override")
    cleanup: bool = Field(default=True, description="Remove worktree and branch at the end")
    keep_state: bool = Field(default=False, description="Keep the task record after cleanup")

    @field_validator("max_iterations")
    @classmethod
    def validate_max_iterations(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Max reviews must be at least 1")
        if v > 10:
            raise ValueError("Max reviews must be at most 10")
        return v


class WorkflowResult(BaseModel):
    """Outcome reported to the caller."""

    success: bool = Field(description="True when a pull request was opened")
    task_id: str | None = Field(default=None, description="Task id, once generated")
    iterations: int = Field(default=0, description="Coding rounds run")
    pr_url: str | None = Field(default=None, description="Pull request URL")
    error: str | None = Field(default=None, description="Failure message")
    error_kind: ErrorKind | None = Field(default=None, description="Failure kind")
    preflight: PreflightResult | None = Field(default=None, description="Preflight outcome")
    duration_seconds: float = Field(default=0.0, description="Elapsed wall-clock time")
    total_cost_usd: float = Field(default=0.0, description="Summed agent cost")
    task: Task | None = Field(default=None, description="Final task record")
    cleanup: CleanupReport | None = Field(default=None, description="Cleanup outcome")


class DefaultsConfig(BaseModel):
    """Default workflow settings."""

    team: str = Field(default="standard", description="Default team")
    max_reviews: int = Field(default=3, description="Default review budget")
    cleanup: bool = Field(default=True, description="Clean up worktrees after a run")
    worktree_base: str = Field(
        default=".tandem-worktrees", description="Worktree directory, relative to the repo parent"
    )
    branch_prefix: str = Field(default="tandem", description="Prefix for task branches")
    state_dir: str = Field(default=".tandem/state", description="Task records, relative to repo root")

    @field_validator("max_reviews")
    @classmethod
    def validate_max_reviews(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Max reviews must be at least 1")
        if v > 10:
            raise ValueError("Max reviews must be at most 10")
        return v

    @field_validator("branch_prefix")
    @classmethod
    def validate_branch_prefix(cls, v: str) -> str:
        if not v:
            raise ValueError("Branch prefix cannot be empty")
        invalid_chars = [":", "~", "^", "?", "*", "[", "\\", " ", ".."]
        for char in invalid_chars:
            if char in v:
                raise ValueError(f"Branch prefix contains invalid character: '{char}'")
        return v.strip("/")


class GitHubConfig(BaseModel):
    """GitHub settings."""

    token_env: str = Field(default="GITHUB_TOKEN", description="Variable holding the access token")
    min_token_length: int = Field(default=20, description="Shortest plausible token")
    gh_command: str = Field(default="gh", description="GitHub CLI executable")
    timeout: int = Field(default=30, description="Timeout for gh calls (seconds)")

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("GitHub timeout must be at least 1 second")
        return v


class AgentConfig(BaseModel):
    """Agent invocation settings."""

    command: str = Field(default="claude", description="Agent CLI executable")
    model: str | None = Field(default=None, description="Model override")
    permission_mode: str = Field(default="bypassPermissions", description="Agent permission mode")
    coder_max_turns: int | None = Field(default=None, description="Turn cap for the coder")
    reviewer_max_turns: int | None = Field(default=None, description="Turn cap for the reviewer")
    call_timeout: float | None = Field(default=None, description="Hard cap per agent call (seconds)")
    force_subscription_auth: bool = Field(
        default=True, description="Hide API key variables from the agent process"
    )
    credential_env_vars: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CREDENTIAL_ENV_VARS),
        description="Variables hidden when force_subscription_auth is set",
    )

    @field_validator("permission_mode")
    @classmethod
    def validate_permission_mode(cls, v: str) -> str:
        valid_modes = {"default", "acceptEdits", "plan", "bypassPermissions"}
        if v not in valid_modes:
            raise ValueError(f"Invalid permission mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator("coder_max_turns", "reviewer_max_turns")
    @classmethod
    def validate_max_turns(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("Max turns must be at least 1")
        return v

    @field_validator("call_timeout")
    @classmethod
    def validate_call_timeout(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("Call timeout must be positive")
        return v

    def max_turns_for(self, role: AgentRole) -> int | None:
        return self.coder_max_turns if role is AgentRole.CODER else self.reviewer_max_turns


class McpServerConfig(BaseModel):
    """An MCP server the agents launch over stdio."""

    command: str = Field(description="Executable starting the server")
    args: list[str] = Field(default_factory=list, description="Command arguments")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment for the server")

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("MCP server command cannot be empty")
        return v

    def to_sdk(self) -> dict[str, Any]:
        return {"type": "stdio", "command": self.command, "args": list(self.args), "env": dict(self.env)}


class TeamsConfig(BaseModel):
    """Team discovery settings."""

    directory: str = Field(default="~/.tandem/teams", description="User team modules")
    include_builtin: bool = Field(default=True, description="Load the bundled teams")
    mcps: dict[str, list[str]] = Field(
        default_factory=dict, description="MCP server names enabled per team"
    )


class Config(BaseModel):
    """Main configuration model."""

    version: str = Field(default="1.0", description="Config version")
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig, description="Default settings")
    github: GitHubConfig = Field(default_factory=GitHubConfig, description="GitHub settings")
    agent: AgentConfig = Field(default_factory=AgentConfig, description="Agent settings")
    teams: TeamsConfig = Field(default_factory=TeamsConfig, description="Team settings")
    mcp_servers: dict[str, McpServerConfig] = Field(
        default_factory=dict, description="MCP servers that teams may enable"
    )

    model_config = {"extra": "allow"}

    def mcp_servers_for(self, team: str) -> tuple[dict[str, McpServerConfig], list[str]]:
        """Servers enabled for a team, plus the enabled names that are not defined."""
        enabled: dict[str, McpServerConfig] = {}
        undefined: list[str] = []
        for name in self.teams.mcps.get(team, []):
            if name in self.mcp_servers:
                enabled[name] = self.mcp_servers[name]
            else:
                undefined.append(name)
        return enabled, undefined
