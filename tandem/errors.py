"""Error kinds raised across tandem.

Every failure is a :class:`TandemError` tagged with an :class:`ErrorKind`.
Callers branch on ``error.kind`` instead of on exception subclasses.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""

    ENVIRONMENT = "environment"
    VALIDATION = "validation"
    SPEC_NOT_FOUND = "spec_not_found"
    CONFIGURATION = "configuration"
    GIT_REPOSITORY_NOT_FOUND = "git_repository_not_found"
    GIT_COMMAND = "git_command"
    WORKTREE_CREATION = "worktree_creation"
    WORKTREE_CLEANUP = "worktree_cleanup"
    AGENT_EXECUTION = "agent_execution"
    TASK_NOT_FOUND = "task_not_found"
    STATE_PARSE = "state_parse"
    STATE_MANAGEMENT = "state_management"
    GITHUB = "github"
    TEAM_NOT_FOUND = "team_not_found"
    TEAM_INVALID = "team_invalid"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def is_pre_mutation(self) -> bool:
        """Kinds that are only raised before a worktree or task record exists."""
        return self in {
            ErrorKind.ENVIRONMENT,
            ErrorKind.VALIDATION,
            ErrorKind.SPEC_NOT_FOUND,
            ErrorKind.CONFIGURATION,
            ErrorKind.TEAM_NOT_FOUND,
            ErrorKind.TEAM_INVALID,
        }


_LABELS = {
    ErrorKind.ENVIRONMENT: "Environment validation failed",
    ErrorKind.VALIDATION: "Validation error",
    ErrorKind.SPEC_NOT_FOUND: "Specification not found",
    ErrorKind.CONFIGURATION: "Configuration error",
    ErrorKind.GIT_REPOSITORY_NOT_FOUND: "Not in a git repository",
    ErrorKind.GIT_COMMAND: "Git command failed",
    ErrorKind.WORKTREE_CREATION: "Worktree creation failed",
    ErrorKind.WORKTREE_CLEANUP: "Worktree cleanup failed",
    ErrorKind.AGENT_EXECUTION: "Agent execution failed",
    ErrorKind.TASK_NOT_FOUND: "Task not found",
    ErrorKind.STATE_PARSE: "Failed to parse task state",
    ErrorKind.STATE_MANAGEMENT: "State management error",
    ErrorKind.GITHUB: "GitHub error",
    ErrorKind.TEAM_NOT_FOUND: "Team not found",
    ErrorKind.TEAM_INVALID: "Team definition is invalid",
    ErrorKind.BUDGET_EXHAUSTED: "Review budget exhausted",
    ErrorKind.CANCELLED: "Workflow cancelled",
}


class TandemError(Exception):
    """A failure of a known kind, optionally wrapping its cause."""

    def __init__(self, kind: ErrorKind, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.kind.label}: {self.message}"

    def __repr__(self) -> str:
        return f"TandemError({self.kind.value!r}, {self.message!r})"


class ConfigError(TandemError):
    """Configuration could not be loaded or is invalid."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(ErrorKind.CONFIGURATION, message, cause)
