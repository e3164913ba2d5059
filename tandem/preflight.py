"""Environment checks that must pass before a workflow touches anything."""

import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from tandem.models import Config, PreflightResult
from tandem.state import get_state_dir
from tandem.utils.logger import get_logger
from tandem.utils.shell import ShellError, command_exists, get_git_root, is_git_repository, run_git

logger = get_logger(__name__)

MIN_PYTHON = (3, 10)

Findings = Tuple[List[str], List[str]]


def check_git_repository(cwd: Path, config: Config) -> Findings:
    if is_git_repository(cwd):
        return [], []
    return ["Not in a git repository. Run tandem from inside the repository to work on."], []


def check_remote(cwd: Path, config: Config) -> Findings:
    try:
        result = run_git(["remote"], cwd=cwd)
    except ShellError as e:
        return [], [f"Could not list git remotes: {e}"]
    if not result.success or not result.stdout.strip():
        return [], ["No git remote configured; the reviewer cannot open a pull request."]
    return [], []


def check_clean_worktree(cwd: Path, config: Config) -> Findings:
    try:
        result = run_git(["status", "--porcelain"], cwd=cwd)
    except ShellError as e:
        return [], [f"Could not read working tree status: {e}"]
    if result.success and result.stdout.strip():
        return [], ["Working tree has uncommitted changes; they will not be part of the task branch."]
    return [], []


def check_github_token(cwd: Path, config: Config) -> Findings:
    name = config.github.token_env
    token = os.environ.get(name, "").strip()
    if not token:
        return [f"{name} environment variable is not set."], []
    if len(token) < config.github.min_token_length:
        return [f"{name} looks malformed (shorter than {config.github.min_token_length} characters)."], []
    return [], []


def check_agent_executable(cwd: Path, config: Config) -> Findings:
    if command_exists(config.agent.command):
        return [], []
    return [], [f"Agent executable '{config.agent.command}' was not found on PATH."]


def _probe_writable(directory: Path) -> Optional[str]:
    try:
        with tempfile.NamedTemporaryFile(dir=directory, prefix=".tandem-probe-"):
            pass
    except OSError as e:
        return str(e)
    return None


def check_permissions(cwd: Path, config: Config) -> Findings:
    errors = []
    root = get_git_root(cwd) or cwd

    problem = _probe_writable(cwd)
    if problem:
        errors.append(f"No write permission in {cwd}: {problem}")

    # Probe the nearest existing ancestor so a failed preflight leaves nothing behind.
    state_dir = get_state_dir(config, root)
    existing = state_dir
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    if not existing.is_dir():
        errors.append(f"Cannot create state directory {state_dir}: {existing} is not a directory")
    else:
        problem = _probe_writable(existing)
        if problem:
            errors.append(f"State directory {state_dir} is not writable: {problem}")

    problem = _probe_writable(root.parent)
    if problem:
        errors.append(f"Cannot create worktrees next to the repository in {root.parent}: {problem}")

    return errors, []


def check_runtime(cwd: Path, config: Config) -> Findings:
    if sys.version_info[:2] >= MIN_PYTHON:
        return [], []
    found = ".".join(str(part) for part in sys.version_info[:3])
    wanted = ".".join(str(part) for part in MIN_PYTHON)
    return [f"Python {wanted} or newer is required (found {found})."], []


def check_git_identity(cwd: Path, config: Config) -> Findings:
    warnings = []
    for key in ("user.name", "user.email"):
        try:
            result = run_git(["config", key], cwd=cwd)
        except ShellError:
            result = None
        if result is None or not result.success or not result.stdout.strip():
            warnings.append(f"git {key} is not configured; agent commits may fail.")
    return [], warnings


CHECKS: List[Callable[[Path, Config], Findings]] = [
    check_git_repository,
    check_remote,
    check_clean_worktree,
    check_github_token,
    check_agent_executable,
    check_permissions,
    check_runtime,
    check_git_identity,
]


def validate_environment(config: Config, cwd: Optional[Path] = None) -> PreflightResult:
    """Run every check and aggregate the findings.

    All checks run even when an earlier one fails. ``success`` is true
    exactly when no check reported an error.
    """
    cwd = Path(cwd) if cwd else Path.cwd()
    result = PreflightResult()

    for check in CHECKS:
        errors, warnings = check(cwd, config)
        result.errors.extend(errors)
        result.warnings.extend(warnings)

    for warning in result.warnings:
        logger.debug(f"Preflight warning: {warning}")
    for error in result.errors:
        logger.debug(f"Preflight error: {error}")

    return result
