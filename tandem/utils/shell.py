"""Subprocess helpers and thin git wrappers."""

import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from tandem.utils.logger import get_logger

logger = get_logger(__name__)

GIT_TIMEOUT = 60


class ShellError(Exception):
    """Shell command execution error."""

    def __init__(self, message: str, returncode: int, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def detail(self) -> str:
        """Best available description of what went wrong."""
        return self.stderr.strip() or self.stdout.strip() or str(self)


class ShellResult:
    """Result of a finished command."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str,
        cwd: Optional[Path] = None,
    ):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.cwd = cwd

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def check(self) -> "ShellResult":
        """Raise ShellError if the command failed.

        Returns:
            Self for chaining

        Raises:
            ShellError: If command failed
        """
        if not self.success:
            raise ShellError(
                f"Command failed ({self.returncode}): {self.command}",
                self.returncode,
                self.stdout,
                self.stderr,
            )
        return self


def run_command(
    command: Union[str, List[str]],
    cwd: Optional[Union[str, Path]] = None,
    env: Optional[Dict[str, str]] = None,
    check: bool = False,
    timeout: Optional[float] = None,
) -> ShellResult:
    """Run a command synchronously and capture its output.

    Args:
        command: Argument list, or a string split with shell quoting rules
        cwd: Working directory
        env: Full environment for the child process (inherits when None)
        check: Raise ShellError on a non-zero exit code
        timeout: Command timeout in seconds

    Returns:
        Command result

    Raises:
        ShellError: If the command cannot be started, times out, or fails
            while check=True
    """
    if isinstance(command, str):
        command_list = shlex.split(command)
    else:
        command_list = [str(part) for part in command]
    command_str = shlex.join(command_list)
    cwd_path = Path(cwd) if cwd else None

    logger.debug(f"Running command: {command_str} (cwd: {cwd_path})")

    try:
        completed = subprocess.run(
            command_list,
            cwd=cwd_path,
            env=env,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ShellError(f"Command timed out after {timeout}s: {command_str}", -1) from e
    except FileNotFoundError as e:
        raise ShellError(f"Command not found: {command_list[0]}", 127) from e
    except NotADirectoryError as e:
        raise ShellError(f"Working directory is invalid: {cwd_path}", -1) from e

    result = ShellResult(
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        command=command_str,
        cwd=cwd_path,
    )

    if not result.success:
        logger.debug(f"Command exited with {result.returncode}: {command_str}")
        if result.stderr:
            logger.debug(f"stderr: {result.stderr.strip()}")

    if check:
        result.check()
    return result


def run_git(
    args: List[str],
    cwd: Optional[Union[str, Path]] = None,
    check: bool = False,
    timeout: Optional[float] = GIT_TIMEOUT,
) -> ShellResult:
    """Run ``git <args>``."""
    return run_command(["git", *args], cwd=cwd, check=check, timeout=timeout)


def command_exists(name: str) -> bool:
    """Check whether an executable is reachable on PATH."""
    return shutil.which(name) is not None


def is_git_repository(path: Optional[Union[str, Path]] = None) -> bool:
    """Check whether path is inside a git working tree."""
    try:
        return run_git(["rev-parse", "--git-dir"], cwd=path).success
    except ShellError:
        return False


def get_git_root(path: Optional[Union[str, Path]] = None) -> Optional[Path]:
    """Get the top-level directory of the repository containing path.

    Returns:
        Repository root, or None outside a repository
    """
    try:
        result = run_git(["rev-parse", "--show-toplevel"], cwd=path)
    except ShellError:
        return None
    if not result.success or not result.stdout.strip():
        return None
    return Path(result.stdout.strip())


def get_current_branch(path: Optional[Union[str, Path]] = None) -> Optional[str]:
    """Get the checked-out branch name, or None when HEAD is detached."""
    try:
        result = run_git(["branch", "--show-current"], cwd=path)
    except ShellError:
        return None
    branch = result.stdout.strip()
    if not result.success or not branch:
        return None
    return branch
