"""Git worktree management."""

import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from tandem.errors import ErrorKind, TandemError
from tandem.models import CleanupReport, Config, WorktreeInfo
from tandem.utils.logger import get_logger
from tandem.utils.shell import ShellError, get_current_branch, get_git_root, run_git

logger = get_logger(__name__)


class GitWorktreeManager:
    """Creates and removes one isolated worktree per task.

    Every task gets its own branch (``<prefix>/<task_id>``) checked out in its
    own directory (``<repo parent>/<worktree_base>/<task_id>``), so concurrent
    tasks never share a working copy.
    """

    def __init__(self, config: Config, repo_path: Optional[Path] = None):
        """Initialize git worktree manager.

        Args:
            config: Configuration object
            repo_path: Any path inside the repository (defaults to cwd)
        """
        self.config = config
        self.repo_path = Path(repo_path) if repo_path else None
        self._repo_root: Optional[Path] = None

    @property
    def repo_root(self) -> Path:
        """Top-level directory of the repository.

        Raises:
            TandemError: GIT_REPOSITORY_NOT_FOUND outside a repository
        """
        if self._repo_root is None:
            root = get_git_root(self.repo_path)
            if root is None:
                location = self.repo_path or Path.cwd()
                raise TandemError(
                    ErrorKind.GIT_REPOSITORY_NOT_FOUND,
                    f"{location} is not inside a git repository. Git worktrees require a git repository.",
                )
            self._repo_root = root
        return self._repo_root

    def create_worktree(
        self,
        task_id: str,
        base_branch: Optional[str] = None,
        branch_name: Optional[str] = None,
    ) -> WorktreeInfo:
        """Create a worktree on a new branch for a task.

        Args:
            task_id: Task the worktree belongs to
            base_branch: Branch to start from (defaults to the current branch)
            branch_name: Branch override (defaults to ``<prefix>/<task_id>``)

        Returns:
            Worktree information

        Raises:
            TandemError: GIT_REPOSITORY_NOT_FOUND or WORKTREE_CREATION
        """
        repo_root = self.repo_root
        branch = branch_name or self.generate_branch_name(task_id)
        worktree_path = self.generate_worktree_path(task_id)
        base = base_branch or get_current_branch(repo_root) or "HEAD"

        logger.info(f"Creating worktree for task {task_id}: {worktree_path} ({branch} from {base})")

        self._validate_branch_name(branch)
        self._check_branch_available(branch)
        self._check_path_available(worktree_path)

        try:
            self._verify_base_ref(base)
            self._create_git_worktree(worktree_path, branch, base)
        except (ShellError, OSError) as e:
            self._cleanup_failed_worktree(worktree_path, branch)
            detail = e.detail if isinstance(e, ShellError) else str(e)
            raise TandemError(
                ErrorKind.WORKTREE_CREATION,
                f"Failed to create worktree for task {task_id}: {detail}",
                e,
            ) from e

        logger.info(f"Successfully created worktree: {worktree_path}")
        return WorktreeInfo(path=str(worktree_path), branch=branch, base_branch=base)

    def cleanup_worktree(self, worktree_info: WorktreeInfo) -> CleanupReport:
        """Remove a task's worktree and delete its branch.

        The two removals are attempted independently. Resources that are
        already gone count as removed, so calling this twice is safe.

        Returns:
            Report of what was removed and what failed

        Raises:
            TandemError: WORKTREE_CLEANUP only when both removals fail
        """
        logger.info(f"Cleaning up worktree: {worktree_info.path}")
        report = CleanupReport()

        try:
            self._remove_worktree_directory(worktree_info)
            report.worktree_removed = True
        except (ShellError, OSError) as e:
            detail = e.detail if isinstance(e, ShellError) else str(e)
            report.errors.append(f"Failed to remove worktree {worktree_info.path}: {detail}")

        try:
            self._delete_branch(worktree_info.branch)
            report.branch_deleted = True
        except ShellError as e:
            report.errors.append(f"Failed to delete branch {worktree_info.branch}: {e.detail}")

        if not report.success:
            raise TandemError(ErrorKind.WORKTREE_CLEANUP, "; ".join(report.errors))

        for error in report.errors:
            logger.warning(f"Partial cleanup: {error}")
        if report.complete:
            logger.info(f"Successfully cleaned up worktree for branch {worktree_info.branch}")
        return report

    def list_worktrees(self, prefix: Optional[str] = None) -> List[WorktreeInfo]:
        """List worktrees registered with the repository.

        Args:
            prefix: Only include branches starting with this prefix

        Returns:
            List of worktree information, empty when there are none

        Raises:
            TandemError: GIT_COMMAND if the listing cannot be read
        """
        try:
            result = run_git(["worktree", "list", "--porcelain"], cwd=self.repo_root, check=True)
        except ShellError as e:
            raise TandemError(ErrorKind.GIT_COMMAND, f"Failed to list worktrees: {e.detail}", e) from e

        worktrees = []
        entry: Dict[str, str] = {}
        for line in result.stdout.splitlines() + [""]:
            if not line:
                info = self._parse_worktree_entry(entry)
                if info and (prefix is None or info.branch.startswith(prefix)):
                    worktrees.append(info)
                entry = {}
            elif line.startswith("worktree "):
                entry["path"] = line[len("worktree "):]
            elif line.startswith("branch "):
                entry["branch"] = line[len("branch "):]
        return worktrees

    def generate_branch_name(self, task_id: str) -> str:
        prefix = self.config.defaults.branch_prefix
        return self._sanitize_branch_name(f"{prefix}/{task_id}")

    def generate_worktree_path(self, task_id: str) -> Path:
        """Sibling directory of the repository, keyed by task id."""
        worktree_base = Path(self.config.defaults.worktree_base).expanduser()
        if not worktree_base.is_absolute():
            worktree_base = self.repo_root.parent / worktree_base
        return worktree_base / task_id

    def _parse_worktree_entry(self, entry: Dict[str, str]) -> Optional[WorktreeInfo]:
        path = entry.get("path")
        branch = entry.get("branch")
        if not path or not branch:
            return None
        return WorktreeInfo(path=path, branch=branch.removeprefix("refs/heads/"))

    def _sanitize_branch_name(self, name: str) -> str:
        sanitized = re.sub(r"[^a-zA-Z0-9/_.-]", "-", name)
        sanitized = re.sub(r"-+", "-", sanitized)
        sanitized = re.sub(r"\.\.+", ".", sanitized)
        return sanitized.strip("-./")

    def _validate_branch_name(self, branch: str) -> None:
        try:
            run_git(["check-ref-format", "--branch", branch], cwd=self.repo_root, check=True)
        except ShellError as e:
            raise TandemError(
                ErrorKind.WORKTREE_CREATION, f"Invalid branch name '{branch}'", e
            ) from e

    def _check_branch_available(self, branch: str) -> None:
        if self._branch_exists(branch):
            raise TandemError(ErrorKind.WORKTREE_CREATION, f"Branch {branch} already exists")

    def _check_path_available(self, worktree_path: Path) -> None:
        if worktree_path.exists():
            raise TandemError(
                ErrorKind.WORKTREE_CREATION, f"Worktree path {worktree_path} already exists"
            )

    def _branch_exists(self, branch: str) -> bool:
        try:
            result = run_git(["branch", "--list", branch], cwd=self.repo_root, check=True)
        except ShellError as e:
            raise TandemError(
                ErrorKind.WORKTREE_CREATION, f"Failed to check existing branch {branch}: {e.detail}", e
            ) from e
        return bool(result.stdout.strip())

    def _verify_base_ref(self, base_branch: str) -> None:
        result = run_git(
            ["rev-parse", "--verify", "--quiet", f"{base_branch}^{{commit}}"], cwd=self.repo_root
        )
        if not result.success:
            raise ShellError(f"Base branch '{base_branch}' not found", result.returncode)

    def _create_git_worktree(self, worktree_path: Path, branch: str, base_branch: str) -> None:
        worktree_path.parent.mkdir(parents=True, exist_ok=True)
        result = run_git(
            ["worktree", "add", "-b", branch, str(worktree_path), base_branch],
            cwd=self.repo_root,
            check=True,
        )
        logger.debug(f"Git worktree created: {result.stdout.strip()}")

    def _remove_worktree_directory(self, worktree_info: WorktreeInfo) -> None:
        if not worktree_info.exists():
            run_git(["worktree", "prune"], cwd=self.repo_root)
            logger.debug(f"Worktree already removed: {worktree_info.path}")
            return

        result = run_git(["worktree", "remove", worktree_info.path], cwd=self.repo_root)
        if not result.success:
            result = run_git(["worktree", "remove", "--force", worktree_info.path], cwd=self.repo_root)
        if not result.success:
            if worktree_info.exists():
                shutil.rmtree(worktree_info.path_obj)
                logger.warning(f"Manually removed worktree directory: {worktree_info.path}")
            run_git(["worktree", "prune"], cwd=self.repo_root)

    def _delete_branch(self, branch: str) -> None:
        result = run_git(["branch", "--list", branch], cwd=self.repo_root, check=True)
        if not result.stdout.strip():
            logger.debug(f"Branch already deleted: {branch}")
            return
        run_git(["branch", "-D", branch], cwd=self.repo_root, check=True)

    def _cleanup_failed_worktree(self, worktree_path: Path, branch: str) -> None:
        """Undo a partially created worktree.

        Only called after both the branch and the path were confirmed free,
        so anything found here was created by the failed attempt.
        """
        try:
            if worktree_path.exists():
                run_git(["worktree", "remove", "--force", str(worktree_path)], cwd=self.repo_root)
                if worktree_path.exists():
                    shutil.rmtree(worktree_path)
            run_git(["worktree", "prune"], cwd=self.repo_root)
            if self._branch_exists(branch):
                run_git(["branch", "-D", branch], cwd=self.repo_root)
        except (ShellError, OSError, TandemError) as e:
            logger.warning(f"Failed to clean up after worktree creation failure: {e}")
