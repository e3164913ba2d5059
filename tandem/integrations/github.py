"""GitHub integration via gh CLI."""

import json
import os
import re
from pathlib import Path
from typing import Dict, Optional

from tandem.errors import ErrorKind, TandemError
from tandem.models import GitHubConfig, IssueReference, PRInfo
from tandem.utils.logger import get_logger
from tandem.utils.shell import ShellError, get_git_root, run_command, run_git

logger = get_logger(__name__)

PR_FIELDS = "number,title,url,state,headRefName,baseRefName"

GITHUB_REMOTE_PATTERNS = [
    r"https://github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$",
    r"git@github\.com:([^/]+)/([^/]+?)(?:\.git)?$",
    r"ssh://git@github\.com/([^/]+)/([^/]+?)(?:\.git)?/?$",
]


def parse_remote_url(remote_url: str) -> Optional[str]:
    """Extract ``owner/name`` from a GitHub remote URL."""
    for pattern in GITHUB_REMOTE_PATTERNS:
        match = re.match(pattern, remote_url.strip())
        if match:
            owner, name = match.groups()
            return f"{owner}/{name}"
    return None


def detect_repository(repo_path: Optional[Path] = None) -> Optional[str]:
    """Detect ``owner/name`` from the origin remote, or None."""
    try:
        result = run_git(["remote", "get-url", "origin"], cwd=repo_path, check=True)
    except ShellError:
        logger.debug("Could not detect GitHub repository from git remote")
        return None
    full_name = parse_remote_url(result.stdout)
    if full_name is None:
        logger.debug(f"Remote URL does not match GitHub patterns: {result.stdout.strip()}")
    return full_name


class PullRequestFinalizer:
    """Decides whether a task branch has been turned into a pull request."""

    def __init__(self, config: GitHubConfig, repo_path: Optional[Path] = None):
        self.config = config
        self.repo_path = Path(repo_path) if repo_path else None
        self._repository: Optional[str] = None

    @property
    def repository(self) -> Optional[str]:
        if self._repository is None:
            self._repository = detect_repository(get_git_root(self.repo_path) or self.repo_path)
        return self._repository

    def _gh_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        token = env.get(self.config.token_env)
        if token:
            env["GH_TOKEN"] = token
        return env

    def _gh(self, args: list) -> str:
        command = [self.config.gh_command, *args]
        if self.repository:
            command += ["--repo", self.repository]
        result = run_command(
            command,
            cwd=self.repo_path,
            env=self._gh_env(),
            check=True,
            timeout=self.config.timeout,
        )
        return result.stdout

    def has_open_or_merged_pr(self, branch_name: str) -> Optional[PRInfo]:
        """Look up an open or merged pull request whose head is branch_name.

        Lookup failures are logged and reported as "no pull request yet";
        the next review round checks again.
        """
        try:
            output = self._gh(
                ["pr", "list", "--head", branch_name, "--state", "all", "--json", PR_FIELDS]
            )
            entries = json.loads(output or "[]")
        except ShellError as e:
            logger.warning(f"Pull request lookup for {branch_name} failed: {e.detail}")
            return None
        except json.JSONDecodeError as e:
            logger.warning(f"Could not parse pull request list for {branch_name}: {e}")
            return None

        for entry in entries:
            pr = PRInfo(
                number=entry["number"],
                title=entry.get("title", ""),
                url=entry.get("url", ""),
                state=entry.get("state", ""),
                head_branch=entry.get("headRefName", branch_name),
                base_branch=entry.get("baseRefName"),
            )
            if pr.is_open_or_merged:
                logger.debug(f"Found pull request #{pr.number} ({pr.state}) for {branch_name}")
                return pr
        return None

    def require_pr_url(self, pr: PRInfo) -> str:
        """URL of a pull request that must be reported to the caller.

        Raises:
            TandemError: GITHUB when the pull request has no URL
        """
        if not pr.url:
            raise TandemError(
                ErrorKind.GITHUB, f"Pull request #{pr.number} for {pr.head_branch} has no URL"
            )
        return pr.url

    def fetch_issue(self, reference: IssueReference) -> str:
        """Fetch an issue as specification text.

        Raises:
            TandemError: SPEC_NOT_FOUND when the issue cannot be read
        """
        try:
            output = self._gh(["issue", "view", str(reference.number), "--json", "number,title,body,url"])
            data = json.loads(output)
        except ShellError as e:
            raise TandemError(
                ErrorKind.SPEC_NOT_FOUND, f"Issue #{reference.number} could not be fetched: {e.detail}", e
            ) from e
        except json.JSONDecodeError as e:
            raise TandemError(
                ErrorKind.SPEC_NOT_FOUND, f"Failed to parse issue #{reference.number}: {e}", e
            ) from e

        title = data.get("title", "")
        body = data.get("body") or ""
        url = data.get("url", reference.url or "")
        return f"# Issue #{data.get('number', reference.number)}: {title}\n\n{url}\n\n{body}".rstrip() + "\n"
