"""Git and GitHub CLI access for the engine.

This module provides the GitClient class, a thin wrapper over the git and gh
command line tools: branches, worktrees, merges, pushes, commit enumeration
and pull requests. Every call is synchronous; async callers run it in a
worker thread.
"""

import json
import logging
import re
import subprocess
import sys
from typing import Optional, Tuple

from bismarck.errors import BismarckError
from bismarck.state.models import CommitInfo, PullRequestInfo

logger = logging.getLogger(__name__)

# Format: sha|author|timestamp|subject (subject last so it may contain '|')
_LOG_FORMAT = "%H|%an|%aI|%s"


class GitError(BismarckError):
    """Error raised when git or gh operations fail."""

    pass


def _warn(message: str) -> None:
    """Print warning to stderr AND log it.

    Cleanup failures need to be visible to users, not silently discarded.
    """
    print(f"\033[33m⚠️  {message}\033[0m", file=sys.stderr)
    logger.warning(message)


class GitClient:
    """Client for git operations.

    Attributes:
        cwd: Repository root used when a call does not name its own directory
    """

    def __init__(self, cwd: Optional[str] = None):
        """Initialize GitClient.

        Args:
            cwd: Working directory for git commands. If not provided,
                 uses the current working directory.
        """
        self._cwd = str(cwd) if cwd else None

    @property
    def cwd(self) -> Optional[str]:
        return self._cwd

    def for_repo(self, repo_path: str) -> "GitClient":
        """Return a client bound to another repository."""
        return type(self)(repo_path)

    def _run(
        self, cmd: list[str], check: bool = True, cwd: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=cwd or self._cwd,
            )
        except (FileNotFoundError, NotADirectoryError) as e:
            raise GitError(f"Command failed to start: {' '.join(cmd)}: {e}", original_error=e) from e

        if check and result.returncode != 0:
            raise GitError(f"Command failed: {' '.join(cmd)}\n{result.stderr}")

        return result

    def _run_git(
        self, args: list[str], check: bool = True, cwd: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        """Run a git command.

        Args:
            args: Git command arguments (without 'git' prefix)
            check: If True, raise GitError on non-zero exit code
            cwd: Directory to run in (defaults to the client's repository)

        Raises:
            GitError: If check=True and command fails
        """
        return self._run(["git"] + args, check=check, cwd=cwd)

    def _run_gh(
        self, args: list[str], check: bool = True, cwd: Optional[str] = None
    ) -> subprocess.CompletedProcess:
        """Run a GitHub CLI command."""
        return self._run(["gh"] + args, check=check, cwd=cwd)

    # Repository state

    def get_current_branch(self, cwd: Optional[str] = None) -> str:
        """Get the name of the current branch."""
        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
        return result.stdout.strip()

    def get_head_commit_hash(self, cwd: Optional[str] = None) -> str:
        result = self._run_git(["rev-parse", "HEAD"], cwd=cwd)
        return result.stdout.strip()

    def has_uncommitted_changes(self, cwd: Optional[str] = None) -> bool:
        """Check for staged, unstaged or untracked changes."""
        result = self._run_git(["status", "--porcelain"], cwd=cwd)
        return bool(result.stdout.strip())

    def detect_default_branch(self, remote: str = "origin") -> str:
        """Detect the branch new work should start from.

        Tries the remote's HEAD, then main, then master, then the current branch.
        """
        result = self._run_git(
            ["symbolic-ref", "--short", f"refs/remotes/{remote}/HEAD"], check=False
        )
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().split("/", 1)[-1]

        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate

        return self.get_current_branch()

    def get_commits_between(
        self, base_ref: str, head_ref: str = "HEAD", cwd: Optional[str] = None
    ) -> list[CommitInfo]:
        """Get commits reachable from head_ref but not base_ref, oldest first."""
        result = self._run_git(
            ["log", "--reverse", f"--format={_LOG_FORMAT}", f"{base_ref}..{head_ref}"],
            check=False,
            cwd=cwd,
        )

        if result.returncode != 0 or not result.stdout.strip():
            return []

        commits = []
        for line in result.stdout.strip().split("\n"):
            if not line:
                continue
            parts = line.split("|", 3)
            if len(parts) >= 4:
                commits.append(
                    CommitInfo(
                        sha=parts[0],
                        author=parts[1],
                        timestamp=parts[2],
                        message=parts[3],
                    )
                )

        return commits

    def get_diff_summary(self, base_ref: str, cwd: Optional[str] = None) -> str:
        """Stat-style summary of changes since base_ref, or empty string."""
        result = self._run_git(["diff", "--stat", f"{base_ref}...HEAD"], check=False, cwd=cwd)
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    # Branches

    def branch_exists(self, name: str) -> bool:
        result = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False
        )
        return result.returncode == 0

    def remote_branch_exists(self, name: str, remote: str = "origin") -> bool:
        result = self._run_git(["ls-remote", "--heads", remote, name], check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def has_remote(self, remote: str = "origin") -> bool:
        result = self._run_git(["remote"], check=False)
        return remote in result.stdout.split()

    def unique_branch_name(self, name: str) -> str:
        """Return name, or name with a numbered suffix (-2, -3, ...) if taken."""
        actual_name = name
        suffix = 1
        while self.branch_exists(actual_name):
            suffix += 1
            actual_name = f"{name}-{suffix}"
        return actual_name

    def create_branch(self, name: str, base_ref: Optional[str] = None) -> str:
        """Create a branch, adding a numbered suffix if the name is taken.

        Returns:
            Actual branch name (may have suffix if original existed)
        """
        actual_name = self.unique_branch_name(name)
        if base_ref:
            self._run_git(["branch", actual_name, base_ref])
        else:
            self._run_git(["branch", actual_name])
        return actual_name

    def delete_branch(self, name: str) -> bool:
        """Force-delete a local branch. Warns instead of raising."""
        try:
            result = self._run_git(["branch", "-D", name], check=False)
        except GitError as e:
            _warn(f"Exception deleting branch '{name}': {e}")
            return False
        if result.returncode != 0:
            _warn(f"Failed to delete branch '{name}': {result.stderr.strip()}")
            return False
        return True

    def delete_remote_branch(self, name: str, remote: str = "origin") -> bool:
        """Delete a branch on the remote. Warns instead of raising."""
        result = self._run_git(["push", remote, "--delete", name], check=False)
        if result.returncode != 0:
            _warn(f"Failed to delete remote branch '{remote}/{name}': {result.stderr.strip()}")
            return False
        return True

    def push_branch(self, branch: str, remote: str = "origin", cwd: Optional[str] = None) -> None:
        """Push a branch and set its upstream."""
        self._run_git(["push", "-u", remote, branch], cwd=cwd)

    # Worktrees

    def add_worktree(self, path: str, branch: str, base_ref: Optional[str] = None) -> None:
        """Create a worktree at path.

        With base_ref, a new branch is created from it. Without, the existing
        branch is checked out.

        Raises:
            GitError: If the worktree cannot be created
        """
        if base_ref is not None:
            self._run_git(["worktree", "add", "-b", branch, path, base_ref])
        else:
            self._run_git(["worktree", "add", path, branch])

    def remove_worktree(self, path: str) -> bool:
        """Force-remove a worktree. Warns instead of raising."""
        try:
            result = self._run_git(["worktree", "remove", "--force", path], check=False)
        except GitError as e:
            _warn(f"Exception removing worktree '{path}': {e}")
            return False
        if result.returncode != 0:
            _warn(f"Failed to remove worktree '{path}': {result.stderr.strip()}")
            return False
        return True

    def prune_worktrees(self) -> None:
        self._run_git(["worktree", "prune"], check=False)

    # Merging

    def merge_branch(self, source_branch: str, cwd: str, message: Optional[str] = None) -> Tuple[bool, str]:
        """Merge source_branch into whatever is checked out in cwd.

        Uses `git merge --no-ff` so a merge commit is always created. A
        conflicted merge is aborted, leaving cwd clean.

        Returns:
            (success, error_message) - error_message is empty on success
        """
        result = self._run_git(
            ["merge", "--no-ff", "-m", message or f"Merge {source_branch}", source_branch],
            check=False,
            cwd=cwd,
        )
        if result.returncode == 0:
            return True, ""

        status_result = self._run_git(["status", "--porcelain"], check=False, cwd=cwd)
        conflicts = [
            line for line in status_result.stdout.splitlines()
            if line[:2] in ("UU", "AA", "DD", "AU", "UA", "DU", "UD")
        ]
        if not self.abort_merge(cwd):
            _warn(f"Failed to abort merge of '{source_branch}' in '{cwd}'")
        if conflicts:
            return False, f"Merge conflict in files: {', '.join(line[3:] for line in conflicts)}"
        return False, f"Merge failed: {result.stderr.strip() or result.stdout.strip()}"

    def abort_merge(self, cwd: str) -> bool:
        result = self._run_git(["merge", "--abort"], check=False, cwd=cwd)
        return result.returncode == 0

    # Pull requests

    def find_pull_request(self, branch: str, cwd: Optional[str] = None) -> Optional[PullRequestInfo]:
        """Return the most recent PR whose head is branch, if any."""
        result = self._run_gh(
            [
                "pr", "list",
                "--head", branch,
                "--state", "all",
                "--json", "number,title,url,baseRefName,headRefName,state",
                "--limit", "1",
            ],
            cwd=cwd,
        )
        try:
            items = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as e:
            raise GitError(f"Unexpected gh output for branch {branch}: {result.stdout!r}") from e
        if not items:
            return None
        item = items[0]
        return PullRequestInfo(
            number=int(item["number"]),
            title=item.get("title", ""),
            url=item.get("url", ""),
            head_branch=item.get("headRefName", branch),
            base_branch=item.get("baseRefName", ""),
            status=str(item.get("state", "open")).lower(),
        )

    def create_pull_request(
        self, branch: str, base: str, title: str, body: str, cwd: Optional[str] = None
    ) -> PullRequestInfo:
        """Open a PR for branch against base."""
        result = self._run_gh(
            ["pr", "create", "--head", branch, "--base", base, "--title", title, "--body", body],
            cwd=cwd,
        )
        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        existing = self.find_pull_request(branch, cwd=cwd)
        if existing is not None:
            return existing
        match = re.search(r"/pull/(\d+)", url)
        if not match:
            raise GitError(f"Could not determine PR number for branch {branch}: {url!r}")
        return PullRequestInfo(
            number=int(match.group(1)),
            title=title,
            url=url,
            head_branch=branch,
            base_branch=base,
        )
