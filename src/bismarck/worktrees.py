"""Worktree and branch lifecycle for plan tasks.

Every dispatched task gets its own git worktree on its own branch. Once the
task is accepted, finalize() integrates its work according to the plan's
branch strategy, and release() removes the directory. A worktree is never
reused across tasks.
"""

import asyncio
import logging
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, TypeVar

from bismarck.config import EngineConfig
from bismarck.constants import FEATURE_BRANCH_PREFIX, TASK_BRANCH_PREFIX
from bismarck.errors import NotFound, WorktreeConflict
from bismarck.project import BismarckPaths, slugify
from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    BranchStrategy,
    CommitInfo,
    CriticStatus,
    Plan,
    PlanWorktree,
    Task,
    WorktreeStatus,
)
from bismarck.vcs import GitClient, GitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def plan_short_id(plan_id: str) -> str:
    return plan_id.rsplit("-", 1)[-1][:8]


class WorktreeManager:
    """Owns the worktrees and branches of one plan.

    Only used from the event loop that runs the plan. Git commands run in a
    worker thread, one at a time per repository; each task id additionally has
    its own lock so acquire, finalize and release never interleave for it.
    """

    def __init__(
        self,
        plan: Plan,
        git: GitClient,
        store: BismarckDB,
        paths: BismarckPaths,
        config: EngineConfig,
    ):
        self.plan = plan
        self.git = git
        self.store = store
        self.paths = paths
        self.config = config
        self._task_locks: dict[str, asyncio.Lock] = {}
        self._repo_lock = asyncio.Lock()

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._task_locks.get(task_id)
        if lock is None:
            lock = self._task_locks[task_id] = asyncio.Lock()
        return lock

    async def _git(self, fn: Callable[..., T], *args, **kwargs) -> T:
        async with self._repo_lock:
            return await asyncio.to_thread(fn, *args, **kwargs)

    def save_worktree(self, worktree: PlanWorktree) -> None:
        self.store.save_worktree(worktree)

    # Refs

    async def ensure_base_branch(self) -> str:
        """Resolve and persist the plan's base ref."""
        if not self.plan.base_branch:
            self.plan.base_branch = self.config.base_branch or await self._git(
                self.git.detect_default_branch, self.config.remote
            )
            self.store.update_plan(self.plan)
        return self.plan.base_branch

    async def _base_ref_for(self, task: Task) -> str:
        base = await self.ensure_base_branch()
        if not task.blocked_by:
            return base

        if self.plan.branch_strategy == BranchStrategy.FEATURE_BRANCH:
            # Dependents start from the integration branch so they see blocker work
            if self.plan.feature_branch and await self._git(
                self.git.branch_exists, self.plan.feature_branch
            ):
                return self.plan.feature_branch
            return base

        # raise_prs: stack on a completed blocker's branch
        for dep in sorted(task.blocked_by):
            dep_worktree = self.plan.get_worktree(dep)
            if dep_worktree and await self._git(self.git.branch_exists, dep_worktree.branch):
                return dep_worktree.branch
        return base

    # Lifecycle

    async def acquire(self, task: Task) -> str:
        """Create the isolated working copy for a task.

        Returns:
            Absolute path of the new worktree

        Raises:
            WorktreeConflict: If the task already has (or had) a worktree
            GitError: If the branch or worktree cannot be created
        """
        async with self._lock_for(task.id):
            if self.plan.get_worktree(task.id) is not None:
                raise WorktreeConflict(
                    f"Task {task.id} already has a worktree; worktrees are never reused",
                    task_id=task.id,
                )

            path = self.paths.task_worktree_path(self.plan.id, task.id)
            if path.exists():
                raise WorktreeConflict(f"Worktree path already exists: {path}", task_id=task.id)
            path.parent.mkdir(parents=True, exist_ok=True)

            base_ref = await self._base_ref_for(task)
            wanted = f"{TASK_BRANCH_PREFIX}/{plan_short_id(self.plan.id)}/{slugify(task.id)}"

            def create() -> str:
                branch = self.git.unique_branch_name(wanted)
                self.git.add_worktree(str(path), branch, base_ref)
                return branch

            async with self._repo_lock:
                branch = await asyncio.to_thread(create)

            worktree = PlanWorktree(
                id=str(uuid.uuid4()),
                plan_id=self.plan.id,
                task_id=task.id,
                path=str(path),
                branch=branch,
                base_branch=base_ref,
            )
            self.plan.worktrees.append(worktree)
            self.store.save_worktree(worktree)
            logger.info(f"Acquired worktree {path} on {branch} (from {base_ref}) for {task.id}")
            return str(path)

    async def finalize(self, task: Task, strategy: Optional[BranchStrategy] = None) -> list[CommitInfo]:
        """Integrate a finished task's branch.

        feature_branch merges the task branch into the plan's integration
        branch. raise_prs pushes the task branch and opens (or reuses) a PR.

        Returns:
            Commits the task contributed

        Raises:
            GitError: On merge conflict, push or PR failure
        """
        strategy = strategy or self.plan.branch_strategy
        async with self._lock_for(task.id):
            worktree = self._require(task.id)
            commits = await self._git(
                self.git.get_commits_between, worktree.base_branch, worktree.branch
            )
            for commit in commits:
                commit.task_id = task.id
            worktree.commits = [c.sha for c in commits]

            if strategy == BranchStrategy.FEATURE_BRANCH:
                await self._merge_into_feature_branch(task, worktree)
            else:
                await self._raise_pull_request(task, worktree)

            self.plan.git_summary.add_commits(commits)
            self.store.save_worktree(worktree)
            self.store.update_plan(self.plan)
            return commits

    async def _merge_into_feature_branch(self, task: Task, worktree: PlanWorktree) -> None:
        integration_path = await self._ensure_integration_worktree()
        ok, error = await self._git(
            self.git.merge_branch,
            worktree.branch,
            integration_path,
            f"Merge {worktree.branch} ({task.id}: {task.subject})",
        )
        if not ok:
            raise GitError(
                f"Could not merge {worktree.branch} into {self.plan.feature_branch}: {error}",
                task_id=task.id,
            )
        self.plan.git_summary.branch = self.plan.feature_branch
        logger.info(f"Merged {worktree.branch} into {self.plan.feature_branch}")

        if self.config.push_remote and await self._git(self.git.has_remote, self.config.remote):
            await self._git(
                self.git.push_branch, self.plan.feature_branch, self.config.remote, integration_path
            )

    async def _raise_pull_request(self, task: Task, worktree: PlanWorktree) -> None:
        await self._git(self.git.push_branch, worktree.branch, self.config.remote, worktree.path)
        pr = await self._git(self.git.find_pull_request, worktree.branch, worktree.path)
        if pr is None:
            pr = await self._git(
                self.git.create_pull_request,
                worktree.branch,
                worktree.base_branch,
                f"{task.subject} ({task.id})",
                task.description or task.subject,
                worktree.path,
            )
        pr.task_id = task.id
        known = {p.number for p in self.plan.git_summary.pull_requests}
        if pr.number not in known:
            self.plan.git_summary.pull_requests.append(pr)
        logger.info(f"Pull request #{pr.number} for {task.id}: {pr.url}")

    async def _ensure_integration_worktree(self) -> str:
        """Create the integration branch and its worktree on first use."""
        base = await self.ensure_base_branch()
        if not self.plan.feature_branch:
            wanted = f"{FEATURE_BRANCH_PREFIX}/{slugify(self.plan.title)}-{plan_short_id(self.plan.id)}"
            self.plan.feature_branch = await self._git(self.git.create_branch, wanted, base)
            self.store.update_plan(self.plan)
        elif not await self._git(self.git.branch_exists, self.plan.feature_branch):
            await self._git(self.git.create_branch, self.plan.feature_branch, base)

        path = self.paths.integration_worktree_path(self.plan.id)
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            await self._git(self.git.add_worktree, str(path), self.plan.feature_branch)
        return str(path)

    async def release(self, task_id: str) -> bool:
        """Remove a task's worktree directory and mark it cleaned.

        Idempotent: releasing an already cleaned (or unknown) worktree is a
        no-op.

        Returns:
            True if this call removed the worktree

        Raises:
            WorktreeConflict: If the critic is still reviewing the worktree
        """
        async with self._lock_for(task_id):
            worktree = self.plan.get_worktree(task_id)
            if worktree is None:
                logger.debug(f"No worktree to release for {task_id}")
                return False
            if worktree.critic_status == CriticStatus.REVIEWING:
                raise WorktreeConflict(
                    f"Cannot release worktree for {task_id} while the critic is reviewing it",
                    task_id=task_id,
                )
            if worktree.status == WorktreeStatus.CLEANED:
                logger.debug(f"Worktree for {task_id} already released")
                return False

            await self._git(self._remove_directory, worktree.path)
            worktree.status = WorktreeStatus.CLEANED
            worktree.cleaned_at = datetime.now()
            self.store.save_worktree(worktree)
            logger.info(f"Released worktree for {task_id}")
            return True

    def _remove_directory(self, path: str) -> None:
        if Path(path).exists():
            self.git.remove_worktree(path)
        if Path(path).exists():
            shutil.rmtree(path, ignore_errors=True)
        self.git.prune_worktrees()

    async def release_all(self, force: bool = True) -> int:
        """Release every active worktree of the plan, plus the integration worktree.

        With force, an in-flight critic review is reset to pending first so
        the release is allowed.

        Returns:
            Number of worktrees this call removed
        """
        released = 0
        for worktree in list(self.plan.worktrees):
            if worktree.status == WorktreeStatus.CLEANED:
                continue
            if force and worktree.critic_status == CriticStatus.REVIEWING:
                worktree.critic_status = CriticStatus.PENDING
                self.store.save_worktree(worktree)
            if await self.release(worktree.task_id):
                released += 1
        await self.release_integration()
        return released

    async def release_integration(self) -> None:
        """Remove the integration worktree so its branch is no longer checked out."""
        path = self.paths.integration_worktree_path(self.plan.id)
        if path.exists():
            await self._git(self._remove_directory, str(path))

    async def refresh_git_summary(self) -> None:
        """Re-read the plan's aggregate git artifacts from the repository."""
        summary = self.plan.git_summary
        if self.plan.branch_strategy == BranchStrategy.FEATURE_BRANCH:
            if not self.plan.feature_branch or not self.plan.base_branch:
                return
            commits = await self._git(
                self.git.get_commits_between, self.plan.base_branch, self.plan.feature_branch
            )
            owners = {c.sha: c.task_id for c in summary.commits}
            for commit in commits:
                commit.task_id = owners.get(commit.sha)
            summary.branch = self.plan.feature_branch
            summary.commits = commits
        else:
            for pr in summary.pull_requests:
                try:
                    fresh = await self._git(self.git.find_pull_request, pr.head_branch)
                except GitError as e:
                    logger.warning(f"Could not refresh PR #{pr.number}: {e}")
                    continue
                if fresh is not None and fresh.number == pr.number:
                    pr.status = fresh.status
        self.store.update_plan(self.plan)

    async def cleanup_branches(self) -> None:
        """Delete every task branch and the integration branch of the plan."""
        await self.release_integration()
        for worktree in self.plan.worktrees:
            if await self._git(self.git.branch_exists, worktree.branch):
                await self._git(self.git.delete_branch, worktree.branch)
        if self.plan.feature_branch and await self._git(
            self.git.branch_exists, self.plan.feature_branch
        ):
            await self._git(self.git.delete_branch, self.plan.feature_branch)
        self.plan.feature_branch = None
        plan_dir = self.paths.plan_worktrees_dir(self.plan.id)
        if plan_dir.exists() and not any(plan_dir.iterdir()):
            plan_dir.rmdir()

    def _require(self, task_id: str) -> PlanWorktree:
        worktree = self.plan.get_worktree(task_id)
        if worktree is None:
            raise NotFound(f"No worktree for task {task_id}", task_id=task_id)
        return worktree
