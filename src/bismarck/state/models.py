"""Data models for Bismarck state management."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from bismarck.config import RalphLoopConfig


class PlanStatus(Enum):
    """Status of a plan."""

    DRAFT = "draft"
    DISCUSSING = "discussing"
    DISCUSSED = "discussed"
    DELEGATING = "delegating"
    IN_PROGRESS = "in_progress"
    READY_FOR_REVIEW = "ready_for_review"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_executing(self) -> bool:
        return self in (PlanStatus.DELEGATING, PlanStatus.IN_PROGRESS)


class TeamMode(Enum):
    """How work is decomposed for a plan."""

    TOP_DOWN = "top-down"
    BOTTOM_UP = "bottom-up"


class BranchStrategy(Enum):
    """Policy for integrating completed task work."""

    FEATURE_BRANCH = "feature_branch"
    RAISE_PRS = "raise_prs"


class NodeStatus(Enum):
    """Resolved status of a task node in the dependency graph."""

    BLOCKED = "blocked"
    READY = "ready"
    SENT = "sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class AssignmentStatus(Enum):
    """Status of a task assignment to a worker."""

    SENT = "sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (AssignmentStatus.SENT, AssignmentStatus.IN_PROGRESS)


class WorktreeStatus(Enum):
    """Lifecycle status of a task worktree."""

    ACTIVE = "active"
    CLEANED = "cleaned"


class CriticStatus(Enum):
    """Review state of a task worktree."""

    PENDING = "pending"
    REVIEWING = "reviewing"
    APPROVED = "approved"
    REJECTED = "rejected"


class LoopStatus(Enum):
    """Status of an iterative loop."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MAX_ITERATIONS = "max_iterations"

    @property
    def is_terminal(self) -> bool:
        return self in (
            LoopStatus.COMPLETED,
            LoopStatus.FAILED,
            LoopStatus.CANCELLED,
            LoopStatus.MAX_ITERATIONS,
        )


class IterationStatus(Enum):
    """Status of a single loop iteration."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Task:
    """A unit of work in a plan. Immutable once the plan executes."""

    id: str
    subject: str
    description: str = ""
    blocked_by: frozenset[str] = frozenset()

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "subject": self.subject,
            "description": self.description,
            "blocked_by": sorted(self.blocked_by),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Task":
        return cls(
            id=str(data["id"]),
            subject=data.get("subject") or data.get("title") or str(data["id"]),
            description=data.get("description", ""),
            blocked_by=frozenset(str(d) for d in data.get("blocked_by", data.get("blockedBy", []))),
        )


@dataclass
class CommitInfo:
    """Information about a git commit."""

    sha: str
    message: str
    author: str
    timestamp: str
    task_id: Optional[str] = None

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    def to_dict(self) -> dict:
        return {
            "sha": self.sha,
            "message": self.message,
            "author": self.author,
            "timestamp": self.timestamp,
            "task_id": self.task_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CommitInfo":
        return cls(
            sha=data["sha"],
            message=data.get("message", ""),
            author=data.get("author", ""),
            timestamp=data.get("timestamp", ""),
            task_id=data.get("task_id"),
        )


@dataclass
class PullRequestInfo:
    """A pull request raised for a task branch."""

    number: int
    title: str
    url: str
    head_branch: str
    base_branch: str
    status: str = "open"  # open, merged, closed
    task_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "title": self.title,
            "url": self.url,
            "head_branch": self.head_branch,
            "base_branch": self.base_branch,
            "status": self.status,
            "task_id": self.task_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PullRequestInfo":
        return cls(
            number=int(data["number"]),
            title=data.get("title", ""),
            url=data.get("url", ""),
            head_branch=data.get("head_branch", ""),
            base_branch=data.get("base_branch", ""),
            status=data.get("status", "open"),
            task_id=data.get("task_id"),
        )


@dataclass
class GitSummary:
    """Aggregate git artifacts produced by a plan or loop."""

    branch: Optional[str] = None
    commits: list[CommitInfo] = field(default_factory=list)
    pull_requests: list[PullRequestInfo] = field(default_factory=list)

    def add_commits(self, commits: list[CommitInfo]) -> list[CommitInfo]:
        """Append commits not already recorded. Returns the new ones."""
        known = {c.sha for c in self.commits}
        added = [c for c in commits if c.sha not in known]
        self.commits.extend(added)
        return added

    def to_dict(self) -> dict:
        return {
            "branch": self.branch,
            "commits": [c.to_dict() for c in self.commits],
            "pull_requests": [pr.to_dict() for pr in self.pull_requests],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GitSummary":
        if not data:
            return cls()
        return cls(
            branch=data.get("branch"),
            commits=[CommitInfo.from_dict(c) for c in data.get("commits", [])],
            pull_requests=[PullRequestInfo.from_dict(p) for p in data.get("pull_requests", [])],
        )


@dataclass
class TaskAssignment:
    """Binds a task to a worker identity and a worktree."""

    id: str
    plan_id: str
    task_id: str
    agent_id: str
    worktree_path: str
    status: AssignmentStatus
    assigned_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "worktree_path": self.worktree_path,
            "status": self.status.value,
            "assigned_at": _iso(self.assigned_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskAssignment":
        return cls(
            id=data["id"],
            plan_id=data["plan_id"],
            task_id=data["task_id"],
            agent_id=data["agent_id"],
            worktree_path=data["worktree_path"],
            status=AssignmentStatus(data["status"]),
            assigned_at=datetime.fromisoformat(data["assigned_at"]),
            started_at=_from_iso(data.get("started_at")),
            completed_at=_from_iso(data.get("completed_at")),
            error=data.get("error"),
        )


@dataclass
class PlanWorktree:
    """Isolated working copy owned by one dispatched task."""

    id: str
    plan_id: str
    task_id: str
    path: str
    branch: str
    base_branch: str
    status: WorktreeStatus = WorktreeStatus.ACTIVE
    critic_status: CriticStatus = CriticStatus.PENDING
    critic_iteration: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    cleaned_at: Optional[datetime] = None
    commits: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "task_id": self.task_id,
            "path": self.path,
            "branch": self.branch,
            "base_branch": self.base_branch,
            "status": self.status.value,
            "critic_status": self.critic_status.value,
            "critic_iteration": self.critic_iteration,
            "created_at": _iso(self.created_at),
            "cleaned_at": _iso(self.cleaned_at),
            "commits": list(self.commits),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanWorktree":
        return cls(
            id=data["id"],
            plan_id=data["plan_id"],
            task_id=data["task_id"],
            path=data["path"],
            branch=data["branch"],
            base_branch=data["base_branch"],
            status=WorktreeStatus(data["status"]),
            critic_status=CriticStatus(data["critic_status"]),
            critic_iteration=int(data.get("critic_iteration", 0)),
            created_at=datetime.fromisoformat(data["created_at"]),
            cleaned_at=_from_iso(data.get("cleaned_at")),
            commits=list(data.get("commits", [])),
        )


@dataclass
class Plan:
    """A user-defined unit of work decomposed into a task dependency graph."""

    id: str
    title: str
    description: str
    repo_path: str
    status: PlanStatus = PlanStatus.DRAFT
    team_mode: TeamMode = TeamMode.TOP_DOWN
    branch_strategy: BranchStrategy = BranchStrategy.FEATURE_BRANCH
    reference_agent_id: Optional[str] = None
    max_parallel_agents: Optional[int] = None
    base_branch: Optional[str] = None
    feature_branch: Optional[str] = None
    critic_criteria: Optional[str] = None
    discussion_completed: bool = False
    worktrees: list[PlanWorktree] = field(default_factory=list)
    git_summary: GitSummary = field(default_factory=GitSummary)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def get_worktree(self, task_id: str) -> Optional[PlanWorktree]:
        """Return the worktree for a task, if one was ever acquired."""
        for worktree in self.worktrees:
            if worktree.task_id == task_id:
                return worktree
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for storage (worktrees are stored separately)."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "repo_path": self.repo_path,
            "status": self.status.value,
            "team_mode": self.team_mode.value,
            "branch_strategy": self.branch_strategy.value,
            "reference_agent_id": self.reference_agent_id,
            "max_parallel_agents": self.max_parallel_agents,
            "base_branch": self.base_branch,
            "feature_branch": self.feature_branch,
            "critic_criteria": self.critic_criteria,
            "discussion_completed": self.discussion_completed,
            "git_summary": self.git_summary.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class LoopWorktreeInfo:
    """The single worktree shared by every iteration of a loop."""

    path: str
    branch: str
    repo_path: str
    base_branch: str

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "branch": self.branch,
            "repo_path": self.repo_path,
            "base_branch": self.base_branch,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LoopWorktreeInfo":
        return cls(
            path=data["path"],
            branch=data["branch"],
            repo_path=data["repo_path"],
            base_branch=data["base_branch"],
        )


@dataclass
class RalphLoopIteration:
    """One invocation of the loop's agent."""

    iteration_number: int
    workspace_id: str
    status: IterationStatus = IterationStatus.PENDING
    events: list[dict[str, Any]] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    completion_phrase_found: bool = False
    commits: list[CommitInfo] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "iteration_number": self.iteration_number,
            "workspace_id": self.workspace_id,
            "status": self.status.value,
            "events": list(self.events),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "completion_phrase_found": self.completion_phrase_found,
            "commits": [c.to_dict() for c in self.commits],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RalphLoopIteration":
        return cls(
            iteration_number=int(data["iteration_number"]),
            workspace_id=data["workspace_id"],
            status=IterationStatus(data["status"]),
            events=list(data.get("events", [])),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=_from_iso(data.get("completed_at")),
            completion_phrase_found=bool(data.get("completion_phrase_found", False)),
            commits=[CommitInfo.from_dict(c) for c in data.get("commits", [])],
            error=data.get("error"),
        )


@dataclass
class RalphLoopState:
    """State of one "repeat until signaled" loop."""

    id: str
    config: RalphLoopConfig
    worktree: LoopWorktreeInfo
    phrase: str
    tab_id: Optional[str] = None
    status: LoopStatus = LoopStatus.PENDING
    current_iteration: int = 0
    iterations: list[RalphLoopIteration] = field(default_factory=list)
    git_summary: GitSummary = field(default_factory=GitSummary)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def last_iteration(self) -> Optional[RalphLoopIteration]:
        return self.iterations[-1] if self.iterations else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "config": self.config.model_dump(),
            "worktree": self.worktree.to_dict(),
            "phrase": self.phrase,
            "tab_id": self.tab_id,
            "status": self.status.value,
            "current_iteration": self.current_iteration,
            "iterations": [it.to_dict() for it in self.iterations],
            "git_summary": self.git_summary.to_dict(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RalphLoopState":
        return cls(
            id=data["id"],
            config=RalphLoopConfig.model_validate(data["config"]),
            worktree=LoopWorktreeInfo.from_dict(data["worktree"]),
            phrase=data["phrase"],
            tab_id=data.get("tab_id"),
            status=LoopStatus(data["status"]),
            current_iteration=int(data.get("current_iteration", 0)),
            iterations=[RalphLoopIteration.from_dict(it) for it in data.get("iterations", [])],
            git_summary=GitSummary.from_dict(data.get("git_summary")),
            started_at=datetime.fromisoformat(data["started_at"]),
            completed_at=_from_iso(data.get("completed_at")),
        )
