"""Bismarck state layer for persistent state management."""

from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    AssignmentStatus,
    BranchStrategy,
    CommitInfo,
    CriticStatus,
    GitSummary,
    IterationStatus,
    LoopStatus,
    LoopWorktreeInfo,
    NodeStatus,
    Plan,
    PlanStatus,
    PlanWorktree,
    PullRequestInfo,
    RalphLoopIteration,
    RalphLoopState,
    Task,
    TaskAssignment,
    TeamMode,
    WorktreeStatus,
)

__all__ = [
    "AssignmentStatus",
    "BismarckDB",
    "BranchStrategy",
    "CommitInfo",
    "CriticStatus",
    "GitSummary",
    "IterationStatus",
    "LoopStatus",
    "LoopWorktreeInfo",
    "NodeStatus",
    "Plan",
    "PlanStatus",
    "PlanWorktree",
    "PullRequestInfo",
    "RalphLoopIteration",
    "RalphLoopState",
    "Task",
    "TaskAssignment",
    "TeamMode",
    "WorktreeStatus",
]
