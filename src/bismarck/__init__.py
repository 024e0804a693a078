"""Bismarck: plan orchestration for parallel coding agents.

Bismarck runs two kinds of work:
- Plans: a dependency graph of tasks, each executed by an agent in its own
  git worktree, optionally gated by a critic review
- Ralph loops: one agent re-run on the same prompt until it prints a
  completion phrase
"""

__version__ = "0.1.0"

from bismarck.config import EngineConfig, RalphLoopConfig
from bismarck.errors import BismarckError
from bismarck.events import EngineEvent, EventBus
from bismarck.graph import DependencyGraph, build_graph
from bismarck.plans import PlanManager
from bismarck.ralph_loop import RalphLoopEngine

__all__ = [
    "BismarckError",
    "DependencyGraph",
    "EngineConfig",
    "EngineEvent",
    "EventBus",
    "PlanManager",
    "RalphLoopConfig",
    "RalphLoopEngine",
    "build_graph",
]
