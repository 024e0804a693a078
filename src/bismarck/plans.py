"""Plan lifecycle management.

PlanManager owns every plan by id and funnels all user commands (create,
discuss, execute, cancel, restart, complete, delete) through the plan status
transition table. Execution itself is delegated to one PlanScheduler per
running plan.
"""

import asyncio
import logging
import uuid
from typing import Callable, Iterable, Optional

from bismarck.agents import AgentRunner
from bismarck.config import EngineConfig
from bismarck.constants import PLAN_CANCELLED_MESSAGE
from bismarck.critic import extract_critic_criteria
from bismarck.errors import BismarckError, InvalidTransition, NotFound, PersistenceError
from bismarck.events import EventBus, EventKind
from bismarck.graph import DependencyGraph, build_graph
from bismarck.project import BismarckPaths
from bismarck.scheduler import PLAN_TRANSITIONS, PlanScheduler, transition
from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    BranchStrategy,
    GitSummary,
    Plan,
    PlanStatus,
    Task,
    TeamMode,
)
from bismarck.vcs import GitClient
from bismarck.worktrees import WorktreeManager

logger = logging.getLogger(__name__)

GitFactory = Callable[[str], GitClient]


def generate_plan_id() -> str:
    return f"plan-{uuid.uuid4().hex[:12]}"


class PlanManager:
    """Owned collection of plans, indexed by id."""

    def __init__(
        self,
        store: BismarckDB,
        bus: EventBus,
        runner: AgentRunner,
        config: Optional[EngineConfig] = None,
        paths: Optional[BismarckPaths] = None,
        git_factory: GitFactory = GitClient,
    ):
        self.store = store
        self.bus = bus
        self.runner = runner
        self.config = config or EngineConfig()
        self.paths = paths or BismarckPaths(worktrees_dir=self.config.worktrees_dir)
        self.git_factory = git_factory
        self._plans: dict[str, Plan] = {}
        self._schedulers: dict[str, PlanScheduler] = {}
        self._runs: dict[str, asyncio.Task] = {}

    # Queries

    def get_plan(self, plan_id: str) -> Plan:
        """Get a plan by id.

        Raises:
            NotFound: If no such plan exists
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            plan = self.store.get_plan(plan_id)
            if plan is None:
                raise NotFound(f"Plan not found: {plan_id}")
            self._plans[plan_id] = plan
        return plan

    def list_plans(self) -> list[Plan]:
        plans = []
        for stored in self.store.list_plans():
            plans.append(self._plans.setdefault(stored.id, stored))
        return plans

    def get_tasks(self, plan_id: str) -> list[Task]:
        self.get_plan(plan_id)
        return self.store.get_tasks(plan_id)

    def get_graph(self, plan_id: str) -> DependencyGraph:
        """Current dependency graph of a plan."""
        scheduler = self._schedulers.get(plan_id)
        if scheduler is not None:
            return scheduler.graph
        return build_graph(self.get_tasks(plan_id), self.store.get_assignments(plan_id))

    def get_scheduler(self, plan_id: str) -> Optional[PlanScheduler]:
        return self._schedulers.get(plan_id)

    def is_running(self, plan_id: str) -> bool:
        run = self._runs.get(plan_id)
        return run is not None and not run.done()

    # Commands

    def create_plan(
        self,
        title: str,
        description: str,
        tasks: Iterable[Task],
        repo_path: str,
        branch_strategy: BranchStrategy = BranchStrategy.FEATURE_BRANCH,
        team_mode: TeamMode = TeamMode.TOP_DOWN,
        max_parallel_agents: Optional[int] = None,
        reference_agent_id: Optional[str] = None,
    ) -> Plan:
        """Create a draft plan.

        Raises:
            MalformedGraph: If the tasks do not form a valid dependency graph
        """
        task_list = list(tasks)
        build_graph(task_list)
        if max_parallel_agents is not None and max_parallel_agents < 1:
            raise ValueError("max_parallel_agents must be >= 1")

        plan = Plan(
            id=generate_plan_id(),
            title=title,
            description=description,
            repo_path=str(repo_path),
            branch_strategy=branch_strategy,
            team_mode=team_mode,
            max_parallel_agents=max_parallel_agents,
            reference_agent_id=reference_agent_id,
            base_branch=self.config.base_branch,
        )
        self.store.create_plan(plan, task_list)
        self._plans[plan.id] = plan
        self.bus.emit(
            EventKind.PLAN_STATUS,
            plan.id,
            f"Plan created with {len(task_list)} task(s)",
            status=plan.status.value,
        )
        return plan

    def clone_plan(self, plan_id: str, title: Optional[str] = None) -> Plan:
        """Create a new draft plan with the same tasks and settings."""
        source = self.get_plan(plan_id)
        clone = self.create_plan(
            title=title or f"{source.title} (copy)",
            description=source.description,
            tasks=self.get_tasks(plan_id),
            repo_path=source.repo_path,
            branch_strategy=source.branch_strategy,
            team_mode=source.team_mode,
            max_parallel_agents=source.max_parallel_agents,
            reference_agent_id=source.reference_agent_id,
        )
        if source.critic_criteria:
            clone.critic_criteria = source.critic_criteria
            self.store.update_plan(clone)
        return clone

    def _set_status(self, plan: Plan, status: PlanStatus, message: str, level: str = "info") -> Plan:
        transition(plan, status)
        self.store.update_plan(plan)
        self.bus.emit(EventKind.PLAN_STATUS, plan.id, message, status=status.value, level=level)
        return plan

    def start_discussion(self, plan_id: str) -> Plan:
        """draft -> discussing."""
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.DRAFT:
            raise InvalidTransition(f"Discussion can only start from draft, plan is {plan.status.value}")
        return self._set_status(plan, PlanStatus.DISCUSSING, "Discussion started")

    def cancel_discussion(self, plan_id: str) -> Plan:
        """discussing -> draft."""
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.DISCUSSING:
            raise InvalidTransition(f"Plan {plan_id} is not being discussed")
        return self._set_status(plan, PlanStatus.DRAFT, "Discussion cancelled")

    def complete_discussion(
        self,
        plan_id: str,
        criteria: Optional[str] = None,
        discussion_output: Optional[str] = None,
    ) -> Plan:
        """discussing -> discussed, recording critic criteria.

        Criteria given explicitly win; otherwise they are taken from the
        "## Critic Criteria" section of the discussion output, if any.
        """
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.DISCUSSING:
            raise InvalidTransition(f"Plan {plan_id} is not being discussed")
        if criteria:
            plan.critic_criteria = criteria.strip()
        elif discussion_output:
            plan.critic_criteria = extract_critic_criteria(discussion_output)
        plan.discussion_completed = True
        return self._set_status(plan, PlanStatus.DISCUSSED, "Discussion completed")

    def _worktree_manager(self, plan: Plan) -> WorktreeManager:
        return WorktreeManager(
            plan, self.git_factory(plan.repo_path), self.store, self.paths, self.config
        )

    def execute_plan(self, plan_id: str, reference_agent_id: Optional[str] = None) -> PlanScheduler:
        """Start executing a draft or discussed plan in the background.

        Must be called from a running event loop. Use wait_for_plan() to
        block until it is terminal.

        Raises:
            InvalidTransition: If the plan is running or not executable
        """
        plan = self.get_plan(plan_id)
        if self.is_running(plan_id):
            raise InvalidTransition(f"Plan {plan_id} is already running")
        if PlanStatus.DELEGATING not in PLAN_TRANSITIONS[plan.status]:
            raise InvalidTransition(f"Plan {plan_id} cannot execute from {plan.status.value}")

        if reference_agent_id:
            plan.reference_agent_id = reference_agent_id
        tasks = self.store.get_tasks(plan_id)
        scheduler = PlanScheduler(
            plan=plan,
            tasks=tasks,
            runner=self.runner,
            store=self.store,
            bus=self.bus,
            config=self.config,
            worktrees=self._worktree_manager(plan),
        )
        self._schedulers[plan_id] = scheduler
        self._runs[plan_id] = asyncio.create_task(scheduler.run(), name=f"scheduler-{plan_id}")
        logger.info(f"Executing plan {plan_id} ({len(tasks)} tasks)")
        return scheduler

    async def wait_for_plan(self, plan_id: str) -> PlanStatus:
        """Wait until a running plan reaches a terminal status."""
        run = self._runs.get(plan_id)
        if run is not None:
            await asyncio.shield(run)
        return self.get_plan(plan_id).status

    async def cancel_plan(self, plan_id: str) -> Plan:
        """Cancel an executing plan. The plan ends failed with a "Plan cancelled" activity.

        A plan left executing without a live scheduler (for example after a
        crash) is cleaned up directly.

        Raises:
            InvalidTransition: If the plan is not executing
        """
        plan = self.get_plan(plan_id)
        scheduler = self._schedulers.get(plan_id)
        if scheduler is not None and not scheduler.is_finished:
            await scheduler.cancel()
            await self.wait_for_plan(plan_id)
            return plan

        if not plan.status.is_executing:
            raise InvalidTransition(f"Plan {plan_id} is not executing ({plan.status.value})")

        await self._worktree_manager(plan).release_all(force=True)
        self.bus.emit(EventKind.PLAN_ACTIVITY, plan.id, PLAN_CANCELLED_MESSAGE, level="warning")
        return self._set_status(plan, PlanStatus.FAILED, PLAN_CANCELLED_MESSAGE, level="warning")

    async def restart_plan(self, plan_id: str) -> Plan:
        """Reset a failed plan so it can run again from scratch.

        Every assignment, worktree, branch and the git summary are discarded;
        the plan returns to discussed when its discussion was completed,
        otherwise to draft.
        """
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.FAILED:
            raise InvalidTransition(f"Only failed plans can be restarted, plan is {plan.status.value}")

        await self._discard_git_state(plan)
        with self.store.transaction():
            self.store.delete_assignments(plan_id)
            self.store.delete_worktrees(plan_id)
            plan.worktrees = []
            plan.git_summary = GitSummary()
            plan.feature_branch = None
            plan.base_branch = self.config.base_branch
            self.store.update_plan(plan)
        self._schedulers.pop(plan_id, None)
        self._runs.pop(plan_id, None)

        target = PlanStatus.DISCUSSED if plan.discussion_completed else PlanStatus.DRAFT
        return self._set_status(plan, target, f"Plan restarted ({target.value})")

    def complete_plan(self, plan_id: str) -> Plan:
        """ready_for_review -> completed."""
        plan = self.get_plan(plan_id)
        if plan.status != PlanStatus.READY_FOR_REVIEW:
            raise InvalidTransition(f"Plan {plan_id} is not ready for review ({plan.status.value})")
        return self._set_status(plan, PlanStatus.COMPLETED, "Plan completed", level="success")

    async def delete_plan(self, plan_id: str) -> None:
        """Delete a plan, cancelling it first if it is running.

        Cascades to worktrees (directories and branches), tasks,
        assignments and events.
        """
        plan = self.get_plan(plan_id)
        if self.is_running(plan_id):
            await self.cancel_plan(plan_id)

        await self._discard_git_state(plan)
        self.store.delete_plan(plan_id)
        self._plans.pop(plan_id, None)
        self._schedulers.pop(plan_id, None)
        self._runs.pop(plan_id, None)
        self.bus.emit(EventKind.PLAN_STATUS, plan_id, "Plan deleted", status="deleted", persist=False)

    async def _discard_git_state(self, plan: Plan) -> None:
        manager = self._worktree_manager(plan)
        try:
            await manager.release_all(force=True)
            await manager.cleanup_branches()
        except PersistenceError:
            raise
        except (BismarckError, OSError) as e:
            logger.warning(f"Git cleanup for plan {plan.id} incomplete: {e}")

    def recover(self) -> list[str]:
        """Fail plans a previous process left executing.

        Returns:
            Ids of the plans that were marked failed
        """
        recovered = []
        for plan in self.list_plans():
            if plan.status.is_executing and not self.is_running(plan.id):
                plan.status = PlanStatus.FAILED
                self.store.update_plan(plan)
                self.bus.emit(
                    EventKind.PLAN_STATUS,
                    plan.id,
                    "Plan interrupted by a restart of the engine",
                    status=PlanStatus.FAILED.value,
                    level="error",
                )
                recovered.append(plan.id)
        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted plan(s) as failed")
        return recovered

    async def shutdown(self) -> None:
        """Cancel every running plan."""
        for plan_id in [pid for pid in self._runs if self.is_running(pid)]:
            await self.cancel_plan(plan_id)
