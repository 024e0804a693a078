"""Task scheduler: the control loop that executes one plan.

One PlanScheduler runs per executing plan. Everything that can change the
plan's state (worker events, cancellation) arrives through a single inbound
queue and is applied by the scheduler's own loop, so graph recomputation
never races. After every change the dependency graph is rebuilt from the
immutable task list plus the current assignments, ready tasks are
dispatched up to the plan's parallelism limit, and the plan is moved to a
terminal status once nothing is left to do.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from bismarck.agents import (
    CRITIC_ALLOWED_TOOLS,
    AgentEvent,
    AgentEventType,
    AgentRequest,
    AgentRole,
    AgentRunner,
)
from bismarck.config import EngineConfig
from bismarck.constants import DEFAULT_CRITIC_CRITERIA, PLAN_CANCELLED_MESSAGE
from bismarck.critic import CriticOutcome, CriticReviewCycle, parse_verdict
from bismarck.errors import (
    AgentFailure,
    BismarckError,
    InvalidTransition,
    PersistenceError,
    TimeoutOnCancel,
    WorktreeConflict,
)
from bismarck.events import EventBus, EventKind
from bismarck.graph import DependencyGraph, build_graph
from bismarck.prompts import (
    CRITIC_SYSTEM_PROMPT,
    TASK_AGENT_SYSTEM_PROMPT,
    build_critic_prompt,
    build_fixup_prompt,
    build_task_prompt,
)
from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    AssignmentStatus,
    CriticStatus,
    NodeStatus,
    Plan,
    PlanStatus,
    Task,
    TaskAssignment,
)
from bismarck.worktrees import WorktreeManager

logger = logging.getLogger(__name__)


# Allowed plan status transitions
PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.DISCUSSING, PlanStatus.DELEGATING, PlanStatus.FAILED}),
    PlanStatus.DISCUSSING: frozenset({PlanStatus.DISCUSSED, PlanStatus.DRAFT, PlanStatus.FAILED}),
    PlanStatus.DISCUSSED: frozenset({PlanStatus.DELEGATING, PlanStatus.DISCUSSING, PlanStatus.FAILED}),
    PlanStatus.DELEGATING: frozenset({PlanStatus.IN_PROGRESS, PlanStatus.FAILED}),
    PlanStatus.IN_PROGRESS: frozenset({PlanStatus.READY_FOR_REVIEW, PlanStatus.FAILED}),
    PlanStatus.READY_FOR_REVIEW: frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED}),
    PlanStatus.COMPLETED: frozenset(),
    PlanStatus.FAILED: frozenset({PlanStatus.DRAFT, PlanStatus.DISCUSSED}),
}


def transition(plan: Plan, status: PlanStatus) -> None:
    """Move a plan to a new status, enforcing the transition table.

    Raises:
        InvalidTransition: If the move is not allowed
    """
    if status not in PLAN_TRANSITIONS[plan.status]:
        raise InvalidTransition(
            f"Plan {plan.id} cannot move from {plan.status.value} to {status.value}"
        )
    plan.status = status


# Errors that fail one task without stopping the plan
TASK_LEVEL_ERRORS = (BismarckError, OSError)


@dataclass
class _Run:
    """An agent invocation the scheduler is waiting on."""

    run_id: str
    task_id: str
    role: AgentRole
    output: list[str] = field(default_factory=list)


@dataclass
class _WorkerEvent:
    run_id: str
    event: AgentEvent


@dataclass
class _CancelRequest:
    pass


_InboxItem = Union[_WorkerEvent, _CancelRequest]


class PlanScheduler:
    """Executes one plan until it reaches a terminal status.

    Attributes:
        plan: The plan being executed (mutated in place and persisted)
        assignments: Latest assignment per task id
        peak_active: Highest number of concurrent sent/in-progress assignments seen
    """

    def __init__(
        self,
        plan: Plan,
        tasks: list[Task],
        runner: AgentRunner,
        store: BismarckDB,
        bus: EventBus,
        config: EngineConfig,
        worktrees: WorktreeManager,
    ):
        self.plan = plan
        self.tasks = list(tasks)
        self._tasks_by_id = {task.id: task for task in self.tasks}
        self.runner = runner
        self.store = store
        self.bus = bus
        self.config = config
        self.worktrees = worktrees
        self.max_parallel = plan.max_parallel_agents or config.max_parallel_agents
        self.critic = (
            CriticReviewCycle(config.critic_max_iterations) if config.critic_enabled else None
        )
        self.critic_criteria = plan.critic_criteria or DEFAULT_CRITIC_CRITERIA

        self.assignments: dict[str, TaskAssignment] = {
            a.task_id: a for a in store.get_assignments(plan.id)
        }
        self.peak_active = 0

        self._inbox: asyncio.Queue[_InboxItem] = asyncio.Queue()
        self._runs: dict[str, _Run] = {}
        self._watchers: dict[str, asyncio.Task] = {}
        self._graph: Optional[DependencyGraph] = None
        self._cancelling = False
        self._cancel_deadline: Optional[float] = None
        self._finished = False
        self._done = asyncio.Event()

    # Public API

    @property
    def graph(self) -> DependencyGraph:
        if self._graph is None:
            self._graph = build_graph(self.tasks, self.assignments.values())
        return self._graph

    @property
    def is_finished(self) -> bool:
        return self._done.is_set()

    @property
    def active_run_ids(self) -> list[str]:
        return list(self._runs)

    async def run(self) -> PlanStatus:
        """Execute the plan. Returns the terminal plan status."""
        try:
            await self._start()
            loop = asyncio.get_running_loop()
            while not self._finished:
                timeout = None
                if self._cancel_deadline is not None:
                    timeout = max(0.0, self._cancel_deadline - loop.time())
                try:
                    item = await asyncio.wait_for(self._inbox.get(), timeout)
                except asyncio.TimeoutError:
                    await self._force_cancel()
                    continue
                await self._handle(item)
        except asyncio.CancelledError:
            await self._halt(None)
            raise
        except Exception as e:
            await self._halt(e)
        finally:
            self._done.set()
        return self.plan.status

    async def cancel(self) -> None:
        """Cooperatively cancel the plan and wait until cleanup is done."""
        if self._done.is_set():
            return
        self._inbox.put_nowait(_CancelRequest())
        await self._done.wait()

    async def wait(self) -> PlanStatus:
        await self._done.wait()
        return self.plan.status

    # Plan status

    def _set_plan_status(self, status: PlanStatus, message: str = "", level: str = "info") -> None:
        transition(self.plan, status)
        self.store.update_plan(self.plan)
        self.bus.emit(
            EventKind.PLAN_STATUS,
            self.plan.id,
            message or f"Plan {status.value}",
            status=status.value,
            level=level,
        )

    def _activity(self, message: str, level: str = "info", task_id: Optional[str] = None, **details) -> None:
        self.bus.emit(
            EventKind.PLAN_ACTIVITY, self.plan.id, message, task_id=task_id, level=level, **details
        )

    async def _start(self) -> None:
        self._set_plan_status(PlanStatus.DELEGATING, "Delegating tasks")
        try:
            await self.worktrees.ensure_base_branch()
        except PersistenceError:
            raise
        except TASK_LEVEL_ERRORS as e:
            self._activity(f"Could not resolve base branch: {e}", level="error")
            self._set_plan_status(PlanStatus.FAILED, str(e), level="error")
            self._finished = True
            return

        self._activity(
            f"Executing {len(self.tasks)} task(s) with up to {self.max_parallel} parallel agent(s)"
        )
        await self._recompute(check_terminal=False)
        self._set_plan_status(PlanStatus.IN_PROGRESS, "Tasks dispatched")
        await self._check_terminal()

    # Graph recompute and dispatch

    async def _recompute(self, check_terminal: bool = True) -> None:
        """Rebuild the graph and dispatch ready tasks into free slots."""
        while True:
            self._graph = build_graph(self.tasks, self.assignments.values())
            if self._cancelling or self._finished:
                return
            free = self.max_parallel - self._graph.active_count
            candidates = self._graph.ready_nodes()[: max(free, 0)]
            if not candidates:
                break
            for task_id in candidates:
                await self._dispatch(self._tasks_by_id[task_id])

        if check_terminal:
            await self._check_terminal()

    async def _check_terminal(self) -> None:
        if self._finished or self._cancelling:
            return
        graph = self._graph
        if graph.is_complete:
            await self._complete()
            return
        if self._runs or graph.active_count or graph.ready_nodes():
            return
        failed = graph.nodes_with_status(NodeStatus.FAILED)
        blocked = graph.nodes_with_status(NodeStatus.BLOCKED)
        self._activity(
            f"{len(failed)} task(s) failed; {len(blocked)} task(s) can no longer run",
            level="error",
            failed=failed,
            blocked=blocked,
        )
        self._set_plan_status(PlanStatus.FAILED, f"Tasks failed: {', '.join(failed)}", level="error")
        self._finished = True

    async def _complete(self) -> None:
        try:
            await self.worktrees.refresh_git_summary()
        except PersistenceError:
            raise
        except TASK_LEVEL_ERRORS as e:
            self._activity(f"Could not refresh git summary: {e}", level="warning")
        await self.worktrees.release_integration()
        self._activity("All tasks completed", level="success")
        self._set_plan_status(PlanStatus.READY_FOR_REVIEW, "Ready for review", level="success")
        self._finished = True

    async def _dispatch(self, task: Task) -> None:
        """Assign a ready task: worktree first, then the agent."""
        assignment = TaskAssignment(
            id=str(uuid.uuid4()),
            plan_id=self.plan.id,
            task_id=task.id,
            agent_id=f"agent-{uuid.uuid4().hex[:8]}",
            worktree_path="",
            status=AssignmentStatus.SENT,
            assigned_at=datetime.now(),
        )
        self.assignments[task.id] = assignment

        try:
            assignment.worktree_path = await self.worktrees.acquire(task)
        except PersistenceError:
            raise
        except TASK_LEVEL_ERRORS as e:
            logger.warning(f"Could not create worktree for {task.id}: {e}")
            self._fail_assignment(assignment, f"Worktree setup failed: {e}")
            return

        self.store.save_assignment(assignment)
        self.bus.emit(
            EventKind.TASK_STATUS,
            self.plan.id,
            f"Task {task.id} sent to {assignment.agent_id}",
            task_id=task.id,
            status=AssignmentStatus.SENT.value,
            agent_id=assignment.agent_id,
            worktree=assignment.worktree_path,
        )

        active = sum(1 for a in self.assignments.values() if a.status.is_active)
        self.peak_active = max(self.peak_active, active)

        worktree = self.plan.get_worktree(task.id)
        self._start_agent(
            task.id,
            AgentRole.TASK,
            build_task_prompt(self.plan, task, worktree.branch),
            system_prompt=TASK_AGENT_SYSTEM_PROMPT,
        )

    def _start_agent(
        self,
        task_id: str,
        role: AgentRole,
        prompt: str,
        system_prompt: Optional[str] = None,
        allowed_tools: Optional[list[str]] = None,
    ) -> str:
        assignment = self.assignments[task_id]
        run_id = f"{assignment.id}:{role.value}:{uuid.uuid4().hex[:6]}"
        request = AgentRequest(
            run_id=run_id,
            task_id=task_id,
            role=role,
            worktree_path=assignment.worktree_path,
            prompt=prompt,
            model=self.config.agent_model,
            system_prompt=system_prompt,
            allowed_tools=allowed_tools,
        )
        self._runs[run_id] = _Run(run_id=run_id, task_id=task_id, role=role)
        self._watchers[run_id] = asyncio.create_task(self._watch(request))
        logger.debug(f"Started {role.value} agent {run_id} for {task_id}")
        return run_id

    async def _watch(self, request: AgentRequest) -> None:
        """Forward one agent's events into the inbox."""
        try:
            async for event in self.runner.run(request):
                self._inbox.put_nowait(_WorkerEvent(request.run_id, event))
                if event.is_terminal:
                    return
            self._inbox.put_nowait(
                _WorkerEvent(
                    request.run_id,
                    AgentEvent(
                        AgentEventType.FAILED,
                        request.run_id,
                        error="Agent stream ended without a result",
                    ),
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Agent run {request.run_id} crashed: {e}")
            self._inbox.put_nowait(
                _WorkerEvent(request.run_id, AgentEvent(AgentEventType.FAILED, request.run_id, error=str(e)))
            )

    # Inbox handling

    async def _handle(self, item: _InboxItem) -> None:
        if isinstance(item, _CancelRequest):
            await self._begin_cancel()
            return

        run = self._runs.get(item.run_id)
        if run is None:
            logger.debug(f"Ignoring event for unknown run {item.run_id}")
            return
        event = item.event

        if event.type == AgentEventType.STARTED:
            self._on_started(run)
        elif event.type == AgentEventType.OUTPUT:
            run.output.append(event.text)
            self.bus.emit(
                EventKind.TASK_OUTPUT,
                self.plan.id,
                event.text,
                task_id=run.task_id,
                persist=False,
                role=run.role.value,
            )
        else:
            self._runs.pop(run.run_id, None)
            self._watchers.pop(run.run_id, None)
            if self._cancelling:
                self._on_cancelled_run(run, event)
                if not self._watchers:
                    await self._finish_cancel()
                return
            await self._on_terminal(run, event)
            await self._recompute()

    def _on_started(self, run: _Run) -> None:
        assignment = self.assignments[run.task_id]
        if run.role == AgentRole.TASK and assignment.status == AssignmentStatus.SENT:
            assignment.status = AssignmentStatus.IN_PROGRESS
            assignment.started_at = datetime.now()
            self.store.save_assignment(assignment)
            self.bus.emit(
                EventKind.TASK_STATUS,
                self.plan.id,
                f"Task {run.task_id} in progress",
                task_id=run.task_id,
                status=AssignmentStatus.IN_PROGRESS.value,
            )
        elif run.role != AgentRole.TASK:
            self._activity(f"{run.role.value.capitalize()} agent started for {run.task_id}", task_id=run.task_id)

    async def _on_terminal(self, run: _Run, event: AgentEvent) -> None:
        task_id = run.task_id
        succeeded = event.type == AgentEventType.COMPLETED

        if run.role in (AgentRole.TASK, AgentRole.FIXUP):
            if not succeeded:
                self._fail_task(
                    task_id,
                    AgentFailure(event.error or "Agent failed", task_id=task_id),
                )
            elif self.critic is not None:
                self._begin_review(task_id)
            else:
                await self._accept(task_id)
            return

        # Critic run
        worktree = self.plan.get_worktree(task_id)
        if not succeeded:
            self.critic.auto_approve(worktree)
            self.worktrees.save_worktree(worktree)
            self._activity(
                f"Critic failed for {task_id}, auto-approving: {event.error}",
                level="warning",
                task_id=task_id,
            )
            await self._accept(task_id)
            return

        verdict = parse_verdict("".join(run.output))
        if not verdict.explicit:
            self._activity(
                f"Critic gave no verdict for {task_id}, auto-approving",
                level="warning",
                task_id=task_id,
            )
        decision = self.critic.record_verdict(worktree, verdict)
        self.worktrees.save_worktree(worktree)
        self.bus.emit(
            EventKind.CRITIC_STATUS,
            self.plan.id,
            f"Critic {decision.outcome.value} {task_id}",
            task_id=task_id,
            status=worktree.critic_status.value,
            iteration=worktree.critic_iteration,
            feedback=decision.feedback,
        )

        if decision.outcome == CriticOutcome.APPROVED:
            await self._accept(task_id)
        elif decision.outcome == CriticOutcome.FIXUP:
            self._activity(
                f"Critic rejected {task_id}, starting fix-up "
                f"{worktree.critic_iteration}/{self.critic.max_iterations}",
                level="warning",
                task_id=task_id,
            )
            self._start_agent(
                task_id,
                AgentRole.FIXUP,
                build_fixup_prompt(
                    self._tasks_by_id[task_id],
                    decision.feedback,
                    worktree.critic_iteration,
                    self.critic.max_iterations,
                ),
                system_prompt=TASK_AGENT_SYSTEM_PROMPT,
            )
        else:
            self._fail_task(task_id, decision.error)

    def _begin_review(self, task_id: str) -> None:
        worktree = self.plan.get_worktree(task_id)
        self.critic.begin_review(worktree)
        self.worktrees.save_worktree(worktree)
        self.bus.emit(
            EventKind.CRITIC_STATUS,
            self.plan.id,
            f"Critic reviewing {task_id}",
            task_id=task_id,
            status=CriticStatus.REVIEWING.value,
            iteration=worktree.critic_iteration,
        )
        self._start_agent(
            task_id,
            AgentRole.CRITIC,
            build_critic_prompt(
                self._tasks_by_id[task_id],
                worktree.base_branch,
                self.critic_criteria,
                worktree.critic_iteration,
                self.critic.max_iterations,
                self.critic.is_last_iteration(worktree),
            ),
            system_prompt=CRITIC_SYSTEM_PROMPT,
            allowed_tools=CRITIC_ALLOWED_TOOLS,
        )

    async def _accept(self, task_id: str) -> None:
        """Finalize, mark completed, then release the worktree."""
        task = self._tasks_by_id[task_id]
        try:
            commits = await self.worktrees.finalize(task, self.plan.branch_strategy)
        except PersistenceError:
            raise
        except TASK_LEVEL_ERRORS as e:
            self._fail_task(task_id, e)
            return

        assignment = self.assignments[task_id]
        assignment.status = AssignmentStatus.COMPLETED
        assignment.completed_at = datetime.now()
        self.store.save_assignment(assignment)
        self.bus.emit(
            EventKind.TASK_STATUS,
            self.plan.id,
            f"Task {task_id} completed ({len(commits)} commit(s))",
            task_id=task_id,
            status=AssignmentStatus.COMPLETED.value,
            level="success",
            commits=[c.sha for c in commits],
        )

        try:
            await self.worktrees.release(task_id)
        except WorktreeConflict as e:
            logger.warning(str(e))
        else:
            self.bus.emit(
                EventKind.WORKTREE_STATUS, self.plan.id, f"Worktree for {task_id} cleaned",
                task_id=task_id, status="cleaned",
            )

    def _fail_task(self, task_id: str, error: Exception) -> None:
        self._fail_assignment(self.assignments[task_id], str(error))

    def _fail_assignment(self, assignment: TaskAssignment, error: str) -> None:
        assignment.status = AssignmentStatus.FAILED
        assignment.error = error
        assignment.completed_at = datetime.now()
        self.store.save_assignment(assignment)
        self.bus.emit(
            EventKind.TASK_STATUS,
            self.plan.id,
            f"Task {assignment.task_id} failed: {error}",
            task_id=assignment.task_id,
            status=AssignmentStatus.FAILED.value,
            level="error",
        )

    # Cancellation

    async def _begin_cancel(self) -> None:
        if self._cancelling:
            return
        self._cancelling = True
        self._activity("Cancelling plan", level="warning")
        for run_id in list(self._runs):
            try:
                await self.runner.stop(run_id)
            except Exception as e:
                logger.warning(f"Stop request for {run_id} failed: {e}")

        if not self._watchers:
            await self._finish_cancel()
            return
        self._cancel_deadline = asyncio.get_running_loop().time() + self.config.cancel_grace_period

    def _on_cancelled_run(self, run: _Run, event: AgentEvent) -> None:
        assignment = self.assignments.get(run.task_id)
        if assignment is not None and assignment.status.is_active:
            self._fail_assignment(assignment, PLAN_CANCELLED_MESSAGE)

    async def _force_cancel(self) -> None:
        """Grace period over: stop waiting for workers that never acknowledged."""
        for run_id, watcher in list(self._watchers.items()):
            watcher.cancel()
            run = self._runs.pop(run_id, None)
            if run is None:
                continue
            warning = TimeoutOnCancel(
                f"Agent {run_id} did not stop within {self.config.cancel_grace_period}s",
                task_id=run.task_id,
            )
            logger.warning(warning.message)
            self._activity(warning.message, level="warning", task_id=run.task_id, error="TimeoutOnCancel")
            assignment = self.assignments.get(run.task_id)
            if assignment is not None and assignment.status.is_active:
                self._fail_assignment(assignment, f"{PLAN_CANCELLED_MESSAGE} (stop not acknowledged)")
        self._watchers.clear()
        await self._finish_cancel()

    async def _finish_cancel(self) -> None:
        for assignment in self.assignments.values():
            if assignment.status.is_active:
                self._fail_assignment(assignment, PLAN_CANCELLED_MESSAGE)

        await self.worktrees.release_all(force=True)
        for worktree in self.plan.worktrees:
            self.bus.emit(
                EventKind.WORKTREE_STATUS, self.plan.id, f"Worktree for {worktree.task_id} cleaned",
                task_id=worktree.task_id, status=worktree.status.value,
            )

        self._activity(PLAN_CANCELLED_MESSAGE, level="warning")
        self._set_plan_status(PlanStatus.FAILED, PLAN_CANCELLED_MESSAGE, level="warning")
        self._graph = build_graph(self.tasks, self.assignments.values())
        self._cancel_deadline = None
        self._finished = True

    async def _halt(self, error: Optional[Exception]) -> None:
        """Plan-level failure: stop every agent and leave the plan failed."""
        if error is not None:
            logger.error(f"Scheduler for plan {self.plan.id} halted: {error}", exc_info=error)
        for run_id, watcher in list(self._watchers.items()):
            try:
                await self.runner.stop(run_id)
            except Exception as e:
                logger.warning(f"Stop request for {run_id} failed: {e}")
            watcher.cancel()
        self._watchers.clear()
        self._runs.clear()
        self._finished = True

        if self.plan.status.is_executing:
            self.plan.status = PlanStatus.FAILED
            try:
                self.store.update_plan(self.plan)
                self.bus.emit(
                    EventKind.PLAN_STATUS,
                    self.plan.id,
                    f"Plan halted: {error or 'interrupted'}",
                    status=PlanStatus.FAILED.value,
                    level="error",
                )
            except PersistenceError as e:
                logger.error(f"Could not record failure of plan {self.plan.id}: {e}")
