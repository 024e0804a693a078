"""Ralph loop engine: repeat one task until the agent says it is done.

A loop runs one agent at a time in one persistent worktree. Every iteration
resends the same user prompt; the loop stops when an iteration's output
contains the completion phrase (exact, case-sensitive substring of the
buffered output) or when the iteration budget is spent.

Each loop has a driver task consuming one queue. Agent events and user
commands (pause, resume, retry, cancel) go through that queue, so a pause
can never race with an iteration finishing.

    pending -> running -> completed | max_iterations
                  |  ^
          pause   v  |  resume
                paused

    running -> failed (iteration failed) -- retry --> running
    pending | running | paused -> cancelled
"""

import asyncio
import logging
import random
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from bismarck.agents import AgentEvent, AgentEventType, AgentRequest, AgentRole, AgentRunner
from bismarck.config import EngineConfig, RalphLoopConfig
from bismarck.constants import LOOP_ADJECTIVES, LOOP_BRANCH_PREFIX, LOOP_NOUNS
from bismarck.errors import InvalidTransition, NotFound
from bismarck.events import EventBus, EventKind
from bismarck.project import BismarckPaths, slugify
from bismarck.prompts import build_loop_prompt
from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    IterationStatus,
    LoopStatus,
    LoopWorktreeInfo,
    RalphLoopIteration,
    RalphLoopState,
)
from bismarck.vcs import GitClient, GitError

logger = logging.getLogger(__name__)

GitFactory = Callable[[str], GitClient]


def generate_random_phrase() -> str:
    """A memorable adjective-noun pair, e.g. "plucky-otter"."""
    return f"{random.choice(LOOP_ADJECTIVES)}-{random.choice(LOOP_NOUNS)}"


@dataclass
class _Command:
    name: str
    reply: asyncio.Future
    run_id: Optional[str] = None


@dataclass
class _IterationEvent:
    run_id: str
    event: AgentEvent


@dataclass
class _LoopRuntime:
    """In-memory machinery of a loop that is not persisted."""

    queue: asyncio.Queue
    driver: Optional[asyncio.Task] = None
    watcher: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None
    run_id: Optional[str] = None
    output: list[str] = field(default_factory=list)
    settled: asyncio.Event = field(default_factory=asyncio.Event)


_QueueItem = Union[_Command, _IterationEvent]


class RalphLoopEngine:
    """Starts and drives iterative loops."""

    def __init__(
        self,
        runner: AgentRunner,
        store: BismarckDB,
        bus: EventBus,
        config: Optional[EngineConfig] = None,
        paths: Optional[BismarckPaths] = None,
        git_factory: GitFactory = GitClient,
    ):
        self.runner = runner
        self.store = store
        self.bus = bus
        self.config = config or EngineConfig()
        self.paths = paths or BismarckPaths(worktrees_dir=self.config.worktrees_dir)
        self.git_factory = git_factory
        self._loops: dict[str, RalphLoopState] = {}
        self._runtimes: dict[str, _LoopRuntime] = {}

    # Queries

    def get_loop(self, loop_id: str) -> RalphLoopState:
        """Get a loop by id.

        Raises:
            NotFound: If no such loop exists
        """
        state = self._loops.get(loop_id)
        if state is None:
            state = self.store.get_loop(loop_id)
            if state is None:
                raise NotFound(f"Loop not found: {loop_id}")
            self._loops[loop_id] = state
        return state

    def list_loops(self) -> list[RalphLoopState]:
        return [self._loops.setdefault(s.id, s) for s in self.store.list_loops()]

    # Commands

    async def start_loop(self, config: RalphLoopConfig) -> RalphLoopState:
        """Create the loop's worktree and start its first iteration.

        Raises:
            GitError: If the worktree cannot be created
        """
        git = self.git_factory(config.repo_path)
        repo_name = Path(config.repo_path).resolve().name
        base_branch = self.config.base_branch or await asyncio.to_thread(
            git.detect_default_branch, self.config.remote
        )

        phrase = generate_random_phrase()
        path = self.paths.loop_worktree_path(repo_name, phrase)
        while path.exists():
            phrase = f"{generate_random_phrase()}-{uuid.uuid4().hex[:4]}"
            path = self.paths.loop_worktree_path(repo_name, phrase)
        path.parent.mkdir(parents=True, exist_ok=True)

        def create() -> str:
            branch = git.unique_branch_name(f"{LOOP_BRANCH_PREFIX}/{slugify(repo_name)}-{phrase}")
            git.add_worktree(str(path), branch, base_branch)
            return branch

        branch = await asyncio.to_thread(create)

        state = RalphLoopState(
            id=f"ralph-{uuid.uuid4().hex[:8]}",
            config=config,
            worktree=LoopWorktreeInfo(
                path=str(path),
                branch=branch,
                repo_path=str(config.repo_path),
                base_branch=base_branch,
            ),
            phrase=phrase,
            tab_id=config.tab_id,
        )
        self.store.save_loop(state)
        self._loops[state.id] = state
        logger.info(f"Started loop {state.id} on {branch}")

        runtime = self._runtime(state.id)
        self._set_status(state, LoopStatus.RUNNING, f"Loop started on {branch}")
        self._start_iteration(state, runtime)
        return state

    async def pause(self, loop_id: str) -> RalphLoopState:
        """Stop after the current iteration. Only valid while running."""
        return await self._submit(loop_id, "pause")

    async def resume(self, loop_id: str) -> RalphLoopState:
        """Continue a paused loop."""
        return await self._submit(loop_id, "resume")

    async def retry(self, loop_id: str) -> RalphLoopState:
        """Append a new iteration to a failed loop, reusing its worktree."""
        return await self._submit(loop_id, "retry")

    async def cancel(self, loop_id: str) -> RalphLoopState:
        """Cancel a loop that has not finished. Its agent is asked to stop."""
        return await self._submit(loop_id, "cancel")

    async def wait_for_completion(self, loop_id: str, timeout: Optional[float] = None) -> bool:
        """Wait until the loop settles.

        Settled means terminal, or paused with no iteration in flight.

        Returns:
            True only if the loop completed by seeing its completion phrase
        """
        state = self.get_loop(loop_id)
        runtime = self._runtimes.get(loop_id)
        if runtime is not None and not self._is_settled(state, runtime):
            if timeout is None:
                await runtime.settled.wait()
            else:
                await asyncio.wait_for(runtime.settled.wait(), timeout)
        return state.status == LoopStatus.COMPLETED

    async def cleanup(self, loop_id: str) -> None:
        """Remove a finished loop: worktree, branches and the loop record.

        Raises:
            InvalidTransition: If the loop has not reached a terminal status
        """
        state = self.get_loop(loop_id)
        if not state.status.is_terminal:
            raise InvalidTransition(
                f"Loop {loop_id} is {state.status.value}; only finished loops can be cleaned up"
            )

        runtime = self._runtimes.pop(loop_id, None)
        if runtime is not None:
            if runtime.run_id is not None:
                await self.runner.stop(runtime.run_id)
            for task in (runtime.watcher, runtime.watchdog, runtime.driver):
                if task is not None and not task.done():
                    task.cancel()

        git = self.git_factory(state.worktree.repo_path)
        await asyncio.to_thread(self._remove_loop_git_state, git, state.worktree)

        self.store.delete_loop(loop_id)
        self._loops.pop(loop_id, None)
        self.bus.emit(EventKind.LOOP_STATUS, loop_id, "Loop cleaned up", status="deleted", persist=False)
        logger.info(f"Cleaned up loop {loop_id}")

    def _remove_loop_git_state(self, git: GitClient, worktree: LoopWorktreeInfo) -> None:
        if Path(worktree.path).exists():
            git.remove_worktree(worktree.path)
        if Path(worktree.path).exists():
            shutil.rmtree(worktree.path, ignore_errors=True)
        git.prune_worktrees()
        if git.branch_exists(worktree.branch):
            git.delete_branch(worktree.branch)
        if git.has_remote(self.config.remote) and git.remote_branch_exists(
            worktree.branch, self.config.remote
        ):
            git.delete_remote_branch(worktree.branch, self.config.remote)

    def recover(self) -> list[str]:
        """Fail loops a previous process left running.

        Paused loops stay paused and can be resumed.

        Returns:
            Ids of the loops that were marked failed
        """
        recovered = []
        for state in self.list_loops():
            if state.id in self._runtimes:
                continue
            if state.status not in (LoopStatus.RUNNING, LoopStatus.PENDING):
                continue
            for iteration in state.iterations:
                if iteration.status in (IterationStatus.RUNNING, IterationStatus.PENDING):
                    iteration.status = IterationStatus.FAILED
                    iteration.completed_at = datetime.now()
                    iteration.error = "Interrupted by a restart of the engine"
            self._set_status(state, LoopStatus.FAILED, "Loop interrupted by a restart of the engine", "error")
            recovered.append(state.id)
        return recovered

    async def shutdown(self) -> None:
        """Stop every driver and agent without changing persisted status."""
        for runtime in list(self._runtimes.values()):
            if runtime.run_id is not None:
                await self.runner.stop(runtime.run_id)
            for task in (runtime.watcher, runtime.watchdog, runtime.driver):
                if task is not None and not task.done():
                    task.cancel()
        self._runtimes.clear()

    # Driver

    def _runtime(self, loop_id: str) -> _LoopRuntime:
        runtime = self._runtimes.get(loop_id)
        if runtime is None:
            runtime = _LoopRuntime(queue=asyncio.Queue())
            self._runtimes[loop_id] = runtime
            runtime.driver = asyncio.create_task(self._drive(loop_id), name=f"loop-{loop_id}")
        return runtime

    async def _submit(self, loop_id: str, name: str) -> RalphLoopState:
        self.get_loop(loop_id)
        runtime = self._runtime(loop_id)
        reply = asyncio.get_running_loop().create_future()
        runtime.queue.put_nowait(_Command(name, reply))
        return await reply

    async def _drive(self, loop_id: str) -> None:
        runtime = self._runtimes[loop_id]
        while True:
            item = await runtime.queue.get()
            state = self._loops.get(loop_id)
            if state is None:
                return
            try:
                if isinstance(item, _Command):
                    await self._apply_command(state, runtime, item)
                else:
                    await self._on_agent_event(state, runtime, item)
            except Exception as e:
                if isinstance(item, _Command) and not item.reply.done():
                    item.reply.set_exception(e)
                    continue
                logger.exception(f"Loop {loop_id} failed while handling an agent event")
                if not state.status.is_terminal:
                    state.status = LoopStatus.FAILED
                    state.completed_at = datetime.now()
                self._update_settled(state, runtime)

    async def _apply_command(self, state: RalphLoopState, runtime: _LoopRuntime, command: _Command) -> None:
        name = command.name
        if name == "force_stop":
            self._force_stop(state, runtime, command.run_id)
            command.reply.set_result(state)
            return

        if name == "pause":
            self._require(state, (LoopStatus.RUNNING,), "pause")
            self._set_status(state, LoopStatus.PAUSED, "Loop paused")
        elif name == "resume":
            self._require(state, (LoopStatus.PAUSED,), "resume")
            self._set_status(state, LoopStatus.RUNNING, "Loop resumed")
            if runtime.run_id is None:
                self._continue(state, runtime)
        elif name == "retry":
            self._require(state, (LoopStatus.FAILED,), "retry")
            if state.current_iteration >= state.config.max_iterations:
                self._set_status(
                    state, LoopStatus.MAX_ITERATIONS, "Iteration budget already spent", "warning"
                )
            else:
                self._set_status(state, LoopStatus.RUNNING, "Retrying loop")
                self._start_iteration(state, runtime)
        elif name == "cancel":
            self._require(
                state, (LoopStatus.PENDING, LoopStatus.RUNNING, LoopStatus.PAUSED), "cancel"
            )
            self._set_status(state, LoopStatus.CANCELLED, "Loop cancelled", "warning")
            if runtime.run_id is not None:
                run_id = runtime.run_id
                await self.runner.stop(run_id)
                runtime.watchdog = asyncio.create_task(self._cancel_watchdog(state.id, run_id))
        else:
            raise ValueError(f"Unknown loop command: {name}")

        self._update_settled(state, runtime)
        command.reply.set_result(state)

    def _require(self, state: RalphLoopState, allowed: tuple, action: str) -> None:
        if state.status not in allowed:
            raise InvalidTransition(f"Cannot {action} loop {state.id} while {state.status.value}")

    async def _cancel_watchdog(self, loop_id: str, run_id: str) -> None:
        await asyncio.sleep(self.config.cancel_grace_period)
        runtime = self._runtimes.get(loop_id)
        if runtime is not None and runtime.run_id == run_id:
            reply = asyncio.get_running_loop().create_future()
            runtime.queue.put_nowait(_Command("force_stop", reply, run_id=run_id))

    def _force_stop(self, state: RalphLoopState, runtime: _LoopRuntime, run_id: Optional[str]) -> None:
        if runtime.run_id is None or runtime.run_id != run_id:
            return
        logger.warning(f"Loop {state.id} agent {run_id} did not stop within the grace period")
        if runtime.watcher is not None:
            runtime.watcher.cancel()
        iteration = state.last_iteration
        iteration.status = IterationStatus.FAILED
        iteration.completed_at = datetime.now()
        iteration.error = "Agent did not acknowledge stop"
        runtime.run_id = None
        runtime.watcher = None
        self.store.save_loop(state)
        self._emit_iteration(state, iteration)
        self._update_settled(state, runtime)

    def _start_iteration(self, state: RalphLoopState, runtime: _LoopRuntime) -> None:
        number = state.current_iteration + 1
        iteration = RalphLoopIteration(
            iteration_number=number,
            workspace_id=f"{state.id}-{number}",
            status=IterationStatus.PENDING,
        )
        state.current_iteration = number
        state.iterations.append(iteration)
        self.store.save_loop(state)
        self._emit_iteration(state, iteration)

        prompt = build_loop_prompt(
            state.config.prompt,
            state.worktree.path,
            state.worktree.branch,
            number,
            state.config.max_iterations,
            state.config.completion_phrase,
            previous_commits=len(state.git_summary.commits),
        )
        run_id = f"{iteration.workspace_id}:{uuid.uuid4().hex[:6]}"
        request = AgentRequest(
            run_id=run_id,
            task_id=iteration.workspace_id,
            role=AgentRole.LOOP,
            worktree_path=state.worktree.path,
            prompt=prompt,
            model=state.config.model,
        )
        runtime.run_id = run_id
        runtime.output = []
        runtime.settled.clear()
        runtime.watcher = asyncio.create_task(self._watch(runtime, request))
        logger.info(f"Loop {state.id} iteration {number}/{state.config.max_iterations}")

    async def _watch(self, runtime: _LoopRuntime, request: AgentRequest) -> None:
        try:
            async for event in self.runner.run(request):
                runtime.queue.put_nowait(_IterationEvent(request.run_id, event))
                if event.is_terminal:
                    return
            runtime.queue.put_nowait(
                _IterationEvent(
                    request.run_id,
                    AgentEvent(AgentEventType.FAILED, request.run_id, error="Agent stream ended without a result"),
                )
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            runtime.queue.put_nowait(
                _IterationEvent(request.run_id, AgentEvent(AgentEventType.FAILED, request.run_id, error=str(e)))
            )

    async def _on_agent_event(self, state: RalphLoopState, runtime: _LoopRuntime, item: _IterationEvent) -> None:
        if item.run_id != runtime.run_id:
            logger.debug(f"Ignoring stale event for run {item.run_id}")
            return
        event = item.event
        iteration = state.last_iteration

        if event.type == AgentEventType.STARTED:
            iteration.status = IterationStatus.RUNNING
            self.store.save_loop(state)
            self._emit_iteration(state, iteration)
            return
        if event.type == AgentEventType.OUTPUT:
            iteration.events.append(event.to_dict())
            runtime.output.append(event.text)
            if not iteration.completion_phrase_found and (
                state.config.completion_phrase in "".join(runtime.output)
            ):
                iteration.completion_phrase_found = True
                logger.info(f"Completion phrase found in loop {state.id} iteration {iteration.iteration_number}")
            self.bus.emit(
                EventKind.LOOP_OUTPUT,
                state.id,
                event.text,
                task_id=iteration.workspace_id,
                persist=False,
            )
            return

        # Terminal event for the current iteration
        iteration.events.append(event.to_dict())
        iteration.status = (
            IterationStatus.COMPLETED if event.type == AgentEventType.COMPLETED else IterationStatus.FAILED
        )
        iteration.error = event.error
        iteration.completed_at = datetime.now()
        runtime.run_id = None
        runtime.watcher = None

        await self._record_commits(state, iteration)
        self.store.save_loop(state)
        self._emit_iteration(state, iteration)

        # A pause only holds back the next iteration; completion and failure still apply
        if state.status in (LoopStatus.RUNNING, LoopStatus.PAUSED):
            if iteration.completion_phrase_found:
                self._set_status(state, LoopStatus.COMPLETED, "Completion phrase detected", "success")
            elif iteration.status == IterationStatus.FAILED:
                self._set_status(
                    state, LoopStatus.FAILED, f"Iteration {iteration.iteration_number} failed: {event.error}", "error"
                )
            elif state.status == LoopStatus.RUNNING:
                self._continue(state, runtime)
        self._update_settled(state, runtime)

    def _continue(self, state: RalphLoopState, runtime: _LoopRuntime) -> None:
        """Start the next iteration, or stop if the budget is spent."""
        last = state.last_iteration
        if last is not None and last.completion_phrase_found:
            self._set_status(state, LoopStatus.COMPLETED, "Completion phrase detected", "success")
        elif state.current_iteration >= state.config.max_iterations:
            self._set_status(
                state,
                LoopStatus.MAX_ITERATIONS,
                f"Reached {state.config.max_iterations} iterations without the completion phrase",
                "warning",
            )
        else:
            self._start_iteration(state, runtime)

    async def _record_commits(self, state: RalphLoopState, iteration: RalphLoopIteration) -> None:
        git = self.git_factory(state.worktree.repo_path)
        try:
            commits = await asyncio.to_thread(
                git.get_commits_between, state.worktree.base_branch, state.worktree.branch
            )
        except GitError as e:
            logger.warning(f"Could not read commits for loop {state.id}: {e}")
            return
        iteration.commits = state.git_summary.add_commits(commits)
        state.git_summary.branch = state.worktree.branch

    # Status and events

    def _set_status(self, state: RalphLoopState, status: LoopStatus, message: str, level: str = "info") -> None:
        state.status = status
        if status.is_terminal:
            state.completed_at = datetime.now()
        else:
            state.completed_at = None
        self.store.save_loop(state)
        self.bus.emit(
            EventKind.LOOP_STATUS,
            state.id,
            message,
            status=status.value,
            level=level,
            iteration=state.current_iteration,
        )

    def _emit_iteration(self, state: RalphLoopState, iteration: RalphLoopIteration) -> None:
        self.bus.emit(
            EventKind.LOOP_ITERATION,
            state.id,
            f"Iteration {iteration.iteration_number} {iteration.status.value}",
            task_id=iteration.workspace_id,
            status=iteration.status.value,
            iteration=iteration.iteration_number,
            completion_phrase_found=iteration.completion_phrase_found,
            commits=[c.sha for c in iteration.commits],
        )

    def _is_settled(self, state: RalphLoopState, runtime: _LoopRuntime) -> bool:
        if state.status.is_terminal:
            return True
        return state.status == LoopStatus.PAUSED and runtime.run_id is None

    def _update_settled(self, state: RalphLoopState, runtime: _LoopRuntime) -> None:
        if self._is_settled(state, runtime):
            runtime.settled.set()
        else:
            runtime.settled.clear()
