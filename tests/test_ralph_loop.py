"""Tests for the Ralph loop engine with a scripted agent runner."""

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from bismarck.agents import AgentRole
from bismarck.config import RalphLoopConfig
from bismarck.errors import InvalidTransition, NotFound
from bismarck.events import EventKind
from bismarck.ralph_loop import RalphLoopEngine, generate_random_phrase
from bismarck.state.models import (
    IterationStatus,
    LoopStatus,
    LoopWorktreeInfo,
    RalphLoopIteration,
    RalphLoopState,
)
from bismarck.vcs import GitClient

from conftest import Reply

PHRASE = "<promise>COMPLETE</promise>"


@pytest_asyncio.fixture
async def engine(runner, db, bus, config, paths):
    engine = RalphLoopEngine(runner, db, bus, config, paths)
    yield engine
    runner.release_all()
    await engine.shutdown()


def loop_config(repo, max_iterations=3, **overrides) -> RalphLoopConfig:
    return RalphLoopConfig(
        reference_agent_id="agent-1",
        repo_path=str(repo),
        prompt="Make the tests pass",
        completion_phrase=PHRASE,
        max_iterations=max_iterations,
        **overrides,
    )


async def wait_until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestGenerateRandomPhrase:
    """Tests for loop phrase generation."""

    def test_adjective_noun_pair(self):
        """WHEN a phrase is generated THEN it is two lowercase words joined by a dash."""
        adjective, noun = generate_random_phrase().split("-")

        assert adjective.isalpha() and adjective.islower()
        assert noun.isalpha() and noun.islower()


class TestStartLoop:
    """Tests for loop creation."""

    @pytest.mark.asyncio
    async def test_creates_worktree_and_branch(self, engine, runner, git_repo, db):
        """WHEN a loop starts THEN it gets its own worktree on a ralph/ branch."""
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))
        await engine.wait_for_completion(state.id, timeout=10)

        assert state.id.startswith("ralph-")
        assert state.worktree.branch == f"ralph/repo-{state.phrase}"
        assert state.worktree.base_branch == "main"
        assert Path(state.worktree.path).is_dir()
        assert runner.requests[0].worktree_path == state.worktree.path
        assert runner.requests[0].role == AgentRole.LOOP
        assert runner.requests[0].task_id == f"{state.id}-1"
        assert db.get_loop(state.id).worktree.path == state.worktree.path


class TestIterations:
    """Tests for running iterations to an end."""

    @pytest.mark.asyncio
    async def test_runs_until_budget_spent(self, engine, runner, git_repo, db):
        """WHEN the phrase never appears THEN the loop stops at max_iterations."""
        state = await engine.start_loop(loop_config(git_repo, max_iterations=3))

        completed = await engine.wait_for_completion(state.id, timeout=10)

        assert completed is False
        assert state.status == LoopStatus.MAX_ITERATIONS
        assert state.current_iteration == 3
        assert [i.status for i in state.iterations] == [IterationStatus.COMPLETED] * 3
        assert len(runner.requests) == 3
        assert db.get_loop(state.id).status == LoopStatus.MAX_ITERATIONS

    @pytest.mark.asyncio
    async def test_iteration_moves_from_pending_to_running(self, engine, bus, git_repo):
        """WHEN an iteration runs THEN it is pending, then running once the agent starts, then completed."""
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))
        await engine.wait_for_completion(state.id, timeout=10)

        statuses = [
            e.status
            for e in bus.replay(state.id)
            if e.kind == EventKind.LOOP_ITERATION and e.task_id == f"{state.id}-1"
        ]
        assert statuses == ["pending", "running", "completed"]

    @pytest.mark.asyncio
    async def test_stops_when_phrase_found(self, engine, runner, git_repo):
        """WHEN iteration two prints the phrase THEN no third iteration runs."""
        runner.script(
            AgentRole.LOOP,
            Reply(output=["still working"]),
            Reply(output=[f"all done {PHRASE}"]),
        )
        state = await engine.start_loop(loop_config(git_repo, max_iterations=5))

        assert await engine.wait_for_completion(state.id, timeout=10) is True

        assert state.status == LoopStatus.COMPLETED
        assert state.current_iteration == 2
        assert [i.completion_phrase_found for i in state.iterations] == [False, True]
        assert len(runner.requests) == 2

    @pytest.mark.asyncio
    async def test_phrase_split_across_chunks(self, engine, runner, git_repo):
        """WHEN the phrase arrives in two output chunks THEN it is still detected."""
        runner.script(AgentRole.LOOP, Reply(output=["<promise>COMP", "LETE</promise>"]))
        state = await engine.start_loop(loop_config(git_repo))

        assert await engine.wait_for_completion(state.id, timeout=10) is True
        assert state.current_iteration == 1

    @pytest.mark.asyncio
    async def test_phrase_is_case_sensitive(self, engine, runner, git_repo):
        """WHEN the output differs only in case THEN the phrase is not found."""
        runner.script(AgentRole.LOOP, Reply(output=["<promise>complete</promise>"]))
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))

        assert await engine.wait_for_completion(state.id, timeout=10) is False
        assert state.status == LoopStatus.MAX_ITERATIONS

    @pytest.mark.asyncio
    async def test_commits_recorded_per_iteration(self, engine, runner, git_repo):
        """WHEN iterations commit THEN each iteration records only its own commits."""
        runner.script(
            AgentRole.LOOP,
            Reply(files={"one.txt": "1"}),
            Reply(files={"two.txt": "2"}, output=[PHRASE]),
        )
        state = await engine.start_loop(loop_config(git_repo))

        await engine.wait_for_completion(state.id, timeout=10)

        first, second = state.iterations
        assert [c.message for c in first.commits] == ["Add one.txt"]
        assert [c.message for c in second.commits] == ["Add two.txt"]
        assert len(state.git_summary.commits) == 2
        assert state.git_summary.branch == state.worktree.branch

    @pytest.mark.asyncio
    async def test_output_streamed(self, engine, runner, bus, git_repo):
        """WHEN an iteration prints THEN the output is streamed but not persisted."""
        runner.script(AgentRole.LOOP, Reply(output=["hello", PHRASE]))
        subscription = bus.subscribe()
        state = await engine.start_loop(loop_config(git_repo))

        await engine.wait_for_completion(state.id, timeout=10)

        streamed = [e.message for e in subscription.pending() if e.kind == EventKind.LOOP_OUTPUT]
        assert streamed == ["hello", PHRASE]
        assert all(e.kind != EventKind.LOOP_OUTPUT for e in bus.replay(state.id))


class TestPauseResume:
    """Tests for pausing between iterations."""

    @pytest.mark.asyncio
    async def test_pause_takes_effect_after_current_iteration(self, engine, runner, git_repo):
        """WHEN paused mid-iteration THEN the iteration finishes and no new one starts."""
        runner.hold(role=AgentRole.LOOP)
        state = await engine.start_loop(loop_config(git_repo, max_iterations=3))

        await engine.pause(state.id)
        assert state.status == LoopStatus.PAUSED
        runner.release_all()

        assert await engine.wait_for_completion(state.id, timeout=10) is False
        assert state.status == LoopStatus.PAUSED
        assert state.current_iteration == 1
        assert state.last_iteration.status == IterationStatus.COMPLETED

        await engine.resume(state.id)
        await engine.wait_for_completion(state.id, timeout=10)

        assert state.status == LoopStatus.MAX_ITERATIONS
        assert state.current_iteration == 3

    @pytest.mark.asyncio
    async def test_failure_while_paused_fails_loop(self, engine, runner, git_repo):
        """WHEN the iteration running during a pause fails THEN the loop fails and only retry continues it."""
        runner.script(AgentRole.LOOP, Reply(error="agent crashed"), Reply(output=[PHRASE]))
        runner.hold(role=AgentRole.LOOP)
        state = await engine.start_loop(loop_config(git_repo, max_iterations=3))

        await engine.pause(state.id)
        runner.release_all()

        assert await engine.wait_for_completion(state.id, timeout=10) is False
        assert state.status == LoopStatus.FAILED
        assert state.current_iteration == 1
        with pytest.raises(InvalidTransition):
            await engine.resume(state.id)

        await engine.retry(state.id)

        assert await engine.wait_for_completion(state.id, timeout=10) is True
        assert [i.status for i in state.iterations] == [IterationStatus.FAILED, IterationStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_phrase_while_paused_completes_loop(self, engine, runner, git_repo):
        """WHEN the iteration running during a pause prints the phrase THEN the loop completes."""
        runner.script(AgentRole.LOOP, Reply(output=[PHRASE]))
        runner.hold(role=AgentRole.LOOP)
        state = await engine.start_loop(loop_config(git_repo, max_iterations=3))

        await engine.pause(state.id)
        runner.release_all()

        assert await engine.wait_for_completion(state.id, timeout=10) is True
        assert state.status == LoopStatus.COMPLETED
        assert state.current_iteration == 1

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, engine, git_repo):
        """WHEN a loop has finished THEN pausing it raises."""
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))
        await engine.wait_for_completion(state.id, timeout=10)

        with pytest.raises(InvalidTransition):
            await engine.pause(state.id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, engine, runner, git_repo):
        """WHEN a loop is running THEN resuming it raises."""
        runner.hold(role=AgentRole.LOOP)
        state = await engine.start_loop(loop_config(git_repo))

        with pytest.raises(InvalidTransition):
            await engine.resume(state.id)


class TestRetry:
    """Tests for retrying failed loops."""

    @pytest.mark.asyncio
    async def test_failure_then_retry(self, engine, runner, git_repo):
        """WHEN an iteration fails THEN retry appends a new iteration in the same worktree."""
        runner.script(AgentRole.LOOP, Reply(error="agent crashed"), Reply(output=[PHRASE]))
        state = await engine.start_loop(loop_config(git_repo))

        assert await engine.wait_for_completion(state.id, timeout=10) is False
        assert state.status == LoopStatus.FAILED
        assert state.last_iteration.error == "agent crashed"

        await engine.retry(state.id)

        assert await engine.wait_for_completion(state.id, timeout=10) is True
        assert [i.iteration_number for i in state.iterations] == [1, 2]
        assert {r.worktree_path for r in runner.requests} == {state.worktree.path}

    @pytest.mark.asyncio
    async def test_retry_with_spent_budget(self, engine, runner, git_repo):
        """WHEN the failed iteration was the last allowed THEN retry ends at max_iterations."""
        runner.script(AgentRole.LOOP, Reply(error="agent crashed"))
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))
        await engine.wait_for_completion(state.id, timeout=10)

        await engine.retry(state.id)

        assert state.status == LoopStatus.MAX_ITERATIONS
        assert len(runner.requests) == 1

    @pytest.mark.asyncio
    async def test_retry_requires_failure(self, engine, git_repo):
        """WHEN a loop did not fail THEN retry raises."""
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))
        await engine.wait_for_completion(state.id, timeout=10)

        with pytest.raises(InvalidTransition):
            await engine.retry(state.id)


class TestCancel:
    """Tests for cancelling loops."""

    @pytest.mark.asyncio
    async def test_cancel_stops_agent(self, engine, runner, git_repo):
        """WHEN a running loop is cancelled THEN its agent is stopped."""
        runner.hold(role=AgentRole.LOOP)
        state = await engine.start_loop(loop_config(git_repo))
        await wait_until(lambda: runner.requests)

        await engine.cancel(state.id)

        assert state.status == LoopStatus.CANCELLED
        assert runner.stopped == [runner.requests[0].run_id]
        await wait_until(lambda: state.last_iteration.status == IterationStatus.FAILED)
        assert state.current_iteration == 1

    @pytest.mark.asyncio
    async def test_unacknowledged_stop(self, engine, runner, git_repo):
        """WHEN the agent ignores the stop THEN the iteration is failed after the grace period."""
        runner.hold(role=AgentRole.LOOP)
        runner.ignore_stop = True
        state = await engine.start_loop(loop_config(git_repo))
        await wait_until(lambda: runner.requests)

        await engine.cancel(state.id)
        await wait_until(lambda: state.last_iteration.status == IterationStatus.FAILED)

        assert state.last_iteration.error == "Agent did not acknowledge stop"
        assert state.status == LoopStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_loop_raises(self, engine, git_repo):
        """WHEN a loop already finished THEN cancel raises."""
        state = await engine.start_loop(loop_config(git_repo, max_iterations=1))
        await engine.wait_for_completion(state.id, timeout=10)

        with pytest.raises(InvalidTransition):
            await engine.cancel(state.id)


class TestCleanup:
    """Tests for removing finished loops."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_worktree_branch_and_record(self, engine, runner, git_repo, db):
        """WHEN a finished loop is cleaned up THEN nothing of it remains."""
        runner.script(AgentRole.LOOP, Reply(files={"x.txt": "x"}, output=[PHRASE]))
        state = await engine.start_loop(loop_config(git_repo))
        await engine.wait_for_completion(state.id, timeout=10)

        await engine.cleanup(state.id)

        assert not Path(state.worktree.path).exists()
        assert not GitClient(cwd=str(git_repo)).branch_exists(state.worktree.branch)
        assert db.get_loop(state.id) is None
        with pytest.raises(NotFound):
            engine.get_loop(state.id)

    @pytest.mark.asyncio
    async def test_cleanup_requires_terminal(self, engine, runner, git_repo):
        """WHEN a loop is still running THEN cleanup raises."""
        runner.hold(role=AgentRole.LOOP)
        state = await engine.start_loop(loop_config(git_repo))

        with pytest.raises(InvalidTransition):
            await engine.cleanup(state.id)


class TestRecover:
    """Tests for restart recovery."""

    def make_state(self, loop_id, status, repo):
        state = RalphLoopState(
            id=loop_id,
            config=loop_config(repo),
            worktree=LoopWorktreeInfo(f"/wt/{loop_id}", f"ralph/repo-{loop_id}", str(repo), "main"),
            phrase="calm-owl",
            status=status,
            current_iteration=1,
        )
        state.iterations.append(
            RalphLoopIteration(1, f"{loop_id}-1", status=IterationStatus.RUNNING)
        )
        return state

    def test_running_loops_fail_paused_loops_survive(self, runner, db, bus, config, paths, git_repo):
        """WHEN the engine restarts THEN running loops fail and paused loops stay paused."""
        db.save_loop(self.make_state("ralph-run", LoopStatus.RUNNING, git_repo))
        db.save_loop(self.make_state("ralph-pause", LoopStatus.PAUSED, git_repo))
        engine = RalphLoopEngine(runner, db, bus, config, paths)

        assert engine.recover() == ["ralph-run"]

        running = db.get_loop("ralph-run")
        assert running.status == LoopStatus.FAILED
        assert running.last_iteration.status == IterationStatus.FAILED
        assert running.last_iteration.error == "Interrupted by a restart of the engine"
        assert db.get_loop("ralph-pause").status == LoopStatus.PAUSED
