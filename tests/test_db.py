"""Tests for the SQLite state store."""

from datetime import datetime

import pytest

from bismarck.config import RalphLoopConfig
from bismarck.errors import PersistenceError
from bismarck.events import EngineEvent
from bismarck.state.db import BismarckDB
from bismarck.state.models import (
    AssignmentStatus,
    BranchStrategy,
    CommitInfo,
    CriticStatus,
    IterationStatus,
    LoopStatus,
    LoopWorktreeInfo,
    Plan,
    PlanStatus,
    PlanWorktree,
    RalphLoopIteration,
    RalphLoopState,
    TaskAssignment,
    WorktreeStatus,
)

from conftest import make_task


def make_plan(plan_id: str = "plan-abc") -> Plan:
    return Plan(
        id=plan_id,
        title="Auth rework",
        description="Rework login",
        repo_path="/repo",
        branch_strategy=BranchStrategy.RAISE_PRS,
        max_parallel_agents=2,
    )


def make_assignment(plan_id: str, task_id: str, status=AssignmentStatus.SENT) -> TaskAssignment:
    return TaskAssignment(
        id=f"as-{task_id}",
        plan_id=plan_id,
        task_id=task_id,
        agent_id="agent-1",
        worktree_path=f"/wt/{task_id}",
        status=status,
        assigned_at=datetime.now(),
    )


def make_worktree(plan_id: str, task_id: str) -> PlanWorktree:
    return PlanWorktree(
        id=f"wt-{task_id}",
        plan_id=plan_id,
        task_id=task_id,
        path=f"/wt/{task_id}",
        branch=f"bismarck/abc/{task_id}",
        base_branch="main",
    )


class TestPlans:
    """Tests for plan and task persistence."""

    def test_create_and_get_plan(self, db):
        """WHEN a plan is created THEN it reads back with its fields and tasks."""
        db.create_plan(make_plan(), [make_task("B", "A"), make_task("A")])

        plan = db.get_plan("plan-abc")
        assert plan.title == "Auth rework"
        assert plan.status == PlanStatus.DRAFT
        assert plan.branch_strategy == BranchStrategy.RAISE_PRS
        assert plan.max_parallel_agents == 2
        assert [t.id for t in db.get_tasks("plan-abc")] == ["B", "A"]
        assert db.get_tasks("plan-abc")[0].blocked_by == frozenset({"A"})

    def test_get_missing_plan(self, db):
        """WHEN a plan does not exist THEN get_plan returns None."""
        assert db.get_plan("plan-missing") is None

    def test_update_plan_persists_git_summary(self, db):
        """WHEN a plan is updated THEN status and git summary are stored."""
        plan = db.create_plan(make_plan(), [])
        plan.status = PlanStatus.DISCUSSING
        plan.git_summary.add_commits([CommitInfo("a" * 40, "Add x", "Test", "2024-01-01T00:00:00", "A")])
        db.update_plan(plan)

        stored = db.get_plan(plan.id)
        assert stored.status == PlanStatus.DISCUSSING
        assert stored.git_summary.commits[0].task_id == "A"

    def test_duplicate_task_rolls_back_plan(self, db):
        """WHEN a task insert fails THEN the plan is not created either."""
        with pytest.raises(PersistenceError):
            db.create_plan(make_plan(), [make_task("A"), make_task("A")])

        assert db.get_plan("plan-abc") is None

    def test_delete_plan_cascades(self, db):
        """WHEN a plan is deleted THEN its tasks, assignments, worktrees and events go too."""
        db.create_plan(make_plan(), [make_task("A")])
        db.save_assignment(make_assignment("plan-abc", "A"))
        db.save_worktree(make_worktree("plan-abc", "A"))
        db.create_event(EngineEvent(kind="plan_status", subject_id="plan-abc"))

        db.delete_plan("plan-abc")

        assert db.get_plan("plan-abc") is None
        assert db.get_tasks("plan-abc") == []
        assert db.get_assignments("plan-abc") == []
        assert db.get_worktrees("plan-abc") == []
        assert db.get_events("plan-abc") == []


class TestAssignmentsAndWorktrees:
    """Tests for assignment and worktree persistence."""

    def test_save_assignment_is_upsert(self, db):
        """WHEN an assignment is saved twice THEN the latest state wins."""
        db.create_plan(make_plan(), [make_task("A")])
        assignment = make_assignment("plan-abc", "A")
        db.save_assignment(assignment)
        assignment.status = AssignmentStatus.FAILED
        assignment.error = "Agent failed"
        db.save_assignment(assignment)

        stored = db.get_assignments("plan-abc")
        assert len(stored) == 1
        assert stored[0].status == AssignmentStatus.FAILED
        assert stored[0].error == "Agent failed"

    def test_worktrees_load_with_plan(self, db):
        """WHEN a plan is read THEN its worktrees are attached."""
        db.create_plan(make_plan(), [make_task("A")])
        worktree = make_worktree("plan-abc", "A")
        worktree.critic_status = CriticStatus.REJECTED
        worktree.critic_iteration = 1
        worktree.commits = ["abc123"]
        db.save_worktree(worktree)

        plan = db.get_plan("plan-abc")
        stored = plan.get_worktree("A")
        assert stored.status == WorktreeStatus.ACTIVE
        assert stored.critic_status == CriticStatus.REJECTED
        assert stored.critic_iteration == 1
        assert stored.commits == ["abc123"]


class TestTransactions:
    """Tests for the transaction context manager."""

    def test_rollback_on_error(self, db):
        """WHEN a transaction body raises THEN its writes are rolled back."""
        db.create_plan(make_plan(), [make_task("A")])

        with pytest.raises(RuntimeError):
            with db.transaction():
                db.save_assignment(make_assignment("plan-abc", "A"))
                raise RuntimeError("boom")

        assert db.get_assignments("plan-abc") == []

    def test_nested_transaction_rolls_back_inner_only(self, db):
        """WHEN a nested transaction fails THEN the outer one still commits."""
        db.create_plan(make_plan(), [make_task("A"), make_task("B")])

        with db.transaction():
            db.save_assignment(make_assignment("plan-abc", "A"))
            with pytest.raises(RuntimeError):
                with db.transaction():
                    db.save_assignment(make_assignment("plan-abc", "B"))
                    raise RuntimeError("inner")

        assert [a.task_id for a in db.get_assignments("plan-abc")] == ["A"]

    def test_write_after_close_raises_persistence_error(self, tmp_path):
        """WHEN the connection is gone THEN writes raise PersistenceError."""
        store = BismarckDB(str(tmp_path / "state" / "bismarck.db"))
        store.close()

        with pytest.raises(PersistenceError):
            store.create_event(EngineEvent(kind="plan_status", subject_id="plan-abc"))


class TestLoops:
    """Tests for loop persistence."""

    def test_loop_round_trip(self, db):
        """WHEN a loop is saved THEN config, iterations and commits read back."""
        state = RalphLoopState(
            id="ralph-1234",
            config=RalphLoopConfig(
                reference_agent_id="agent",
                repo_path="/repo",
                prompt="Fix tests",
                completion_phrase="DONE",
                max_iterations=3,
            ),
            worktree=LoopWorktreeInfo("/wt/ralph", "ralph/repo-plucky-otter", "/repo", "main"),
            phrase="plucky-otter",
            status=LoopStatus.RUNNING,
            current_iteration=1,
        )
        commit = CommitInfo("b" * 40, "Fix", "Test", "2024-01-01T00:00:00")
        state.iterations.append(
            RalphLoopIteration(
                iteration_number=1,
                workspace_id="ralph-1234-1",
                status=IterationStatus.COMPLETED,
                completion_phrase_found=True,
                commits=[commit],
            )
        )
        state.git_summary.add_commits([commit])
        db.save_loop(state)

        stored = db.get_loop("ralph-1234")
        assert stored.config.completion_phrase == "DONE"
        assert stored.status == LoopStatus.RUNNING
        assert stored.last_iteration.completion_phrase_found is True
        assert stored.last_iteration.commits[0].sha == "b" * 40
        assert [s.id for s in db.list_loops()] == ["ralph-1234"]

        db.delete_loop("ralph-1234")
        assert db.get_loop("ralph-1234") is None


class TestEvents:
    """Tests for the event log."""

    def test_events_are_sequenced_per_subject(self, db):
        """WHEN events are appended THEN they read back oldest first with sequence numbers."""
        first = db.create_event(EngineEvent(kind="plan_status", subject_id="plan-1", message="one"))
        db.create_event(EngineEvent(kind="plan_status", subject_id="plan-2", message="other"))
        second = db.create_event(
            EngineEvent(kind="task_status", subject_id="plan-1", message="two", details={"n": 2})
        )

        events = db.get_events("plan-1")
        assert [e["sequence"] for e in events] == [first, second]
        assert events[1]["details"] == {"n": 2}
        assert [e["message"] for e in db.get_events("plan-1", limit=1)] == ["two"]
