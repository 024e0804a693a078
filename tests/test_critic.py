"""Tests for critic verdict parsing and the review cycle."""

import pytest

from bismarck.constants import DEFAULT_CRITIC_CRITERIA
from bismarck.critic import (
    CriticOutcome,
    CriticReviewCycle,
    CriticVerdict,
    extract_critic_criteria,
    parse_verdict,
)
from bismarck.errors import CriticIterationExhausted, WorktreeConflict
from bismarck.state.models import CriticStatus, PlanWorktree


def make_worktree(**overrides) -> PlanWorktree:
    values = dict(
        id="wt-1",
        plan_id="plan-1",
        task_id="T1",
        path="/wt/T1",
        branch="bismarck/plan/t1",
        base_branch="main",
    )
    values.update(overrides)
    return PlanWorktree(**values)


class TestParseVerdict:
    """Tests for parse_verdict."""

    def test_approved(self):
        """WHEN the critic approves THEN the verdict is an explicit approval."""
        verdict = parse_verdict("All good.\nCRITIC_VERDICT: APPROVED\nCRITIC_FEEDBACK: none")

        assert verdict == CriticVerdict(approved=True, feedback="none")

    def test_rejected_with_multiline_feedback(self):
        """WHEN the critic rejects THEN feedback runs to the end of the output."""
        verdict = parse_verdict(
            "CRITIC_VERDICT: REJECTED\nCRITIC_FEEDBACK: Missing tests\n- add unit tests\n"
        )

        assert verdict.approved is False
        assert verdict.feedback == "Missing tests\n- add unit tests"

    def test_last_verdict_wins(self):
        """WHEN several verdict lines appear THEN the last one counts."""
        verdict = parse_verdict("CRITIC_VERDICT: REJECTED\n...\nCRITIC_VERDICT: APPROVED")

        assert verdict.approved is True

    def test_case_insensitive(self):
        """WHEN the verdict is lowercase THEN it is still recognised."""
        assert parse_verdict("critic_verdict: rejected").approved is False

    def test_missing_verdict_is_implicit_approval(self):
        """WHEN no verdict is present THEN it is an approval marked not explicit."""
        verdict = parse_verdict("I looked at the code and ran out of time.")

        assert verdict.approved is True
        assert verdict.explicit is False


class TestExtractCriticCriteria:
    """Tests for pulling criteria out of a discussion summary."""

    def test_section_extracted(self):
        """WHEN the discussion has a Critic Criteria section THEN its body is returned."""
        output = (
            "# Discussion\nWe talked.\n"
            "## Critic Criteria\n- All endpoints authenticated\n- Tests pass\n"
            "## Next Steps\n- ship it\n"
        )

        assert extract_critic_criteria(output) == "- All endpoints authenticated\n- Tests pass"

    def test_section_at_end_of_output(self):
        """WHEN the section is last THEN it runs to the end."""
        assert extract_critic_criteria("## Critic Criteria\n- Be fast") == "- Be fast"

    def test_fallback_to_defaults(self):
        """WHEN there is no section THEN the default criteria are returned."""
        assert extract_critic_criteria("nothing here") == DEFAULT_CRITIC_CRITERIA
        assert extract_critic_criteria(None) == DEFAULT_CRITIC_CRITERIA
        assert extract_critic_criteria("## Critic Criteria\n\n## Other\n") == DEFAULT_CRITIC_CRITERIA


class TestCriticReviewCycle:
    """Tests for the per-task review state machine."""

    def test_approval(self):
        """WHEN a review approves THEN the worktree is approved."""
        cycle = CriticReviewCycle(max_iterations=2)
        worktree = make_worktree()

        cycle.begin_review(worktree)
        decision = cycle.record_verdict(worktree, CriticVerdict(approved=True))

        assert decision.outcome == CriticOutcome.APPROVED
        assert worktree.critic_status == CriticStatus.APPROVED
        assert worktree.critic_iteration == 0

    def test_rejections_spend_budget_then_exhaust(self):
        """WHEN the critic keeps rejecting THEN fix-ups run until the budget is spent."""
        cycle = CriticReviewCycle(max_iterations=2)
        worktree = make_worktree()
        outcomes = []

        for _ in range(3):
            cycle.begin_review(worktree)
            decision = cycle.record_verdict(worktree, CriticVerdict(approved=False, feedback="add tests"))
            outcomes.append(decision.outcome)

        assert outcomes == [CriticOutcome.FIXUP, CriticOutcome.FIXUP, CriticOutcome.EXHAUSTED]
        assert worktree.critic_iteration == 2
        assert worktree.critic_status == CriticStatus.REJECTED
        assert isinstance(decision.error, CriticIterationExhausted)
        assert decision.error.iterations == 2
        assert decision.feedback == "add tests"

    def test_zero_budget_fails_on_first_rejection(self):
        """WHEN max_iterations is 0 THEN the first rejection exhausts the budget."""
        cycle = CriticReviewCycle(max_iterations=0)
        worktree = make_worktree()

        assert cycle.is_last_iteration(worktree)
        cycle.begin_review(worktree)
        decision = cycle.record_verdict(worktree, CriticVerdict(approved=False))

        assert decision.outcome == CriticOutcome.EXHAUSTED

    def test_is_last_iteration(self):
        """WHEN the iteration count reaches the budget THEN the next review is the last."""
        cycle = CriticReviewCycle(max_iterations=1)

        assert not cycle.is_last_iteration(make_worktree(critic_iteration=0))
        assert cycle.is_last_iteration(make_worktree(critic_iteration=1))

    def test_cannot_review_twice(self):
        """WHEN a review is already running THEN begin_review raises."""
        cycle = CriticReviewCycle(max_iterations=2)
        worktree = make_worktree(critic_status=CriticStatus.REVIEWING)

        with pytest.raises(WorktreeConflict):
            cycle.begin_review(worktree)

    def test_cannot_review_approved(self):
        """WHEN a worktree is approved THEN it cannot be reviewed again."""
        cycle = CriticReviewCycle(max_iterations=2)

        with pytest.raises(WorktreeConflict):
            cycle.begin_review(make_worktree(critic_status=CriticStatus.APPROVED))

    def test_verdict_without_review_raises(self):
        """WHEN no review is in progress THEN recording a verdict raises."""
        cycle = CriticReviewCycle(max_iterations=2)

        with pytest.raises(WorktreeConflict):
            cycle.record_verdict(make_worktree(), CriticVerdict(approved=True))

    def test_auto_approve(self):
        """WHEN the critic cannot run THEN the worktree is approved anyway."""
        cycle = CriticReviewCycle(max_iterations=2)
        worktree = make_worktree(critic_status=CriticStatus.REVIEWING)

        assert cycle.auto_approve(worktree).outcome == CriticOutcome.APPROVED
        assert worktree.critic_status == CriticStatus.APPROVED

    def test_negative_budget_rejected(self):
        """WHEN max_iterations is negative THEN construction fails."""
        with pytest.raises(ValueError):
            CriticReviewCycle(max_iterations=-1)
