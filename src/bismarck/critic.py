"""Critic review cycle.

Once a worker reports a task complete, its worktree goes through review:

    pending -> reviewing -> approved             (task accepted)
                         -> rejected -> (fix-up) -> reviewing ...

Each rejection spends one fix-up iteration. A rejection arriving when the
budget is already spent fails the task instead of starting another fix-up.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bismarck.constants import (
    CRITIC_CRITERIA_PATTERN,
    CRITIC_FEEDBACK_PATTERN,
    CRITIC_VERDICT_PATTERN,
    DEFAULT_CRITIC_CRITERIA,
)
from bismarck.errors import CriticIterationExhausted, WorktreeConflict
from bismarck.state.models import CriticStatus, PlanWorktree

logger = logging.getLogger(__name__)


class CriticOutcome(Enum):
    """What the scheduler should do after a verdict."""

    APPROVED = "approved"
    FIXUP = "fixup"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class CriticVerdict:
    """Parsed critic output."""

    approved: bool
    feedback: str = ""
    explicit: bool = True


@dataclass(frozen=True)
class ReviewDecision:
    outcome: CriticOutcome
    feedback: str = ""
    error: Optional[CriticIterationExhausted] = None


def parse_verdict(output: str) -> CriticVerdict:
    """Extract the verdict and feedback from a critic's output.

    The last CRITIC_VERDICT line wins. Output with no verdict is treated as
    an approval with explicit=False so callers can warn about it.
    """
    verdicts = re.findall(CRITIC_VERDICT_PATTERN, output, re.IGNORECASE)
    feedback_match = re.search(CRITIC_FEEDBACK_PATTERN, output, re.DOTALL)
    feedback = feedback_match.group(1).strip() if feedback_match else ""

    if not verdicts:
        return CriticVerdict(approved=True, feedback=feedback, explicit=False)
    return CriticVerdict(approved=verdicts[-1].upper() == "APPROVED", feedback=feedback)


def extract_critic_criteria(discussion_output: Optional[str]) -> str:
    """Pull the "## Critic Criteria" section out of a discussion summary.

    Falls back to generic criteria when the section is missing or empty.
    """
    if discussion_output:
        match = re.search(CRITIC_CRITERIA_PATTERN, discussion_output, re.DOTALL)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return DEFAULT_CRITIC_CRITERIA


class CriticReviewCycle:
    """Per-task review state machine over a PlanWorktree.

    Mutates the worktree's critic_status and critic_iteration; persisting the
    worktree is the caller's job.
    """

    def __init__(self, max_iterations: int):
        if max_iterations < 0:
            raise ValueError("max_iterations must be >= 0")
        self.max_iterations = max_iterations

    def is_last_iteration(self, worktree: PlanWorktree) -> bool:
        """True when a rejection of the coming review would fail the task."""
        return worktree.critic_iteration >= self.max_iterations

    def begin_review(self, worktree: PlanWorktree) -> None:
        """Move pending or rejected to reviewing.

        Raises:
            WorktreeConflict: If a review is already running or was approved
        """
        if worktree.critic_status not in (CriticStatus.PENDING, CriticStatus.REJECTED):
            raise WorktreeConflict(
                f"Cannot start review of {worktree.task_id} from {worktree.critic_status.value}",
                task_id=worktree.task_id,
            )
        worktree.critic_status = CriticStatus.REVIEWING
        logger.debug(
            f"Critic reviewing {worktree.task_id} "
            f"(iteration {worktree.critic_iteration}/{self.max_iterations})"
        )

    def record_verdict(self, worktree: PlanWorktree, verdict: CriticVerdict) -> ReviewDecision:
        """Apply a verdict to a worktree under review."""
        if worktree.critic_status != CriticStatus.REVIEWING:
            raise WorktreeConflict(
                f"No review in progress for {worktree.task_id}", task_id=worktree.task_id
            )

        if verdict.approved:
            worktree.critic_status = CriticStatus.APPROVED
            return ReviewDecision(CriticOutcome.APPROVED, verdict.feedback)

        worktree.critic_status = CriticStatus.REJECTED
        if worktree.critic_iteration >= self.max_iterations:
            error = CriticIterationExhausted(
                f"Critic rejected {worktree.task_id} after "
                f"{worktree.critic_iteration} fix-up iteration(s)",
                task_id=worktree.task_id,
                iterations=worktree.critic_iteration,
            )
            return ReviewDecision(CriticOutcome.EXHAUSTED, verdict.feedback, error)

        worktree.critic_iteration += 1
        return ReviewDecision(CriticOutcome.FIXUP, verdict.feedback)

    def auto_approve(self, worktree: PlanWorktree) -> ReviewDecision:
        """Approve without a verdict, used when the critic itself fails."""
        worktree.critic_status = CriticStatus.APPROVED
        return ReviewDecision(CriticOutcome.APPROVED)
