"""Prompts for task, fix-up, critic and loop agents."""

from typing import Optional

from bismarck.constants import CRITIC_FEEDBACK_MARKER, CRITIC_VERDICT_MARKER
from bismarck.state.models import Plan, Task


TASK_AGENT_SYSTEM_PROMPT = """You are a task agent working on one task of a larger plan.

You have an isolated git worktree on your own branch. Other agents work on
other tasks in parallel in their own worktrees; do not touch anything outside
your working directory.

## Committing Your Work

Before finishing:

1. Stage your changes: `git add -A`
2. Commit with a meaningful message: `git commit -m "description of changes"`

Only committed work is integrated. Uncommitted changes are lost when the
worktree is cleaned up."""


CRITIC_SYSTEM_PROMPT = f"""You are the critic. You review work another agent finished in
this worktree and decide whether it is acceptable.

Do not modify files. Inspect the diff against the base branch, run the
project's checks if there are any, and judge the work against the criteria.

End your response with exactly these two markers:

{CRITIC_VERDICT_MARKER} APPROVED | REJECTED
{CRITIC_FEEDBACK_MARKER}
<specific, actionable feedback; required when rejecting>"""


LAST_ITERATION_WARNING = """
=== LAST ITERATION WARNING ===
This is your LAST review iteration. A rejection now fails the task. Approve
the work unless there are CRITICAL bugs (crashes, security vulnerabilities,
data loss). Note minor issues in the feedback without rejecting.
"""


def build_task_prompt(plan: Plan, task: Task, branch: str) -> str:
    """Prompt for the first run of a task."""
    return f"""[BISMARCK TASK {task.id}]

Plan: {plan.title}
Branch: {branch}

=== PLAN CONTEXT ===
{plan.description or plan.title}

=== YOUR TASK ===
{task.subject}

{task.description or ""}

When the task is complete and committed, finish your response."""


def build_fixup_prompt(task: Task, feedback: str, iteration: int, max_iterations: int) -> str:
    """Prompt handing critic feedback back to the task agent."""
    return f"""[BISMARCK FIX-UP {task.id} - ROUND {iteration}/{max_iterations}]

A reviewer rejected your work on this task:

{task.subject}

=== REVIEWER FEEDBACK ===
{feedback or "No specific feedback was given. Re-check the task requirements."}

Address the feedback in this worktree and commit your changes."""


def build_critic_prompt(
    task: Task,
    base_branch: str,
    criteria: str,
    iteration: int,
    max_iterations: int,
    last_iteration: bool,
) -> str:
    """Prompt for the critic reviewing a task's worktree."""
    warning = LAST_ITERATION_WARNING if last_iteration else ""
    return f"""[BISMARCK CRITIC REVIEW {task.id} - ITERATION {iteration + 1}/{max_iterations + 1}]

=== TASK UNDER REVIEW ===
{task.subject}

{task.description or ""}

=== HOW TO INSPECT ===
git log --oneline {base_branch}..HEAD
git diff {base_branch}...HEAD

=== CRITERIA ===
{criteria}
{warning}
Finish with {CRITIC_VERDICT_MARKER} and {CRITIC_FEEDBACK_MARKER} as instructed."""


def build_loop_prompt(
    user_prompt: str,
    working_dir: str,
    branch: str,
    iteration: int,
    max_iterations: int,
    completion_phrase: str,
    previous_commits: Optional[int] = None,
) -> str:
    """Prompt for one loop iteration.

    The user prompt is resent unchanged every iteration; only the header and
    iteration context differ.
    """
    history = ""
    if iteration > 1:
        count = f" ({previous_commits} commits)" if previous_commits else ""
        history = f"""
IMPORTANT: Previous iterations have already worked on this task.
Run 'git log --oneline -10' to see what has been committed so far{count}.
Review the history to understand what is done and what still needs doing.
"""

    return f"""[RALPH LOOP - ITERATION {iteration}/{max_iterations}]

Working Directory: {working_dir}
Branch: {branch}

=== YOUR TASK ===
{user_prompt}

=== ITERATION CONTEXT ===
This is iteration {iteration} of a maximum {max_iterations} iterations.
{history}
=== COMPLETION PROTOCOL ===
When the task is FULLY COMPLETE and verified:
1. Output exactly: {completion_phrase}
2. This EXACT phrase signals that the loop should stop

- Only output the completion phrase when ALL work is done
- If there is more work to do, explain what remains and the next iteration will continue
- Commit after completing meaningful chunks of work"""
