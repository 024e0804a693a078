"""Shared constants for agent output parsing and git naming.

Centralizes the magic strings the critic and loop prompts ask agents to emit,
so prompt text and parsers never drift apart.
"""

# Critic output markers
CRITIC_VERDICT_MARKER = "CRITIC_VERDICT:"
CRITIC_FEEDBACK_MARKER = "CRITIC_FEEDBACK:"

# Matches: CRITIC_VERDICT: [APPROVED | REJECTED]
# Case-insensitive, allows optional whitespace after colon
CRITIC_VERDICT_PATTERN = r"CRITIC_VERDICT:\s*(APPROVED|REJECTED)"

# Everything after the feedback marker up to the end of the output
CRITIC_FEEDBACK_PATTERN = r"CRITIC_FEEDBACK:\s*(.*)\Z"

# Section of a discussion output holding plan-specific review criteria
CRITIC_CRITERIA_PATTERN = r"## Critic Criteria\s*\n(.*?)(?=\n## |\n# |\Z)"

DEFAULT_CRITIC_CRITERIA = """- Code compiles without errors
- No obvious bugs or security issues
- Changes match the task requirements
- Code follows existing project patterns"""

# Branch naming
TASK_BRANCH_PREFIX = "bismarck"
FEATURE_BRANCH_PREFIX = "feature"
LOOP_BRANCH_PREFIX = "ralph"

# Plan activity messages
PLAN_CANCELLED_MESSAGE = "Plan cancelled"

# Word lists for memorable loop branch names, e.g. "plucky-otter"
LOOP_ADJECTIVES = (
    "fluffy", "happy", "brave", "swift", "clever", "gentle", "mighty", "calm",
    "wild", "eager", "jolly", "lucky", "plucky", "zesty", "snappy", "peppy",
)
LOOP_NOUNS = (
    "bunny", "panda", "koala", "otter", "falcon", "dolphin", "fox", "owl",
    "tiger", "eagle", "wolf", "bear", "hawk", "lynx", "raven", "seal",
)
