"""Engine and loop configuration models."""

import json
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bismarck.errors import ConfigError

DEFAULT_MAX_PARALLEL_AGENTS = 4
DEFAULT_CRITIC_MAX_ITERATIONS = 2
DEFAULT_LOOP_MAX_ITERATIONS = 10


class EngineConfig(BaseModel):
    """Already-validated knobs the engine runs with."""

    max_parallel_agents: int = Field(
        default=DEFAULT_MAX_PARALLEL_AGENTS,
        ge=1,
        description="Maximum concurrent task assignments per plan",
    )
    critic_enabled: bool = Field(
        default=True, description="Gate task completion behind a critic review"
    )
    critic_max_iterations: int = Field(
        default=DEFAULT_CRITIC_MAX_ITERATIONS,
        ge=0,
        description="Fix-up rounds allowed before a rejection fails the task",
    )
    cancel_grace_period: float = Field(
        default=10.0,
        ge=0,
        description="Seconds to wait for workers to acknowledge a stop request",
    )
    agent_model: str = Field(default="sonnet", description="Model used for task agents")
    base_branch: Optional[str] = Field(
        default=None,
        description="Base ref for plan branches (detected from the repository when unset)",
    )
    remote: str = Field(default="origin", description="Remote used for pushes and PRs")
    push_remote: bool = Field(
        default=False,
        description="Push the integration branch after each feature_branch merge",
    )
    worktrees_dir: Optional[str] = Field(
        default=None, description="Directory that holds task worktrees"
    )
    event_buffer_size: int = Field(
        default=256, ge=1, description="Per-subscriber event buffer before drop-oldest"
    )
    agent_max_attempts: int = Field(
        default=3, ge=1, description="Attempts for transient agent start failures"
    )

    @classmethod
    def load(cls, path: Optional[Path]) -> "EngineConfig":
        """Load configuration from a JSON file.

        A missing file yields the defaults.

        Raises:
            ConfigError: If the file is not valid JSON or holds invalid values
        """
        if path is None or not Path(path).exists():
            return cls()
        try:
            data = json.loads(Path(path).read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}", original_error=e) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config in {path} must be a JSON object")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config in {path}: {e}", original_error=e) from e

    def merged(self, **overrides: Any) -> "EngineConfig":
        """Return a copy with every non-None override applied."""
        updates = {k: v for k, v in overrides.items() if v is not None}
        if not updates:
            return self
        try:
            return type(self).model_validate({**self.model_dump(), **updates})
        except ValidationError as e:
            raise ConfigError(f"Invalid config override: {e}", original_error=e) from e


class RalphLoopConfig(BaseModel):
    """Immutable configuration of an iterative loop."""

    model_config = ConfigDict(frozen=True)

    reference_agent_id: str = Field(description="Agent whose repository the loop works in")
    repo_path: str = Field(description="Path to the repository the loop branches from")
    prompt: str = Field(description="User prompt resent on every iteration")
    completion_phrase: str = Field(
        min_length=1, description="Exact, case-sensitive phrase that ends the loop"
    )
    max_iterations: int = Field(
        default=DEFAULT_LOOP_MAX_ITERATIONS, ge=1, description="Iteration budget"
    )
    model: str = Field(default="sonnet", description="Model used for every iteration")
    tab_id: Optional[str] = Field(default=None, description="UI context the loop belongs to")
