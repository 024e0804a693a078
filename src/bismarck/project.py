"""Path management for Bismarck state.

All engine state lives under ~/.bismarck (override with BISMARCK_HOME):
the SQLite database, the engine config file and the worktrees directory.
"""

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

BISMARCK_HOME_ENV = "BISMARCK_HOME"
DB_FILENAME = "bismarck.db"
CONFIG_FILENAME = "config.json"
WORKTREES_DIRNAME = "worktrees"
LOOP_WORKTREES_DIRNAME = "ralph"


def get_bismarck_home() -> Path:
    """Return the Bismarck home directory, honouring BISMARCK_HOME."""
    override = os.environ.get(BISMARCK_HOME_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".bismarck"


def find_git_root(start_path: Optional[Path] = None) -> Optional[Path]:
    """
    Find the git repository root.

    Args:
        start_path: Starting directory (defaults to cwd)

    Returns:
        Path to git root, or None if not in a git repo
    """
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            capture_output=True,
            text=True,
            check=True,
            cwd=start_path or Path.cwd()
        )
        return Path(result.stdout.strip())
    except (subprocess.CalledProcessError, FileNotFoundError, NotADirectoryError):
        return None


def slugify(text: str, max_length: int = 40) -> str:
    """Turn free text into a lowercase, branch-safe slug."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "item"


class BismarckPaths:
    """
    Encapsulates the on-disk layout used by the engine.

    Use this to get consistent paths throughout Bismarck.
    """

    def __init__(self, home: Optional[Path] = None, worktrees_dir: Optional[str] = None):
        self.home = Path(home) if home else get_bismarck_home()
        self._worktrees_dir = Path(worktrees_dir).expanduser() if worktrees_dir else None

    def ensure(self) -> "BismarckPaths":
        """Create the home and worktrees directories."""
        self.home.mkdir(parents=True, exist_ok=True)
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        return self

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database."""
        return self.home / DB_FILENAME

    @property
    def config_path(self) -> Path:
        """Path to the engine config file."""
        return self.home / CONFIG_FILENAME

    @property
    def worktrees_dir(self) -> Path:
        return self._worktrees_dir or self.home / WORKTREES_DIRNAME

    def plan_worktrees_dir(self, plan_id: str) -> Path:
        return self.worktrees_dir / plan_id

    def task_worktree_path(self, plan_id: str, task_id: str) -> Path:
        return self.plan_worktrees_dir(plan_id) / slugify(task_id, max_length=60)

    def integration_worktree_path(self, plan_id: str) -> Path:
        """Worktree where the plan's feature branch receives merges."""
        return self.plan_worktrees_dir(plan_id) / "_integration"

    def loop_worktree_path(self, repo_name: str, phrase: str) -> Path:
        return self.worktrees_dir / LOOP_WORKTREES_DIRNAME / f"{slugify(repo_name)}-{phrase}"
