"""Shared fixtures for Bismarck tests.

FakeAgentRunner stands in for the Claude Agent SDK: tests script what each
agent prints and whether it succeeds, hold agents open until released, and
optionally make agents ignore stop requests or never report that they started.
"""

import asyncio
import subprocess
from collections import defaultdict, deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional

import pytest

from bismarck.agents import AgentEvent, AgentEventType, AgentRequest, AgentRole
from bismarck.config import EngineConfig
from bismarck.events import EventBus
from bismarck.project import BismarckPaths
from bismarck.state.db import BismarckDB
from bismarck.state.models import Task


APPROVE = "Looks good.\nCRITIC_VERDICT: APPROVED\nCRITIC_FEEDBACK: none"
REJECT = "CRITIC_VERDICT: REJECTED\nCRITIC_FEEDBACK: add tests"


@dataclass
class Reply:
    """What one fake agent run does."""

    output: list[str] = field(default_factory=lambda: ["working"])
    error: Optional[str] = None
    files: dict[str, str] = field(default_factory=dict)


class FakeAgentRunner:
    """Scripted AgentRunner.

    Replies are looked up by (task_id, role) first, then by role, and fall
    back to a plain success (or an approval for critics).
    """

    def __init__(self):
        self.requests: list[AgentRequest] = []
        self.stopped: list[str] = []
        self.ignore_stop = False
        self.silent_start: set[str] = set()
        self.active: set[str] = set()
        self.max_active = 0
        self._replies: dict[object, deque] = defaultdict(deque)
        self._held: set[str] = set()
        self._held_roles: set[AgentRole] = set()
        self._gates: dict[str, asyncio.Event] = {}
        self._stop_requested: set[str] = set()

    def script(self, role: AgentRole, *replies: Reply, task_id: Optional[str] = None) -> None:
        key = (task_id, role) if task_id else role
        self._replies[key].extend(replies)

    def hold(self, *task_ids: str, role: Optional[AgentRole] = None) -> None:
        """Keep runs for these tasks (or every run of a role) open until released."""
        self._held.update(task_ids)
        if role is not None:
            self._held_roles.add(role)

    def release(self, *task_ids: str) -> None:
        self._held.difference_update(task_ids)
        for run_id, gate in self._gates.items():
            if self._task_of(run_id) in task_ids:
                gate.set()

    def release_all(self) -> None:
        self._held.clear()
        self._held_roles.clear()
        for gate in self._gates.values():
            gate.set()

    def requests_for(self, task_id: str, role: Optional[AgentRole] = None) -> list[AgentRequest]:
        return [
            r for r in self.requests
            if r.task_id == task_id and (role is None or r.role == role)
        ]

    def _task_of(self, run_id: str) -> Optional[str]:
        for request in self.requests:
            if request.run_id == run_id:
                return request.task_id
        return None

    def _next_reply(self, request: AgentRequest) -> Reply:
        for key in ((request.task_id, request.role), request.role):
            if self._replies.get(key):
                return self._replies[key].popleft()
        if request.role == AgentRole.CRITIC:
            return Reply(output=[APPROVE])
        return Reply()

    async def run(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        self.requests.append(request)
        self.active.add(request.run_id)
        self.max_active = max(self.max_active, len(self.active))
        reply = self._next_reply(request)
        try:
            if request.task_id not in self.silent_start:
                yield AgentEvent(AgentEventType.STARTED, request.run_id)
            await asyncio.sleep(0)

            held = request.task_id in self._held or request.role in self._held_roles
            if held and request.run_id not in self._stop_requested:
                gate = self._gates[request.run_id] = asyncio.Event()
                await gate.wait()

            if request.run_id in self._stop_requested:
                terminal = AgentEvent(AgentEventType.FAILED, request.run_id, error="Agent stopped")
            else:
                for name, content in reply.files.items():
                    commit_file(Path(request.worktree_path), name, content)
                for text in reply.output:
                    yield AgentEvent(AgentEventType.OUTPUT, request.run_id, text=text)
                    await asyncio.sleep(0)
                if reply.error:
                    terminal = AgentEvent(AgentEventType.FAILED, request.run_id, error=reply.error)
                else:
                    terminal = AgentEvent(AgentEventType.COMPLETED, request.run_id, cost_usd=0.01)

            # The run counts as finished once its terminal event is handed out
            self.active.discard(request.run_id)
            yield terminal
        finally:
            self.active.discard(request.run_id)
            self._gates.pop(request.run_id, None)

    async def stop(self, run_id: str) -> None:
        self.stopped.append(run_id)
        if self.ignore_stop:
            return
        self._stop_requested.add(run_id)
        gate = self._gates.get(run_id)
        if gate is not None:
            gate.set()


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: Optional[str] = None) -> str:
    """Write a file, commit it and return the new HEAD sha."""
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    run_git(repo, "add", "-A")
    run_git(repo, "commit", "-m", message or f"Add {name}")
    return run_git(repo, "rev-parse", "HEAD")


def make_task(task_id: str, *blocked_by: str, subject: Optional[str] = None) -> Task:
    return Task(id=task_id, subject=subject or f"Do {task_id}", blocked_by=frozenset(blocked_by))


@pytest.fixture
def git_repo(tmp_path):
    """A git repository on main with one commit."""
    repo = tmp_path / "repo"
    repo.mkdir()
    run_git(repo, "init")
    run_git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    run_git(repo, "config", "user.email", "test@test.com")
    run_git(repo, "config", "user.name", "Test")
    commit_file(repo, "README.md", "# Test\n", "Initial commit")
    return repo


@pytest.fixture
def paths(tmp_path):
    return BismarckPaths(home=tmp_path / "home").ensure()


@pytest.fixture
def db():
    store = BismarckDB(":memory:")
    yield store
    store.close()


@pytest.fixture
def bus(db):
    return EventBus(store=db)


@pytest.fixture
def runner():
    return FakeAgentRunner()


@pytest.fixture
def config():
    return EngineConfig(cancel_grace_period=0.5)
