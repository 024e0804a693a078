"""Tests for the Claude Agent SDK runner."""

import asyncio
from unittest.mock import MagicMock, patch

import pytest
from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock

from bismarck.agents import (
    DEFAULT_ALLOWED_TOOLS,
    AgentEventType,
    AgentRequest,
    AgentRole,
    ClaudeAgentRunner,
)
from bismarck.errors import RetryHandler


def text_message(*texts: str) -> MagicMock:
    blocks = []
    for text in texts:
        block = MagicMock(spec=TextBlock)
        block.text = text
        blocks.append(block)
    message = MagicMock(spec=AssistantMessage)
    message.content = blocks
    return message


def result_message(cost: float = 0.05, is_error: bool = False, result: str = "") -> MagicMock:
    message = MagicMock(spec=ResultMessage)
    message.total_cost_usd = cost
    message.is_error = is_error
    message.result = result
    message.subtype = "error_during_execution" if is_error else "success"
    return message


def make_request(run_id: str = "run-1", **overrides) -> AgentRequest:
    values = dict(
        run_id=run_id,
        task_id="A",
        role=AgentRole.TASK,
        worktree_path="/tmp/worktree",
        prompt="Do A",
    )
    values.update(overrides)
    return AgentRequest(**values)


def fake_query(*sessions):
    """Build a query() replacement. Each call plays the next session.

    A session is a list of messages; an exception instance in the list is
    raised at that point.
    """
    calls = []
    remaining = list(sessions)

    def query(prompt, options):
        calls.append((prompt, options))
        session = remaining.pop(0)

        async def messages():
            for item in session:
                if isinstance(item, BaseException):
                    raise item
                yield item

        return messages()

    query.calls = calls
    return query


class SlowClosingSession:
    """An SDK session whose close never finishes on its own."""

    def __init__(self, messages):
        self._messages = list(messages)
        self.closing = asyncio.Event()
        self._never = asyncio.Event()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)

    async def aclose(self):
        self.closing.set()
        await self._never.wait()


async def collect(runner, request):
    return [event async for event in runner.run(request)]


@pytest.fixture
def runner():
    return ClaudeAgentRunner(max_attempts=3, retry_handler=RetryHandler(base_delay=0.001, jitter=0))


class TestClaudeAgentRunner:
    """Tests for ClaudeAgentRunner event streams."""

    @pytest.mark.asyncio
    async def test_successful_run(self, runner):
        """WHEN the agent answers and finishes THEN started, output and completed are streamed."""
        query = fake_query([text_message("Working on it", "Done"), result_message(cost=0.25)])

        with patch("bismarck.agents.query", query):
            events = await collect(runner, make_request())

        assert [e.type for e in events] == [
            AgentEventType.STARTED,
            AgentEventType.OUTPUT,
            AgentEventType.OUTPUT,
            AgentEventType.COMPLETED,
        ]
        assert [e.text for e in events[1:3]] == ["Working on it", "Done"]
        assert events[-1].cost_usd == 0.25
        assert all(e.run_id == "run-1" for e in events)

    @pytest.mark.asyncio
    async def test_options_follow_request(self, runner):
        """WHEN a run starts THEN the SDK is pointed at the request's worktree and tools."""
        query = fake_query([result_message()])

        with patch("bismarck.agents.query", query):
            await collect(runner, make_request(allowed_tools=["Read"], model="opus"))

        prompt, options = query.calls[0]
        assert prompt == "Do A"
        assert options.cwd == "/tmp/worktree"
        assert options.allowed_tools == ["Read"]
        assert options.model == "opus"

    @pytest.mark.asyncio
    async def test_default_tools(self, runner):
        """WHEN a request names no tools THEN the default tool set is allowed."""
        query = fake_query([result_message()])

        with patch("bismarck.agents.query", query):
            await collect(runner, make_request())

        assert query.calls[0][1].allowed_tools == DEFAULT_ALLOWED_TOOLS

    @pytest.mark.asyncio
    async def test_error_result_fails_run(self, runner):
        """WHEN the SDK reports an error result THEN the run fails with that error."""
        query = fake_query([result_message(is_error=True, result="Tool crashed")])

        with patch("bismarck.agents.query", query):
            events = await collect(runner, make_request())

        assert events[-1].type == AgentEventType.FAILED
        assert events[-1].error == "Tool crashed"

    @pytest.mark.asyncio
    async def test_transient_error_before_output_is_retried(self, runner):
        """WHEN the session drops before any output THEN the run is retried."""
        query = fake_query(
            [ConnectionError("connection reset")],
            [text_message("hello"), result_message()],
        )

        with patch("bismarck.agents.query", query):
            events = await collect(runner, make_request())

        assert len(query.calls) == 2
        assert events[-1].type == AgentEventType.COMPLETED
        assert [e.text for e in events if e.type == AgentEventType.OUTPUT] == ["hello"]

    @pytest.mark.asyncio
    async def test_error_after_output_is_not_retried(self, runner):
        """WHEN the session drops after output was streamed THEN the run fails without a retry."""
        query = fake_query(
            [text_message("partial"), ConnectionError("connection reset")],
            [result_message()],
        )

        with patch("bismarck.agents.query", query):
            events = await collect(runner, make_request())

        assert len(query.calls) == 1
        assert events[-1].type == AgentEventType.FAILED
        assert "connection reset" in events[-1].error

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """WHEN every attempt fails THEN the last error is reported."""
        runner = ClaudeAgentRunner(max_attempts=2, retry_handler=RetryHandler(base_delay=0.001, jitter=0))
        query = fake_query([TimeoutError("slow")], [TimeoutError("still slow")])

        with patch("bismarck.agents.query", query):
            events = await collect(runner, make_request())

        assert len(query.calls) == 2
        assert events[-1].type == AgentEventType.FAILED
        assert events[-1].error == "still slow"

    @pytest.mark.asyncio
    async def test_stop_ends_run(self, runner):
        """WHEN a running agent is stopped THEN its stream ends with a failure."""
        never = asyncio.Event()

        def query(prompt, options):
            async def messages():
                yield text_message("started")
                await never.wait()
                yield result_message()

            return messages()

        with patch("bismarck.agents.query", query):
            stream = runner.run(make_request())
            assert (await stream.__anext__()).type == AgentEventType.STARTED
            assert (await stream.__anext__()).type == AgentEventType.OUTPUT

            await runner.stop("run-1")
            rest = [event async for event in stream]

        assert len(rest) == 1
        assert rest[0].type == AgentEventType.FAILED
        assert rest[0].error == "Agent stopped"

    @pytest.mark.asyncio
    async def test_stop_while_session_closes(self, runner):
        """WHEN stop arrives while the SDK session is closing THEN the run fails instead of completing."""
        session = SlowClosingSession([text_message("done"), result_message()])

        async def consume():
            return [event async for event in runner.run(make_request())]

        with patch("bismarck.agents.query", lambda prompt, options: session):
            consumer = asyncio.create_task(consume())
            await asyncio.wait_for(session.closing.wait(), timeout=5)

            await runner.stop("run-1")
            events = await asyncio.wait_for(consumer, timeout=5)

        assert events[-1].type == AgentEventType.FAILED
        assert events[-1].error == "Agent stopped"

    @pytest.mark.asyncio
    async def test_stop_unknown_run_is_ignored(self, runner):
        """WHEN stopping a run that is not active THEN nothing happens."""
        await runner.stop("run-unknown")

    @pytest.mark.asyncio
    async def test_duplicate_run_id_rejected(self, runner):
        """WHEN a run id is already active THEN a second run with it raises."""
        never = asyncio.Event()

        def query(prompt, options):
            async def messages():
                await never.wait()
                yield result_message()

            return messages()

        with patch("bismarck.agents.query", query):
            first = runner.run(make_request())
            await first.__anext__()

            with pytest.raises(RuntimeError, match="already active"):
                await runner.run(make_request()).__anext__()

            await runner.stop("run-1")
            await first.aclose()
