"""Agent runner contract and the Claude Agent SDK implementation.

The engine treats agent execution as a black box: it hands a runner an
AgentRequest and consumes a stream of AgentEvents

    started -> output* -> (completed | failed)

Each request carries a unique run_id and the runner guarantees at most one
active invocation per run_id. stop() is cooperative: the stream still ends
with a terminal event once the agent has actually stopped.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from claude_agent_sdk import ClaudeAgentOptions, query
from claude_agent_sdk.types import AssistantMessage, ResultMessage, TextBlock, ToolUseBlock

from bismarck.errors import FatalError, MaxRetriesExhaustedError, RetryHandler

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]
CRITIC_ALLOWED_TOOLS = ["Read", "Bash", "Glob", "Grep"]


class AgentRole(Enum):
    """Why an agent was started."""

    TASK = "task"
    FIXUP = "fixup"
    CRITIC = "critic"
    LOOP = "loop"


class AgentEventType(Enum):
    STARTED = "started"
    OUTPUT = "output"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentRequest:
    """One agent invocation."""

    run_id: str
    task_id: str
    role: AgentRole
    worktree_path: str
    prompt: str
    model: str = "sonnet"
    system_prompt: Optional[str] = None
    allowed_tools: Optional[list[str]] = field(default=None, compare=False)


@dataclass(frozen=True)
class AgentEvent:
    """One item of an agent's event stream."""

    type: AgentEventType
    run_id: str
    text: str = ""
    error: Optional[str] = None
    cost_usd: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (AgentEventType.COMPLETED, AgentEventType.FAILED)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "text": self.text,
            "error": self.error,
            "cost_usd": self.cost_usd,
        }


class AgentRunner(Protocol):
    """What the engine needs from an agent runner."""

    def run(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        """Start an agent and stream its events. The last event is terminal."""
        ...

    async def stop(self, run_id: str) -> None:
        """Ask a running agent to stop. Returns without waiting for it."""
        ...


class ClaudeAgentRunner:
    """Runs agents in-process through the Claude Agent SDK.

    Each run streams SDK messages from a producer task into a queue that
    run() yields from. stop() cancels the producer, which then reports the
    run as failed.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        retry_handler: Optional[RetryHandler] = None,
    ):
        self.max_attempts = max_attempts
        self._retry_handler = retry_handler or RetryHandler()
        self._producers: dict[str, asyncio.Task] = {}

    async def run(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        if request.run_id in self._producers:
            raise RuntimeError(f"Run {request.run_id} is already active")

        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        producer = asyncio.create_task(self._produce(request, queue))
        self._producers[request.run_id] = producer
        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            self._producers.pop(request.run_id, None)
            if not producer.done():
                producer.cancel()

    async def stop(self, run_id: str) -> None:
        producer = self._producers.get(run_id)
        if producer is not None and not producer.done():
            logger.info(f"Stopping agent run {run_id}")
            producer.cancel()

    async def _produce(self, request: AgentRequest, queue: asyncio.Queue) -> None:
        queue.put_nowait(AgentEvent(AgentEventType.STARTED, request.run_id))
        state = {"produced": False, "cost": None, "error": None}

        async def attempt() -> None:
            try:
                await self._stream(request, queue, state)
            except Exception as e:
                # Once output reached the engine a retry would replay work
                if state["produced"] and not isinstance(e, FatalError):
                    raise FatalError(str(e), original_error=e) from e
                raise

        try:
            await self._retry_handler.execute_with_retry_async(attempt, self.max_attempts)
        except asyncio.CancelledError:
            queue.put_nowait(
                AgentEvent(AgentEventType.FAILED, request.run_id, error="Agent stopped")
            )
            return
        except MaxRetriesExhaustedError as e:
            queue.put_nowait(
                AgentEvent(AgentEventType.FAILED, request.run_id, error=str(e.last_error or e))
            )
            return
        except Exception as e:
            logger.warning(f"Agent run {request.run_id} failed: {e}")
            queue.put_nowait(AgentEvent(AgentEventType.FAILED, request.run_id, error=str(e)))
            return

        if state["error"]:
            queue.put_nowait(
                AgentEvent(
                    AgentEventType.FAILED,
                    request.run_id,
                    error=state["error"],
                    cost_usd=state["cost"],
                )
            )
        else:
            queue.put_nowait(
                AgentEvent(AgentEventType.COMPLETED, request.run_id, cost_usd=state["cost"])
            )

    async def _stream(self, request: AgentRequest, queue: asyncio.Queue, state: dict) -> None:
        """Drive one SDK session, pushing text blocks as output events."""
        options = ClaudeAgentOptions(
            allowed_tools=request.allowed_tools or DEFAULT_ALLOWED_TOOLS,
            model=request.model,
            cwd=request.worktree_path,
            permission_mode="bypassPermissions",
            system_prompt=request.system_prompt,
        )

        messages_gen = query(prompt=request.prompt, options=options)
        try:
            async for message in messages_gen:
                if isinstance(message, AssistantMessage):
                    for block in message.content:
                        if isinstance(block, TextBlock) and block.text:
                            state["produced"] = True
                            queue.put_nowait(
                                AgentEvent(AgentEventType.OUTPUT, request.run_id, text=block.text)
                            )
                        elif isinstance(block, ToolUseBlock):
                            logger.debug(f"[{request.run_id}] tool {block.name}")
                elif isinstance(message, ResultMessage):
                    state["cost"] = message.total_cost_usd
                    if message.is_error:
                        state["error"] = message.result or f"Agent finished with {message.subtype}"
        finally:
            # The SDK's generator cleanup can raise when closed from another
            # task; the session is over either way. A stop arriving here must
            # still propagate.
            try:
                await messages_gen.aclose()
            except (RuntimeError, GeneratorExit):
                pass
