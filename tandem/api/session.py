"""Agent sessions: one conversation, one permission set, one turn loop.

A turn streams a completion, dispatches any tool calls, appends the
results and streams again until the agent answers without tool calls.
Every completion call runs under an inactivity watchdog; the caller's
abort signal cuts the turn short at the next suspension point and the
partial reply is returned (and kept in history).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from tandem.api.abort import TIMEOUT, Aborted, AbortSignal, InactivityWatchdog, run_abortable
from tandem.api.builtin_tools import ACTOR_FILE_TOOLS, DIRECTOR_FILE_TOOLS
from tandem.api.compaction import CompactionResult, ConversationCompactor
from tandem.api.control_tools import CONTROL_TOOLS
from tandem.api.models import Conversation, Message, ToolCallBlock, ToolResultBlock
from tandem.api.provider import call_with_retries
from tandem.api.stream import AssembledMessage, ChunkSink, StreamAssembler, StreamEvent
from tandem.api.tools import PermissionSet, ToolDispatcher, ToolExecution
from tandem.config import Settings
from tandem.errors import ToolLoopExceeded

logger = logging.getLogger(__name__)

DIRECTOR_SYSTEM_PROMPT = """\
You are the Director. You plan the work and direct a Worker agent that does \
the implementation. Your role is to:
1. Read and understand the task (you have file reading and git tools)
2. Plan and break the task into concrete steps
3. Instruct the Worker to carry out each step
4. Review the Worker's replies and decide what comes next

To instruct the Worker, call `call_worker` (fresh Worker context) or \
`tell_worker` (continue the Worker's current conversation). You may also \
write a line of the form:
Tell worker: <instruction>

You can choose the Worker's model with "use opus", "use sonnet" or "use haiku" \
(or "model: <name>").

When the whole task is complete and verified, reply with DONE on its own line \
as the last line of your message."""

ACTOR_SYSTEM_PROMPT = (
    "You are a helpful AI assistant that follows instructions to implement tasks. "
    "You have access to tools for file operations and command execution. "
    "Do the work, then reply with a short report of what you did and anything left unresolved."
)


class TurnStatus(StrEnum):
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"
    INTERRUPTED = "interrupted"


@dataclass
class TurnOutcome:
    """Result of one submitted turn."""

    text: str
    status: TurnStatus = TurnStatus.COMPLETE
    reasoning: str = ""
    tool_executions: list[ToolExecution] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    iterations: int = 0

    @property
    def aborted(self) -> bool:
        return self.status is not TurnStatus.COMPLETE

    @property
    def failures(self) -> list[ToolExecution]:
        return [e for e in self.tool_executions if e.is_error]


class StreamingProvider(Protocol):
    def stream(self, **kwargs: Any) -> AsyncIterator[StreamEvent]: ...


class AgentSession:
    """Owns one conversation and runs turns against the provider."""

    def __init__(
        self,
        name: str,
        provider: StreamingProvider,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        model: str,
        system_prompt: str,
        permissions: PermissionSet,
        inactivity_timeout: float,
        max_tool_iterations: int,
        thinking_budget: int = 0,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.name = name
        self.conversation = Conversation(name)
        self.model = model
        self.system_prompt = system_prompt
        self.permissions = permissions
        self.inactivity_timeout = inactivity_timeout
        self.max_tool_iterations = max_tool_iterations
        self.thinking_budget = thinking_budget
        self._provider = provider
        self._dispatcher = dispatcher
        self._settings = settings
        self._sleep = sleep
        self._compaction_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self, system_prompt: str | None = None) -> None:
        """Discard the history (and optionally swap the system prompt)."""
        self.conversation.clear()
        if system_prompt:
            self.system_prompt = system_prompt
        logger.info("%s session reset", self.name)

    def restore(self, messages: list[Message]) -> None:
        self.conversation.replace_history(messages)

    async def compact(
        self,
        compactor: ConversationCompactor,
        trigger: str = "auto",
        abort: AbortSignal | None = None,
    ) -> CompactionResult:
        """Summarize and replace the history. Raises CompactionFailed, history untouched."""
        async with self._compaction_lock:
            result = await compactor.compact(self.conversation, trigger, abort=abort)
            compactor.apply(self.conversation, result)
            return result

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def submit(
        self,
        text: str,
        *,
        model: str | None = None,
        on_text: ChunkSink | None = None,
        on_reasoning: ChunkSink | None = None,
        abort: AbortSignal | None = None,
    ) -> TurnOutcome:
        """Append a user turn and run it to completion (or abort)."""
        self.conversation.append(Message.user(text))
        return await self._run_turn(model, on_text, on_reasoning, abort)

    async def continue_turn(
        self,
        *,
        model: str | None = None,
        on_text: ChunkSink | None = None,
        on_reasoning: ChunkSink | None = None,
        abort: AbortSignal | None = None,
    ) -> TurnOutcome:
        """Re-run the turn loop on the current history without a new user message.

        Used after an emergency compaction interrupted a turn.
        """
        return await self._run_turn(model, on_text, on_reasoning, abort)

    async def _run_turn(
        self,
        model: str | None,
        on_text: ChunkSink | None,
        on_reasoning: ChunkSink | None,
        abort: AbortSignal | None,
    ) -> TurnOutcome:
        # Snapshot: grants/revocations apply from the next turn
        permissions = self.permissions
        model = model or self.model
        tools = self._dispatcher.tool_definitions(permissions)
        signal = abort or AbortSignal()

        outcome = TurnOutcome(text="")
        streamed_text: list[str] = []
        reasoning: list[str] = []

        while True:
            assembled = await self._stream(model, tools, on_text, on_reasoning, signal)
            message = assembled.message
            if message.blocks:
                self.conversation.append(message)
            if message.text:
                streamed_text.append(message.text)
            if message.reasoning:
                reasoning.append(message.reasoning)
            _add_usage(outcome.usage, assembled.usage)
            outcome.reasoning = "".join(reasoning)

            if assembled.aborted:
                self._resolve_unexecuted(message.tool_calls, f"Aborted ({assembled.abort_reason}) before execution")
                return self._aborted(outcome, streamed_text, assembled.abort_reason)

            calls = message.tool_calls
            if not calls:
                outcome.text = message.text
                return outcome

            if outcome.iterations >= self.max_tool_iterations:
                self._resolve_unexecuted(calls, "Tool loop limit reached; call not executed")
                logger.warning("%s turn exceeded %d tool iterations", self.name, self.max_tool_iterations)
                raise ToolLoopExceeded(self.max_tool_iterations, "\n\n".join(streamed_text))

            outcome.iterations += 1
            results: list[ToolResultBlock] = []
            for i, call in enumerate(calls):
                try:
                    execution = await run_abortable(self._dispatcher.execute(permissions, call), signal)
                except Aborted as e:
                    results.extend(
                        ToolResultBlock(c.id, f"Aborted ({e.reason}) before completion", True) for c in calls[i:]
                    )
                    self.conversation.append(Message("user", tuple(results)))
                    self.conversation.check_invariants()
                    return self._aborted(outcome, streamed_text, e.reason)
                results.append(execution.result)
                outcome.tool_executions.append(execution)

            self.conversation.append(Message("user", tuple(results)))
            self.conversation.check_invariants()

    async def _stream(
        self,
        model: str,
        tools: list[dict[str, Any]],
        on_text: ChunkSink | None,
        on_reasoning: ChunkSink | None,
        signal: AbortSignal,
    ) -> AssembledMessage:
        messages = self.conversation.to_wire()

        async def attempt() -> AssembledMessage:
            async with InactivityWatchdog(
                signal, self.inactivity_timeout, tick=self._settings.watchdog_tick
            ) as watchdog:
                assembler = StreamAssembler(on_text, on_reasoning, on_activity=watchdog.touch)
                events = self._provider.stream(
                    model=model,
                    system_prompt=self.system_prompt,
                    messages=messages,
                    tools=tools or None,
                    thinking_budget=self.thinking_budget,
                )
                return await assembler.consume(events, signal)

        try:
            return await call_with_retries(
                attempt,
                max_retries=self._settings.provider_max_retries,
                backoff_base=self._settings.provider_backoff_base,
                backoff_max=self._settings.provider_backoff_max,
                sleep=self._sleep,
                abort=signal,
            )
        except Aborted as e:
            # Fired while waiting to retry: nothing was received
            return AssembledMessage(Message("agent", ()), aborted=True, abort_reason=e.reason)

    def _resolve_unexecuted(self, calls: list[ToolCallBlock], reason: str) -> None:
        if not calls:
            return
        self.conversation.append(Message("user", tuple(ToolResultBlock(c.id, reason, True) for c in calls)))
        self.conversation.check_invariants()

    def _aborted(self, outcome: TurnOutcome, streamed_text: list[str], reason: str | None) -> TurnOutcome:
        outcome.text = "\n\n".join(streamed_text)
        outcome.status = TurnStatus.TIMED_OUT if reason == TIMEOUT else TurnStatus.INTERRUPTED
        logger.info("%s turn %s (%d chars of partial text)", self.name, outcome.status, len(outcome.text))
        return outcome


def _add_usage(total: dict[str, int], usage: dict[str, int]) -> None:
    for key, value in usage.items():
        if isinstance(value, int):
            total[key] = total.get(key, 0) + value


# ---------------------------------------------------------------------------
# Role sessions
# ---------------------------------------------------------------------------


class DirectorSession(AgentSession):
    """Planner: reasoning enabled, file/git tools plus the control tools."""

    def __init__(
        self,
        provider: StreamingProvider,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        model: str,
        system_prompt: str = DIRECTOR_SYSTEM_PROMPT,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            "director",
            provider,
            dispatcher,
            settings,
            model=model,
            system_prompt=system_prompt,
            permissions=PermissionSet.of(DIRECTOR_FILE_TOOLS + CONTROL_TOOLS),
            inactivity_timeout=settings.director_inactivity_timeout,
            max_tool_iterations=settings.director_max_tool_iterations,
            thinking_budget=settings.director_thinking_budget,
            **kwargs,
        )


class ActorSession(AgentSession):
    """Executor: no reasoning, workspace tools, git permanently forbidden."""

    FORBIDDEN = ("git_command",) + CONTROL_TOOLS

    def __init__(
        self,
        provider: StreamingProvider,
        dispatcher: ToolDispatcher,
        settings: Settings,
        *,
        model: str,
        system_prompt: str = ACTOR_SYSTEM_PROMPT,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            "actor",
            provider,
            dispatcher,
            settings,
            model=model,
            system_prompt=system_prompt,
            permissions=PermissionSet.of(ACTOR_FILE_TOOLS + ("web_search",), forbidden=self.FORBIDDEN),
            inactivity_timeout=settings.actor_inactivity_timeout,
            max_tool_iterations=settings.actor_max_tool_iterations,
            **kwargs,
        )
