"""Director/Actor round loop.

One Director turn produces a directive; a delegation runs one Actor turn
whose reply is relayed back to the Director as its next turn. The loop
ends when the Director signals completion, the round ceiling is reached,
corrections run out, the operator stops after an interrupt, or a provider
failure survives its retries.

Ceilings are enforced here; everything per-turn (streaming, tool
dispatch, inactivity) is the sessions' business.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from tandem.api.abort import INTERRUPT, AbortSignal
from tandem.api.compaction import ContextBudgeter, ConversationCompactor, trim_rounds
from tandem.api.control_tools import ControlChannel, ControlRequests
from tandem.api.model_registry import ModelRegistry
from tandem.api.models import Message
from tandem.api.session import (
    ACTOR_SYSTEM_PROMPT,
    ActorSession,
    AgentSession,
    DirectorSession,
    TurnOutcome,
    TurnStatus,
)
from tandem.api.stream import ChunkSink
from tandem.cognitive.directive import Directive, DirectiveKind, OperatorInput, parse_directive, parse_operator_input
from tandem.config import Settings
from tandem.errors import (
    CompactionFailed,
    DirectiveAmbiguous,
    InactivityTimeout,
    PermissionDenied,
    ProviderError,
    TandemError,
    ToolLoopExceeded,
)
from tandem.events import Event, EventBus
from tandem.storage.models import ACTOR_MESSAGE, DIRECTOR_MESSAGE, METADATA, SYSTEM_BOUNDARY
from tandem.storage.transcript import TRANSCRIPT_EVENT

logger = logging.getLogger(__name__)

CORRECTION_PROMPT = (
    "Please continue. You should work with the Worker agent using the worker tools "
    "(call_worker or tell_worker), or write a line starting with \"Tell worker:\". "
    'Remember to use these tools to delegate work to the Worker, or respond with "DONE" to finish.'
)

# A cut-off reply may end mid-instruction, so it is never delegated
TIMEOUT_PROMPT = (
    "Your previous reply timed out and was not acted on: {relay}\n\n"
    'Nothing was sent to the Worker. Repeat your complete instruction, or respond with "DONE" to finish.'
)

# Prompt -> operator instruction, or None when the operator has nothing more
InstructionSource = Callable[[str], Awaitable[str | None]]


class OrchestratorState(StrEnum):
    AWAITING_TASK = "awaiting_task"
    DIRECTOR_TURN = "director_turn"
    PARSING_DIRECTIVE = "parsing_directive"
    REQUESTING_CORRECTION = "requesting_correction"
    DELEGATING_TO_ACTOR = "delegating_to_actor"
    ACTOR_TURN = "actor_turn"
    RELAY_TO_DIRECTOR = "relay_to_director"
    PAUSED = "paused"
    FINISHED = "finished"


class RunStatus(StrEnum):
    FINISHED = "finished"
    CORRECTION_EXHAUSTED = "correction_exhausted"
    ROUND_LIMIT = "round_limit"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


@dataclass
class OrchestrationResult:
    status: RunStatus
    rounds: int
    director_turns: int
    detail: str = ""

    @property
    def exit_code(self) -> int:
        if self.status is RunStatus.FAILED:
            return 1
        if self.status is RunStatus.INTERRUPTED:
            return 130
        return 0


@dataclass
class _ActorReply:
    relay: str
    interrupted: bool = False


class _Interrupted(Exception):
    """Director turn cut short by the operator."""


class _DirectorTimedOut(Exception):
    """Director turn cut off by the inactivity watchdog; its partial text is not acted on."""

    def __init__(self, timeout: InactivityTimeout) -> None:
        super().__init__(str(timeout))
        self.timeout = timeout


class Orchestrator:
    """Drives the Director/Actor state machine for one task at a time.

    ``run()`` may be called again after it returns; both sessions keep
    their histories, so a follow-up task continues the same collaboration.
    """

    def __init__(
        self,
        director: DirectorSession,
        actor: ActorSession,
        settings: Settings,
        *,
        compactor: ConversationCompactor,
        channel: ControlChannel,
        budgeter: ContextBudgeter | None = None,
        registry: ModelRegistry | None = None,
        bus: EventBus | None = None,
        instruction_source: InstructionSource | None = None,
        session_id: str | None = None,
        director_sink: ChunkSink | None = None,
        actor_sink: ChunkSink | None = None,
        reasoning_sink: ChunkSink | None = None,
    ) -> None:
        self.director = director
        self.actor = actor
        self.settings = settings
        self.compactor = compactor
        self.channel = channel
        self.budgeter = budgeter or ContextBudgeter.from_settings(settings)
        self.registry = registry or ModelRegistry()
        self.bus = bus or EventBus()
        self.instruction_source = instruction_source
        self.session_id = session_id or uuid.uuid4().hex
        self._sinks: dict[str, ChunkSink | None] = {"director": director_sink, "actor": actor_sink}
        self._reasoning_sink = reasoning_sink

        self.state = OrchestratorState.AWAITING_TASK
        self.rounds = 0
        self.director_turns = 0
        # None = unlimited
        self.remaining_rounds: int | None = settings.max_rounds or None
        self._abort: AbortSignal | None = None
        self._pending_interrupt = False
        # Messages of each session already written to the transcript
        self._recorded = {"director": len(director.conversation), "actor": len(actor.conversation)}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, task: str) -> OrchestrationResult:
        """Run one task until it finishes, stalls, or fails."""
        operator = await self.apply_operator_input(task)
        if operator.compact:
            await self.compact_director()
        instruction = operator.instruction
        if not instruction:
            instruction = await self._ask_operator("Instruction: ")
            if instruction is None:
                return self._result(RunStatus.INTERRUPTED, "No instruction provided")

        await self._record(
            METADATA,
            "orchestrator",
            {"task": instruction, "director_model": self.director.model, "actor_model": self.actor.model},
        )
        try:
            result = await self._loop(instruction)
        except ProviderError as e:
            logger.error("Provider failure: %s", e)
            result = self._result(RunStatus.FAILED, f"Provider error: {e}")
        except TandemError as e:
            logger.exception("Orchestration failed")
            result = self._result(RunStatus.FAILED, str(e))

        self.state = OrchestratorState.FINISHED
        await self._emit(
            "finished",
            "orchestrator",
            status=result.status.value,
            rounds=result.rounds,
            director_turns=result.director_turns,
            detail=result.detail,
        )
        return result

    def interrupt(self) -> None:
        """Abort the in-flight turn (or the next one) and pause for operator input."""
        if self._abort is None:
            self._pending_interrupt = True
        elif self._abort.fire(INTERRUPT):
            logger.info("Interrupt requested during %s", self.state)

    async def apply_operator_input(self, text: str) -> OperatorInput:
        """Apply [r+N] / [r=N] round prefixes and return the parsed input."""
        operator = parse_operator_input(text)
        if operator.set_rounds is not None:
            self.remaining_rounds = operator.set_rounds
        if operator.add_rounds:
            if self.remaining_rounds is None:
                self.remaining_rounds = operator.add_rounds
            else:
                self.remaining_rounds += operator.add_rounds
        if operator.set_rounds is not None or operator.add_rounds:
            await self._status(f"Remaining rounds: {self.remaining_rounds}")
        return operator

    async def compact_director(self) -> bool:
        return await self._compact(self.director, "manual")

    # ------------------------------------------------------------------
    # Round loop
    # ------------------------------------------------------------------

    async def _loop(self, instruction: str) -> OrchestrationResult:
        director_input = instruction
        corrections = 0

        while True:
            try:
                directive = await self._director_step(director_input)
            except _Interrupted:
                instruction = await self._pause()
                if instruction is None:
                    return self._result(RunStatus.INTERRUPTED, "Stopped by operator")
                director_input = f"[Operator] {instruction}"
                continue
            except DirectiveAmbiguous as e:
                if corrections >= self.settings.max_correction_attempts:
                    detail = f"Director gave no usable directive after {corrections} corrections ({e})"
                    logger.warning("%s", detail)
                    await self._status(detail)
                    return self._result(RunStatus.CORRECTION_EXHAUSTED, detail)
                corrections += 1
                self.state = OrchestratorState.REQUESTING_CORRECTION
                await self._status(f"Requesting correction {corrections}/{self.settings.max_correction_attempts}: {e}")
                director_input = CORRECTION_PROMPT
                continue
            except _DirectorTimedOut as e:
                if corrections >= self.settings.max_correction_attempts:
                    detail = f"Director kept timing out ({e})"
                    await self._status(detail)
                    return self._result(RunStatus.CORRECTION_EXHAUSTED, detail)
                corrections += 1
                self.state = OrchestratorState.REQUESTING_CORRECTION
                await self._status(
                    f"Director timed out, nothing sent to the worker "
                    f"({corrections}/{self.settings.max_correction_attempts})"
                )
                director_input = TIMEOUT_PROMPT.format(relay=e.timeout.relay_text)
                continue

            corrections = 0
            if directive.kind is DirectiveKind.FINISHED:
                return self._result(RunStatus.FINISHED, "Director signalled completion")

            if self.remaining_rounds is not None and self.remaining_rounds <= 0:
                await self._status("No remaining rounds. Use [r+N] to add rounds or [r=N] to set them.")
                return self._result(RunStatus.ROUND_LIMIT, "Round limit reached")
            if self.remaining_rounds is not None:
                self.remaining_rounds -= 1

            reply = await self._actor_step(directive)
            self.state = OrchestratorState.RELAY_TO_DIRECTOR
            if reply.interrupted:
                instruction = await self._pause()
                if instruction is None:
                    return self._result(RunStatus.INTERRUPTED, "Stopped by operator")
                director_input = f"{reply.relay}\n\n[Operator] {instruction}"
            else:
                director_input = reply.relay

    async def _director_step(self, text: str) -> Directive:
        """One Director turn, classified.

        Raises _Interrupted on operator abort, _DirectorTimedOut when the
        watchdog cut the turn off, and DirectiveAmbiguous when the turn
        carries no usable directive.
        """
        self.state = OrchestratorState.DIRECTOR_TURN
        self.director_turns += 1
        try:
            outcome = await self._submit(self.director, text)
        except ToolLoopExceeded as e:
            await self._status(f"Director: {e}")
            await self._apply_control(self.channel.drain())
            await self._record_new_messages(self.director)
            raise DirectiveAmbiguous(str(e)) from e
        await self._record_new_messages(self.director)

        self.state = OrchestratorState.PARSING_DIRECTIVE
        requests = self.channel.drain()
        await self._apply_control(requests)

        if outcome.status is TurnStatus.INTERRUPTED:
            raise _Interrupted()
        if outcome.status is TurnStatus.TIMED_OUT:
            raise _DirectorTimedOut(await self._timed_out(self.director, outcome))

        directive = parse_directive(outcome.text, requests.worker)
        await self._emit(
            "directive",
            "director",
            kind=directive.kind.value,
            reason=directive.reason,
            instruction=directive.instruction,
            model=directive.model_hint,
        )
        if directive.kind is DirectiveKind.NEEDS_CORRECTION:
            raise DirectiveAmbiguous(directive.reason)
        return directive

    async def _actor_step(self, directive: Directive) -> _ActorReply:
        self.state = OrchestratorState.DELEGATING_TO_ACTOR
        self.rounds += 1
        await self._emit("round_started", "orchestrator", round=self.rounds, remaining=self.remaining_rounds)

        if directive.reset:
            self.actor.reset(directive.system_prompt or ACTOR_SYSTEM_PROMPT)
            self._recorded["actor"] = 0
        if directive.model_hint:
            self.actor.model = self.registry.resolve(directive.model_hint)

        self.state = OrchestratorState.ACTOR_TURN
        logger.info("Round %d: delegating to actor (%s)", self.rounds, self.actor.model)
        try:
            outcome = await self._submit(self.actor, directive.instruction)
        except ToolLoopExceeded as e:
            await self._record_new_messages(self.actor)
            logger.warning("Actor stopped: %s", e)
            await self._status(f"Worker stopped: {e}")
            partial = e.partial_text.strip() or "[No text response]"
            return _ActorReply(f"Worker says: {partial} [Stopped after {e.limit} tool iterations]")
        await self._record_new_messages(self.actor)

        if outcome.status is TurnStatus.INTERRUPTED:
            partial = outcome.text.strip() or "[No response received - interrupted]"
            return _ActorReply(f"Worker says: {partial} [Interrupted by operator]", interrupted=True)
        if outcome.status is TurnStatus.TIMED_OUT:
            timeout = await self._timed_out(self.actor, outcome)
            return _ActorReply(f"Worker says: {timeout.relay_text}")
        return _ActorReply(f"Worker says: {outcome.text.strip() or '[No text response]'}")

    # ------------------------------------------------------------------
    # Turn submission, compaction, control requests
    # ------------------------------------------------------------------

    async def _submit(self, session: AgentSession, text: str) -> TurnOutcome:
        """Submit a turn with pre-turn compaction and one overflow recovery.

        One abort signal covers the whole turn, compaction calls included.
        """
        self._abort = signal = AbortSignal()
        if self._pending_interrupt:
            self._pending_interrupt = False
            signal.fire(INTERRUPT)
        kwargs: dict[str, Any] = {
            "on_text": self._sinks.get(session.name),
            "on_reasoning": self._reasoning_sink,
            "abort": signal,
        }
        try:
            if self.budgeter.should_compact(session.conversation):
                await self._status(f"{session.name} context {self.budgeter.format_usage(session.conversation)}")
                await self._compact(session, "auto")
            try:
                outcome = await session.submit(text, **kwargs)
            except ProviderError as e:
                if not e.context_overflow:
                    raise
                await self._status(f"{session.name} context overflow, compacting and retrying")
                if await self._compact(session, "overflow"):
                    outcome = await session.continue_turn(**kwargs)
                elif signal.fired:
                    outcome = TurnOutcome(text="", status=TurnStatus.INTERRUPTED)
                else:
                    raise
        finally:
            self._abort = None

        for execution in outcome.failures:
            failure = execution.failure
            line = failure.status_line if failure else f"Tool '{execution.call.name}' reported an error"
            await self._emit("tool_error", session.name, tool=execution.call.name, status_line=line)
        return outcome

    async def _compact(self, session: AgentSession, trigger: str) -> bool:
        """Compact ``session``. Failures are reported and leave the history as it was."""
        if not len(session.conversation):
            await self._status(f"No {session.name} history to compact")
            return False
        await self._record_new_messages(session)
        # Outside a turn (manual compaction) the summary call gets its own signal
        owned = self._abort is None
        signal = AbortSignal() if owned else self._abort
        self._abort = signal
        try:
            result = await session.compact(self.compactor, trigger, abort=signal)
        except CompactionFailed as e:
            if owned and signal.fired:
                # the operator meant to stop, so the next turn pauses too
                self._pending_interrupt = True
            logger.warning("Compaction of %s failed: %s", session.name, e)
            await self._status(f"Failed to compact {session.name} conversation: {e}. Continuing with current history.")
            return False
        finally:
            if owned:
                self._abort = None

        self._recorded[session.name] = len(session.conversation)
        boundary = result.boundary
        await self._record(
            SYSTEM_BOUNDARY,
            session.name,
            {"source": session.name, "boundary": boundary.to_record(), "summary": result.summary_message.to_record()},
        )
        await self._emit(
            "compaction",
            session.name,
            trigger=trigger,
            messages=boundary.original_message_count,
            tokens_before=boundary.original_token_estimate,
            tokens_after=boundary.compacted_token_estimate,
        )
        await self._status(
            f"Compacted {session.name} conversation ({trigger}): "
            f"{boundary.original_token_estimate:,} -> {boundary.compacted_token_estimate:,} tokens"
        )
        return True

    async def _apply_control(self, requests: ControlRequests) -> None:
        if requests.empty:
            return
        for name in requests.grants:
            try:
                self.actor.permissions = self.actor.permissions.grant(name)
            except PermissionDenied as e:
                await self._status(e.status_line)
        for name in requests.revokes:
            self.actor.permissions = self.actor.permissions.revoke(name)
        if requests.grants or requests.revokes:
            logger.info("Actor tools now: %s", ", ".join(sorted(self.actor.permissions)))
        if requests.actor_timeout is not None:
            self.actor.inactivity_timeout = requests.actor_timeout
            await self._status(f"Worker inactivity timeout set to {requests.actor_timeout:g}s")
        if requests.keep_rounds is not None:
            trimmed = trim_rounds(self.actor.conversation.messages, requests.keep_rounds)
            if trimmed.trimmed:
                self.actor.restore(trimmed.messages)
                self._recorded["actor"] = len(self.actor.conversation)
            reason = f" ({requests.trim_reason})" if requests.trim_reason else ""
            await self._status(f"Worker context: {trimmed.detail}{reason}")

    async def _timed_out(self, session: AgentSession, outcome: TurnOutcome) -> InactivityTimeout:
        timeout = InactivityTimeout(session.inactivity_timeout, outcome.text)
        logger.warning("%s %s", session.name, timeout)
        await self._emit("timeout", session.name, seconds=session.inactivity_timeout, partial_chars=len(outcome.text))
        return timeout

    async def _pause(self) -> str | None:
        """Ask the operator for a new instruction. None ends the run."""
        self.state = OrchestratorState.PAUSED
        await self._status("Paused by operator")
        while True:
            raw = await self._ask_operator("New instruction (empty to stop): ")
            if raw is None:
                return None
            operator = await self.apply_operator_input(raw)
            if operator.compact:
                await self.compact_director()
            if operator.instruction:
                return operator.instruction
            if not (operator.compact or operator.add_rounds or operator.set_rounds is not None):
                return None

    async def _ask_operator(self, prompt: str) -> str | None:
        if self.instruction_source is None:
            return None
        text = await self.instruction_source(prompt)
        if text is None or not text.strip():
            return None
        return text

    # ------------------------------------------------------------------
    # Events and transcript
    # ------------------------------------------------------------------

    def _result(self, status: RunStatus, detail: str) -> OrchestrationResult:
        return OrchestrationResult(status, self.rounds, self.director_turns, detail)

    async def _emit(self, event_type: str, source: str, **data: Any) -> None:
        await self.bus.emit(Event(event_type, source, data, session_id=self.session_id))

    async def _status(self, message: str) -> None:
        logger.info("%s", message)
        await self._emit("status", "orchestrator", message=message)

    async def _record(self, record_type: str, source: str, payload: dict[str, Any]) -> None:
        await self._emit(TRANSCRIPT_EVENT, source, record_type=record_type, payload=payload)

    async def _record_new_messages(self, session: AgentSession) -> None:
        record_type = DIRECTOR_MESSAGE if session is self.director else ACTOR_MESSAGE
        messages: tuple[Message, ...] = session.conversation.messages
        for message in messages[self._recorded[session.name] :]:
            await self._record(record_type, session.name, message.to_record())
        self._recorded[session.name] = len(messages)
