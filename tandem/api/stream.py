"""Streaming response assembly.

Turns the ordered SSE events of one Messages API call into a single
structured agent Message, pushing text and reasoning chunks to
caller-supplied sinks as they arrive.

Tool-call argument fragments are buffered as raw strings per block index
and only JSON-parsed when the block closes; a malformed buffer becomes
``{}`` instead of failing the turn.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from tandem.api.abort import Aborted, AbortSignal, run_abortable
from tandem.api.models import (
    ContentBlock,
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
)
from tandem.errors import ProviderError

logger = logging.getLogger(__name__)

ChunkSink = Callable[[str], None]

# In-stream error types worth retrying
_RETRYABLE_STREAM_ERRORS = frozenset({"overloaded_error", "api_error", "rate_limit_error"})


@dataclass
class StreamEvent:
    """A single normalized event from the streaming API response."""

    type: str  # start, block_start, block_delta, block_stop, message_delta, end, error
    index: int = 0
    kind: str = ""  # text, reasoning, signature, tool_call, other
    text: str = ""
    tool_id: str = ""
    tool_name: str = ""
    stop_reason: str = ""
    error_type: str = ""
    usage: dict[str, int] = field(default_factory=dict)


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict into a StreamEvent.

    Ping keepalives and unknown event types return None. stop_reason
    arrives in message_delta, not message_start.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
            error_type=error.get("type", "unknown"),
        )

    if event_type == "message_start":
        return StreamEvent(type="start", usage=dict(data.get("message", {}).get("usage") or {}))

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        block_type = block.get("type")
        if block_type == "tool_use":
            return StreamEvent(
                type="block_start",
                index=index,
                kind="tool_call",
                tool_id=block.get("id", ""),
                tool_name=block.get("name", ""),
            )
        if block_type == "thinking":
            return StreamEvent(type="block_start", index=index, kind="reasoning", text=block.get("thinking", ""))
        if block_type == "text":
            return StreamEvent(type="block_start", index=index, kind="text", text=block.get("text", ""))
        return StreamEvent(type="block_start", index=index, kind="other")

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return StreamEvent(type="block_delta", index=index, kind="text", text=delta.get("text", ""))
        if delta_type == "thinking_delta":
            return StreamEvent(type="block_delta", index=index, kind="reasoning", text=delta.get("thinking", ""))
        if delta_type == "signature_delta":
            return StreamEvent(type="block_delta", index=index, kind="signature", text=delta.get("signature", ""))
        if delta_type == "input_json_delta":
            return StreamEvent(type="block_delta", index=index, kind="tool_call", text=delta.get("partial_json", ""))
        return None

    if event_type == "content_block_stop":
        return StreamEvent(type="block_stop", index=data.get("index", 0))

    if event_type == "message_delta":
        return StreamEvent(
            type="message_delta",
            stop_reason=data.get("delta", {}).get("stop_reason") or "",
            usage=dict(data.get("usage") or {}),
        )

    if event_type == "message_stop":
        return StreamEvent(type="end")

    return None


def stream_error(event: StreamEvent) -> ProviderError:
    """ProviderError for an in-stream error event."""
    return ProviderError(
        f"Stream error: {event.text}",
        error_type=event.error_type,
        retryable=event.error_type in _RETRYABLE_STREAM_ERRORS,
        context_overflow="prompt is too long" in event.text.lower(),
    )


@dataclass
class AssembledMessage:
    """Result of consuming one stream, complete or partial."""

    message: Message
    stop_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: str | None = None

    @property
    def text(self) -> str:
        return self.message.text

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return self.message.tool_calls


@dataclass
class _BlockState:
    kind: str
    parts: list[str] = field(default_factory=list)
    signature_parts: list[str] = field(default_factory=list)
    tool_id: str = ""
    tool_name: str = ""
    closed: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)


class StreamAssembler:
    """Reconstructs one agent message from a stream of StreamEvents.

    ``feed`` is a pure state transition per event; ``consume`` drives it
    over an async iterator, racing the optional abort signal. On abort the
    partial message is returned: text and reasoning received so far, plus
    only those tool calls whose block had already closed.
    """

    def __init__(
        self,
        on_text: ChunkSink | None = None,
        on_reasoning: ChunkSink | None = None,
        on_activity: Callable[[], None] | None = None,
    ) -> None:
        self._on_text = on_text
        self._on_reasoning = on_reasoning
        self._on_activity = on_activity
        self._blocks: dict[int, _BlockState] = {}
        self._stop_reason = ""
        self._usage: dict[str, int] = {}
        self.ended = False

    def feed(self, event: StreamEvent) -> None:
        if self._on_activity:
            self._on_activity()

        if event.type == "error":
            raise stream_error(event)

        if event.type in ("start", "message_delta"):
            self._usage.update(event.usage)
            if event.stop_reason:
                self._stop_reason = event.stop_reason

        elif event.type == "block_start":
            self._blocks[event.index] = _BlockState(
                kind=event.kind, tool_id=event.tool_id, tool_name=event.tool_name
            )
            if event.text:
                self._append(event.index, event.kind, event.text)

        elif event.type == "block_delta":
            self._append(event.index, event.kind, event.text)

        elif event.type == "block_stop":
            state = self._blocks.get(event.index)
            if state is None or state.closed:
                return
            state.closed = True
            if state.kind == "tool_call":
                state.arguments = self._parse_arguments(state)

        elif event.type == "end":
            self.ended = True

    def _append(self, index: int, kind: str, text: str) -> None:
        state = self._blocks.get(index)
        if state is None:
            # Delta without a start event; infer the block kind
            state = self._blocks[index] = _BlockState(kind="reasoning" if kind == "signature" else kind)
        if kind == "signature":
            state.signature_parts.append(text)
            return
        state.parts.append(text)
        if kind == "text" and self._on_text:
            self._on_text(text)
        elif kind == "reasoning" and self._on_reasoning:
            self._on_reasoning(text)

    @staticmethod
    def _parse_arguments(state: _BlockState) -> dict[str, Any]:
        raw = "".join(state.parts)
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed arguments for tool call %s (%s), using {}", state.tool_name, state.tool_id)
            return {}
        if not isinstance(parsed, dict):
            logger.warning("Non-object arguments for tool call %s, using {}", state.tool_name)
            return {}
        return parsed

    def result(self, aborted: bool = False, abort_reason: str | None = None) -> AssembledMessage:
        blocks: list[ContentBlock] = []
        for index in sorted(self._blocks):
            state = self._blocks[index]
            if state.kind == "text":
                text = "".join(state.parts)
                if text:
                    blocks.append(TextBlock(text))
            elif state.kind == "reasoning":
                text = "".join(state.parts)
                if text or state.signature_parts:
                    blocks.append(ReasoningBlock(text, "".join(state.signature_parts)))
            elif state.kind == "tool_call" and state.closed:
                blocks.append(ToolCallBlock(state.tool_id, state.tool_name, state.arguments))
        return AssembledMessage(
            message=Message("agent", tuple(blocks)),
            stop_reason=self._stop_reason,
            usage=dict(self._usage),
            aborted=aborted,
            abort_reason=abort_reason,
        )

    async def consume(
        self,
        events: AsyncIterator[StreamEvent],
        abort: AbortSignal | None = None,
    ) -> AssembledMessage:
        """Feed every event from ``events``; return the (possibly partial) message."""
        try:
            await run_abortable(self._drain(events), abort)
        except Aborted as e:
            logger.info("Stream aborted (%s) after %d blocks", e.reason, len(self._blocks))
            return self.result(aborted=True, abort_reason=e.reason)
        return self.result()

    async def _drain(self, events: AsyncIterator[StreamEvent]) -> None:
        try:
            async for event in events:
                self.feed(event)
                if self.ended:
                    break
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
