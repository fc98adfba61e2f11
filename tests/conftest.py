"""Shared test fixtures: env-independent settings and a scripted streaming provider.

No network and no database server: the provider replays canned event
streams, and transcript tests use a SQLite file under tmp_path.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest

from tandem.api.stream import StreamEvent
from tandem.config import Settings

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def make_settings(**overrides: Any) -> Settings:
    """Settings that ignore .env, never refresh models and never persist."""
    values: dict[str, Any] = {
        "ANTHROPIC_API_KEY": "test-key",
        "transcript_db_url": "",
        "refresh_models": False,
        "director_thinking_budget": 0,
        "watchdog_tick": 0.01,
        "provider_backoff_base": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(workspace_dir=str(tmp_path))


# ---------------------------------------------------------------------------
# Stream builders
# ---------------------------------------------------------------------------

BlockBuilder = Callable[[int], list[StreamEvent]]


def text(value: str, chunks: int = 1) -> BlockBuilder:
    """A text block whose deltas split ``value`` into ``chunks`` pieces."""

    def build(index: int) -> list[StreamEvent]:
        size = max(1, -(-len(value) // chunks))
        pieces = [value[i : i + size] for i in range(0, len(value), size)] or [""]
        return [
            StreamEvent("block_start", index, "text"),
            *(StreamEvent("block_delta", index, "text", piece) for piece in pieces),
            StreamEvent("block_stop", index),
        ]

    return build


def reasoning(value: str, signature: str = "sig-1") -> BlockBuilder:
    def build(index: int) -> list[StreamEvent]:
        return [
            StreamEvent("block_start", index, "reasoning"),
            StreamEvent("block_delta", index, "reasoning", value),
            StreamEvent("block_delta", index, "signature", signature),
            StreamEvent("block_stop", index),
        ]

    return build


def tool_call(call_id: str, name: str, arguments: dict[str, Any] | str) -> BlockBuilder:
    """A tool_use block; a str ``arguments`` is sent verbatim (for malformed JSON)."""
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)

    def build(index: int) -> list[StreamEvent]:
        half = len(raw) // 2
        return [
            StreamEvent("block_start", index, "tool_call", tool_id=call_id, tool_name=name),
            StreamEvent("block_delta", index, "tool_call", raw[:half]),
            StreamEvent("block_delta", index, "tool_call", raw[half:]),
            StreamEvent("block_stop", index),
        ]

    return build


def message_events(*blocks: BlockBuilder, stop_reason: str = "end_turn") -> list[StreamEvent]:
    events = [StreamEvent("start", usage={"input_tokens": 10})]
    for index, block in enumerate(blocks):
        events.extend(block(index))
    events.append(StreamEvent("message_delta", stop_reason=stop_reason, usage={"output_tokens": 5}))
    events.append(StreamEvent("end"))
    return events


def text_turn(value: str) -> list[StreamEvent]:
    return message_events(text(value))


def tool_turn(*calls: tuple[str, str, dict[str, Any]], preface: str = "") -> list[StreamEvent]:
    blocks: list[BlockBuilder] = [text(preface)] if preface else []
    blocks.extend(tool_call(*c) for c in calls)
    return message_events(*blocks, stop_reason="tool_use")


@dataclass
class Stall:
    """Scripted pause inside a stream (no events for ``seconds``)."""

    seconds: float


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """Replays one scripted turn per ``stream()`` call.

    A turn is a list of StreamEvents (optionally with Stall entries) or an
    exception instance, raised when the stream is first iterated.
    """

    def __init__(self, *turns: list[Any] | BaseException) -> None:
        self.turns: list[list[Any] | BaseException] = list(turns)
        self.calls: list[dict[str, Any]] = []

    def add(self, *turns: list[Any] | BaseException) -> None:
        self.turns.extend(turns)

    async def stream(self, **kwargs: Any):
        self.calls.append(kwargs)
        if not self.turns:
            raise AssertionError("Unexpected stream() call: script exhausted")
        turn = self.turns.pop(0)
        if isinstance(turn, BaseException):
            raise turn
        for item in turn:
            if isinstance(item, Stall):
                await asyncio.sleep(item.seconds)
            else:
                yield item

    def tool_names(self, call: int) -> list[str]:
        """Names of the tools offered in the ``call``-th request."""
        return [t["name"] for t in self.calls[call].get("tools") or []]


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()
