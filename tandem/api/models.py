"""Conversation data model shared by the session, stream and compaction layers.

Messages are immutable once appended. A history only ever grows by
``append`` or is swapped wholesale (compaction, trimming, reset). The
``agent`` role maps to the provider's ``assistant`` role on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from tandem.errors import HistoryInvariantError

Role = Literal["user", "agent"]


# ---------------------------------------------------------------------------
# Content blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextBlock:
    text: str

    def to_api(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ReasoningBlock:
    """Extended-thinking output. Advisory only."""

    text: str
    signature: str = ""

    def to_api(self) -> dict[str, Any]:
        return {"type": "thinking", "thinking": self.text, "signature": self.signature}


@dataclass(frozen=True)
class ToolCallBlock:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> dict[str, Any]:
        return {"type": "tool_use", "id": self.id, "name": self.name, "input": self.arguments}


@dataclass(frozen=True)
class ToolResultBlock:
    call_id: str
    content: str
    is_error: bool = False

    def to_api(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool_use_id": self.call_id,
            "content": self.content,
            "is_error": self.is_error,
        }


ContentBlock = TextBlock | ReasoningBlock | ToolCallBlock | ToolResultBlock


def _block_from_api(block: dict[str, Any]) -> ContentBlock | None:
    kind = block.get("type")
    if kind == "text":
        return TextBlock(block.get("text", ""))
    if kind == "thinking":
        return ReasoningBlock(block.get("thinking", ""), block.get("signature", ""))
    if kind == "tool_use":
        return ToolCallBlock(block["id"], block["name"], block.get("input") or {})
    if kind == "tool_result":
        return ToolResultBlock(block["tool_use_id"], block.get("content", ""), block.get("is_error", False))
    return None


def blocks_from_api(content: list[dict[str, Any]]) -> tuple[ContentBlock, ...]:
    """Convert API-format content blocks into ContentBlocks.

    Unknown block types (server tool results, redacted thinking) are skipped.
    """
    blocks = (_block_from_api(b) for b in content)
    return tuple(b for b in blocks if b is not None)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Message:
    """One turn's worth of content blocks with a role."""

    role: Role
    blocks: tuple[ContentBlock, ...]

    @classmethod
    def user(cls, text: str) -> Message:
        return cls("user", (TextBlock(text),))

    @classmethod
    def agent(cls, text: str) -> Message:
        return cls("agent", (TextBlock(text),))

    @property
    def text(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))

    @property
    def reasoning(self) -> str:
        return "".join(b.text for b in self.blocks if isinstance(b, ReasoningBlock))

    @property
    def tool_calls(self) -> list[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]

    @property
    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.blocks if isinstance(b, ToolResultBlock)]

    @property
    def starts_round(self) -> bool:
        """A round begins at a user message that carries text."""
        return self.role == "user" and any(isinstance(b, TextBlock) for b in self.blocks)

    def to_record(self) -> dict[str, Any]:
        """Plain-dict form used by the transcript store."""
        return {"role": self.role, "content": [b.to_api() for b in self.blocks]}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Message:
        return cls(record["role"], blocks_from_api(record.get("content", [])))


# ---------------------------------------------------------------------------
# Boundary marker
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BoundaryMarker:
    """Records a compaction event. Never sent to the provider."""

    trigger: str  # "auto", "manual", "overflow"
    original_message_count: int
    original_token_estimate: int
    compacted_token_estimate: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_record(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger,
            "original_message_count": self.original_message_count,
            "original_token_estimate": self.original_token_estimate,
            "compacted_token_estimate": self.compacted_token_estimate,
            "timestamp": self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Conversation:
    """Ordered message history for one session."""

    def __init__(self, session_id: str, messages: list[Message] | None = None) -> None:
        self.session_id = session_id
        self._messages: list[Message] = list(messages or [])
        self.boundaries: list[BoundaryMarker] = []
        self.compaction_count = 0

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> None:
        if not self._messages and message.role != "user":
            raise HistoryInvariantError("Conversation must start with a user message")
        self._messages.append(message)

    def replace_history(self, messages: list[Message]) -> None:
        """Swap the whole history. Used by compaction, trimming, resume."""
        self._messages = list(messages)

    def clear(self) -> None:
        self._messages = []
        self.boundaries = []
        self.compaction_count = 0

    def unresolved_tool_calls(self) -> list[str]:
        """Ids of tool calls not answered before the next agent turn."""
        unresolved: list[str] = []
        pending: dict[str, int] = {}
        for msg in self._messages:
            if msg.role == "agent":
                unresolved.extend(pending)
                pending = {c.id: 0 for c in msg.tool_calls}
            else:
                for result in msg.tool_results:
                    if result.call_id in pending:
                        pending[result.call_id] += 1
                pending = {k: v for k, v in pending.items() if v == 0}
        unresolved.extend(pending)
        return unresolved

    def check_invariants(self) -> None:
        """Raise HistoryInvariantError if the history is structurally broken."""
        if self._messages and self._messages[0].role != "user":
            raise HistoryInvariantError(f"{self.session_id}: history does not start with a user message")
        seen: dict[str, int] = {}
        for msg in self._messages:
            for result in msg.tool_results:
                seen[result.call_id] = seen.get(result.call_id, 0) + 1
        duplicated = [k for k, v in seen.items() if v > 1]
        if duplicated:
            raise HistoryInvariantError(f"{self.session_id}: duplicate tool results for {duplicated}")
        unresolved = self.unresolved_tool_calls()
        if unresolved:
            raise HistoryInvariantError(f"{self.session_id}: unresolved tool calls {unresolved}")

    def to_wire(self) -> list[dict[str, Any]]:
        """Provider message list.

        Consecutive messages with the same role are merged so roles
        alternate. Reasoning is dropped except on the final agent message
        when that message made tool calls; the provider requires the signed
        thinking block there to continue a tool-use turn.
        """
        continuation = self._continuation_index()
        wire: list[dict[str, Any]] = []
        for i, msg in enumerate(self._messages):
            content = [
                b.to_api()
                for b in msg.blocks
                if not isinstance(b, ReasoningBlock) or (i == continuation and b.signature)
            ]
            if not content:
                continue
            role = "assistant" if msg.role == "agent" else "user"
            if wire and wire[-1]["role"] == role:
                wire[-1]["content"].extend(content)
            else:
                wire.append({"role": role, "content": content})
        return wire

    def _continuation_index(self) -> int:
        for i in range(len(self._messages) - 1, -1, -1):
            msg = self._messages[i]
            if msg.role == "agent":
                return i if msg.tool_calls else -1
        return -1


@dataclass
class ApiResponse:
    """Parsed non-streaming response from the Messages API."""

    content: list[dict[str, Any]]
    stop_reason: str
    usage: dict[str, int] | None = None

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.content if b.get("type") == "text")
