"""Context budgeting and conversation compaction.

Two mechanisms keep a session's history inside the context window:
  - Summarization: one extra completion call condenses the whole history
    into a single synthetic user turn, recorded with a BoundaryMarker.
  - Round trimming: drop whole leading rounds, keeping the last K.

Both are all-or-nothing: on failure the history is left exactly as it was.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from tandem.api.abort import Aborted, AbortSignal, run_abortable
from tandem.api.models import (
    ApiResponse,
    BoundaryMarker,
    ContentBlock,
    Conversation,
    Message,
    ReasoningBlock,
    TextBlock,
    ToolCallBlock,
    ToolResultBlock,
)
from tandem.config import Settings
from tandem.errors import CompactionFailed, ProviderError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Summarization prompts
# ------------------------------------------------------------------

COMPACT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with summarizing conversations. "
    "Output only the summary."
)

COMPACT_INSTRUCTION = """\
Your task is to create a detailed summary of the conversation so far, paying close \
attention to the user's explicit requests and your previous actions. This summary \
will replace the conversation, so it must carry everything needed to continue the work.

Please provide your summary including these sections:

1. Primary Request and Intent: What the user asked for, in detail
2. Key Technical Concepts: Technologies, frameworks and concepts involved
3. Files and Code Sections: Files examined, created or modified, with the important snippets
4. Errors and Fixes: Errors encountered and how they were resolved
5. Pending Tasks: Work explicitly requested but not yet done
6. Current Work: Precisely what was being worked on immediately before this summary
7. Optional Next Step: The next step, only if it follows directly from the most recent work

Provide a concise but thorough summary."""

SUMMARY_TEMPLATE = (
    "This session is being continued from a previous conversation. "
    "The conversation is summarized below:\n{summary}\n\n"
    "Please continue the conversation from where we left it off "
    "without asking the user any further questions."
)


class ApiCaller(Protocol):
    """Non-streaming completion call (ProviderClient.create)."""

    async def __call__(
        self,
        *,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        max_tokens: int | None = None,
    ) -> ApiResponse: ...


# ------------------------------------------------------------------
# Token estimation and budget
# ------------------------------------------------------------------


class TokenEstimator:
    """Approximate token counts: ceil(chars / 4) per text, +5 per message.

    Not a tokenizer. Deterministic, so the same history always produces the
    same estimate and the same compaction decision.
    """

    CHARS_PER_TOKEN = 4
    MESSAGE_OVERHEAD = 5

    def estimate_text(self, text: str) -> int:
        return math.ceil(len(text) / self.CHARS_PER_TOKEN)

    def estimate_block(self, block: ContentBlock) -> int:
        if isinstance(block, (TextBlock, ReasoningBlock)):
            return self.estimate_text(block.text)
        if isinstance(block, ToolCallBlock):
            return self.estimate_text(block.name) + self.estimate_text(json.dumps(block.arguments))
        if isinstance(block, ToolResultBlock):
            return self.estimate_text(block.content)
        return 0

    def estimate_message(self, message: Message) -> int:
        return self.MESSAGE_OVERHEAD + sum(self.estimate_block(b) for b in message.blocks)

    def estimate(self, messages: Sequence[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)


class ContextBudgeter:
    """Decides when a session history needs compacting. Never mutates state."""

    def __init__(
        self,
        context_window: int = 200000,
        threshold: float = 0.25,
        enabled: bool = True,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self.context_window = context_window
        self.threshold = threshold
        self.enabled = enabled
        self.estimator = estimator or TokenEstimator()

    @classmethod
    def from_settings(cls, settings: Settings) -> ContextBudgeter:
        return cls(settings.context_window, settings.compaction_threshold, settings.compaction_enabled)

    @property
    def ceiling(self) -> int:
        return int(self.context_window * self.threshold)

    def estimate(self, history: Conversation | Sequence[Message]) -> int:
        return self.estimator.estimate(_messages(history))

    def estimate_by_role(self, history: Conversation | Sequence[Message]) -> dict[str, int]:
        totals = {"user": 0, "agent": 0}
        for msg in _messages(history):
            totals[msg.role] += self.estimator.estimate_message(msg)
        return totals

    def should_compact(self, history: Conversation | Sequence[Message]) -> bool:
        if not self.enabled:
            return False
        return self.estimate(history) > self.ceiling

    def format_usage(self, history: Conversation | Sequence[Message]) -> str:
        tokens = self.estimate(history)
        percentage = round(tokens / self.context_window * 100)
        return f"{tokens:,} / {self.context_window:,} tokens ({percentage}%)"


def _messages(history: Conversation | Sequence[Message]) -> Sequence[Message]:
    return history.messages if isinstance(history, Conversation) else history


# ------------------------------------------------------------------
# Summarizing compactor
# ------------------------------------------------------------------


@dataclass
class CompactionResult:
    summary_message: Message
    boundary: BoundaryMarker
    summary_text: str


class ConversationCompactor:
    """Replaces a history with one synthesized summary turn."""

    def __init__(
        self,
        call_api: ApiCaller,
        model: str,
        max_tokens: int = 8000,
        estimator: TokenEstimator | None = None,
    ) -> None:
        self._call_api = call_api
        self.model = model
        self._max_tokens = max_tokens
        self._estimator = estimator or TokenEstimator()

    async def compact(
        self,
        conversation: Conversation,
        trigger: str = "auto",
        abort: AbortSignal | None = None,
    ) -> CompactionResult:
        """Summarize ``conversation``. Does not modify it.

        Raises CompactionFailed on an empty or unresolved history, a
        provider error, an abort during the summary call, or a response
        without text.
        """
        if not len(conversation):
            raise CompactionFailed("No messages to compact")
        unresolved = conversation.unresolved_tool_calls()
        if unresolved:
            raise CompactionFailed(f"History has unresolved tool calls: {unresolved}")

        start_time = time.monotonic()
        pre_tokens = self._estimator.estimate(conversation.messages)
        messages = self._summary_request(conversation)

        try:
            response = await run_abortable(
                self._call_api(
                    model=self.model,
                    system_prompt=COMPACT_SYSTEM_PROMPT,
                    messages=messages,
                    max_tokens=self._max_tokens,
                ),
                abort,
            )
        except ProviderError as e:
            raise CompactionFailed(f"Summary request failed: {e}") from e
        except Aborted as e:
            raise CompactionFailed(f"Summary request aborted ({e.reason})") from e

        summary = response.text.strip()
        if not summary:
            raise CompactionFailed("Failed to generate conversation summary (no text in response)")

        summary_message = Message.user(SUMMARY_TEMPLATE.format(summary=summary))
        post_tokens = self._estimator.estimate([summary_message])
        boundary = BoundaryMarker(
            trigger=trigger,
            original_message_count=len(conversation),
            original_token_estimate=pre_tokens,
            compacted_token_estimate=post_tokens,
        )
        logger.info(
            "Compacted %s (%s): %d messages, %d -> %d tokens (%d ms)",
            conversation.session_id,
            trigger,
            len(conversation),
            pre_tokens,
            post_tokens,
            int((time.monotonic() - start_time) * 1000),
        )
        return CompactionResult(summary_message, boundary, summary)

    @staticmethod
    def apply(conversation: Conversation, result: CompactionResult) -> None:
        """Swap the history for the summary; the conversation keeps its identity."""
        conversation.replace_history([result.summary_message])
        conversation.boundaries.append(result.boundary)
        conversation.compaction_count += 1

    @staticmethod
    def _summary_request(conversation: Conversation) -> list[dict[str, Any]]:
        """History in wire form, without reasoning, plus the summary instruction."""
        messages = []
        for msg in conversation.to_wire():
            content = [b for b in msg["content"] if b.get("type") != "thinking"]
            if content:
                messages.append({"role": msg["role"], "content": content})

        instruction = {"type": "text", "text": COMPACT_INSTRUCTION}
        if messages and messages[-1]["role"] == "user":
            messages[-1]["content"].append(instruction)
        else:
            messages.append({"role": "user", "content": [instruction]})
        return messages


# ------------------------------------------------------------------
# Round trimming
# ------------------------------------------------------------------


@dataclass
class TrimResult:
    messages: list[Message]
    trimmed: bool
    rounds_before: int
    rounds_after: int

    @property
    def detail(self) -> str:
        if not self.trimmed:
            return f"Already small ({self.rounds_before} rounds), nothing trimmed"
        return f"Trimmed {self.rounds_before} rounds to {self.rounds_after}"


def round_starts(messages: Sequence[Message]) -> list[int]:
    """Indices of messages that begin a round (user messages carrying text)."""
    return [i for i, msg in enumerate(messages) if msg.starts_round]


def trim_rounds(messages: Sequence[Message], keep_rounds: int) -> TrimResult:
    """Keep only the last ``keep_rounds`` rounds.

    Tool results whose calls were cut away are dropped from the kept part.
    With ``keep_rounds`` >= the number of rounds nothing is trimmed.
    """
    if keep_rounds < 1:
        raise ValueError("keep_rounds must be >= 1")

    starts = round_starts(messages)
    if len(starts) <= keep_rounds:
        return TrimResult(list(messages), False, len(starts), len(starts))

    kept = list(messages[starts[len(starts) - keep_rounds] :])
    call_ids = {call.id for msg in kept for call in msg.tool_calls}

    cleaned: list[Message] = []
    for msg in kept:
        blocks = tuple(b for b in msg.blocks if not isinstance(b, ToolResultBlock) or b.call_id in call_ids)
        if blocks:
            cleaned.append(msg if len(blocks) == len(msg.blocks) else Message(msg.role, blocks))

    logger.info(
        "Trimmed history from %d to %d rounds (%d -> %d messages)",
        len(starts),
        keep_rounds,
        len(messages),
        len(cleaned),
    )
    return TrimResult(cleaned, True, len(starts), keep_rounds)
