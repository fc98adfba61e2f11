"""Directive classification for Director turns and operator input.

Pattern matching only, no LLM. A Director turn resolves to exactly one of:
finished, delegate, continue_actor or needs_correction. Structured
delegation recorded by a control tool during the turn wins over text
markers; a completion marker wins over both.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum


class DirectiveKind(StrEnum):
    DELEGATE = "delegate"
    CONTINUE_ACTOR = "continue_actor"
    NEEDS_CORRECTION = "needs_correction"
    FINISHED = "finished"


@dataclass(frozen=True)
class WorkerRequest:
    """A delegation recorded by call_worker / tell_worker during a Director turn."""

    instruction: str
    reset: bool
    model: str | None = None
    system_prompt: str | None = None


@dataclass(frozen=True)
class Directive:
    kind: DirectiveKind
    instruction: str = ""
    model_hint: str | None = None
    reset: bool = False
    system_prompt: str | None = None
    reason: str = ""

    @property
    def is_delegation(self) -> bool:
        return self.kind in (DirectiveKind.DELEGATE, DirectiveKind.CONTINUE_ACTOR)


# Completion marker: the last line holds only DONE, plain or markdown
# emphasized, optionally followed by . or !.
# Uppercase only: "Done!" is prose, not a signal.
_DONE_PATTERN = re.compile(r"(?:^|\n)[ \t]*(?:\*\*DONE\*\*|__DONE__|_DONE_|DONE)[\s.!]*$")
_DONE_TAIL_LINES = 3

_TELL_WORKER = re.compile(r"tell\s+worker:\s*([\s\S]*)", re.IGNORECASE)
_MODEL_HINT = re.compile(r"\b(?:use|model:)\s*(opus|sonnet|haiku)\b", re.IGNORECASE)


def is_finished(text: str) -> bool:
    """True if the last three lines of the trimmed text carry the completion marker."""
    tail = "\n".join(text.strip().split("\n")[-_DONE_TAIL_LINES:])
    return bool(_DONE_PATTERN.search(tail))


def extract_model_hint(text: str) -> str | None:
    """First "use <tier>" / "model: <tier>" mention, lowercased."""
    match = _MODEL_HINT.search(text)
    return match.group(1).lower() if match else None


def parse_directive(text: str, requested: WorkerRequest | None = None) -> Directive:
    """Classify one Director turn.

    ``requested`` is the delegation a control tool recorded during the
    turn, if any.
    """
    if is_finished(text):
        return Directive(DirectiveKind.FINISHED, reason="completion marker")

    if requested is not None:
        instruction = requested.instruction.strip()
        if not instruction:
            return Directive(DirectiveKind.NEEDS_CORRECTION, reason="empty worker instruction")
        return Directive(
            DirectiveKind.DELEGATE if requested.reset else DirectiveKind.CONTINUE_ACTOR,
            instruction=instruction,
            model_hint=requested.model or extract_model_hint(text),
            reset=requested.reset,
            system_prompt=requested.system_prompt,
            reason="worker tool",
        )

    match = _TELL_WORKER.search(text)
    if match:
        instruction = match.group(1).strip()
        if not instruction:
            return Directive(DirectiveKind.NEEDS_CORRECTION, reason="empty 'Tell worker:' payload")
        return Directive(
            DirectiveKind.DELEGATE,
            instruction=instruction,
            model_hint=extract_model_hint(text),
            reason="text marker",
        )

    return Directive(DirectiveKind.NEEDS_CORRECTION, reason="no delegation or completion marker")


# ---------------------------------------------------------------------------
# Operator input: [r+N] / [r=N] round control and [compact]
# ---------------------------------------------------------------------------

_ADD_ROUNDS = re.compile(r"^\s*\[r\+(\d+)\]", re.IGNORECASE)
_SET_ROUNDS = re.compile(r"^\s*\[r=(\d+)\]", re.IGNORECASE)
_COMPACT = re.compile(r"^\s*\[compact\]", re.IGNORECASE)


@dataclass(frozen=True)
class OperatorInput:
    instruction: str
    add_rounds: int = 0
    set_rounds: int | None = None
    compact: bool = False


def parse_operator_input(text: str) -> OperatorInput:
    """Strip leading control prefixes from operator input.

    Prefixes must come first and may repeat; later [r=N] overrides earlier
    ones, [r+N] amounts accumulate after the last [r=N].
    """
    remaining = text
    add = 0
    set_to: int | None = None
    compact = False
    while True:
        if m := _ADD_ROUNDS.match(remaining):
            add += int(m.group(1))
        elif m := _SET_ROUNDS.match(remaining):
            set_to = int(m.group(1))
            add = 0
        elif m := _COMPACT.match(remaining):
            compact = True
        else:
            break
        remaining = remaining[m.end() :]
    return OperatorInput(remaining.strip(), add, set_to, compact)
