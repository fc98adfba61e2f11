"""Director-only control tools.

Handlers never touch the Actor directly: they record requests on a
ControlChannel, and the orchestrator drains the channel after the Director
turn and applies them (delegation, Actor timeout, history trimming,
permission changes).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from tandem.api.builtin_tools import _validate_path
from tandem.api.tools import ToolDispatcher, mcp_response
from tandem.cognitive.directive import WorkerRequest

logger = logging.getLogger(__name__)

_MIN_TIMEOUT = 10
_MAX_TIMEOUT = 1800

CONTROL_TOOLS = (
    "call_worker",
    "tell_worker",
    "set_worker_timeout",
    "compact_worker_context",
    "grant_worker_tool",
    "revoke_worker_tool",
)


@dataclass
class ControlRequests:
    """Everything the Director asked for during one turn."""

    worker: WorkerRequest | None = None
    actor_timeout: float | None = None
    keep_rounds: int | None = None
    trim_reason: str = ""
    grants: list[str] = field(default_factory=list)
    revokes: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return (
            self.worker is None
            and self.actor_timeout is None
            and self.keep_rounds is None
            and not self.grants
            and not self.revokes
        )


class ControlChannel:
    """Per-turn mailbox between control tool handlers and the orchestrator."""

    def __init__(self, actor_tools: Iterable[str] = ()) -> None:
        self.actor_tools = frozenset(actor_tools)
        self._pending = ControlRequests()

    @property
    def pending(self) -> ControlRequests:
        return self._pending

    def drain(self) -> ControlRequests:
        requests, self._pending = self._pending, ControlRequests()
        return requests


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_MODEL = {
    "type": "string",
    "description": "Worker model: opus, sonnet, haiku, or a full model id",
}

CALL_WORKER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": (
        "Start the Worker on a fresh context with a new instruction. "
        "The Worker's previous conversation is discarded."
    ),
    "properties": {
        "instruction": {"type": "string", "description": "What the Worker should do", "minLength": 1},
        "system_prompt": {"type": "string", "description": "Optional system prompt for the Worker's new context"},
        "system_prompt_file": {
            "type": "string",
            "description": "Workspace file whose contents become the Worker's system prompt (instead of system_prompt)",
            "minLength": 1,
        },
        "model": _MODEL,
    },
    "required": ["instruction"],
    "additionalProperties": False,
}

TELL_WORKER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Send a follow-up message to the Worker, continuing its current conversation.",
    "properties": {
        "message": {"type": "string", "description": "Message for the Worker", "minLength": 1},
        "model": _MODEL,
    },
    "required": ["message"],
    "additionalProperties": False,
}

SET_WORKER_TIMEOUT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Set how long the Worker may stay silent before its response is cut off.",
    "properties": {
        "timeout_seconds": {
            "type": "integer",
            "description": f"Inactivity timeout in seconds ({_MIN_TIMEOUT}-{_MAX_TIMEOUT})",
            "minimum": _MIN_TIMEOUT,
            "maximum": _MAX_TIMEOUT,
        },
    },
    "required": ["timeout_seconds"],
    "additionalProperties": False,
}

COMPACT_WORKER_CONTEXT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Drop the Worker's oldest rounds, keeping only the most recent ones.",
    "properties": {
        "keep_rounds": {"type": "integer", "description": "Number of recent rounds to keep", "minimum": 1},
        "reason": {"type": "string", "description": "Why the context is being trimmed"},
    },
    "required": ["keep_rounds"],
    "additionalProperties": False,
}

_TOOL_NAME_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"tool_name": {"type": "string", "description": "Name of a Worker tool"}},
    "required": ["tool_name"],
    "additionalProperties": False,
}

GRANT_WORKER_TOOL_SCHEMA: dict[str, Any] = {
    **_TOOL_NAME_SCHEMA,
    "description": "Allow the Worker to use a tool, starting with its next turn.",
}

REVOKE_WORKER_TOOL_SCHEMA: dict[str, Any] = {
    **_TOOL_NAME_SCHEMA,
    "description": "Stop the Worker from using a tool, starting with its next turn.",
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_control_tools(dispatcher: ToolDispatcher, channel: ControlChannel, workspace_dir: str = ".") -> None:
    """Register the control tools, each writing to ``channel``.

    ``workspace_dir`` confines call_worker's ``system_prompt_file``.
    """

    def _delegate(request: WorkerRequest) -> dict[str, Any]:
        if channel.pending.worker is not None:
            return mcp_response(
                "A Worker request is already scheduled for this turn. End your turn to let the Worker run.",
                is_error=True,
            )
        channel.pending.worker = request
        logger.info("Worker request recorded (reset=%s, model=%s)", request.reset, request.model)
        return mcp_response(
            "Worker request scheduled. End your turn now; the Worker's reply will arrive as the next message."
        )

    async def _call_worker(
        instruction: str,
        system_prompt: str | None = None,
        model: str | None = None,
        system_prompt_file: str | None = None,
    ) -> dict[str, Any]:
        if system_prompt_file is not None:
            if system_prompt is not None:
                return mcp_response("Pass either system_prompt or system_prompt_file, not both.", is_error=True)
            try:
                target = _validate_path(system_prompt_file, workspace_dir)
                if not target.is_file():
                    return mcp_response(f"System prompt file not found: {system_prompt_file}", is_error=True)
                system_prompt = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
            except ValueError as e:
                return mcp_response(str(e), is_error=True)
            except OSError as e:
                logger.warning("Could not read system prompt file %s: %s", system_prompt_file, e)
                return mcp_response(f"Error reading system prompt file: {e}", is_error=True)
            if not system_prompt.strip():
                return mcp_response(f"System prompt file is empty: {system_prompt_file}", is_error=True)
        return _delegate(WorkerRequest(instruction, reset=True, model=model, system_prompt=system_prompt))

    async def _tell_worker(message: str, model: str | None = None) -> dict[str, Any]:
        return _delegate(WorkerRequest(message, reset=False, model=model))

    async def _set_worker_timeout(timeout_seconds: int) -> dict[str, Any]:
        channel.pending.actor_timeout = float(timeout_seconds)
        return mcp_response(f"Worker inactivity timeout will be {timeout_seconds}s from the next Worker turn.")

    async def _compact_worker_context(keep_rounds: int, reason: str = "") -> dict[str, Any]:
        channel.pending.keep_rounds = keep_rounds
        channel.pending.trim_reason = reason
        return mcp_response(f"Worker context will be trimmed to the last {keep_rounds} round(s) before its next turn.")

    async def _grant_worker_tool(tool_name: str) -> dict[str, Any]:
        if tool_name not in channel.actor_tools:
            return mcp_response(
                f"Cannot grant '{tool_name}'. Grantable tools: {', '.join(sorted(channel.actor_tools))}",
                is_error=True,
            )
        channel.pending.grants.append(tool_name)
        return mcp_response(f"'{tool_name}' will be available to the Worker from its next turn.")

    async def _revoke_worker_tool(tool_name: str) -> dict[str, Any]:
        channel.pending.revokes.append(tool_name)
        return mcp_response(f"'{tool_name}' will be unavailable to the Worker from its next turn.")

    dispatcher.register("call_worker", _call_worker, CALL_WORKER_SCHEMA)
    dispatcher.register("tell_worker", _tell_worker, TELL_WORKER_SCHEMA)
    dispatcher.register("set_worker_timeout", _set_worker_timeout, SET_WORKER_TIMEOUT_SCHEMA)
    dispatcher.register("compact_worker_context", _compact_worker_context, COMPACT_WORKER_CONTEXT_SCHEMA)
    dispatcher.register("grant_worker_tool", _grant_worker_tool, GRANT_WORKER_TOOL_SCHEMA)
    dispatcher.register("revoke_worker_tool", _revoke_worker_tool, REVOKE_WORKER_TOOL_SCHEMA)
