"""Tool dispatcher and per-agent permission sets.

Provides:
- PermissionSet: immutable allow-list with permanently forbidden tools;
  grant()/revoke() return a new set
- ToolDispatcher: registers tools, validates arguments, executes with a
  per-tool timeout, and always returns a tool result. Failures (unknown
  tool, denied, invalid arguments, timeout, handler error) become
  ``is_error`` results and never escape.

Handlers are async callables taking the tool arguments as keyword args and
returning an MCP-format response: {"content": [{"type": "text", "text": "..."}]}
with an optional "isError" flag.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from tandem.api.models import ToolCallBlock, ToolResultBlock
from tandem.config import Settings
from tandem.errors import (
    InvalidToolArguments,
    PermissionDenied,
    ToolFailure,
    ToolTimeout,
    UnknownTool,
)

logger = logging.getLogger(__name__)

_MAX_REPORTED_VALIDATION_ERRORS = 5


# ---------------------------------------------------------------------------
# PermissionSet
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionSet:
    """Tools an agent may call. Copy-on-write."""

    allowed: frozenset[str] = frozenset()
    forbidden: frozenset[str] = frozenset()

    @classmethod
    def of(cls, names: Iterable[str], forbidden: Iterable[str] = ()) -> PermissionSet:
        blocked = frozenset(forbidden)
        return cls(frozenset(names) - blocked, blocked)

    def allows(self, name: str) -> bool:
        return name in self.allowed and name not in self.forbidden

    def grant(self, name: str) -> PermissionSet:
        if name in self.forbidden:
            raise PermissionDenied(name, "permanently forbidden for this agent")
        return PermissionSet(self.allowed | {name}, self.forbidden)

    def revoke(self, name: str) -> PermissionSet:
        return PermissionSet(self.allowed - {name}, self.forbidden)

    def __iter__(self):
        return iter(sorted(self.allowed))

    def __len__(self) -> int:
        return len(self.allowed)


# ---------------------------------------------------------------------------
# ToolDispatcher
# ---------------------------------------------------------------------------


@dataclass
class ToolExecution:
    """Outcome of one tool call.

    ``result.content`` may be truncated for the model; ``full_content``
    keeps the complete text for the transcript.
    """

    call: ToolCallBlock
    result: ToolResultBlock
    full_content: str
    duration_ms: int = 0
    failure: ToolFailure | None = None

    @property
    def is_error(self) -> bool:
        return self.result.is_error


@dataclass
class _Tool:
    handler: Callable[..., Any]
    schema: dict[str, Any]
    validator: Draft7Validator = field(init=False)

    def __post_init__(self) -> None:
        self.validator = Draft7Validator(self.schema)


class ToolDispatcher:
    """Registers tool handlers and executes tool calls for a permission set."""

    def __init__(
        self,
        default_timeout: float = 30.0,
        timeouts: dict[str, float] | None = None,
        max_result_chars: int = 30000,
    ) -> None:
        self._tools: dict[str, _Tool] = {}
        self._default_timeout = default_timeout
        self._timeouts = dict(timeouts or {})
        self._max_result_chars = max_result_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> ToolDispatcher:
        return cls(
            default_timeout=settings.tool_timeout_default,
            timeouts=settings.tool_timeouts,
            max_result_chars=settings.tool_result_max_chars,
        )

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            raise ValueError(f"Invalid schema for tool {name}: {e.message}") from e
        self._tools[name] = _Tool(handler, schema)

    def set_timeout(self, name: str, seconds: float) -> None:
        self._timeouts[name] = seconds

    def timeout_for(self, name: str) -> float:
        return self._timeouts.get(name, self._default_timeout)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self, permissions: PermissionSet | None = None) -> list[dict[str, Any]]:
        """Tool definitions in Anthropic API format, limited to granted tools."""
        return [
            {
                "name": name,
                "description": tool.schema.get("description", ""),
                "input_schema": tool.schema,
            }
            for name, tool in self._tools.items()
            if permissions is None or permissions.allows(name)
        ]

    def validate(self, name: str, arguments: dict[str, Any]) -> list[str]:
        """Schema violations for ``arguments``, formatted as 'path: message'."""
        tool = self._tools[name]
        errors = sorted(tool.validator.iter_errors(arguments), key=lambda e: [str(p) for p in e.path])
        messages = []
        for error in errors[:_MAX_REPORTED_VALIDATION_ERRORS]:
            path = ".".join(str(p) for p in error.path) or "(root)"
            messages.append(f"{path}: {error.message}")
        return messages

    async def execute(self, permissions: PermissionSet, call: ToolCallBlock) -> ToolExecution:
        """Run one tool call. Never raises for tool-level failures."""
        start = time.monotonic()
        try:
            text, handler_error = await self._run(permissions, call)
        except ToolFailure as failure:
            logger.warning("%s", failure.status_line)
            return self._execution(call, f"Error: {failure}", start, is_error=True, failure=failure)
        return self._execution(call, text, start, is_error=handler_error)

    async def _run(self, permissions: PermissionSet, call: ToolCallBlock) -> tuple[str, bool]:
        tool = self._tools.get(call.name)
        if tool is None:
            raise UnknownTool(call.name, "no such tool")
        if not permissions.allows(call.name):
            raise PermissionDenied(call.name, "not granted to this agent")

        problems = self.validate(call.name, call.arguments)
        if problems:
            raise InvalidToolArguments(call.name, "; ".join(problems))

        timeout = self.timeout_for(call.name)
        try:
            response = await asyncio.wait_for(tool.handler(**call.arguments), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeout(call.name, f"no result after {timeout:g}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool dispatch error for %s", call.name)
            raise ToolFailure(call.name, f"{type(e).__name__}: {e}") from e

        return _response_text(response), bool(response.get("isError", False))

    def _execution(
        self,
        call: ToolCallBlock,
        text: str,
        start: float,
        *,
        is_error: bool,
        failure: ToolFailure | None = None,
    ) -> ToolExecution:
        content = text
        if len(text) > self._max_result_chars:
            content = (
                f"{text[: self._max_result_chars]}\n"
                f"... [truncated: showing {self._max_result_chars:,} of {len(text):,} chars]"
            )
        return ToolExecution(
            call=call,
            result=ToolResultBlock(call.id, content, is_error),
            full_content=text,
            duration_ms=int((time.monotonic() - start) * 1000),
            failure=failure,
        )


def _response_text(response: dict[str, Any]) -> str:
    parts = [item.get("text", "") for item in response.get("content", []) if item.get("type") == "text"]
    return "\n".join(parts) if parts else "(no output)"


def mcp_response(text: str, is_error: bool = False) -> dict[str, Any]:
    """Build an MCP-format tool response."""
    response: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        response["isError"] = True
    return response
