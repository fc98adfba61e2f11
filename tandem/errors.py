"""Error taxonomy for the orchestration protocol.

Tool-level failures are turned into ``is_error`` tool results by the
dispatcher and never escape a turn. Provider-level failures are raised and
retried by the session; once retries are exhausted they end the run.
"""

from __future__ import annotations


class TandemError(Exception):
    """Base class for all orchestration errors."""


class ProviderError(TandemError):
    """Completion provider failure (HTTP error, in-stream error, transport)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str = "",
        retryable: bool = False,
        context_overflow: bool = False,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.retryable = retryable
        self.context_overflow = context_overflow
        self.retry_after = retry_after


class ToolFailure(TandemError):
    """A tool invocation that could not produce a normal result."""

    reason = "failed"

    def __init__(self, tool_name: str, detail: str) -> None:
        super().__init__(f"{tool_name}: {detail}")
        self.tool_name = tool_name
        self.detail = detail

    @property
    def status_line(self) -> str:
        return f"Tool '{self.tool_name}' {self.reason}: {self.detail}"


class UnknownTool(ToolFailure):
    reason = "is unknown"


class PermissionDenied(ToolFailure):
    reason = "is not permitted"


class InvalidToolArguments(ToolFailure):
    reason = "received invalid arguments"


class ToolTimeout(ToolFailure):
    reason = "timed out"


class ToolLoopExceeded(TandemError):
    """A single turn issued more tool-call rounds than its cap allows."""

    def __init__(self, limit: int, partial_text: str = "") -> None:
        super().__init__(f"Tool loop exceeded {limit} iterations")
        self.limit = limit
        self.partial_text = partial_text


class CompactionFailed(TandemError):
    """Summarization failed; the history it was given is unchanged."""


class DirectiveAmbiguous(TandemError):
    """A Director turn carried neither a delegation nor a completion marker."""


class InactivityTimeout(TandemError):
    """No stream activity for longer than the session's inactivity timeout."""

    def __init__(self, seconds: float, partial_text: str = "") -> None:
        super().__init__(f"No activity for {seconds:g}s")
        self.seconds = seconds
        self.partial_text = partial_text

    @property
    def relay_text(self) -> str:
        """Partial reply with a timeout label, as relayed to the Director."""
        label = f"TIMEOUT after {self.seconds:g}s"
        if self.partial_text.strip():
            return f"{self.partial_text} [{label}]"
        return f"[No response received - {label}]"


class HistoryInvariantError(TandemError):
    """Conversation history violates a structural invariant."""
