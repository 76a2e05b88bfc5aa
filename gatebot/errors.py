"""Error taxonomy shared by the tool loop, the invoke endpoint and the browser cache."""

from __future__ import annotations


class GatebotError(Exception):
    """Base class for all gatebot errors."""


class ToolError(GatebotError):
    """
    A recoverable tool-level failure.

    Raised by executors (or by the registry on their behalf) and turned into a
    failed ToolResult at the executor boundary. Never fatal to a reply cycle.
    """

    kind = "tool_error"

    def __init__(self, message: str, *, hint: str | None = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def render(self) -> str:
        text = f"Error [{self.kind}]: {self.message}"
        if self.hint:
            text += f"\nHint: {self.hint}"
        return text


class PolicyDenied(ToolError):
    kind = "policy_denied"


class UnknownTool(ToolError):
    kind = "unknown_tool"


class ExecutorFailure(ToolError):
    kind = "executor_failure"


class ToolTimeout(ToolError):
    kind = "timeout"


class StaleRef(ToolError):
    """The ref was not issued by the most recent snapshot of its target."""

    kind = "stale_ref"


class UnknownTarget(ToolError):
    """No snapshot has been taken for the browser target yet."""

    kind = "unknown_target"


class ProtocolViolation(GatebotError):
    """The reasoning engine emitted a malformed turn. Fatal to the cycle."""


class CycleAborted(GatebotError):
    """Raised when a reply cycle reaches the aborted state."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail
