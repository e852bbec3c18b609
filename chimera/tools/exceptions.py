from __future__ import annotations

from ..core.errors import ChimeraError


class ToolError(ChimeraError):
    """Base class for tool collaborator failures."""


class ToolNotFoundError(ToolError):
    """The requested tool is not registered."""


class ToolPolicyViolationError(ToolError):
    """A policy check rejected the invocation before the handler ran."""

    def __init__(self, message: str, *, requires_approval: bool = False, rule: str | None = None) -> None:
        super().__init__(message)
        self.requires_approval = requires_approval
        self.rule = rule


class ToolInvocationError(ToolError):
    """The tool handler raised or returned an unusable payload."""


class ToolTimeoutError(ToolInvocationError):
    """The tool handler exceeded its invocation timeout."""
