from .exceptions import (
    ToolError,
    ToolInvocationError,
    ToolNotFoundError,
    ToolPolicyViolationError,
    ToolTimeoutError,
)
from .gateway import AccessLogEntry, ToolGateway
from .policy import PolicyContext, ToolPolicy
from .registry import ToolCall, ToolDescriptor, ToolRegistry, ToolResult, describe_tools, normalize_tool_name, parse_tool_calls

__all__ = [
    "AccessLogEntry",
    "PolicyContext",
    "ToolCall",
    "ToolDescriptor",
    "ToolError",
    "ToolGateway",
    "ToolInvocationError",
    "ToolNotFoundError",
    "ToolPolicy",
    "ToolPolicyViolationError",
    "ToolRegistry",
    "ToolResult",
    "ToolTimeoutError",
    "describe_tools",
    "normalize_tool_name",
    "parse_tool_calls",
]
