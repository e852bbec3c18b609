from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Iterator, Sequence

from pydantic import BaseModel, Field

__all__ = [
    "ToolCall",
    "ToolDescriptor",
    "ToolHandler",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "describe_tools",
    "normalize_tool_name",
    "parse_tool_calls",
]

_NAME_PATTERN = re.compile(r"[\\/\s]+")
_DOT_COLLAPSE = re.compile(r"\.+")

TOOL_USE_PATTERN = re.compile(r'<tool_use name="([\w.:\-]+)">([\s\S]*?)</tool_use>')


def normalize_tool_name(name: str) -> str:
    """Return the lookup key for a tool name."""
    if not isinstance(name, str):
        raise TypeError("Tool name must be a string")
    collapsed = _NAME_PATTERN.sub(".", name.strip())
    collapsed = _DOT_COLLAPSE.sub(".", collapsed)
    return collapsed.strip(".").lower()


class ToolParameter(BaseModel):
    type: str = "string"
    description: str = ""


class ToolDescriptor(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, ToolParameter] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)
    enabled: bool = True


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    requires_approval: bool = False

    @classmethod
    def failure(cls, error: str, *, requires_approval: bool = False) -> "ToolResult":
        return cls(success=False, error=error, requires_approval=requires_approval)


ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass(slots=True)
class ToolCall:
    name: str
    params: dict[str, Any]


class ToolRegistry:
    """Tool descriptors and handlers keyed by normalized name, with aliases."""

    def __init__(self) -> None:
        self._descriptors: dict[str, ToolDescriptor] = {}
        self._handlers: dict[str, ToolHandler] = {}
        self._aliases: dict[str, str] = {}

    def register(
        self,
        descriptor: ToolDescriptor,
        handler: ToolHandler,
        *,
        aliases: Iterable[str] = (),
    ) -> None:
        key = normalize_tool_name(descriptor.name)
        self._descriptors[key] = descriptor
        self._handlers[key] = handler
        for alias in aliases:
            alias_key = normalize_tool_name(alias)
            if alias_key and alias_key != key:
                self._aliases[alias_key] = key

    def unregister(self, name: str) -> None:
        key = self.resolve(name)
        if key is None:
            return
        self._descriptors.pop(key, None)
        self._handlers.pop(key, None)
        for alias, target in list(self._aliases.items()):
            if target == key:
                del self._aliases[alias]

    def resolve(self, name: str) -> str | None:
        key = normalize_tool_name(name)
        if key in self._descriptors:
            return key
        target = self._aliases.get(key)
        return target if target in self._descriptors else None

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.resolve(name) is not None

    def descriptor(self, name: str) -> ToolDescriptor | None:
        key = self.resolve(name)
        return self._descriptors.get(key) if key else None

    def handler(self, name: str) -> ToolHandler | None:
        key = self.resolve(name)
        return self._handlers.get(key) if key else None

    def set_enabled(self, name: str, enabled: bool) -> None:
        key = self.resolve(name)
        if key is None:
            raise KeyError(name)
        self._descriptors[key] = self._descriptors[key].model_copy(update={"enabled": enabled})

    def descriptors(self) -> list[ToolDescriptor]:
        return [self._descriptors[key] for key in sorted(self._descriptors)]

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.descriptors())

    def __len__(self) -> int:
        return len(self._descriptors)


def parse_tool_calls(text: str) -> list[ToolCall]:
    """Extract ``<tool_use name="...">{json}</tool_use>`` blocks; invalid JSON is skipped."""
    calls: list[ToolCall] = []
    for match in TOOL_USE_PATTERN.finditer(text or ""):
        try:
            params = json.loads(match.group(2).strip() or "{}")
        except ValueError:
            continue
        if isinstance(params, dict):
            calls.append(ToolCall(name=match.group(1), params=params))
    return calls


def describe_tools(descriptors: Sequence[ToolDescriptor]) -> str:
    if not descriptors:
        return "No tools available."
    blocks = []
    for descriptor in descriptors:
        lines = [f"**{descriptor.name}**: {descriptor.description}", "Parameters:"]
        for name, parameter in descriptor.parameters.items():
            marker = " (required)" if name in descriptor.required else ""
            lines.append(f"  - {name}: {parameter.description}{marker}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
