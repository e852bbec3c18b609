from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Callable, Mapping

from .registry import normalize_tool_name


@dataclass(frozen=True, slots=True)
class PolicyContext:
    """Who is asking. ``approved`` marks an invocation a human already signed off on."""

    role: str | None = None
    execution_id: str | None = None
    user_id: str | None = None
    approved: bool = False


@dataclass(frozen=True, slots=True)
class ParameterRestriction:
    allowed: tuple[str, ...] = ()
    denied: tuple[str, ...] = ()
    max_length: int | None = None

    def violation(self, value: Any) -> str | None:
        text = value if isinstance(value, str) else str(value)
        if self.max_length is not None and len(text) > self.max_length:
            return f"exceeds {self.max_length} characters"
        if any(fnmatch(text, pattern) for pattern in self.denied):
            return "matches a denied pattern"
        if self.allowed and not any(fnmatch(text, pattern) for pattern in self.allowed):
            return "is outside the allowed values"
        return None


@dataclass(frozen=True, slots=True)
class RateLimit:
    max_calls: int
    window_seconds: float


@dataclass(frozen=True, slots=True)
class PolicyDecision:
    allowed: bool
    rule: str = "allowed"
    reason: str | None = None
    requires_approval: bool = False

    @classmethod
    def allow(cls) -> "PolicyDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, rule: str, reason: str, *, requires_approval: bool = False) -> "PolicyDecision":
        return cls(allowed=False, rule=rule, reason=reason, requires_approval=requires_approval)


class RollingWindowLimiter:
    """Per-key call timestamps; a hit is admitted while fewer than ``max_calls`` fall in the window."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    def admit(self, key: str, limit: RateLimit) -> bool:
        now = self._clock()
        hits = self._hits.setdefault(key, deque())
        while hits and now - hits[0] >= limit.window_seconds:
            hits.popleft()
        if len(hits) >= limit.max_calls:
            return False
        hits.append(now)
        return True

    def reset(self) -> None:
        self._hits.clear()


def _matches(identifier: str, patterns: tuple[str, ...]) -> bool:
    return any(fnmatch(identifier, normalize_tool_name(pattern)) for pattern in patterns)


@dataclass(frozen=True)
class ToolPolicy:
    disabled: tuple[str, ...] = ()
    role_allowed: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    role_denied: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    parameter_restrictions: Mapping[str, Mapping[str, ParameterRestriction]] = field(default_factory=dict)
    approval_required: tuple[str, ...] = ()
    rate_limits: Mapping[str, RateLimit] = field(default_factory=dict)

    def role_permits(self, tool: str, role: str | None) -> bool:
        if role is None:
            return True
        identifier = normalize_tool_name(tool)
        if _matches(identifier, tuple(self.role_denied.get(role, ()))):
            return False
        allowed = tuple(self.role_allowed.get(role, ()))
        return not allowed or _matches(identifier, allowed)

    def evaluate(
        self,
        tool: str,
        params: Mapping[str, Any],
        context: PolicyContext,
        *,
        limiter: RollingWindowLimiter,
    ) -> PolicyDecision:
        """Checks run in a fixed order: disabled, role deny/allow, parameters, approval,
        then rate limit. Only invocations that pass every other check consume quota."""
        identifier = normalize_tool_name(tool)

        if _matches(identifier, tuple(self.disabled)):
            return PolicyDecision.deny("disabled", f"Tool '{tool}' is disabled")

        role = context.role
        if role is not None:
            if _matches(identifier, tuple(self.role_denied.get(role, ()))):
                return PolicyDecision.deny("role_denied", f"Role '{role}' may not use '{tool}'")
            if not self.role_permits(tool, role):
                return PolicyDecision.deny("role_not_allowed", f"Role '{role}' is not allowed to use '{tool}'")

        for pattern, restrictions in self.parameter_restrictions.items():
            if not fnmatch(identifier, normalize_tool_name(pattern)):
                continue
            for name, restriction in restrictions.items():
                if name not in params:
                    continue
                problem = restriction.violation(params[name])
                if problem is not None:
                    return PolicyDecision.deny("parameter_restricted", f"Parameter '{name}' {problem}")

        if _matches(identifier, self.approval_required) and not context.approved:
            return PolicyDecision.deny(
                "approval_required",
                f"Tool '{tool}' requires approval before it can run",
                requires_approval=True,
            )

        for pattern, limit in self.rate_limits.items():
            if fnmatch(identifier, normalize_tool_name(pattern)):
                key = f"{context.role or '*'}:{identifier}"
                if not limiter.admit(key, limit):
                    return PolicyDecision.deny(
                        "rate_limited",
                        f"Tool '{tool}' exceeded {limit.max_calls} calls per {limit.window_seconds:g}s",
                    )
        return PolicyDecision.allow()
