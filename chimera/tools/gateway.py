from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from pydantic import BaseModel, Field

from ..core import metrics
from ..core.config import ToolSettings
from ..core.logging import get_logger
from .exceptions import ToolInvocationError, ToolNotFoundError, ToolPolicyViolationError, ToolTimeoutError
from .policy import PolicyContext, RollingWindowLimiter, ToolPolicy
from .registry import ToolDescriptor, ToolRegistry, ToolResult

logger = get_logger(name=__name__)


class AccessLogEntry(BaseModel):
    timestamp: datetime
    tool: str
    role: str | None = None
    execution_id: str | None = None
    allowed: bool
    rule: str
    reason: str | None = None
    success: bool | None = None
    params: dict[str, Any] = Field(default_factory=dict)


class ToolGateway:
    """Policy-checked access to registered tools.

    Every attempt, allowed or denied, appends one entry to a bounded access log. Failures
    come back as ``ToolResult(success=False)`` so callers can try another approach.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        policy: ToolPolicy | None = None,
        *,
        log_size: int = 500,
        timeout_seconds: float | None = 30.0,
        limiter: RollingWindowLimiter | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry
        self._policy = policy or ToolPolicy()
        self._timeout = timeout_seconds
        self._limiter = limiter or RollingWindowLimiter()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._log: deque[AccessLogEntry] = deque(maxlen=max(1, log_size))

    @classmethod
    def from_settings(
        cls,
        settings: ToolSettings,
        registry: ToolRegistry,
        policy: ToolPolicy | None = None,
    ) -> "ToolGateway":
        return cls(
            registry,
            policy,
            log_size=settings.access_log_size,
            timeout_seconds=settings.invocation_timeout_seconds,
        )

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def policy(self) -> ToolPolicy:
        return self._policy

    def list_tools(self, context: PolicyContext | None = None) -> list[ToolDescriptor]:
        """Enabled tools, narrowed to those the context's role could call."""
        tools = [descriptor for descriptor in self._registry.descriptors() if descriptor.enabled]
        if context is None or context.role is None:
            return tools
        return [descriptor for descriptor in tools if self._policy.role_permits(descriptor.name, context.role)]

    def access_log(self) -> list[AccessLogEntry]:
        return list(self._log)

    async def invoke(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        context: PolicyContext | None = None,
    ) -> ToolResult:
        context = context or PolicyContext()
        arguments = dict(params or {})
        try:
            handler = self._admit(name, arguments, context)
        except ToolNotFoundError as exc:
            self._record(name, arguments, context, allowed=False, rule="not_found", reason=str(exc))
            return ToolResult.failure(str(exc))
        except ToolPolicyViolationError as exc:
            self._record(name, arguments, context, allowed=False, rule=exc.rule or "denied", reason=str(exc))
            logger.info("tool_denied", tool=name, rule=exc.rule, role=context.role)
            return ToolResult.failure(str(exc), requires_approval=exc.requires_approval)

        try:
            data = await self._call(name, handler, arguments)
        except ToolInvocationError as exc:
            self._record(name, arguments, context, allowed=True, rule="allowed", reason=str(exc), success=False)
            logger.warning("tool_invocation_failed", tool=name, error=str(exc))
            return ToolResult.failure(str(exc))

        if isinstance(data, ToolResult):
            result = data
        else:
            result = ToolResult(success=True, data=data)
        self._record(name, arguments, context, allowed=True, rule="allowed", success=result.success, reason=result.error)
        return result

    def _admit(self, name: str, params: dict[str, Any], context: PolicyContext) -> Any:
        descriptor = self._registry.descriptor(name)
        handler = self._registry.handler(name)
        if descriptor is None or handler is None:
            raise ToolNotFoundError(f'Tool "{name}" not found')
        if not descriptor.enabled:
            raise ToolPolicyViolationError(f"Tool '{name}' is disabled", rule="disabled")
        missing = [field for field in descriptor.required if field not in params]
        if missing:
            raise ToolPolicyViolationError(
                f"Missing required parameters: {', '.join(missing)}",
                rule="parameter_restricted",
            )
        decision = self._policy.evaluate(descriptor.name, params, context, limiter=self._limiter)
        if not decision.allowed:
            raise ToolPolicyViolationError(
                decision.reason or "denied",
                requires_approval=decision.requires_approval,
                rule=decision.rule,
            )
        return handler

    async def _call(self, name: str, handler: Any, params: dict[str, Any]) -> Any:
        try:
            if self._timeout is not None:
                return await asyncio.wait_for(handler(params), timeout=self._timeout)
            return await handler(params)
        except asyncio.TimeoutError as exc:
            raise ToolTimeoutError(f"Tool '{name}' timed out after {self._timeout}s") from exc
        except ToolInvocationError:
            raise
        except Exception as exc:
            raise ToolInvocationError(str(exc) or type(exc).__name__) from exc

    def _record(
        self,
        name: str,
        params: dict[str, Any],
        context: PolicyContext,
        *,
        allowed: bool,
        rule: str,
        reason: str | None = None,
        success: bool | None = None,
    ) -> None:
        self._log.append(
            AccessLogEntry(
                timestamp=self._now(),
                tool=name,
                role=context.role,
                execution_id=context.execution_id,
                allowed=allowed,
                rule=rule,
                reason=reason,
                success=success,
                params=params,
            )
        )
        metrics.record_tool_decision(tool=name, decision="allowed" if allowed else rule)
