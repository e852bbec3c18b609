from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Sequence

from chimera.core.config import ModeSettings, Settings, TeamSettings
from chimera.core.errors import BackendError, BackendErrorKind
from chimera.engine import Engine, init_engine
from chimera.orchestration.batching import RateLimitedBatchRunner
from chimera.orchestration.classifier import ExecutionMode
from chimera.orchestration.modes.base import PhaseContext
from chimera.orchestration.planner import ExecutionPhase
from chimera.orchestration.retry import RetryPolicy, RetryRunner
from chimera.orchestration.store import InMemoryExecutionStore
from chimera.orchestration.team import TeamAssembler
from chimera.services.backends import BackendPool, CompletionRequest, ModelBackend
from chimera.services.gateway import ModelGateway
from chimera.services.health import ProviderHealthMonitor
from chimera.tools.gateway import ToolGateway
from chimera.tools.policy import ToolPolicy
from chimera.tools.registry import ToolDescriptor, ToolParameter, ToolRegistry

Reply = str | BaseException | Callable[[CompletionRequest], str]


class ScriptedBackend(ModelBackend):
    """Backend double that replays scripted replies, then falls back to ``default``.

    A reply may be a string, an exception to raise, or a callable that receives the
    request. Every request is recorded in ``calls``.
    """

    def __init__(self, provider: str, replies: Iterable[Reply] = (), *, default: Reply | None = "ok") -> None:
        self.provider = provider
        self._replies = list(replies)
        self._default = default
        self.calls: list[CompletionRequest] = []
        self.closed = False

    def push(self, *replies: Reply) -> None:
        self._replies.extend(replies)

    async def complete(self, request: CompletionRequest) -> str:
        self.calls.append(request)
        reply = self._replies.pop(0) if self._replies else self._default
        if reply is None:
            raise BackendError(f"{self.provider} has no scripted reply", provider=self.provider)
        if isinstance(reply, BaseException):
            if isinstance(reply, BackendError) and reply.provider is None:
                reply.provider = self.provider
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    async def aclose(self) -> None:
        self.closed = True


def failing(provider: str, kind: BackendErrorKind = BackendErrorKind.TRANSIENT, status_code: int | None = None) -> BackendError:
    return BackendError(f"{provider} failed ({kind.value})", provider=provider, kind=kind, status_code=status_code)


def pool_of(*backends: ModelBackend) -> BackendPool:
    pool = BackendPool()
    for backend in backends:
        pool.register(backend)
    return pool


class FakeClock:
    """Monotonic clock double for the circuit breaker and the tool rate limiter."""

    def __init__(self, start: float = 1000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeWallClock:
    """Timezone-aware wall clock double for stores and the team arena."""

    def __init__(self, start: datetime | None = None) -> None:
        self.value = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += timedelta(seconds=seconds)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class StubRedis:
    """The subset of ``redis.asyncio.Redis`` used by the Redis execution store."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.lists: dict[str, list[Any]] = {}
        self.sets: dict[str, set[Any]] = {}
        self.ttls: dict[str, int] = {}
        self.closed = False

    async def setex(self, key: str, ttl: int, value: Any) -> None:
        self.values[key] = value.encode("utf-8") if isinstance(value, str) else value
        self.ttls[key] = ttl

    async def get(self, key: str) -> Any:
        return self.values.get(key)

    async def exists(self, key: str) -> int:
        return int(key in self.values or key in self.lists or key in self.sets)

    async def delete(self, key: str) -> int:
        removed = 0
        for bucket in (self.values, self.lists, self.sets):
            if bucket.pop(key, None) is not None:
                removed += 1
        return removed

    async def expire(self, key: str, ttl: int) -> None:
        self.ttls[key] = ttl

    async def lpush(self, key: str, value: Any) -> None:
        self.lists.setdefault(key, []).insert(0, value.encode("utf-8") if isinstance(value, str) else value)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        values = self.lists.get(key, [])
        self.lists[key] = values[start : stop + 1]

    async def lrange(self, key: str, start: int, stop: int) -> list[Any]:
        values = self.lists.get(key, [])
        return values[start:] if stop == -1 else values[start : stop + 1]

    async def sadd(self, key: str, value: Any) -> None:
        self.sets.setdefault(key, set()).add(value.encode("utf-8") if isinstance(value, str) else value)

    async def srem(self, key: str, value: Any) -> None:
        self.sets.get(key, set()).discard(value.encode("utf-8") if isinstance(value, str) else value)

    async def smembers(self, key: str) -> set[Any]:
        return set(self.sets.get(key, set()))

    async def dbsize(self) -> int:
        return len(self.values) + len(self.lists) + len(self.sets)

    async def aclose(self) -> None:
        self.closed = True


def fast_settings(**overrides: Any) -> Settings:
    """Settings with no backoff or inter-batch delay, suitable for unit tests."""
    payload: dict[str, Any] = {
        "environment": "test",
        "retry": {"max_attempts": 2, "base_delay_seconds": 0.0, "max_delay_seconds": 0.0},
        "batching": {"batch_size": 3, "delay_seconds": 0.0, "call_timeout_seconds": 5.0},
    }
    payload.update(overrides)
    return Settings(**payload)


def make_engine(
    *backends: ModelBackend,
    settings: Settings | None = None,
    clock: FakeClock | None = None,
    tool_registry: ToolRegistry | None = None,
    tool_policy: ToolPolicy | None = None,
) -> Engine:
    settings = settings or fast_settings()
    sleep = RecordingSleep()
    health = ProviderHealthMonitor.from_settings(settings.health, clock=clock or FakeClock())
    return init_engine(
        settings,
        pool=pool_of(*backends),
        store=InMemoryExecutionStore(),
        tool_registry=tool_registry,
        tool_policy=tool_policy,
        health=health,
        sleep=sleep,
    )


async def echo_tool(params: Mapping[str, Any]) -> dict[str, Any]:
    return {"echo": dict(params)}


async def exploding_tool(params: Mapping[str, Any]) -> dict[str, Any]:
    raise RuntimeError("disk on fire")


def registry_with(*names: str, required: Sequence[str] = ()) -> ToolRegistry:
    registry = ToolRegistry()
    for name in names:
        registry.register(
            ToolDescriptor(
                name=name,
                description=f"{name} tool",
                parameters={"path": ToolParameter(description="target path")},
                required=list(required),
            ),
            echo_tool,
        )
    return registry


def make_gateway(*backends: ModelBackend, clock: FakeClock | None = None, max_attempts: int = 1) -> ModelGateway:
    return ModelGateway(
        pool_of(*backends),
        ProviderHealthMonitor(clock=clock or FakeClock()),
        RetryRunner(RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0), sleep=RecordingSleep()),
    )


class ProgressLog:
    def __init__(self) -> None:
        self.values: list[int] = []

    async def __call__(self, value: int) -> None:
        self.values.append(value)


def make_context(
    mode: ExecutionMode,
    models: Sequence[str],
    *backends: ModelBackend,
    message: str = "Design a caching layer for the API",
    settings: ModeSettings | None = None,
    team_settings: TeamSettings | None = None,
    tools: ToolGateway | None = None,
    progress: ProgressLog | None = None,
    batch_timeout: float | None = None,
) -> PhaseContext:
    gateway = make_gateway(*backends)
    return PhaseContext(
        execution_id="exec-test",
        phase=ExecutionPhase(id=f"phase-{mode.value}", mode=mode, models=list(models)),
        original_message=message,
        gateway=gateway,
        batch_runner=RateLimitedBatchRunner(batch_size=3, delay_seconds=0, timeout_seconds=batch_timeout),
        team=TeamAssembler(gateway, settings=team_settings, clock=FakeWallClock()),
        settings=settings or ModeSettings(),
        tools=tools,
        report_progress=progress or ProgressLog(),
    )
