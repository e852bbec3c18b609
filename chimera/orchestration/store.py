from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable

from pydantic import ValidationError
from redis.asyncio import Redis

from ..core.config import StoreSettings
from ..core.errors import ExecutionNotFoundError
from ..core.logging import get_logger
from .state import AuditEvent, AuditLogEntry, ExecutionState, ExecutionStatus

logger = get_logger(name=__name__)

TimestampFactory = Callable[[], datetime]

ACTIVE_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING})


@dataclass(slots=True)
class StoreLimits:
    execution_ttl_seconds: int = 86400
    idempotency_ttl_seconds: int = 3600
    audit_ttl_seconds: int = 604800
    audit_log_limit: int = 1000
    audit_trim: int = 100

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "StoreLimits":
        return cls(
            execution_ttl_seconds=settings.execution_ttl_seconds,
            idempotency_ttl_seconds=settings.idempotency_ttl_seconds,
            audit_ttl_seconds=settings.audit_ttl_seconds,
            audit_log_limit=settings.audit_log_limit,
            audit_trim=settings.audit_trim,
        )


class ExecutionStore(ABC):
    """Key-value persistence for execution state, idempotency keys and the audit trail.

    Stores hand out copies: mutating a returned state has no effect until it is written
    back through :meth:`update`.
    """

    mode: str = "abstract"

    def __init__(self, *, limits: StoreLimits | None = None, now: TimestampFactory | None = None) -> None:
        self._limits = limits or StoreLimits()
        self._now: TimestampFactory = now or (lambda: datetime.now(timezone.utc))

    @property
    def limits(self) -> StoreLimits:
        return self._limits

    def now(self) -> datetime:
        return self._now()

    @abstractmethod
    async def create(self, state: ExecutionState) -> ExecutionState: ...

    @abstractmethod
    async def get(self, execution_id: str) -> ExecutionState | None: ...

    @abstractmethod
    async def update(self, state: ExecutionState) -> ExecutionState: ...

    @abstractmethod
    async def delete(self, execution_id: str) -> bool: ...

    @abstractmethod
    async def map_idempotency_key(self, key: str, execution_id: str, *, ttl: int | None = None) -> None: ...

    @abstractmethod
    async def lookup_idempotency_key(self, key: str) -> str | None: ...

    @abstractmethod
    async def append_audit(self, entry: AuditLogEntry) -> None: ...

    @abstractmethod
    async def list_audit(self, execution_id: str) -> list[AuditLogEntry]: ...

    @abstractmethod
    async def active_executions(self) -> list[str]: ...

    @abstractmethod
    async def cleanup(self) -> int: ...

    async def require(self, execution_id: str) -> ExecutionState:
        state = await self.get(execution_id)
        if state is None:
            raise ExecutionNotFoundError(f"Execution '{execution_id}' was not found")
        return state

    async def audit(
        self,
        execution_id: str,
        event: AuditEvent,
        *,
        phase_id: str | None = None,
        **details: Any,
    ) -> None:
        await self.append_audit(
            AuditLogEntry(
                execution_id=execution_id,
                event=event,
                phase_id=phase_id,
                details=details,
                timestamp=self.now(),
            )
        )

    async def cancel(self, execution_id: str) -> ExecutionState:
        """Mark a non-terminal execution cancelled; finished executions are returned unchanged."""
        state = await self.require(execution_id)
        if state.status in {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}:
            return state
        previous = state.status
        state.status = ExecutionStatus.CANCELLED
        await self.audit(execution_id, AuditEvent.CANCELLED, previous_status=previous.value)
        return await self.update(state)

    async def stats(self) -> dict[str, Any]:
        active = await self.active_executions()
        return {"mode": self.mode, "active_executions": len(active)}

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["ExecutionStore"]:
        try:
            yield self
        finally:
            await self.close()


class InMemoryExecutionStore(ExecutionStore):
    """Process-local store. States are kept serialized so callers never share instances."""

    mode = "memory"

    def __init__(self, *, limits: StoreLimits | None = None, now: TimestampFactory | None = None) -> None:
        super().__init__(limits=limits, now=now)
        self._executions: dict[str, str] = {}
        self._idempotency: dict[str, tuple[str, datetime]] = {}
        self._audit: list[AuditLogEntry] = []

    async def create(self, state: ExecutionState) -> ExecutionState:
        state.created_at = state.updated_at = self.now()
        self._executions[state.id] = state.model_dump_json()
        return ExecutionState.model_validate_json(self._executions[state.id])

    async def get(self, execution_id: str) -> ExecutionState | None:
        payload = self._executions.get(execution_id)
        if payload is None:
            return None
        return ExecutionState.model_validate_json(payload)

    async def update(self, state: ExecutionState) -> ExecutionState:
        if state.id not in self._executions:
            raise ExecutionNotFoundError(f"Execution '{state.id}' was not found")
        state.updated_at = self.now()
        self._executions[state.id] = state.model_dump_json()
        return ExecutionState.model_validate_json(self._executions[state.id])

    async def delete(self, execution_id: str) -> bool:
        return self._executions.pop(execution_id, None) is not None

    async def map_idempotency_key(self, key: str, execution_id: str, *, ttl: int | None = None) -> None:
        expires_at = self.now() + timedelta(seconds=ttl or self._limits.idempotency_ttl_seconds)
        self._idempotency[key] = (execution_id, expires_at)

    async def lookup_idempotency_key(self, key: str) -> str | None:
        entry = self._idempotency.get(key)
        if entry is None:
            return None
        execution_id, expires_at = entry
        if self.now() >= expires_at:
            del self._idempotency[key]
            return None
        return execution_id

    async def append_audit(self, entry: AuditLogEntry) -> None:
        self._audit.append(entry)
        if len(self._audit) > self._limits.audit_log_limit:
            del self._audit[: self._limits.audit_trim]

    async def list_audit(self, execution_id: str) -> list[AuditLogEntry]:
        entries = [entry for entry in self._audit if entry.execution_id == execution_id]
        return sorted(entries, key=lambda entry: entry.timestamp)

    async def active_executions(self) -> list[str]:
        active: list[str] = []
        for execution_id, payload in self._executions.items():
            state = ExecutionState.model_validate_json(payload)
            if state.status in ACTIVE_STATUSES:
                active.append(execution_id)
        return active

    async def cleanup(self) -> int:
        """Drop executions idle past their TTL along with expired idempotency keys."""
        now = self.now()
        horizon = now - timedelta(seconds=self._limits.execution_ttl_seconds)
        expired: list[str] = []
        for execution_id, payload in self._executions.items():
            try:
                state = ExecutionState.model_validate_json(payload)
            except ValidationError:
                expired.append(execution_id)
                continue
            if state.updated_at < horizon:
                expired.append(execution_id)
        for execution_id in expired:
            del self._executions[execution_id]
        for key in [key for key, (_, expires_at) in self._idempotency.items() if now >= expires_at]:
            del self._idempotency[key]
        if expired:
            logger.info("execution_store_cleanup", removed=len(expired))
        return len(expired)

    async def stats(self) -> dict[str, Any]:
        stats = await super().stats()
        stats["total_keys"] = len(self._executions) + len(self._idempotency)
        return stats


class RedisExecutionStore(ExecutionStore):
    """Redis-backed store: one key per execution, an idempotency index, a capped audit
    list per execution and a set of active execution ids. Redis owns expiry."""

    mode = "redis"

    def __init__(
        self,
        client: Any,
        *,
        namespace: str = "chimera",
        limits: StoreLimits | None = None,
        now: TimestampFactory | None = None,
    ) -> None:
        super().__init__(limits=limits, now=now)
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_settings(cls, settings: StoreSettings) -> "RedisExecutionStore":
        client = Redis.from_url(str(settings.redis_url))
        return cls(client, namespace=settings.namespace, limits=StoreLimits.from_settings(settings))

    def _key(self, *parts: str) -> str:
        return ":".join((self._namespace, *parts))

    async def create(self, state: ExecutionState) -> ExecutionState:
        state.created_at = state.updated_at = self.now()
        await self._write(state)
        return state.model_copy(deep=True)

    async def get(self, execution_id: str) -> ExecutionState | None:
        value = await self._client.get(self._key("execution", execution_id))
        if value is None:
            return None
        try:
            return ExecutionState.model_validate_json(_decode(value))
        except ValidationError:
            logger.warning("redis_execution_payload_invalid", execution_id=execution_id)
            return None

    async def update(self, state: ExecutionState) -> ExecutionState:
        exists = await self._client.exists(self._key("execution", state.id))
        if not exists:
            raise ExecutionNotFoundError(f"Execution '{state.id}' was not found")
        state.updated_at = self.now()
        await self._write(state)
        return state.model_copy(deep=True)

    async def _write(self, state: ExecutionState) -> None:
        await self._client.setex(
            self._key("execution", state.id),
            self._limits.execution_ttl_seconds,
            state.model_dump_json(),
        )
        if state.status in ACTIVE_STATUSES:
            await self._client.sadd(self._key("active"), state.id)
        else:
            await self._client.srem(self._key("active"), state.id)

    async def delete(self, execution_id: str) -> bool:
        removed = await self._client.delete(self._key("execution", execution_id))
        await self._client.srem(self._key("active"), execution_id)
        return bool(removed)

    async def map_idempotency_key(self, key: str, execution_id: str, *, ttl: int | None = None) -> None:
        await self._client.setex(
            self._key("idempotency", key),
            ttl or self._limits.idempotency_ttl_seconds,
            execution_id,
        )

    async def lookup_idempotency_key(self, key: str) -> str | None:
        value = await self._client.get(self._key("idempotency", key))
        return _decode(value) if value is not None else None

    async def append_audit(self, entry: AuditLogEntry) -> None:
        key = self._key("audit", entry.execution_id)
        await self._client.lpush(key, entry.model_dump_json())
        await self._client.ltrim(key, 0, self._limits.audit_log_limit - 1)
        await self._client.expire(key, self._limits.audit_ttl_seconds)

    async def list_audit(self, execution_id: str) -> list[AuditLogEntry]:
        values = await self._client.lrange(self._key("audit", execution_id), 0, -1)
        return [AuditLogEntry.model_validate_json(_decode(value)) for value in reversed(values)]

    async def active_executions(self) -> list[str]:
        members = await self._client.smembers(self._key("active"))
        return sorted(_decode(member) for member in members)

    async def cleanup(self) -> int:
        """Prune active-set members whose execution key has already expired."""
        removed = 0
        for execution_id in await self.active_executions():
            if not await self._client.exists(self._key("execution", execution_id)):
                await self._client.srem(self._key("active"), execution_id)
                removed += 1
        return removed

    async def stats(self) -> dict[str, Any]:
        stats = await super().stats()
        stats["total_keys"] = await self._client.dbsize()
        return stats

    async def close(self) -> None:
        await self._client.aclose()


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def build_store(settings: StoreSettings) -> ExecutionStore:
    if settings.backend == "redis":
        logger.info("execution_store_selected", mode="redis", namespace=settings.namespace)
        return RedisExecutionStore.from_settings(settings)
    logger.info("execution_store_selected", mode="memory")
    return InMemoryExecutionStore(limits=StoreLimits.from_settings(settings))
