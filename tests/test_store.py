from __future__ import annotations

import pytest

from chimera.core.config import StoreSettings
from chimera.core.errors import ExecutionNotFoundError
from chimera.orchestration.classifier import ExecutionMode
from chimera.orchestration.planner import ExecutionPhase, ExecutionPlan
from chimera.orchestration.state import AuditEvent, ExecutionStatus, new_execution_state
from chimera.orchestration.store import (
    InMemoryExecutionStore,
    RedisExecutionStore,
    StoreLimits,
    build_store,
)
from tests.helpers.stubs import FakeWallClock, StubRedis


def _plan() -> ExecutionPlan:
    return ExecutionPlan(original_message="build it", phases=[ExecutionPhase(id="phase-single", mode=ExecutionMode.SINGLE)])


def _memory(clock: FakeWallClock, limits: StoreLimits | None = None) -> InMemoryExecutionStore:
    return InMemoryExecutionStore(limits=limits, now=clock)


def _redis(clock: FakeWallClock, limits: StoreLimits | None = None) -> RedisExecutionStore:
    return RedisExecutionStore(StubRedis(), namespace="test", limits=limits, now=clock)


@pytest.fixture(params=["memory", "redis"])
def make_store(request):
    factory = _memory if request.param == "memory" else _redis

    def _make(clock: FakeWallClock | None = None, limits: StoreLimits | None = None):
        return factory(clock or FakeWallClock(), limits)

    return _make


@pytest.mark.asyncio
async def test_create_get_update_roundtrip(make_store):
    clock = FakeWallClock()
    store = make_store(clock)
    created = await store.create(new_execution_state(_plan()))

    clock.advance(5)
    loaded = await store.get(created.id)
    loaded.status = ExecutionStatus.RUNNING
    updated = await store.update(loaded)

    assert updated.status is ExecutionStatus.RUNNING
    assert (updated.updated_at - created.created_at).total_seconds() == pytest.approx(5)
    assert (await store.get(created.id)).status is ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_returned_states_are_copies(make_store):
    store = make_store()
    created = await store.create(new_execution_state(_plan()))

    created.status = ExecutionStatus.FAILED

    assert (await store.get(created.id)).status is ExecutionStatus.PENDING


@pytest.mark.asyncio
async def test_update_and_require_unknown_execution(make_store):
    store = make_store()

    assert await store.get("exec-missing") is None
    with pytest.raises(ExecutionNotFoundError):
        await store.require("exec-missing")
    with pytest.raises(ExecutionNotFoundError):
        await store.update(new_execution_state(_plan()))


@pytest.mark.asyncio
async def test_idempotency_mapping(make_store):
    store = make_store()
    state = await store.create(new_execution_state(_plan()))

    await store.map_idempotency_key("abc", state.id)

    assert await store.lookup_idempotency_key("abc") == state.id
    assert await store.lookup_idempotency_key("other") is None


@pytest.mark.asyncio
async def test_audit_entries_are_ordered_per_execution(make_store):
    clock = FakeWallClock()
    store = make_store(clock)
    first = await store.create(new_execution_state(_plan()))
    second = await store.create(new_execution_state(_plan()))

    await store.audit(first.id, AuditEvent.CREATED)
    clock.advance(1)
    await store.audit(second.id, AuditEvent.CREATED)
    clock.advance(1)
    await store.audit(first.id, AuditEvent.PHASE_STARTED, phase_id="phase-single", attempt=1)

    entries = await store.list_audit(first.id)
    assert [entry.event for entry in entries] == [AuditEvent.CREATED, AuditEvent.PHASE_STARTED]
    assert entries[1].details == {"attempt": 1}
    assert entries[1].phase_id == "phase-single"


@pytest.mark.asyncio
async def test_active_executions_and_cancel(make_store):
    store = make_store()
    running = await store.create(new_execution_state(_plan()))
    done = new_execution_state(_plan())
    done.status = ExecutionStatus.COMPLETED
    await store.create(done)

    assert await store.active_executions() == [running.id]

    cancelled = await store.cancel(running.id)
    assert cancelled.status is ExecutionStatus.CANCELLED
    assert await store.active_executions() == []
    assert (await store.cancel(done.id)).status is ExecutionStatus.COMPLETED
    assert AuditEvent.CANCELLED in [entry.event for entry in await store.list_audit(running.id)]


@pytest.mark.asyncio
async def test_stats_reports_mode_and_keys(make_store):
    store = make_store()
    await store.create(new_execution_state(_plan()))

    stats = await store.stats()

    assert stats["mode"] in {"memory", "redis"}
    assert stats["active_executions"] == 1
    assert stats["total_keys"] >= 1


@pytest.mark.asyncio
async def test_memory_cleanup_drops_idle_executions_and_expired_keys():
    clock = FakeWallClock()
    store = _memory(clock, StoreLimits(execution_ttl_seconds=60, idempotency_ttl_seconds=10))
    old = await store.create(new_execution_state(_plan()))
    await store.map_idempotency_key("old", old.id)
    clock.advance(30)
    fresh = await store.create(new_execution_state(_plan()))

    clock.advance(31)
    removed = await store.cleanup()

    assert removed == 1
    assert await store.get(old.id) is None
    assert await store.get(fresh.id) is not None
    assert await store.lookup_idempotency_key("old") is None


@pytest.mark.asyncio
async def test_memory_idempotency_key_expires():
    clock = FakeWallClock()
    store = _memory(clock, StoreLimits(idempotency_ttl_seconds=10))
    await store.map_idempotency_key("k", "exec-1")

    clock.advance(10)

    assert await store.lookup_idempotency_key("k") is None


@pytest.mark.asyncio
async def test_memory_audit_log_is_trimmed():
    store = _memory(FakeWallClock(), StoreLimits(audit_log_limit=10, audit_trim=5))

    for _ in range(11):
        await store.audit("exec-1", AuditEvent.MODEL_CALL)

    assert len(await store.list_audit("exec-1")) == 6


@pytest.mark.asyncio
async def test_redis_keys_use_namespace_and_ttls():
    client = StubRedis()
    store = RedisExecutionStore(client, namespace="ns", limits=StoreLimits(execution_ttl_seconds=120, audit_log_limit=10))
    state = await store.create(new_execution_state(_plan()))
    await store.map_idempotency_key("abc", state.id, ttl=30)
    for _ in range(12):
        await store.audit(state.id, AuditEvent.MODEL_CALL)

    assert client.ttls[f"ns:execution:{state.id}"] == 120
    assert client.ttls["ns:idempotency:abc"] == 30
    assert len(client.lists[f"ns:audit:{state.id}"]) == 10
    assert "ns:active" in client.sets


@pytest.mark.asyncio
async def test_redis_cleanup_prunes_expired_active_members():
    client = StubRedis()
    store = RedisExecutionStore(client, namespace="ns")
    state = await store.create(new_execution_state(_plan()))
    del client.values[f"ns:execution:{state.id}"]

    assert await store.cleanup() == 1
    assert await store.active_executions() == []


@pytest.mark.asyncio
async def test_redis_ignores_corrupt_payload_and_closes_client():
    client = StubRedis()
    store = RedisExecutionStore(client)
    client.values["chimera:execution:bad"] = b"{not json"

    assert await store.get("bad") is None
    async with store.lifecycle():
        pass
    assert client.closed is True


def test_build_store_selects_backend():
    assert isinstance(build_store(StoreSettings()), InMemoryExecutionStore)
    assert isinstance(build_store(StoreSettings(backend="redis")), RedisExecutionStore)
