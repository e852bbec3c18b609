from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from chimera.core.errors import BackendErrorKind
from chimera.orchestration.retry import RetryPolicy, RetryRunner, RetryState
from chimera.services.gateway import RATE_LIMIT_MESSAGE, CallObservation, ModelGateway
from chimera.services.health import ProviderHealthMonitor
from tests.helpers.stubs import FakeClock, RecordingSleep, ScriptedBackend, failing, pool_of


def _gateway(*backends, max_attempts: int = 2, clock: FakeClock | None = None, timeout: float | None = None) -> ModelGateway:
    health = ProviderHealthMonitor(failure_threshold=5, cooldown_seconds=60, clock=clock or FakeClock())
    runner = RetryRunner(RetryPolicy(max_attempts=max_attempts, base_delay_seconds=0), sleep=RecordingSleep())
    return ModelGateway(pool_of(*backends), health, runner, call_timeout_seconds=timeout)


@pytest.mark.asyncio
async def test_generate_uses_preferred_provider_and_catalog_model():
    claude = ScriptedBackend("claude", ["hello"])
    gateway = _gateway(claude, ScriptedBackend("openai"))

    result = await gateway.generate("hi", providers=["claude"], system_prompt="sys", max_tokens=100)

    assert result.ok
    assert result.content == "hello"
    assert result.provider == "claude"
    assert result.model_id == "claude-opus-4-5"
    assert claude.calls[0].system_prompt == "sys"
    assert claude.calls[0].max_tokens == 100


@pytest.mark.asyncio
async def test_generate_falls_back_after_retries():
    claude = ScriptedBackend("claude", [failing("claude"), failing("claude")])
    openai = ScriptedBackend("openai", ["backup"])
    gateway = _gateway(claude, openai)

    result = await gateway.generate("hi", providers=["claude"])

    assert result.provider == "openai"
    assert result.content == "backup"
    assert result.attempts == 3
    assert RetryState.FALLBACK in result.states
    assert openai.calls[0].model == "gpt-4o"


@pytest.mark.asyncio
async def test_generate_without_fallback_reports_error():
    claude = ScriptedBackend("claude", [failing("claude", BackendErrorKind.RATE_LIMITED, 429)] * 2)
    gateway = _gateway(claude, ScriptedBackend("openai"))

    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)

    assert not result.ok
    assert result.error_kind is BackendErrorKind.RATE_LIMITED
    assert result.user_message == RATE_LIMIT_MESSAGE


@pytest.mark.asyncio
async def test_empty_response_is_an_error():
    gateway = _gateway(ScriptedBackend("claude", ["   "]), max_attempts=1)

    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)

    assert result.error_kind is BackendErrorKind.EMPTY_RESPONSE


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_transient():
    gateway = _gateway(ScriptedBackend("claude", [RuntimeError("socket closed")]), max_attempts=1)

    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)

    assert result.error_kind is BackendErrorKind.TRANSIENT
    assert "socket closed" in result.error


@pytest.mark.asyncio
async def test_per_call_timeout():
    async def _slow(request):
        await asyncio.sleep(5)
        return "late"

    class _SlowBackend(ScriptedBackend):
        async def complete(self, request):
            self.calls.append(request)
            return await _slow(request)

    gateway = _gateway(_SlowBackend("claude"), max_attempts=1, timeout=0.01)

    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)

    assert result.error_kind is BackendErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_sixth_call_is_short_circuited_until_cooldown():
    clock = FakeClock()
    claude = ScriptedBackend("claude", default=failing("claude"))
    gateway = _gateway(claude, max_attempts=1, clock=clock)

    for _ in range(5):
        result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)
        assert result.error_kind is BackendErrorKind.TRANSIENT
    assert len(claude.calls) == 5

    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)
    assert result.error_kind is BackendErrorKind.CIRCUIT_OPEN
    assert len(claude.calls) == 5

    clock.advance(61)
    claude.push("recovered")
    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)
    assert result.content == "recovered"
    assert gateway.health.get("claude").is_healthy is True


@pytest.mark.asyncio
async def test_open_circuit_provider_is_skipped_in_fallback_order():
    clock = FakeClock()
    gateway = _gateway(ScriptedBackend("claude"), ScriptedBackend("openai"), clock=clock)
    for _ in range(5):
        gateway.health.record_failure("claude", "down")

    assert gateway.fallback_order(["gemini"]) == ["gemini", "openai", "claude"]
    assert gateway.available_providers(healthy_only=True) == ["openai"]
    assert gateway.is_available("claude") is False


@pytest.mark.asyncio
async def test_recorder_receives_observation():
    seen: list[CallObservation] = []

    async def recorder(observation: CallObservation) -> None:
        seen.append(observation)

    gateway = _gateway(ScriptedBackend("claude", ["fine"]))
    await gateway.generate("prompt text", providers=["claude"], recorder=recorder)

    assert len(seen) == 1
    assert seen[0].provider == "claude"
    assert seen[0].prompt == "prompt text"
    assert seen[0].response == "fine"
    assert seen[0].attempts == 1


@pytest.mark.asyncio
async def test_model_call_metrics_by_outcome():
    labels = {"provider": "deepseek", "outcome": "failure"}
    before = REGISTRY.get_sample_value("chimera_model_calls_total", labels) or 0.0
    gateway = _gateway(ScriptedBackend("deepseek", [failing("deepseek", BackendErrorKind.CLIENT, 400)]))

    await gateway.generate("hi", providers=["deepseek"], allow_fallback=False)

    after = REGISTRY.get_sample_value("chimera_model_calls_total", labels)
    assert after == pytest.approx(before + 1.0)


@pytest.mark.asyncio
async def test_probe_bypasses_open_circuit():
    gateway = _gateway(ScriptedBackend("claude", ["OK"]))
    for _ in range(5):
        gateway.health.record_failure("claude", "down")

    result = await gateway.probe("claude", timeout_seconds=1)

    assert result.ok
    assert gateway.health.get("claude").is_healthy is True


@pytest.mark.asyncio
async def test_unknown_provider_is_unavailable():
    gateway = _gateway(ScriptedBackend("claude"))

    result = await gateway.generate("hi", providers=["mistral"], allow_fallback=False)

    assert result.error_kind is BackendErrorKind.UNAVAILABLE


@pytest.mark.asyncio
async def test_cancelled_half_open_call_gives_the_slot_back():
    class _StallingBackend(ScriptedBackend):
        stall = False

        async def complete(self, request):
            if self.stall:
                self.calls.append(request)
                await asyncio.sleep(10)
            return await super().complete(request)

    clock = FakeClock()
    claude = _StallingBackend("claude", default=failing("claude"))
    gateway = _gateway(claude, max_attempts=1, clock=clock)
    for _ in range(5):
        await gateway.generate("hi", providers=["claude"], allow_fallback=False)

    clock.advance(61)
    claude.stall = True
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(gateway.generate("hi", providers=["claude"], allow_fallback=False), 0.05)

    assert gateway.health.get("claude").probe_in_flight is False
    assert gateway.is_available("claude") is True

    claude.stall = False
    claude.push("recovered")
    result = await gateway.generate("hi", providers=["claude"], allow_fallback=False)

    assert result.content == "recovered"
    assert gateway.health.get("claude").is_healthy is True
