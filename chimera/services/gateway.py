from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Sequence

from ..core import metrics
from ..core.config import Settings
from ..core.errors import BackendError, BackendErrorKind, BackendTimeoutError
from ..core.logging import get_logger
from ..orchestration.retry import RetryPolicy, RetryRunner, RetryState, Sleep
from .backends import BackendPool, CompletionRequest
from .health import ProviderHealthMonitor

logger = get_logger(name=__name__)

RATE_LIMIT_MESSAGE = "The model providers are rate limiting requests right now. Please wait a moment and try again."
AUTH_MESSAGE = "A model provider rejected its credentials. Check the configured API keys."
UNAVAILABLE_MESSAGE = "No model provider is available at the moment. Please try again shortly."
GENERIC_MESSAGE = "The model providers did not respond successfully. Please try again."


@dataclass(slots=True)
class CallObservation:
    """Summary of one logical model call, handed to an optional recorder."""

    provider: str | None
    model_id: str | None
    prompt: str
    system_prompt: str | None
    response: str | None
    error: str | None
    started_at: datetime
    latency_ms: float
    attempts: int


CallRecorder = Callable[[CallObservation], Awaitable[None]]


@dataclass(slots=True)
class ModelCallResult:
    provider: str | None
    model_id: str | None
    content: str = ""
    error: str | None = None
    error_kind: BackendErrorKind | None = None
    attempts: int = 0
    latency_ms: float = 0.0
    states: list[RetryState] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def user_message(self) -> str | None:
        if self.ok:
            return None
        if self.error_kind is BackendErrorKind.RATE_LIMITED:
            return RATE_LIMIT_MESSAGE
        if self.error_kind is BackendErrorKind.AUTH:
            return AUTH_MESSAGE
        if self.error_kind in {BackendErrorKind.CIRCUIT_OPEN, BackendErrorKind.UNAVAILABLE}:
            return UNAVAILABLE_MESSAGE
        return GENERIC_MESSAGE


class ModelGateway:
    """Single entry point for backend calls: health gate, timeout, retry and fallback."""

    def __init__(
        self,
        pool: BackendPool,
        health: ProviderHealthMonitor,
        runner: RetryRunner,
        *,
        call_timeout_seconds: float | None = None,
    ) -> None:
        self._pool = pool
        self._health = health
        self._runner = runner
        self._timeout = call_timeout_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pool: BackendPool,
        *,
        health: ProviderHealthMonitor | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "ModelGateway":
        return cls(
            pool,
            health or ProviderHealthMonitor.from_settings(settings.health),
            RetryRunner(RetryPolicy.from_settings(settings.retry), sleep=sleep),
            call_timeout_seconds=settings.batching.call_timeout_seconds,
        )

    @property
    def pool(self) -> BackendPool:
        return self._pool

    @property
    def health(self) -> ProviderHealthMonitor:
        return self._health

    def available_providers(self, *, healthy_only: bool = False) -> list[str]:
        providers = self._pool.providers()
        if healthy_only:
            return [provider for provider in providers if self._health.is_available(provider)]
        return providers

    def is_available(self, provider: str | None) -> bool:
        return provider is not None and provider in self._pool and self._health.is_available(provider)

    def fallback_order(self, preferred: Sequence[str], *, allow_fallback: bool = True) -> list[str]:
        """Preferred providers first, then the remaining ones with admitted circuits first."""
        ordered: list[str] = []
        for provider in preferred:
            if provider and provider not in ordered:
                ordered.append(provider)
        if not allow_fallback:
            return ordered
        rest = [provider for provider in self._pool.providers() if provider not in ordered]
        rest.sort(key=lambda provider: 0 if self._health.is_available(provider) else 1)
        return ordered + rest

    async def call_once(self, provider: str, request: CompletionRequest, *, check_health: bool = True) -> str:
        backend = self._pool.get(provider)
        if backend is None:
            raise BackendError(
                f"Provider '{provider}' is not configured",
                provider=provider,
                kind=BackendErrorKind.UNAVAILABLE,
            )
        half_open = check_health and not self._health.get(provider).is_healthy
        if check_health:
            self._health.before_call(provider)
        start = time.perf_counter()
        try:
            if self._timeout is not None:
                content = await asyncio.wait_for(backend.complete(request), timeout=self._timeout)
            else:
                content = await backend.complete(request)
        except asyncio.CancelledError:
            # A cancelled probe settles nothing, so the slot goes back.
            if half_open:
                self._health.release_probe(provider)
            raise
        except asyncio.TimeoutError as exc:
            error = BackendTimeoutError(
                f"{provider} did not answer within {self._timeout}s",
                provider=provider,
                kind=BackendErrorKind.TIMEOUT,
            )
            self._fail(provider, error, start)
            raise error from exc
        except BackendError as exc:
            self._fail(provider, exc, start)
            raise
        except Exception as exc:
            error = BackendError(str(exc) or type(exc).__name__, provider=provider, kind=BackendErrorKind.TRANSIENT)
            self._fail(provider, error, start)
            raise error from exc
        if not content or not content.strip():
            error = BackendError(
                f"{provider} returned an empty response",
                provider=provider,
                kind=BackendErrorKind.EMPTY_RESPONSE,
            )
            self._fail(provider, error, start)
            raise error
        self._health.record_success(provider)
        metrics.observe_model_call(provider=provider, success=True, latency=time.perf_counter() - start)
        return content

    def _fail(self, provider: str, error: BackendError, start: float) -> None:
        self._health.record_failure(provider, error)
        metrics.observe_model_call(provider=provider, success=False, latency=time.perf_counter() - start)

    async def generate(
        self,
        prompt: str,
        *,
        providers: Sequence[str] = (),
        system_prompt: str | None = None,
        max_tokens: int = 4096,
        temperature: float | None = None,
        model: str | None = None,
        allow_fallback: bool = True,
        recorder: CallRecorder | None = None,
    ) -> ModelCallResult:
        """Call the first admissible provider, retrying and falling back as needed.

        ``model`` applies to the first preferred provider only; fallbacks use their
        default catalog model.
        """
        order = self.fallback_order(providers, allow_fallback=allow_fallback)
        if not providers:
            order = self.fallback_order(self._pool.providers(), allow_fallback=allow_fallback)
        primary = order[0] if order else None

        def _model_for(provider: str) -> str:
            if model and provider == primary:
                return model
            return self._pool.default_model(provider)

        async def _call(provider: str) -> str:
            request = CompletionRequest(
                model=_model_for(provider),
                prompt=prompt,
                system_prompt=system_prompt,
                max_tokens=max_tokens,
                temperature=temperature,
            )
            return await self.call_once(provider, request)

        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()
        outcome = await self._runner.run(_call, order)
        latency_ms = (time.perf_counter() - start) * 1000
        provider = outcome.provider if outcome.ok else (outcome.error.provider if outcome.error else None)
        result = ModelCallResult(
            provider=provider,
            model_id=_model_for(provider) if provider else None,
            content=outcome.value if outcome.ok else "",
            error=None if outcome.ok else str(outcome.error),
            error_kind=None if outcome.ok or outcome.error is None else outcome.error.kind,
            attempts=outcome.attempts,
            latency_ms=latency_ms,
            states=outcome.states,
        )
        if recorder is not None:
            await recorder(
                CallObservation(
                    provider=result.provider,
                    model_id=result.model_id,
                    prompt=prompt,
                    system_prompt=system_prompt,
                    response=result.content if result.ok else None,
                    error=result.error,
                    started_at=started_at,
                    latency_ms=latency_ms,
                    attempts=result.attempts,
                )
            )
        return result

    async def probe(self, provider: str, *, timeout_seconds: float = 30.0) -> ModelCallResult:
        """Deep health check that bypasses the circuit but still records the outcome."""
        request = CompletionRequest(
            model=self._pool.default_model(provider),
            prompt='Reply with just "OK"',
            system_prompt='You are a health check bot. Reply with exactly "OK" and nothing else.',
            max_tokens=8,
        )
        start = time.perf_counter()
        try:
            content = await asyncio.wait_for(self.call_once(provider, request, check_health=False), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            return ModelCallResult(
                provider=provider,
                model_id=request.model,
                error="health probe timed out",
                error_kind=BackendErrorKind.TIMEOUT,
                attempts=1,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        except BackendError as exc:
            return ModelCallResult(
                provider=provider,
                model_id=request.model,
                error=str(exc),
                error_kind=exc.kind,
                attempts=1,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        return ModelCallResult(
            provider=provider,
            model_id=request.model,
            content=content,
            attempts=1,
            latency_ms=(time.perf_counter() - start) * 1000,
        )

    async def aclose(self) -> None:
        await self._pool.aclose()
