from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from ..core import metrics
from ..core.config import HealthSettings
from ..core.errors import BackendErrorKind, CircuitOpenError
from ..core.logging import get_logger

logger = get_logger(name=__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class ProviderHealth:
    provider: str
    last_success: datetime | None = None
    last_error: float | None = None
    consecutive_failures: int = 0
    is_healthy: bool = True
    error_message: str | None = None
    probe_in_flight: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "healthy": self.is_healthy,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.error_message,
            "last_success": self.last_success.isoformat() if self.last_success else None,
        }


class ProviderHealthMonitor:
    """Per-provider circuit breaker.

    A provider turns unhealthy after ``failure_threshold`` consecutive failures. While
    unhealthy and inside the cooldown window measured from the last failure, calls are
    rejected with :class:`CircuitOpenError` without touching the network. Once the
    cooldown elapses a single probing call is admitted (half-open); its outcome either
    closes the circuit or re-opens it for another cooldown.

    All mutations happen synchronously between awaits, so each update is atomic with
    respect to other coroutines on the same loop.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self._threshold = max(1, failure_threshold)
        self._cooldown = max(0.0, cooldown_seconds)
        self._clock = clock
        self._providers: dict[str, ProviderHealth] = {}

    @classmethod
    def from_settings(cls, settings: HealthSettings, *, clock: Clock = time.monotonic) -> "ProviderHealthMonitor":
        return cls(
            failure_threshold=settings.failure_threshold,
            cooldown_seconds=settings.cooldown_seconds,
            clock=clock,
        )

    @property
    def failure_threshold(self) -> int:
        return self._threshold

    def _entry(self, provider: str) -> ProviderHealth:
        entry = self._providers.get(provider)
        if entry is None:
            entry = ProviderHealth(provider=provider)
            self._providers[provider] = entry
        return entry

    def get(self, provider: str) -> ProviderHealth:
        return self._entry(provider)

    def cooldown_remaining(self, provider: str) -> float:
        entry = self._entry(provider)
        if entry.is_healthy or entry.last_error is None:
            return 0.0
        return max(0.0, entry.last_error + self._cooldown - self._clock())

    def is_available(self, provider: str) -> bool:
        """Return True when a call to ``provider`` would currently be admitted."""
        entry = self._entry(provider)
        if entry.is_healthy:
            return True
        return not entry.probe_in_flight and self.cooldown_remaining(provider) <= 0.0

    def before_call(self, provider: str) -> None:
        entry = self._entry(provider)
        if entry.is_healthy:
            return
        remaining = self.cooldown_remaining(provider)
        if remaining > 0.0 or entry.probe_in_flight:
            metrics.increment_circuit_open(provider=provider)
            logger.warning(
                "provider_circuit_open",
                provider=provider,
                consecutive_failures=entry.consecutive_failures,
                cooldown_remaining=remaining,
            )
            raise CircuitOpenError(
                f"Provider '{provider}' is temporarily unavailable",
                provider=provider,
                kind=BackendErrorKind.CIRCUIT_OPEN,
            )
        entry.probe_in_flight = True
        logger.info("provider_circuit_half_open", provider=provider)

    def record_success(self, provider: str) -> None:
        entry = self._entry(provider)
        was_unhealthy = not entry.is_healthy
        entry.consecutive_failures = 0
        entry.is_healthy = True
        entry.probe_in_flight = False
        entry.error_message = None
        entry.last_success = datetime.now(timezone.utc)
        metrics.set_provider_health(provider=provider, healthy=True)
        if was_unhealthy:
            logger.info("provider_circuit_closed", provider=provider)

    def record_failure(self, provider: str, error: BaseException | str) -> None:
        entry = self._entry(provider)
        entry.consecutive_failures += 1
        entry.last_error = self._clock()
        entry.error_message = str(error)
        was_probe = entry.probe_in_flight
        entry.probe_in_flight = False
        if entry.is_healthy and entry.consecutive_failures >= self._threshold:
            entry.is_healthy = False
            metrics.increment_circuit_trip(provider=provider)
            metrics.set_provider_health(provider=provider, healthy=False)
            logger.warning(
                "provider_circuit_tripped",
                provider=provider,
                consecutive_failures=entry.consecutive_failures,
                error=entry.error_message,
            )
        elif was_probe:
            logger.warning("provider_probe_failed", provider=provider, error=entry.error_message)

    def release_probe(self, provider: str) -> None:
        """Give back a half-open slot whose call was cancelled before it settled."""
        self._entry(provider).probe_in_flight = False

    def snapshot(self, providers: Iterable[str] | None = None) -> dict[str, ProviderHealth]:
        names = list(providers) if providers is not None else list(self._providers)
        return {name: self._entry(name) for name in names}

    def reset(self) -> None:
        self._providers.clear()
