from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Sequence

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

from ..core import metrics
from ..core.config import RetrySettings
from ..core.errors import BackendError, BackendErrorKind
from ..core.logging import get_logger

logger = get_logger(name=__name__)

Sleep = Callable[[float], Awaitable[None]]
ProviderCall = Callable[[str], Awaitable[Any]]


class RetryState(str, Enum):
    ATTEMPT = "attempt"
    RETRY = "retry"
    FALLBACK = "fallback"
    FAIL = "fail"
    SUCCESS = "success"


RETRYABLE_KINDS = frozenset({BackendErrorKind.TRANSIENT, BackendErrorKind.TIMEOUT, BackendErrorKind.RATE_LIMITED})


def decide(kind: BackendErrorKind, *, attempts_left: bool, has_fallback: bool) -> RetryState:
    """Next state after a failed attempt.

    Auth failures end the run outright. Transient, timeout and rate-limit failures are
    retried on the same provider while attempts remain. Everything else (and exhausted
    retries) moves to the next provider, or fails when none is left.
    """
    if kind is BackendErrorKind.AUTH:
        return RetryState.FAIL
    if kind in RETRYABLE_KINDS and attempts_left:
        return RetryState.RETRY
    return RetryState.FALLBACK if has_fallback else RetryState.FAIL


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    jitter_seconds: float = 0.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            multiplier=settings.multiplier,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_seconds=settings.jitter_seconds,
        )

    def wait_strategy(self) -> Any:
        strategy = wait_exponential(
            multiplier=self.base_delay_seconds,
            exp_base=self.multiplier,
            max=self.max_delay_seconds,
        )
        if self.jitter_seconds > 0:
            strategy = strategy + wait_random(0, self.jitter_seconds)
        return strategy


@dataclass(slots=True)
class Transition:
    state: RetryState
    provider: str | None
    error_kind: BackendErrorKind | None = None


@dataclass(slots=True)
class RetryOutcome:
    value: Any = None
    provider: str | None = None
    error: BackendError | None = None
    attempts: int = 0
    transitions: list[Transition] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def states(self) -> list[RetryState]:
        return [transition.state for transition in self.transitions]


class RetryRunner:
    """Drives one logical backend call through Attempt -> Retry | Fallback | Fail.

    Retries against a single provider are scheduled by tenacity using the policy's
    exponential backoff; the transition out of a provider is chosen by :func:`decide`.
    Failures never escape as exceptions: the caller always receives a
    :class:`RetryOutcome`.
    """

    def __init__(self, policy: RetryPolicy | None = None, *, sleep: Sleep = asyncio.sleep) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def run(self, call: ProviderCall, providers: Sequence[str]) -> RetryOutcome:
        outcome = RetryOutcome()
        if not providers:
            outcome.error = BackendError("No model providers are available", kind=BackendErrorKind.UNAVAILABLE)
            self._record(outcome, RetryState.FAIL, None, outcome.error)
            return outcome

        for index, provider in enumerate(providers):
            has_fallback = index < len(providers) - 1
            try:
                outcome.value = await self._run_provider(call, provider, outcome, has_fallback=has_fallback)
            except BackendError as exc:
                outcome.error = exc
                state = decide(exc.kind, attempts_left=False, has_fallback=has_fallback)
                self._record(outcome, state, provider, exc)
                if state is RetryState.FAIL:
                    return outcome
                continue
            outcome.provider = provider
            outcome.error = None
            self._record(outcome, RetryState.SUCCESS, provider)
            return outcome
        return outcome

    async def _run_provider(
        self,
        call: ProviderCall,
        provider: str,
        outcome: RetryOutcome,
        *,
        has_fallback: bool,
    ) -> Any:
        def _should_retry(exc: BaseException) -> bool:
            return isinstance(exc, BackendError) and (
                decide(exc.kind, attempts_left=True, has_fallback=has_fallback) is RetryState.RETRY
            )

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            self._record(outcome, RetryState.RETRY, provider, error)
            logger.info(
                "backend_call_retry",
                provider=provider,
                attempt=retry_state.attempt_number,
                max_attempts=self._policy.max_attempts,
                error=str(error) if error else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max_attempts),
            wait=self._policy.wait_strategy(),
            retry=retry_if_exception(_should_retry),
            before_sleep=_before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        value: Any = None
        async for attempt in retrying:
            with attempt:
                outcome.attempts += 1
                self._record(outcome, RetryState.ATTEMPT, provider)
                value = await call(provider)
        return value

    @staticmethod
    def _record(
        outcome: RetryOutcome,
        state: RetryState,
        provider: str | None,
        error: BaseException | None = None,
    ) -> None:
        kind = error.kind if isinstance(error, BackendError) else None
        outcome.transitions.append(Transition(state=state, provider=provider, error_kind=kind))
        metrics.record_retry_transition(state=state.value)
        if state is RetryState.FALLBACK:
            logger.warning("backend_call_fallback", provider=provider, error_kind=kind.value if kind else None)
        elif state is RetryState.FAIL:
            logger.warning("backend_call_failed", provider=provider, error_kind=kind.value if kind else None)
