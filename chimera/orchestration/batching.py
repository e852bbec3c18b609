from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from ..core import metrics
from ..core.config import BatchSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)

T = TypeVar("T")
Job = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class BatchOutcome(Generic[T]):
    index: int
    value: T | None = None
    error: BaseException | None = None
    timed_out: bool = False
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


class RateLimitedBatchRunner:
    """Runs independent jobs in fixed-width concurrent batches with a pause between them.

    This is client-side admission control: at most ``batch_size`` jobs are in flight,
    and each job is bounded by ``timeout_seconds``. A timeout or failure is captured in
    that job's :class:`BatchOutcome` and never aborts its siblings.
    """

    def __init__(
        self,
        *,
        batch_size: int = 3,
        delay_seconds: float = 0.5,
        timeout_seconds: float | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._batch_size = max(1, batch_size)
        self._delay = max(0.0, delay_seconds)
        self._timeout = timeout_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: BatchSettings, *, sleep: Sleep = asyncio.sleep) -> "RateLimitedBatchRunner":
        return cls(
            batch_size=settings.batch_size,
            delay_seconds=settings.delay_seconds,
            timeout_seconds=settings.call_timeout_seconds,
            sleep=sleep,
        )

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def run(self, jobs: Sequence[Job[T]]) -> list[BatchOutcome[T]]:
        outcomes: list[BatchOutcome[T]] = []
        for start in range(0, len(jobs), self._batch_size):
            batch = jobs[start : start + self._batch_size]
            results = await asyncio.gather(
                *(self._run_one(start + offset, job) for offset, job in enumerate(batch))
            )
            outcomes.extend(results)
            if start + self._batch_size < len(jobs) and self._delay > 0:
                await self._sleep(self._delay)
        return outcomes

    async def _run_one(self, index: int, job: Job[T]) -> BatchOutcome[T]:
        start = time.perf_counter()
        try:
            if self._timeout is not None:
                value = await asyncio.wait_for(job(), timeout=self._timeout)
            else:
                value = await job()
        except asyncio.TimeoutError as exc:
            metrics.increment_batch_timeout()
            logger.warning("batch_job_timeout", index=index, timeout=self._timeout)
            return BatchOutcome(index=index, error=exc, timed_out=True, elapsed_ms=_elapsed(start))
        except Exception as exc:
            logger.exception("batch_job_failed", index=index)
            return BatchOutcome(index=index, error=exc, elapsed_ms=_elapsed(start))
        return BatchOutcome(index=index, value=value, elapsed_ms=_elapsed(start))


def _elapsed(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def values(outcomes: Sequence[BatchOutcome[Any]]) -> list[Any]:
    return [outcome.value for outcome in outcomes if outcome.ok]
