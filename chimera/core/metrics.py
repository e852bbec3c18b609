from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

MODEL_CALLS_TOTAL = Counter(
    "chimera_model_calls_total",
    "Backend calls grouped by provider and outcome",
    labelnames=("provider", "outcome"),
)

MODEL_CALL_LATENCY_SECONDS = Histogram(
    "chimera_model_call_latency_seconds",
    "Latency of individual backend calls",
    labelnames=("provider",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

PROVIDER_HEALTHY = Gauge(
    "chimera_provider_healthy",
    "1 when the provider circuit is closed, 0 when open",
    labelnames=("provider",),
)

PROVIDER_CIRCUIT_OPEN_TOTAL = Counter(
    "chimera_provider_circuit_open_total",
    "Calls short-circuited because a provider circuit was open",
    labelnames=("provider",),
)

PROVIDER_CIRCUIT_TRIP_TOTAL = Counter(
    "chimera_provider_circuit_trip_total",
    "Times a provider circuit transitioned to open",
    labelnames=("provider",),
)

RETRY_TRANSITIONS_TOTAL = Counter(
    "chimera_retry_transitions_total",
    "Retry runner state transitions",
    labelnames=("state",),
)

BATCH_TIMEOUTS_TOTAL = Counter(
    "chimera_batch_timeouts_total",
    "Batch jobs aborted by the per-call timeout",
)

PHASE_RUNS_TOTAL = Counter(
    "chimera_phase_runs_total",
    "Executed phases grouped by mode and terminal status",
    labelnames=("mode", "status"),
)

PHASE_LATENCY_SECONDS = Histogram(
    "chimera_phase_latency_seconds",
    "Wall-clock duration of each executed phase",
    labelnames=("mode",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

EXECUTIONS_TOTAL = Counter(
    "chimera_executions_total",
    "Executions grouped by terminal status",
    labelnames=("status",),
)

ACTIVE_EXECUTIONS = Gauge(
    "chimera_active_executions",
    "Executions currently driven by this process",
)

IDEMPOTENT_HITS_TOTAL = Counter(
    "chimera_idempotent_hits_total",
    "Requests answered from an existing execution via idempotency key",
)

TOOL_DECISIONS_TOTAL = Counter(
    "chimera_tool_decisions_total",
    "Tool invocation attempts grouped by policy decision",
    labelnames=("tool", "decision"),
)

COUNCIL_CONSENSUS = Histogram(
    "chimera_council_consensus",
    "Consensus score reached by council phases",
    buckets=(0.0, 0.25, 0.5, 0.75, 0.9, 1.0),
)

DELIBERATION_ROUNDS = Histogram(
    "chimera_deliberation_rounds",
    "Rounds used by deliberation phases",
    buckets=(1, 2, 3, 4, 5, 8, 10),
)

CLARIFICATIONS_TOTAL = Counter(
    "chimera_clarifications_total",
    "Requests answered with a clarification instead of execution",
)


def observe_model_call(*, provider: str, success: bool, latency: float) -> None:
    MODEL_CALLS_TOTAL.labels(provider=provider, outcome="success" if success else "failure").inc()
    MODEL_CALL_LATENCY_SECONDS.labels(provider=provider).observe(max(0.0, latency))


def set_provider_health(*, provider: str, healthy: bool) -> None:
    PROVIDER_HEALTHY.labels(provider=provider).set(1 if healthy else 0)


def increment_circuit_open(*, provider: str) -> None:
    PROVIDER_CIRCUIT_OPEN_TOTAL.labels(provider=provider).inc()


def increment_circuit_trip(*, provider: str) -> None:
    PROVIDER_CIRCUIT_TRIP_TOTAL.labels(provider=provider).inc()


def record_retry_transition(*, state: str) -> None:
    RETRY_TRANSITIONS_TOTAL.labels(state=state).inc()


def increment_batch_timeout() -> None:
    BATCH_TIMEOUTS_TOTAL.inc()


def observe_phase(*, mode: str, status: str, latency: float) -> None:
    PHASE_RUNS_TOTAL.labels(mode=mode, status=status).inc()
    PHASE_LATENCY_SECONDS.labels(mode=mode).observe(max(0.0, latency))


def record_execution_outcome(*, status: str) -> None:
    EXECUTIONS_TOTAL.labels(status=status).inc()


def set_active_executions(count: int) -> None:
    ACTIVE_EXECUTIONS.set(max(0, count))


def increment_idempotent_hit() -> None:
    IDEMPOTENT_HITS_TOTAL.inc()


def record_tool_decision(*, tool: str, decision: str) -> None:
    TOOL_DECISIONS_TOTAL.labels(tool=tool, decision=decision).inc()


def observe_council_consensus(consensus: float) -> None:
    COUNCIL_CONSENSUS.observe(max(0.0, min(1.0, consensus)))


def observe_deliberation_rounds(rounds: int) -> None:
    DELIBERATION_ROUNDS.observe(max(0, rounds))


def increment_clarification() -> None:
    CLARIFICATIONS_TOTAL.inc()
