from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..core import metrics
from ..core.config import FinalizerSettings, ModeSettings, Settings
from ..core.errors import (
    BackendErrorKind,
    ExecutionAlreadyRunningError,
    ExecutionCancelledError,
    InvalidTransitionError,
    PhaseExecutionError,
    RequestValidationError,
)
from ..core.logging import bind_execution_context, clear_execution_context, get_logger
from ..services.finalizer import ResponseFinalizer, WorkContext, detect_language, failure_message, user_message
from ..services.gateway import CallObservation, CallRecorder, ModelGateway
from ..tools.gateway import ToolGateway
from .batching import RateLimitedBatchRunner
from .modes import ModeRegistry, PhaseContext, PriorOutput, default_registry
from .planner import ExecutionPlan, PhaseStatus, PlanStatus, validate_plan
from .state import (
    AuditEvent,
    ExecutionMetadata,
    ExecutionState,
    ExecutionStatus,
    ModelCallRecord,
    PhaseExecutionResult,
    new_execution_state,
)
from .store import ExecutionStore
from .team import TeamAssembler

logger = get_logger(name=__name__)

_UPDATABLE_FIELDS = frozenset({"status", "error", "failed_phase", "final_message", "current_phase_index", "metadata"})


class ExecutionResult(BaseModel):
    """Well-formed outcome of driving a plan, whether it completed, failed or was reused."""

    execution_id: str
    status: ExecutionStatus
    plan: ExecutionPlan
    results: list[PhaseExecutionResult] = Field(default_factory=list)
    message: str | None = None
    error: str | None = None
    failed_phase: str | None = None
    reused: bool = False

    @classmethod
    def from_state(cls, state: ExecutionState, *, reused: bool = False) -> "ExecutionResult":
        return cls(
            execution_id=state.id,
            status=state.status,
            plan=state.plan,
            results=state.ordered_results(),
            message=state.final_message,
            error=state.error,
            failed_phase=state.failed_phase,
            reused=reused,
        )


class ExecutionCoordinator:
    """Phase state machine over an :class:`ExecutionStore`.

    The coordinator is the only writer of execution state. Phases run strictly in plan
    order; the first failing phase halts the plan. ``run_plan`` deduplicates on the
    idempotency key and ``resume`` refuses to drive an execution another driver owns.
    """

    def __init__(
        self,
        store: ExecutionStore,
        gateway: ModelGateway,
        *,
        team: TeamAssembler,
        batch_runner: RateLimitedBatchRunner,
        finalizer: ResponseFinalizer,
        modes: ModeRegistry | None = None,
        tools: ToolGateway | None = None,
        mode_settings: ModeSettings | None = None,
        stale_running_seconds: float = 900.0,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._team = team
        self._batch_runner = batch_runner
        self._finalizer = finalizer
        self._modes = modes or default_registry()
        self._tools = tools
        self._mode_settings = mode_settings or ModeSettings()
        self._stale_after = timedelta(seconds=stale_running_seconds)
        self._admission = asyncio.Lock()
        self._active: set[str] = set()
        self._calls: dict[tuple[str, str], list[ModelCallRecord]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: ExecutionStore,
        gateway: ModelGateway,
        team: TeamAssembler,
        tools: ToolGateway | None = None,
        modes: ModeRegistry | None = None,
        batch_runner: RateLimitedBatchRunner | None = None,
    ) -> "ExecutionCoordinator":
        return cls(
            store,
            gateway,
            team=team,
            batch_runner=batch_runner or RateLimitedBatchRunner.from_settings(settings.batching),
            finalizer=ResponseFinalizer(gateway, settings=settings.finalizer),
            modes=modes,
            tools=tools,
            mode_settings=settings.modes,
            stale_running_seconds=settings.store.stale_running_seconds,
        )

    @property
    def store(self) -> ExecutionStore:
        return self._store

    @property
    def active(self) -> frozenset[str]:
        return frozenset(self._active)

    @property
    def finalizer_settings(self) -> FinalizerSettings:
        return self._finalizer.settings

    # State machine operations

    async def create(self, plan: ExecutionPlan, metadata: ExecutionMetadata | None = None) -> ExecutionState:
        state = await self._store.create(new_execution_state(plan, metadata=metadata))
        key = state.metadata.idempotency_key
        if key:
            await self._store.map_idempotency_key(key, state.id)
        await self._store.audit(state.id, AuditEvent.CREATED, plan_id=plan.id, phases=[p.id for p in plan.phases])
        logger.info("execution_created", execution_id=state.id, plan_id=plan.id, idempotency_key=key)
        return state

    async def get(self, execution_id: str) -> ExecutionState:
        return await self._store.require(execution_id)

    async def update(self, execution_id: str, **changes: Any) -> ExecutionState:
        """Apply a partial update; only top-level bookkeeping fields may change."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise RequestValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        state = await self._store.require(execution_id)
        status = changes.get("status")
        if status is not None and state.is_terminal and ExecutionStatus(status) is not state.status:
            raise InvalidTransitionError(f"Execution {execution_id} is already {state.status.value}")
        payload = state.model_dump()
        payload.update(changes)
        try:
            updated = ExecutionState.model_validate(payload)
        except ValidationError as exc:
            raise RequestValidationError("Execution update is invalid", errors=exc.errors()) from exc
        return await self._store.update(updated)

    async def start_phase(self, execution_id: str, phase_id: str) -> ExecutionState:
        state = await self._store.require(execution_id)
        if state.status is ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(f"Execution '{execution_id}' was cancelled")
        phase = state.plan.phase(phase_id)
        phase.transition(PhaseStatus.RUNNING)
        state.plan.advance(PlanStatus.EXECUTING)
        index = state.plan.phases.index(phase)
        state.plan.current_phase = index
        state.current_phase_index = index
        state.status = ExecutionStatus.RUNNING
        state.phase_results[phase_id] = PhaseExecutionResult(
            phase_id=phase_id,
            mode=phase.mode,
            status=PhaseStatus.RUNNING,
            started_at=self._store.now(),
        )
        self._calls[(execution_id, phase_id)] = []
        await self._store.audit(execution_id, AuditEvent.PHASE_STARTED, phase_id=phase_id, mode=phase.mode.value)
        logger.info("phase_started", phase_id=phase_id, mode=phase.mode.value, index=index)
        return await self._store.update(state)

    async def report_progress(self, execution_id: str, phase_id: str, value: int) -> int:
        state = await self._store.require(execution_id)
        phase = state.plan.phase(phase_id)
        previous = phase.progress
        progress = phase.report_progress(value)
        if progress != previous:
            await self._store.update(state)
        return progress

    async def complete_phase(self, execution_id: str, phase_id: str, result: dict[str, Any]) -> ExecutionState:
        state = await self._store.require(execution_id)
        phase = state.plan.phase(phase_id)
        phase.transition(PhaseStatus.COMPLETED)
        phase.progress = 100
        phase.result = result
        record = self._phase_record(state, phase_id)
        record.status = PhaseStatus.COMPLETED
        record.completed_at = self._store.now()
        record.result = result
        record.model_calls = self._calls.pop((execution_id, phase_id), record.model_calls)
        index = state.plan.phases.index(phase)
        state.current_phase_index = index + 1
        state.plan.current_phase = min(index + 1, len(state.plan.phases) - 1)
        await self._store.audit(execution_id, AuditEvent.PHASE_COMPLETED, phase_id=phase_id)
        logger.info("phase_completed", phase_id=phase_id, mode=phase.mode.value)
        return await self._store.update(state)

    async def fail_phase(self, execution_id: str, phase_id: str, error: str) -> ExecutionState:
        state = await self._store.require(execution_id)
        phase = state.plan.phase(phase_id)
        phase.transition(PhaseStatus.FAILED)
        phase.error = error
        record = self._phase_record(state, phase_id)
        record.status = PhaseStatus.FAILED
        record.completed_at = self._store.now()
        record.error = error
        record.model_calls = self._calls.pop((execution_id, phase_id), record.model_calls)
        state.plan.advance(PlanStatus.FAILED)
        if state.status is not ExecutionStatus.CANCELLED:
            state.status = ExecutionStatus.FAILED
        state.error = error
        state.failed_phase = phase_id
        await self._store.audit(execution_id, AuditEvent.PHASE_FAILED, phase_id=phase_id, error=error)
        await self._store.audit(execution_id, AuditEvent.FAILED, phase_id=phase_id)
        logger.warning("phase_failed", phase_id=phase_id, mode=phase.mode.value, error=error)
        return await self._store.update(state)

    async def record_model_call(self, execution_id: str, phase_id: str | None, observation: CallObservation) -> None:
        """Buffer a call against its running phase and write an audit entry immediately."""
        if phase_id is not None and (execution_id, phase_id) in self._calls:
            self._calls[(execution_id, phase_id)].append(
                ModelCallRecord(
                    provider=observation.provider,
                    model_id=observation.model_id,
                    prompt=observation.prompt,
                    system_prompt=observation.system_prompt,
                    response=observation.response,
                    error=observation.error,
                    started_at=observation.started_at,
                    latency_ms=observation.latency_ms,
                    attempts=observation.attempts,
                )
            )
        await self._store.audit(
            execution_id,
            AuditEvent.MODEL_CALL,
            phase_id=phase_id,
            provider=observation.provider,
            ok=observation.error is None,
            latency_ms=round(observation.latency_ms, 2),
            attempts=observation.attempts,
        )

    async def cancel(self, execution_id: str) -> ExecutionState:
        state = await self._store.cancel(execution_id)
        if state.status is ExecutionStatus.CANCELLED:
            metrics.record_execution_outcome(status=ExecutionStatus.CANCELLED.value)
            logger.info("execution_cancelled", execution_id=execution_id)
        return state

    # Drivers

    async def run_plan(
        self,
        plan: ExecutionPlan | dict[str, Any],
        *,
        idempotency_key: str | None = None,
        metadata: ExecutionMetadata | None = None,
    ) -> ExecutionResult:
        plan = validate_plan(plan)
        if plan.is_terminal or any(phase.status is not PhaseStatus.PENDING for phase in plan.phases):
            raise RequestValidationError(
                "Only plans whose phases are all pending can be run",
                errors=[{"loc": ["phases"], "msg": "phases must be pending", "type": "value_error"}],
            )
        metadata = metadata or ExecutionMetadata()
        if idempotency_key:
            metadata = metadata.model_copy(update={"idempotency_key": idempotency_key})
        key = metadata.idempotency_key

        async with self._admission:
            if key:
                replayed = await self.replay(key)
                if replayed is not None:
                    return replayed
            state = await self.create(plan, metadata)
            self._active.add(state.id)

        return await self._drive_owned(state.id)

    async def resume(self, execution_id: str) -> ExecutionResult:
        async with self._admission:
            state = await self._store.require(execution_id)
            if state.status is ExecutionStatus.CANCELLED:
                raise ExecutionCancelledError(f"Execution '{execution_id}' was cancelled")
            if state.is_terminal:
                await self._store.audit(execution_id, AuditEvent.RESUMED, cached=True)
                logger.info("execution_resume_cached", execution_id=execution_id, status=state.status.value)
                return ExecutionResult.from_state(state, reused=True)
            if execution_id in self._active or (
                state.status is ExecutionStatus.RUNNING and not self._is_stale(state)
            ):
                raise ExecutionAlreadyRunningError(f"Execution '{execution_id}' is already running")
            self._active.add(execution_id)
            await self._store.audit(execution_id, AuditEvent.RESUMED, cached=False, previous_status=state.status.value)
            logger.info("execution_resumed", execution_id=execution_id, status=state.status.value)

        return await self._drive_owned(execution_id)

    async def replay(self, idempotency_key: str) -> ExecutionResult | None:
        """The execution already started under ``idempotency_key``, if any."""
        execution_id = await self._store.lookup_idempotency_key(idempotency_key)
        if execution_id is None:
            return None
        existing = await self._store.get(execution_id)
        if existing is None:
            return None
        metrics.increment_idempotent_hit()
        await self._store.audit(existing.id, AuditEvent.IDEMPOTENT_HIT, idempotency_key=idempotency_key)
        logger.info("execution_idempotent_hit", execution_id=existing.id, idempotency_key=idempotency_key)
        return ExecutionResult.from_state(existing, reused=True)

    def _is_stale(self, state: ExecutionState) -> bool:
        return self._store.now() - state.updated_at > self._stale_after

    async def _drive_owned(self, execution_id: str) -> ExecutionResult:
        metrics.set_active_executions(len(self._active))
        bind_execution_context(execution_id)
        try:
            return await self._drive(execution_id)
        finally:
            self._active.discard(execution_id)
            metrics.set_active_executions(len(self._active))
            clear_execution_context()

    async def _drive(self, execution_id: str) -> ExecutionResult:
        state = await self._store.require(execution_id)
        language = detect_language(state.plan.original_message)
        prior: list[PriorOutput] = [
            PriorOutput(phase_id=record.phase_id, mode=record.mode, content=str((record.result or {}).get("content", "")))
            for record in state.ordered_results()
            if record.status is PhaseStatus.COMPLETED
        ]
        failure_kind: BackendErrorKind | None = None

        for phase in state.plan.phases:
            if phase.status is PhaseStatus.COMPLETED:
                continue
            try:
                state = await self.start_phase(execution_id, phase.id)
            except ExecutionCancelledError:
                logger.info("execution_halted_cancelled", phase_id=phase.id)
                break
            current = state.plan.phase(phase.id)
            executor = self._modes[current.mode]
            context = PhaseContext(
                execution_id=execution_id,
                phase=current,
                original_message=state.plan.original_message,
                gateway=self._gateway,
                batch_runner=self._batch_runner,
                team=self._team,
                settings=self._mode_settings,
                finalizer_settings=self._finalizer.settings,
                tools=self._tools,
                recorder=self._recorder(execution_id, phase.id),
                prior_outputs=tuple(prior),
                report_progress=self._progress_callback(execution_id, phase.id),
            )
            start = time.perf_counter()
            try:
                result = await executor.execute(context)
            except Exception as exc:
                logger.exception("phase_execution_error", phase_id=phase.id, mode=current.mode.value)
                metrics.observe_phase(mode=current.mode.value, status="failed", latency=time.perf_counter() - start)
                if isinstance(exc, PhaseExecutionError):
                    failure_kind = exc.error_kind
                state = await self.fail_phase(execution_id, phase.id, str(exc) or exc.__class__.__name__)
                break
            metrics.observe_phase(mode=current.mode.value, status="completed", latency=time.perf_counter() - start)
            state = await self.complete_phase(execution_id, phase.id, result.to_payload())
            prior.append(PriorOutput(phase_id=phase.id, mode=current.mode, content=result.content))

        state = await self._store.require(execution_id)
        if state.status is ExecutionStatus.CANCELLED:
            if state.final_message is None:
                state = await self.update(execution_id, final_message=user_message("cancelled", language))
        elif state.status is ExecutionStatus.FAILED:
            step = state.plan.phase(state.failed_phase).name if state.failed_phase else None
            state = await self.update(
                execution_id,
                final_message=failure_message(language, step=step, error_kind=failure_kind),
            )
            metrics.record_execution_outcome(status=ExecutionStatus.FAILED.value)
            logger.warning("execution_failed", failed_phase=state.failed_phase)
        else:
            state = await self._finish(state, prior, language)
        return ExecutionResult.from_state(state)

    async def _finish(self, state: ExecutionState, prior: list[PriorOutput], language: str) -> ExecutionState:
        names = {phase.id: phase.name or phase.mode.value for phase in state.plan.phases}
        work = WorkContext.from_sections([(names.get(output.phase_id, output.phase_id), output.content) for output in prior])
        response = await self._finalizer.finalize(
            state.plan.original_message,
            work,
            language=language,
            recorder=self._recorder(state.id, None),
        )
        state = await self._store.require(state.id)
        if state.status is ExecutionStatus.CANCELLED:
            return state
        state.plan.advance(PlanStatus.COMPLETED)
        state.status = ExecutionStatus.COMPLETED
        state.final_message = response.message
        await self._store.audit(state.id, AuditEvent.COMPLETED, used_fallback=response.used_fallback)
        metrics.record_execution_outcome(status=ExecutionStatus.COMPLETED.value)
        logger.info("execution_completed", phases=len(prior), used_fallback=response.used_fallback)
        return await self._store.update(state)

    def _recorder(self, execution_id: str, phase_id: str | None) -> CallRecorder:
        async def _record(observation: CallObservation) -> None:
            await self.record_model_call(execution_id, phase_id, observation)

        return _record

    def _progress_callback(self, execution_id: str, phase_id: str):
        async def _report(value: int) -> None:
            await self.report_progress(execution_id, phase_id, value)

        return _report

    def _phase_record(self, state: ExecutionState, phase_id: str) -> PhaseExecutionResult:
        record = state.phase_results.get(phase_id)
        if record is None:
            phase = state.plan.phase(phase_id)
            record = PhaseExecutionResult(phase_id=phase_id, mode=phase.mode, started_at=self._store.now())
            state.phase_results[phase_id] = record
        return record
