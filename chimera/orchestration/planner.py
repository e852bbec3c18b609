from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from ..core.errors import InvalidTransitionError, RequestValidationError
from ..core.logging import get_logger
from .classifier import Complexity, ExecutionMode, TaskClassification
from .intent import Intent, IntentAction

if TYPE_CHECKING:
    from ..services.gateway import ModelGateway

logger = get_logger(name=__name__)


class PlanStatus(str, Enum):
    PLANNING = "planning"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_PLAN_ORDER = {
    PlanStatus.PLANNING: 0,
    PlanStatus.AWAITING_CONFIRMATION: 1,
    PlanStatus.EXECUTING: 2,
    PlanStatus.COMPLETED: 3,
    PlanStatus.FAILED: 3,
}

_PHASE_TRANSITIONS = {
    PhaseStatus.PENDING: {PhaseStatus.RUNNING, PhaseStatus.FAILED},
    PhaseStatus.RUNNING: {PhaseStatus.COMPLETED, PhaseStatus.FAILED},
    PhaseStatus.COMPLETED: set(),
    PhaseStatus.FAILED: set(),
}

PHASE_NAMES = {
    ExecutionMode.COUNCIL: "Architecture Decision (Council)",
    ExecutionMode.SWARM: "Parallel Implementation (Swarm)",
    ExecutionMode.SINGLE: "Implementation",
    ExecutionMode.DELIBERATION: "Quality Review (Deliberation)",
    ExecutionMode.DEBATE: "Trade-off Debate",
}


class ExecutionPhase(BaseModel):
    id: str = Field(min_length=1)
    mode: ExecutionMode
    name: str = ""
    models: list[str] = Field(default_factory=list)
    status: PhaseStatus = PhaseStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    result: dict[str, Any] | None = None
    error: str | None = None

    def transition(self, status: PhaseStatus) -> None:
        if status is self.status:
            return
        if status not in _PHASE_TRANSITIONS[self.status]:
            raise InvalidTransitionError(f"Phase {self.id} cannot move from {self.status.value} to {status.value}")
        self.status = status

    def report_progress(self, value: int) -> int:
        """Raise progress monotonically; 100 is reserved for completion."""
        if self.status is not PhaseStatus.RUNNING:
            return self.progress
        self.progress = max(self.progress, min(int(value), 99))
        return self.progress


class ExecutionPlan(BaseModel):
    id: str = Field(default_factory=lambda: f"plan-{uuid4().hex[:12]}")
    original_message: str = Field(min_length=1)
    phases: list[ExecutionPhase] = Field(min_length=1)
    current_phase: int = Field(default=0, ge=0)
    status: PlanStatus = PlanStatus.PLANNING
    complexity: Complexity | None = None

    @property
    def estimated_models(self) -> int:
        return sum(len(phase.models) for phase in self.phases)

    @property
    def modes(self) -> list[ExecutionMode]:
        return [phase.mode for phase in self.phases]

    def advance(self, status: PlanStatus) -> None:
        """Move the plan forward. Backwards moves and leaving a terminal state raise."""
        if status is self.status:
            return
        if self.is_terminal or _PLAN_ORDER[status] < _PLAN_ORDER[self.status]:
            raise InvalidTransitionError(f"Plan {self.id} cannot move from {self.status.value} to {status.value}")
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return self.status in {PlanStatus.COMPLETED, PlanStatus.FAILED}

    def phase(self, phase_id: str) -> ExecutionPhase:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(phase_id)


def validate_plan(payload: ExecutionPlan | dict[str, Any]) -> ExecutionPlan:
    """Coerce a caller-supplied plan, raising :class:`RequestValidationError` when malformed."""
    if isinstance(payload, ExecutionPlan):
        payload = payload.model_dump()
    try:
        plan = ExecutionPlan.model_validate(payload)
    except ValidationError as exc:
        raise RequestValidationError("Execution plan is invalid", errors=exc.errors()) from exc
    if not plan.original_message.strip():
        raise RequestValidationError(
            "Execution plan is missing its original message",
            errors=[{"loc": ["original_message"], "msg": "must not be blank", "type": "value_error"}],
        )
    seen: set[str] = set()
    for phase in plan.phases:
        if phase.id in seen:
            raise RequestValidationError(
                f"Duplicate phase id '{phase.id}'",
                errors=[{"loc": ["phases", phase.id], "msg": "duplicate phase id", "type": "value_error"}],
            )
        seen.add(phase.id)
    if plan.current_phase > len(plan.phases):
        raise RequestValidationError(
            "current_phase points past the last phase",
            errors=[{"loc": ["current_phase"], "msg": "out of range", "type": "value_error"}],
        )
    return plan


class PlanBuilder:
    """Turns an intent and its classification into an ordered phase list."""

    def __init__(self, gateway: "ModelGateway") -> None:
        self._gateway = gateway

    def providers(self) -> list[str]:
        healthy = self._gateway.available_providers(healthy_only=True)
        return healthy or self._gateway.available_providers()

    def build(
        self,
        intent: Intent,
        classification: TaskClassification,
        original_message: str,
        *,
        main_mode: ExecutionMode | None = None,
    ) -> ExecutionPlan:
        if not original_message or not original_message.strip():
            raise RequestValidationError(
                "An execution plan needs the original message",
                errors=[{"loc": ["original_message"], "msg": "must not be blank", "type": "value_error"}],
            )
        providers = self.providers()
        best = self._best_provider(intent, providers)
        reviewer = next((provider for provider in providers if provider != best), best)
        pair = [provider for provider in dict.fromkeys([best, reviewer]) if provider]

        phases: list[ExecutionPhase] = []
        if classification.needs_architecture:
            phases.append(self._phase(ExecutionMode.COUNCIL, providers))

        mode = main_mode or classification.recommended_mode
        if mode is ExecutionMode.COUNCIL:
            mode = ExecutionMode.SWARM if classification.needs_architecture else ExecutionMode.COUNCIL
        if mode in {ExecutionMode.SWARM, ExecutionMode.DEBATE} and len(providers) < 2:
            mode = ExecutionMode.SINGLE

        if mode is ExecutionMode.SWARM or mode is ExecutionMode.COUNCIL:
            phases.append(self._phase(mode, providers))
        elif mode is ExecutionMode.DEBATE:
            phases.append(self._phase(mode, providers[:3]))
        elif mode is ExecutionMode.DELIBERATION:
            phases.append(self._phase(mode, pair))
        else:
            phases.append(self._phase(ExecutionMode.SINGLE, [best] if best else []))

        if (
            classification.complexity is not Complexity.SIMPLE
            and len(providers) >= 2
            and phases[-1].mode is not ExecutionMode.DELIBERATION
        ):
            phases.append(self._phase(ExecutionMode.DELIBERATION, pair))

        plan = ExecutionPlan(
            original_message=original_message,
            phases=phases,
            complexity=classification.complexity,
        )
        logger.info(
            "plan_built",
            plan_id=plan.id,
            phases=[phase.mode.value for phase in phases],
            providers=providers,
            estimated_models=plan.estimated_models,
        )
        return plan

    def _best_provider(self, intent: Intent, providers: list[str]) -> str | None:
        task_type = "analysis" if intent.action is IntentAction.ANALYZE else "code"
        spec = self._gateway.pool.best_model_for(task_type)
        if spec is not None and spec.provider in providers:
            return spec.provider
        return providers[0] if providers else None

    @staticmethod
    def _phase(mode: ExecutionMode, models: list[str]) -> ExecutionPhase:
        return ExecutionPhase(id=f"phase-{mode.value}", mode=mode, name=PHASE_NAMES[mode], models=list(models))
