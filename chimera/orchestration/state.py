from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from .classifier import ExecutionMode
from .planner import ExecutionPlan, PhaseStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})


class ModelCallRecord(BaseModel):
    provider: str | None = None
    model_id: str | None = None
    prompt: str = ""
    system_prompt: str | None = None
    response: str | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=utcnow)
    latency_ms: float = 0.0
    attempts: int = 0


class PhaseExecutionResult(BaseModel):
    phase_id: str = Field(min_length=1)
    mode: ExecutionMode
    status: PhaseStatus = PhaseStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error: str | None = None
    model_calls: list[ModelCallRecord] = Field(default_factory=list)


class ExecutionMetadata(BaseModel):
    user_id: str | None = None
    source: str | None = None
    idempotency_key: str | None = None


class ExecutionState(BaseModel):
    id: str = Field(default_factory=lambda: f"exec-{uuid4().hex}")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    status: ExecutionStatus = ExecutionStatus.PENDING
    plan: ExecutionPlan
    current_phase_index: int = Field(default=0, ge=0)
    phase_results: dict[str, PhaseExecutionResult] = Field(default_factory=dict)
    error: str | None = None
    failed_phase: str | None = None
    final_message: str | None = None
    metadata: ExecutionMetadata = Field(default_factory=ExecutionMetadata)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def ordered_results(self) -> list[PhaseExecutionResult]:
        """Phase results in plan order; phases that never started are omitted."""
        return [self.phase_results[phase.id] for phase in self.plan.phases if phase.id in self.phase_results]


class AuditEvent(str, Enum):
    CREATED = "created"
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETED = "phase_completed"
    PHASE_FAILED = "phase_failed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MODEL_CALL = "model_call"
    RESUMED = "resumed"
    IDEMPOTENT_HIT = "idempotent_hit"


class AuditLogEntry(BaseModel):
    execution_id: str = Field(min_length=1)
    event: AuditEvent
    phase_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


def new_execution_state(plan: ExecutionPlan, *, metadata: ExecutionMetadata | None = None) -> ExecutionState:
    return ExecutionState(plan=plan, metadata=metadata or ExecutionMetadata())
