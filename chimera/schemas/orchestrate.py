from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..orchestration.classifier import TaskClassification
from ..orchestration.coordinator import ExecutionResult
from ..orchestration.intent import ClarificationRequest, Intent
from ..orchestration.planner import ExecutionPlan
from ..orchestration.state import ExecutionStatus, PhaseExecutionResult

MAX_MESSAGE_CHARS = 10000


class OrchestrateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str | None = Field(default=None, min_length=1, max_length=MAX_MESSAGE_CHARS)
    clarification_answers: dict[str, str] | None = Field(default=None, alias="clarificationAnswers")
    confirmed_plan: ExecutionPlan | None = Field(default=None, alias="confirmedPlan")
    execution_id: str | None = Field(default=None, min_length=1, alias="executionId")
    idempotency_key: str | None = Field(default=None, min_length=1, max_length=256, alias="idempotencyKey")
    user_id: str | None = Field(default=None, alias="userId")
    source: str | None = None

    @model_validator(mode="after")
    def _needs_entry_point(self) -> "OrchestrateRequest":
        if not (self.message or self.confirmed_plan or self.execution_id):
            raise ValueError("Either message, confirmed_plan or execution_id is required")
        if self.clarification_answers is not None and not self.message:
            raise ValueError("clarification_answers require the original message")
        return self


class ClarificationResponse(BaseModel):
    type: Literal["clarification"] = "clarification"
    message: str
    clarification: ClarificationRequest
    intent: Intent


class PlanResponse(BaseModel):
    type: Literal["plan"] = "plan"
    message: str
    plan: ExecutionPlan
    classification: TaskClassification
    requires_confirmation: bool = True


class ResultResponse(BaseModel):
    type: Literal["result"] = "result"
    message: str
    execution_id: str
    status: ExecutionStatus
    plan: ExecutionPlan
    results: list[PhaseExecutionResult] = Field(default_factory=list)
    failed_phase: str | None = None
    reused: bool = False

    @classmethod
    def from_execution(cls, result: ExecutionResult) -> "ResultResponse":
        return cls(
            message=result.message or "",
            execution_id=result.execution_id,
            status=result.status,
            plan=result.plan,
            results=result.results,
            failed_phase=result.failed_phase,
            reused=result.reused,
        )


class ErrorResponse(BaseModel):
    type: Literal["error"] = "error"
    message: str
    code: str
    details: list[dict[str, Any]] = Field(default_factory=list)
    execution_id: str | None = None


OrchestrateResponse = Annotated[
    Union[ClarificationResponse, PlanResponse, ResultResponse, ErrorResponse],
    Field(discriminator="type"),
]
