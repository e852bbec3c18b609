from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, ClassVar, Sequence

from pydantic import BaseModel, Field

from ...core.config import FinalizerSettings, ModeSettings
from ...core.errors import BackendErrorKind, PhaseExecutionError
from ..classifier import ExecutionMode
from ..planner import ExecutionPhase

if TYPE_CHECKING:
    from ...services.gateway import CallRecorder, ModelCallResult, ModelGateway
    from ...tools.gateway import ToolGateway
    from ..batching import RateLimitedBatchRunner
    from ..team import TeamAssembler

ProgressCallback = Callable[[int], Awaitable[None]]


async def _no_progress(value: int) -> None:
    return None


@dataclass(slots=True)
class PriorOutput:
    phase_id: str
    mode: ExecutionMode
    content: str


@dataclass(slots=True)
class PhaseContext:
    """Everything a mode executor may touch while running one phase."""

    execution_id: str
    phase: ExecutionPhase
    original_message: str
    gateway: "ModelGateway"
    batch_runner: "RateLimitedBatchRunner"
    team: "TeamAssembler"
    settings: ModeSettings = field(default_factory=ModeSettings)
    finalizer_settings: FinalizerSettings = field(default_factory=FinalizerSettings)
    tools: "ToolGateway | None" = None
    recorder: "CallRecorder | None" = None
    prior_outputs: Sequence[PriorOutput] = ()
    report_progress: ProgressCallback = _no_progress

    @property
    def models(self) -> list[str]:
        return list(self.phase.models)

    def task_prompt(self, *, excerpt_chars: int = 3000) -> str:
        """The original request, followed by excerpts of earlier phase outputs."""
        if not self.prior_outputs:
            return self.original_message
        sections = [f"Request: {self.original_message}", "Earlier results:"]
        for output in self.prior_outputs:
            sections.append(f"[{output.mode.value}] {output.content[:excerpt_chars]}")
        return "\n\n".join(sections)

    def available(self, provider: str) -> bool:
        return self.gateway.is_available(provider)

    def available_models(self) -> list[str]:
        """Phase models whose circuit admits calls, in plan order."""
        return [provider for provider in self.phase.models if self.gateway.is_available(provider)]


class ModeResult(BaseModel):
    mode: ExecutionMode
    content: str = ""
    providers: list[str] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class SingleResult(ModeResult):
    mode: ExecutionMode = ExecutionMode.SINGLE
    provider: str | None = None
    used_tools: bool = False


class CouncilVote(BaseModel):
    provider: str
    vote: str
    reasoning: str = ""
    confidence: float = 0.7


class CouncilResult(ModeResult):
    mode: ExecutionMode = ExecutionMode.COUNCIL
    variant: str = "advanced"
    votes: list[CouncilVote] = Field(default_factory=list)
    winner: str = ""
    consensus: float = 0.0


class DeliberationResult(ModeResult):
    mode: ExecutionMode = ExecutionMode.DELIBERATION
    approved: bool = False
    rounds: int = 0
    feedback: list[str] = Field(default_factory=list)


class DebateArgument(BaseModel):
    provider: str
    position: str
    round: int
    argument: str


class DebateResult(ModeResult):
    mode: ExecutionMode = ExecutionMode.DEBATE
    arguments: list[DebateArgument] = Field(default_factory=list)
    transcript: str = ""
    verdict: str = "PRO"
    reasoning: str = ""
    judged: bool = False


class SwarmTaskOutcome(BaseModel):
    task_id: str
    title: str
    type: str
    status: str
    member_id: int | None = None
    provider: str | None = None
    result: str | None = None
    error: str | None = None


class SwarmResult(ModeResult):
    mode: ExecutionMode = ExecutionMode.SWARM
    analysis: str = ""
    tasks: list[SwarmTaskOutcome] = Field(default_factory=list)
    synthesized: bool = False


class ModeExecutor(ABC):
    """One algorithm for answering a phase."""

    mode: ClassVar[ExecutionMode]

    @abstractmethod
    async def execute(self, context: PhaseContext) -> ModeResult:
        """Run the phase; raise :class:`PhaseExecutionError` when no result can be produced."""

    def fail(
        self,
        context: PhaseContext,
        message: str,
        *,
        error_kind: BackendErrorKind | None = None,
    ) -> PhaseExecutionError:
        return PhaseExecutionError(message, phase_id=context.phase.id, mode=self.mode.value, error_kind=error_kind)


def require_ok(executor: ModeExecutor, context: PhaseContext, result: "ModelCallResult", what: str) -> str:
    if not result.ok:
        raise executor.fail(
            context,
            f"{what} failed: {result.error_kind.value if result.error_kind else 'error'}",
            error_kind=result.error_kind,
        )
    return result.content
