from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Mapping, Sequence

from pydantic import ValidationError

from .core import metrics
from .core.config import Settings, get_settings
from .core.errors import (
    ExecutionAlreadyRunningError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    RequestValidationError,
)
from .core.logging import configure_logging as configure_structlog
from .core.logging import get_logger
from .orchestration.batching import RateLimitedBatchRunner
from .orchestration.classifier import Complexity, ExecutionMode, TaskClassification, classify
from .orchestration.coordinator import ExecutionCoordinator, ExecutionResult
from .orchestration.intent import Ambiguity, AmbiguityRuleSet, Intent, IntentAnalyzer
from .orchestration.modes import ModeRegistry
from .orchestration.planner import ExecutionPlan, PlanBuilder, PlanStatus
from .orchestration.retry import Sleep
from .orchestration.state import ExecutionMetadata, ExecutionState
from .orchestration.store import ExecutionStore, build_store
from .orchestration.team import TeamAssembler
from .schemas.orchestrate import (
    ClarificationResponse,
    ErrorResponse,
    OrchestrateRequest,
    OrchestrateResponse,
    PlanResponse,
    ResultResponse,
)
from .services.backends import BackendPool, build_backend_pool
from .services.finalizer import FinalizedResponse, ResponseFinalizer, WorkPass, detect_language, user_message
from .services.gateway import ModelGateway
from .services.health import ProviderHealthMonitor
from .tools.gateway import ToolGateway
from .tools.policy import PolicyContext, ToolPolicy
from .tools.registry import ToolRegistry

logger = get_logger(name=__name__)


class Engine:
    """Handle owning every stateful collaborator of one orchestration engine instance.

    Nothing here is process-global: two engines built from different settings share no
    health state, team arena, tool registry or execution store.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        gateway: ModelGateway,
        store: ExecutionStore,
        team: TeamAssembler,
        analyzer: IntentAnalyzer,
        coordinator: ExecutionCoordinator,
        tools: ToolGateway | None = None,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.store = store
        self.team = team
        self.analyzer = analyzer
        self.coordinator = coordinator
        self.tools = tools
        self.plan_builder = PlanBuilder(gateway)
        self._closed = False

    # Analysis and planning

    def analyze_intent(self, text: str) -> Intent:
        return self.analyzer.analyze(text)

    def detect_ambiguities(self, text: str, intent: Intent) -> list[Ambiguity]:
        return self.analyzer.detect_ambiguities(text, intent)

    def classify(self, intent: Intent, text: str) -> TaskClassification:
        return classify(intent, text)

    def build_plan(
        self,
        intent: Intent,
        classification: TaskClassification,
        original_message: str,
        *,
        main_mode: ExecutionMode | None = None,
    ) -> ExecutionPlan:
        return self.plan_builder.build(intent, classification, original_message, main_mode=main_mode)

    # Execution

    async def run_plan(
        self,
        plan: ExecutionPlan | Mapping[str, Any],
        *,
        idempotency_key: str | None = None,
        metadata: ExecutionMetadata | None = None,
    ) -> ExecutionResult:
        if isinstance(plan, Mapping):
            plan = dict(plan)
        return await self.coordinator.run_plan(plan, idempotency_key=idempotency_key, metadata=metadata)

    async def resume(self, execution_id: str) -> ExecutionResult:
        return await self.coordinator.resume(execution_id)

    async def cancel(self, execution_id: str) -> ExecutionState:
        return await self.coordinator.cancel(execution_id)

    async def get_execution(self, execution_id: str) -> ExecutionState:
        return await self.coordinator.get(execution_id)

    async def handle_request(self, payload: OrchestrateRequest | Mapping[str, Any]) -> OrchestrateResponse:
        """Route one request: resume, confirmed plan, clarification answers or a new message."""
        try:
            request = (
                payload if isinstance(payload, OrchestrateRequest) else OrchestrateRequest.model_validate(payload)
            )
        except ValidationError as exc:
            logger.info("request_rejected", errors=len(exc.errors()))
            language = detect_language(str(payload.get("message") or "")) if isinstance(payload, Mapping) else "en"
            return ErrorResponse(
                message=user_message("invalid_request", language),
                code="validation_error",
                details=exc.errors(include_url=False, include_context=False, include_input=False),
            )

        plan_message = request.confirmed_plan.original_message if request.confirmed_plan else ""
        language = detect_language(request.message or plan_message)
        metadata = ExecutionMetadata(
            user_id=request.user_id,
            source=request.source,
            idempotency_key=request.idempotency_key,
        )
        try:
            if request.execution_id:
                return ResultResponse.from_execution(await self.resume(request.execution_id))
            if request.idempotency_key:
                replayed = await self.coordinator.replay(request.idempotency_key)
                if replayed is not None:
                    return ResultResponse.from_execution(replayed)
            if request.confirmed_plan is not None:
                result = await self.run_plan(request.confirmed_plan, metadata=metadata)
                return ResultResponse.from_execution(result)
            return await self._handle_message(request, metadata, language)
        except RequestValidationError as exc:
            return ErrorResponse(
                message=user_message("invalid_request", language),
                code="validation_error",
                details=exc.errors,
            )
        except ExecutionNotFoundError:
            return ErrorResponse(
                message=user_message("not_found", language),
                code="not_found",
                execution_id=request.execution_id,
            )
        except ExecutionAlreadyRunningError:
            return ErrorResponse(
                message=user_message("already_running", language),
                code="already_running",
                execution_id=request.execution_id,
            )
        except ExecutionCancelledError:
            return ErrorResponse(
                message=user_message("cancelled", language),
                code="cancelled",
                execution_id=request.execution_id,
            )

    async def _handle_message(
        self,
        request: OrchestrateRequest,
        metadata: ExecutionMetadata,
        language: str,
    ) -> OrchestrateResponse:
        message = request.message or ""
        if request.clarification_answers:
            clarified = ". ".join(answer for answer in request.clarification_answers.values() if answer)
            enriched = f"{message}\n\nClarifications: {clarified}" if clarified else message
            intent = self.analyze_intent(enriched).model_copy(
                update={"confidence": self.settings.ambiguity.clarified_confidence}
            )
            return await self._proceed(enriched, intent, metadata, language)

        intent = self.analyze_intent(message)
        ambiguities = self.detect_ambiguities(message, intent)
        blocking = self.analyzer.blocking(ambiguities)
        if intent.confidence >= self.settings.ambiguity.auto_proceed_confidence and not blocking:
            return await self._proceed(message, intent, metadata, language)

        clarification = self.analyzer.clarification(ambiguities)
        if clarification is not None:
            metrics.increment_clarification()
            logger.info("clarification_requested", questions=len(clarification.questions))
            return ClarificationResponse(
                message=user_message("clarify", language),
                clarification=clarification,
                intent=intent,
            )
        return await self._proceed(message, intent, metadata, language)

    async def _proceed(
        self,
        message: str,
        intent: Intent,
        metadata: ExecutionMetadata,
        language: str,
    ) -> OrchestrateResponse:
        classification = self.classify(intent, message)
        plan = self.build_plan(intent, classification, message)
        if classification.complexity is Complexity.SIMPLE:
            result = await self.run_plan(plan, metadata=metadata)
            return ResultResponse.from_execution(result)
        plan.advance(PlanStatus.AWAITING_CONFIRMATION)
        return PlanResponse(
            message=user_message("plan_ready", language),
            plan=plan,
            classification=classification,
        )

    async def chat(
        self,
        message: str,
        *,
        providers: Sequence[str] = (),
        role: str = "chat",
    ) -> FinalizedResponse:
        """Work pass with tools, then the isolated tool-free finalize pass."""
        work = await WorkPass(self.gateway, self.tools, settings=self.settings.finalizer).run(
            message,
            providers=providers,
            policy_context=PolicyContext(role=role),
        )
        finalizer = ResponseFinalizer(self.gateway, settings=self.settings.finalizer)
        return await finalizer.finalize(message, work, providers=providers)

    # Health

    async def health_report(self) -> dict[str, Any]:
        providers = self.gateway.pool.providers()
        snapshot = self.gateway.health.snapshot(providers)
        healthy = any(entry.is_healthy for entry in snapshot.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "providers": {name: entry.as_dict() for name, entry in snapshot.items()},
            "team": self.team.memory_stats(),
            "store": await self.store.stats(),
            "active_executions": len(self.coordinator.active),
        }

    async def deep_health_check(
        self,
        providers: Iterable[str] | None = None,
        *,
        timeout_seconds: float = 30.0,
    ) -> dict[str, Any]:
        names = list(providers) if providers is not None else self.gateway.pool.providers()
        results = await asyncio.gather(
            *(self.gateway.probe(name, timeout_seconds=timeout_seconds) for name in names)
        )
        details = {
            name: {
                "ok": result.ok,
                "latency_ms": round(result.latency_ms, 2),
                "error": result.error_kind.value if result.error_kind else None,
            }
            for name, result in zip(names, results)
        }
        passing = sum(1 for result in results if result.ok)
        if names and passing == len(names):
            status = "healthy"
        elif passing:
            status = "degraded"
        else:
            status = "unhealthy"
        logger.info("deep_health_check", status=status, passing=passing, total=len(names))
        return {"status": status, "providers": details}

    # Lifecycle

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.gateway.aclose()
        await self.store.close()
        logger.info("engine_closed")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["Engine"]:
        try:
            yield self
        finally:
            await self.aclose()


def init_engine(
    settings: Settings | None = None,
    *,
    pool: BackendPool | None = None,
    store: ExecutionStore | None = None,
    tool_registry: ToolRegistry | None = None,
    tool_policy: ToolPolicy | None = None,
    health: ProviderHealthMonitor | None = None,
    modes: ModeRegistry | None = None,
    rules: AmbiguityRuleSet | None = None,
    sleep: Sleep = asyncio.sleep,
    configure_logging: bool = False,
) -> Engine:
    """Wire an isolated engine from settings. Every collaborator may be injected."""
    settings = settings or get_settings()
    if configure_logging:
        configure_structlog(settings.log_level)
    pool = pool if pool is not None else build_backend_pool(settings)
    gateway = ModelGateway.from_settings(settings, pool, health=health, sleep=sleep)
    store = store if store is not None else build_store(settings.store)
    team = TeamAssembler(gateway, settings=settings.team)
    tools = (
        ToolGateway.from_settings(settings.tools, tool_registry, tool_policy)
        if tool_registry is not None
        else None
    )
    coordinator = ExecutionCoordinator.from_settings(
        settings,
        store=store,
        gateway=gateway,
        team=team,
        tools=tools,
        modes=modes,
        batch_runner=RateLimitedBatchRunner.from_settings(settings.batching, sleep=sleep),
    )
    engine = Engine(
        settings,
        gateway=gateway,
        store=store,
        team=team,
        analyzer=IntentAnalyzer.from_settings(settings.ambiguity, rules=rules),
        coordinator=coordinator,
        tools=tools,
    )
    logger.info(
        "engine_initialized",
        environment=settings.environment,
        providers=pool.providers(),
        store=store.mode,
        tools=len(tool_registry) if tool_registry is not None else 0,
    )
    return engine


async def shutdown_engine(engine: Engine) -> None:
    await engine.aclose()
