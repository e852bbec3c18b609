from __future__ import annotations

from ...services.finalizer import CONTEXT_SEPARATOR, WorkPass
from ...tools.policy import PolicyContext
from ..classifier import ExecutionMode
from .base import ModeExecutor, PhaseContext, SingleResult, require_ok

TOOL_ROLE = "single"

SINGLE_SYSTEM_PROMPT = (
    "You are an expert software engineer. Solve the task directly and concretely. "
    "Make reasonable assumptions instead of asking questions."
)


class SingleModeExecutor(ModeExecutor):
    """One backend answers. Missing or unhealthy backends fall back to any available one."""

    mode = ExecutionMode.SINGLE

    async def execute(self, context: PhaseContext) -> SingleResult:
        await context.report_progress(10)
        if context.tools is not None and context.tools.list_tools(PolicyContext(role=TOOL_ROLE)):
            return await self._execute_with_tools(context)

        result = await context.gateway.generate(
            context.task_prompt(),
            providers=context.models,
            system_prompt=SINGLE_SYSTEM_PROMPT,
            recorder=context.recorder,
        )
        content = require_ok(self, context, result, "single backend call")
        return SingleResult(content=content, provider=result.provider, providers=[result.provider or ""])

    async def _execute_with_tools(self, context: PhaseContext) -> SingleResult:
        work = WorkPass(context.gateway, context.tools, settings=context.finalizer_settings)
        work_context = await work.run(
            context.original_message,
            prompt=context.task_prompt(),
            system_prompt=SINGLE_SYSTEM_PROMPT,
            providers=context.models,
            policy_context=PolicyContext(role=TOOL_ROLE, execution_id=context.execution_id),
            recorder=context.recorder,
        )
        if work_context.provider is None:
            raise self.fail(
                context,
                f"single backend call failed: {work_context.error_kind.value if work_context.error_kind else 'error'}",
                error_kind=work_context.error_kind,
            )
        return SingleResult(
            content=CONTEXT_SEPARATOR.join(work_context.parts),
            provider=work_context.provider,
            providers=[work_context.provider],
            used_tools=work_context.used_tools,
        )
