from __future__ import annotations

from typing import Sequence

from ...core.logging import get_logger
from ..classifier import ExecutionMode
from ..team import ROLE_INSTRUCTIONS, TYPE_TO_ROLES, LeadPlan, TaskStatus, TeamMember, TeamRole, TeamTask
from .base import ModeExecutor, PhaseContext, SwarmResult, SwarmTaskOutcome

logger = get_logger(name=__name__)

SYNTHESIS_PROMPT = """Combine the team's work into one coherent answer to the request.

Request: {request}

Team results:
{results}

Write a single consistent answer. Resolve contradictions, drop repetition and keep the key conclusions."""


def required_roles(plan: LeadPlan, tasks: Sequence[TeamTask]) -> list[TeamRole]:
    """Roles the lead asked for, or the first affine role of every task type."""
    if plan.required_roles:
        return list(dict.fromkeys(plan.required_roles))
    return list(dict.fromkeys(TYPE_TO_ROLES[task.type][0] for task in tasks))


class SwarmModeExecutor(ModeExecutor):
    """The lead decomposes the request, the team works it in dependency waves, the lead merges."""

    mode = ExecutionMode.SWARM

    async def execute(self, context: PhaseContext) -> SwarmResult:
        team = context.team
        await context.report_progress(5)
        plan = await team.analyze_and_plan(context.task_prompt(), recorder=context.recorder)
        tasks = team.tasks_from_plan(plan)
        members = team.assemble(required_roles(plan, tasks))
        await context.report_progress(20)

        try:
            await self._run_waves(context, tasks, members)
        finally:
            team.release(members)

        by_member = {member.id: member for member in members}
        outcomes = [self._outcome(task, by_member) for task in tasks]
        completed = [task for task in tasks if task.status is TaskStatus.COMPLETE and task.result]
        if not completed:
            team.cleanup()
            raise self.fail(context, "no swarm task produced a result")

        await context.report_progress(85)
        content, synthesized = await self._synthesize(context, completed, by_member)
        team.cleanup()
        logger.info(
            "swarm_completed",
            tasks=len(tasks),
            completed=len(completed),
            team_size=len(members),
            synthesized=synthesized,
        )
        return SwarmResult(
            content=content,
            providers=sorted({outcome.provider for outcome in outcomes if outcome.provider}),
            analysis=plan.analysis,
            tasks=outcomes,
            synthesized=synthesized,
        )

    async def _run_waves(self, context: PhaseContext, tasks: Sequence[TeamTask], members: Sequence[TeamMember]) -> None:
        team = context.team
        pending = {task.id: task for task in tasks}
        succeeded: set[str] = set()
        failed: set[str] = set()
        total = len(tasks)

        while pending:
            for task in list(pending.values()):
                if any(dependency in failed for dependency in task.dependencies):
                    team.block(task, "a dependency failed")
                    failed.add(task.id)
                    del pending[task.id]
            ready = [task for task in pending.values() if all(dep in succeeded for dep in task.dependencies)]
            if not ready:
                for task in pending.values():
                    team.block(task, "dependency cycle")
                    failed.add(task.id)
                logger.warning("swarm_dependency_cycle", tasks=sorted(pending))
                break

            wave: list[tuple[TeamTask, TeamMember]] = []
            for task in ready:
                del pending[task.id]
                member = team.assign(task, members)
                if member is None:
                    team.block(task, "no team member available")
                    failed.add(task.id)
                    continue
                wave.append((task, member))

            outcomes = await context.batch_runner.run(
                [self._job(context, task, member) for task, member in wave]
            )
            for (task, _member), outcome in zip(wave, outcomes):
                if not outcome.ok:
                    team.block(task, "task timed out" if outcome.timed_out else str(outcome.error))
                if task.status is TaskStatus.COMPLETE:
                    succeeded.add(task.id)
                else:
                    failed.add(task.id)
            await context.report_progress(20 + int(60 * (len(succeeded) + len(failed)) / max(total, 1)))

    @staticmethod
    def _job(context: PhaseContext, task: TeamTask, member: TeamMember):
        async def _run() -> str:
            return await context.team.execute_task(task, member, recorder=context.recorder)

        return _run

    @staticmethod
    def _outcome(task: TeamTask, by_member: dict[int, TeamMember]) -> SwarmTaskOutcome:
        member = by_member.get(task.assigned_to) if task.assigned_to is not None else None
        return SwarmTaskOutcome(
            task_id=task.id,
            title=task.title,
            type=task.type.value,
            status=task.status.value,
            member_id=task.assigned_to,
            provider=member.provider if member else None,
            result=task.result,
            error=task.error,
        )

    async def _synthesize(
        self,
        context: PhaseContext,
        completed: Sequence[TeamTask],
        by_member: dict[int, TeamMember],
    ) -> tuple[str, bool]:
        trim = context.team.settings.result_trim_chars
        sections = []
        for task in completed:
            member = by_member.get(task.assigned_to) if task.assigned_to is not None else None
            role = member.role.value.replace("_", " ") if member else "team"
            sections.append(f"### {task.title} ({role})\n{(task.result or '')[:trim]}")
        merged = "\n\n".join(sections)
        if len(completed) == 1:
            return completed[0].result or "", False

        lead = context.team.lead
        result = await context.gateway.generate(
            SYNTHESIS_PROMPT.format(request=context.original_message, results=merged),
            providers=[lead.provider],
            model=lead.model_id,
            system_prompt=ROLE_INSTRUCTIONS[TeamRole.LEAD_ARCHITECT],
            max_tokens=context.team.settings.max_tokens,
            recorder=context.recorder,
        )
        if not result.ok:
            logger.warning("swarm_synthesis_failed", provider=lead.provider, error_kind=result.error_kind)
            return merged, False
        return result.content, True
