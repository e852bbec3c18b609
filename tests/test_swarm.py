from __future__ import annotations

import json

import pytest

from chimera.core.errors import PhaseExecutionError
from chimera.orchestration.classifier import ExecutionMode
from chimera.orchestration.modes.swarm import SwarmModeExecutor
from tests.helpers.stubs import ScriptedBackend, failing, make_context


def _plan(*tasks: dict, roles: tuple[str, ...] = ()) -> str:
    return json.dumps({"analysis": "split it up", "requiredRoles": list(roles), "taskBreakdown": list(tasks)})


def _backend(plan: str, *, fail_on: str | None = None, merged: str = "merged answer") -> ScriptedBackend:
    def reply(request):
        if "Reply with valid JSON only" in (request.system_prompt or ""):
            return plan
        if request.prompt.startswith("Combine the team's work"):
            return merged
        if fail_on is not None and request.prompt == fail_on:
            raise failing("claude")
        return f"result for {request.prompt}"

    return ScriptedBackend("claude", default=reply)


PIPELINE = _plan(
    {"title": "Build", "description": "write the code", "type": "coding"},
    {"title": "Test", "description": "write tests", "type": "testing", "dependsOn": [0]},
    {"title": "Docs", "description": "write docs", "type": "documentation", "dependsOn": ["Build", "Test"]},
    roles=("senior_developer", "qa_engineer", "technical_writer"),
)


@pytest.mark.asyncio
async def test_swarm_runs_dependency_waves_and_synthesizes():
    backend = _backend(PIPELINE)
    context = make_context(ExecutionMode.SWARM, ["claude"], backend)

    result = await SwarmModeExecutor().execute(context)

    assert result.synthesized is True
    assert result.content == "merged answer"
    assert result.analysis == "split it up"
    assert [task.status for task in result.tasks] == ["complete", "complete", "complete"]
    assert result.providers == ["claude"]
    task_prompts = [call.prompt for call in backend.calls if "on the Chimera team" in (call.system_prompt or "")]
    assert task_prompts == ["write the code", "write tests", "write docs"]
    synthesis = backend.calls[-1].prompt
    assert "### Build (senior developer)" in synthesis
    assert "### Docs (technical writer)" in synthesis
    assert context.report_progress.values == [5, 20, 40, 60, 80, 85]


@pytest.mark.asyncio
async def test_failed_task_blocks_its_dependents():
    plan = _plan(
        {"title": "Build", "description": "write the code", "type": "coding"},
        {"title": "Test", "description": "write tests", "type": "testing", "dependsOn": [0]},
        {"title": "Research", "description": "compare caches", "type": "research"},
    )
    context = make_context(ExecutionMode.SWARM, ["claude"], _backend(plan, fail_on="write the code"))

    result = await SwarmModeExecutor().execute(context)

    by_title = {task.title: task for task in result.tasks}
    assert by_title["Build"].status == "blocked"
    assert by_title["Test"].status == "blocked"
    assert by_title["Test"].error == "a dependency failed"
    assert by_title["Research"].status == "complete"
    assert result.synthesized is False
    assert result.content == "result for compare caches"


@pytest.mark.asyncio
async def test_dependency_cycle_blocks_remaining_tasks():
    plan = _plan(
        {"title": "A", "description": "task a", "dependsOn": [1]},
        {"title": "B", "description": "task b", "dependsOn": [0]},
        {"title": "C", "description": "task c"},
    )
    context = make_context(ExecutionMode.SWARM, ["claude"], _backend(plan))

    result = await SwarmModeExecutor().execute(context)

    errors = {task.title: task.error for task in result.tasks}
    assert errors["A"] == "dependency cycle"
    assert errors["B"] == "dependency cycle"
    assert result.content == "result for task c"
    assert context.report_progress.values == [5, 20, 40, 85]


@pytest.mark.asyncio
async def test_swarm_without_any_result_fails_the_phase():
    plan = _plan(
        {"title": "A", "description": "task a", "dependsOn": [1]},
        {"title": "B", "description": "task b", "dependsOn": [0]},
    )
    context = make_context(ExecutionMode.SWARM, ["claude"], _backend(plan))

    with pytest.raises(PhaseExecutionError, match="no swarm task produced a result"):
        await SwarmModeExecutor().execute(context)


@pytest.mark.asyncio
async def test_unparseable_lead_plan_runs_the_request_as_one_task():
    backend = ScriptedBackend("claude", ["I cannot produce JSON today", "single answer"])
    context = make_context(ExecutionMode.SWARM, ["claude"], backend)

    result = await SwarmModeExecutor().execute(context)

    assert len(result.tasks) == 1
    assert result.content == "single answer"
    assert result.synthesized is False


@pytest.mark.asyncio
async def test_swarm_releases_members_after_the_run():
    context = make_context(ExecutionMode.SWARM, ["claude"], _backend(PIPELINE))

    await SwarmModeExecutor().execute(context)

    assert all(member.status.value == "idle" for member in context.team.members)
