from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from chimera.tools.gateway import ToolGateway
from chimera.tools.policy import ParameterRestriction, PolicyContext, RateLimit, RollingWindowLimiter, ToolPolicy
from chimera.tools.registry import (
    ToolDescriptor,
    ToolParameter,
    ToolRegistry,
    ToolResult,
    describe_tools,
    normalize_tool_name,
    parse_tool_calls,
)
from tests.helpers.stubs import FakeClock, echo_tool, exploding_tool, registry_with


def test_normalize_tool_name():
    assert normalize_tool_name("  FS / read_file ") == "fs.read_file"
    assert normalize_tool_name("git..status") == "git.status"
    with pytest.raises(TypeError):
        normalize_tool_name(42)


def test_registry_resolves_aliases_and_unregisters():
    registry = ToolRegistry()
    registry.register(ToolDescriptor(name="fs.read"), echo_tool, aliases=["read_file"])

    assert "READ_FILE" in registry
    assert registry.descriptor("read_file").name == "fs.read"

    registry.unregister("read_file")
    assert "fs.read" not in registry
    assert len(registry) == 0


def test_parse_tool_calls_skips_invalid_json():
    text = (
        'Let me look. <tool_use name="fs.read">{"path": "a.py"}</tool_use> '
        '<tool_use name="fs.list">not json</tool_use> <tool_use name="git.status"></tool_use>'
    )

    calls = parse_tool_calls(text)

    assert [(call.name, call.params) for call in calls] == [("fs.read", {"path": "a.py"}), ("git.status", {})]


def test_describe_tools_marks_required_parameters():
    descriptor = ToolDescriptor(
        name="fs.read",
        description="Read a file",
        parameters={"path": ToolParameter(description="file path")},
        required=["path"],
    )

    assert "path: file path (required)" in describe_tools([descriptor])
    assert describe_tools([]) == "No tools available."


@pytest.mark.asyncio
async def test_allowed_invocation_is_logged():
    gateway = ToolGateway(registry_with("fs.read"))

    result = await gateway.invoke("fs.read", {"path": "a.py"}, PolicyContext(role="single", execution_id="exec-1"))

    assert result.success is True
    assert result.data == {"echo": {"path": "a.py"}}
    entry = gateway.access_log()[-1]
    assert entry.allowed is True
    assert entry.success is True
    assert entry.execution_id == "exec-1"


@pytest.mark.asyncio
async def test_unknown_tool_fails_without_raising():
    gateway = ToolGateway(ToolRegistry())

    result = await gateway.invoke("nope")

    assert result.success is False
    assert "not found" in result.error
    assert gateway.access_log()[-1].rule == "not_found"


@pytest.mark.asyncio
async def test_role_allow_and_deny_lists():
    policy = ToolPolicy(role_allowed={"reviewer": ("fs.*",)}, role_denied={"single": ("shell.*",)})
    gateway = ToolGateway(registry_with("fs.read", "shell.exec"), policy)

    denied = await gateway.invoke("shell.exec", {}, PolicyContext(role="single"))
    not_allowed = await gateway.invoke("shell.exec", {}, PolicyContext(role="reviewer"))
    allowed = await gateway.invoke("fs.read", {}, PolicyContext(role="reviewer"))

    assert denied.success is False
    assert [entry.rule for entry in gateway.access_log()] == ["role_denied", "role_not_allowed", "allowed"]
    assert not_allowed.success is False
    assert allowed.success is True
    assert [tool.name for tool in gateway.list_tools(PolicyContext(role="reviewer"))] == ["fs.read"]


@pytest.mark.asyncio
async def test_disabled_tools_are_rejected():
    registry = registry_with("fs.read", "fs.write")
    registry.set_enabled("fs.write", False)
    gateway = ToolGateway(registry, ToolPolicy(disabled=("fs.read",)))

    assert (await gateway.invoke("fs.write")).success is False
    assert (await gateway.invoke("fs.read")).success is False
    assert gateway.list_tools() == [registry.descriptor("fs.read")]


@pytest.mark.asyncio
async def test_missing_required_parameter():
    gateway = ToolGateway(registry_with("fs.read", required=["path"]))

    result = await gateway.invoke("fs.read", {})

    assert result.success is False
    assert "path" in result.error


@pytest.mark.asyncio
async def test_parameter_restrictions():
    policy = ToolPolicy(
        parameter_restrictions={"fs.*": {"path": ParameterRestriction(allowed=("src/*",), denied=("*.env",), max_length=20)}}
    )
    gateway = ToolGateway(registry_with("fs.read"), policy)

    assert (await gateway.invoke("fs.read", {"path": "src/app.py"})).success is True
    assert (await gateway.invoke("fs.read", {"path": "src/.env"})).success is False
    assert (await gateway.invoke("fs.read", {"path": "docs/readme.md"})).success is False
    assert (await gateway.invoke("fs.read", {"path": "src/" + "x" * 30})).success is False
    assert [entry.rule for entry in gateway.access_log()][1:] == ["parameter_restricted"] * 3


@pytest.mark.asyncio
async def test_approval_required_until_context_is_approved():
    gateway = ToolGateway(registry_with("deploy"), ToolPolicy(approval_required=("deploy",)))

    pending = await gateway.invoke("deploy", {}, PolicyContext(role="single"))
    approved = await gateway.invoke("deploy", {}, PolicyContext(role="single", approved=True))

    assert pending.success is False
    assert pending.requires_approval is True
    assert approved.success is True


@pytest.mark.asyncio
async def test_rolling_window_rate_limit_per_role():
    clock = FakeClock()
    policy = ToolPolicy(rate_limits={"search.*": RateLimit(max_calls=2, window_seconds=60)})
    gateway = ToolGateway(registry_with("search.web"), policy, limiter=RollingWindowLimiter(clock=clock))
    labels = {"tool": "search.web", "decision": "rate_limited"}
    before = REGISTRY.get_sample_value("chimera_tool_decisions_total", labels) or 0.0

    results = [await gateway.invoke("search.web", {}, PolicyContext(role="single")) for _ in range(3)]
    other_role = await gateway.invoke("search.web", {}, PolicyContext(role="reviewer"))
    clock.advance(60)
    after_window = await gateway.invoke("search.web", {}, PolicyContext(role="single"))

    assert [result.success for result in results] == [True, True, False]
    assert other_role.success is True
    assert after_window.success is True
    assert REGISTRY.get_sample_value("chimera_tool_decisions_total", labels) == pytest.approx(before + 1.0)


@pytest.mark.asyncio
async def test_handler_failure_and_timeout_become_failed_results():
    async def slow(params):
        await asyncio.sleep(5)

    registry = ToolRegistry()
    registry.register(ToolDescriptor(name="boom"), exploding_tool)
    registry.register(ToolDescriptor(name="slow"), slow)
    gateway = ToolGateway(registry, timeout_seconds=0.01)

    boom = await gateway.invoke("boom")
    timed_out = await gateway.invoke("slow")

    assert boom.success is False
    assert boom.error == "disk on fire"
    assert timed_out.success is False
    assert "timed out" in timed_out.error
    assert gateway.access_log()[-1].success is False


@pytest.mark.asyncio
async def test_handler_may_return_tool_result():
    async def partial(params):
        return ToolResult.failure("quota exhausted")

    registry = ToolRegistry()
    registry.register(ToolDescriptor(name="partial"), partial)
    gateway = ToolGateway(registry)

    result = await gateway.invoke("partial")

    assert result.error == "quota exhausted"
    assert gateway.access_log()[-1].allowed is True
    assert gateway.access_log()[-1].success is False


@pytest.mark.asyncio
async def test_access_log_is_bounded():
    gateway = ToolGateway(registry_with("fs.read"), log_size=3)

    for _ in range(5):
        await gateway.invoke("fs.read")

    assert len(gateway.access_log()) == 3
