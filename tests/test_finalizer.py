from __future__ import annotations

import pytest

from chimera.core.config import FinalizerSettings
from chimera.core.errors import BackendErrorKind
from chimera.orchestration.retry import RetryPolicy, RetryRunner
from chimera.services.finalizer import (
    ResponseFinalizer,
    WorkContext,
    WorkPass,
    detect_language,
    failure_message,
    limit_words,
    sanitize,
    user_message,
)
from chimera.services.gateway import ModelGateway
from chimera.services.health import ProviderHealthMonitor
from chimera.tools.gateway import ToolGateway
from chimera.tools.policy import PolicyContext, ToolPolicy
from tests.helpers.stubs import FakeClock, RecordingSleep, ScriptedBackend, failing, pool_of, registry_with


def _gateway(*backends) -> ModelGateway:
    return ModelGateway(
        pool_of(*backends),
        ProviderHealthMonitor(clock=FakeClock()),
        RetryRunner(RetryPolicy(max_attempts=1), sleep=RecordingSleep()),
    )


RAW = (
    "Here is the fix.\n\n```python\nprint('x')\n```\n\n\n\n"
    "Use `" + "a" * 60 + "` carefully. "
    '<tool_use name="fs.read">{"path": "a"}</tool_use>\n'
    '{"result": "' + "b" * 120 + '"}'
)


def test_sanitize_removes_code_json_and_tool_markup():
    cleaned = sanitize(RAW)

    assert "```" not in cleaned
    assert "tool_use" not in cleaned
    assert "bbbb" not in cleaned
    assert "aaaa" not in cleaned
    assert "\n\n\n" not in cleaned
    assert cleaned.startswith("Here is the fix.")


@pytest.mark.parametrize(
    "text",
    [RAW, "plain text", "", "```unterminated\ncode", "a\n\n\n\n```x```\n\n\n\nb", "</tool_use> <tool_use name='x'>"],
)
def test_sanitize_is_idempotent(text):
    once = sanitize(text)

    assert sanitize(once) == once


def test_limit_words():
    assert limit_words("one two three", 5) == "one two three"
    assert limit_words("one two three four", 2) == "one two…"


@pytest.mark.parametrize(
    ("text", "language"),
    [("Привет, как дела?", "ru"), ("Hello there", "en"), ("", "en"), ("Fix баг в API", "en")],
)
def test_detect_language(text, language):
    assert detect_language(text) == language


def test_failure_message_prefers_error_kind():
    assert failure_message("en", step="Swarm", error_kind=BackendErrorKind.RATE_LIMITED) == user_message("rate_limited")
    assert failure_message("ru", error_kind=BackendErrorKind.CIRCUIT_OPEN) == user_message("unavailable", "ru")
    assert "'Swarm'" in failure_message("en", step="Swarm", error_kind=BackendErrorKind.TRANSIENT)
    assert failure_message("de") == user_message("fallback", "en")


@pytest.mark.asyncio
async def test_finalize_produces_sanitized_limited_prose():
    backend = ScriptedBackend("claude", ["Done. " + " ".join(["word"] * 30) + "\n```code```"])
    finalizer = ResponseFinalizer(_gateway(backend), settings=FinalizerSettings(max_words=20))
    context = WorkContext.from_sections([("Implementation", "lots of {json} and ```code```")])

    response = await finalizer.finalize("please build it", context)

    assert response.used_fallback is False
    assert response.provider == "claude"
    assert "```" not in response.message
    assert len(response.message.split()) == 20
    assert "Working context" in backend.calls[0].prompt
    assert "At most 20 words" in backend.calls[0].system_prompt


@pytest.mark.asyncio
async def test_finalize_falls_back_in_user_language():
    finalizer = ResponseFinalizer(_gateway(ScriptedBackend("claude", ["```only code```"])))

    response = await finalizer.finalize("Сделай отчёт", WorkContext.from_sections([("Работа", "текст")]))

    assert response.used_fallback is True
    assert response.language == "ru"
    assert response.message == user_message("fallback", "ru")


@pytest.mark.asyncio
async def test_finalize_empty_context_skips_model_call():
    backend = ScriptedBackend("claude")
    response = await ResponseFinalizer(_gateway(backend)).finalize("hello", WorkContext())

    assert response.used_fallback is True
    assert backend.calls == []


@pytest.mark.asyncio
async def test_finalize_rate_limited_message():
    backend = ScriptedBackend("claude", [failing("claude", BackendErrorKind.RATE_LIMITED, 429)])
    response = await ResponseFinalizer(_gateway(backend)).finalize("hello", WorkContext(parts=["x"]))

    assert response.message == failure_message("en", error_kind=BackendErrorKind.RATE_LIMITED)


@pytest.mark.asyncio
async def test_work_pass_runs_tools_then_answers():
    backend = ScriptedBackend(
        "claude",
        [
            'Reading. <tool_use name="fs.read">{"path": "main.py"}</tool_use>',
            "The file defines main().",
        ],
    )
    tools = ToolGateway(registry_with("fs.read"))

    context = await WorkPass(_gateway(backend), tools).run("what is in main.py?", policy_context=PolicyContext(role="chat"))

    assert context.used_tools is True
    assert context.provider == "claude"
    assert any(part.startswith("Tool results:") and "main.py" in part for part in context.parts)
    assert context.parts[-1] == "Model answer:\nThe file defines main()."
    assert "fs.read" in backend.calls[0].system_prompt
    assert "Original request: what is in main.py?" in backend.calls[1].prompt


@pytest.mark.asyncio
async def test_work_pass_reports_denied_tools_as_errors():
    backend = ScriptedBackend(
        "claude",
        ['<tool_use name="fs.read">{}</tool_use>', '<tool_use name="fs.read">{}</tool_use>'],
    )
    tools = ToolGateway(registry_with("fs.read"), ToolPolicy(approval_required=("fs.read",)))

    context = await WorkPass(_gateway(backend), tools, settings=FinalizerSettings(max_tool_iterations=2)).run("read")

    assert any("[fs.read] ERROR" in part for part in context.parts)
    assert "Some tools failed" in backend.calls[1].prompt
    assert context.parts[-1].startswith("Tool results:")


@pytest.mark.asyncio
async def test_work_pass_records_model_error():
    backend = ScriptedBackend("claude", [failing("claude", BackendErrorKind.AUTH, 401)])

    context = await WorkPass(_gateway(backend)).run("hi")

    assert context.provider is None
    assert context.error_kind is BackendErrorKind.AUTH
    assert context.parts[0].startswith("Model error:")
