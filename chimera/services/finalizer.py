from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from ..core.config import FinalizerSettings
from ..core.errors import BackendErrorKind
from ..core.logging import get_logger
from ..tools.registry import describe_tools, parse_tool_calls

if TYPE_CHECKING:
    from ..tools.gateway import ToolGateway
    from ..tools.policy import PolicyContext
    from .gateway import CallRecorder, ModelGateway

logger = get_logger(name=__name__)

CONTEXT_SEPARATOR = "\n\n---\n\n"

_FENCED_BLOCK = re.compile(r"```[\s\S]*?```")
_DANGLING_FENCE = re.compile(r"```[\s\S]*$")
_LONG_INLINE_CODE = re.compile(r"`[^`]{50,}`")
_TRAILING_OBJECT = re.compile(r"\n\s*\{[\s\S]{100,}?\}\s*$")
_TRAILING_ARRAY = re.compile(r"\n\s*\[[\s\S]{100,}?\]\s*$")
_TOOL_MARKUP = re.compile(r"<tool_use[\s\S]*?</tool_use>")
_DANGLING_TOOL_TAG = re.compile(r"</?tool_use[^>]*>")
_BLANK_RUNS = re.compile(r"\n{3,}")
_CYRILLIC = re.compile(r"[Ѐ-ӿ]")
_LATIN = re.compile(r"[A-Za-z]")
_WORD = re.compile(r"\S+")

_SANITIZE_STEPS: tuple[tuple[re.Pattern[str], str], ...] = (
    (_FENCED_BLOCK, ""),
    (_DANGLING_FENCE, ""),
    (_LONG_INLINE_CODE, ""),
    (_TRAILING_OBJECT, ""),
    (_TRAILING_ARRAY, ""),
    (_TOOL_MARKUP, ""),
    (_DANGLING_TOOL_TAG, ""),
    (_BLANK_RUNS, "\n\n"),
)


def _sanitize_pass(text: str) -> str:
    for pattern, replacement in _SANITIZE_STEPS:
        text = pattern.sub(replacement, text)
    return text.strip()


def sanitize(text: str | None) -> str:
    """Strip code fences, long inline code, trailing raw JSON and tool markup.

    Passes repeat until the text stops changing. Every step only shortens the text, so
    the loop terminates and ``sanitize(sanitize(x)) == sanitize(x)``.
    """
    current = text or ""
    while True:
        cleaned = _sanitize_pass(current)
        if cleaned == current:
            return cleaned
        current = cleaned


def limit_words(text: str, max_words: int) -> str:
    words = list(_WORD.finditer(text))
    if len(words) <= max_words:
        return text
    return text[: words[max_words - 1].end()].rstrip() + "…"


def detect_language(text: str) -> str:
    cyrillic = len(_CYRILLIC.findall(text or ""))
    latin = len(_LATIN.findall(text or ""))
    return "ru" if cyrillic and cyrillic >= latin else "en"


_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "fallback": "The task was processed, but a clear answer could not be formulated. Please try rephrasing the request.",
        "failed_step": "The request could not be completed because the '{step}' step failed. Please try again in a moment.",
        "rate_limited": "The model providers are rate limiting requests right now. Please wait a minute and try again.",
        "unavailable": "No model provider is reachable at the moment. Check the provider configuration or try again shortly.",
        "auth": "A model provider rejected its credentials. Please check the configured API keys.",
        "cancelled": "This execution was cancelled.",
        "clarify": "To run this task correctly, please clarify a few details:",
        "plan_ready": "Here is the execution plan. Confirm it to start.",
        "invalid_request": "The request is invalid. Check the message and try again.",
        "not_found": "This execution was not found. Please start again.",
        "already_running": "This execution is already running. Please wait for it to finish.",
    },
    "ru": {
        "fallback": "Задача обработана, но не удалось сформулировать ответ. Попробуйте переформулировать запрос.",
        "failed_step": "Не удалось выполнить запрос: этап «{step}» завершился ошибкой. Попробуйте ещё раз чуть позже.",
        "rate_limited": "Провайдеры моделей сейчас ограничивают частоту запросов. Подождите минуту и повторите попытку.",
        "unavailable": "Сейчас ни один провайдер моделей недоступен. Проверьте настройки или повторите попытку позже.",
        "auth": "Провайдер моделей отклонил ключ доступа. Проверьте настроенные API-ключи.",
        "cancelled": "Выполнение было отменено.",
        "clarify": "Для корректного выполнения задачи, пожалуйста, уточните детали:",
        "plan_ready": "Вот план выполнения задачи. Подтвердите его, чтобы начать.",
        "invalid_request": "Некорректный запрос. Проверьте сообщение и попробуйте снова.",
        "not_found": "Выполнение не найдено. Пожалуйста, начните заново.",
        "already_running": "Это выполнение уже идёт. Дождитесь его завершения.",
    },
}


def user_message(key: str, language: str = "en", **values: Any) -> str:
    catalog = _MESSAGES.get(language, _MESSAGES["en"])
    return catalog[key].format(**values)


def failure_message(language: str, *, step: str | None = None, error_kind: BackendErrorKind | None = None) -> str:
    """Actionable, language-matched text for a failed execution. Never includes raw errors."""
    if error_kind is BackendErrorKind.RATE_LIMITED:
        return user_message("rate_limited", language)
    if error_kind is BackendErrorKind.AUTH:
        return user_message("auth", language)
    if error_kind in {BackendErrorKind.UNAVAILABLE, BackendErrorKind.CIRCUIT_OPEN}:
        return user_message("unavailable", language)
    if step:
        return user_message("failed_step", language, step=step)
    return user_message("fallback", language)


@dataclass(slots=True)
class WorkContext:
    """Internal output of the work pass. It may contain code, JSON and tool errors and
    is only ever handed to :meth:`ResponseFinalizer.finalize`."""

    parts: list[str] = field(default_factory=list)
    used_tools: bool = False
    provider: str | None = None
    error_kind: BackendErrorKind | None = None

    @classmethod
    def from_sections(cls, sections: Sequence[tuple[str, str]]) -> "WorkContext":
        return cls(parts=[f"{label}:\n{content}" for label, content in sections if content])

    def add(self, label: str, content: str) -> None:
        if content:
            self.parts.append(f"{label}:\n{content}")

    @property
    def empty(self) -> bool:
        return not self.parts

    def render(self, limit: int) -> str:
        return CONTEXT_SEPARATOR.join(self.parts)[:limit]


@dataclass(slots=True)
class FinalizedResponse:
    message: str
    used_fallback: bool = False
    provider: str | None = None
    language: str = "en"


WORK_SYSTEM_PROMPT = (
    "You are Chimera, a multi-model engineering assistant. Work through the request "
    "thoroughly. You may reason step by step, write code and call tools."
)

TOOL_USE_INSTRUCTIONS = (
    "To call a tool, emit exactly:\n"
    '<tool_use name="tool_name">{"param": "value"}</tool_use>\n'
    "Available tools:\n"
)

FOLLOW_UP_NOTE = (
    "You received tool results. If a tool failed, try another approach. "
    "If the data is sufficient, give the complete answer."
)


def _format_tool_data(data: Any, limit: int) -> str:
    if isinstance(data, (dict, list)):
        text = json.dumps(data, indent=2, ensure_ascii=False, default=str)
    else:
        text = str(data)
    if len(text) > limit:
        return text[:limit] + "... [truncated]"
    return text


class WorkPass:
    """Unrestricted first stage: model calls interleaved with tool invocations."""

    def __init__(
        self,
        gateway: "ModelGateway",
        tools: "ToolGateway | None" = None,
        *,
        settings: FinalizerSettings | None = None,
    ) -> None:
        self._gateway = gateway
        self._tools = tools
        self._settings = settings or FinalizerSettings()

    async def run(
        self,
        request: str,
        *,
        prompt: str | None = None,
        system_prompt: str = WORK_SYSTEM_PROMPT,
        providers: Sequence[str] = (),
        model: str | None = None,
        policy_context: "PolicyContext | None" = None,
        recorder: "CallRecorder | None" = None,
    ) -> WorkContext:
        context = WorkContext()
        tools = self._tools.list_tools(policy_context) if self._tools is not None else []
        base_system = system_prompt
        if tools:
            base_system = f"{system_prompt}\n\n{TOOL_USE_INSTRUCTIONS}{describe_tools(tools)}"

        current_prompt = prompt or request
        iterations = self._settings.max_tool_iterations
        for iteration in range(iterations):
            system = base_system if iteration == 0 else f"{base_system}\n\n{FOLLOW_UP_NOTE}"
            result = await self._gateway.generate(
                current_prompt,
                providers=providers,
                model=model,
                system_prompt=system,
                recorder=recorder,
            )
            if not result.ok:
                context.error_kind = result.error_kind
                context.add("Model error", result.error or "no response")
                break
            context.provider = result.provider

            calls = parse_tool_calls(result.content) if self._tools is not None else []
            if not calls:
                context.add("Model answer", result.content)
                break

            context.used_tools = True
            clean = sanitize_tool_markup(result.content)
            context.add("Model reasoning", clean)

            lines: list[str] = []
            failed = False
            for call in calls:
                outcome = await self._tools.invoke(call.name, call.params, policy_context)
                if outcome.success:
                    lines.append(f"[{call.name}]: {_format_tool_data(outcome.data, self._settings.tool_result_chars)}")
                else:
                    failed = True
                    lines.append(f"[{call.name}] ERROR: {outcome.error}")
            results_text = "\n\n".join(lines)
            context.add("Tool results", results_text)

            if iteration < iterations - 1:
                note = (
                    "Some tools failed. Try another approach."
                    if failed
                    else "Data received. Use the tools again if you need more, otherwise give the answer."
                )
                current_prompt = (
                    f"Original request: {request}\n\nYour answer:\n{clean}\n\n"
                    f"Results:\n{results_text}\n{note}"
                )
            else:
                context.add("Final answer", clean)
        return context


def sanitize_tool_markup(text: str) -> str:
    return _TOOL_MARKUP.sub("", text).strip()


FINALIZE_SYSTEM_PROMPT = """You are Chimera. Write a clean, clear answer for the user.

Rules:
- Answer in the language the user writes in.
- At most {max_words} words. Be brief and specific.
- Name concrete files, functions and problems.
- Do not ask questions you can answer yourself.

Strictly forbidden:
- Code blocks (```)
- Raw JSON
- Tool error messages
- Repeating file contents verbatim

Format: a short answer followed by two or three next steps."""


class ResponseFinalizer:
    """Isolated second stage: one tool-free call that turns the work context into prose."""

    def __init__(self, gateway: "ModelGateway", *, settings: FinalizerSettings | None = None) -> None:
        self._gateway = gateway
        self._settings = settings or FinalizerSettings()

    @property
    def settings(self) -> FinalizerSettings:
        return self._settings

    async def finalize(
        self,
        request: str,
        context: WorkContext,
        *,
        providers: Sequence[str] = (),
        language: str | None = None,
        recorder: "CallRecorder | None" = None,
    ) -> FinalizedResponse:
        language = language or detect_language(request)
        if context.empty:
            return self._fallback(language, reason="empty_work_context")

        prompt = (
            f"User request: {request}\n\n"
            "Working context (do NOT show it directly):\n---\n"
            f"{context.render(self._settings.work_context_chars)}\n---\n\n"
            "Write the clean answer."
        )
        result = await self._gateway.generate(
            prompt,
            providers=providers,
            system_prompt=FINALIZE_SYSTEM_PROMPT.format(max_words=self._settings.max_words),
            recorder=recorder,
        )
        if not result.ok:
            return self._fallback(language, reason="finalize_call_failed", error_kind=result.error_kind)

        message = limit_words(sanitize(result.content), self._settings.max_words)
        if not message.strip():
            return self._fallback(language, reason="finalize_output_empty")
        return FinalizedResponse(message=message, provider=result.provider, language=language)

    @staticmethod
    def _fallback(
        language: str,
        *,
        reason: str,
        error_kind: BackendErrorKind | None = None,
    ) -> FinalizedResponse:
        logger.warning("finalize_fallback", reason=reason, language=language)
        if error_kind in {BackendErrorKind.RATE_LIMITED, BackendErrorKind.AUTH, BackendErrorKind.UNAVAILABLE}:
            message = failure_message(language, error_kind=error_kind)
        else:
            message = user_message("fallback", language)
        return FinalizedResponse(message=message, used_fallback=True, language=language)
