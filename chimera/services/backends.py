from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

import httpx
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..core.config import ProviderSettings, Settings
from ..core.errors import BackendError, BackendErrorKind, BackendTimeoutError, ConfigurationError
from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(frozen=True, slots=True)
class ModelSpec:
    id: str
    provider: str
    api_model: str
    name: str = ""
    strengths: tuple[str, ...] = ()


DEFAULT_MODEL_CATALOG: tuple[ModelSpec, ...] = (
    ModelSpec("claude-opus", "claude", "claude-opus-4-5", "Claude Opus", ("code", "architecture", "review", "complex_reasoning")),
    ModelSpec("claude-sonnet", "claude", "claude-sonnet-4-5", "Claude Sonnet", ("fast_code", "general")),
    ModelSpec("gpt-4o", "openai", "gpt-4o", "GPT-4o", ("math", "stem", "reasoning")),
    ModelSpec("gpt-4-turbo", "openai", "gpt-4-turbo", "GPT-4 Turbo", ("code_review", "debugging", "implementation")),
    ModelSpec("gemini-pro", "gemini", "gemini-2.5-pro", "Gemini Pro", ("multimodal", "long_context", "vision")),
    ModelSpec("qwen-thinking", "qwen", "qwen3-235b-a22b-thinking-2507", "Qwen Thinking", ("math", "reasoning", "agentic", "tool_use")),
    ModelSpec("deepseek-reasoner", "deepseek", "deepseek-reasoner", "DeepSeek Reasoner", ("research", "reasoning", "analysis")),
)

TASK_STRENGTHS: dict[str, tuple[str, ...]] = {
    "code": ("code", "architecture"),
    "analysis": ("code_review", "debugging", "analysis"),
    "review": ("code_review", "debugging"),
    "math": ("math", "reasoning"),
    "multimodal": ("multimodal", "vision"),
    "reasoning": ("reasoning", "complex_reasoning"),
    "fast": ("fast_code", "general"),
}


@dataclass(slots=True)
class CompletionRequest:
    model: str
    prompt: str
    system_prompt: str | None = None
    max_tokens: int = 4096
    temperature: float | None = None


def messages_from_text(prompt: str, system_prompt: str | None = None) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))
    messages.append(HumanMessage(content=prompt))
    return messages


def extract_content(result: Any) -> str:
    content = result.content if isinstance(result, AIMessage) or hasattr(result, "content") else result
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                parts.append(str(item.get("text", "")))
            else:
                parts.append(str(item))
        return " ".join(part for part in parts if part)
    return str(content)


class ModelBackend(ABC):
    """Uniform call interface over one model-serving provider."""

    provider: str

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> str:
        """Return the completion text or raise :class:`BackendError`."""

    async def aclose(self) -> None:
        return None


class _HttpBackend(ModelBackend):
    def __init__(self, provider: str, client: httpx.AsyncClient, *, owns_client: bool = True) -> None:
        self.provider = provider
        self._client = client
        self._owns_client = owns_client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise BackendError.from_status(
                status,
                f"{self.provider} returned HTTP {status}",
                provider=self.provider,
            ) from exc
        except httpx.TimeoutException as exc:
            raise BackendTimeoutError(
                f"{self.provider} request timed out",
                provider=self.provider,
                kind=BackendErrorKind.TIMEOUT,
            ) from exc
        except httpx.TransportError as exc:
            raise BackendError(
                f"{self.provider} transport error: {exc}",
                provider=self.provider,
                kind=BackendErrorKind.TRANSIENT,
            ) from exc
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                f"{self.provider} returned a non-JSON body",
                provider=self.provider,
                kind=BackendErrorKind.TRANSIENT,
            ) from exc


class OpenAICompatibleBackend(_HttpBackend):
    """Chat-completions backend for OpenAI and compatible APIs (Qwen, DeepSeek, ...)."""

    async def complete(self, request: CompletionRequest) -> str:
        messages: list[dict[str, str]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        body = await self._post("/chat/completions", payload)
        choices = body.get("choices") or []
        if not choices:
            return ""
        content = (choices[0].get("message") or {}).get("content") or ""
        return _strip_thinking(content)


class AnthropicBackend(_HttpBackend):
    """Messages API backend."""

    async def complete(self, request: CompletionRequest) -> str:
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "system": request.system_prompt or "You are a helpful AI assistant.",
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        body = await self._post("/messages", payload)
        blocks = body.get("content") or []
        return "".join(block.get("text", "") for block in blocks if block.get("type") == "text")


class LangChainChatBackend(ModelBackend):
    """Backend over any LangChain chat model exposing ``ainvoke`` (e.g. ChatOllama)."""

    def __init__(self, provider: str, chat_model: Any) -> None:
        self.provider = provider
        self._chat_model = chat_model

    @classmethod
    def for_ollama(cls, provider: str, settings: ProviderSettings, model: str) -> "LangChainChatBackend":
        from langchain_ollama import ChatOllama

        return cls(provider, ChatOllama(model=model, base_url=settings.base_url.rstrip("/"), temperature=0.1))

    async def complete(self, request: CompletionRequest) -> str:
        client = self._chat_model
        options: dict[str, Any] = {"num_predict": request.max_tokens}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if hasattr(client, "with_options"):
            client = client.with_options(**options)
        try:
            result = await client.ainvoke(messages_from_text(request.prompt, request.system_prompt))
        except BackendError:
            raise
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            if isinstance(status, int):
                raise BackendError.from_status(status, str(exc), provider=self.provider) from exc
            raise BackendError(str(exc), provider=self.provider, kind=BackendErrorKind.TRANSIENT) from exc
        return extract_content(result)


def _strip_thinking(content: str) -> str:
    if "<think>" in content and "</think>" in content:
        return content[content.index("</think>") + len("</think>"):].strip()
    return content


@dataclass(slots=True)
class BackendPool:
    """Registered backends plus the model catalog describing what each provider serves."""

    backends: dict[str, ModelBackend] = field(default_factory=dict)
    catalog: tuple[ModelSpec, ...] = DEFAULT_MODEL_CATALOG

    def register(self, backend: ModelBackend, *, models: Iterable[ModelSpec] = ()) -> None:
        self.backends[backend.provider] = backend
        extra = tuple(spec for spec in models if spec.id not in {item.id for item in self.catalog})
        if extra:
            self.catalog = extra + self.catalog

    def get(self, provider: str) -> ModelBackend | None:
        return self.backends.get(provider)

    def __contains__(self, provider: object) -> bool:
        return provider in self.backends

    def providers(self) -> list[str]:
        """Registered providers in catalog order, unknown providers last."""
        ordered: list[str] = []
        for spec in self.catalog:
            if spec.provider in self.backends and spec.provider not in ordered:
                ordered.append(spec.provider)
        for provider in self.backends:
            if provider not in ordered:
                ordered.append(provider)
        return ordered

    def models(self) -> list[ModelSpec]:
        return [spec for spec in self.catalog if spec.provider in self.backends]

    def default_model(self, provider: str) -> str:
        for spec in self.catalog:
            if spec.provider == provider:
                return spec.api_model
        return provider

    def best_model_for(self, task_type: str) -> ModelSpec | None:
        wanted = set(TASK_STRENGTHS.get(task_type, ()))
        available = self.models()
        best: ModelSpec | None = None
        best_score = 0
        for spec in available:
            score = len(wanted.intersection(spec.strengths))
            if score > best_score:
                best, best_score = spec, score
        if best is None and available:
            return available[0]
        if best is None and self.backends:
            provider = self.providers()[0]
            return ModelSpec(id=provider, provider=provider, api_model=self.default_model(provider))
        return best

    async def aclose(self) -> None:
        for backend in self.backends.values():
            await backend.aclose()


def _catalog_from_settings(provider: str, settings: ProviderSettings) -> list[ModelSpec]:
    return [
        ModelSpec(
            id=item.id,
            provider=provider,
            api_model=item.api_model,
            name=item.name or item.id,
            strengths=tuple(item.strengths),
        )
        for item in settings.models
    ]


def build_backend(provider: str, settings: ProviderSettings, *, default_model: str) -> ModelBackend:
    if settings.kind == "ollama":
        return LangChainChatBackend.for_ollama(provider, settings, default_model)
    if settings.api_key is None:
        raise ConfigurationError(f"Provider '{provider}' requires an api key")
    key = settings.api_key.get_secret_value()
    timeout = httpx.Timeout(settings.timeout_seconds)
    if settings.kind == "anthropic":
        headers = {"x-api-key": key, "anthropic-version": "2023-06-01"}
        client = httpx.AsyncClient(base_url=settings.base_url.rstrip("/"), headers=headers, timeout=timeout)
        return AnthropicBackend(provider, client)
    headers = {"Authorization": f"Bearer {key}"}
    client = httpx.AsyncClient(base_url=settings.base_url.rstrip("/"), headers=headers, timeout=timeout)
    return OpenAICompatibleBackend(provider, client)


def build_backend_pool(settings: Settings, *, extra: Mapping[str, ModelBackend] | None = None) -> BackendPool:
    """Create a pool from configured providers; remote providers lacking a key are skipped."""
    pool = BackendPool()
    for provider, provider_settings in settings.providers.items():
        if provider_settings.kind != "ollama" and provider_settings.api_key is None:
            logger.info("provider_disabled_missing_key", provider=provider)
            continue
        models = _catalog_from_settings(provider, provider_settings)
        default_model = models[0].api_model if models else pool.default_model(provider)
        pool.register(build_backend(provider, provider_settings, default_model=default_model), models=models)
    for backend in (extra or {}).values():
        pool.register(backend)
    logger.info("backend_pool_ready", providers=pool.providers())
    return pool
