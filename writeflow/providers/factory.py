"""Provider routing: model → provider id → ModelProfile → cached adapter.

Dispatch is a closed table over ProviderId, checked for exhaustiveness at
import time. Anything unroutable fails here, before any network call.
"""

from __future__ import annotations

import httpx
import structlog

from writeflow.config.settings import AISettings, StreamingSettings
from writeflow.infra.errors import MissingAPIKeyError, UnsupportedProviderError
from writeflow.providers.anthropic import AnthropicAdapter
from writeflow.providers.anthropic import DEFAULT_BASE_URL as ANTHROPIC_BASE_URL
from writeflow.providers.base import (
    ModelProfile,
    ProviderAdapter,
    ProviderId,
    infer_provider_from_model,
)
from writeflow.providers.deepseek import DeepSeekAdapter
from writeflow.providers.openai_compat import OpenAICompatAdapter

logger = structlog.get_logger()

ADAPTER_CLASSES: dict[ProviderId, type[ProviderAdapter]] = {
    ProviderId.anthropic: AnthropicAdapter,
    ProviderId.deepseek: DeepSeekAdapter,
    ProviderId.openai: OpenAICompatAdapter,
    ProviderId.kimi: OpenAICompatAdapter,
    ProviderId.openai_compatible: OpenAICompatAdapter,
}

_missing = set(ProviderId) - ADAPTER_CLASSES.keys()
if _missing:  # pragma: no cover
    raise RuntimeError(f"Provider dispatch table incomplete: {sorted(_missing)}")

PROVIDER_DEFAULT_MODELS: dict[ProviderId, str] = {
    ProviderId.deepseek: "deepseek-chat",
    ProviderId.anthropic: "claude-3-sonnet-20240229",
    ProviderId.openai: "gpt-3.5-turbo",
    ProviderId.kimi: "moonshot-v1-8k",
}

DEFAULT_MODEL = "deepseek-chat"

BASE_URLS: dict[ProviderId, str] = {
    ProviderId.anthropic: ANTHROPIC_BASE_URL,
    ProviderId.deepseek: "https://api.deepseek.com",
    ProviderId.openai: "https://api.openai.com/v1",
    ProviderId.kimi: "https://api.moonshot.cn/v1",
}

QWEN_BASE_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"
GLM_BASE_URL = "https://open.bigmodel.cn/api/paas/v4"


def default_provider(settings: AISettings) -> ProviderId:
    """Fallback provider for unrecognized model names: API_PROVIDER, else deepseek."""
    if settings.provider:
        return ProviderId(settings.provider)
    return ProviderId.deepseek


def resolve_default_model(settings: AISettings) -> str:
    """Pick a model when the request names none.

    AI_MODEL wins; then API_PROVIDER's default; then the first provider with
    a configured key (DeepSeek, Anthropic, OpenAI, Kimi, GLM); then deepseek-chat.
    """
    if settings.model:
        return settings.model
    if settings.provider:
        model = PROVIDER_DEFAULT_MODELS.get(ProviderId(settings.provider))
        if model:
            return model
    by_key = (
        (settings.deepseek_api_key, "deepseek-chat"),
        (settings.anthropic_api_key, "claude-3-sonnet-20240229"),
        (settings.openai_api_key, "gpt-3.5-turbo"),
        (settings.kimi_api_key, "moonshot-v1-8k"),
        (settings.glm_api_key, "glm-4-flash"),
    )
    for key, model in by_key:
        if key:
            return model
    return DEFAULT_MODEL


def _compatible_endpoint(model: str, settings: AISettings) -> tuple[str, str]:
    """(base_url, api_key) for the generic OpenAI-compatible family."""
    lowered = model.lower()
    if "qwen" in lowered:
        return settings.base_url or QWEN_BASE_URL, settings.qwen_api_key
    if "glm" in lowered:
        return settings.base_url or GLM_BASE_URL, settings.glm_api_key
    if not settings.base_url:
        raise UnsupportedProviderError(
            f"Model '{model}' needs API_BASE_URL for an OpenAI-compatible endpoint"
        )
    key = settings.qwen_api_key or settings.glm_api_key or settings.openai_api_key
    return settings.base_url, key


def resolve_model_profile(model: str, settings: AISettings) -> ModelProfile:
    """Build the ModelProfile for *model* from the environment.

    Raises UnsupportedProviderError / MissingAPIKeyError before any request.
    """
    provider = infer_provider_from_model(model, default_provider(settings))
    keys = {
        ProviderId.anthropic: settings.anthropic_api_key,
        ProviderId.deepseek: settings.deepseek_api_key,
        ProviderId.openai: settings.openai_api_key,
        ProviderId.kimi: settings.kimi_api_key,
    }

    if provider is ProviderId.openai_compatible:
        base_url, api_key = _compatible_endpoint(model, settings)
    else:
        base_url = BASE_URLS[provider]
        # An explicit base URL applies to the OpenAI-compatible wire family only
        if settings.base_url and provider is not ProviderId.anthropic:
            base_url = settings.base_url
        api_key = keys[provider]

    if not api_key:
        raise MissingAPIKeyError(
            f"No API key configured for provider '{provider.value}' (model '{model}')"
        )
    return ModelProfile(name=model, provider=provider, base_url=base_url, api_key=api_key)


def create_provider(
    provider_id: ProviderId | str,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: httpx.Timeout | None = None,
) -> ProviderAdapter:
    """Instantiate the adapter for *provider_id*. Unknown ids fail fast."""
    try:
        pid = ProviderId(provider_id)
    except ValueError as e:
        raise UnsupportedProviderError(f"Unsupported provider: {provider_id}") from e
    adapter_cls = ADAPTER_CLASSES[pid]
    return adapter_cls(pid, http_client=http_client, timeout=timeout)


class ProviderFactory:
    """Caches one adapter per provider id for the life of the process."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        streaming: StreamingSettings | None = None,
    ) -> None:
        self._http_client = http_client
        streaming = streaming or StreamingSettings()
        self._timeout = httpx.Timeout(
            streaming.request_timeout_s, connect=streaming.connect_timeout_s,
        )
        self._adapters: dict[ProviderId, ProviderAdapter] = {}

    def get(self, provider_id: ProviderId | str) -> ProviderAdapter:
        try:
            pid = ProviderId(provider_id)
        except ValueError as e:
            raise UnsupportedProviderError(f"Unsupported provider: {provider_id}") from e
        adapter = self._adapters.get(pid)
        if adapter is None:
            adapter = create_provider(pid, http_client=self._http_client, timeout=self._timeout)
            self._adapters[pid] = adapter
            logger.info("provider_created", provider=pid.value)
        return adapter

    def cached_providers(self) -> list[str]:
        return [pid.value for pid in self._adapters]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()
