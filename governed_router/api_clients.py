"""
Provider adapters — one async invoke() over the OpenAI and Anthropic SDKs.
=========================================================================
Each provider has its own SDK idiom. Adapters normalise them into
ProviderResponse(text, usage, latency_ms) and translate SDK exceptions into
the ProviderError taxonomy, so the orchestrator never sees SDK types.

  OpenAIAdapter        openai.AsyncOpenAI (also OpenAI-compatible endpoints
                       via base_url, e.g. Kimi or DeepSeek)
  AnthropicAdapter     anthropic.AsyncAnthropic
  ProviderDispatcher   routes by ModelDescriptor.provider

build_adapter_from_env() wires a dispatcher from API keys in the environment
(after python-dotenv's load_dotenv). Missing keys → provider unavailable.
"""
from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from openai import AsyncOpenAI

from .errors import ErrorClass, ProviderTerminalError, classify_exception
from .models import ModelDescriptor, RequestOptions, TokenUsage

logger = logging.getLogger("governed_router.api")


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    usage: TokenUsage
    latency_ms: float = 0.0


class ProviderAdapter(ABC):
    """Abstract provider call. Implementations raise ProviderError only."""

    @abstractmethod
    async def invoke(
        self,
        descriptor: ModelDescriptor,
        normalized_input: str,
        options: RequestOptions,
        system: str = "",
    ) -> ProviderResponse:
        ...


class OpenAIAdapter(ProviderAdapter):

    def __init__(self, client: Optional[AsyncOpenAI] = None,
                 api_key: Optional[str] = None, base_url: Optional[str] = None) -> None:
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def invoke(self, descriptor, normalized_input, options, system=""):
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": normalized_input})

        t0 = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=descriptor.name,
                messages=messages,
                max_tokens=options.max_tokens,
                temperature=options.temperature,
            )
        except Exception as exc:
            raise classify_exception(exc) from exc
        latency_ms = (time.monotonic() - t0) * 1000

        choice = response.choices[0]
        usage = response.usage
        return ProviderResponse(
            text=choice.message.content or "",
            usage=TokenUsage(
                usage.prompt_tokens if usage else 0,
                usage.completion_tokens if usage else 0,
            ),
            latency_ms=latency_ms,
        )


class AnthropicAdapter(ProviderAdapter):

    def __init__(self, client: Optional[AsyncAnthropic] = None,
                 api_key: Optional[str] = None) -> None:
        self._client = client or AsyncAnthropic(api_key=api_key)

    async def invoke(self, descriptor, normalized_input, options, system=""):
        kwargs = {
            "model": descriptor.name,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": [{"role": "user", "content": normalized_input}],
        }
        if system:
            kwargs["system"] = system

        t0 = time.monotonic()
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as exc:
            raise classify_exception(exc) from exc
        latency_ms = (time.monotonic() - t0) * 1000

        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        return ProviderResponse(
            text=text,
            usage=TokenUsage(response.usage.input_tokens, response.usage.output_tokens),
            latency_ms=latency_ms,
        )


class ProviderDispatcher(ProviderAdapter):
    """Delegates to the adapter registered for descriptor.provider."""

    def __init__(self, adapters: Optional[Mapping[str, ProviderAdapter]] = None) -> None:
        self._adapters: dict[str, ProviderAdapter] = dict(adapters or {})

    def register(self, provider: str, adapter: ProviderAdapter) -> None:
        self._adapters[provider] = adapter

    @property
    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def is_available(self, descriptor: ModelDescriptor) -> bool:
        return descriptor.provider in self._adapters

    async def invoke(self, descriptor, normalized_input, options, system=""):
        adapter = self._adapters.get(descriptor.provider)
        if adapter is None:
            raise ProviderTerminalError(
                f"No adapter configured for provider {descriptor.provider!r}",
                ErrorClass.NOT_FOUND,
            )
        return await adapter.invoke(descriptor, normalized_input, options, system)


# provider → (API key variable, base_url)
OPENAI_COMPATIBLE: dict[str, tuple[str, str]] = {
    "kimi": ("KIMI_API_KEY", "https://api.moonshot.cn/v1"),
    "deepseek": ("DEEPSEEK_API_KEY", "https://api.deepseek.com/v1"),
}


def build_adapter_from_env(env: Optional[Mapping[str, str]] = None) -> ProviderDispatcher:
    """
    One adapter per provider whose API key is present.

    When env is None, .env is loaded (override=True) and os.environ is read.
    """
    if env is None:
        load_dotenv(override=True)
        env = os.environ

    dispatcher = ProviderDispatcher()
    if env.get("OPENAI_API_KEY"):
        dispatcher.register("openai", OpenAIAdapter(api_key=env["OPENAI_API_KEY"]))
        logger.info("OpenAI adapter initialized")
    if env.get("ANTHROPIC_API_KEY"):
        dispatcher.register("anthropic", AnthropicAdapter(api_key=env["ANTHROPIC_API_KEY"]))
        logger.info("Anthropic adapter initialized")
    for provider, (key_var, base_url) in OPENAI_COMPATIBLE.items():
        if env.get(key_var):
            dispatcher.register(
                provider, OpenAIAdapter(api_key=env[key_var], base_url=base_url),
            )
            logger.info("%s adapter initialized (OpenAI-compatible)", provider)
    if not dispatcher.providers:
        logger.warning("No provider API keys found; every invocation will fail with not_found")
    return dispatcher
