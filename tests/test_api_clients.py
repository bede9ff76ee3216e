"""
Tests for the provider adapters, the dispatcher and error classification.
SDK clients are replaced by unittest.mock objects; nothing touches the network.
"""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from governed_router.api_clients import (
    AnthropicAdapter, OpenAIAdapter, ProviderDispatcher, build_adapter_from_env,
)
from governed_router.errors import (
    ErrorClass, ProviderTerminalError, ProviderTransientError, classify_exception,
)
from governed_router.models import ModelDescriptor, RequestOptions, TokenUsage

GPT = ModelDescriptor("openai", "gpt-4o")
CLAUDE = ModelDescriptor("anthropic", "claude-sonnet")


def _openai_client(content="hi", prompt_tokens=12, completion_tokens=3, side_effect=None):
    client = MagicMock()
    response = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=side_effect)
    return client


def _anthropic_client(text="hello", side_effect=None):
    client = MagicMock()
    response = SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=20, output_tokens=5),
    )
    client.messages.create = AsyncMock(return_value=response, side_effect=side_effect)
    return client


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int, headers=None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response = SimpleNamespace(status_code=status_code, headers=headers or {})


# ─────────────────────────────────────────────────────────────────────────────
# Adapters
# ─────────────────────────────────────────────────────────────────────────────

class TestOpenAIAdapter:

    @pytest.mark.asyncio
    async def test_invoke_maps_response(self):
        client = _openai_client()
        adapter = OpenAIAdapter(client=client)
        resp = await adapter.invoke(GPT, "question", RequestOptions(max_tokens=50), system="be brief")
        assert resp.text == "hi"
        assert resp.usage == TokenUsage(12, 3)
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o"
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}
        assert kwargs["messages"][-1] == {"role": "user", "content": "question"}

    @pytest.mark.asyncio
    async def test_sdk_error_is_classified(self):
        client = _openai_client(side_effect=_StatusError("rate limited", 429, {"retry-after": "2"}))
        with pytest.raises(ProviderTransientError) as info:
            await OpenAIAdapter(client=client).invoke(GPT, "q", RequestOptions())
        assert info.value.error_class == ErrorClass.RATE_LIMIT
        assert info.value.retry_after == 2.0

    @pytest.mark.asyncio
    async def test_missing_content_is_empty_text(self):
        client = _openai_client(content=None)
        resp = await OpenAIAdapter(client=client).invoke(GPT, "q", RequestOptions())
        assert resp.text == ""


class TestAnthropicAdapter:

    @pytest.mark.asyncio
    async def test_invoke_maps_response(self):
        client = _anthropic_client()
        resp = await AnthropicAdapter(client=client).invoke(
            CLAUDE, "question", RequestOptions(), system="sys")
        assert resp.text == "hello"
        assert resp.usage == TokenUsage(20, 5)
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"] == [{"role": "user", "content": "question"}]

    @pytest.mark.asyncio
    async def test_auth_error_is_terminal(self):
        client = _anthropic_client(side_effect=_StatusError("invalid x-api-key", 401))
        with pytest.raises(ProviderTerminalError) as info:
            await AnthropicAdapter(client=client).invoke(CLAUDE, "q", RequestOptions())
        assert info.value.error_class == ErrorClass.AUTH
        assert not info.value.retryable


class TestDispatcher:

    @pytest.mark.asyncio
    async def test_routes_by_provider(self):
        openai_adapter = OpenAIAdapter(client=_openai_client("from openai"))
        dispatcher = ProviderDispatcher({"openai": openai_adapter})
        dispatcher.register("anthropic", AnthropicAdapter(client=_anthropic_client("from claude")))
        assert dispatcher.providers == ["anthropic", "openai"]
        assert (await dispatcher.invoke(GPT, "q", RequestOptions())).text == "from openai"
        assert (await dispatcher.invoke(CLAUDE, "q", RequestOptions())).text == "from claude"

    @pytest.mark.asyncio
    async def test_unknown_provider_is_terminal_not_found(self):
        dispatcher = ProviderDispatcher()
        desc = ModelDescriptor("mistral", "mistral-large")
        assert not dispatcher.is_available(desc)
        with pytest.raises(ProviderTerminalError) as info:
            await dispatcher.invoke(desc, "q", RequestOptions())
        assert info.value.error_class == ErrorClass.NOT_FOUND


def test_build_adapter_from_env_registers_present_keys():
    dispatcher = build_adapter_from_env({
        "OPENAI_API_KEY": "sk-test",
        "DEEPSEEK_API_KEY": "ds-test",
        "ANTHROPIC_API_KEY": "",
    })
    assert dispatcher.providers == ["deepseek", "openai"]


def test_build_adapter_from_env_without_keys():
    assert build_adapter_from_env({}).providers == []


# ─────────────────────────────────────────────────────────────────────────────
# classify_exception
# ─────────────────────────────────────────────────────────────────────────────

class TestClassifyException:

    @pytest.mark.parametrize("status,expected", [
        (429, ErrorClass.RATE_LIMIT),
        (401, ErrorClass.AUTH),
        (403, ErrorClass.AUTH),
        (404, ErrorClass.NOT_FOUND),
        (400, ErrorClass.BAD_REQUEST),
        (500, ErrorClass.SERVER_ERROR),
        (503, ErrorClass.SERVER_ERROR),
    ])
    def test_status_codes(self, status, expected):
        assert classify_exception(_StatusError("provider error", status)).error_class == expected

    def test_status_wins_over_message_text(self):
        err = _StatusError("upstream overloaded (request id 401-not found-9)", 503)
        result = classify_exception(err)
        assert result.error_class == ErrorClass.SERVER_ERROR
        assert result.retryable

    def test_timeouts(self):
        assert classify_exception(TimeoutError()).error_class == ErrorClass.TIMEOUT
        assert classify_exception(RuntimeError("read timed out")).error_class == ErrorClass.TIMEOUT

    def test_provider_errors_pass_through(self):
        err = ProviderTerminalError("x", ErrorClass.AUTH)
        assert classify_exception(err) is err

    def test_retryable_classes(self):
        assert ErrorClass.TIMEOUT.retryable
        assert ErrorClass.RATE_LIMIT.retryable
        assert ErrorClass.SERVER_ERROR.retryable
        assert not ErrorClass.BAD_REQUEST.retryable
        assert not ErrorClass.NOT_FOUND.retryable
