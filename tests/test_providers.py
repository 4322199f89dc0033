"""Tests for the built-in providers against mocked HTTP endpoints."""

import json

import httpx
import pytest

from kestrel.llm import (
    AuthFailed,
    CompletionRequest,
    ContextLengthExceeded,
    Message,
    ProviderRouter,
    RequestFailed,
    RequestedToolCall,
    TransientFailure,
)
from kestrel.llm.catalog import dict_to_provider_config
from kestrel.llm.providers import (
    AnthropicProvider,
    GoogleProvider,
    OpenAICompatibleProvider,
    OpenRouterProvider,
)

_TOOLS = [
    {
        "name": "memory__search",
        "description": "Search memory",
        "parameters": {"type": "object", "properties": {"query": {"type": "string"}}},
    }
]


def _request(**kwargs) -> CompletionRequest:
    return CompletionRequest(
        messages=[Message(role="user", content="What do you remember about JWT?")],
        system="You are helpful.",
        **kwargs,
    )


def _chat_completion(content: str | None = "hello", tool_calls: list | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "served-model",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


class TestOpenRouter:
    """Direct httpx provider with in-body errors."""

    _url = "https://openrouter.ai/api/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_complete_parses_tool_calls(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url=self._url,
            method="POST",
            json=_chat_completion(
                content=None,
                tool_calls=[
                    {
                        "id": "call_1",
                        "type": "function",
                        "function": {"name": "memory__search", "arguments": '{"query": "jwt"}'},
                    }
                ],
            ),
        )
        config = dict_to_provider_config("openrouter", {})
        response = await OpenRouterProvider().complete(
            config, {"OPENROUTER_API_KEY": "or-key"}, config.default_host, _request(tools=_TOOLS)
        )
        assert response.tool_calls == [RequestedToolCall(id="call_1", name="memory__search", arguments={"query": "jwt"})]
        assert response.usage.total_tokens == 15

        sent = httpx_mock.get_request()
        assert sent.headers["Authorization"] == "Bearer or-key"
        assert sent.headers["X-Title"] == "kestrel"
        body = json.loads(sent.content)
        assert body["messages"][0] == {"role": "system", "content": "You are helpful."}
        assert body["tools"][0]["function"]["name"] == "memory__search"

    @pytest.mark.asyncio
    async def test_context_length_error_in_200_body(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url=self._url,
            json={"error": {"code": 400, "message": "This endpoint's maximum context length is 8192 tokens"}},
        )
        config = dict_to_provider_config("openrouter", {})
        with pytest.raises(ContextLengthExceeded):
            await OpenRouterProvider().complete(config, {"OPENROUTER_API_KEY": "k"}, config.default_host, _request())

    @pytest.mark.asyncio
    async def test_rate_limit_error_in_200_body_is_transient(self, httpx_mock) -> None:
        httpx_mock.add_response(url=self._url, json={"error": {"code": 429, "message": "Rate limit exceeded"}})
        config = dict_to_provider_config("openrouter", {})
        with pytest.raises(TransientFailure):
            await OpenRouterProvider().complete(config, {"OPENROUTER_API_KEY": "k"}, config.default_host, _request())

    @pytest.mark.asyncio
    async def test_401_is_auth_failed(self, httpx_mock) -> None:
        httpx_mock.add_response(url=self._url, status_code=401, json={"error": {"message": "No auth credentials found"}})
        config = dict_to_provider_config("openrouter", {})
        with pytest.raises(AuthFailed, match="No auth credentials"):
            await OpenRouterProvider().complete(config, {"OPENROUTER_API_KEY": "k"}, config.default_host, _request())

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, httpx_mock) -> None:
        httpx_mock.add_exception(httpx.ConnectError("connection refused"), url=self._url)
        config = dict_to_provider_config("openrouter", {})
        with pytest.raises(TransientFailure, match="ConnectError"):
            await OpenRouterProvider().complete(config, {"OPENROUTER_API_KEY": "k"}, config.default_host, _request())

    @pytest.mark.asyncio
    async def test_router_retries_then_succeeds(self, httpx_mock) -> None:
        httpx_mock.add_response(url=self._url, status_code=503, json={"error": {"message": "overloaded"}})
        httpx_mock.add_response(url=self._url, json=_chat_completion("recovered"))
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)

        async def secrets(name: str) -> str | None:
            return {"OPENROUTER_API_KEY": "k"}.get(name)

        router = ProviderRouter({}, secrets_getter=secrets, sleep=fake_sleep)
        response = await router.complete(router.provider_config("openrouter"), _request())
        assert response.content == "recovered"
        assert sleeps == [5.0]


class TestGoogle:
    @pytest.mark.asyncio
    async def test_complete(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash:generateContent?key=g-key",
            method="POST",
            json={
                "candidates": [
                    {
                        "content": {
                            "role": "model",
                            "parts": [
                                {"text": "Let me look."},
                                {"functionCall": {"name": "memory__search", "args": {"query": "jwt"}}},
                            ],
                        }
                    }
                ],
                "usageMetadata": {"promptTokenCount": 7, "candidatesTokenCount": 3, "totalTokenCount": 10},
            },
        )
        config = dict_to_provider_config("google", {})
        response = await GoogleProvider().complete(
            config, {"GOOGLE_API_KEY": "g-key"}, config.default_host, _request(tools=_TOOLS, max_tokens=256)
        )
        assert response.content == "Let me look."
        assert response.tool_calls[0].name == "memory__search"
        assert response.tool_calls[0].arguments == {"query": "jwt"}
        assert response.usage.total_tokens == 10
        body = json.loads(httpx_mock.get_request().content)
        assert body["systemInstruction"] == {"parts": [{"text": "You are helpful."}]}
        assert body["generationConfig"] == {"maxOutputTokens": 256}

    @pytest.mark.asyncio
    async def test_fetch_models_strips_prefix(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://generativelanguage.googleapis.com/v1beta/models?key=g-key",
            json={"models": [{"name": "models/gemini-2.0-flash"}, {"name": "models/gemini-1.5-pro"}]},
        )
        config = dict_to_provider_config("google", {})
        models = await GoogleProvider().fetch_models(config, {"GOOGLE_API_KEY": "g-key"}, config.default_host)
        assert models == ["gemini-1.5-pro", "gemini-2.0-flash"]


class TestAnthropic:
    @pytest.mark.asyncio
    async def test_complete(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://api.anthropic.com/v1/messages",
            method="POST",
            json={
                "model": "claude-3-5-sonnet-latest",
                "content": [
                    {"type": "text", "text": "Checking."},
                    {"type": "tool_use", "id": "tu_1", "name": "memory__search", "input": {"query": "jwt"}},
                ],
                "usage": {"input_tokens": 12, "output_tokens": 4},
            },
        )
        config = dict_to_provider_config("anthropic", {})
        response = await AnthropicProvider().complete(
            config, {"ANTHROPIC_API_KEY": "ak"}, config.default_host, _request(tools=_TOOLS)
        )
        assert response.content == "Checking."
        assert response.tool_calls[0].id == "tu_1"
        assert response.usage.total_tokens == 16
        sent = httpx_mock.get_request()
        assert sent.headers["x-api-key"] == "ak"
        assert sent.headers["anthropic-version"] == "2023-06-01"
        body = json.loads(sent.content)
        assert body["system"] == "You are helpful."
        assert body["max_tokens"] == 4096
        assert body["tools"][0]["input_schema"]["properties"] == {"query": {"type": "string"}}

    @pytest.mark.asyncio
    async def test_prompt_too_long_is_context_length(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://api.anthropic.com/v1/messages",
            status_code=400,
            json={"type": "error", "error": {"type": "invalid_request_error", "message": "prompt is too long: 210000 tokens"}},
        )
        config = dict_to_provider_config("anthropic", {})
        with pytest.raises(ContextLengthExceeded):
            await AnthropicProvider().complete(config, {"ANTHROPIC_API_KEY": "ak"}, config.default_host, _request())


class TestOpenAICompatible:
    """Through the openai SDK; its httpx transport is mocked."""

    @pytest.mark.asyncio
    async def test_complete_with_org_and_custom_headers(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://api.openai.com/v1/chat/completions",
            method="POST",
            json=_chat_completion("hi there"),
        )
        config = dict_to_provider_config("openai", {})
        credentials = {
            "OPENAI_API_KEY": "sk-test",
            "OPENAI_ORGANIZATION": "org-1",
            "OPENAI_CUSTOM_HEADERS": "X-Team=agents",
        }
        response = await OpenAICompatibleProvider().complete(config, credentials, config.default_host, _request())
        assert response.content == "hi there"
        assert response.model == "served-model"
        sent = httpx_mock.get_request()
        assert sent.headers["Authorization"] == "Bearer sk-test"
        assert sent.headers["OpenAI-Organization"] == "org-1"
        assert sent.headers["X-Team"] == "agents"

    @pytest.mark.asyncio
    async def test_custom_host(self, httpx_mock) -> None:
        httpx_mock.add_response(url="http://localhost:11434/v1/chat/completions", json=_chat_completion("local"))
        config = dict_to_provider_config("ollama", {"type": "openai_compatible", "model": "llama3", "credential_fields": []})
        response = await OpenAICompatibleProvider().complete(config, {}, "http://localhost:11434", _request())
        assert response.content == "local"

    @pytest.mark.asyncio
    async def test_status_errors_are_classified(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://api.openai.com/v1/chat/completions",
            status_code=401,
            json={"error": {"message": "Incorrect API key provided", "type": "invalid_request_error"}},
        )
        httpx_mock.add_response(
            url="https://api.openai.com/v1/chat/completions",
            status_code=500,
            json={"error": {"message": "server error"}},
        )
        config = dict_to_provider_config("openai", {})
        provider = OpenAICompatibleProvider()
        with pytest.raises(AuthFailed):
            await provider.complete(config, {"OPENAI_API_KEY": "bad"}, config.default_host, _request())
        with pytest.raises(TransientFailure):
            await provider.complete(config, {"OPENAI_API_KEY": "sk"}, config.default_host, _request())

    @pytest.mark.asyncio
    async def test_base_path_must_end_with_chat_completions(self) -> None:
        config = dict_to_provider_config("openai", {"base_path": "v1/responses"})
        with pytest.raises(RequestFailed):
            await OpenAICompatibleProvider().complete(config, {"OPENAI_API_KEY": "sk"}, config.default_host, _request())

    @pytest.mark.asyncio
    async def test_fetch_models(self, httpx_mock) -> None:
        httpx_mock.add_response(
            url="https://api.openai.com/v1/models",
            json={"object": "list", "data": [
                {"id": "gpt-4o", "object": "model", "created": 0, "owned_by": "openai"},
                {"id": "gpt-4o-mini", "object": "model", "created": 0, "owned_by": "openai"},
            ]},
        )
        config = dict_to_provider_config("openai", {})
        models = await OpenAICompatibleProvider().fetch_models(config, {"OPENAI_API_KEY": "sk"}, config.default_host)
        assert models == ["gpt-4o", "gpt-4o-mini"]
