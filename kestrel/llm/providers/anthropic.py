"""Anthropic Messages API over httpx."""

import logging
from typing import Any

import httpx

from kestrel.llm.hosts import join_url
from kestrel.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    Message,
    ProviderConfig,
    RequestedToolCall,
    Usage,
)
from kestrel.llm.providers.http import json_body, send

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
_DEFAULT_MAX_TOKENS = 4096


def _message_to_anthropic(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "user",
            "content": [
                {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id or "",
                    "content": message.content,
                }
            ],
        }
    blocks: list[dict[str, Any]] = []
    if message.content:
        blocks.append({"type": "text", "text": message.content})
    for call in message.tool_calls:
        blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
    return {"role": message.role, "content": blocks or [{"type": "text", "text": ""}]}


def to_anthropic_payload(model: str, request: CompletionRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": request.max_tokens or _DEFAULT_MAX_TOKENS,
        "messages": [_message_to_anthropic(m) for m in request.messages],
    }
    if request.system:
        payload["system"] = request.system
    if request.tools:
        payload["tools"] = [
            {
                "name": t["name"],
                "description": t.get("description", ""),
                "input_schema": t.get("parameters") or {"type": "object", "properties": {}},
            }
            for t in request.tools
        ]
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    return payload


def from_anthropic_payload(data: dict[str, Any], model: str) -> CompletionResponse:
    texts: list[str] = []
    tool_calls: list[RequestedToolCall] = []
    for block in data.get("content") or []:
        if block.get("type") == "text":
            texts.append(str(block.get("text") or ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(
                RequestedToolCall(
                    id=str(block.get("id") or ""),
                    name=str(block.get("name") or ""),
                    arguments=dict(block.get("input") or {}),
                )
            )
    usage = data.get("usage") or {}
    input_tokens = usage.get("input_tokens")
    output_tokens = usage.get("output_tokens")
    total = (
        input_tokens + output_tokens
        if input_tokens is not None and output_tokens is not None
        else None
    )
    return CompletionResponse(
        model=str(data.get("model") or model),
        content="".join(texts),
        tool_calls=tool_calls,
        usage=Usage(input_tokens=input_tokens, output_tokens=output_tokens, total_tokens=total),
        raw=data,
    )


class AnthropicProvider:
    provider_type = "anthropic"

    def _headers(self, config: ProviderConfig, credentials: dict[str, str]) -> dict[str, str]:
        api_key_field = config.api_key_field
        return {
            "x-api-key": credentials.get(api_key_field, "") if api_key_field else "",
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
            **config.default_headers,
        }

    async def complete(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
        request: CompletionRequest,
    ) -> CompletionResponse:
        url = join_url(host, config.base_path or "v1/messages")
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            response = await send(
                client,
                "POST",
                url,
                json=to_anthropic_payload(config.model, request),
                headers=self._headers(config, credentials),
            )
        return from_anthropic_payload(json_body(response), config.model)

    async def fetch_models(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
    ) -> list[str] | None:
        url = join_url(host, "v1/models")
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            response = await send(client, "GET", url, headers=self._headers(config, credentials))
        data = json_body(response).get("data")
        if not isinstance(data, list):
            return None
        return sorted(str(m["id"]) for m in data if isinstance(m, dict) and m.get("id"))
