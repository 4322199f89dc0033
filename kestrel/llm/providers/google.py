"""Google Gemini generateContent over httpx."""

import logging
import uuid
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


def _message_to_content(message: Message) -> dict[str, Any]:
    if message.role == "tool":
        return {
            "role": "user",
            "parts": [
                {
                    "functionResponse": {
                        "name": message.tool_call_id or "",
                        "response": {"content": message.content},
                    }
                }
            ],
        }
    parts: list[dict[str, Any]] = []
    if message.content:
        parts.append({"text": message.content})
    for call in message.tool_calls:
        parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
    role = "model" if message.role == "assistant" else "user"
    return {"role": role, "parts": parts or [{"text": ""}]}


def to_google_payload(request: CompletionRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "contents": [_message_to_content(m) for m in request.messages],
    }
    if request.system:
        payload["systemInstruction"] = {"parts": [{"text": request.system}]}
    if request.tools:
        payload["tools"] = [
            {
                "functionDeclarations": [
                    {
                        "name": t["name"],
                        "description": t.get("description", ""),
                        "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                    }
                    for t in request.tools
                ]
            }
        ]
    generation: dict[str, Any] = {}
    if request.temperature is not None:
        generation["temperature"] = request.temperature
    if request.max_tokens is not None:
        generation["maxOutputTokens"] = request.max_tokens
    if generation:
        payload["generationConfig"] = generation
    return payload


def from_google_payload(data: dict[str, Any], model: str) -> CompletionResponse:
    candidates = data.get("candidates") or []
    parts = ((candidates[0].get("content") or {}).get("parts") if candidates else None) or []
    texts: list[str] = []
    tool_calls: list[RequestedToolCall] = []
    for part in parts:
        if "text" in part:
            texts.append(str(part["text"]))
        elif "functionCall" in part:
            fc = part["functionCall"] or {}
            tool_calls.append(
                RequestedToolCall(
                    id=uuid.uuid4().hex,
                    name=str(fc.get("name") or ""),
                    arguments=dict(fc.get("args") or {}),
                )
            )
    usage = data.get("usageMetadata") or {}
    return CompletionResponse(
        model=str(data.get("modelVersion") or model),
        content="".join(texts),
        tool_calls=tool_calls,
        usage=Usage(
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
            total_tokens=usage.get("totalTokenCount"),
        ),
        raw=data,
    )


class GoogleProvider:
    provider_type = "google"

    def _key(self, config: ProviderConfig, credentials: dict[str, str]) -> str:
        field = config.api_key_field
        return credentials.get(field, "") if field else ""

    async def complete(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
        request: CompletionRequest,
    ) -> CompletionResponse:
        url = join_url(host, f"v1beta/models/{config.model}:generateContent")
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            response = await send(
                client,
                "POST",
                url,
                params={"key": self._key(config, credentials)},
                json=to_google_payload(request),
                headers={"Content-Type": "application/json", **config.default_headers},
            )
        return from_google_payload(json_body(response), config.model)

    async def fetch_models(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
    ) -> list[str] | None:
        url = join_url(host, "v1beta/models")
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            response = await send(
                client, "GET", url, params={"key": self._key(config, credentials)}
            )
        models = json_body(response).get("models")
        if not isinstance(models, list):
            return None
        names = [str(m.get("name", "")) for m in models if isinstance(m, dict)]
        return sorted(n.removeprefix("models/") for n in names if n)
