"""Chat-completions wire format shared by the OpenAI-style providers."""

import json
from typing import Any

from kestrel.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    Message,
    RequestedToolCall,
    Usage,
)


def _message_to_openai(message: Message) -> dict[str, Any]:
    out: dict[str, Any] = {"role": message.role, "content": message.content}
    if message.tool_calls:
        out["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
            }
            for call in message.tool_calls
        ]
    if message.tool_call_id:
        out["tool_call_id"] = message.tool_call_id
    return out


def to_openai_payload(model: str, request: CompletionRequest) -> dict[str, Any]:
    messages: list[dict[str, Any]] = []
    if request.system:
        messages.append({"role": "system", "content": request.system})
    messages.extend(_message_to_openai(m) for m in request.messages)
    payload: dict[str, Any] = {"model": model, "messages": messages}
    if request.tools:
        payload["tools"] = [
            {
                "type": "function",
                "function": {
                    "name": t["name"],
                    "description": t.get("description", ""),
                    "parameters": t.get("parameters") or {"type": "object", "properties": {}},
                },
            }
            for t in request.tools
        ]
    if request.temperature is not None:
        payload["temperature"] = request.temperature
    if request.max_tokens is not None:
        payload["max_tokens"] = request.max_tokens
    return payload


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": parsed}


def from_openai_payload(data: dict[str, Any], model: str) -> CompletionResponse:
    choices = data.get("choices") or []
    message = (choices[0].get("message") if choices else None) or {}
    tool_calls = [
        RequestedToolCall(
            id=str(call.get("id") or ""),
            name=str((call.get("function") or {}).get("name") or ""),
            arguments=_parse_arguments((call.get("function") or {}).get("arguments")),
        )
        for call in message.get("tool_calls") or []
    ]
    usage = data.get("usage") or {}
    return CompletionResponse(
        model=str(data.get("model") or model),
        content=message.get("content") or "",
        tool_calls=tool_calls,
        usage=Usage(
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
        ),
        raw=data,
    )


def error_message(response_body: Any, fallback: str) -> str:
    """Best-effort error text from a JSON error body ({error: {message}} or {error: str})."""
    if isinstance(response_body, dict):
        err = response_body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if response_body.get("message"):
            return str(response_body["message"])
    return fallback
