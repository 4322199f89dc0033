"""OpenRouter chat completions over httpx.

OpenRouter may report errors inside an HTTP 200 body; those are classified
by the error code they carry.
"""

import logging
from typing import Any

import httpx

from kestrel.llm.errors import ContextLengthExceeded, ProviderError, RequestFailed, classify_status
from kestrel.llm.hosts import join_url
from kestrel.llm.protocol import CompletionRequest, CompletionResponse, ProviderConfig
from kestrel.llm.providers.formats import from_openai_payload, to_openai_payload
from kestrel.llm.providers.http import json_body, send

logger = logging.getLogger(__name__)

_REFERER = "https://github.com/kestrel-agent/kestrel"
_TITLE = "kestrel"


def _classify_body_error(error_obj: Any) -> ProviderError:
    if not isinstance(error_obj, dict):
        return RequestFailed(str(error_obj))
    message = str(error_obj.get("message") or "Unknown OpenRouter error")
    try:
        code = int(error_obj.get("code") or 0)
    except (TypeError, ValueError):
        code = 0
    if code == 400 and "maximum context length" in message:
        return ContextLengthExceeded(message, code)
    if code in (401, 403, 429, 500, 502, 503, 504):
        return classify_status(code, message)
    return RequestFailed(message, code or None)


class OpenRouterProvider:
    provider_type = "openrouter"

    def _headers(self, config: ProviderConfig, credentials: dict[str, str]) -> dict[str, str]:
        api_key_field = config.api_key_field
        headers = {
            "Content-Type": "application/json",
            "HTTP-Referer": _REFERER,
            "X-Title": _TITLE,
            **config.default_headers,
        }
        if api_key_field and credentials.get(api_key_field):
            headers["Authorization"] = f"Bearer {credentials[api_key_field]}"
        return headers

    async def complete(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
        request: CompletionRequest,
    ) -> CompletionResponse:
        url = join_url(host, config.base_path or "api/v1/chat/completions")
        payload = to_openai_payload(config.model, request)
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            response = await send(
                client, "POST", url, json=payload, headers=self._headers(config, credentials)
            )
        body = json_body(response)
        if body.get("error"):
            raise _classify_body_error(body["error"])
        return from_openai_payload(body, config.model)

    async def fetch_models(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
    ) -> list[str] | None:
        url = join_url(host, "api/v1/models")
        async with httpx.AsyncClient(timeout=config.timeout_seconds) as client:
            response = await send(client, "GET", url, headers=self._headers(config, credentials))
        body = json_body(response)
        data = body.get("data")
        if not isinstance(data, list):
            return None
        return sorted(str(m["id"]) for m in data if isinstance(m, dict) and m.get("id"))
