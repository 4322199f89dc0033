"""OpenAI and OpenAI-compatible chat completions via the openai SDK."""

import logging

import openai
from openai import AsyncOpenAI

from kestrel.llm.catalog import parse_custom_headers
from kestrel.llm.errors import ProviderError, RequestFailed, TransientFailure, classify_status
from kestrel.llm.hosts import join_url
from kestrel.llm.protocol import CompletionRequest, CompletionResponse, ProviderConfig
from kestrel.llm.providers.formats import from_openai_payload, to_openai_payload

logger = logging.getLogger(__name__)

_CHAT_SUFFIX = "chat/completions"


def _base_url(config: ProviderConfig, host: str) -> str:
    base_path = (config.base_path or f"v1/{_CHAT_SUFFIX}").strip("/")
    if not base_path.endswith(_CHAT_SUFFIX):
        raise RequestFailed(f"base path {base_path!r} must end with {_CHAT_SUFFIX!r}")
    return join_url(host, base_path[: -len(_CHAT_SUFFIX)])


def _map_error(e: openai.OpenAIError) -> ProviderError:
    if isinstance(e, openai.APIStatusError):
        return classify_status(e.status_code, e.message)
    if isinstance(e, openai.APIConnectionError):
        return TransientFailure(f"connection error: {e}")
    return RequestFailed(str(e))


class OpenAICompatibleProvider:
    """Chat completions with organisation, project and custom header support.

    SDK retries are disabled; ProviderRouter owns the retry policy.
    """

    provider_type = "openai"

    def _client(self, config: ProviderConfig, credentials: dict[str, str], host: str) -> AsyncOpenAI:
        headers = dict(config.default_headers)
        raw_custom = credentials.get("OPENAI_CUSTOM_HEADERS")
        if raw_custom:
            headers.update(parse_custom_headers(raw_custom))
        api_key_field = config.api_key_field
        return AsyncOpenAI(
            base_url=_base_url(config, host),
            api_key=(credentials.get(api_key_field) if api_key_field else None) or "not-required",
            organization=config.organization or credentials.get("OPENAI_ORGANIZATION"),
            project=config.project or credentials.get("OPENAI_PROJECT"),
            default_headers=headers or None,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def complete(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
        request: CompletionRequest,
    ) -> CompletionResponse:
        payload = to_openai_payload(config.model, request)
        async with self._client(config, credentials, host) as client:
            try:
                completion = await client.chat.completions.create(**payload)
            except openai.OpenAIError as e:
                raise _map_error(e) from e
        return from_openai_payload(completion.model_dump(), config.model)

    async def fetch_models(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
    ) -> list[str] | None:
        async with self._client(config, credentials, host) as client:
            try:
                page = await client.models.list()
            except openai.OpenAIError as e:
                raise _map_error(e) from e
            return sorted(m.id for m in page.data)
