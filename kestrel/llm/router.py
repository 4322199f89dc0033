"""ProviderRouter: credentials, host resolution and retry around provider calls."""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from kestrel.llm.catalog import KNOWN_PROVIDERS, dict_to_provider_config
from kestrel.llm.errors import MissingCredential, RetriesExhausted, TransientFailure
from kestrel.llm.hosts import pick_host
from kestrel.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    ModelProvider,
    ProviderConfig,
)
from kestrel.llm.providers import (
    AnthropicProvider,
    GoogleProvider,
    OpenAICompatibleProvider,
    OpenRouterProvider,
)
from kestrel.llm.retry import backoff_delay_ms
from kestrel.secrets import SecretGetter, get_secret_async, lookup_secrets, mask_secret

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class ProviderRouter:
    """Routes completion requests to the provider named by a ProviderConfig.

    Credentials are checked before any network call. TransientFailure is
    retried per config.retry_policy; every other ProviderError propagates
    immediately.
    """

    def __init__(
        self,
        settings: dict[str, Any] | None = None,
        *,
        secrets_getter: SecretGetter = get_secret_async,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings_providers: dict[str, dict[str, Any]] = {}
        self._secrets = secrets_getter
        self._sleep = sleep
        self._providers: dict[str, ModelProvider] = {}
        self._load(settings or {})
        self._register_defaults()

    def _load(self, settings: dict[str, Any]) -> None:
        for pid, pdata in (settings.get("providers") or {}).items():
            if isinstance(pdata, dict):
                self._settings_providers[str(pid)] = dict(pdata)

    def _register_defaults(self) -> None:
        openai_compat = OpenAICompatibleProvider()
        self._providers["openai"] = openai_compat
        self._providers["openai_compatible"] = openai_compat
        self._providers["openrouter"] = OpenRouterProvider()
        self._providers["google"] = GoogleProvider()
        self._providers["anthropic"] = AnthropicProvider()

    def register_provider(self, provider_type: str, provider: ModelProvider) -> None:
        self._providers[provider_type] = provider

    def provider_names(self) -> list[str]:
        """Configured providers first, then the remaining known ones."""
        names = list(self._settings_providers)
        names.extend(n for n in KNOWN_PROVIDERS if n not in self._settings_providers)
        return names

    def provider_config(self, name: str) -> ProviderConfig:
        """Config for a provider from settings, with catalog defaults for known names."""
        data = self._settings_providers.get(name)
        if data is None:
            if name not in KNOWN_PROVIDERS:
                raise KeyError(f"Unknown provider {name!r}")
            data = {}
        return dict_to_provider_config(name, data)

    def _provider_for(self, config: ProviderConfig) -> ModelProvider:
        provider = self._providers.get(config.type)
        if provider is None:
            raise KeyError(f"Unknown provider type {config.type!r} for provider {config.name!r}")
        return provider

    async def credentials(self, config: ProviderConfig) -> dict[str, str]:
        """Resolve every credential field (keyring, then environment) or raise MissingCredential."""
        found, missing = await lookup_secrets(sorted(config.credential_fields), self._secrets)
        if missing:
            raise MissingCredential(config.name, missing)
        optional, _ = await lookup_secrets(sorted(config.optional_fields), self._secrets)
        found.update(optional)
        if config.api_key_field and config.api_key_field in found:
            logger.debug(
                "Provider %s: using %s=%s",
                config.name,
                config.api_key_field,
                mask_secret(found[config.api_key_field]),
            )
        return found

    async def resolve_host(self, config: ProviderConfig) -> str:
        env_value = await self._secrets(config.host_env) if config.host_env else None
        return pick_host(config, env_value)

    async def complete(self, config: ProviderConfig, request: CompletionRequest) -> CompletionResponse:
        provider = self._provider_for(config)
        credentials = await self.credentials(config)
        host = await self.resolve_host(config)
        policy = config.retry_policy
        attempt = 0
        while True:
            try:
                return await provider.complete(config, credentials, host, request)
            except TransientFailure as e:
                if attempt >= policy.max_retries:
                    logger.error(
                        "Provider %s: giving up after %d attempts: %s",
                        config.name,
                        attempt + 1,
                        e,
                    )
                    raise RetriesExhausted(e, attempts=attempt + 1) from e
                delay_ms = backoff_delay_ms(policy, attempt)
                logger.warning(
                    "Provider %s: transient failure (%s), retry %d/%d in %.1fs",
                    config.name,
                    e,
                    attempt + 1,
                    policy.max_retries,
                    delay_ms / 1000,
                )
                await self._sleep(delay_ms / 1000)
                attempt += 1

    async def fetch_models(self, config: ProviderConfig) -> list[str] | None:
        """Model ids the provider reports; catalog suggestions when it has no listing."""
        provider = self._provider_for(config)
        credentials = await self.credentials(config)
        host = await self.resolve_host(config)
        models = await provider.fetch_models(config, credentials, host)
        if models is None and config.type in KNOWN_PROVIDERS:
            return list(KNOWN_PROVIDERS[config.type].known_models)
        return models
