"""Known providers: credentials, host variables, defaults and suggested models."""

from dataclasses import dataclass
from typing import Any

from kestrel.llm.protocol import ProviderConfig, RetryPolicy


@dataclass(frozen=True)
class KnownProvider:
    name: str
    display_name: str
    type: str
    credential_fields: frozenset[str]
    host_env: str
    default_host: str
    default_model: str
    known_models: tuple[str, ...] = ()
    base_path: str | None = None
    doc_url: str = ""
    optional_fields: frozenset[str] = frozenset()


KNOWN_PROVIDERS: dict[str, KnownProvider] = {
    "openai": KnownProvider(
        name="openai",
        display_name="OpenAI",
        type="openai",
        credential_fields=frozenset({"OPENAI_API_KEY"}),
        host_env="OPENAI_HOST",
        default_host="https://api.openai.com",
        default_model="gpt-4o",
        known_models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo", "o1", "o3", "o4-mini"),
        base_path="v1/chat/completions",
        doc_url="https://platform.openai.com/docs/models",
        optional_fields=frozenset(
            {"OPENAI_ORGANIZATION", "OPENAI_PROJECT", "OPENAI_CUSTOM_HEADERS"}
        ),
    ),
    "openrouter": KnownProvider(
        name="openrouter",
        display_name="OpenRouter",
        type="openrouter",
        credential_fields=frozenset({"OPENROUTER_API_KEY"}),
        host_env="OPENROUTER_HOST",
        default_host="https://openrouter.ai",
        default_model="anthropic/claude-3.5-sonnet",
        known_models=(
            "anthropic/claude-3.5-sonnet",
            "anthropic/claude-3.7-sonnet",
            "google/gemini-2.5-pro-exp-03-25:free",
            "deepseek/deepseek-r1",
        ),
        base_path="api/v1/chat/completions",
        doc_url="https://openrouter.ai/models",
    ),
    "google": KnownProvider(
        name="google",
        display_name="Google Gemini",
        type="google",
        credential_fields=frozenset({"GOOGLE_API_KEY"}),
        host_env="GOOGLE_HOST",
        default_host="https://generativelanguage.googleapis.com",
        default_model="gemini-2.0-flash",
        known_models=(
            "gemini-2.0-flash",
            "gemini-2.0-flash-lite-preview-02-05",
            "gemini-2.0-pro-exp-02-05",
            "gemini-2.5-pro-exp-03-25",
            "gemini-2.5-flash-preview-04-17",
        ),
        doc_url="https://ai.google/get-started/our-models/",
    ),
    "anthropic": KnownProvider(
        name="anthropic",
        display_name="Anthropic",
        type="anthropic",
        credential_fields=frozenset({"ANTHROPIC_API_KEY"}),
        host_env="ANTHROPIC_HOST",
        default_host="https://api.anthropic.com",
        default_model="claude-3-5-sonnet-latest",
        known_models=("claude-3-5-sonnet-latest", "claude-3-5-haiku-latest", "claude-3-7-sonnet-latest"),
        base_path="v1/messages",
        doc_url="https://docs.anthropic.com/en/docs/about-claude/models",
    ),
}


def parse_custom_headers(raw: str) -> dict[str, str]:
    """'X-A=1,X-B=2' -> {'X-A': '1', 'X-B': '2'}. Malformed pairs are skipped."""
    headers: dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        key, value = key.strip(), value.strip()
        if sep and key:
            headers[key] = value
    return headers


def _dict_to_retry_policy(data: dict[str, Any] | None) -> RetryPolicy:
    data = data or {}
    defaults = RetryPolicy()
    return RetryPolicy(
        max_retries=int(data.get("max_retries", defaults.max_retries)),
        initial_interval_ms=int(data.get("initial_interval_ms", defaults.initial_interval_ms)),
        backoff_multiplier=float(data.get("backoff_multiplier", defaults.backoff_multiplier)),
        max_interval_ms=int(data.get("max_interval_ms", defaults.max_interval_ms)),
    )


def dict_to_provider_config(name: str, data: dict[str, Any]) -> ProviderConfig:
    """Build a ProviderConfig from a settings entry, filling gaps from the catalog."""
    known = KNOWN_PROVIDERS.get(str(data.get("type") or name))
    ptype = str(data.get("type") or (known.type if known else "openai_compatible"))
    if "credential_fields" in data:
        credential_fields = frozenset(str(f) for f in data.get("credential_fields") or [])
    else:
        credential_fields = known.credential_fields if known else frozenset()
    headers = data.get("default_headers") or {}
    if isinstance(headers, str):
        headers = parse_custom_headers(headers)
    return ProviderConfig(
        name=name,
        type=ptype,
        model=str(data.get("model") or (known.default_model if known else "")),
        credential_fields=credential_fields,
        optional_fields=frozenset(data.get("optional_fields") or (known.optional_fields if known else ())),
        host=data.get("host"),
        host_env=data.get("host_env") or (known.host_env if known else None),
        default_host=str(data.get("default_host") or (known.default_host if known else "")),
        base_path=data.get("base_path") or (known.base_path if known else None),
        organization=data.get("organization"),
        project=data.get("project"),
        default_headers={str(k): str(v) for k, v in dict(headers).items()},
        timeout_seconds=float(data.get("timeout_seconds", 600.0)),
        retry_policy=_dict_to_retry_policy(data.get("retry")),
    )
