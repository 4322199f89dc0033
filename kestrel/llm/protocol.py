"""LLM provider protocol, configuration and request/response dataclasses."""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff for transient provider failures. wait = min(initial * mult**attempt, max)."""

    max_retries: int = 6
    initial_interval_ms: int = 5000
    backoff_multiplier: float = 2.0
    max_interval_ms: int = 320000


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable provider configuration (catalog defaults + config/settings.yaml)."""

    name: str
    type: str  # openai | openai_compatible | openrouter | google | anthropic
    model: str
    credential_fields: frozenset[str] = frozenset()
    optional_fields: frozenset[str] = frozenset()
    host: str | None = None
    host_env: str | None = None
    default_host: str = ""
    base_path: str | None = None
    organization: str | None = None
    project: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 600.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def api_key_field(self) -> str | None:
        """The credential holding the API key: first *_API_KEY field, else the only field."""
        keys = sorted(f for f in self.credential_fields if f.endswith("_API_KEY"))
        if keys:
            return keys[0]
        fields = sorted(self.credential_fields)
        return fields[0] if len(fields) == 1 else None


@dataclass
class Message:
    role: str  # user | assistant | tool
    content: str = ""
    tool_calls: list["RequestedToolCall"] = field(default_factory=list)
    tool_call_id: str | None = None


@dataclass
class RequestedToolCall:
    """A tool call the model asked for. name is the prefixed `<extension>__<tool>`."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class CompletionRequest:
    messages: list[Message]
    system: str | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)  # {name, description, parameters}
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class Usage:
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class CompletionResponse:
    model: str
    content: str = ""
    tool_calls: list[RequestedToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@runtime_checkable
class ModelProvider(Protocol):
    """Contract for an LLM API provider. Raises ProviderError subclasses only."""

    provider_type: str

    async def complete(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
        request: CompletionRequest,
    ) -> CompletionResponse:
        """Run one completion attempt. Retries are the router's job."""
        ...

    async def fetch_models(
        self,
        config: ProviderConfig,
        credentials: dict[str, str],
        host: str,
    ) -> list[str] | None:
        """Sorted model ids, or None if the provider has no listing endpoint."""
        ...
