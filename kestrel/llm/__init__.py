"""LLM provider routing: configs, retry policy, providers."""

from kestrel.llm.errors import (
    AuthFailed,
    ContextLengthExceeded,
    MissingCredential,
    ProviderError,
    RequestFailed,
    RetriesExhausted,
    TransientFailure,
)
from kestrel.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    Message,
    ModelProvider,
    ProviderConfig,
    RequestedToolCall,
    RetryPolicy,
    Usage,
)
from kestrel.llm.router import ProviderRouter

__all__ = [
    "AuthFailed",
    "CompletionRequest",
    "CompletionResponse",
    "ContextLengthExceeded",
    "Message",
    "MissingCredential",
    "ModelProvider",
    "ProviderConfig",
    "ProviderError",
    "ProviderRouter",
    "RequestFailed",
    "RequestedToolCall",
    "RetriesExhausted",
    "RetryPolicy",
    "TransientFailure",
    "Usage",
]
