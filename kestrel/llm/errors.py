"""Provider error taxonomy and HTTP status classification."""

from kestrel.extensions.errors import KestrelError

_CONTEXT_LENGTH_MARKERS = (
    "maximum context length",
    "context_length_exceeded",
    "prompt is too long",
    "exceeds the maximum number of tokens",
)


class ProviderError(KestrelError):
    """Base class for LLM provider failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class MissingCredential(ProviderError):
    def __init__(self, provider: str, names: list[str]) -> None:
        self.provider = provider
        self.names = list(names)
        super().__init__(f"Provider {provider!r} is missing credentials: {', '.join(self.names)}")


class AuthFailed(ProviderError):
    """401/403. Never retried."""


class TransientFailure(ProviderError):
    """429, 5xx, connection reset or timeout. Retried with backoff."""


class RequestFailed(ProviderError):
    """Any other non-success response. Never retried."""


class ContextLengthExceeded(ProviderError):
    """The request does not fit the model's context window."""


class RetriesExhausted(ProviderError):
    def __init__(self, last_error: ProviderError, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            status_code=last_error.status_code,
        )


def is_context_length_message(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _CONTEXT_LENGTH_MARKERS)


def classify_status(status_code: int, message: str) -> ProviderError:
    """Map an HTTP status (or an in-body error code) to the matching ProviderError."""
    if status_code in (401, 403):
        return AuthFailed(message, status_code)
    if status_code == 429 or status_code >= 500:
        return TransientFailure(message, status_code)
    if is_context_length_message(message):
        return ContextLengthExceeded(message, status_code)
    return RequestFailed(message, status_code)
