"""Built-in LLM providers."""

from kestrel.llm.providers.anthropic import AnthropicProvider
from kestrel.llm.providers.google import GoogleProvider
from kestrel.llm.providers.openai_compatible import OpenAICompatibleProvider
from kestrel.llm.providers.openrouter import OpenRouterProvider

__all__ = [
    "AnthropicProvider",
    "GoogleProvider",
    "OpenAICompatibleProvider",
    "OpenRouterProvider",
]
