"""kestrel: extension orchestration and provider routing for an LLM agent."""

__version__ = "0.1.0"
