"""Backoff schedule for transient provider failures."""

from kestrel.llm.protocol import RetryPolicy


def backoff_delay_ms(policy: RetryPolicy, attempt: int) -> float:
    """Wait before retry number attempt + 1 (attempt counts from 0)."""
    return min(
        policy.initial_interval_ms * policy.backoff_multiplier**attempt,
        float(policy.max_interval_ms),
    )


def backoff_schedule(policy: RetryPolicy) -> list[float]:
    """All waits, in milliseconds, the router may perform for one request."""
    return [backoff_delay_ms(policy, attempt) for attempt in range(policy.max_retries)]
