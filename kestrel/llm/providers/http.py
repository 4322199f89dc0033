"""httpx helpers for providers that talk to their API directly."""

from typing import Any

import httpx

from kestrel.llm.errors import RequestFailed, TransientFailure, classify_status
from kestrel.llm.providers.formats import error_message


async def send(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """client.request with connection errors and timeouts mapped to TransientFailure."""
    try:
        return await client.request(method, url, **kwargs)
    except httpx.TransportError as e:
        raise TransientFailure(f"{type(e).__name__}: {e}") from e


def json_body(response: httpx.Response) -> dict[str, Any]:
    """Decoded JSON object, or the ProviderError matching a non-success status."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if response.status_code >= 400:
        raise classify_status(
            response.status_code,
            error_message(body, f"HTTP {response.status_code}"),
        )
    if not isinstance(body, dict):
        raise RequestFailed("response body is not a JSON object", response.status_code)
    return body
