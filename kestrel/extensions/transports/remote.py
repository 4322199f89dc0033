"""RemoteStream transport: an MCP server behind an HTTP server-sent-events stream.

The SDK's sse_client holds one GET stream open and POSTs requests to the
endpoint the server announces; responses come back on the stream and are
correlated by JSON-RPC id, so concurrent calls interleave freely.
"""

import logging

import httpx
from mcp.client.sse import sse_client

from kestrel.extensions.contract import ExitCallback, TransportKind
from kestrel.extensions.transports.session import McpSessionAdapter

logger = logging.getLogger(__name__)


class RemoteStreamAdapter(McpSessionAdapter):
    """Multiplexed MCP client over SSE.

    An abandoned call is dropped on the client side. When it was the only call
    outstanding the stream is released too, since a server that stopped
    answering one request is not trusted with the next; with other calls in
    flight the stream stays up for them.
    """

    kind = TransportKind.REMOTE_STREAM
    supports_multiplexing = True
    lost_message = "stream closed by the server"

    def __init__(
        self,
        extension_id: str,
        url: str,
        headers: dict[str, str] | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        connect_timeout: float = 30.0,
        close_grace_seconds: float = 5.0,
        on_exit: ExitCallback | None = None,
    ) -> None:
        super().__init__(
            extension_id,
            connect_timeout=connect_timeout,
            close_grace_seconds=close_grace_seconds,
            on_exit=on_exit,
        )
        self._url = url
        self._headers = dict(headers or {})
        self._transport = transport

    def _open_streams(self):
        return sse_client(
            self._url,
            headers=self._headers,
            timeout=self._connect_timeout,
            httpx_client_factory=self._client_factory,
        )

    def _client_factory(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient:
        # The event stream stays open between calls; only connect and writes are bounded.
        return httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self._connect_timeout, read=None),
            auth=auth,
            follow_redirects=True,
            transport=self._transport,
        )

    async def cancel(self, call_id: str) -> None:
        if call_id not in self._outstanding:
            return
        others = len(self._outstanding) - 1
        if others:
            logger.info(
                "Extension %s: call %s abandoned, keeping stream for %d other call(s)",
                self.extension_id,
                call_id,
                others,
            )
            return
        self._release(f"stream closed after call {call_id} was abandoned")
