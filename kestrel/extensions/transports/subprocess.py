"""Subprocess transport: an MCP server on a child's stdin/stdout via the SDK stdio client."""

import logging
import os

from mcp import StdioServerParameters
from mcp.client.stdio import stdio_client

from kestrel.extensions.contract import ExitCallback, TransportKind
from kestrel.extensions.errors import ExtensionConnectionError
from kestrel.extensions.transports.session import McpSessionAdapter, find_error

logger = logging.getLogger(__name__)


class SubprocessAdapter(McpSessionAdapter):
    """One child process per enabled extension, one call in flight at a time.

    A stdio server answers in order, so a call that outlives its deadline
    blocks every call behind it. cancel() therefore releases the process: the
    SDK closes stdin, then terminates and finally kills the child, and the
    exit callback reports the extension as crashed.
    """

    kind = TransportKind.SUBPROCESS
    supports_multiplexing = False
    lost_message = "process exited"

    def __init__(
        self,
        extension_id: str,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        *,
        cwd: str | None = None,
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
        self._command = command
        self._params = StdioServerParameters(
            command=command,
            args=list(args or []),
            env={**os.environ, **(env or {})},
            cwd=cwd,
        )

    def _open_streams(self):
        return stdio_client(self._params)

    def _connect_error(self, exc: BaseException) -> ExtensionConnectionError:
        spawn = find_error(exc, OSError)
        if spawn is not None:
            return ExtensionConnectionError(
                f"{self.extension_id}: cannot start {self._command!r}: {spawn}"
            )
        return super()._connect_error(exc)

    async def cancel(self, call_id: str) -> None:
        if call_id not in self._outstanding:
            return
        logger.info(
            "Extension %s: call %s abandoned, stopping %s",
            self.extension_id,
            call_id,
            self._command,
        )
        self._release(f"process exited after call {call_id} was abandoned")
