"""MCP client session shared by the subprocess and remote-stream transports.

The SDK's transport clients and ClientSession are anyio context managers that
must be entered and exited by the same task. Each adapter therefore runs its
session inside one owner task: connect() waits for that task to finish the
initialize handshake, close() signals it and waits for the transport to shut
down. Messages from the transport pass through a relay so the adapter notices
when the process or stream goes away while no call is outstanding.
"""

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, AsyncContextManager, Awaitable, Callable, TypeVar

import anyio
from mcp import ClientSession, types
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from kestrel import __version__
from kestrel.extensions.contract import (
    ExitCallback,
    ExtensionCapabilities,
    PromptArgument,
    PromptDescriptor,
    PromptMessage,
    RenderedPrompt,
    ResourceContents,
    ResourceDescriptor,
    ToolDescriptor,
    ToolResult,
    TransportKind,
)
from kestrel.extensions.errors import ExecutionFailed, ExtensionConnectionError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLIENT_INFO = types.Implementation(name="kestrel", version=__version__)

_STREAM_CLOSED = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)

# stdio_client waits about 2s after closing stdin and 2s after SIGTERM before SIGKILL.
SHUTDOWN_ALLOWANCE = 5.0


def describe_error(exc: BaseException) -> str:
    """Message of exc; exception groups from anyio task groups are flattened."""
    inner = getattr(exc, "exceptions", None)
    if inner:
        return "; ".join(describe_error(e) for e in inner)
    return str(exc) or type(exc).__name__


def find_error(exc: BaseException, kind: type[BaseException]) -> BaseException | None:
    if isinstance(exc, kind):
        return exc
    for inner in getattr(exc, "exceptions", None) or ():
        found = find_error(inner, kind)
        if found is not None:
            return found
    return None


def capabilities_from(caps: types.ServerCapabilities | None) -> ExtensionCapabilities:
    if caps is None:
        return ExtensionCapabilities()
    return ExtensionCapabilities(
        tools=caps.tools is not None,
        resources=caps.resources is not None,
        prompts=caps.prompts is not None,
    )


def tool_descriptor(tool: types.Tool) -> ToolDescriptor:
    schema = tool.inputSchema if isinstance(tool.inputSchema, dict) else {}
    return ToolDescriptor(
        name=tool.name,
        description=tool.description or "",
        parameter_schema=schema or {"type": "object", "properties": {}},
    )


def tool_result(result: types.CallToolResult) -> ToolResult:
    """Convert a CallTool result. isError results raise ExecutionFailed."""
    content = [
        item.model_dump(mode="json", by_alias=True, exclude_none=True)
        for item in result.content
    ]
    if result.isError:
        texts = [str(c["text"]) for c in content if c.get("text")]
        raise ExecutionFailed("\n".join(texts) or "tool call failed")
    return ToolResult(content=content)


def resource_descriptor(resource: types.Resource) -> ResourceDescriptor:
    return ResourceDescriptor(
        uri=str(resource.uri),
        name=resource.name or "",
        description=resource.description or "",
        mime_type=resource.mimeType,
    )


def resource_contents(item: Any) -> ResourceContents:
    text = item.text if isinstance(item, types.TextResourceContents) else None
    return ResourceContents(uri=str(item.uri), mime_type=item.mimeType, text=text)


def prompt_descriptor(prompt: types.Prompt) -> PromptDescriptor:
    return PromptDescriptor(
        name=prompt.name,
        description=prompt.description or "",
        arguments=[
            PromptArgument(
                name=arg.name,
                description=arg.description or "",
                required=bool(arg.required),
            )
            for arg in prompt.arguments or []
        ],
    )


def rendered_prompt(result: types.GetPromptResult) -> RenderedPrompt:
    messages: list[PromptMessage] = []
    for message in result.messages:
        content = message.content
        text = content.text if isinstance(content, types.TextContent) else f"[{content.type}]"
        messages.append(PromptMessage(role=str(message.role), text=text))
    return RenderedPrompt(description=result.description or "", messages=messages)


def _consume(future: "asyncio.Future[Any]") -> None:
    if not future.cancelled():
        future.exception()


class McpSessionAdapter:
    """Base for transports that speak MCP through the SDK's ClientSession.

    Subclasses provide _open_streams() (an SDK transport client) and decide in
    cancel() what abandoning a call means for their transport.
    """

    kind: TransportKind
    supports_multiplexing: bool
    lost_message = "transport closed"

    def __init__(
        self,
        extension_id: str,
        *,
        connect_timeout: float = 30.0,
        close_grace_seconds: float = 5.0,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self.extension_id = extension_id
        self.instructions = ""
        self.capabilities = ExtensionCapabilities()
        self.server_name = ""
        self._connect_timeout = connect_timeout
        self._close_grace = close_grace_seconds
        self._on_exit = on_exit
        self._session: ClientSession | None = None
        self._runner: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None
        self._stop = asyncio.Event()
        self._gone = asyncio.Event()
        self._lost: ExtensionConnectionError | None = None
        self._outstanding: set[str] = set()
        self._connected = False
        self._closing = False

    def _open_streams(self) -> AsyncContextManager[Any]:
        raise NotImplementedError

    def _connect_error(self, exc: BaseException) -> ExtensionConnectionError:
        return ExtensionConnectionError(f"{self.extension_id}: {describe_error(exc)}")

    # --- lifecycle ---

    async def connect(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._ready.add_done_callback(_consume)
        self._stop = asyncio.Event()
        self._gone = asyncio.Event()
        self._lost = None
        self._connected = False
        self._closing = False
        self._runner = asyncio.create_task(
            self._run(self._ready), name=f"kestrel-mcp-{self.extension_id}"
        )
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self._connect_timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise ExtensionConnectionError(
                f"{self.extension_id}: no initialize response within {self._connect_timeout:g}s"
            ) from e
        except ExtensionConnectionError:
            await self.close()
            raise
        logger.info(
            "Extension %s: session ready (server=%s, resources=%s, prompts=%s)",
            self.extension_id,
            self.server_name or "?",
            self.capabilities.resources,
            self.capabilities.prompts,
        )

    async def close(self) -> None:
        self._closing = True
        if self._lost is None:
            self._lost = ExtensionConnectionError(f"{self.extension_id}: transport closed")
        self._gone.set()
        self._stop.set()
        runner, self._runner = self._runner, None
        if runner is None:
            return
        if not self._connected:
            runner.cancel()
        # The runner is not cancelled once connected: that would cut the
        # transport's own terminate/kill sequence short.
        bound = self._close_grace + SHUTDOWN_ALLOWANCE
        done, _ = await asyncio.wait({runner}, timeout=bound)
        if not done:
            logger.warning(
                "Extension %s: transport still shutting down after %.1fs, leaving it in the background",
                self.extension_id,
                bound,
            )

    def is_alive(self) -> bool:
        return self._connected and self._lost is None and not self._closing

    async def _run(self, ready: "asyncio.Future[None]") -> None:
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._open_streams())
                read, write = streams[0], streams[1]
                relay_send, relay_recv = anyio.create_memory_object_stream(0)
                pump = asyncio.create_task(self._pump(read, relay_send))
                stack.callback(pump.cancel)
                session = await stack.enter_async_context(
                    ClientSession(
                        relay_recv,
                        write,
                        client_info=CLIENT_INFO,
                        message_handler=self._on_message,
                    )
                )
                init = await session.initialize()
                self._session = session
                self.instructions = init.instructions or ""
                self.capabilities = capabilities_from(init.capabilities)
                self.server_name = init.serverInfo.name if init.serverInfo else ""
                self._connected = True
                ready.set_result(None)
                await self._stop.wait()
        except Exception as e:
            error = self._connect_error(e)
            if not ready.done():
                ready.set_exception(error)
            elif self._connected:
                self._lose(error)
            else:
                logger.debug("Extension %s: after failed start: %s", self.extension_id, error)
        finally:
            self._session = None
            self._connected = False
            if not ready.done():
                ready.set_exception(
                    ExtensionConnectionError(f"{self.extension_id}: session closed")
                )

    async def _pump(self, source: Any, sink: Any) -> None:
        """Forward transport messages to the session until the transport ends."""
        try:
            async with source, sink:
                async for item in source:
                    await sink.send(item)
        except _STREAM_CLOSED as e:
            logger.debug("Extension %s: relay stopped: %r", self.extension_id, e)
        if self._stop.is_set():
            return
        error = ExtensionConnectionError(f"{self.extension_id}: {self.lost_message}")
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(error)
        else:
            self._lose(error)

    async def _on_message(self, message: Any) -> None:
        if isinstance(message, Exception):
            logger.debug("Extension %s: ignored unreadable message: %s", self.extension_id, message)

    def _lose(self, error: ExtensionConnectionError) -> None:
        """Mark the transport gone, stop the owner task and report it once."""
        if self._lost is not None:
            return
        self._lost = error
        self._gone.set()
        self._stop.set()
        if self._closing:
            return
        logger.warning("Extension %s: %s", self.extension_id, error)
        if self._on_exit is not None:
            try:
                self._on_exit(str(error))
            except Exception:
                logger.exception("Extension %s: exit callback failed", self.extension_id)

    def _release(self, reason: str) -> None:
        self._lose(ExtensionConnectionError(f"{self.extension_id}: {reason}"))

    # --- requests ---

    async def _request(self, send: Callable[[ClientSession], Awaitable[T]]) -> T:
        if self._lost is not None:
            raise self._lost
        session = self._session
        if session is None or not self.is_alive():
            raise ExtensionConnectionError(f"{self.extension_id}: not connected")
        request = asyncio.ensure_future(send(session))
        gone = asyncio.ensure_future(self._gone.wait())
        try:
            done, _ = await asyncio.wait({request, gone}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            gone.cancel()
            if not request.done():
                request.cancel()
                request.add_done_callback(_consume)
        if request not in done:
            raise self._lost or ExtensionConnectionError(f"{self.extension_id}: transport closed")
        try:
            return request.result()
        except McpError as e:
            if e.error.code == types.CONNECTION_CLOSED:
                raise (
                    self._lost or ExtensionConnectionError(f"{self.extension_id}: {self.lost_message}")
                ) from e
            raise ExecutionFailed(e.error.message) from e
        except _STREAM_CLOSED as e:
            raise (
                self._lost or ExtensionConnectionError(f"{self.extension_id}: {self.lost_message}")
            ) from e
        except (ValueError, RuntimeError) as e:
            # Responses that fail validation in the SDK.
            raise ExecutionFailed(f"{self.extension_id}: {e}") from e

    async def _bounded(self, send: Callable[[ClientSession], Awaitable[T]], what: str) -> T:
        """Non-tool request bounded by the connect timeout."""
        try:
            return await asyncio.wait_for(self._request(send), timeout=self._connect_timeout)
        except asyncio.TimeoutError as e:
            raise ExtensionConnectionError(f"{self.extension_id}: {what} timed out") from e

    async def list_tools(self) -> list[ToolDescriptor]:
        result = await self._bounded(lambda s: s.list_tools(), "tools/list")
        return [tool_descriptor(t) for t in result.tools]

    async def invoke(
        self,
        call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        deadline: float,
    ) -> ToolResult:
        self._outstanding.add(call_id)
        try:
            result = await self._request(lambda s: s.call_tool(tool_name, dict(arguments)))
        finally:
            self._outstanding.discard(call_id)
        return tool_result(result)

    async def cancel(self, call_id: str) -> None:
        raise NotImplementedError

    async def list_resources(self) -> list[ResourceDescriptor]:
        if not self.capabilities.resources:
            return []
        result = await self._bounded(lambda s: s.list_resources(), "resources/list")
        return [resource_descriptor(r) for r in result.resources]

    async def read_resource(self, uri: str) -> list[ResourceContents]:
        if not self.capabilities.resources:
            raise ExecutionFailed(f"{self.extension_id} does not serve resources")
        result = await self._bounded(lambda s: s.read_resource(AnyUrl(uri)), "resources/read")
        return [resource_contents(c) for c in result.contents]

    async def list_prompts(self) -> list[PromptDescriptor]:
        if not self.capabilities.prompts:
            return []
        result = await self._bounded(lambda s: s.list_prompts(), "prompts/list")
        return [prompt_descriptor(p) for p in result.prompts]

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> RenderedPrompt:
        if not self.capabilities.prompts:
            raise ExecutionFailed(f"{self.extension_id} does not serve prompts")
        result = await self._bounded(
            lambda s: s.get_prompt(name, {k: str(v) for k, v in arguments.items()}),
            "prompts/get",
        )
        return rendered_prompt(result)
