"""Builtin transport: an in-process function table."""

import asyncio
import logging
from typing import Any

from kestrel.extensions.contract import (
    CancellationToken,
    ExtensionCapabilities,
    PromptDescriptor,
    RenderedPrompt,
    ResourceContents,
    ResourceDescriptor,
    Toolset,
    ToolDescriptor,
    ToolResult,
    TransportKind,
)
from kestrel.extensions.errors import ExecutionFailed, ToolNotFound

logger = logging.getLogger(__name__)


class BuiltinAdapter:
    """Runs tool handlers in the orchestrator's event loop.

    Handlers may return a ToolResult, a str, or None. Exceptions are wrapped
    in ExecutionFailed. Cancellation is cooperative: cancel(call_id) sets the
    token passed to the handler.
    """

    kind = TransportKind.BUILTIN
    supports_multiplexing = True
    capabilities = ExtensionCapabilities()

    def __init__(self, extension_id: str, toolset: Toolset) -> None:
        self.extension_id = extension_id
        self._toolset = toolset
        self._tokens: dict[str, CancellationToken] = {}
        self._closed = False

    @property
    def instructions(self) -> str:
        return self._toolset.instructions

    async def connect(self) -> None:
        self._closed = False

    async def list_tools(self) -> list[ToolDescriptor]:
        return [tool.descriptor() for tool in self._toolset.tools.values()]

    async def list_resources(self) -> list[ResourceDescriptor]:
        return []

    async def read_resource(self, uri: str) -> list[ResourceContents]:
        raise ExecutionFailed(f"{self.extension_id} does not serve resources")

    async def list_prompts(self) -> list[PromptDescriptor]:
        return []

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> RenderedPrompt:
        raise ExecutionFailed(f"{self.extension_id} does not serve prompts")

    async def invoke(
        self,
        call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        deadline: float,
    ) -> ToolResult:
        tool = self._toolset.tools.get(tool_name)
        if tool is None:
            raise ToolNotFound(f"{self.extension_id}__{tool_name}")
        token = CancellationToken()
        self._tokens[call_id] = token
        try:
            value = await tool.handler(dict(arguments), token)
        except asyncio.CancelledError:
            raise
        except ExecutionFailed:
            raise
        except Exception as e:
            raise ExecutionFailed(f"{tool_name}: {e}") from e
        finally:
            self._tokens.pop(call_id, None)
        if isinstance(value, ToolResult):
            return value
        return ToolResult.text("" if value is None else str(value))

    async def cancel(self, call_id: str) -> None:
        token = self._tokens.get(call_id)
        if token is not None:
            token.cancel()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for token in self._tokens.values():
            token.cancel()
        try:
            await self._toolset.close()
        except Exception as e:
            logger.warning("Builtin %s close failed: %s", self.extension_id, e)

    def is_alive(self) -> bool:
        return not self._closed
