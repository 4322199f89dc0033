"""Extension contract: tool shapes, lifecycle states and the transport adapter protocol.

Transports form a closed set (TransportKind). Each kind has exactly one adapter
class satisfying TransportAdapter; create_adapter() in extensions.transports is
the only place that maps a kind to a class.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class TransportKind(str, Enum):
    BUILTIN = "builtin"
    SUBPROCESS = "subprocess"
    REMOTE_STREAM = "remote_stream"


class LifecycleState(str, Enum):
    """Disabled -> Starting -> Ready; Starting -> Failed; Ready -> Stopped."""

    DISABLED = "disabled"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class ToolDescriptor(BaseModel):
    """One entry of a ListTools response."""

    name: str
    description: str = ""
    parameter_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def parameter_names(self) -> list[str]:
        props = self.parameter_schema.get("properties")
        return list(props) if isinstance(props, dict) else []


class ToolResult(BaseModel):
    """Successful CallTool response. content uses the MCP content item shape."""

    content: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def text(cls, text: str) -> "ToolResult":
        return cls(content=[{"type": "text", "text": text}])

    def as_text(self) -> str:
        """Concatenate the text items. Non-text items are skipped."""
        return "\n".join(
            str(item.get("text", ""))
            for item in self.content
            if item.get("type") == "text"
        )


@dataclass(frozen=True)
class ExtensionCapabilities:
    """What the server announced in its initialize response."""

    tools: bool = True
    resources: bool = False
    prompts: bool = False


class ResourceDescriptor(BaseModel):
    uri: str
    name: str = ""
    description: str = ""
    mime_type: str | None = None


class ResourceContents(BaseModel):
    """One item of a ReadResource response. text is None for binary contents."""

    uri: str
    mime_type: str | None = None
    text: str | None = None


class PromptArgument(BaseModel):
    name: str
    description: str = ""
    required: bool = False


class PromptDescriptor(BaseModel):
    name: str
    description: str = ""
    arguments: list[PromptArgument] = Field(default_factory=list)


class PromptMessage(BaseModel):
    role: str
    text: str


class RenderedPrompt(BaseModel):
    description: str = ""
    messages: list[PromptMessage] = Field(default_factory=list)


class CancellationToken:
    """Cooperative cancellation signal handed to builtin tool handlers.

    Builtin handlers run inside the orchestrator's event loop and cannot be
    preempted safely, so every builtin tool must call check() (or read
    cancelled) between units of work. The invoker sets the token when a call
    passes its deadline.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def check(self) -> None:
        """Raise CancelledError if cancellation was requested."""
        if self._event.is_set():
            raise asyncio.CancelledError("tool call cancelled")

    async def wait(self) -> None:
        await self._event.wait()


ToolHandler = Callable[[dict[str, Any], CancellationToken], Awaitable[Any]]

# Called once with a reason when the process/stream goes away without close().
ExitCallback = Callable[[str], None]


@dataclass
class BuiltinTool:
    """In-process tool: descriptor plus async handler(arguments, token)."""

    name: str
    description: str
    handler: ToolHandler
    parameter_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameter_schema=self.parameter_schema,
        )


@dataclass
class Toolset:
    """Function table behind a builtin extension."""

    tools: dict[str, BuiltinTool]
    instructions: str = ""
    on_close: Callable[[], Awaitable[None]] | None = None

    async def close(self) -> None:
        if self.on_close is not None:
            await self.on_close()


@runtime_checkable
class TransportAdapter(Protocol):
    """Uniform request/response contract over one transport kind."""

    kind: TransportKind
    supports_multiplexing: bool
    instructions: str
    capabilities: ExtensionCapabilities

    async def connect(self) -> None:
        """Open the transport. Raises ExtensionConnectionError."""

    async def list_tools(self) -> list[ToolDescriptor]:
        """Return the tools the extension exposes."""

    async def list_resources(self) -> list[ResourceDescriptor]:
        """Resources the extension offers; empty without the resources capability."""

    async def read_resource(self, uri: str) -> list[ResourceContents]:
        """Contents behind uri. Raises ExecutionFailed if the server refuses."""

    async def list_prompts(self) -> list[PromptDescriptor]:
        """Prompt templates the extension offers."""

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> RenderedPrompt:
        """Render one prompt template with arguments."""

    async def invoke(
        self,
        call_id: str,
        tool_name: str,
        arguments: dict[str, Any],
        deadline: float,
    ) -> ToolResult:
        """Run one tool call. deadline is an event-loop timestamp."""

    async def cancel(self, call_id: str) -> None:
        """Abandon an outstanding call.

        Transports that cannot stop a single request release the process or
        stream instead and report it through their exit callback. Must return
        promptly; teardown finishes in the background.
        """

    async def close(self) -> None:
        """Release the process/stream. Must not block past its grace period."""

    def is_alive(self) -> bool:
        """False once the underlying process/stream is gone."""
