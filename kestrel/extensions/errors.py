"""Error taxonomy for extensions, tool calls and the registry."""


class KestrelError(Exception):
    """Base class for every error raised by kestrel."""


class ExtensionConnectionError(KestrelError):
    """Transport unreachable: spawn failed, process exited, stream dropped."""


class ToolError(KestrelError):
    """A tool call did not produce a result."""


class ExtensionNotReady(ToolError):
    def __init__(self, extension_id: str, state: str | None = None) -> None:
        self.extension_id = extension_id
        self.state = state
        detail = f" (state={state})" if state else ""
        super().__init__(f"Extension {extension_id!r} is not ready{detail}")


class ToolNotFound(ToolError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool {name!r} not found")


class ToolTimeout(ToolError):
    def __init__(self, extension_id: str, tool_name: str, timeout: float) -> None:
        self.extension_id = extension_id
        self.tool_name = tool_name
        self.timeout = timeout
        super().__init__(
            f"Tool {extension_id}__{tool_name} timed out after {timeout:g}s"
        )


class ExecutionFailed(ToolError):
    """The extension received the call and reported a failure."""


class ResourceNotFound(ToolError):
    def __init__(self, uri: str, searched: list[str]) -> None:
        self.uri = uri
        self.searched = searched
        where = ", ".join(searched) or "none"
        super().__init__(f"Resource {uri!r} not found (extensions searched: {where})")


class RegistryError(KestrelError):
    """Registry bookkeeping failure."""


class AlreadyRegistered(RegistryError):
    def __init__(self, extension_id: str) -> None:
        self.extension_id = extension_id
        super().__init__(f"Extension {extension_id!r} is already registered")


class UnknownExtension(RegistryError):
    def __init__(self, extension_id: str) -> None:
        self.extension_id = extension_id
        super().__init__(f"Unknown extension {extension_id!r}")
