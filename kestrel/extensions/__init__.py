"""Extension system: contract, descriptor, transports, registry, invoker."""

from kestrel.extensions.contract import (
    BuiltinTool,
    CancellationToken,
    ExtensionCapabilities,
    LifecycleState,
    PromptDescriptor,
    RenderedPrompt,
    ResourceContents,
    ResourceDescriptor,
    ToolDescriptor,
    ToolResult,
    Toolset,
    TransportAdapter,
    TransportKind,
)
from kestrel.extensions.descriptor import (
    ExtensionDescriptor,
    descriptors_from_settings,
    load_descriptor,
    normalize_name,
)
from kestrel.extensions.invoker import CallStatus, ToolCall, ToolInvoker
from kestrel.extensions.registry import ExtensionHandle, ExtensionRegistry

__all__ = [
    "BuiltinTool",
    "CallStatus",
    "CancellationToken",
    "ExtensionCapabilities",
    "ExtensionDescriptor",
    "ExtensionHandle",
    "ExtensionRegistry",
    "LifecycleState",
    "PromptDescriptor",
    "RenderedPrompt",
    "ResourceContents",
    "ResourceDescriptor",
    "ToolCall",
    "ToolDescriptor",
    "ToolInvoker",
    "ToolResult",
    "Toolset",
    "TransportAdapter",
    "TransportKind",
    "descriptors_from_settings",
    "load_descriptor",
    "normalize_name",
]
