"""Transport adapters. create_adapter is the single TransportKind -> class mapping."""

import httpx

from kestrel.extensions.contract import ExitCallback, Toolset, TransportAdapter, TransportKind
from kestrel.extensions.descriptor import ExtensionDescriptor
from kestrel.extensions.transports.builtin import BuiltinAdapter
from kestrel.extensions.transports.remote import RemoteStreamAdapter
from kestrel.extensions.transports.subprocess import SubprocessAdapter


def create_adapter(
    descriptor: ExtensionDescriptor,
    *,
    toolset: Toolset | None = None,
    env: dict[str, str] | None = None,
    headers: dict[str, str] | None = None,
    url: str | None = None,
    on_exit: ExitCallback | None = None,
    connect_timeout: float = 30.0,
    close_grace_seconds: float = 5.0,
    cwd: str | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> TransportAdapter:
    """Build the adapter for descriptor.transport_kind.

    env, headers and url are the already-resolved values (secrets substituted).
    """
    kind = descriptor.transport_kind
    if kind is TransportKind.BUILTIN:
        if toolset is None:
            raise ValueError(f"builtin extension {descriptor.id!r} has no toolset")
        return BuiltinAdapter(descriptor.id, toolset)
    if kind is TransportKind.SUBPROCESS:
        return SubprocessAdapter(
            descriptor.id,
            descriptor.command or "",
            descriptor.args,
            env if env is not None else descriptor.env,
            cwd=cwd,
            connect_timeout=connect_timeout,
            close_grace_seconds=close_grace_seconds,
            on_exit=on_exit,
        )
    if kind is TransportKind.REMOTE_STREAM:
        return RemoteStreamAdapter(
            descriptor.id,
            url if url is not None else descriptor.url or "",
            headers if headers is not None else descriptor.headers,
            transport=http_transport,
            connect_timeout=connect_timeout,
            close_grace_seconds=close_grace_seconds,
            on_exit=on_exit,
        )
    raise ValueError(f"unsupported transport kind: {kind!r}")


__all__ = [
    "BuiltinAdapter",
    "RemoteStreamAdapter",
    "SubprocessAdapter",
    "create_adapter",
]
