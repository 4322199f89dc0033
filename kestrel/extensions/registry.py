"""ExtensionRegistry: descriptors, runtime handles and the lifecycle state machine."""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from kestrel.extensions.contract import (
    ExitCallback,
    LifecycleState,
    PromptDescriptor,
    RenderedPrompt,
    ResourceContents,
    ResourceDescriptor,
    ToolDescriptor,
    Toolset,
    TransportAdapter,
    TransportKind,
)
from kestrel.extensions.descriptor import (
    ExtensionDescriptor,
    SecretGetter,
    normalize_name,
    resolve_mapping,
    resolve_secrets_in_string,
)
from kestrel.extensions.errors import (
    AlreadyRegistered,
    ExecutionFailed,
    ExtensionConnectionError,
    ExtensionNotReady,
    KestrelError,
    ResourceNotFound,
    ToolTimeout,
    UnknownExtension,
)
from kestrel.extensions.transports import create_adapter
from kestrel.secrets import get_secret_async

logger = logging.getLogger(__name__)

TOOL_NAME_SEPARATOR = "__"

T = TypeVar("T")

ToolsetFactory = Callable[[ExtensionDescriptor], Awaitable[Toolset]]


@dataclass
class ExtensionHandle:
    """Runtime binding of one enabled extension. Kept after failure/stop for inspection."""

    descriptor: ExtensionDescriptor
    state: LifecycleState = LifecycleState.STARTING
    adapter: TransportAdapter | None = None
    tools: list[ToolDescriptor] = field(default_factory=list)
    error: BaseException | None = None
    crashed: bool = False
    pending: deque[Any] = field(default_factory=deque)
    call_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    in_flight: int = 0
    _idle: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _settled: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        self._idle.set()

    @property
    def extension_id(self) -> str:
        return self.descriptor.id

    @property
    def is_ready(self) -> bool:
        return self.state is LifecycleState.READY

    def begin_call(self) -> None:
        self.in_flight += 1
        self._idle.clear()

    def end_call(self) -> None:
        self.in_flight -= 1
        if self.in_flight <= 0:
            self.in_flight = 0
            self._idle.set()

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def wait_started(self) -> None:
        """Return once the start attempt that created this handle has finished."""
        await self._settled.wait()


class ExtensionRegistry:
    """Owns every ExtensionDescriptor and its handle.

    Mutations (register, enable, disable, remove, set_timeout) are serialised by
    one lock. Both maps are replaced copy-on-write, so get() and list_extensions()
    always see a complete snapshot without locking.
    """

    def __init__(
        self,
        *,
        toolset_factory: ToolsetFactory | None = None,
        get_secret: SecretGetter = get_secret_async,
        connect_timeout: float = 30.0,
        close_grace_seconds: float = 5.0,
        working_dir: str | None = None,
    ) -> None:
        self._toolset_factory = toolset_factory
        self._get_secret = get_secret
        self._connect_timeout = connect_timeout
        self._close_grace = close_grace_seconds
        self._working_dir = working_dir
        self._descriptors: dict[str, ExtensionDescriptor] = {}
        self._handles: dict[str, ExtensionHandle] = {}
        self._lock = asyncio.Lock()

    def set_toolset_factory(self, factory: ToolsetFactory) -> None:
        self._toolset_factory = factory

    # --- reads (lock-free snapshots) ---

    def get(self, extension_id: str) -> ExtensionHandle | None:
        return self._handles.get(normalize_name(extension_id))

    def descriptor(self, extension_id: str) -> ExtensionDescriptor | None:
        return self._descriptors.get(normalize_name(extension_id))

    def list_extensions(self) -> list[ExtensionDescriptor]:
        return list(self._descriptors.values())

    def list_disabled(self, query: str | None = None) -> list[ExtensionDescriptor]:
        """Registered extensions without a ready handle, optionally filtered by substring."""
        handles = self._handles
        needle = (query or "").strip().lower()
        result: list[ExtensionDescriptor] = []
        for desc in self._descriptors.values():
            handle = handles.get(desc.id)
            if handle is not None and handle.is_ready:
                continue
            if needle:
                haystack = " ".join(
                    [desc.id, desc.display_name, desc.description or ""]
                ).lower()
                if needle not in haystack:
                    continue
            result.append(desc)
        return result

    def list_tools(self, extension_id: str | None = None) -> list[ToolDescriptor]:
        """Tool catalog of ready extensions, names prefixed `<extension>__<tool>`."""
        handles = self._handles
        if extension_id is not None:
            handle = handles.get(normalize_name(extension_id))
            selected = [handle] if handle is not None else []
        else:
            selected = list(handles.values())
        result: list[ToolDescriptor] = []
        for handle in selected:
            if not handle.is_ready:
                continue
            for tool in handle.tools:
                result.append(
                    tool.model_copy(
                        update={"name": f"{handle.extension_id}{TOOL_NAME_SEPARATOR}{tool.name}"}
                    )
                )
        return result

    def instructions(self) -> dict[str, str]:
        """Server instructions of ready extensions, keyed by extension id."""
        return {
            h.extension_id: h.adapter.instructions
            for h in self._handles.values()
            if h.is_ready and h.adapter is not None and h.adapter.instructions
        }

    # --- resources and prompts ---

    async def list_resources(
        self, extension_id: str | None = None
    ) -> dict[str, list[ResourceDescriptor]]:
        """Resources of ready extensions that announced the capability, keyed by extension id."""
        result: dict[str, list[ResourceDescriptor]] = {}
        for handle in self._serving("resources", extension_id):
            try:
                result[handle.extension_id] = await self._query(
                    handle, "resources/list", lambda a: a.list_resources()
                )
            except KestrelError as e:
                logger.warning("Extension %s: list_resources failed: %s", handle.extension_id, e)
        return result

    async def read_resource(
        self, uri: str, extension_id: str | None = None
    ) -> list[ResourceContents]:
        """Contents from the first extension that can read uri. Raises ResourceNotFound."""
        searched: list[str] = []
        for handle in self._serving("resources", extension_id):
            searched.append(handle.extension_id)
            try:
                contents = await self._query(
                    handle, "resources/read", lambda a: a.read_resource(uri)
                )
            except KestrelError as e:
                logger.debug("Extension %s: read_resource %s failed: %s", handle.extension_id, uri, e)
                continue
            if contents:
                return contents
        raise ResourceNotFound(uri, searched)

    async def list_prompts(
        self, extension_id: str | None = None
    ) -> dict[str, list[PromptDescriptor]]:
        result: dict[str, list[PromptDescriptor]] = {}
        for handle in self._serving("prompts", extension_id):
            try:
                result[handle.extension_id] = await self._query(
                    handle, "prompts/list", lambda a: a.list_prompts()
                )
            except KestrelError as e:
                logger.debug("Extension %s: list_prompts failed: %s", handle.extension_id, e)
        return result

    async def get_prompt(
        self,
        extension_id: str,
        name: str,
        arguments: dict[str, str] | None = None,
    ) -> RenderedPrompt:
        handle = self._ready_handle(extension_id)
        assert handle.adapter is not None
        if not handle.adapter.capabilities.prompts:
            raise ExecutionFailed(f"{handle.extension_id} does not serve prompts")
        return await self._query(
            handle, "prompts/get", lambda a: a.get_prompt(name, dict(arguments or {}))
        )

    # --- mutations ---

    async def register(self, descriptor: ExtensionDescriptor) -> None:
        async with self._lock:
            if descriptor.id in self._descriptors:
                raise AlreadyRegistered(descriptor.id)
            self._descriptors = {**self._descriptors, descriptor.id: descriptor}
        logger.info("Extension registered: %s (%s)", descriptor.id, descriptor.transport_kind.value)

    async def enable(self, extension_id: str) -> ExtensionHandle:
        """Start the extension. Connect failures leave a FAILED handle holding the error.

        The STARTING handle is published under the lock; the connect itself runs
        outside it so other mutations are not held up by a slow extension. A
        concurrent enable of the same extension waits for that start to settle.
        """
        ext_id = normalize_name(extension_id)
        async with self._lock:
            descriptor = self._descriptors.get(ext_id)
            if descriptor is None:
                raise UnknownExtension(ext_id)
            current = self._handles.get(ext_id)
            starting = current is not None and current.state in (
                LifecycleState.STARTING,
                LifecycleState.READY,
            )
            if not starting:
                if not descriptor.enabled:
                    descriptor = descriptor.model_copy(update={"enabled": True})
                    self._descriptors = {**self._descriptors, ext_id: descriptor}
                handle = ExtensionHandle(descriptor=descriptor)
                self._handles = {**self._handles, ext_id: handle}
        if starting:
            assert current is not None
            await current.wait_started()
            return current
        try:
            await self._start(handle)
        finally:
            handle._settled.set()
        return handle

    async def disable(self, extension_id: str) -> None:
        """Stop accepting calls, let in-flight calls finish or time out, then close."""
        ext_id = normalize_name(extension_id)
        async with self._lock:
            descriptor = self._descriptors.get(ext_id)
            if descriptor is None:
                raise UnknownExtension(ext_id)
            if descriptor.enabled:
                self._descriptors = {
                    **self._descriptors,
                    ext_id: descriptor.model_copy(update={"enabled": False}),
                }
            handle = self._handles.get(ext_id)
            if handle is None:
                return
            was_live = handle.state in (LifecycleState.STARTING, LifecycleState.READY)
            if was_live:
                handle.state = LifecycleState.STOPPED
        if handle.in_flight:
            logger.info(
                "Extension %s: waiting for %d in-flight call(s)", ext_id, handle.in_flight
            )
        await handle.wait_idle()
        await self._close_adapter(handle)
        if was_live:
            logger.info("Extension disabled: %s", ext_id)

    async def remove(self, extension_id: str) -> None:
        ext_id = normalize_name(extension_id)
        if ext_id not in self._descriptors:
            raise UnknownExtension(ext_id)
        await self.disable(ext_id)
        async with self._lock:
            self._descriptors = {k: v for k, v in self._descriptors.items() if k != ext_id}
            self._handles = {k: v for k, v in self._handles.items() if k != ext_id}
        logger.info("Extension removed: %s", ext_id)

    async def set_timeout(self, extension_id: str, seconds: int) -> None:
        if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds <= 0:
            raise ValueError(f"timeout must be a positive integer, got {seconds!r}")
        ext_id = normalize_name(extension_id)
        async with self._lock:
            descriptor = self._descriptors.get(ext_id)
            if descriptor is None:
                raise UnknownExtension(ext_id)
            updated = descriptor.model_copy(update={"timeout_seconds": seconds})
            self._descriptors = {**self._descriptors, ext_id: updated}
            handle = self._handles.get(ext_id)
            if handle is not None:
                handle.descriptor = updated

    async def shutdown(self) -> None:
        """Disable every live extension in reverse registration order."""
        for ext_id in reversed(list(self._handles)):
            try:
                await self.disable(ext_id)
            except Exception as e:
                logger.exception("shutdown failed for %s: %s", ext_id, e)

    # --- internals ---

    async def _start(self, handle: ExtensionHandle) -> None:
        ext_id = handle.extension_id
        try:
            handle.adapter = await self._build_adapter(handle)
            await handle.adapter.connect()
            tools = await handle.adapter.list_tools()
            if not handle.adapter.is_alive():
                raise ExtensionConnectionError(f"{ext_id}: transport closed during start")
        except Exception as e:
            error = e if isinstance(e, KestrelError) else ExtensionConnectionError(f"{ext_id}: {e}")
            if error is not e:
                error.__cause__ = e
            async with self._lock:
                if handle.state is LifecycleState.STARTING:
                    handle.state = LifecycleState.FAILED
                    handle.error = error
            logger.error("Extension %s failed to start: %s", ext_id, error)
            await self._close_adapter(handle)
            return
        async with self._lock:
            published = handle.state is LifecycleState.STARTING
            if published:
                handle.tools = tools
                handle.state = LifecycleState.READY
        if published:
            logger.info("Extension ready: %s (%d tools)", ext_id, len(handle.tools))
            return
        # Disabled or removed while connecting.
        logger.info("Extension %s stopped before it became ready", ext_id)
        await self._close_adapter(handle)

    async def _build_adapter(self, handle: ExtensionHandle) -> TransportAdapter:
        descriptor = handle.descriptor
        on_exit = self._exit_callback(handle)
        if descriptor.transport_kind is TransportKind.BUILTIN:
            if self._toolset_factory is None:
                raise ExtensionConnectionError(f"{descriptor.id}: no builtin toolset factory")
            toolset = await self._toolset_factory(descriptor)
            return create_adapter(descriptor, toolset=toolset)
        if descriptor.transport_kind is TransportKind.SUBPROCESS:
            env, missing = await resolve_mapping(
                descriptor.env, descriptor.env_keys, self._get_secret
            )
            if missing:
                raise ExtensionConnectionError(
                    f"{descriptor.id}: missing secrets: {', '.join(missing)}"
                )
            return create_adapter(
                descriptor,
                env=env,
                on_exit=on_exit,
                connect_timeout=self._connect_timeout,
                close_grace_seconds=self._close_grace,
                cwd=self._working_dir,
            )
        values, missing = await resolve_mapping(
            descriptor.env, descriptor.env_keys, self._get_secret
        )
        if missing:
            raise ExtensionConnectionError(
                f"{descriptor.id}: missing secrets: {', '.join(missing)}"
            )
        lookup = _overlay(values, self._get_secret)
        headers, missing = await resolve_mapping(descriptor.headers, [], lookup)
        url = await resolve_secrets_in_string(descriptor.url or "", lookup)
        if missing or url is None:
            raise ExtensionConnectionError(f"{descriptor.id}: missing secrets for url or headers")
        return create_adapter(
            descriptor,
            url=url,
            headers=headers,
            on_exit=on_exit,
            connect_timeout=self._connect_timeout,
            close_grace_seconds=self._close_grace,
        )

    def _exit_callback(self, handle: ExtensionHandle) -> ExitCallback:
        def on_exit(reason: str) -> None:
            if handle.state is not LifecycleState.READY:
                return
            handle.state = LifecycleState.STOPPED
            handle.crashed = True
            handle.error = ExtensionConnectionError(reason)
            logger.warning("Extension %s stopped unexpectedly: %s", handle.extension_id, reason)

        return on_exit

    def _ready_handle(self, extension_id: str) -> ExtensionHandle:
        ext_id = normalize_name(extension_id)
        if ext_id not in self._descriptors:
            raise UnknownExtension(ext_id)
        handle = self._handles.get(ext_id)
        if handle is None or not handle.is_ready or handle.adapter is None:
            state = handle.state.value if handle is not None else LifecycleState.DISABLED.value
            raise ExtensionNotReady(ext_id, state)
        return handle

    def _serving(self, capability: str, extension_id: str | None) -> list[ExtensionHandle]:
        if extension_id is not None:
            handles = [self._ready_handle(extension_id)]
        else:
            handles = [h for h in self._handles.values() if h.is_ready and h.adapter is not None]
        return [h for h in handles if getattr(h.adapter.capabilities, capability)]

    async def _query(
        self,
        handle: ExtensionHandle,
        what: str,
        send: Callable[[TransportAdapter], Awaitable[T]],
    ) -> T:
        """One non-tool request, ordered with tool calls and bounded by the extension timeout."""
        adapter = handle.adapter
        if adapter is None:
            raise ExtensionNotReady(handle.extension_id, handle.state.value)
        timeout = float(handle.descriptor.timeout_seconds)

        async def run() -> T:
            if adapter.supports_multiplexing:
                return await send(adapter)
            async with handle.call_lock:
                return await send(adapter)

        handle.begin_call()
        try:
            return await asyncio.wait_for(run(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ToolTimeout(handle.extension_id, what, timeout) from e
        finally:
            handle.end_call()

    async def _close_adapter(self, handle: ExtensionHandle) -> None:
        adapter = handle.adapter
        if adapter is None:
            return
        try:
            await adapter.close()
        except Exception as e:
            logger.exception("close failed for %s: %s", handle.extension_id, e)


def _overlay(values: dict[str, str], get_secret: SecretGetter) -> SecretGetter:
    """Secret getter that answers from values first, then from get_secret."""

    async def lookup(name: str) -> str | None:
        if name in values:
            return values[name]
        return await get_secret(name)

    return lookup
