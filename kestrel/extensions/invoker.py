"""ToolInvoker: deadlines, per-extension ordering and cancellation for tool calls."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from kestrel.extensions.contract import LifecycleState, ToolResult
from kestrel.extensions.errors import (
    ExtensionConnectionError,
    ExtensionNotReady,
    ToolNotFound,
    ToolTimeout,
)
from kestrel.extensions.registry import (
    TOOL_NAME_SEPARATOR,
    ExtensionHandle,
    ExtensionRegistry,
)

logger = logging.getLogger(__name__)


class CallStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"


@dataclass
class ToolCall:
    call_id: str
    extension_id: str
    tool_name: str
    arguments: dict[str, Any]
    deadline: float
    status: CallStatus = CallStatus.PENDING
    issued_at: float = 0.0
    error: BaseException | None = field(default=None, repr=False)


def split_tool_name(prefixed_name: str) -> tuple[str, str]:
    """'memory__remember' -> ('memory', 'remember'). Raises ToolNotFound if malformed."""
    extension_id, sep, tool_name = prefixed_name.partition(TOOL_NAME_SEPARATOR)
    if not sep or not extension_id or not tool_name:
        raise ToolNotFound(prefixed_name)
    return extension_id, tool_name


class ToolInvoker:
    """Dispatches tool calls to ready extensions.

    The deadline is enforced here, independent of the adapter: once it passes
    the call is marked timed_out, the adapter is asked to cancel (bounded by
    cancel_grace_seconds) and ToolTimeout is raised. Whatever the adapter
    returns afterwards is discarded. For adapters without multiplexing, calls
    to one extension run strictly one at a time in arrival order; time spent
    queued counts against the deadline.
    """

    def __init__(
        self,
        registry: ExtensionRegistry,
        *,
        default_timeout: float = 300,
        cancel_grace_seconds: float = 5.0,
    ) -> None:
        self._registry = registry
        self._default_timeout = default_timeout
        self._cancel_grace = cancel_grace_seconds

    async def dispatch(
        self, prefixed_name: str, arguments: dict[str, Any] | None = None
    ) -> ToolResult:
        extension_id, tool_name = split_tool_name(prefixed_name)
        return await self.invoke(extension_id, tool_name, arguments)

    async def invoke(
        self,
        extension_id: str,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolResult:
        handle = self._registry.get(extension_id)
        if handle is None:
            raise ExtensionNotReady(extension_id)
        self._ensure_ready(handle)
        if handle.tools and tool_name not in {t.name for t in handle.tools}:
            raise ToolNotFound(f"{handle.extension_id}{TOOL_NAME_SEPARATOR}{tool_name}")

        loop = asyncio.get_running_loop()
        timeout = float(handle.descriptor.timeout_seconds or self._default_timeout)
        issued_at = loop.time()
        call = ToolCall(
            call_id=uuid.uuid4().hex,
            extension_id=handle.extension_id,
            tool_name=tool_name,
            arguments=dict(arguments or {}),
            deadline=issued_at + timeout,
            issued_at=issued_at,
        )
        handle.begin_call()
        handle.pending.append(call)
        try:
            return await self._run(handle, call, timeout)
        except BaseException as e:
            call.error = e
            raise
        finally:
            self._dequeue(handle, call)
            handle.end_call()
            logger.info(
                "Tool call %s %s%s%s %s in %.3fs",
                call.call_id,
                call.extension_id,
                TOOL_NAME_SEPARATOR,
                call.tool_name,
                call.status.value,
                loop.time() - issued_at,
            )

    def pending_calls(self, extension_id: str) -> list[ToolCall]:
        """Calls issued to the extension that have not been handed to the adapter yet."""
        handle = self._registry.get(extension_id)
        if handle is None:
            return []
        return [c for c in handle.pending if c.status is CallStatus.PENDING]

    async def _run(self, handle: ExtensionHandle, call: ToolCall, timeout: float) -> ToolResult:
        loop = asyncio.get_running_loop()
        task = asyncio.create_task(self._execute(handle, call))
        try:
            done, _ = await asyncio.wait({task}, timeout=max(0.0, call.deadline - loop.time()))
        except asyncio.CancelledError:
            call.status = CallStatus.CANCELED
            await self._abandon(handle, call, task)
            raise
        if task in done:
            try:
                result = task.result()
            except Exception:
                call.status = CallStatus.FAILED
                raise
            call.status = CallStatus.SUCCEEDED
            return result
        call.status = CallStatus.TIMED_OUT
        await self._abandon(handle, call, task)
        raise ToolTimeout(call.extension_id, call.tool_name, timeout)

    async def _execute(self, handle: ExtensionHandle, call: ToolCall) -> ToolResult:
        adapter = handle.adapter
        if adapter is None:
            raise ExtensionNotReady(handle.extension_id, handle.state.value)
        if adapter.supports_multiplexing:
            return await self._call_adapter(handle, call)
        async with handle.call_lock:
            return await self._call_adapter(handle, call)

    async def _call_adapter(self, handle: ExtensionHandle, call: ToolCall) -> ToolResult:
        self._ensure_ready(handle)
        adapter = handle.adapter
        assert adapter is not None
        call.status = CallStatus.IN_FLIGHT
        self._dequeue(handle, call)
        return await adapter.invoke(call.call_id, call.tool_name, call.arguments, call.deadline)

    async def _abandon(self, handle: ExtensionHandle, call: ToolCall, task: asyncio.Task[ToolResult]) -> None:
        """Ask the adapter to cancel, then cancel the task. Never waits past the grace period."""
        loop = asyncio.get_running_loop()
        release_by = loop.time() + self._cancel_grace
        adapter = handle.adapter
        if adapter is not None:
            try:
                await asyncio.wait_for(adapter.cancel(call.call_id), timeout=self._cancel_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Tool call %s: %s did not acknowledge cancel within %.1fs",
                    call.call_id,
                    call.extension_id,
                    self._cancel_grace,
                )
            except Exception as e:
                logger.warning("Tool call %s: cancel failed: %s", call.call_id, e)
        task.cancel()
        # Late results and errors are dropped.
        task.add_done_callback(_discard_result)
        done, _ = await asyncio.wait({task}, timeout=max(0.0, release_by - loop.time()))
        if task not in done:
            logger.warning("Tool call %s: released without waiting for adapter", call.call_id)

    @staticmethod
    def _ensure_ready(handle: ExtensionHandle) -> None:
        if handle.state is LifecycleState.READY:
            return
        if handle.crashed:
            raise ExtensionConnectionError(str(handle.error or f"{handle.extension_id}: process exited"))
        raise ExtensionNotReady(handle.extension_id, handle.state.value)

    @staticmethod
    def _dequeue(handle: ExtensionHandle, call: ToolCall) -> None:
        try:
            handle.pending.remove(call)
        except ValueError:
            pass


def _discard_result(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()
