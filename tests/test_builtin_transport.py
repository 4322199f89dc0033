"""Tests for BuiltinAdapter and the cooperative cancellation token."""

import asyncio
from typing import Any

import pytest

from kestrel.extensions.contract import (
    BuiltinTool,
    CancellationToken,
    Toolset,
    ToolResult,
    TransportAdapter,
)
from kestrel.extensions.errors import ExecutionFailed, ToolNotFound
from kestrel.extensions.transports import BuiltinAdapter


def _toolset(closed: list[str] | None = None) -> Toolset:
    async def greet(args: dict[str, Any], token: CancellationToken) -> str:
        return f"hello {args.get('name', 'world')}"

    async def rich(args: dict[str, Any], token: CancellationToken) -> ToolResult:
        return ToolResult(content=[{"type": "text", "text": "a"}, {"type": "image", "data": "..."}])

    async def nothing(args: dict[str, Any], token: CancellationToken) -> None:
        return None

    async def broken(args: dict[str, Any], token: CancellationToken) -> str:
        raise KeyError("missing")

    async def patient(args: dict[str, Any], token: CancellationToken) -> str:
        for _ in range(100):
            token.check()
            await asyncio.sleep(0.01)
        return "finished"

    async def on_close() -> None:
        if closed is not None:
            closed.append("closed")

    tools = {
        t.name: t
        for t in [
            BuiltinTool("greet", "Say hello", greet, {"type": "object", "properties": {"name": {"type": "string"}}}),
            BuiltinTool("rich", "Mixed content", rich),
            BuiltinTool("nothing", "Returns None", nothing),
            BuiltinTool("broken", "Raises", broken),
            BuiltinTool("patient", "Checks its token", patient),
        ]
    }
    return Toolset(tools=tools, instructions="Use greet to say hello.", on_close=on_close)


def _deadline() -> float:
    return asyncio.get_running_loop().time() + 30


class TestBuiltinAdapter:
    """Function table dispatch."""

    @pytest.mark.asyncio
    async def test_satisfies_protocol_and_lists_tools(self) -> None:
        adapter = BuiltinAdapter("greeter", _toolset())
        assert isinstance(adapter, TransportAdapter)
        await adapter.connect()
        tools = await adapter.list_tools()
        assert [t.name for t in tools] == ["greet", "rich", "nothing", "broken", "patient"]
        assert tools[0].parameter_names() == ["name"]
        assert adapter.instructions == "Use greet to say hello."

    @pytest.mark.asyncio
    async def test_return_values_become_results(self) -> None:
        adapter = BuiltinAdapter("greeter", _toolset())
        assert (await adapter.invoke("c1", "greet", {"name": "kestrel"}, _deadline())).as_text() == "hello kestrel"
        assert (await adapter.invoke("c2", "rich", {}, _deadline())).as_text() == "a"
        assert (await adapter.invoke("c3", "nothing", {}, _deadline())).as_text() == ""

    @pytest.mark.asyncio
    async def test_handler_exception_wrapped(self) -> None:
        adapter = BuiltinAdapter("greeter", _toolset())
        with pytest.raises(ExecutionFailed, match="broken") as exc_info:
            await adapter.invoke("c1", "broken", {}, _deadline())
        assert isinstance(exc_info.value.__cause__, KeyError)

    @pytest.mark.asyncio
    async def test_unknown_tool(self) -> None:
        adapter = BuiltinAdapter("greeter", _toolset())
        with pytest.raises(ToolNotFound, match="greeter__nope"):
            await adapter.invoke("c1", "nope", {}, _deadline())

    @pytest.mark.asyncio
    async def test_cancel_sets_token(self) -> None:
        adapter = BuiltinAdapter("greeter", _toolset())
        task = asyncio.create_task(adapter.invoke("c1", "patient", {}, _deadline()))
        await asyncio.sleep(0.05)
        await adapter.cancel("c1")
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_close_runs_on_close_once(self) -> None:
        closed: list[str] = []
        adapter = BuiltinAdapter("greeter", _toolset(closed))
        await adapter.connect()
        assert adapter.is_alive()
        await adapter.close()
        await adapter.close()
        assert closed == ["closed"]
        assert not adapter.is_alive()


class TestCancellationToken:
    def test_check_raises_after_cancel(self) -> None:
        token = CancellationToken()
        token.check()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled
        with pytest.raises(asyncio.CancelledError):
            token.check()
