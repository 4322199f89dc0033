"""Tests for SubprocessAdapter against tests/fixtures/echo_server.py."""

import asyncio
import os
import sys
import time
from pathlib import Path

import pytest

from kestrel.extensions.errors import ExecutionFailed, ExtensionConnectionError
from kestrel.extensions.transports import SubprocessAdapter

_SERVER = str(Path(__file__).parent / "fixtures" / "echo_server.py")


def _adapter(*extra_args: str, **kwargs) -> SubprocessAdapter:
    return SubprocessAdapter(
        "echo",
        sys.executable,
        [_SERVER, *extra_args],
        kwargs.pop("env", {}),
        connect_timeout=10.0,
        close_grace_seconds=kwargs.pop("close_grace_seconds", 2.0),
        **kwargs,
    )


def _deadline() -> float:
    return asyncio.get_running_loop().time() + 30


async def _wait_gone(pid: int, within: float = 10.0) -> None:
    give_up = time.monotonic() + within
    while time.monotonic() < give_up:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return
        await asyncio.sleep(0.1)
    pytest.fail(f"process {pid} still running after {within}s")


async def _pid(adapter: SubprocessAdapter) -> int:
    return int((await adapter.invoke("pid", "pid", {}, _deadline())).as_text())


class TestSubprocessLifecycle:
    """connect, list_tools, close."""

    @pytest.mark.asyncio
    async def test_connect_reads_instructions_and_tools(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            assert adapter.is_alive()
            assert adapter.instructions == "echo server instructions"
            names = [t.name for t in await adapter.list_tools()]
            assert "echo" in names and "slow" in names
            echo = next(t for t in await adapter.list_tools() if t.name == "echo")
            assert echo.parameter_names() == ["text"]
        finally:
            await adapter.close()
        assert not adapter.is_alive()

    @pytest.mark.asyncio
    async def test_missing_command_raises_connection_error(self) -> None:
        adapter = SubprocessAdapter("ghost", "/nonexistent/kestrel-tool-binary")
        with pytest.raises(ExtensionConnectionError, match="cannot start"):
            await adapter.connect()

    @pytest.mark.asyncio
    async def test_process_exiting_before_initialize_raises(self) -> None:
        adapter = _adapter("--exit-immediately")
        with pytest.raises(ExtensionConnectionError):
            await adapter.connect()
        assert not adapter.is_alive()

    @pytest.mark.asyncio
    async def test_close_stops_the_process(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        pid = await _pid(adapter)
        await adapter.close()
        await _wait_gone(pid)

    @pytest.mark.asyncio
    async def test_close_kills_busy_process_that_ignores_sigterm(self) -> None:
        adapter = _adapter("--ignore-sigterm", close_grace_seconds=0.5)
        await adapter.connect()
        pid = await _pid(adapter)
        busy = asyncio.create_task(adapter.invoke("c1", "block", {"seconds": 60}, _deadline()))
        await asyncio.sleep(0.3)
        started = time.monotonic()
        await adapter.close()
        assert time.monotonic() - started < 10
        assert not adapter.is_alive()
        with pytest.raises(ExtensionConnectionError):
            await busy
        await _wait_gone(pid)

    @pytest.mark.asyncio
    async def test_capabilities_from_initialize(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            assert adapter.server_name == "echo"
            assert adapter.capabilities.tools
            assert adapter.capabilities.resources
            assert adapter.capabilities.prompts
        finally:
            await adapter.close()


class TestSubprocessInvoke:
    """tools/call over the pipe."""

    @pytest.mark.asyncio
    async def test_echo(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            result = await adapter.invoke("c1", "echo", {"text": "hello"}, _deadline())
            assert result.as_text() == "hello"
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_tool_error_raises_execution_failed(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            with pytest.raises(ExecutionFailed, match="boom"):
                await adapter.invoke("c1", "fail", {}, _deadline())
            with pytest.raises(ExecutionFailed, match="(?i)unknown tool"):
                await adapter.invoke("c2", "nope", {}, _deadline())
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_non_json_lines_are_ignored(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            result = await adapter.invoke("c1", "noisy", {}, _deadline())
            assert result.as_text() == "quiet now"
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_env_is_passed_to_child(self) -> None:
        adapter = _adapter(env={"KESTREL_TEST_VALUE": "from-descriptor"})
        await adapter.connect()
        try:
            result = await adapter.invoke("c1", "env", {"name": "KESTREL_TEST_VALUE"}, _deadline())
            assert result.as_text() == "from-descriptor"
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_cancel_releases_the_process(self) -> None:
        exits: list[str] = []
        adapter = _adapter(on_exit=exits.append)
        await adapter.connect()
        try:
            pid = await _pid(adapter)
            call = asyncio.create_task(adapter.invoke("c1", "block", {"seconds": 60}, _deadline()))
            await asyncio.sleep(0.3)
            await adapter.cancel("c1")
            assert not adapter.is_alive()
            assert len(exits) == 1 and "abandoned" in exits[0]
            with pytest.raises(ExtensionConnectionError):
                await call
            with pytest.raises(ExtensionConnectionError):
                await adapter.invoke("c2", "echo", {"text": "x"}, _deadline())
            await _wait_gone(pid)
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_cancel_of_finished_call_keeps_the_process(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            await adapter.invoke("c1", "echo", {"text": "done"}, _deadline())
            await adapter.cancel("c1")
            assert adapter.is_alive()
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_crash_fails_call_and_reports_exit(self) -> None:
        exits: list[str] = []
        adapter = _adapter(on_exit=exits.append)
        await adapter.connect()
        try:
            with pytest.raises(ExtensionConnectionError, match="exited"):
                await adapter.invoke("c1", "crash", {}, _deadline())
            assert not adapter.is_alive()
            assert exits == ["echo: process exited"]
            with pytest.raises(ExtensionConnectionError):
                await adapter.invoke("c2", "echo", {"text": "x"}, _deadline())
        finally:
            await adapter.close()


class TestSubprocessResourcesAndPrompts:
    """resources/* and prompts/* through the session."""

    @pytest.mark.asyncio
    async def test_resources(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            resources = await adapter.list_resources()
            assert [(r.uri, r.name, r.mime_type) for r in resources] == [
                ("note://greeting", "greeting", "text/plain")
            ]
            contents = await adapter.read_resource("note://greeting")
            assert [c.text for c in contents] == ["hello from the echo server"]
            with pytest.raises(ExecutionFailed):
                await adapter.read_resource("note://missing")
            assert adapter.is_alive()
        finally:
            await adapter.close()

    @pytest.mark.asyncio
    async def test_prompts(self) -> None:
        adapter = _adapter()
        await adapter.connect()
        try:
            prompts = await adapter.list_prompts()
            assert [p.name for p in prompts] == ["review"]
            assert [(a.name, a.required) for a in prompts[0].arguments] == [("code", True)]
            rendered = await adapter.get_prompt("review", {"code": "x = 1"})
            assert [m.role for m in rendered.messages] == ["user"]
            assert "x = 1" in rendered.messages[0].text
        finally:
            await adapter.close()
