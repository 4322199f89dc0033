"""Entry point: settings -> logging -> registry, invoker, router -> enabled extensions."""

import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from kestrel import secrets
from kestrel.builtins import BuiltinContext, make_toolset_factory
from kestrel.extensions import ExtensionRegistry, ToolInvoker, descriptors_from_settings
from kestrel.extensions.descriptor import ExtensionDescriptor
from kestrel.extensions.errors import AlreadyRegistered
from kestrel.llm import ProviderRouter
from kestrel.logging_config import setup_logging
from kestrel.settings import get_setting, load_settings

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


@dataclass
class Runtime:
    settings: dict[str, Any]
    registry: ExtensionRegistry
    invoker: ToolInvoker
    provider_router: ProviderRouter


def _resolve_dir(value: Any, default: Path) -> Path:
    if not value:
        return default
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else _PROJECT_ROOT / path


def build_runtime(settings: dict[str, Any]) -> Runtime:
    data_dir = _resolve_dir(settings.get("data_dir"), _PROJECT_ROOT / "data")
    working_dir = _resolve_dir(settings.get("working_dir"), Path.cwd())
    registry = ExtensionRegistry(
        get_secret=secrets.get_secret_async,
        connect_timeout=float(get_setting(settings, "transports.connect_timeout", 30.0)),
        close_grace_seconds=float(get_setting(settings, "transports.close_grace_seconds", 5.0)),
        working_dir=str(working_dir),
    )
    context = BuiltinContext(
        registry=registry,
        data_dir=data_dir,
        working_dir=working_dir,
        settings=settings,
    )
    registry.set_toolset_factory(make_toolset_factory(context))
    invoker = ToolInvoker(
        registry,
        default_timeout=float(get_setting(settings, "invoker.default_timeout", 300)),
        cancel_grace_seconds=float(get_setting(settings, "invoker.cancel_grace_seconds", 5.0)),
    )
    provider_router = ProviderRouter(settings, secrets_getter=secrets.get_secret_async)
    return Runtime(
        settings=settings,
        registry=registry,
        invoker=invoker,
        provider_router=provider_router,
    )


def _load_descriptors(settings: dict[str, Any]) -> list[ExtensionDescriptor]:
    """Valid descriptors from settings; an invalid entry is logged and skipped."""
    result: list[ExtensionDescriptor] = []
    for ext_id, data in (settings.get("extensions") or {}).items():
        try:
            result.extend(descriptors_from_settings({"extensions": {ext_id: data}}))
        except Exception as e:
            logger.exception("Invalid extension config %s: %s", ext_id, e)
    return result


async def start_extensions(runtime: Runtime) -> None:
    """Register every configured extension and enable the ones marked enabled."""
    for descriptor in _load_descriptors(runtime.settings):
        try:
            await runtime.registry.register(descriptor)
        except AlreadyRegistered:
            logger.warning("Extension %s configured twice, keeping the first", descriptor.id)
            continue
        if descriptor.enabled:
            await runtime.registry.enable(descriptor.id)
    tools = runtime.registry.list_tools()
    logger.info(
        "Tool catalog: %d tools from %d extensions",
        len(tools),
        len({t.name.split("__", 1)[0] for t in tools}),
    )
    for tool in tools:
        logger.debug("  %s", tool.name)


def _install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_event.set)
        except (NotImplementedError, RuntimeError):
            pass


async def main_async() -> None:
    """Bootstrap, then wait for a shutdown signal and stop every extension."""
    settings = load_settings()
    setup_logging(_PROJECT_ROOT, settings)
    if not secrets.is_keyring_available():
        logger.info("No OS keyring backend; secrets are read from the environment only")
    runtime = build_runtime(settings)
    shutdown_event = asyncio.Event()
    _install_signal_handlers(shutdown_event)
    try:
        await start_extensions(runtime)
        await shutdown_event.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await runtime.registry.shutdown()


def main() -> None:
    """Synchronous entry for the kestrel process."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:
        pass


__all__ = ["Runtime", "build_runtime", "main", "start_extensions"]
