"""Builtin extensions: in-process toolsets created on enable."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from kestrel.builtins.memory import MemoryStore, create_memory_toolset
from kestrel.builtins.platform import create_platform_toolset
from kestrel.extensions.contract import Toolset
from kestrel.extensions.descriptor import ExtensionDescriptor
from kestrel.extensions.errors import ExtensionConnectionError
from kestrel.extensions.registry import ExtensionRegistry

logger = logging.getLogger(__name__)


@dataclass
class BuiltinContext:
    """What a builtin factory may use: the registry, directories and settings."""

    registry: ExtensionRegistry
    data_dir: Path
    working_dir: Path
    settings: dict[str, Any] = field(default_factory=dict)


BuiltinFactory = Callable[[BuiltinContext, ExtensionDescriptor], Awaitable[Toolset]]


async def _memory(context: BuiltinContext, descriptor: ExtensionDescriptor) -> Toolset:
    cfg = {**(context.settings.get("memory") or {}), **descriptor.config}
    global_db = context.data_dir / str(cfg.get("global_db", "memory/global.db"))
    local_db = context.working_dir / str(cfg.get("local_dir", ".kestrel")) / "memory.db"
    return create_memory_toolset(MemoryStore(global_db, local_db))


async def _platform(context: BuiltinContext, descriptor: ExtensionDescriptor) -> Toolset:
    return create_platform_toolset(context.registry, self_id=descriptor.id)


BUILTIN_FACTORIES: dict[str, BuiltinFactory] = {
    "memory": _memory,
    "platform": _platform,
}


def make_toolset_factory(
    context: BuiltinContext,
    factories: dict[str, BuiltinFactory] | None = None,
) -> Callable[[ExtensionDescriptor], Awaitable[Toolset]]:
    """Bind context so the registry can build a builtin from its descriptor alone."""
    table = factories if factories is not None else BUILTIN_FACTORIES

    async def build(descriptor: ExtensionDescriptor) -> Toolset:
        factory = table.get(descriptor.builtin_name)
        if factory is None:
            raise ExtensionConnectionError(
                f"{descriptor.id}: unknown builtin {descriptor.builtin_name!r}"
            )
        logger.debug("Building builtin toolset %s", descriptor.builtin_name)
        return await factory(context, descriptor)

    return build


__all__ = [
    "BUILTIN_FACTORIES",
    "BuiltinContext",
    "BuiltinFactory",
    "make_toolset_factory",
]
