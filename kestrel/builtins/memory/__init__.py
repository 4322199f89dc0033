"""Memory builtin: scoped, categorised, tagged notes."""

from kestrel.builtins.memory.store import (
    InvalidCategory,
    MemoryEntry,
    MemoryNotFound,
    MemoryScope,
    MemoryStore,
    MemoryStoreError,
)
from kestrel.builtins.memory.tools import create_memory_toolset

__all__ = [
    "InvalidCategory",
    "MemoryEntry",
    "MemoryNotFound",
    "MemoryScope",
    "MemoryStore",
    "MemoryStoreError",
    "create_memory_toolset",
]
