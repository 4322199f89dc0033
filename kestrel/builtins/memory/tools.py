"""Tool table for the memory builtin."""

from typing import Any

from kestrel.builtins.memory.store import MemoryEntry, MemoryScope, MemoryStore
from kestrel.extensions.contract import BuiltinTool, CancellationToken, Toolset

INSTRUCTIONS = """\
Use the memory tools to keep facts the user wants remembered across sessions.
Each memory has a category, optional tags and a scope: "local" memories belong
to the current working directory, "global" ones are shared everywhere. Search
before asking the user something they may already have told you."""

_SCOPE_SCHEMA = {"type": "string", "enum": ["global", "local"]}
_TAGS_SCHEMA = {"type": "array", "items": {"type": "string"}}


def _scope(arguments: dict[str, Any], required: bool = True) -> MemoryScope | None:
    raw = arguments.get("scope")
    if raw is None or raw == "":
        if required:
            raise ValueError("scope is required: 'global' or 'local'")
        return None
    try:
        return MemoryScope(str(raw).strip().lower())
    except ValueError:
        raise ValueError(f"scope must be 'global' or 'local', got {raw!r}") from None


def _format_entry(entry: MemoryEntry) -> str:
    tags = f" [{', '.join(sorted(entry.tags))}]" if entry.tags else ""
    return f"- ({entry.scope.value}/{entry.category}){tags} {entry.content}"


def create_memory_toolset(store: MemoryStore) -> Toolset:
    async def remember(arguments: dict[str, Any], token: CancellationToken) -> str:
        entry = await store.remember(
            arguments.get("category", ""),
            arguments.get("tags"),
            _scope(arguments),
            str(arguments.get("content", "")),
        )
        return f"Stored in {entry.scope.value}/{entry.category}."

    async def retrieve(arguments: dict[str, Any], token: CancellationToken) -> str:
        category = arguments.get("category", "")
        entries = await store.retrieve(category, _scope(arguments))
        if not entries:
            return f"No memories in category '{str(category).strip()}'."
        return "\n".join(_format_entry(e) for e in entries)

    async def search(arguments: dict[str, Any], token: CancellationToken) -> str:
        query = str(arguments.get("query", ""))
        entries = await store.search(query, _scope(arguments, required=False))
        token.check()
        if not entries:
            return f"No memories matching '{query}'."
        return "\n".join(_format_entry(e) for e in entries)

    async def forget(arguments: dict[str, Any], token: CancellationToken) -> str:
        removed = await store.forget(
            arguments.get("category", ""),
            str(arguments.get("content_match", "")),
            _scope(arguments, required=False),
        )
        return f"Removed {removed} memor{'y' if removed == 1 else 'ies'}."

    async def categories(arguments: dict[str, Any], token: CancellationToken) -> str:
        names = await store.categories(_scope(arguments, required=False))
        if not names:
            return "No memories stored yet."
        return "Categories: " + ", ".join(names)

    async def clear(arguments: dict[str, Any], token: CancellationToken) -> str:
        scope = _scope(arguments)
        await store.clear(scope)
        return f"Cleared {scope.value} memories."

    tools = [
        BuiltinTool(
            name="remember",
            description="Store a memory under a category with optional tags.",
            handler=remember,
            parameter_schema={
                "type": "object",
                "properties": {
                    "category": {"type": "string"},
                    "tags": _TAGS_SCHEMA,
                    "scope": _SCOPE_SCHEMA,
                    "content": {"type": "string"},
                },
                "required": ["category", "scope", "content"],
            },
        ),
        BuiltinTool(
            name="retrieve",
            description="List the memories of one category in one scope, oldest first.",
            handler=retrieve,
            parameter_schema={
                "type": "object",
                "properties": {"category": {"type": "string"}, "scope": _SCOPE_SCHEMA},
                "required": ["category", "scope"],
            },
        ),
        BuiltinTool(
            name="search",
            description="Case-insensitive search over content, categories and tags, newest first.",
            handler=search,
            parameter_schema={
                "type": "object",
                "properties": {"query": {"type": "string"}, "scope": _SCOPE_SCHEMA},
                "required": ["query"],
            },
        ),
        BuiltinTool(
            name="forget",
            description="Remove every memory in the category whose content matches exactly.",
            handler=forget,
            parameter_schema={
                "type": "object",
                "properties": {
                    "category": {"type": "string"},
                    "content_match": {"type": "string"},
                    "scope": _SCOPE_SCHEMA,
                },
                "required": ["category", "content_match"],
            },
        ),
        BuiltinTool(
            name="categories",
            description="List the categories that hold memories, optionally for one scope.",
            handler=categories,
            parameter_schema={"type": "object", "properties": {"scope": _SCOPE_SCHEMA}},
        ),
        BuiltinTool(
            name="clear",
            description="Delete all memories in a scope.",
            handler=clear,
            parameter_schema={
                "type": "object",
                "properties": {"scope": _SCOPE_SCHEMA},
                "required": ["scope"],
            },
        ),
    ]
    return Toolset(
        tools={t.name: t for t in tools},
        instructions=INSTRUCTIONS,
        on_close=store.close,
    )
