"""Platform builtin: lets the agent inspect and toggle its own extensions."""

from typing import Any

from kestrel.extensions.contract import BuiltinTool, CancellationToken, LifecycleState, Toolset
from kestrel.extensions.descriptor import normalize_name
from kestrel.extensions.registry import ExtensionRegistry

INSTRUCTIONS = """\
If a task needs a capability none of the enabled tools provide, call
search_available_extensions and enable a matching extension. Disable
extensions you no longer need. Running extensions may also offer resources
and prompt templates: see list_resources and list_prompts."""

_NAME_SCHEMA = {
    "type": "object",
    "properties": {"extension_name": {"type": "string"}},
    "required": ["extension_name"],
}

_OPTIONAL_NAME_SCHEMA = {
    "type": "object",
    "properties": {"extension_name": {"type": "string"}},
}


def create_platform_toolset(registry: ExtensionRegistry, self_id: str = "platform") -> Toolset:
    async def list_extensions(arguments: dict[str, Any], token: CancellationToken) -> str:
        lines: list[str] = []
        for desc in registry.list_extensions():
            handle = registry.get(desc.id)
            state = handle.state.value if handle else LifecycleState.DISABLED.value
            lines.append(f"- {desc.summary()} [{state}]")
        return "\n".join(lines) or "No extensions registered."

    async def search_available_extensions(arguments: dict[str, Any], token: CancellationToken) -> str:
        found = registry.list_disabled(arguments.get("query"))
        if not found:
            return "No extensions available to enable."
        return "Extensions available to enable:\n" + "\n".join(
            f"- {d.summary()}" for d in found
        )

    async def enable_extension(arguments: dict[str, Any], token: CancellationToken) -> str:
        name = str(arguments.get("extension_name", "")).strip()
        handle = await registry.enable(name)
        if handle.state is LifecycleState.FAILED:
            return f"Failed to enable '{handle.extension_id}': {handle.error}"
        tools = ", ".join(t.name for t in handle.tools) or "no tools"
        return f"Enabled '{handle.extension_id}' ({tools})."

    async def disable_extension(arguments: dict[str, Any], token: CancellationToken) -> str:
        name = str(arguments.get("extension_name", "")).strip()
        ext_id = normalize_name(name)
        if ext_id == self_id:
            raise ValueError("the platform extension cannot disable itself")
        await registry.disable(ext_id)
        return f"Disabled '{ext_id}'."

    async def list_resources(arguments: dict[str, Any], token: CancellationToken) -> str:
        found = await registry.list_resources(arguments.get("extension_name") or None)
        lines: list[str] = []
        for ext_id, resources in found.items():
            for r in resources:
                label = r.name or r.uri
                detail = f": {r.description}" if r.description else ""
                lines.append(f"- [{ext_id}] {r.uri} ({label}){detail}")
        return "\n".join(lines) or "No resources available."

    async def read_resource(arguments: dict[str, Any], token: CancellationToken) -> str:
        uri = str(arguments.get("uri", "")).strip()
        if not uri:
            raise ValueError("uri is required")
        contents = await registry.read_resource(uri, arguments.get("extension_name") or None)
        parts: list[str] = []
        for c in contents:
            if c.text is None:
                parts.append(f"{c.uri}\n\n[binary content, {c.mime_type or 'unknown type'}]")
            else:
                parts.append(f"{c.uri}\n\n{c.text}")
        return "\n\n---\n\n".join(parts)

    async def list_prompts(arguments: dict[str, Any], token: CancellationToken) -> str:
        found = await registry.list_prompts(arguments.get("extension_name") or None)
        lines: list[str] = []
        for ext_id, prompts in found.items():
            for p in prompts:
                args = ", ".join(
                    a.name if a.required else f"{a.name}?" for a in p.arguments
                )
                detail = f": {p.description}" if p.description else ""
                lines.append(f"- [{ext_id}] {p.name}({args}){detail}")
        return "\n".join(lines) or "No prompts available."

    async def get_prompt(arguments: dict[str, Any], token: CancellationToken) -> str:
        name = str(arguments.get("extension_name", "")).strip()
        prompt = str(arguments.get("prompt_name", "")).strip()
        raw = arguments.get("arguments") or {}
        if not isinstance(raw, dict):
            raise ValueError("arguments must be an object")
        rendered = await registry.get_prompt(name, prompt, {k: str(v) for k, v in raw.items()})
        body = "\n\n".join(f"[{m.role}] {m.text}" for m in rendered.messages)
        return f"{rendered.description}\n\n{body}" if rendered.description else body

    tools = [
        BuiltinTool(
            name="list_extensions",
            description="List registered extensions and their state.",
            handler=list_extensions,
        ),
        BuiltinTool(
            name="search_available_extensions",
            description="List extensions that are registered but not running.",
            handler=search_available_extensions,
            parameter_schema={
                "type": "object",
                "properties": {"query": {"type": "string"}},
            },
        ),
        BuiltinTool(
            name="enable_extension",
            description="Start a registered extension so its tools become available.",
            handler=enable_extension,
            parameter_schema=_NAME_SCHEMA,
        ),
        BuiltinTool(
            name="disable_extension",
            description="Stop an extension; its tools stop being offered.",
            handler=disable_extension,
            parameter_schema=_NAME_SCHEMA,
        ),
        BuiltinTool(
            name="list_resources",
            description="List resources (files, documents, records) offered by running extensions.",
            handler=list_resources,
            parameter_schema=_OPTIONAL_NAME_SCHEMA,
        ),
        BuiltinTool(
            name="read_resource",
            description="Read a resource by URI. extension_name narrows the search to one extension.",
            handler=read_resource,
            parameter_schema={
                "type": "object",
                "properties": {
                    "uri": {"type": "string"},
                    "extension_name": {"type": "string"},
                },
                "required": ["uri"],
            },
        ),
        BuiltinTool(
            name="list_prompts",
            description="List prompt templates offered by running extensions.",
            handler=list_prompts,
            parameter_schema=_OPTIONAL_NAME_SCHEMA,
        ),
        BuiltinTool(
            name="get_prompt",
            description="Render a prompt template of an extension with the given arguments.",
            handler=get_prompt,
            parameter_schema={
                "type": "object",
                "properties": {
                    "extension_name": {"type": "string"},
                    "prompt_name": {"type": "string"},
                    "arguments": {"type": "object", "additionalProperties": {"type": "string"}},
                },
                "required": ["extension_name", "prompt_name"],
            },
        ),
    ]
    return Toolset(tools={t.name: t for t in tools}, instructions=INSTRUCTIONS)
