"""Extension descriptor: Pydantic model, YAML loader and secret resolution."""

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, PositiveInt, field_validator, model_validator

from kestrel.extensions.contract import TransportKind
from kestrel.secrets import SecretGetter, lookup_secrets

DEFAULT_TIMEOUT_SECONDS = 300

_SECRET_PATTERN = re.compile(r"\$\{(\w+)\}")


def normalize_name(name: str) -> str:
    """Lower-case; keep [a-z0-9_-]; drop whitespace; anything else becomes '_'."""
    out: list[str] = []
    for ch in name:
        if ch.isascii() and (ch.isalnum() or ch in "_-"):
            out.append(ch)
        elif ch.isspace():
            continue
        else:
            out.append("_")
    return "".join(out).lower()


class ExtensionDescriptor(BaseModel):
    """Persisted configuration for one extension (settings.yaml `extensions:` entry)."""

    id: str
    display_name: str = ""
    transport_kind: TransportKind
    # subprocess: env and env_keys (secret names) go into the child env.
    # remote_stream: they are the first source for ${NAME} in url and headers.
    command: str | None = None
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    env_keys: list[str] = Field(default_factory=list)
    # remote_stream; url and header values may contain ${NAME}
    url: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    # builtin: function table name; defaults to id
    builtin: str | None = None
    timeout_seconds: PositiveInt = DEFAULT_TIMEOUT_SECONDS
    enabled: bool = True
    description: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = normalize_name(value)
        if not normalized:
            raise ValueError("extension id must contain at least one valid character")
        return normalized

    @model_validator(mode="after")
    def _validate_transport_config(self) -> "ExtensionDescriptor":
        if self.transport_kind is TransportKind.SUBPROCESS and not self.command:
            raise ValueError("command is required for subprocess extensions")
        if self.transport_kind is TransportKind.REMOTE_STREAM and not self.url:
            raise ValueError("url is required for remote_stream extensions")
        if not self.display_name:
            self.display_name = self.id
        return self

    @property
    def builtin_name(self) -> str:
        return self.builtin or self.id

    def summary(self) -> str:
        desc = (self.description or "").strip()
        return f"{self.id}: {desc}" if desc else self.id


def descriptors_from_settings(settings: dict[str, Any]) -> list[ExtensionDescriptor]:
    """Build descriptors from settings['extensions'] ({id: {...}}). Missing id = mapping key."""
    result: list[ExtensionDescriptor] = []
    for ext_id, data in (settings.get("extensions") or {}).items():
        if not isinstance(data, dict):
            continue
        payload = {"id": str(ext_id), **data}
        result.append(ExtensionDescriptor.model_validate(payload))
    return result


def load_descriptor(path: Path) -> ExtensionDescriptor:
    """Read and validate a descriptor YAML file. Raises on invalid YAML or validation error."""
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Extension descriptor must be a YAML object: {path}")
    return ExtensionDescriptor.model_validate(data)


async def resolve_secrets_in_string(value: str, get_secret: SecretGetter) -> str | None:
    """Replace ${NAME} with secret. Return None if any secret is missing."""
    result_parts: list[str] = []
    last_end = 0
    for match in _SECRET_PATTERN.finditer(value):
        secret = await get_secret(match.group(1))
        if secret is None:
            return None
        result_parts.append(value[last_end : match.start()])
        result_parts.append(secret)
        last_end = match.end()
    result_parts.append(value[last_end:])
    return "".join(result_parts)


async def resolve_mapping(
    values: dict[str, str],
    env_keys: list[str],
    get_secret: SecretGetter,
) -> tuple[dict[str, str], list[str]]:
    """Resolve ${NAME} in values and add env_keys not already present.

    Returns (resolved, missing_names). Entries whose secrets are missing are
    left out of resolved.
    """
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for key, raw in values.items():
        value = await resolve_secrets_in_string(str(raw), get_secret)
        if value is None:
            missing.extend(_SECRET_PATTERN.findall(str(raw)))
            continue
        resolved[key] = value
    found, absent = await lookup_secrets(
        (key for key in env_keys if key not in resolved), get_secret
    )
    resolved.update(found)
    missing.extend(absent)
    return resolved, list(dict.fromkeys(missing))
