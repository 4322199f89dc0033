"""Credential lookup for providers and extensions.

A name resolves from the OS keyring (service "kestrel") first, then from the
process environment. The runner loads .env before anything asks, so values in
.env count as environment.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Iterable

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)
SERVICE_NAME = "kestrel"

SecretGetter = Callable[[str], Awaitable[str | None]]


def _is_fail_backend() -> bool:
    try:
        from keyring.backends.fail import Keyring as FailKeyring

        return isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return True


def is_keyring_available() -> bool:
    """False when only the keyring fail stub is installed."""
    return not _is_fail_backend()


def _from_keyring(name: str) -> str | None:
    try:
        return keyring.get_password(SERVICE_NAME, name) or None
    except KeyringError as e:
        logger.debug("keyring lookup for %s failed (%s), using environment", name, e)
        return None


def _from_env(name: str) -> str | None:
    return os.environ.get(name) or None


def get_secret(name: str) -> str | None:
    """keyring, then os.environ. Empty values count as missing."""
    return _from_keyring(name) or _from_env(name)


async def get_secret_async(name: str) -> str | None:
    value = await asyncio.to_thread(_from_keyring, name)
    return value or _from_env(name)


async def lookup_secrets(
    names: Iterable[str],
    getter: SecretGetter = get_secret_async,
) -> tuple[dict[str, str], list[str]]:
    """Resolve each name once, in order. Returns (found, missing)."""
    found: dict[str, str] = {}
    missing: list[str] = []
    for name in dict.fromkeys(names):
        value = await getter(name)
        if value:
            found[name] = value
        else:
            missing.append(name)
    return found, missing


def mask_secret(value: str) -> str:
    """Short form safe for logs: 'sk-proj-abcdef1234' -> 'sk-p...1234'."""
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}...{value[-4:]}"
