"""Application settings: built-in defaults overlaid with config/settings.yaml.

The config directory is KESTREL_CONFIG_DIR when set, else config/ next to the
package. Numeric timeouts under invoker and transports must be positive;
anything else falls back to its default with a warning.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_DIR_ENV = "KESTREL_CONFIG_DIR"

_DEFAULTS: dict[str, Any] = {
    "data_dir": "data",
    "working_dir": None,
    "invoker": {
        "default_timeout": 300,
        "cancel_grace_seconds": 5.0,
    },
    "transports": {
        "connect_timeout": 30.0,
        "close_grace_seconds": 5.0,
    },
    "providers": {},
    "memory": {
        "global_db": "memory/global.db",
        "local_dir": ".kestrel",
    },
    "logging": {
        "file": "data/logs/kestrel.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
    "extensions": {
        "memory": {
            "display_name": "Memory",
            "transport_kind": "builtin",
            "description": "Categorised, tagged notes kept across sessions.",
        },
        "platform": {
            "display_name": "Platform",
            "transport_kind": "builtin",
            "description": "Inspect, enable and disable extensions.",
        },
    },
}

# Sections whose values are all positive numbers.
_POSITIVE_SECTIONS = ("invoker", "transports")


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge overlay into base recursively. Mutates base; None values are skipped."""
    for key, value in overlay.items():
        if value is None:
            continue
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value by dot path (e.g. 'invoker.default_timeout')."""
    current: Any = settings
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def config_dir() -> Path:
    override = os.environ.get(CONFIG_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).resolve().parent.parent / "config"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, OSError) as e:
        logger.warning("Ignoring %s: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level must be a mapping, got %s", path, type(data).__name__)
        return {}
    return data


def _check_positive(settings: dict[str, Any]) -> None:
    for section in _POSITIVE_SECTIONS:
        values = settings.get(section)
        defaults = _DEFAULTS[section]
        if not isinstance(values, dict):
            logger.warning("settings.%s must be a mapping; using defaults", section)
            settings[section] = copy.deepcopy(defaults)
            continue
        for key, default in defaults.items():
            value = values.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                logger.warning(
                    "settings.%s.%s must be a positive number, got %r; using %s",
                    section,
                    key,
                    value,
                    default,
                )
                values[key] = default


def load_settings(config_path: Path | None = None) -> dict[str, Any]:
    """Defaults merged with <config dir>/settings.yaml. A bad file leaves the defaults."""
    directory = config_path if config_path is not None else config_dir()
    result = get_default_settings()
    path = directory / "settings.yaml"
    if path.exists():
        _deep_merge(result, _read_yaml(path))
    _check_positive(result)
    return result
