"""Root logger setup for the kestrel process."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers, capped at WARNING unless the root level is higher.
_QUIET_LOGGERS = ("httpx", "httpcore", "openai", "aiosqlite", "mcp")


def _level(name: Any, default: int = logging.INFO) -> int:
    value = getattr(logging, str(name or "").upper(), None)
    return value if isinstance(value, int) else default


def _rotating_file(path: Path, cfg: dict[str, Any]) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path,
        maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
        backupCount=int(cfg.get("backup_count", 3)),
        encoding="utf-8",
    )


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Install handlers on the root logger from settings["logging"].

    Keys: file (relative to project_root), level, log_to_console, max_bytes,
    backup_count, and levels ({logger name: level}) for per-module overrides,
    e.g. {"kestrel.extensions.invoker": "DEBUG"}. Extension stderr never
    reaches these handlers.
    """
    cfg = settings.get("logging", {}) or {}
    level = _level(cfg.get("level", "INFO"))
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    handlers: list[logging.Handler] = []
    log_file = cfg.get("file", "data/logs/kestrel.log")
    if log_file:
        path = Path(log_file)
        handlers.append(_rotating_file(path if path.is_absolute() else project_root / path, cfg))
    if cfg.get("log_to_console", False) or not handlers:
        handlers.append(logging.StreamHandler())
    for h in handlers:
        h.setFormatter(formatter)
        root.addHandler(h)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    for name, value in (cfg.get("levels") or {}).items():
        logging.getLogger(str(name)).setLevel(_level(value))
