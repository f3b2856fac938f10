"""Logging setup for applications embedding the chat runtime."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "LOG_DIR_ENV", "LOG_LEVEL_ENV"]

LOG_DIR_ENV = "COPILOT_CHAT_LOG_DIR"
LOG_LEVEL_ENV = "COPILOT_CHAT_LOG_LEVEL"
_DEFAULT_LOG_DIR = Path.home() / ".copilot_chat" / "logs"
_LOG_FILENAME = "copilot_chat.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int | str | None = None,
    *,
    debug: bool = False,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (plus console) on the root logger.

    The level comes from ``level``, then ``COPILOT_CHAT_LOG_LEVEL``, then
    INFO; ``debug=True`` (the ``debug_logging`` setting) forces DEBUG. The
    log directory comes from ``log_dir``, then ``COPILOT_CHAT_LOG_DIR``.
    Repeated calls are no-ops unless ``force`` is set.

    Returns:
        Path of the log file.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    resolved_level = logging.DEBUG if debug else _resolve_level(level)
    target_dir = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILENAME

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Transport libraries log every request at DEBUG.
    quiet_level = max(logging.WARNING, resolved_level)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    logging.getLogger(__name__).debug("Logging configured at %s -> %s", logging.getLevelName(resolved_level), log_path)
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_level(level: int | str | None) -> int:
    candidate = level if level is not None else os.environ.get(LOG_LEVEL_ENV)
    if candidate is None:
        return logging.INFO
    if isinstance(candidate, int):
        return candidate
    resolved = logging.getLevelName(str(candidate).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO
