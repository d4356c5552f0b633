from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5
_MAX_FIELD_CHARS = 500


@dataclass(frozen=True)
class LogConfig:
    path: Optional[Path]
    level: int = logging.INFO
    max_bytes: int = DEFAULT_MAX_BYTES
    backup_count: int = DEFAULT_BACKUP_COUNT
    console: bool = True


def _coerce_field(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce_field(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _coerce_field(item) for key, item in value.items()}
    text = str(value)
    if len(text) > _MAX_FIELD_CHARS:
        return text[:_MAX_FIELD_CHARS] + "..."
    return text


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one structured log line: a JSON object keyed by ``event``."""
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = _coerce_field(value)
    if exc is not None:
        payload["error"] = _coerce_field(str(exc))
        payload["error_type"] = type(exc).__name__
    try:
        message = json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        message = f"{event} {payload!r}"
    logger.log(level, message)


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_rotating_logger(name: str, config: LogConfig) -> logging.Logger:
    logger = logging.getLogger(name)
    _reset_handlers(logger)
    logger.setLevel(config.level)
    logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT)
    if config.path is not None:
        config.path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    if config.console or config.path is None:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    return logger


def parse_log_level(value: Any, *, default: int = logging.INFO) -> int:
    if isinstance(value, int):
        return value
    if not isinstance(value, str) or not value.strip():
        return default
    resolved = logging.getLevelName(value.strip().upper())
    return resolved if isinstance(resolved, int) else default


__all__ = [
    "LogConfig",
    "log_event",
    "parse_log_level",
    "setup_rotating_logger",
]
