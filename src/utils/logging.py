"""Process-wide logging setup shared by the import pipeline and dev scripts."""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_LOG_FILE_NAME = "photo_tagger.log"
_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"stack_info", "asctime", "message"}


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the attributes attached to ``record`` through ``extra=``."""

    return {key: value for key, value in record.__dict__.items() if key not in _RECORD_KEYS}


def _json_safe(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool, type(None))):
        return value
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _json_safe(item) for key, item in value.items()}
    return str(value)


class _JsonLineFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "thread": record.threadName,
        }
        payload.update(_json_safe(_record_extras(record)))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)


class _KeyValueFormatter(logging.Formatter):
    """Console formatter appending ``extra`` fields as sorted key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _record_extras(record)
        if not extras:
            return line
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))
        return f"{line} | {rendered}"


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("PHOTO_TAGGER_LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _log_directory() -> Path:
    override = os.getenv("PHOTO_TAGGER_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return _PROJECT_ROOT / "log"


def configure_logging(level: str | int | None = None, *, log_to_file: bool = True) -> None:
    """Install console and rotating JSON file handlers on the root logger.

    Calling this more than once only adjusts the level; handlers are installed once.
    """

    root = logging.getLogger()
    root.setLevel(_resolve_level(level))
    if root.handlers:
        return

    console = logging.StreamHandler()
    console.setFormatter(_KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(console)

    if not log_to_file:
        return

    log_dir = _log_directory()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_dir / _LOG_FILE_NAME,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
    except OSError as exc:
        root.warning("log_file_unavailable", extra={"log_dir": str(log_dir), "error": str(exc)})
        return

    file_handler.setFormatter(_JsonLineFormatter())
    root.addHandler(file_handler)


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a logger adapter that attaches ``extra`` to every record.

    The root logger is configured lazily on first use so library callers get
    sensible output without an explicit :func:`configure_logging` call.
    """

    if not logging.getLogger().handlers:
        configure_logging()
    return logging.LoggerAdapter(logging.getLogger(name), dict(extra or {}))


__all__ = ["configure_logging", "get_logger"]
