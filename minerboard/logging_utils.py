from __future__ import annotations

import contextlib
import logging
import os
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable

import orjson

DEFAULT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BYTES = 5_000_000
DEFAULT_BACKUP_COUNT = 3

_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "aiohttp.access")

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        return orjson.dumps(payload, default=str).decode()


def _parse_log_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    level = value.strip().upper()
    if level.isdigit():
        return int(level)
    return getattr(logging, level, logging.INFO)


def configure_logging(
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
    logfile: str | Path | None = None,
    fmt: str | None = None,
    datefmt: str | None = None,
    quiet: Iterable[str] = _NOISY_LOGGERS,
    force: bool = False,
) -> logging.Handler:
    """Install a single stdout handler (and optional rotating file) on the root logger."""

    resolved_level = _parse_log_level(level if level is not None else os.getenv("LOG_LEVEL"))

    env_json = os.getenv("LOG_JSON")
    if json_logs is None and env_json is not None:
        json_logs = env_json.strip().lower() in {"1", "true", "yes", "on"}
    json_logs = bool(json_logs)

    resolved_format = fmt or os.getenv("LOG_FORMAT") or DEFAULT_FORMAT
    resolved_datefmt = datefmt or os.getenv("LOG_DATEFMT") or DEFAULT_DATEFMT

    formatter: logging.Formatter
    if json_logs:
        formatter = JsonFormatter()
    else:
        formatter = _UTCFormatter(resolved_format, datefmt=resolved_datefmt)

    root = logging.getLogger()
    sentinel_key = "_minerboard_stdout_handler"
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            with contextlib.suppress(Exception):
                handler.close()
        if hasattr(root, sentinel_key):
            delattr(root, sentinel_key)

    root.setLevel(resolved_level)

    stream_handler = getattr(root, sentinel_key, None)
    if not isinstance(stream_handler, logging.StreamHandler) or stream_handler not in root.handlers:
        stream_handler = logging.StreamHandler(sys.stdout)
        root.addHandler(stream_handler)
        setattr(root, sentinel_key, stream_handler)
    stream_handler.setLevel(resolved_level)
    stream_handler.setFormatter(formatter)

    log_path = logfile or os.getenv("LOG_FILE")
    if log_path:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        resolved = path.resolve()
        existing = [
            h
            for h in root.handlers
            if getattr(h, "baseFilename", None) and Path(h.baseFilename) == resolved
        ]
        if not existing:
            file_handler = RotatingFileHandler(
                resolved,
                maxBytes=DEFAULT_MAX_BYTES,
                backupCount=DEFAULT_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(resolved_level)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    for name in quiet:
        logging.getLogger(name).setLevel(max(resolved_level, logging.WARNING))

    root.debug("Logging initialised", extra={"json": json_logs})
    return stream_handler


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *minutes* interval."""

    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()
