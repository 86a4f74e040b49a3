from __future__ import annotations

import logging
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "transit_matrix"
LOG_FILE_NAME = "pipeline.log.jsonl"

# Attributes every LogRecord already carries; passing one through ``extra``
# raises KeyError inside logging.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _log_dir() -> Path | None:
    for log_dir in (Path(settings.out_dir) / "logs", Path(gettempdir()) / "transit-matrix" / "logs"):
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            marker = log_dir / ".writetest"
            marker.touch(exist_ok=True)
            marker.unlink(missing_ok=True)
        except OSError:
            continue
        return log_dir
    return None


def get_logger() -> logging.Logger:
    """JSON logger writing to stderr and to ``OUT_DIR/logs``.

    Configured once per process; later calls return the same logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if getattr(logger, "_configured", False):
        return logger

    level = logging.getLevelName(settings.log_level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    logger.propagate = False

    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(message)s",
        rename_fields={"levelname": "level"},
    )
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.set_name("console")
    logger.addHandler(console)

    log_dir = _log_dir()
    if log_dir is not None:
        try:
            fh = logging.FileHandler(log_dir / LOG_FILE_NAME, encoding="utf-8")
        except OSError:
            fh = None
        if fh is not None:
            fh.setFormatter(formatter)
            logger.addHandler(fh)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


def set_console_level(level: int) -> None:
    """Raise or lower the stderr threshold; the JSONL file keeps every event."""
    for handler in get_logger().handlers:
        if handler.get_name() == "console":
            handler.setLevel(level)


def _safe_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {(f"field_{k}" if k in _RECORD_ATTRS else k): v for k, v in fields.items()}


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    get_logger().log(level, event, extra={"event": event, **_safe_fields(fields)})
