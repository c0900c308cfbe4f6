"""Console logging for the bridge, uvicorn and the upstream socket library.

Records emitted for a synthesis task carry the upstream ``task_id`` and the
pooled ``session_id`` it runs on. Use :func:`task_logger` to get a logger
that stamps both.
"""

from __future__ import annotations

import logging
import logging.config
import os
from typing import Any, Dict, MutableMapping, Optional, Tuple

LOG_LEVEL_ENV_VAR = "COSYVOICE_BRIDGE_LOG_LEVEL"
LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
CONTEXT_FIELDS = ("task_id", "session_id")

RESET = "\033[0m"
LEVEL_COLORS = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[35m",  # Magenta
}


class RequestAwareFormatter(logging.Formatter):
    """Colors the level and fills task/session context with ``-`` when absent."""

    def __init__(self, service_name: str, *args: object, **kwargs: object) -> None:  # type: ignore[override]
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        for field in CONTEXT_FIELDS:
            if not getattr(record, field, None):
                setattr(record, field, "-")
        if not hasattr(record, "service"):
            record.service = self.service_name

        color = LEVEL_COLORS.get(record.levelname, "")
        record.levelname_colored = f"{color}{record.levelname}{RESET}"
        return super().format(record)


class TaskLoggerAdapter(logging.LoggerAdapter):
    """Adds the task and session ids to every record; per-call ``extra`` wins."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def task_logger(logger: logging.Logger, task_id: str, session_id: Optional[str] = None) -> TaskLoggerAdapter:
    return TaskLoggerAdapter(logger, {"task_id": task_id, "session_id": session_id or "-"})


def _resolve_level(default_level: str | None = None) -> str:
    level = (os.environ.get(LOG_LEVEL_ENV_VAR) or default_level or "INFO").upper()
    return level if level in LEVELS else "INFO"


def build_logging_config(service_name: str, default_level: str | None = None) -> Dict[str, Any]:
    """dictConfig for the bridge; also passed to uvicorn as ``log_config``.

    The ``websockets`` client logs every frame at DEBUG, so it is held at
    WARNING regardless of the bridge level.
    """

    level = _resolve_level(default_level)
    fmt = (
        "%(asctime)s | %(levelname_colored)s | %(service)s | %(name)s | %(message)s"
        " | task=%(task_id)s session=%(session_id)s"
    )
    handler = {"handlers": ["console"], "level": level, "propagate": False}
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "colored": {
                "()": f"{__name__}.RequestAwareFormatter",
                "service_name": service_name,
                "fmt": fmt,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
                "formatter": "colored",
            }
        },
        "loggers": {
            "": {"handlers": ["console"], "level": level},
            **{name: dict(handler) for name in ("uvicorn", "uvicorn.error", "uvicorn.access")},
            "websockets": {**handler, "level": "WARNING"},
        },
    }


def configure_logging(service_name: str, default_level: str | None = None) -> Dict[str, Any]:
    config = build_logging_config(service_name, default_level=default_level)
    logging.config.dictConfig(config)
    logging.getLogger(__name__).debug(
        "Logging configured for %s with level %s", service_name, config["loggers"][""]["level"]
    )
    return config
