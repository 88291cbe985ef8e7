"""Logging bootstrap shared by the terminal client and the webhook server."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import structlog

APP_LOGGER_PREFIX = "docchat"
NOISY_LOGGERS = ("httpx", "httpcore", "stripe", "uvicorn.access")
DEFAULT_LOG_FILE = "~/.local/state/docchat/app.log"
PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def app_only_filter(record: logging.LogRecord) -> bool:
    """Only let docchat's own records through to stderr."""
    return record.name.startswith(APP_LOGGER_PREFIX)


def _structured_formatter() -> logging.Formatter:
    # Render structlog loggers and plain stdlib records through the same
    # JSON pipeline; ExtraAdder lifts ``extra={...}`` fields into the event.
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            timestamper,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(
            ensure_ascii=False, separators=(",", ":")
        ),
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            timestamper,
        ],
    )


def _open_private_log(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    if os.name == "posix":
        try:
            path.chmod(0o600)
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Unable to enforce 0600 permissions for %s: %s", path, exc
            )
    return handler


def configure_logging(logging_config: dict[str, Any]) -> None:
    """Install root handlers from the ``[logging]`` config section.

    stderr only carries docchat's own records at WARNING and above so it does
    not fight the Textual screen; the optional file handler gets everything at
    the configured level.
    """
    level_name = str(logging_config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = (
        _structured_formatter()
        if logging_config.get("structured", True)
        else logging.Formatter(PLAIN_FORMAT)
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(max(level, logging.WARNING))
    stderr_handler.addFilter(app_only_filter)
    handlers: list[logging.Handler] = [stderr_handler]

    if logging_config.get("log_to_file", False):
        log_path = Path(str(logging_config.get("log_file_path", DEFAULT_LOG_FILE)))
        file_handler = _open_private_log(log_path.expanduser())
        file_handler.setLevel(level)
        handlers.append(file_handler)

    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
