"""
Structured logging for the engine: structlog events rendered by stdlib handlers.

Every module logs events with key/value context:

    logger = get_logger(__name__)
    logger.info("feedback_recorded", user_id="alice", decision_id="run-1")

Environment:
    SAGE_LOG_LEVEL          DEBUG, INFO (default), WARNING, ERROR
    SAGE_LOG_FORMAT         "json" for one JSON object per line, else console
    SAGE_LOG_FILE           Also append JSON lines to this file
    SAGE_LOG_REDACT_USERS   "1" replaces user ids with a stable hash

Rendering and redaction happen in the handler formatter, so calling
setup_logging() again takes effect for loggers that were already used.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog

LEVEL_ENV = "SAGE_LOG_LEVEL"
FORMAT_ENV = "SAGE_LOG_FORMAT"
FILE_ENV = "SAGE_LOG_FILE"
REDACT_ENV = "SAGE_LOG_REDACT_USERS"

# Event keys that carry a user identity
USER_KEYS = ("user_id", "other_user_id")


def pseudonymize(user_id: str) -> str:
    """Stable, non-reversible stand-in for a user id in log output."""
    return "u_" + hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:10]


def redact_user_ids(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in USER_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and value:
            event_dict[key] = pseudonymize(value)
    return event_dict


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _formatter(renderer: structlog.types.Processor, redact: bool) -> logging.Formatter:
    processors: list[structlog.types.Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
    ]
    if redact:
        processors.append(redact_user_ids)
    processors.append(renderer)
    return structlog.stdlib.ProcessorFormatter(processors=processors)


def setup_logging(
    level: str | None = None,
    json_output: bool | None = None,
    log_file: str | Path | None = None,
    redact_users: bool | None = None,
    stream: TextIO | None = None,
) -> None:
    """
    Configure structlog and the root logger. Arguments left as None are
    read from the environment.

    Args:
        stream: Console destination, stderr by default so stdout stays free
            for CLI results
    """
    if level is None:
        level = os.environ.get(LEVEL_ENV, "INFO")
    if json_output is None:
        json_output = os.environ.get(FORMAT_ENV, "").lower() == "json"
    if log_file is None:
        log_file = os.environ.get(FILE_ENV) or None
    if redact_users is None:
        redact_users = _env_flag(REDACT_ENV)

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if json_output:
        console_renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_renderer = structlog.dev.ConsoleRenderer(colors=False)

    console = logging.StreamHandler(stream or sys.stderr)
    console.setFormatter(_formatter(console_renderer, redact_users))
    handlers: list[logging.Handler] = [console]

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), redact_users))
        handlers.append(file_handler)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = ["get_logger", "pseudonymize", "redact_user_ids", "setup_logging"]
