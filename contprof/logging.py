"""
Logging configuration.

Mostly based off http://www.structlog.org/en/stable/standard-library.html.

"""

import logging
import os
import sys
import threading
import traceback
from collections.abc import Mapping, MutableMapping
from types import TracebackType
from typing import Any

import structlog
from pythonjsonlogger.json import JsonFormatter

from contprof.config import is_debug

MAX_ERROR_MESSAGE_LENGTH = 1024


def _add_env_to_event_dict(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    event_dict["env"] = os.environ.get("CONTPROF_ENV")
    return event_dict


def _add_thread_id_to_event_dict(
    logger: Any, name: str, event_dict: MutableMapping[str, Any]
) -> Mapping[str, Any]:
    event_dict["thread_id"] = hex(threading.get_native_id())
    return event_dict


def _get_structlog_processors() -> list[structlog.typing.Processor]:
    processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_env_to_event_dict,
        _add_thread_id_to_event_dict,
    ]

    if is_debug():
        processors.append(structlog.processors.format_exc_info)
        processors.append(
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
        )
    else:
        processors.append(structlog.stdlib.render_to_log_kwargs)

    return processors


structlog.configure(
    processors=_get_structlog_processors(),
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)
get_logger = structlog.get_logger

# Convenience map to let users set level with a string
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def create_error_log_context(
    exc_info: "tuple[type[BaseException] | None, BaseException | None, TracebackType | None]",
) -> dict[str, Any]:
    """
    Build the structured fields describing an exception.

    The message is truncated to MAX_ERROR_MESSAGE_LENGTH so a huge response
    body can't blow up a single log line.
    """
    exc_type, exc_value, exc_tb = exc_info
    if exc_type is None or exc_value is None:
        return {}

    error_message = str(exc_value)
    if len(error_message) > MAX_ERROR_MESSAGE_LENGTH:
        error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH] + "..."

    return {
        "error_name": exc_type.__name__,
        "error_message": error_message,
        "error_traceback": "".join(
            traceback.format_exception(exc_type, exc_value, exc_tb)
        ),
    }


def configure_logging(log_level=None) -> None:  # type: ignore[no-untyped-def]
    """
    Idempotently configure logging.

    Sets the root log level to INFO if not otherwise specified.
    """
    # We don't set a default in the case that you're loading a value from
    # a config and may be passing in None explicitly if it's not defined.
    if log_level is None:
        log_level = logging.INFO
    log_level = LOG_LEVELS.get(log_level, log_level)

    contprof_handler = logging.StreamHandler(sys.stderr)
    contprof_handler.setFormatter(
        logging.Formatter() if is_debug() else JsonFormatter()
    )
    contprof_handler._contprof = True  # type: ignore[attr-defined]

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        # If the handler was previously installed, remove it so that repeated
        # calls to configure_logging() are idempotent.
        if getattr(handler, "_contprof", False):
            root_logger.removeHandler(handler)
    root_logger.addHandler(contprof_handler)
    root_logger.setLevel(log_level)

    # A push per window per stream would otherwise log every connection.
    urllib_logger = logging.getLogger("urllib3.connectionpool")
    urllib_logger.setLevel(logging.ERROR)
