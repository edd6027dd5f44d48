"""
Structured logging setup shared by the CLI, the container entrypoint and the admin API.

Operators read these logs on a terminal, so the console renderer is the default.
JSON output is available for log shippers.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.types import EventDict, Processor

_CONFIGURED = False


def _drop_color_message(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    # uvicorn duplicates the message with ANSI codes under this key
    event_dict.pop("color_message", None)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    component: Optional[str] = None,
) -> None:
    """Configure structlog and route stdlib logging through the same stream.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: Render JSON lines instead of the console format
        component: Optional name bound to every event (e.g. "entrypoint")
    """
    global _CONFIGURED

    level = getattr(logging, str(log_level).upper(), logging.INFO)

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        _drop_color_message,
    ]

    renderer: Processor
    if json_logs:
        shared.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    # Docker SDK / urllib3 chatter is noise at INFO
    for noisy in ("urllib3", "docker", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))

    structlog.contextvars.clear_contextvars()
    if component:
        structlog.contextvars.bind_contextvars(component=component)

    _CONFIGURED = True


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger; usable before configure_logging() runs."""
    return structlog.get_logger(name)


def is_configured() -> bool:
    return _CONFIGURED
