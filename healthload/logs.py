"""Logging setup for healthload.

Modules keep plain ``logging.getLogger("healthload.<module>")`` loggers; the
root handler renders every record through ``structlog``, either as one JSON
object per line or as readable console lines. The service name and host are
bound as context variables so each line carries them.
"""

from __future__ import annotations

import logging
import os
import socket
import sys
from typing import Any

import structlog

SERVICE_NAME = "healthload"
LOG_FORMATS = ("console", "json")


def default_log_format() -> str:
    # Plain JSON inside Kubernetes, readable lines everywhere else.
    if os.environ.get("KUBERNETES_SERVICE_HOST"):
        return "json"
    return "console"


def resolve_level(level: str | int) -> int:
    """Map a level name to its number; unknown names fall back to INFO."""
    if isinstance(level, int):
        return level
    resolved = getattr(logging, str(level).strip().upper(), None)
    return resolved if isinstance(resolved, int) else logging.INFO


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def build_formatter(fmt: str) -> structlog.stdlib.ProcessorFormatter:
    if fmt == "json":
        renderers: list[Any] = [
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(default=str),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*_shared_processors(), structlog.stdlib.ExtraAdder()],
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *renderers],
    )


def setup_logging(level: str | int = "INFO", fmt: str | None = None) -> None:
    log_level = resolve_level(level)
    log_format = fmt or default_log_format()
    if log_format not in LOG_FORMATS:
        log_format = "console"

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(log_format))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(log_level)
    # httpx logs each request at INFO.
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=SERVICE_NAME, host=socket.gethostname())
