"""Structured logging setup for hosts embedding sessionguard.

Library modules only ever call ``structlog.get_logger(__name__)`` and emit
dotted event names (``refresh_token.reuse_detected``) with keyword context.
Where those lines end up is the host's decision: it calls
:func:`configure_logging` once at startup to route structlog through the
stdlib ``logging`` root handler, rendered as JSON (or a console renderer when
``LOG_PRETTY`` is set). Third-party stdlib loggers share the same formatter.

Per-request identifiers live in structlog contextvars, so every line logged
while a request is being served carries its ``request_id`` and, once known,
the ``user_id``.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import structlog

__all__ = [
    "configure_logging",
    "bind_request_context",
    "clear_request_context",
    "get_logger",
]

_CONFIGURED_FLAG = "_sessionguard_configured"


def _truthy(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    pretty: Optional[bool] = None,
    force: bool = False,
    handler: Optional[logging.Handler] = None,
    cache_loggers: bool = True,
) -> None:
    """Install the structlog + stdlib pipeline.

    Args:
        level: Log level name; defaults to ``LOG_LEVEL`` or INFO.
        pretty: Console renderer instead of JSON; defaults to ``LOG_PRETTY``.
        force: Reconfigure even when already configured.
        handler: Root handler to install; a stderr ``StreamHandler`` if omitted.
        cache_loggers: Let structlog freeze loggers on first use. Tests that
            reconfigure between cases pass False.
    """
    if getattr(structlog, _CONFIGURED_FLAG, False) and not force:
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if pretty is None:
        pretty = _truthy(os.getenv("LOG_PRETTY"))
    renderer = (
        structlog.dev.ConsoleRenderer()
        if pretty
        else structlog.processors.JSONRenderer()
    )

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        timestamper,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    handler = handler or logging.StreamHandler()
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=cache_loggers,
    )

    setattr(structlog, _CONFIGURED_FLAG, True)


def bind_request_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    **extra: Any,
) -> None:
    """Bind identifiers into contextvars; only provided keys are updated."""
    payload: Dict[str, Any] = {k: v for k, v in extra.items() if v is not None}
    if request_id:
        payload["request_id"] = request_id
    if user_id:
        payload["user_id"] = user_id
    if payload:
        structlog.contextvars.bind_contextvars(**payload)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: Optional[str] = None):
    """Return a structlog logger, configuring the pipeline on first use."""
    configure_logging()
    return structlog.get_logger(name) if name else structlog.get_logger()
