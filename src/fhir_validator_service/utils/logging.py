"""Logging configuration helpers built on Structlog.

Key Responsibilities:
    - Configure standard library logging and Structlog processors with field
      scrubbing and an optional JSON renderer
    - Define the pluggable logger sink protocol accepted by every component

Collaborators:
    - Upstream: Host applications call :func:`configure_logging` once at startup;
      components call :func:`get_logger` to obtain their default sink
    - Downstream: Relies on ``logging`` and ``structlog``

Side Effects:
    - Configures global logging handlers and Structlog defaults

Thread Safety:
    - Configuration should be invoked once during process startup
    - Loggers returned by :func:`get_logger` are safe to share across threads
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Iterable
from typing import Any, Protocol

import structlog

from fhir_validator_service.config.settings import LoggingSettings

# ==============================================================================
# SINK PROTOCOL
# ==============================================================================


class LoggerSink(Protocol):
    """Structured logger interface accepted by the wrapper components.

    Structlog bound loggers satisfy it directly; any object exposing the four
    level methods with ``(event, **fields)`` call signatures can be plugged in.
    """

    def debug(self, event: str, **kwargs: Any) -> Any: ...

    def info(self, event: str, **kwargs: Any) -> Any: ...

    def warning(self, event: str, **kwargs: Any) -> Any: ...

    def error(self, event: str, **kwargs: Any) -> Any: ...


def get_logger(name: str, sink: LoggerSink | None = None) -> LoggerSink:
    """Return ``sink`` when provided, otherwise the Structlog logger for ``name``."""
    if sink is not None:
        return sink
    return structlog.get_logger(name)


# ==============================================================================
# STRUCTLOG PROCESSORS
# ==============================================================================


def _structlog_scrubber(
    scrub_fields: Iterable[str] | None,
) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Create a Structlog processor that replaces sensitive fields with ``***``."""
    lower_fields = {field.lower() for field in scrub_fields or ()}

    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key in list(event_dict.keys()):
            if key.lower() in lower_fields:
                event_dict[key] = "***"
        return event_dict

    return processor


def configure_logging(
    level: int | str | None = None,
    *,
    settings: LoggingSettings | None = None,
) -> None:
    """Configure global logging for the host process.

    Args:
        level: Optional logging level or level name. When ``settings`` is
            provided this argument is ignored.
        settings: Optional logging settings providing level, renderer and
            scrub configuration.
    """
    scrub_fields: Iterable[str] | None = None
    json_output = False
    if settings is not None:
        level = settings.level
        scrub_fields = settings.scrub_fields
        json_output = settings.json_output

    if isinstance(level, str):
        level_value = getattr(logging, level.upper(), logging.INFO)
    elif isinstance(level, int):
        level_value = level
    else:
        level_value = logging.INFO

    logging.basicConfig(
        level=level_value,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )

    renderer: Any
    if json_output:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _structlog_scrubber(scrub_fields),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


__all__ = ["LoggerSink", "configure_logging", "get_logger"]
