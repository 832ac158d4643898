"""Structured logging singleton.

Configured from ``LOG_LEVEL`` / ``LOG_FORMAT`` at import so modules can log
before Settings loads; ``configure`` re-applies the ``[logging]`` section
once it has.  Loggers are not cached, so reconfiguring takes effect
everywhere.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _renderer(json_output: bool) -> structlog.types.Processor:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure(level_name: str = "INFO", *, json_output: bool = False) -> None:
    """(Re)configure the stdlib root logger and structlog's processor chain."""
    level = getattr(logging, level_name.upper(), logging.INFO)

    # Root logger first so structlog's filter_by_level sees the level
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)
    logging.getLogger().setLevel(level)

    processors: list[structlog.types.Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
    else:
        processors += [structlog.dev.set_exc_info, structlog.processors.StackInfoRenderer()]
    processors.append(_renderer(json_output))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


configure(
    os.environ.get("LOG_LEVEL", "INFO"),
    json_output=os.environ.get("LOG_FORMAT", "").lower() == "json",
)
logger: structlog.stdlib.BoundLogger = structlog.get_logger("sandpool")


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
