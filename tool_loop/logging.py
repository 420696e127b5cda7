"""structlog setup for tool-loop."""

import logging
import sys
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from tool_loop.config import Config, LoggingConfig, get_config

LogSink = Callable[[str], None]

_system_log_sink: LogSink | None = None


class _SinkWriter:
    """File-like object that hands complete lines to a sink callback."""

    def __init__(self, sink: LogSink):
        self._sink = sink
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._sink(self._pending)
            self._pending = ""


def set_system_log_sink(sink: LogSink | None) -> None:
    """Route log lines to ``sink`` (e.g. a UI panel) instead of stderr.

    Takes effect on the next ``configure_logging`` call.
    """
    global _system_log_sink
    _system_log_sink = sink


def _resolve_settings(config: Config | LoggingConfig | None) -> LoggingConfig:
    if config is None:
        return get_config().logging
    if isinstance(config, LoggingConfig):
        return config
    return config.logging


def configure_logging(config: Config | LoggingConfig | None = None) -> None:
    """Configure structlog from the full config or just its logging section.

    ``format: json`` renders one JSON object per line; anything else uses the
    console renderer.
    """
    settings = _resolve_settings(config)
    log_level = logging.getLevelName(settings.level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    renderer: Any = (
        structlog.processors.JSONRenderer()
        if settings.format.lower() == "json"
        else structlog.dev.ConsoleRenderer()
    )
    output = _SinkWriter(_system_log_sink) if _system_log_sink is not None else sys.stderr

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )


@contextmanager
def task_context(**values: Any) -> Iterator[None]:
    """Attach ``values`` to every log line emitted inside the block.

    Uses contextvars, so concurrent tasks each keep their own binding.
    """
    with structlog.contextvars.bound_contextvars(**values):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structlog logger, optionally named after its module."""
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
