"""Logging setup: rich terminal output, JSON lines, the ``hit`` level and fatal exits."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Callable, NoReturn, TextIO

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

# Above CRITICAL, so no --log-level setting can filter findings out.
HIT = 55
logging.addLevelName(HIT, "HIT")

LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_THEME = Theme({
    "logging.level.hit": "bold magenta",
    "logging.level.critical": "bold white on red",
})

_teardown: list[Callable[[], None]] = []

logger = logging.getLogger("ci_leak_scanner")


def level_name(levelno: int) -> str:
    if levelno == HIT:
        return "hit"
    if levelno >= logging.CRITICAL:
        return "fatal"
    return logging.getLevelName(levelno).lower()


class SinkHealth:
    """Counts write failures of the output handlers."""

    def __init__(self):
        self.failures = 0
        self.consecutive_failures = 0
        self.last_error: BaseException | None = None

    def failed(self, exc: BaseException | None) -> None:
        self.failures += 1
        self.consecutive_failures += 1
        self.last_error = exc

    def ok(self) -> None:
        self.consecutive_failures = 0

    def reset(self) -> None:
        self.failures = 0
        self.consecutive_failures = 0
        self.last_error = None


sink_health = SinkHealth()


class _TrackedHandlerMixin:
    def handleError(self, record: logging.LogRecord) -> None:
        sink_health.failed(sys.exc_info()[1])

    def emit(self, record: logging.LogRecord) -> None:
        before = sink_health.failures
        try:
            super().emit(record)
        except Exception:
            self.handleError(record)
        if sink_health.failures == before:
            sink_health.ok()


class JSONFormatter(logging.Formatter):
    """One JSON object per line: level, time, message and any structured fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "level": level_name(record.levelno),
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "message": record.getMessage(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            log_data.update(fields)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


class FieldsFormatter(logging.Formatter):
    """Human-readable message followed by ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return message
        pairs = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{message} {pairs}"


class JSONLinesHandler(_TrackedHandlerMixin, logging.StreamHandler):
    pass


class TerminalHandler(_TrackedHandlerMixin, RichHandler):
    pass


def setup_logging(
    level: str = "info",
    json_output: bool = False,
    logfile: str = "",
    color: bool | None = None,
    stream: TextIO | None = None,
) -> logging.Handler:
    """Configure the package logger and return the installed handler.

    ``color=None`` means automatic: colored on a terminal, plain when writing to a file.
    """
    levelno = LEVEL_NAMES.get(level.lower())
    if levelno is None:
        raise ValueError(f"unknown log level {level!r}, expected one of {sorted(LEVEL_NAMES)}")

    if logfile:
        stream = open(logfile, "a", encoding="utf-8")
        register_teardown(stream.close)
        if color is None:
            color = False
    elif stream is None:
        stream = sys.stderr

    if json_output:
        handler: logging.Handler = JSONLinesHandler(stream)
        handler.setFormatter(JSONFormatter())
    else:
        console = Console(
            file=stream,
            theme=_THEME,
            no_color=color is False,
            force_terminal=True if color else None,
            width=200 if logfile else None,
        )
        handler = TerminalHandler(console=console, show_path=False, markup=False, rich_tracebacks=False)
        handler.setFormatter(FieldsFormatter("%(message)s"))

    for old in list(logger.handlers):
        logger.removeHandler(old)
    logger.addHandler(handler)
    logger.setLevel(levelno)
    logger.propagate = False
    sink_health.reset()
    return handler


def log_hit(log: logging.Logger, fields: dict[str, str]) -> None:
    log.log(HIT, "HIT", extra={"fields": fields})


def register_teardown(callback: Callable[[], None]) -> None:
    """Register an action to run before the process exits on a fatal error."""
    _teardown.append(callback)


def run_teardown() -> None:
    while _teardown:
        callback = _teardown.pop()
        try:
            callback()
        except Exception as exc:
            logger.debug("Teardown callback failed: %s", exc)


def fatal(message: str, *args, **fields) -> NoReturn:
    """Log a ``fatal`` record, run teardown callbacks and exit with status 1."""
    logger.critical(message, *args, extra={"fields": fields} if fields else None)
    run_teardown()
    raise SystemExit(1)
