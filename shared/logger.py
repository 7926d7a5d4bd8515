"""
objscope Structured Logger
===========================

:class:`ScopeLogger` wraps one stdlib logger per objscope component
(``objscope.elf``, ``objscope.macho``, ``objscope.router``...) and sends
its records to a Rich console handler on stderr and, optionally, to a
rotating log file written as plain text or JSON lines.

Every record is stamped with the component name and, inside
:meth:`ScopeLogger.operation`, the current operation.  Keyword arguments
passed to the log methods travel as structured fields and appear under
``"extra"`` in JSON output.

Decoders log at DEBUG level only, so a default INFO logger stays quiet
while parsing.  Raise the level through ``[global] log_level`` in the
configuration file to trace table decoding.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

from shared.config import get_config

_ROOT_NAME = "objscope"

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
    }
)

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(operation)s | %(message)s"


# ========================== Record stamping ================================


class _ComponentFilter(logging.Filter):
    """Attach ``component`` and ``operation`` attributes to every record.

    The operation lives in a :class:`~contextvars.ContextVar`, so threads
    and tasks sharing one component logger each see their own tag.
    """

    def __init__(self, component: str) -> None:
        super().__init__()
        self.component = component
        self.operation: ContextVar[str | None] = ContextVar(
            f"objscope.{component}.operation", default=None
        )

    def filter(self, record: logging.LogRecord) -> bool:
        record.component = self.component
        record.operation = self.operation.get() or "-"
        if not hasattr(record, "fields"):
            record.fields = {}
        return True


class _JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Output fields::

        {"timestamp": "...", "level": "DEBUG", "logger": "objscope.elf",
         "message": "...", "component": "elf", "operation": "parse",
         "extra": {"offset": 64}}

    ``operation`` and ``extra`` are omitted when unset.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "component": getattr(record, "component", None),
        }
        operation = getattr(record, "operation", "-")
        if operation != "-":
            entry["operation"] = operation
        fields = getattr(record, "fields", None)
        if fields:
            entry["extra"] = fields
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(level: int) -> RichHandler:
    return RichHandler(
        console=Console(theme=_LOG_THEME, stderr=True),
        level=level,
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )


def _file_handler(path: Path, level: int, json_logs: bool,
                  max_bytes: int, backup_count: int) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    if json_logs:
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    return handler


# ========================== ScopeLogger ====================================


class _Timer:
    """Elapsed-time probe yielded by :meth:`ScopeLogger.timed`."""

    __slots__ = ("start",)

    def __init__(self) -> None:
        self.start = time.perf_counter()

    @property
    def elapsed(self) -> float:
        return time.perf_counter() - self.start


class ScopeLogger:
    """Component-bound logger for objscope.

    Usage::

        log = ScopeLogger("elf", log_file="objscope.log", json_logs=True)
        with log.operation("parse"):
            log.debug("Decoded %d section headers", count, offset=shoff)

    Args:
        component:       Component name; the stdlib logger is ``objscope.<component>``.
        log_level:       Minimum severity (DEBUG, INFO, WARNING, ERROR).
        log_file:        Rotating log file path. ``None`` disables file logging.
        json_logs:       Write JSON lines instead of plain text to the file.
        max_bytes:       Log-file size that triggers rotation.
        backup_count:    Rotated files to keep.
        console_output:  Attach the Rich console handler.
    """

    def __init__(
        self,
        component: str,
        *,
        log_level: str = "INFO",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
        console_output: bool = True,
    ) -> None:
        level = logging.getLevelName(log_level.upper())
        if not isinstance(level, int):
            level = logging.INFO

        self._filter = _ComponentFilter(component)
        self._logger = logging.getLogger(f"{_ROOT_NAME}.{component}")
        self._logger.setLevel(level)
        self._logger.propagate = False

        for old in list(self._logger.handlers):
            self._logger.removeHandler(old)
            old.close()
        for old_filter in list(self._logger.filters):
            self._logger.removeFilter(old_filter)
        self._logger.addFilter(self._filter)

        if console_output:
            self._logger.addHandler(_console_handler(level))
        if log_file is not None:
            self._logger.addHandler(
                _file_handler(Path(log_file), level, json_logs, max_bytes, backup_count)
            )

    # ------------------------------------------------------------------ #
    #  Context
    # ------------------------------------------------------------------ #

    @contextmanager
    def operation(self, name: str) -> Iterator[ScopeLogger]:
        """Tag every record logged inside the block with ``operation=name``."""
        token = self._filter.operation.set(name)
        try:
            yield self
        finally:
            self._filter.operation.reset(token)

    @contextmanager
    def timed(self, label: str) -> Iterator[_Timer]:
        """Log start and completion of *label* at DEBUG, with elapsed seconds."""
        timer = _Timer()
        self.debug("Started: %s", label)
        try:
            yield timer
        finally:
            self.debug("Completed: %s (%.6f sec)", label, timer.elapsed)

    # ------------------------------------------------------------------ #
    #  Log methods
    # ------------------------------------------------------------------ #

    def _log(self, level: int, msg: str, args: tuple[Any, ...], fields: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, msg, *args, extra={"fields": fields}, stacklevel=3)

    def debug(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.DEBUG, msg, args, fields)

    def info(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.INFO, msg, args, fields)

    def warning(self, msg: str, *args: Any, **fields: Any) -> None:
        self._log(logging.WARNING, msg, args, fields)

    # ------------------------------------------------------------------ #
    #  Properties
    # ------------------------------------------------------------------ #

    @property
    def component(self) -> str:
        return self._filter.component

    @property
    def underlying(self) -> logging.Logger:
        """The stdlib :class:`logging.Logger` behind this facade."""
        return self._logger


_LOGGERS: dict[str, ScopeLogger] = {}


def get_logger(component: str) -> ScopeLogger:
    """Return the shared :class:`ScopeLogger` for *component*.

    The first call per component builds it from the ``[global]`` table of
    the cached configuration; later calls return the same instance.
    """
    if component not in _LOGGERS:
        settings = get_config().global_settings
        _LOGGERS[component] = ScopeLogger(
            component,
            log_level=settings.log_level,
            log_file=settings.log_file or None,
            json_logs=settings.log_json,
        )
    return _LOGGERS[component]
