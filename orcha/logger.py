"""Leveled logging with contextual fields and an asynchronous writer."""

from __future__ import annotations

import atexit
import enum
import queue
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, ClassVar, Optional


class LogLevel(enum.IntEnum):
    """Severity of a log entry, ordered from least to most severe."""

    TRACE = 0
    DEBUG = 1
    INFO = 2
    WARNING = 3
    ERROR = 4
    FATAL = 5


_LEVEL_NAMES = {
    LogLevel.TRACE: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARN",
    LogLevel.ERROR: "ERROR",
    LogLevel.FATAL: "FATAL",
}

_STDERR_MARKERS = ("[ERROR]", "[WARN]", "[FATAL]")


def level_name(level: int) -> str:
    """Return the label printed for ``level``."""
    return _LEVEL_NAMES.get(level, "UNKNOWN")


@dataclass
class LogContext:
    """Contextual information attached to log entries."""

    correlation_id: Optional[str] = None
    component: Optional[str] = None
    tags: dict[str, str] = field(default_factory=dict)

    def with_correlation_id(self, correlation_id: str) -> LogContext:
        self.correlation_id = correlation_id
        return self

    def with_component(self, component: str) -> LogContext:
        self.component = component
        return self

    def with_tag(self, key: str, value: str) -> LogContext:
        self.tags[key] = value
        return self


def timestamp() -> str:
    """Local time as ``YYYY-MM-DD HH:MM:SS.mmm``."""
    now = datetime.now()
    return now.strftime("%Y-%m-%d %H:%M:%S") + f".{now.microsecond // 1000:03d}"


def format_entry(
    level: int,
    msg: str,
    ctx: Optional[LogContext] = None,
    source: Optional[str] = None,
) -> str:
    """Render one log line, terminated by a newline.

    ``source`` (``file:line``) is only shown for DEBUG and TRACE entries.
    """
    ctx = ctx or LogContext()
    parts = [f"[{timestamp()}]", f"[{level_name(level)}]"]
    if ctx.component is not None:
        parts.append(f"[{ctx.component}]")
    if ctx.correlation_id is not None:
        parts.append(f"[{ctx.correlation_id}]")
    parts.append(f" {msg}")
    if ctx.tags:
        rendered = ", ".join(f"{key}={value}" for key, value in sorted(ctx.tags.items()))
        parts.append(f" {{{rendered}}}")
    if level in (LogLevel.DEBUG, LogLevel.TRACE) and source:
        parts.append(f" [{source}]")
    parts.append("\n")
    return "".join(parts)


def _caller_source() -> Optional[str]:
    frame = sys._getframe(1)
    while frame is not None and frame.f_code.co_filename == __file__:
        frame = frame.f_back
    if frame is None:
        return None
    return f"{frame.f_code.co_filename}:{frame.f_lineno}"


class BaseLogger(ABC):
    """Common interface of all loggers, with one method per level."""

    def __init__(self, level: LogLevel = LogLevel.INFO) -> None:
        self._level = LogLevel(level)

    @property
    def level(self) -> LogLevel:
        """Minimum level that gets logged."""
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        self._level = LogLevel(value)

    @abstractmethod
    def log(self, level: LogLevel, msg: str, ctx: Optional[LogContext] = None) -> None:
        """Record ``msg`` at ``level``."""

    def trace(self, msg: str, ctx: Optional[LogContext] = None) -> None:
        self.log(LogLevel.TRACE, msg, ctx)

    def debug(self, msg: str, ctx: Optional[LogContext] = None) -> None:
        self.log(LogLevel.DEBUG, msg, ctx)

    def info(self, msg: str, ctx: Optional[LogContext] = None) -> None:
        self.log(LogLevel.INFO, msg, ctx)

    def warn(self, msg: str, ctx: Optional[LogContext] = None) -> None:
        self.log(LogLevel.WARNING, msg, ctx)

    def error(self, msg: str, ctx: Optional[LogContext] = None) -> None:
        self.log(LogLevel.ERROR, msg, ctx)

    def fatal(self, msg: str, ctx: Optional[LogContext] = None) -> None:
        self.log(LogLevel.FATAL, msg, ctx)

    def flush(self) -> None:
        """Write out buffered entries; the base class buffers nothing."""
        return None


class NullLogger(BaseLogger):
    """Logger that discards every entry."""

    def log(self, level: LogLevel, msg: str, ctx: Optional[LogContext] = None) -> None:
        return None


_STOP = object()


class Logger(BaseLogger):
    """Thread-safe logger writing from a background worker.

    Errors, warnings and fatal entries go to stderr, the rest to stdout;
    every entry is also appended to the log file once one is set.
    """

    _instance: ClassVar[Optional["Logger"]] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        stdout: Optional[IO[str]] = None,
        stderr: Optional[IO[str]] = None,
        level: LogLevel = LogLevel.INFO,
    ) -> None:
        super().__init__(level)
        self._stdout = stdout
        self._stderr = stderr
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._file: Optional[IO[str]] = None
        self._log_filename = ""
        self._running = True
        self._worker = threading.Thread(target=self._drain, name="orcha-logger", daemon=True)
        self._worker.start()

    @classmethod
    def instance(cls) -> "Logger":
        """Return the process-wide logger, creating it on first use."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
                atexit.register(cls._instance.shutdown)
            return cls._instance

    @property
    def log_filename(self) -> str:
        return self._log_filename

    def set_log_file(self, filename: str) -> None:
        """Append entries to ``filename``, creating its directory if needed."""
        with self._lock:
            if filename:
                Path(filename).parent.mkdir(parents=True, exist_ok=True)
            if self._file is not None:
                self._file.close()
                self._file = None
            self._log_filename = filename
            try:
                self._file = open(filename, "a", encoding="utf-8")
            except OSError:
                self._file = None

    def log(self, level: LogLevel, msg: str, ctx: Optional[LogContext] = None) -> None:
        if level < self.level or not self._running:
            return
        source = _caller_source() if level <= LogLevel.DEBUG else None
        self._queue.put(format_entry(level, msg, ctx, source))

    def flush(self) -> None:
        """Block until every queued entry has been written."""
        if self._running:
            self._queue.join()

    def shutdown(self) -> None:
        """Write out pending entries, stop the worker and close the file."""
        with self._lock:
            if not self._running:
                return
            self._running = False
        self._queue.put(_STOP)
        self._worker.join()
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self) -> "Logger":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _drain(self) -> None:
        while True:
            message = self._queue.get()
            try:
                if message is _STOP:
                    return
                self._write(message)
            finally:
                self._queue.task_done()

    def _write(self, message: str) -> None:
        if any(marker in message for marker in _STDERR_MARKERS):
            stream = self._stderr or sys.stderr
        else:
            stream = self._stdout or sys.stdout
        stream.write(message)
        stream.flush()
        with self._lock:
            if self._file is not None:
                self._file.write(message)
                self._file.flush()


class ScopedLogger:
    """Wraps a logger so that every entry carries a component name."""

    def __init__(self, logger: BaseLogger, component: str) -> None:
        self._logger = logger
        self._ctx = LogContext().with_component(component)

    @property
    def context(self) -> LogContext:
        return self._ctx

    def trace(self, msg: str) -> None:
        self._logger.log(LogLevel.TRACE, msg, self._ctx)

    def debug(self, msg: str) -> None:
        self._logger.log(LogLevel.DEBUG, msg, self._ctx)

    def info(self, msg: str) -> None:
        self._logger.log(LogLevel.INFO, msg, self._ctx)

    def warn(self, msg: str) -> None:
        self._logger.log(LogLevel.WARNING, msg, self._ctx)

    def error(self, msg: str) -> None:
        self._logger.log(LogLevel.ERROR, msg, self._ctx)

    def with_correlation_id(self, correlation_id: str) -> None:
        self._ctx.with_correlation_id(correlation_id)