"""Logging configuration for Statecraft.

Two loggers carry everything:
- "statecraft" (and the package loggers under mcp_system_state): console
  plus a rotating file capturing DEBUG and above
- "statecraft.perf": one line per timed probe, mutation or tool call,
  written to its own rotating file

Environment Variables:
    STATECRAFT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    STATECRAFT_LOG_FILE: Path to log file (default: ~/.statecraft/statecraft.log)
    STATECRAFT_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    STATECRAFT_LOG_BACKUPS: Number of rotated files to keep (default: 5)

Usage:
    from mcp_system_state.utils.logging_config import setup_logging, timed

    setup_logging()  # once, from an entry point

    @timed("reconcile")
    def reconcile(self, resources):
        ...

    with timed_section_sync("apply", subject="mali-firmware", attempt=2):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional

perf_logger = logging.getLogger("statecraft.perf")
main_logger = logging.getLogger("statecraft")

APP_LOGGERS = ("statecraft", "mcp_system_state")

MAIN_FORMAT = "%(asctime)s.%(msecs)03d | %(name)-25s | %(levelname)-7s | %(message)s"
PERF_FORMAT = "%(asctime)s.%(msecs)03d | PERF | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


@dataclass
class LogSettings:
    """Logging options read from STATECRAFT_LOG_* variables."""
    level: int = logging.INFO
    file: Path = Path.home() / ".statecraft" / "statecraft.log"
    max_bytes: int = 10 * 1024 * 1024
    backups: int = 5

    @property
    def perf_file(self) -> Path:
        return self.file.parent / "statecraft-perf.log"

    @classmethod
    def from_env(cls) -> "LogSettings":
        settings = cls()
        level_name = os.environ.get("STATECRAFT_LOG_LEVEL", "INFO").upper()
        settings.level = getattr(logging, level_name, logging.INFO)
        if os.environ.get("STATECRAFT_LOG_FILE"):
            settings.file = Path(os.environ["STATECRAFT_LOG_FILE"]).expanduser()
        try:
            settings.max_bytes = int(os.environ.get("STATECRAFT_LOG_MAX_SIZE", "10")) * 1024 * 1024
            settings.backups = int(os.environ.get("STATECRAFT_LOG_BACKUPS", "5"))
        except ValueError:
            main_logger.warning("Ignoring non-numeric STATECRAFT_LOG_MAX_SIZE/BACKUPS")
        return settings


def _rotating_handler(path: Path, settings: LogSettings, fmt: str) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.max_bytes,
        backupCount=settings.backups,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(fmt, datefmt=DATE_FORMAT))
    return handler


def setup_logging(level: Optional[int] = None, console: bool = True) -> Path:
    """Attach console and rotating file handlers to the application loggers.

    The console follows `level` (or STATECRAFT_LOG_LEVEL); the files always
    capture DEBUG. The MCP server passes console=False because stdout and
    stderr belong to the protocol.

    Calling it again is a no-op. Returns the main log file path.
    """
    global _configured
    settings = LogSettings.from_env()
    if level is not None:
        settings.level = level
    if _configured:
        return settings.file

    settings.file.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [_rotating_handler(settings.file, settings, MAIN_FORMAT)]
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(settings.level)
        console_handler.setFormatter(logging.Formatter(MAIN_FORMAT, datefmt=DATE_FORMAT))
        handlers.append(console_handler)

    for name in APP_LOGGERS:
        app_logger = logging.getLogger(name)
        app_logger.setLevel(logging.DEBUG)
        for handler in handlers:
            app_logger.addHandler(handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(_rotating_handler(settings.perf_file, settings, PERF_FORMAT))
    perf_logger.propagate = False

    _configured = True
    main_logger.info(
        f"Logging initialized: level={logging.getLevelName(settings.level)}, "
        f"file={settings.file}, perf={settings.perf_file}"
    )
    return settings.file


class _Timer:
    """One timed operation, reported to the perf log and global_stats."""

    def __init__(self, operation: str, subject: Optional[str] = None, **extra):
        self.operation = operation
        self.subject = subject
        self.extra = extra
        self.start = time.perf_counter()

    def _line(self, elapsed: float, outcome: str) -> str:
        line = f"{self.operation:20s} | {self.subject or 'N/A':30s} | {elapsed:8.2f}ms | {outcome}"
        if self.extra:
            line += " | " + " | ".join(f"{k}={v}" for k, v in self.extra.items())
        return line

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start) * 1000

    def ok(self) -> None:
        elapsed = self.elapsed_ms()
        global_stats.record(self.operation, elapsed)
        perf_logger.info(self._line(elapsed, "OK"))

    def failed(self, error: BaseException) -> None:
        perf_logger.warning(self._line(self.elapsed_ms(), f"FAIL: {error}"))


def timed(operation: str, subject: Optional[str] = None):
    """Decorator to log execution time of sync or async functions.

    Failures are logged and re-raised; only successful calls count
    towards global_stats.
    """
    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                async with timed_section(operation, subject):
                    return await func(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with timed_section_sync(operation, subject):
                return func(*args, **kwargs)

        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, subject: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("tool:reconcile", subject="rock5b"):
            ...
    """
    timer = _Timer(operation, subject, **extra)
    try:
        yield timer
    except Exception as e:
        timer.failed(e)
        raise
    timer.ok()


@contextmanager
def timed_section_sync(operation: str, subject: Optional[str] = None, **extra):
    """Context manager for timing code sections.

    Args:
        operation: Name of the operation
        subject: Resource or other identifier
        **extra: Additional context to log
    """
    timer = _Timer(operation, subject, **extra)
    try:
        yield timer
    except Exception as e:
        timer.failed(e)
        raise
    timer.ok()


class PerfStats:
    """Aggregate timings per operation."""

    def __init__(self):
        self._data: dict[str, list[float]] = {}

    def record(self, operation: str, duration_ms: float) -> None:
        self._data.setdefault(operation, []).append(duration_ms)

    def count(self, operation: str) -> int:
        return len(self._data.get(operation, []))

    def summary(self) -> str:
        """One line per operation: count, average, min and max in ms."""
        lines = ["Performance Summary", "=" * 60]
        for op, times in sorted(self._data.items()):
            if times:
                lines.append(
                    f"{op:20s} | count={len(times):4d} | avg={sum(times) / len(times):8.2f}ms | "
                    f"min={min(times):8.2f}ms | max={max(times):8.2f}ms"
                )
        return "\n".join(lines)

    def clear(self) -> None:
        self._data.clear()


global_stats = PerfStats()
