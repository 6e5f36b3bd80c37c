"""Structured logging setup: structlog events rendered as JSON lines through a stdlib queue.

Callers log with ``structlog.get_logger(__name__)``. Events pass through a bounded
``QueueHandler`` so a slow disk never stalls the dispatch loop; a ``QueueListener``
thread renders them into ``<log_dir>/<run_id>/autodispatch.jsonl`` (and optionally
stdout). Records that do not fit in the queue are counted and dropped.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import re
import sys
import threading
import time
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final

import structlog

from autodispatch.config.schema import is_sensitive_key

MASK: Final[str] = "***REDACTED***"
LOG_FILENAME: Final[str] = "autodispatch.jsonl"

_INLINE_SECRET = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    base_log_dir: Path | str = Path(".autodispatch/logs")
    logger_name: str = "autodispatch"
    level: int | str = "INFO"
    log_format: str = "json"
    queue_size: int = 4096
    log_filename: str = LOG_FILENAME
    log_to_stdout: bool = False


class _DroppingQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[Any]) -> None:
        super().__init__(log_queue)
        self._dropped_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The sink formatter renders; keep structlog's event dict intact across the queue.
        return logging.makeLogRecord(record.__dict__)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self.dropped += 1


@dataclass(eq=False)
class StructuredLoggingHandle:
    """One run's logging pipeline; shut it down to flush the file."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    _queue: queue.Queue[Any]
    _queue_handler: _DroppingQueueHandler
    _sinks: tuple[logging.Handler, ...]
    _listener: logging.handlers.QueueListener
    _lock: threading.Lock = field(default_factory=threading.Lock)
    is_shutdown: bool = False

    @property
    def run_log_dir(self) -> Path:
        return self.log_path.parent

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._lock:
            if self.is_shutdown:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            structlog.contextvars.unbind_contextvars("run_id")
            structlog.reset_defaults()
            self.is_shutdown = True


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> StructuredLoggingHandle:
    """Configure logging from an ``[observability]`` config section.

    ``log_dir`` wins over the section's ``log_dir``.
    """

    section = observability_config or {}
    level = section.get("log_level", "INFO")
    log_format = section.get("log_format", "json")
    base = log_dir if log_dir is not None else section.get("log_dir")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base if isinstance(base, (str, Path)) else ".autodispatch/logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_format=log_format if isinstance(log_format, str) else "json",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Start a run's logging pipeline, replacing any active one."""

    shutdown_logging()

    run_id = config.run_id.strip()
    if not run_id:
        raise ValueError("run_id must not be empty")
    if Path(run_id).name != run_id or Path(config.log_filename).name != config.log_filename:
        raise ValueError("run_id and log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    log_path = Path(config.base_log_dir) / run_id / config.log_filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_event,
    ]
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    sinks[0].setFormatter(_formatter(pre_chain, json_lines=True))
    if config.log_to_stdout:
        stdout = logging.StreamHandler(sys.stdout)
        stdout.setFormatter(_formatter(pre_chain, json_lines=config.log_format == "json"))
        sinks.append(stdout)

    logger = logging.getLogger(config.logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    log_queue: queue.Queue[Any] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _DroppingQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks)
    listener.start()
    logger.addHandler(queue_handler)
    structlog.contextvars.bind_contextvars(run_id=run_id)

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    global _active, _atexit_registered
    with _active_lock:
        _active = handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Flush and stop ``handle``, or the active pipeline when none is given."""

    global _active
    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields (e.g. ``item_id``) for events emitted inside the block."""

    with structlog.contextvars.bound_contextvars(**{k: v for k, v in fields.items() if v}):
        yield


def redact_event(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor: mask sensitive keys and credentials embedded in strings."""

    for key, value in list(event_dict.items()):
        if is_sensitive_key(key):
            event_dict[key] = MASK
        elif isinstance(value, str):
            masked = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", value)
            event_dict[key] = _BEARER.sub(f"Bearer {MASK}", masked)
    return event_dict


def _formatter(pre_chain: list[Any], *, json_lines: bool) -> logging.Formatter:
    renderer: Any = (
        structlog.processors.JSONRenderer(sort_keys=True, default=str)
        if json_lines
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    number = logging.getLevelName(level.strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return number


__all__ = [
    "LOG_FILENAME",
    "MASK",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "get_active_logging_handle",
    "redact_event",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
