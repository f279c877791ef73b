"""Observability utilities for synchronization runs.

Combines phase timing for a single run with structured logging helpers so a
run can emit both operational timings and JSON-friendly logs from the same
module.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

logger = logging.getLogger(__name__)

__all__ = [
    "PhaseTimer",
    "RunMetrics",
    "JSONFormatter",
    "SyncLogger",
    "get_sync_logger",
    "setup_logging",
]

# Attributes every LogRecord has; anything else was passed through extra=
_RESERVED_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


@dataclass
class PhaseTimer:
    """Timer tracking a named run phase."""

    name: str
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None

    def stop(self) -> float:
        """Stop the timer and return the duration (seconds)."""
        self.end_time = time.monotonic()
        return self.duration

    @property
    def duration(self) -> float:
        end = self.end_time or time.monotonic()
        return end - self.start_time

    @property
    def running(self) -> bool:
        return self.end_time is None


class RunMetrics:
    """Phase timings and counters for one synchronization run."""

    def __init__(self, source: str, target: str, run_id: Optional[str] = None):
        self.source = source
        self.target = target
        self.run_id = run_id

        self._start_time = time.monotonic()
        self._end_time: Optional[float] = None
        self._phases: List[PhaseTimer] = []
        self._counters: Dict[str, int] = {}

    @contextmanager
    def time_phase(self, name: str) -> Generator[PhaseTimer, None, None]:
        """Context manager that tracks a phase duration."""
        timer = PhaseTimer(name=name)
        self._phases.append(timer)
        try:
            yield timer
        finally:
            timer.stop()
            logger.debug(
                "Phase %s for %s -> %s took %.3fs",
                name,
                self.source,
                self.target,
                timer.duration,
            )

    def count(self, name: str, value: int) -> None:
        self._counters[name] = self._counters.get(name, 0) + value

    def finish(self) -> None:
        """Mark the run as complete."""
        if self._end_time is None:
            self._end_time = time.monotonic()

    @property
    def total_duration(self) -> float:
        end = self._end_time or time.monotonic()
        return end - self._start_time

    @property
    def phase_seconds(self) -> Dict[str, float]:
        return {p.name: round(p.duration, 3) for p in self._phases}

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten timings and counters for structured logging."""
        result: Dict[str, Any] = {
            "sync_source": self.source,
            "sync_target": self.target,
            "total_duration_seconds": round(self.total_duration, 3),
        }
        if self.run_id:
            result["run_id"] = self.run_id

        for name, seconds in self.phase_seconds.items():
            result[f"phase_{name}_seconds"] = seconds

        for name, value in self._counters.items():
            result[f"rows_{name}"] = value

        return result


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as JSON.

    Useful for log aggregation systems like ELK, Splunk, or CloudWatch.

    Example output:
        {"timestamp": "2025-09-17T10:30:00.123Z", "level": "INFO",
         "logger": "staged_load.lib.merge", "message": "Merged 12 rows",
         "extra": {"run_id": "..."}}
    """

    def __init__(
        self,
        include_fields: Optional[List[str]] = None,
        exclude_fields: Optional[List[str]] = None,
    ):
        super().__init__()
        self.include_fields = include_fields or []
        self.exclude_fields = exclude_fields or []

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc)
            .isoformat()
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            payload["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        for field_name in self.include_fields:
            if hasattr(record, field_name):
                payload[field_name] = getattr(record, field_name)

        extra_attrs = {
            k: v
            for k, v in record.__dict__.items()
            if k not in _RESERVED_RECORD_ATTRS and k not in self.exclude_fields
        }
        if extra_attrs:
            payload["extra"] = extra_attrs

        return json.dumps(payload, default=str)


class SyncLogger:
    """Logger that attaches run context (source, target, run_id) to records.

    Example:
        log = get_sync_logger(__name__)
        log.set_context(source="raw_orders", target="fact_orders")
        log.info("Starting extraction")
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)
        self._context: Dict[str, Any] = {}

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    def set_context(self, **kwargs: Any) -> None:
        self._context.update(kwargs)

    def clear_context(self) -> None:
        self._context.clear()

    def _log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(self._context)
        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, *args, **kwargs)

    def metrics(self, metrics: RunMetrics) -> None:
        """Log the flattened timings of a finished run."""
        extra = metrics.to_log_dict()
        self._log(logging.INFO, "METRICS %s", json.dumps(extra), extra=extra)


def get_sync_logger(name: str) -> SyncLogger:
    return SyncLogger(name)


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for synchronization runs.

    Args:
        verbose: Enable debug-level logging
        json_format: Use JSON output format (for log aggregation)
        log_file: Optional file path to write logs to
    """
    level = logging.DEBUG if verbose else logging.INFO

    formatter = JSONFormatter() if json_format else logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # sqlglot is chatty at DEBUG when ibis compiles expressions
    logging.getLogger("sqlglot").setLevel(logging.WARNING)
