"""Logging setup and load-cycle profiling.

Combines structured (JSON) logging configuration with a small timer used to
emit "(N.NNs elapsed)" profiling messages through a load cycle.
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

__all__ = [
    "JSONFormatter",
    "PhaseTimer",
    "CycleProfiler",
    "setup_logging",
]

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Formatter that renders log records as JSON.

    Useful for log aggregation systems like ELK, Splunk, or CloudWatch.

    Example output:
        {"timestamp": "2025-01-15T10:30:00.123Z", "level": "INFO",
         "logger": "shardloader.lib.loader", "message": "Load complete"}
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
            if k not in _RESERVED_ATTRS and k not in self.exclude_fields
        }
        if extra_attrs:
            payload["extra"] = extra_attrs

        return json.dumps(payload, default=str)


@dataclass
class PhaseTimer:
    """Timer tracking a named phase of a load cycle."""

    name: str
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None

    def stop(self) -> float:
        self.end_time = time.time()
        return self.duration

    @property
    def duration(self) -> float:
        end = self.end_time or time.time()
        return end - self.start_time


class CycleProfiler:
    """Elapsed-time profiling for one load cycle.

    Every message is prefixed with the time since the cycle started, and
    named phases are collected for the cycle summary.
    """

    def __init__(self, logger: logging.Logger, label: str):
        self._logger = logger
        self.label = label
        self._start = time.time()
        self.phases: List[PhaseTimer] = []

    @property
    def elapsed(self) -> float:
        return time.time() - self._start

    def profile(self, message: str, *args: Any) -> None:
        self._logger.info(
            "%s (%.2fs elapsed) " + message, self.label, self.elapsed, *args
        )

    @contextmanager
    def phase(self, name: str) -> Generator[PhaseTimer, None, None]:
        timer = PhaseTimer(name=name)
        self.phases.append(timer)
        try:
            yield timer
        finally:
            timer.stop()
            self.profile("%s complete", name)

    def summary(self) -> Dict[str, Any]:
        return {
            "total_seconds": round(self.elapsed, 3),
            "phases": {p.name: round(p.duration, 3) for p in self.phases},
        }


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Configure the root logger with optional JSON formatting.

    Args:
        verbose: Enable debug-level logging (includes issued SQL)
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

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # boto is chatty at DEBUG
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
