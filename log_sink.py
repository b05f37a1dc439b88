"""
Log sink for the tracker.

The console gets the usual logging output. A LogSink additionally keeps an
append-only, timestamped record of everything logged (the on-device log.txt).
"""

import logging
import threading
from collections import deque
from datetime import datetime
from typing import Optional

import config

logger = logging.getLogger(__name__)


def timestamped(message, now=None):
    """Prefix a message with 'YYYY-MM-DD HH:MM:SS.mmm '."""
    now = now or datetime.now()
    return now.strftime("%Y-%m-%d %H:%M:%S.") + f"{now.microsecond // 1000:03d} " + message


class LogSink:
    """Fire-and-forget, append-only line recorder."""

    def record(self, line: str) -> None:
        raise NotImplementedError


class MemoryLogSink(LogSink):
    """Keeps recorded lines in memory (last `limit` lines)."""

    def __init__(self, limit=1000):
        self.lines = deque(maxlen=limit)

    def record(self, line: str) -> None:
        self.lines.append(line)


class FileLogSink(LogSink):
    """
    Appends lines to a log file.

    Args:
        path: Log file path
        truncate: Start from an empty file (the file is created either way)
    """

    def __init__(self, path, truncate=True):
        self.path = path
        self._lock = threading.Lock()
        try:
            with open(path, "w" if truncate else "a", encoding="utf-8"):
                pass
        except OSError as e:
            logger.warning(f"[LOG] Log file {path} could not be created: {e}")

    def record(self, line: str) -> None:
        with self._lock:
            try:
                with open(self.path, "a", encoding="utf-8") as handle:
                    handle.write(line.rstrip("\n") + "\n")
            except OSError as e:
                # A broken log file must never take the tracker down
                print(f"[LOG] Write to {self.path} failed: {e}")


class LogSinkHandler(logging.Handler):
    """Routes log records into a LogSink as timestamped lines."""

    def __init__(self, sink: LogSink, level=logging.NOTSET):
        super().__init__(level)
        self.sink = sink

    def emit(self, record):
        try:
            message = f"[{record.levelname}] {record.name}: {record.getMessage()}"
            self.sink.record(timestamped(message, datetime.fromtimestamp(record.created)))
        except Exception:
            self.handleError(record)


def setup_logging(sink: Optional[LogSink] = None):
    """
    Configure the root logger from LOGGING_CONFIG.

    Args:
        sink: Optional sink; defaults to a FileLogSink on LOGGING_CONFIG['log_file']

    Returns:
        The LogSink receiving log lines
    """
    logging.basicConfig(
        level=getattr(logging, config.LOGGING_CONFIG["level"].upper(), logging.INFO),
        format=config.LOGGING_CONFIG["format"],
    )
    if sink is None:
        sink = FileLogSink(
            config.LOGGING_CONFIG["log_file"],
            truncate=config.LOGGING_CONFIG["truncate_on_start"],
        )
    logging.getLogger().addHandler(LogSinkHandler(sink))
    return sink
