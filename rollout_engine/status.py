from abc import ABC, abstractmethod
from enum import Enum

from .logger import get_logger


class Status(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class StatusLogger(ABC):
    """Sink for one status line per in-flight machine"""

    @abstractmethod
    def log_status(self, line_index, status, message):
        """Record the latest status of one line"""


class LoggingStatusLogger(StatusLogger):
    """Writes every status change as a log record and keeps the latest per line"""

    LEVELS = {
        Status.FAILURE: "warning",
    }

    def __init__(self, name="status"):
        self.logger = get_logger(name)
        self.lines = {}

    def log_status(self, line_index, status, message):
        self.lines[line_index] = (status, message)
        log = getattr(self.logger, self.LEVELS.get(status, "info"))
        log(f"[{line_index:02d}] {getattr(status, 'value', status)}: {message}")


class StatusLines:
    """Hands out line indexes so every worker writes to its own line"""

    def __init__(self, sink):
        self.sink = sink
        self._next = 0

    def line(self):
        index = self._next
        self._next += 1
        return StatusLine(self.sink, index)


class StatusLine:
    def __init__(self, sink, index):
        self.sink = sink
        self.index = index

    def running(self, message):
        self.sink.log_status(self.index, Status.RUNNING, message)

    def success(self, message):
        self.sink.log_status(self.index, Status.SUCCESS, message)

    def failure(self, message):
        self.sink.log_status(self.index, Status.FAILURE, message)

    def skipped(self, message):
        self.sink.log_status(self.index, Status.SKIPPED, message)
