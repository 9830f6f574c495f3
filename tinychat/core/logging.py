"""
tinychat :: Logging

Terminal lines for the chat REPL, JSON lines for servers and log files.

A turn record carries its turn id and key=value fields:

    12:00:01 INFO    Turn finished [turn=3] finish_reason=stop output_tokens=12
    {"level": "INFO", "message": "Turn finished", "turn_id": 3, "finish_reason": "stop", ...}

INL - 2025
"""

import json
import logging
import sys
import time
from typing import Any, Dict, Optional

ROOT_LOGGER = "tinychat"

# Finish reasons that end a turn normally
CLEAN_FINISH = ("stop", "length", "empty")


def _turn_fields(record: logging.LogRecord) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    turn_id = getattr(record, "turn_id", None)
    if turn_id is not None:
        fields["turn_id"] = turn_id
    fields.update(getattr(record, "extra_data", None) or {})
    return fields


class JSONFormatter(logging.Formatter):
    """One JSON object per record, turn fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_turn_fields(record))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanFormatter(logging.Formatter):
    """Terminal formatter. Colors only when the stream is a tty."""

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }

    def __init__(self, color: Optional[bool] = None):
        super().__init__()
        self.color = sys.stderr.isatty() if color is None else color

    def format(self, record: logging.LogRecord) -> str:
        level = f"{record.levelname:<7}"
        if self.color and record.levelname in self.LEVEL_COLORS:
            level = f"{self.LEVEL_COLORS[record.levelname]}{level}\033[0m"

        parts = [self.formatTime(record, "%H:%M:%S"), level, record.getMessage()]
        fields = _turn_fields(record)
        turn_id = fields.pop("turn_id", None)
        if turn_id is not None:
            parts.append(f"[turn={turn_id}]")
        parts.extend(f"{k}={v}" for k, v in fields.items())

        line = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the "tinychat" logger tree.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_output: JSON lines on stderr instead of terminal lines
        log_file: also append JSON lines to this file
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(JSONFormatter() if json_output else HumanFormatter())
    root.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        root.addHandler(file_handler)

    return root


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    return logging.getLogger(name)


class TurnLogger:
    """
    Brackets one turn: every record it emits carries the turn id.

        with TurnLogger(turn_id, logger) as tlog:
            ...
            tlog.finish("stop", output_tokens=len(output))

    Entering logs "Turn started" at DEBUG. Leaving logs a single
    "Turn finished" line with the finish reason, the recorded counts and
    the elapsed time: INFO for a clean finish, WARNING otherwise. An
    exception escaping the block is logged with its traceback and re-raised.
    """

    def __init__(self, turn_id: int, logger: Optional[logging.Logger] = None):
        self.turn_id = turn_id
        self.logger = logger or get_logger()
        self.start_time = time.perf_counter()
        self.finish_reason: Optional[str] = None
        self.summary: Dict[str, Any] = {}

    def _log(self, level: int, msg: str, fields: Dict[str, Any], exc_info=None):
        self.logger.log(
            level, msg, exc_info=exc_info,
            extra={"turn_id": self.turn_id, "extra_data": fields},
        )

    def info(self, msg: str, **fields):
        self._log(logging.INFO, msg, fields)

    def warning(self, msg: str, **fields):
        self._log(logging.WARNING, msg, fields)

    def error(self, msg: str, exc_info=None, **fields):
        self._log(logging.ERROR, msg, fields, exc_info=exc_info)

    def finish(self, finish_reason: str, **counts):
        """Record how the turn ended; logged when the block exits."""
        self.finish_reason = finish_reason
        self.summary.update(counts)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000

    def __enter__(self) -> "TurnLogger":
        self.start_time = time.perf_counter()
        self._log(logging.DEBUG, "Turn started", {})
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        fields = {"finish_reason": self.finish_reason or "error"}
        fields.update(self.summary)
        fields["elapsed_ms"] = round(self.elapsed_ms(), 1)

        if exc is not None:
            self._log(logging.ERROR, "Turn raised", fields, exc_info=(exc_type, exc, tb))
        elif self.finish_reason in CLEAN_FINISH:
            self._log(logging.INFO, "Turn finished", fields)
        else:
            self._log(logging.WARNING, "Turn finished", fields)
        return False
