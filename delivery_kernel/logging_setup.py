"""
Structured logging for the delivery kernel.

Subsystems attach context through `extra={"kernel_<name>": ...}` (agent,
policy, project, review, phase). Both formats surface that context:

- "json": one object per line, context under "context" without the prefix
- "text": the usual line followed by `name=value` pairs

Selected by KernelConfig.log_format / DELIVERY_KERNEL_LOG_FORMAT.
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Dict, Union

EXTRA_PREFIX = "kernel_"
LOG_FORMATS = ("json", "text")


def kernel_context(record: logging.LogRecord) -> Dict[str, object]:
    """The kernel_* extras of a record, keyed without the prefix."""
    return {
        key[len(EXTRA_PREFIX):]: value
        for key, value in record.__dict__.items()
        if key.startswith(EXTRA_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = kernel_context(record)
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plain text line with the kernel context appended as name=value pairs."""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = kernel_context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        first, sep, rest = line.partition("\n")
        return f"{first} [{pairs}]{sep}{rest}"


class _KernelHandler(logging.StreamHandler):
    """Marker type so repeated setup replaces only what it installed."""


def setup_logging(log_format: str = "text", level: Union[int, str] = logging.INFO) -> logging.Handler:
    """
    Install the kernel's stderr handler on the root logger.

    Calling it again swaps the previous kernel handler; handlers installed by
    anyone else are left alone.
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log format {log_format!r}; expected one of {LOG_FORMATS}")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level {level!r}")
        level = resolved

    root = logging.getLogger()
    for existing in [h for h in root.handlers if isinstance(h, _KernelHandler)]:
        root.removeHandler(existing)

    handler = _KernelHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else ContextTextFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    return handler
