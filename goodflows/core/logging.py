"""
goodflows.core.logging — Optional JSON-lines logging.

The services log through named stdlib loggers under ``goodflows.*``
(``goodflows.findings``, ``goodflows.sessions``, ...).  Output is left
to the host application unless ``configure_logging`` is called, e.g.
from ``GoodFlows`` when ``Config.structured_logging`` is on::

    from goodflows.core.logging import configure_logging

    configure_logging(structured=True, level="DEBUG")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

#: LogRecord attributes that are not user-supplied ``extra=`` fields.
_RESERVED = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Emits ``ts``, ``level``, ``logger``, ``msg``, ``module``, ``func``
    and ``line``; any ``extra=`` fields passed to the logging call are
    merged in, and ``exception`` carries a formatted traceback.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S")
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                entry[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(
    structured: bool = False,
    level: str = "INFO",
    logger_name: str = "goodflows",
) -> logging.Logger:
    """Set the level of the ``goodflows`` logger tree.

    With ``structured=True`` a single stream handler using
    ``StructuredFormatter`` replaces any existing handlers and
    propagation to the root logger is switched off.
    """
    root = logging.getLogger(logger_name)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if structured:
        root.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(StructuredFormatter())
        root.addHandler(handler)
        root.propagate = False

    return root
