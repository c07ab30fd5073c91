"""
Logging utilities.

Module loggers use logging.getLogger(__name__). Rule sync and retirement
audit lines go through StructuredLogger, one JSON object per line.
"""

import logging
import sys
from datetime import datetime
import json
from typing import Any, Dict, Optional

PACKAGE_LOGGER = "taskwatch"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO") -> None:
    """Attach a stdout handler to the package logger once."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)


class StructuredLogger:
    """JSON audit logger with optional bound context.

    Every line carries the component name plus any fields bound with
    ``bind``; per-call keyword fields override bound ones.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context = dict(context or {})

    def bind(self, **fields: Any) -> "StructuredLogger":
        """A logger for the same component with extra context fields."""
        return StructuredLogger(self.logger.name, {**self.context, **fields})

    def _emit(self, level: int, event: str, fields: Dict[str, Any]) -> None:
        if not self.logger.isEnabledFor(level):
            return
        record = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": logging.getLevelName(level),
            "component": self.logger.name,
            "event": event,
        }
        record.update(self.context)
        record.update(fields)
        # datetimes and ids fall back to str
        self.logger.log(level, json.dumps(record, default=str))

    def info(self, event: str, **fields: Any) -> None:
        self._emit(logging.INFO, event, fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._emit(logging.WARNING, event, fields)

    def error(self, event: str, **fields: Any) -> None:
        self._emit(logging.ERROR, event, fields)


def get_logger(component: str) -> StructuredLogger:
    """Structured audit logger for a component, e.g. ``taskwatch.audit.sync``."""
    return StructuredLogger(component)
