"""Structured logging configuration.

Console output stays human-readable. When a log directory is configured the
same records are also written as JSON lines, with the tracked title, approval
and adapter a record concerns promoted to top-level fields.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pythonjsonlogger import jsonlogger

from patchwatch.config import settings

# Record attributes passed through ``extra=`` that log queries filter on
CONTEXT_FIELDS = ("entity_id", "approval_id", "adapter", "outcome")

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


class PatchwatchJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter for sweep and review logs."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_record[name] = value


def setup_logging(log_dir: Optional[str | Path] = None, level: Optional[str] = None) -> logging.Logger:
    """Configure the root logger.

    Args:
        log_dir: Directory for ``patchwatch.log`` and ``error.log`` (JSON lines).
                 If omitted, only the console handler is installed.
        level: Log level name, defaults to ``settings.log_level``
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_dir is None:
        return root_logger

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    json_formatter = PatchwatchJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    json_handler = logging.FileHandler(log_path / "patchwatch.log")
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    # Errors only, for alerting
    error_handler = logging.FileHandler(log_path / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    return root_logger
