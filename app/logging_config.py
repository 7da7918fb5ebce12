"""
Structured JSON logging.

Every log line is a single JSON object on stdout so that log shippers can
index fields like `reference`, `account_id` or `request_id` without regex
parsing. Modules log through the standard library:

    logger = logging.getLogger(__name__)
    logger.info("Transfer completed", extra={"reference": ref})

and setup_logging() is called once from the application lifespan.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import jsonlogger

from app.config import settings


class LedgerJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps timestamp, level and service name."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.APP_NAME


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger with a single JSON stdout handler."""
    root = logging.getLogger()
    root.setLevel(level or settings.LOG_LEVEL)

    # Replace whatever handlers uvicorn or a previous call installed
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(LedgerJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    root.addHandler(handler)
