"""Logging configuration and price ledger event emission."""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import date, datetime
from typing import Any

from pythonjsonlogger import jsonlogger
from rich.logging import RichHandler

EVENT_LOGGER = "pricebuddy.event"

# Third party loggers that flood DEBUG output.
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter stamping every record with the service name.

    Ids and timestamps passed through ``extra`` are rendered as strings.
    """

    service_name = "pricebuddy"

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("timestamp"):
            log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = str(log_record.get("level") or record.levelname).upper()
        log_record.setdefault("service", self.service_name)
        for key, value in log_record.items():
            if isinstance(value, uuid.UUID):
                log_record[key] = str(value)
            elif isinstance(value, datetime | date):
                log_record[key] = value.isoformat()


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    service_name: str = "pricebuddy",
) -> None:
    """Configure the root logger with JSON or rich text output.

    JSON goes to stdout for log shippers; ``text`` is meant for a terminal.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if log_format.lower() == "json":
        log_handler = logging.StreamHandler(sys.stdout)
        formatter = CustomJsonFormatter(  # type: ignore[no-untyped-call]
            "%(timestamp)s %(level)s %(name)s %(message)s", json_ensure_ascii=False
        )
        formatter.service_name = service_name
        log_handler.setFormatter(formatter)
        root_logger.addHandler(log_handler)
    else:
        root_logger.addHandler(
            RichHandler(rich_tracebacks=True, markup=False, show_time=True, show_path=False)
        )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def log_event(event_type: str, **fields: Any) -> None:
    """Log a price ledger event (alert sent, alert suppressed, batch finished)."""
    logging.getLogger(EVENT_LOGGER).info(
        f"Event: {event_type}",
        extra={"event_type": event_type, "event_data": fields},
    )


__all__ = ["EVENT_LOGGER", "CustomJsonFormatter", "log_event", "setup_logging"]
