"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger

from bank_sync_gateway.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # JSON handler for stdout
    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s"
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_sync_outcome(
    connection_id: str,
    provider: str,
    status: str,
    duration_ms: float,
    manual_sync: bool,
    error: Optional[str] = None,
) -> None:
    """Log structured sync outcome for analysis"""
    level = logging.INFO if status == "success" else logging.WARNING
    logging.log(
        level,
        "Connection sync completed",
        extra={
            "connection_id": connection_id,
            "provider": provider,
            "step": "sync_complete",
            "sync_outcome": status,
            "manual_sync": manual_sync,
            "duration_ms": duration_ms,
            "error": error,
        },
    )


def log_task_outcome(task_id: str, run_id: str, outcome: str, attempt: int, error: Optional[str] = None) -> None:
    """Log the end of one task attempt"""
    level = logging.INFO if outcome == "completed" else logging.WARNING if outcome == "retrying" else logging.ERROR
    logging.log(
        level,
        f"Task {task_id} {outcome}",
        extra={"task_id": task_id, "run_id": run_id, "attempt": attempt, "task_outcome": outcome, "error": error},
    )
