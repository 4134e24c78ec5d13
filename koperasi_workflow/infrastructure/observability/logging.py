"""Structured JSON logging for workflow auditing"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from koperasi_workflow.config import settings

logger = logging.getLogger(__name__)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

    def __init__(self, *args: Any, service_name: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.service_name = service_name or settings.service_name

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = self.service_name


def setup_logging(level: Optional[str] = None, service_name: Optional[str] = None) -> None:
    """Configure structured JSON logging on the root logger"""
    root = logging.getLogger()
    root.setLevel(level or settings.log_level)

    # Remove existing handlers
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        "%(timestamp)s %(level)s %(name)s %(message)s",
        service_name=service_name,
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)


def log_transition(
    application_id: str,
    kind: str,
    action: str,
    actor_id: Optional[str],
    from_status: Optional[str],
    to_status: str,
    **fields: Any,
) -> None:
    """Log one committed transition for the audit trail"""
    logger.info(
        "Application transition",
        extra={
            "application_id": application_id,
            "kind": kind,
            "action": action,
            "actor_id": actor_id,
            "from_status": from_status,
            "to_status": to_status,
            **fields,
        },
    )
