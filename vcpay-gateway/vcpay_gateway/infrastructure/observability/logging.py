"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pythonjsonlogger import jsonlogger
from vcpay_gateway.config import settings


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


def log_attempt(
    payment_request_id: str,
    attempt_id: str,
    status: str,
    amount: Any,
    account_id: Optional[str] = None,
    error_reason: Optional[str] = None,
) -> None:
    """Log one ledger append for audit and analysis"""
    level = logging.INFO if status == "completed" else logging.WARNING
    logging.log(
        level,
        "Payment attempt recorded",
        extra={
            "payment_request_id": payment_request_id,
            "attempt_id": attempt_id,
            "step": "attempt_recorded",
            "attempt_status": status,
            "amount": str(amount),
            "account_id": account_id,
            "error_reason": error_reason,
        },
    )


def log_security_action(
    action: str,
    outcome: str,
    account_id: Optional[str],
    duration_ms: float,
    consecutive_failures: Optional[int] = None,
    error: Optional[str] = None,
) -> None:
    """Log the outcome of a security side effect (alert, revoke, suspend)"""
    level = logging.INFO if outcome == "success" else logging.ERROR
    logging.log(
        level,
        "Security action finished",
        extra={
            "step": "security_action",
            "action": action,
            "outcome": outcome,
            "account_id": account_id,
            "consecutive_failures": consecutive_failures,
            "duration_ms": duration_ms,
            "error": error,
        },
    )
