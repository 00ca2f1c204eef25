"""Unit tests for structured JSON log records"""

import json
import logging
from unittest.mock import patch
from vcpay_gateway.config import settings
from vcpay_gateway.infrastructure.observability.logging import CustomJsonFormatter


def _format(message: str, **extra) -> dict:
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    record = logging.LogRecord("vcpay", logging.WARNING, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return json.loads(formatter.format(record))


def test_log_record_fields():
    payload = _format("Payment attempt recorded", payment_request_id="pay_1")

    assert payload["message"] == "Payment attempt recorded"
    assert payload["level"] == "WARNING"
    assert payload["payment_request_id"] == "pay_1"
    assert payload["service"] == settings.service_name
    assert payload["timestamp"]


def test_service_name_follows_settings():
    with patch.object(settings, "service_name", "vcpay-gateway-eu"):
        payload = _format("Payment completed")

    assert payload["service"] == "vcpay-gateway-eu"
