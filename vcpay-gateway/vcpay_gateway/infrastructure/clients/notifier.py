"""Notification service webhook client"""

from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlencode

import httpx

from vcpay_gateway.config import settings
from vcpay_gateway.domain.exceptions import NotificationError
from vcpay_gateway.domain.models import Account, PaymentRequest


class WebhookNotifier:
    """
    Posts customer notification events to the notification service.

    Email rendering and SMTP delivery live in that service; this client only
    hands over the event. Retries are the caller's concern.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        public_base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    def suspend_url(self, account: Account) -> str:
        """Link in the alert email that lets the customer suspend their credential"""
        query = urlencode({"credentialId": account.credential_id or "", "accountId": account.id})
        return f"{self.public_base_url}/bank/suspend-credential?{query}"

    async def send_security_alert(self, account: Account, payment_request: PaymentRequest, failure_count: int) -> None:
        await self._post_event(
            "security_alert",
            {
                "account_id": account.id,
                "email": account.email,
                "cardholder_name": account.cardholder_name,
                "payment_request_id": payment_request.id,
                "payment_amount": f"{payment_request.amount:.2f}",
                "merchant_id": payment_request.merchant_id,
                "consecutive_failures": failure_count,
                "suspend_url": self.suspend_url(account),
            },
        )

    async def send_revoked(self, account: Account) -> None:
        await self._post_event(
            "credential_revoked",
            {
                "account_id": account.id,
                "email": account.email,
                "cardholder_name": account.cardholder_name,
                "credential_id": account.credential_id,
            },
        )

    async def send_suspended(self, account: Account, until: datetime) -> None:
        await self._post_event(
            "credential_suspended",
            {
                "account_id": account.id,
                "email": account.email,
                "cardholder_name": account.cardholder_name,
                "credential_id": account.credential_id,
                "suspended_until": until.isoformat(),
            },
        )

    async def _post_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """
        Raises:
            NotificationError: On timeout, network failure, or non-2xx response
        """
        payload = {
            "event_type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            except httpx.TimeoutException as e:
                raise NotificationError(f"Notification service timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise NotificationError(f"Notification service error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise NotificationError(f"Notification service unreachable: {e}") from e
