"""Best-effort security side effects: alerts, credential revocation, confirmations"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Optional

from vcpay_gateway.config import settings
from vcpay_gateway.domain.exceptions import VerifierNotConfiguredError
from vcpay_gateway.domain.models import Account, PaymentRequest
from vcpay_gateway.domain.ports import CredentialVerifier, Notifier
from vcpay_gateway.infrastructure.observability.logging import log_security_action
from vcpay_gateway.infrastructure.observability.metrics import record_security_action, side_effect_latency_histogram

logger = logging.getLogger(__name__)

# Failures that another attempt cannot fix
NON_RETRYABLE = (VerifierNotConfiguredError,)


class SecurityActions:
    """
    Runs security side effects outside the authorization result.

    Every action gets a bounded timeout per try and exponential backoff
    between tries. Failures are logged and counted, never raised: a caller's
    PIN result must not depend on whether an email or a revocation went
    through.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        notifier: Notifier,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.verifier = verifier
        self.notifier = notifier
        self.timeout = timeout or settings.side_effect_timeout_seconds
        self.max_retries = max(1, max_retries if max_retries is not None else settings.side_effect_max_retries)
        self.backoff_base = settings.side_effect_backoff_base if backoff_base is None else backoff_base

    async def run_best_effort(
        self,
        action: str,
        call: Callable[[], Awaitable[None]],
        account_id: Optional[str] = None,
        consecutive_failures: Optional[int] = None,
    ) -> bool:
        """
        Run call with retries. Returns True on success, False after the last
        failed try.

        Retry strategy:
        - Exponential backoff: base, 2*base, 4*base, ...
        - Each try bounded by asyncio.wait_for(timeout)
        - Configuration errors are not retried
        """
        start = time.perf_counter()
        attempt = 0
        last_error: Optional[BaseException] = None

        with side_effect_latency_histogram.labels(action=action).time():
            while attempt < self.max_retries:
                try:
                    await asyncio.wait_for(call(), timeout=self.timeout)
                    record_security_action(action, "success")
                    log_security_action(
                        action=action,
                        outcome="success",
                        account_id=account_id,
                        duration_ms=(time.perf_counter() - start) * 1000,
                        consecutive_failures=consecutive_failures,
                    )
                    return True

                except NON_RETRYABLE as e:
                    last_error = e
                    break

                except Exception as e:
                    attempt += 1
                    last_error = e
                    if attempt >= self.max_retries:
                        break

                    backoff = self.backoff_base * (2 ** (attempt - 1))
                    logger.warning(
                        "Security action failed, retrying",
                        extra={"action": action, "attempt": attempt, "backoff_seconds": backoff, "error": str(e)},
                    )
                    await asyncio.sleep(backoff)

        record_security_action(action, "failure")
        log_security_action(
            action=action,
            outcome="failure",
            account_id=account_id,
            duration_ms=(time.perf_counter() - start) * 1000,
            consecutive_failures=consecutive_failures,
            error=repr(last_error),
        )
        return False

    async def send_security_alert(self, account: Account, payment_request: PaymentRequest, failure_count: int) -> bool:
        return await self.run_best_effort(
            "alert",
            lambda: self.notifier.send_security_alert(account, payment_request, failure_count),
            account_id=account.id,
            consecutive_failures=failure_count,
        )

    async def revoke_credential_and_notify(self, account: Account, failure_count: int) -> bool:
        """Revoke the account's credential, then tell the customer. Skipped when there is nothing to revoke."""
        if not account.credential_id:
            self._skip("revoke", account, failure_count, "account has no credential id")
            return False
        if not self.verifier.is_configured():
            self._skip("revoke", account, failure_count, "credential verifier not configured")
            return False

        revoked = await self.run_best_effort(
            "revoke",
            lambda: self.verifier.revoke(account.credential_id),
            account_id=account.id,
            consecutive_failures=failure_count,
        )
        if revoked:
            await self.run_best_effort(
                "revoked_notice",
                lambda: self.notifier.send_revoked(account),
                account_id=account.id,
                consecutive_failures=failure_count,
            )
        return revoked

    async def send_suspension_confirmation(self, account: Account, until: datetime) -> bool:
        return await self.run_best_effort(
            "suspend_notice",
            lambda: self.notifier.send_suspended(account, until),
            account_id=account.id,
        )

    def _skip(self, action: str, account: Account, failure_count: int, reason: str) -> None:
        record_security_action(action, "skipped")
        logger.warning(
            "Security action skipped",
            extra={
                "action": action,
                "account_id": account.id,
                "consecutive_failures": failure_count,
                "reason": reason,
            },
        )
