"""
Authorization orchestrator.

Public entry points for the payment pipeline: create a request, run the
proof exchange, verify the PIN and debit, plus reporting, retention and
credential suspension. Drives the pure state machine, persists through the
repositories, consults the security threshold engine and dispatches
best-effort side effects.

Every transition of a payment request runs inside that request's keyed
lock; balance check, debit, ledger append and commit run inside the
account's keyed lock. Ledger rows are committed before any outcome is
returned or raised.
"""

import asyncio
import hmac
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Union

from sqlalchemy.orm import Session

from vcpay_gateway.config import settings
from vcpay_gateway.domain import state_machine
from vcpay_gateway.domain.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidCredentialError,
    InvalidPINError,
    InvalidStateError,
    PaymentExpiredError,
    PaymentNotFoundError,
    PaymentValidationError,
    VerifierAPIError,
)
from vcpay_gateway.domain.models import (
    Account,
    AttemptFilter,
    AttemptRecord,
    AttemptStatus,
    CleanupResult,
    CompletionRecord,
    PaymentListing,
    PaymentRequest,
    PaymentStatus,
    ProofExchange,
    SuspensionResult,
)
from vcpay_gateway.domain.ports import AccountStore, CredentialVerifier, Notifier
from vcpay_gateway.domain.reporting import merchant_statistics, payment_statistics
from vcpay_gateway.domain.security import SecurityDecision, SecurityPolicy, SecurityThresholdEngine
from vcpay_gateway.infrastructure.database.repositories import (
    AttemptLedger,
    PaymentRequestRepository,
    SqlAccountStore,
)
from vcpay_gateway.infrastructure.observability.metrics import payment_request_counter, record_transition
from vcpay_gateway.services.security_actions import SecurityActions
from vcpay_gateway.utils.date_utils import utcnow
from vcpay_gateway.utils.locks import KeyedLock, account_locks, payment_request_locks

logger = logging.getLogger(__name__)

Scheduler = Callable[..., Any]

_background_tasks: Set[asyncio.Task] = set()


def spawn_background(func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    """Default scheduler: run a coroutine function as a detached asyncio task"""
    task = asyncio.get_running_loop().create_task(func(*args, **kwargs))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


class PaymentOrchestrator:
    """Entry points of the payment authorization pipeline"""

    def __init__(
        self,
        db: Session,
        verifier: CredentialVerifier,
        notifier: Notifier,
        account_store: Optional[AccountStore] = None,
        policy: Optional[SecurityPolicy] = None,
        actions: Optional[SecurityActions] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Callable[[], datetime] = utcnow,
        ttl_minutes: Optional[int] = None,
        retention: Optional[timedelta] = None,
        suspension_days: Optional[int] = None,
        request_locks: KeyedLock = payment_request_locks,
        account_locks: KeyedLock = account_locks,
    ):
        self.db = db
        self.verifier = verifier
        self.notifier = notifier
        self.requests = PaymentRequestRepository(db)
        self.ledger = AttemptLedger(db)
        self.accounts = account_store or SqlAccountStore(db)
        self.policy = policy or SecurityPolicy.from_settings(settings)
        self.engine = SecurityThresholdEngine(self.ledger, self.policy)
        self.actions = actions or SecurityActions(verifier, notifier)
        self.schedule = scheduler or spawn_background
        self.clock = clock
        self.ttl_minutes = ttl_minutes or settings.payment_request_ttl_minutes
        self.retention = retention or timedelta(hours=settings.retention_hours)
        self.suspension_days = suspension_days or settings.credential_suspension_days
        self.request_locks = request_locks
        self.account_locks = account_locks

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_payment_request(
        self,
        amount: Union[Decimal, int, float, str],
        merchant_id: str,
        description: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Raises:
            PaymentValidationError: amount <= 0 or blank merchant id (nothing persisted)
        """
        request = state_machine.new_payment_request(
            amount, merchant_id, description, self.clock(), ttl_minutes=self.ttl_minutes
        )
        self.requests.add(request)
        self.db.commit()

        payment_request_counter.inc()
        logger.info(
            "Payment request created",
            extra={
                "payment_request_id": request.id,
                "merchant_id": request.merchant_id,
                "amount": str(request.amount),
                "expires_at": request.expires_at.isoformat(),
            },
        )
        return request

    async def begin_proof_exchange(self, payment_request_id: str) -> ProofExchange:
        """
        Ask the verifier for a proof request and wallet links.

        A missing or failing verifier does not fail the payment: the bare
        request comes back with a warning and can still be cancelled or
        left to expire.
        """
        async with self.request_locks.hold(payment_request_id):
            request = self._load(payment_request_id)
            request = self._expire_if_due(request)
            if request.status is not PaymentStatus.PENDING:
                self.db.commit()
                raise InvalidStateError(
                    f"Payment request is {request.status.value}; proof can only be requested while pending",
                    current_status=request.status.value,
                )

            if not self.verifier.is_configured():
                self.db.commit()
                logger.warning(
                    "Credential verifier not configured, skipping proof exchange",
                    extra={"payment_request_id": request.id},
                )
                return ProofExchange(request, warning="Credential verifier not configured; proof exchange unavailable")

            warning = None
            try:
                proof_reference = await self.verifier.request_proof()
            except VerifierAPIError as e:
                self.db.commit()
                logger.warning(
                    "Proof request failed", extra={"payment_request_id": request.id, "error": str(e)}
                )
                return ProofExchange(request, warning=f"Proof request failed: {e}")

            share = None
            try:
                share = await self.verifier.share_proof(proof_reference)
            except VerifierAPIError as e:
                warning = f"Proof share links unavailable: {e}"
                logger.warning(
                    "Proof share failed", extra={"payment_request_id": request.id, "error": str(e)}
                )

            request = state_machine.attach_proof(request, proof_reference, share, self.clock())
            self.requests.save(request)
            self.db.commit()

            logger.info(
                "Proof exchange started",
                extra={"payment_request_id": request.id, "proof_reference": proof_reference},
            )
            return ProofExchange(request, warning=warning)

    async def get_status(self, payment_request_id: str) -> PaymentRequest:
        """Current view with lazy expiry applied"""
        async with self.request_locks.hold(payment_request_id):
            request = self._expire_if_due(self._load(payment_request_id))
            self.db.commit()
            return request

    async def poll_and_advance(self, payment_request_id: str) -> PaymentRequest:
        """
        Move PENDING to PROCESSING once the verifier reports the proof as
        accepted. Idempotent: any other status is returned as is.

        Raises:
            PaymentNotFoundError: Unknown id
            VerifierAPIError: Verifier failed; the request is left unchanged
        """
        async with self.request_locks.hold(payment_request_id):
            request = self._expire_if_due(self._load(payment_request_id))
            self.db.commit()

            if (
                request.status is not PaymentStatus.PENDING
                or request.proof_reference is None
                or not self.verifier.is_configured()
            ):
                return request

            proof = await self.verifier.get_proof_state(request.proof_reference)
            if not proof.accepted:
                return request

            request = state_machine.accept_proof(request, proof, self.clock())
            self._save_transition(request)
            self.db.commit()
            return request

    async def cancel(self, payment_request_id: str, reason: Optional[str] = None) -> PaymentRequest:
        """
        Raises:
            PaymentNotFoundError: Unknown id
            InvalidStateError: Request already terminal (logged as failed_invalid_state)
        """
        async with self.request_locks.hold(payment_request_id):
            request = self._expire_if_due(self._load(payment_request_id))
            if request.is_terminal:
                self._reject_invalid_state(request, "Payment request cannot be cancelled")

            request = state_machine.cancel(request, self.clock(), reason)
            self._save_transition(request)
            self.db.commit()
            logger.info("Payment request cancelled", extra={"payment_request_id": request.id, "reason": reason})
            return request

    # ------------------------------------------------------------------
    # PIN verification
    # ------------------------------------------------------------------

    async def verify_pin(
        self,
        payment_request_id: str,
        pin: str,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CompletionRecord:
        """
        Authenticate the customer and debit their balance.

        Order of checks: expiry, state, proof claims, account, PIN, funds.
        Every rejection past the state check appends a ledger row and
        commits before raising.

        Raises:
            PaymentValidationError: Blank PIN
            PaymentNotFoundError: Unknown id
            PaymentExpiredError: Expiry reached (failed_expired appended)
            InvalidStateError: Not PROCESSING (failed_invalid_state appended)
            InvalidCredentialError / AccountNotFoundError: Proof unusable or no matching account
            InvalidPINError: Wrong PIN (failed_pin appended, threshold engine run)
            InsufficientFundsError: Balance too low (request FAILED, nothing debited)
            VerifierAPIError: Verifier unavailable; nothing recorded
        """
        if not pin or not str(pin).strip():
            raise PaymentValidationError("PIN is required")

        async with self.request_locks.hold(payment_request_id):
            request = self._load(payment_request_id, for_update=True)

            request, expired = self._apply_expiry(request)
            if expired:
                self.db.commit()
                raise PaymentExpiredError(request.state.error_reason)

            if request.status is not PaymentStatus.PROCESSING:
                self._reject_invalid_state(request, "Payment not in processing state")

            account = await self._resolve_account(request)

            if not hmac.compare_digest(str(pin).encode(), str(account.pin).encode()):
                await self._record_pin_failure(request, account, client_ip, user_agent)

            return await self._settle(request, account, client_ip, user_agent)

    async def _resolve_account(self, request: PaymentRequest) -> Account:
        if request.proof_reference is None or not self.verifier.is_configured():
            self._reject_credential(request, "No credential verification available", None)

        proof = await self.verifier.get_proof_state(request.proof_reference)
        if not proof.accepted:
            self._reject_credential(request, "Credential verification not completed", f"Proof state: {proof.state}")

        name, last4 = proof.cardholder_name, proof.last4_digits
        if not name or not last4:
            self._reject_credential(request, "Required credential data not found", "Missing cardholder name or last 4 digits")

        account = self.accounts.get_by_credential_claims(name, last4)
        if account is None:
            self._append(
                request,
                AttemptStatus.FAILED_INVALID_CREDENTIAL,
                error_reason="Account not found for provided credentials",
                error_details=f"Credential: {name} - *{last4}",
            )
            self.db.commit()
            raise AccountNotFoundError("Account not found for provided credentials")
        return account

    async def _record_pin_failure(
        self,
        request: PaymentRequest,
        account: Account,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        async with self.account_locks.hold(account.id):
            self._append(
                request,
                AttemptStatus.FAILED_PIN,
                account=account,
                error_reason="Invalid PIN",
                error_details="PIN verification failed",
                client_ip=client_ip,
                user_agent=user_agent,
            )
            self.db.commit()
            decision = self.engine.evaluate(account.id)

        self._dispatch_security_actions(decision, account, request)
        raise InvalidPINError(decision.consecutive_failures)

    def _dispatch_security_actions(self, decision: SecurityDecision, account: Account, request: PaymentRequest) -> None:
        if decision.alert:
            self.schedule(self.actions.send_security_alert, account, request, decision.consecutive_failures)
        if decision.revoke:
            self.schedule(self.actions.revoke_credential_and_notify, account, decision.consecutive_failures)

    async def _settle(
        self,
        request: PaymentRequest,
        account: Account,
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> CompletionRecord:
        """Debit and complete, or fail on insufficient funds. Caller holds the request lock."""
        async with self.account_locks.hold(account.id):
            try:
                debit = self.accounts.debit(account.id, request.amount)
            except InsufficientFundsError as e:
                details = f"Available: {e.available:.2f}, Required: {e.required:.2f}"
                self._append(
                    request,
                    AttemptStatus.FAILED_INSUFFICIENT_FUNDS,
                    account=account,
                    error_reason=state_machine.INSUFFICIENT_FUNDS_REASON,
                    error_details=details,
                    previous_balance=e.available,
                    client_ip=client_ip,
                    user_agent=user_agent,
                )
                failed = state_machine.fail(
                    request, state_machine.INSUFFICIENT_FUNDS_REASON, details, self.clock(), account_id=account.id
                )
                self._save_transition(failed)
                self.db.commit()
                raise

            transaction_id = state_machine.generate_transaction_id()
            attempt = self._append(
                request,
                AttemptStatus.COMPLETED,
                account=account,
                transaction_id=transaction_id,
                previous_balance=debit.previous_balance,
                new_balance=debit.new_balance,
                client_ip=client_ip,
                user_agent=user_agent,
            )
            completed = state_machine.complete(request, transaction_id, attempt.id, account, self.clock())
            self._save_transition(completed)
            self.db.commit()

        logger.info(
            "Payment completed",
            extra={
                "payment_request_id": request.id,
                "transaction_id": transaction_id,
                "account_id": account.id,
                "amount": str(request.amount),
            },
        )
        return CompletionRecord(
            payment_request_id=request.id,
            transaction_id=transaction_id,
            attempt_id=attempt.id,
            amount=request.amount,
            merchant_id=request.merchant_id,
            description=request.description,
            cardholder_name=account.cardholder_name,
            timestamp=attempt.timestamp,
            previous_balance=debit.previous_balance,
            new_balance=debit.new_balance,
        )

    # ------------------------------------------------------------------
    # Reporting and retention
    # ------------------------------------------------------------------

    async def list_attempts(self, filters: Optional[AttemptFilter] = None) -> PaymentListing:
        filters = filters or AttemptFilter()
        # Listed requests must not show as open once past their window
        await self._expire_due(
            self.requests.past_expiry(self.clock(), (PaymentStatus.PENDING, PaymentStatus.PROCESSING))
        )
        statistics: Dict[str, Any] = payment_statistics(self.requests.count_by_status(), self.ledger.all())
        if filters.merchant_id:
            statistics["merchant"] = merchant_statistics(
                filters.merchant_id,
                self.requests.count_by_status(filters.merchant_id),
                self.ledger.by_merchant(filters.merchant_id),
            )
        return PaymentListing(
            payment_requests=self.requests.find(filters),
            attempts=self.ledger.find(filters),
            statistics=statistics,
            filters=filters,
        )

    async def expire_stale(self) -> int:
        """Expire PENDING requests past their window; returns how many changed"""
        return await self._expire_due(self.requests.past_expiry(self.clock()))

    async def _expire_due(self, payment_request_ids: List[str]) -> int:
        expired = 0
        for payment_request_id in payment_request_ids:
            async with self.request_locks.hold(payment_request_id):
                request = self.requests.get(payment_request_id, for_update=True)
                if request is None:
                    continue
                _, changed = self._apply_expiry(request)
                self.db.commit()
                expired += int(changed)
        return expired

    def purge_old(self, retention: Optional[timedelta] = None) -> int:
        """Remove terminal requests older than retention. Attempts stay."""
        purged = self.requests.purge(self.clock() - (retention or self.retention))
        self.db.commit()
        return purged

    async def cleanup(self) -> CleanupResult:
        expired = await self.expire_stale()
        purged = self.purge_old()
        if expired or purged:
            logger.info("Payment cleanup finished", extra={"expired": expired, "purged": purged})
        return CleanupResult(expired=expired, purged=purged)

    # ------------------------------------------------------------------
    # Security
    # ------------------------------------------------------------------

    async def suspend_credential(self, credential_id: str, account_id: str) -> SuspensionResult:
        """
        Suspend a credential at the verifier, then confirm to the customer.

        Raises:
            PaymentValidationError: Missing ids or credential not issued to the account
            AccountNotFoundError: Unknown account
            VerifierAPIError: Verifier unavailable or rejected the suspension
        """
        if not credential_id or not account_id:
            raise PaymentValidationError("Credential ID and account ID are required")

        account = self.accounts.get_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        if account.credential_id and account.credential_id != credential_id:
            raise PaymentValidationError("Credential does not belong to account")

        until = self.clock() + timedelta(days=self.suspension_days)
        await self.verifier.suspend(credential_id, until)
        logger.warning(
            "Credential suspended",
            extra={"credential_id": credential_id, "account_id": account_id, "until": until.isoformat()},
        )

        self.schedule(self.actions.send_suspension_confirmation, account, until)
        return SuspensionResult(credential_id=credential_id, account_id=account_id, suspended_until=until)

    def security_report(self, account_id: str) -> Dict[str, Any]:
        report = self.engine.statistics(account_id)
        report["thresholds"] = {
            "alert_threshold": self.policy.alert_threshold,
            "revoke_threshold": self.policy.revoke_threshold,
        }
        return report

    def security_configuration(self) -> Dict[str, Any]:
        return self.policy.configuration()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, payment_request_id: str, for_update: bool = False) -> PaymentRequest:
        request = self.requests.get(payment_request_id, for_update=for_update)
        if request is None:
            raise PaymentNotFoundError(payment_request_id)
        return request

    def _apply_expiry(self, request: PaymentRequest):
        """Lazy expiry: transition, persist and append failed_expired (not committed)"""
        previous_status = request.status
        updated, changed = state_machine.apply_expiry(request, self.clock())
        if not changed:
            return request, False

        self._save_transition(updated)
        self._append(
            updated,
            AttemptStatus.FAILED_EXPIRED,
            error_reason=state_machine.expiry_reason(request),
            error_details=f"Request expired at {request.expires_at.isoformat()} while {previous_status.value}",
        )
        logger.info(
            "Payment request expired",
            extra={"payment_request_id": request.id, "from_status": previous_status.value},
        )
        return updated, True

    def _expire_if_due(self, request: PaymentRequest) -> PaymentRequest:
        updated, _ = self._apply_expiry(request)
        return updated

    def _save_transition(self, request: PaymentRequest) -> None:
        self.requests.save(request)
        record_transition(request.status.value)

    def _reject_invalid_state(self, request: PaymentRequest, reason: str) -> None:
        self._append(
            request,
            AttemptStatus.FAILED_INVALID_STATE,
            error_reason=reason,
            error_details=f"Current status: {request.status.value}",
        )
        self.db.commit()
        raise InvalidStateError(
            f"Payment request is {request.status.value}: {reason.lower()}",
            current_status=request.status.value,
        )

    def _reject_credential(self, request: PaymentRequest, reason: str, details: Optional[str]) -> None:
        self._append(request, AttemptStatus.FAILED_INVALID_CREDENTIAL, error_reason=reason, error_details=details)
        self.db.commit()
        raise InvalidCredentialError(reason)

    def _append(
        self,
        request: PaymentRequest,
        status: AttemptStatus,
        account: Optional[Account] = None,
        **fields: Any,
    ):
        record = AttemptRecord(
            payment_request_id=request.id,
            status=status,
            amount=request.amount,
            merchant_id=request.merchant_id,
            description=request.description,
            **fields,
        )
        if account is not None:
            record.account_id = account.id
            record.cardholder_name = account.cardholder_name
            record.account_email = account.email
        return self.ledger.append(record, self.clock())
