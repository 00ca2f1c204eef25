"""Data access layer for payment requests, the attempt ledger, and accounts"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from vcpay_gateway.domain.exceptions import AccountNotFoundError, InsufficientFundsError, LedgerError
from vcpay_gateway.domain.models import (
    Account,
    AttemptFilter,
    AttemptRecord,
    AttemptStatus,
    DebitResult,
    PaymentAttempt,
    PaymentRequest,
    PaymentStatus,
    state_from_metadata,
)
from vcpay_gateway.infrastructure.database.models import AccountRow, PaymentAttemptRow, PaymentRequestRow
from vcpay_gateway.infrastructure.observability.logging import log_attempt
from vcpay_gateway.infrastructure.observability.metrics import record_attempt
from vcpay_gateway.utils.money import from_cents, to_cents


def _optional_cents(value: Optional[Decimal]) -> Optional[int]:
    return to_cents(value) if value is not None else None


def _optional_amount(cents: Optional[int]) -> Optional[Decimal]:
    return from_cents(cents) if cents is not None else None


class AttemptLedger:
    """Append-only repository for payment attempts"""

    def __init__(self, db: Session):
        self.db = db

    def append(self, record: AttemptRecord, now: datetime) -> PaymentAttempt:
        """
        Append an attempt to the ledger (flushed, not committed).

        Raises:
            LedgerError: Missing payment request id or unknown status
        """
        if not record.payment_request_id:
            raise LedgerError("Payment attempt requires a payment request id")
        try:
            status = AttemptStatus(record.status)
        except ValueError as e:
            raise LedgerError(f"Unknown payment attempt status: {record.status!r}") from e

        row = PaymentAttemptRow(
            id=f"att_{uuid.uuid4().hex}",
            payment_request_id=record.payment_request_id,
            status=status.value,
            amount_cents=to_cents(record.amount),
            merchant_id=record.merchant_id,
            description=record.description or "",
            timestamp=now,
            account_id=record.account_id,
            cardholder_name=record.cardholder_name,
            account_email=record.account_email,
            transaction_id=record.transaction_id,
            previous_balance_cents=_optional_cents(record.previous_balance),
            new_balance_cents=_optional_cents(record.new_balance),
            error_reason=record.error_reason,
            error_details=record.error_details,
            client_ip=record.client_ip,
            user_agent=record.user_agent,
        )
        self.db.add(row)
        self.db.flush()  # Assign seq without committing

        record_attempt(status.value)
        log_attempt(
            payment_request_id=row.payment_request_id,
            attempt_id=row.id,
            status=status.value,
            amount=record.amount,
            account_id=row.account_id,
            error_reason=row.error_reason,
        )
        return self._to_domain(row)

    def by_account(self, account_id: str) -> List[PaymentAttempt]:
        """All attempts for an account, newest first"""
        rows = (
            self.db.query(PaymentAttemptRow)
            .filter(PaymentAttemptRow.account_id == account_id)
            .order_by(PaymentAttemptRow.seq.desc())
            .all()
        )
        return [self._to_domain(row) for row in rows]

    def by_payment_request(self, payment_request_id: str) -> List[PaymentAttempt]:
        """Attempts for one payment request, in append order"""
        rows = (
            self.db.query(PaymentAttemptRow)
            .filter(PaymentAttemptRow.payment_request_id == payment_request_id)
            .order_by(PaymentAttemptRow.seq.asc())
            .all()
        )
        return [self._to_domain(row) for row in rows]

    def find(self, filters: Optional[AttemptFilter] = None) -> List[PaymentAttempt]:
        """
        Filtered attempts, newest first.

        Filters combine: successful-only, merchant id, inclusive
        [start, end] on timestamp, and a row limit (None or <= 0 for all).
        """
        filters = filters or AttemptFilter(limit=0)
        query = self.db.query(PaymentAttemptRow)
        if filters.only_successful:
            query = query.filter(PaymentAttemptRow.status == AttemptStatus.COMPLETED.value)
        if filters.merchant_id:
            query = query.filter(PaymentAttemptRow.merchant_id == filters.merchant_id)
        if filters.start is not None:
            query = query.filter(PaymentAttemptRow.timestamp >= filters.start)
        if filters.end is not None:
            query = query.filter(PaymentAttemptRow.timestamp <= filters.end)
        query = query.order_by(PaymentAttemptRow.seq.desc())
        if filters.limit and filters.limit > 0:
            query = query.limit(filters.limit)
        return [self._to_domain(row) for row in query.all()]

    def all(self) -> List[PaymentAttempt]:
        return self.find()

    def successful(self) -> List[PaymentAttempt]:
        return self.find(AttemptFilter(only_successful=True, limit=0))

    def by_merchant(self, merchant_id: str) -> List[PaymentAttempt]:
        return self.find(AttemptFilter(merchant_id=merchant_id, limit=0))

    def between(self, start: datetime, end: datetime) -> List[PaymentAttempt]:
        return self.find(AttemptFilter(start=start, end=end, limit=0))

    @staticmethod
    def _to_domain(row: PaymentAttemptRow) -> PaymentAttempt:
        return PaymentAttempt(
            id=row.id,
            sequence=row.seq,
            payment_request_id=row.payment_request_id,
            status=AttemptStatus(row.status),
            amount=from_cents(row.amount_cents),
            merchant_id=row.merchant_id,
            description=row.description,
            timestamp=row.timestamp,
            account_id=row.account_id,
            cardholder_name=row.cardholder_name,
            account_email=row.account_email,
            transaction_id=row.transaction_id,
            previous_balance=_optional_amount(row.previous_balance_cents),
            new_balance=_optional_amount(row.new_balance_cents),
            error_reason=row.error_reason,
            error_details=row.error_details,
            client_ip=row.client_ip,
            user_agent=row.user_agent,
        )


class PaymentRequestRepository:
    """Repository for payment requests"""

    def __init__(self, db: Session):
        self.db = db

    def add(self, request: PaymentRequest) -> None:
        """Persist a new payment request (flushed, not committed)"""
        self.db.add(
            PaymentRequestRow(
                id=request.id,
                amount_cents=to_cents(request.amount),
                merchant_id=request.merchant_id,
                description=request.description,
                status=request.status.value,
                created_at=request.created_at,
                updated_at=request.updated_at,
                expires_at=request.expires_at,
                proof_reference=request.proof_reference,
                result_metadata=request.result_metadata,
            )
        )
        self.db.flush()

    def get(self, payment_request_id: str, for_update: bool = False) -> Optional[PaymentRequest]:
        """Fetch the current persisted value, bypassing stale identity-map state"""
        query = (
            self.db.query(PaymentRequestRow)
            .filter(PaymentRequestRow.id == payment_request_id)
            .populate_existing()
        )
        if for_update:
            query = query.with_for_update()
        row = query.first()
        return self._to_domain(row) if row else None

    def save(self, request: PaymentRequest) -> None:
        """Write back the mutable columns after a transition"""
        row = self.db.get(PaymentRequestRow, request.id)
        if row is None:
            raise LedgerError(f"Payment request {request.id} is not persisted")
        row.status = request.status.value
        row.updated_at = request.updated_at
        row.proof_reference = request.proof_reference
        row.result_metadata = request.result_metadata
        self.db.flush()

    def find(self, filters: Optional[AttemptFilter] = None) -> List[PaymentRequest]:
        """Requests newest first, filtered by merchant and inclusive creation range"""
        filters = filters or AttemptFilter(limit=0)
        query = self.db.query(PaymentRequestRow)
        if filters.merchant_id:
            query = query.filter(PaymentRequestRow.merchant_id == filters.merchant_id)
        if filters.only_successful:
            query = query.filter(PaymentRequestRow.status == PaymentStatus.COMPLETED.value)
        if filters.start is not None:
            query = query.filter(PaymentRequestRow.created_at >= filters.start)
        if filters.end is not None:
            query = query.filter(PaymentRequestRow.created_at <= filters.end)
        query = query.order_by(PaymentRequestRow.created_at.desc())
        if filters.limit and filters.limit > 0:
            query = query.limit(filters.limit)
        return [self._to_domain(row) for row in query.all()]

    def count_by_status(self, merchant_id: Optional[str] = None) -> Dict[str, int]:
        """Request counts for every status (zero-filled)"""
        query = self.db.query(PaymentRequestRow.status, func.count(PaymentRequestRow.id))
        if merchant_id:
            query = query.filter(PaymentRequestRow.merchant_id == merchant_id)
        counts = {status.value: 0 for status in PaymentStatus}
        for status, count in query.group_by(PaymentRequestRow.status).all():
            counts[status] = count
        return counts

    def past_expiry(self, now: datetime, statuses: Iterable[PaymentStatus] = (PaymentStatus.PENDING,)) -> List[str]:
        """Ids of requests in the given statuses whose window has closed"""
        rows = (
            self.db.query(PaymentRequestRow.id)
            .filter(
                PaymentRequestRow.status.in_([s.value for s in statuses]),
                PaymentRequestRow.expires_at <= now,
            )
            .all()
        )
        return [row.id for row in rows]

    def purge(self, cutoff: datetime) -> int:
        """
        Delete terminal requests last updated before cutoff.

        Pending requests are never deleted here; expiry moves them to
        EXPIRED (with its ledger row) first. Attempt rows are never touched.
        """
        terminal = [s.value for s in PaymentStatus if s not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)]
        deleted = (
            self.db.query(PaymentRequestRow)
            .filter(PaymentRequestRow.status.in_(terminal), PaymentRequestRow.updated_at < cutoff)
            .delete(synchronize_session=False)
        )
        self.db.flush()
        return deleted

    @staticmethod
    def _to_domain(row: PaymentRequestRow) -> PaymentRequest:
        return PaymentRequest(
            id=row.id,
            amount=from_cents(row.amount_cents),
            merchant_id=row.merchant_id,
            description=row.description,
            created_at=row.created_at,
            updated_at=row.updated_at,
            expires_at=row.expires_at,
            state=state_from_metadata(PaymentStatus(row.status), row.result_metadata),
            proof_reference=row.proof_reference,
        )


class SqlAccountStore:
    """Account store backed by the account table"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_credential_claims(self, cardholder_name: str, last4: str) -> Optional[Account]:
        """Match on exact cardholder name and the card's last four digits"""
        row = (
            self.db.query(AccountRow)
            .filter(AccountRow.cardholder_name == cardholder_name, AccountRow.pan_last4 == last4)
            .populate_existing()
            .first()
        )
        return self._to_domain(row) if row else None

    def get_by_id(self, account_id: str) -> Optional[Account]:
        row = (
            self.db.query(AccountRow)
            .filter(AccountRow.id == account_id)
            .populate_existing()
            .first()
        )
        return self._to_domain(row) if row else None

    def debit(self, account_id: str, amount: Decimal) -> DebitResult:
        """
        Conditional debit: the UPDATE only matches when the balance covers
        the amount, so concurrent debits can never overdraw.

        Raises:
            InsufficientFundsError: Balance lower than amount (nothing written)
            AccountNotFoundError: Unknown account id
        """
        cents = to_cents(amount)
        result = self.db.execute(
            update(AccountRow)
            .where(AccountRow.id == account_id, AccountRow.balance_cents >= cents)
            .values(balance_cents=AccountRow.balance_cents - cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            balance = self.db.execute(
                select(AccountRow.balance_cents).where(AccountRow.id == account_id)
            ).scalar_one_or_none()
            if balance is None:
                raise AccountNotFoundError(f"Account not found: {account_id}")
            raise InsufficientFundsError(available=from_cents(balance), required=from_cents(cents))

        new_balance = self.db.execute(
            select(AccountRow.balance_cents).where(AccountRow.id == account_id)
        ).scalar_one()
        return DebitResult(
            previous_balance=from_cents(new_balance + cents),
            new_balance=from_cents(new_balance),
        )

    @staticmethod
    def _to_domain(row: AccountRow) -> Account:
        return Account(
            id=row.id,
            cardholder_name=row.cardholder_name,
            email=row.email,
            pan_last4=row.pan_last4,
            balance=from_cents(row.balance_cents),
            pin=row.pin,
            credential_id=row.credential_id,
        )
