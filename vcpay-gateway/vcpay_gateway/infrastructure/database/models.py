"""SQLAlchemy ORM models for payment requests, the attempt ledger, and accounts"""

from datetime import timezone
from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, JSON, String, Text, event
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from vcpay_gateway.domain.exceptions import LedgerImmutableError

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns timezone-aware UTC on every backend"""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class PaymentRequestRow(Base):
    """Merchant-initiated charge and its current state"""

    __tablename__ = "payment_request"

    id = Column(Text, primary_key=True)
    amount_cents = Column(BigInteger, nullable=False)
    merchant_id = Column(Text, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    status = Column(Text, nullable=False, index=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    proof_reference = Column(Text, nullable=True)
    result_metadata = Column(JSON, nullable=True)


class PaymentAttemptRow(Base):
    """Append-only ledger row. seq gives the total append order."""

    __tablename__ = "payment_attempt"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(Text, nullable=False, unique=True)
    # No foreign key: attempts outlive purged payment requests
    payment_request_id = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False)
    amount_cents = Column(BigInteger, nullable=False, default=0)
    merchant_id = Column(Text, nullable=True, index=True)
    description = Column(Text, nullable=False, default="")
    timestamp = Column(UTCDateTime, nullable=False, index=True)
    account_id = Column(Text, nullable=True, index=True)
    cardholder_name = Column(Text, nullable=True)
    account_email = Column(Text, nullable=True)
    transaction_id = Column(Text, nullable=True)
    previous_balance_cents = Column(BigInteger, nullable=True)
    new_balance_cents = Column(BigInteger, nullable=True)
    error_reason = Column(Text, nullable=True)
    error_details = Column(Text, nullable=True)
    client_ip = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)


@event.listens_for(PaymentAttemptRow, "before_update")
def _reject_attempt_update(mapper, connection, target):
    raise LedgerImmutableError(f"Payment attempt {target.id} is immutable")


@event.listens_for(PaymentAttemptRow, "before_delete")
def _reject_attempt_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Payment attempt {target.id} cannot be deleted")


class AccountRow(Base):
    """Customer account (provisioned outside this service)"""

    __tablename__ = "account"

    id = Column(Text, primary_key=True)
    cardholder_name = Column(Text, nullable=False)
    email = Column(Text, nullable=False)
    pan_last4 = Column(String(4), nullable=False)
    balance_cents = Column(BigInteger, nullable=False, default=0)
    pin = Column(Text, nullable=False)
    credential_id = Column(Text, nullable=True)

    __table_args__ = (Index("ix_account_holder_last4", "cardholder_name", "pan_last4"),)
