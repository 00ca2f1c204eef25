"""
Payment request state machine.

Pure transitions over immutable PaymentRequest values. Callers own
persistence, locking and ledger appends; this module only decides whether
a transition is legal and builds the next value.

    PENDING ──proof accepted──▶ PROCESSING ──PIN ok, funds ok──▶ COMPLETED
       │                            │
       ├──expiry──▶ EXPIRED          ├──insufficient funds / expiry──▶ FAILED
       └──cancel──▶ CANCELLED ◀──────┘
"""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, Optional, Tuple, Union

from vcpay_gateway.domain.exceptions import InvalidStateError, PaymentValidationError
from vcpay_gateway.domain.models import (
    Account,
    Cancelled,
    Completed,
    Expired,
    Failed,
    PaymentRequest,
    PaymentState,
    PaymentStatus,
    Pending,
    Processing,
    ProofShare,
    ProofState,
    STATUS_BY_STATE_TYPE,
)
from vcpay_gateway.utils.money import MAX_CENTS, quantize_amount, to_cents

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(
        {PaymentStatus.PROCESSING, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.PROCESSING: frozenset(
        {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
    ),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}

EXPIRED_REASON = "Payment request expired"
EXPIRED_DURING_PROCESSING_REASON = "Payment request expired during processing"
INSUFFICIENT_FUNDS_REASON = "Insufficient balance"


def generate_payment_id() -> str:
    return f"pay_{uuid.uuid4().hex}"


def generate_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex}"


def new_payment_request(
    amount: Union[Decimal, int, float, str],
    merchant_id: str,
    description: Optional[str],
    now: datetime,
    ttl_minutes: int = 30,
) -> PaymentRequest:
    """
    Validate input and build a PENDING request.

    Raises:
        PaymentValidationError: Amount not a positive number, too large or merchant id blank
    """
    try:
        normalized = quantize_amount(amount)
    except ValueError as e:
        raise PaymentValidationError("Amount must be a valid number greater than 0") from e
    if normalized <= 0:
        raise PaymentValidationError("Amount must be a valid number greater than 0")
    if to_cents(normalized) > MAX_CENTS:
        raise PaymentValidationError("Amount exceeds the maximum allowed")

    if not isinstance(merchant_id, str) or not merchant_id.strip():
        raise PaymentValidationError("MerchantId must be a non-empty string")

    return PaymentRequest(
        id=generate_payment_id(),
        amount=normalized,
        merchant_id=merchant_id.strip(),
        description=description or "",
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(minutes=ttl_minutes),
        state=Pending(),
    )


def can_transition(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS[from_status]


def transition(request: PaymentRequest, new_state: PaymentState, now: datetime) -> PaymentRequest:
    """
    Move a request to a new state.

    Raises:
        InvalidStateError: Edge not in ALLOWED_TRANSITIONS (always for terminal states)
    """
    target = STATUS_BY_STATE_TYPE[type(new_state)]
    if not can_transition(request.status, target):
        raise InvalidStateError(
            f"Payment request is {request.status.value} and cannot move to {target.value}",
            current_status=request.status.value,
        )
    return replace(request, state=new_state, updated_at=now)


def attach_proof(
    request: PaymentRequest,
    proof_reference: str,
    share: Optional[ProofShare],
    now: datetime,
) -> PaymentRequest:
    """Record the proof exchange handle; only once, only while PENDING"""
    if request.status is not PaymentStatus.PENDING:
        raise InvalidStateError(
            f"Payment request is {request.status.value}; proof can only be requested while pending",
            current_status=request.status.value,
        )
    if request.proof_reference is not None:
        raise InvalidStateError("Proof already requested for this payment", current_status=request.status.value)

    state = Pending(qr_url=share.qr_url, app_url=share.app_url) if share else Pending()
    return replace(request, proof_reference=proof_reference, state=state, updated_at=now)


def accept_proof(request: PaymentRequest, proof: ProofState, now: datetime) -> PaymentRequest:
    return transition(request, Processing(proof_state=proof.state, proof_accepted_at=now), now)


def expiry_reason(request: PaymentRequest) -> str:
    if request.status is PaymentStatus.PROCESSING:
        return EXPIRED_DURING_PROCESSING_REASON
    return EXPIRED_REASON


def apply_expiry(request: PaymentRequest, now: datetime) -> Tuple[PaymentRequest, bool]:
    """
    Lazy expiry check.

    PENDING past its window becomes EXPIRED; PROCESSING past its window
    becomes FAILED ("expired during processing"). Terminal or still-valid
    requests are returned unchanged.

    Returns: (request, changed)
    """
    if request.is_terminal or not request.is_past_expiry(now):
        return request, False

    details = f"Request expired at {request.expires_at.isoformat()}"
    if request.status is PaymentStatus.PENDING:
        return transition(request, Expired(expired_at=now, error_reason=EXPIRED_REASON), now), True
    return (
        transition(
            request,
            Failed(error_reason=EXPIRED_DURING_PROCESSING_REASON, error_details=details, failed_at=now),
            now,
        ),
        True,
    )


def complete(
    request: PaymentRequest,
    transaction_id: str,
    attempt_id: str,
    account: Account,
    now: datetime,
) -> PaymentRequest:
    return transition(
        request,
        Completed(
            transaction_id=transaction_id,
            attempt_id=attempt_id,
            account_id=account.id,
            cardholder_name=account.cardholder_name,
            completed_at=now,
        ),
        now,
    )


def fail(
    request: PaymentRequest,
    reason: str,
    details: str,
    now: datetime,
    account_id: Optional[str] = None,
) -> PaymentRequest:
    return transition(
        request,
        Failed(error_reason=reason, error_details=details, failed_at=now, account_id=account_id),
        now,
    )


def cancel(request: PaymentRequest, now: datetime, reason: Optional[str] = None) -> PaymentRequest:
    return transition(request, Cancelled(cancelled_at=now, reason=reason), now)
