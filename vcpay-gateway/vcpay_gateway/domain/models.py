"""Domain models - pure Python dataclasses representing business entities"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment request"""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.EXPIRED, PaymentStatus.CANCELLED}
)


class AttemptStatus(str, Enum):
    """Closed taxonomy of ledger outcomes"""

    COMPLETED = "completed"
    FAILED_PIN = "failed_pin"
    FAILED_EXPIRED = "failed_expired"
    FAILED_INSUFFICIENT_FUNDS = "failed_insufficient_funds"
    FAILED_INVALID_CREDENTIAL = "failed_invalid_credential"
    FAILED_INVALID_STATE = "failed_invalid_state"


FAILURE_KINDS = tuple(s for s in AttemptStatus if s is not AttemptStatus.COMPLETED)


# ---------------------------------------------------------------------------
# Payment request state variants: each carries only the fields valid for it
# ---------------------------------------------------------------------------


class _StateMetadata:
    """Serialize a state variant to/from JSON-safe result metadata"""

    def metadata(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data

    @classmethod
    def from_metadata(cls, data: Dict[str, Any]):
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is not None and f.name.endswith("_at"):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class Pending(_StateMetadata):
    """Waiting for the customer's wallet to present a proof"""

    qr_url: Optional[str] = None
    app_url: Optional[str] = None


@dataclass(frozen=True)
class Processing(_StateMetadata):
    """Proof accepted, waiting for PIN"""

    proof_state: str
    proof_accepted_at: datetime


@dataclass(frozen=True)
class Completed(_StateMetadata):
    """Balance debited, payment done"""

    transaction_id: str
    attempt_id: str
    account_id: str
    cardholder_name: str
    completed_at: datetime


@dataclass(frozen=True)
class Failed(_StateMetadata):
    """Terminal failure (insufficient funds, expiry during processing)"""

    error_reason: str
    error_details: str
    failed_at: datetime
    account_id: Optional[str] = None


@dataclass(frozen=True)
class Expired(_StateMetadata):
    """Expired while still waiting for a proof"""

    expired_at: datetime
    error_reason: str = "Payment request expired"


@dataclass(frozen=True)
class Cancelled(_StateMetadata):
    """Withdrawn by the merchant"""

    cancelled_at: datetime
    reason: Optional[str] = None


PaymentState = Union[Pending, Processing, Completed, Failed, Expired, Cancelled]

STATE_TYPES = {
    PaymentStatus.PENDING: Pending,
    PaymentStatus.PROCESSING: Processing,
    PaymentStatus.COMPLETED: Completed,
    PaymentStatus.FAILED: Failed,
    PaymentStatus.EXPIRED: Expired,
    PaymentStatus.CANCELLED: Cancelled,
}
STATUS_BY_STATE_TYPE = {state_type: status for status, state_type in STATE_TYPES.items()}


def state_from_metadata(status: PaymentStatus, metadata: Optional[Dict[str, Any]]) -> PaymentState:
    """Rebuild a state variant from its persisted status and metadata"""
    return STATE_TYPES[PaymentStatus(status)].from_metadata(metadata or {})


@dataclass(frozen=True)
class PaymentRequest:
    """Merchant-initiated charge. Immutable: transitions return a new instance."""

    id: str
    amount: Decimal
    merchant_id: str
    description: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    state: PaymentState
    proof_reference: Optional[str] = None

    @property
    def status(self) -> PaymentStatus:
        return STATUS_BY_STATE_TYPE[type(self.state)]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def result_metadata(self) -> Dict[str, Any]:
        return self.state.metadata()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass
class AttemptRecord:
    """Attempt to append to the ledger (id, timestamp and sequence assigned on append)"""

    payment_request_id: str
    status: Union[AttemptStatus, str]
    amount: Decimal = Decimal("0")
    merchant_id: Optional[str] = None
    description: str = ""
    account_id: Optional[str] = None
    cardholder_name: Optional[str] = None
    account_email: Optional[str] = None
    transaction_id: Optional[str] = None
    previous_balance: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    error_reason: Optional[str] = None
    error_details: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class PaymentAttempt:
    """Ledger row as read back from the store"""

    id: str
    sequence: int
    payment_request_id: str
    status: AttemptStatus
    amount: Decimal
    merchant_id: Optional[str]
    description: str
    timestamp: datetime
    account_id: Optional[str] = None
    cardholder_name: Optional[str] = None
    account_email: Optional[str] = None
    transaction_id: Optional[str] = None
    previous_balance: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    error_reason: Optional[str] = None
    error_details: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AttemptFilter:
    """Reporting filter over requests and attempts"""

    only_successful: bool = False
    merchant_id: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    limit: int = 50


# ---------------------------------------------------------------------------
# Collaborator data
# ---------------------------------------------------------------------------


@dataclass
class Account:
    """Customer account owned by the account store"""

    id: str
    cardholder_name: str
    email: str
    pan_last4: str
    balance: Decimal
    pin: str
    credential_id: Optional[str] = None


@dataclass
class DebitResult:
    """Balances around an atomic debit"""

    previous_balance: Decimal
    new_balance: Decimal


@dataclass
class ProofShare:
    """Links a wallet uses to answer a proof request"""

    qr_url: str
    app_url: Optional[str] = None


CLAIM_CARDHOLDER_NAME = "cardHolderName"
CLAIM_LAST4_DIGITS = "last4Digits"
PROOF_STATE_ACCEPTED = "ACCEPTED"


@dataclass
class ProofState:
    """Verifier's view of a proof request"""

    state: str
    claims: Dict[str, str] = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    @property
    def accepted(self) -> bool:
        return self.state == PROOF_STATE_ACCEPTED

    @property
    def cardholder_name(self) -> Optional[str]:
        return self.claims.get(CLAIM_CARDHOLDER_NAME)

    @property
    def last4_digits(self) -> Optional[str]:
        return self.claims.get(CLAIM_LAST4_DIGITS)


# ---------------------------------------------------------------------------
# Orchestrator outputs
# ---------------------------------------------------------------------------


@dataclass
class ProofExchange:
    """Outcome of starting a proof exchange"""

    payment_request: PaymentRequest
    warning: Optional[str] = None


@dataclass
class CompletionRecord:
    """Successful PIN verification"""

    payment_request_id: str
    transaction_id: str
    attempt_id: str
    amount: Decimal
    merchant_id: str
    description: str
    cardholder_name: str
    timestamp: datetime
    previous_balance: Decimal
    new_balance: Decimal


@dataclass
class PaymentListing:
    """Requests and attempts with aggregate statistics"""

    payment_requests: List[PaymentRequest]
    attempts: List[PaymentAttempt]
    statistics: Dict[str, Any]
    filters: AttemptFilter


@dataclass
class CleanupResult:
    """Counts from expiry and retention passes"""

    expired: int
    purged: int


@dataclass
class SuspensionResult:
    """Credential suspension outcome"""

    credential_id: str
    account_id: str
    suspended_until: datetime
