"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from vcpay_gateway.domain.models import CompletionRecord, PaymentAttempt, PaymentRequest, Pending


class CreatePaymentRequest(BaseModel):
    """Request body for POST /v1/payments"""

    amount: Decimal = Field(..., description="Amount to charge, two fractional digits")
    merchant_id: str = Field(..., description="Merchant identifier")
    description: Optional[str] = Field(None, max_length=500)


class PaymentRequestResponse(BaseModel):
    """Payment request view"""

    id: str
    amount: Decimal
    merchant_id: str
    description: str
    status: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    proof_reference: Optional[str] = None
    qr_url: Optional[str] = None
    app_url: Optional[str] = None
    result_metadata: Dict[str, Any] = Field(default_factory=dict)
    warning: Optional[str] = None

    @classmethod
    def from_domain(cls, request: PaymentRequest, warning: Optional[str] = None) -> "PaymentRequestResponse":
        state = request.state
        return cls(
            id=request.id,
            amount=request.amount,
            merchant_id=request.merchant_id,
            description=request.description,
            status=request.status.value,
            created_at=request.created_at,
            updated_at=request.updated_at,
            expires_at=request.expires_at,
            proof_reference=request.proof_reference,
            qr_url=state.qr_url if isinstance(state, Pending) else None,
            app_url=state.app_url if isinstance(state, Pending) else None,
            result_metadata=request.result_metadata,
            warning=warning,
        )


class VerifyPinRequest(BaseModel):
    """Request body for POST /v1/payments/{id}/verify-pin"""

    pin: str = Field(..., description="Account PIN")


class BalanceSchema(BaseModel):
    previous: Decimal
    current: Decimal


class CompletionResponse(BaseModel):
    """Response for a successful PIN verification"""

    payment_request_id: str
    transaction_id: str
    attempt_id: str
    amount: Decimal
    merchant_id: str
    description: str
    cardholder_name: str
    timestamp: datetime
    balance: BalanceSchema

    @classmethod
    def from_domain(cls, record: CompletionRecord) -> "CompletionResponse":
        return cls(
            payment_request_id=record.payment_request_id,
            transaction_id=record.transaction_id,
            attempt_id=record.attempt_id,
            amount=record.amount,
            merchant_id=record.merchant_id,
            description=record.description,
            cardholder_name=record.cardholder_name,
            timestamp=record.timestamp,
            balance=BalanceSchema(previous=record.previous_balance, current=record.new_balance),
        )


class CancelPaymentRequest(BaseModel):
    """Request body for POST /v1/payments/{id}/cancel"""

    reason: Optional[str] = Field(None, max_length=500)


class AttemptSchema(BaseModel):
    """Single ledger row"""

    id: str
    sequence: int
    payment_request_id: str
    status: str
    amount: Decimal
    merchant_id: Optional[str] = None
    description: str = ""
    timestamp: datetime
    account_id: Optional[str] = None
    cardholder_name: Optional[str] = None
    transaction_id: Optional[str] = None
    previous_balance: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    error_reason: Optional[str] = None
    error_details: Optional[str] = None

    @classmethod
    def from_domain(cls, attempt: PaymentAttempt) -> "AttemptSchema":
        return cls(
            id=attempt.id,
            sequence=attempt.sequence,
            payment_request_id=attempt.payment_request_id,
            status=attempt.status.value,
            amount=attempt.amount,
            merchant_id=attempt.merchant_id,
            description=attempt.description,
            timestamp=attempt.timestamp,
            account_id=attempt.account_id,
            cardholder_name=attempt.cardholder_name,
            transaction_id=attempt.transaction_id,
            previous_balance=attempt.previous_balance,
            new_balance=attempt.new_balance,
            error_reason=attempt.error_reason,
            error_details=attempt.error_details,
        )


class PaymentListResponse(BaseModel):
    """Response for GET /v1/payments"""

    payment_requests: List[PaymentRequestResponse]
    attempts: List[AttemptSchema]
    statistics: Dict[str, Any]
    filters: Dict[str, Any]


class CleanupResponse(BaseModel):
    """Response for POST /v1/payments/cleanup"""

    expired: int
    purged: int


class SecurityConfigResponse(BaseModel):
    """Response for GET /v1/security/config"""

    alert_threshold: int
    revoke_threshold: int
    validation_status: str
    source: str
    threshold_percentages: Dict[str, int]


class SecurityReportResponse(BaseModel):
    """Response for GET /v1/security/accounts/{account_id}"""

    account_id: str
    total_attempts: int
    successful_payments: int
    pin_failures: int
    consecutive_pin_failures: int
    last_attempt: Optional[AttemptSchema] = None
    risk_level: str
    status_message: str
    action: str
    thresholds: Dict[str, int]


class SuspendCredentialRequest(BaseModel):
    """Request body for POST /v1/security/suspend-credential"""

    credential_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)


class SuspendCredentialResponse(BaseModel):
    """Response for POST /v1/security/suspend-credential"""

    credential_id: str
    account_id: str
    suspended_until: datetime
    message: str = "Credential suspended successfully"
