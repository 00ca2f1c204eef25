"""Collaborator interfaces consumed by the authorization pipeline"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol

from vcpay_gateway.domain.models import Account, DebitResult, PaymentRequest, ProofShare, ProofState


class CredentialVerifier(Protocol):
    """Opaque proof-exchange service (credential verifier)"""

    def is_configured(self) -> bool:  # pragma: no cover - interface
        ...

    async def request_proof(self) -> str:  # pragma: no cover - interface
        """Create a proof request, returning its reference"""
        ...

    async def share_proof(self, proof_reference: str) -> ProofShare:  # pragma: no cover - interface
        ...

    async def get_proof_state(self, proof_reference: str) -> ProofState:  # pragma: no cover - interface
        ...

    async def revoke(self, credential_id: str) -> None:  # pragma: no cover - interface
        ...

    async def suspend(self, credential_id: str, until: datetime) -> None:  # pragma: no cover - interface
        ...


class AccountStore(Protocol):
    """Account owner. The pipeline reads accounts and requests debits only."""

    def get_by_credential_claims(self, cardholder_name: str, last4: str) -> Optional[Account]:  # pragma: no cover
        ...

    def get_by_id(self, account_id: str) -> Optional[Account]:  # pragma: no cover - interface
        ...

    def debit(self, account_id: str, amount: Decimal) -> DebitResult:  # pragma: no cover - interface
        """
        Atomically subtract amount from the balance.

        Raises:
            InsufficientFundsError: balance < amount (balance unchanged)
            AccountNotFoundError: unknown account id
        """
        ...


class Notifier(Protocol):
    """Customer-facing notifications (delivery mechanics live elsewhere)"""

    async def send_security_alert(
        self, account: Account, payment_request: PaymentRequest, failure_count: int
    ) -> None:  # pragma: no cover - interface
        ...

    async def send_revoked(self, account: Account) -> None:  # pragma: no cover - interface
        ...

    async def send_suspended(self, account: Account, until: datetime) -> None:  # pragma: no cover - interface
        ...
