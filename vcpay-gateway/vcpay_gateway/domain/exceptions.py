"""Domain-specific exceptions"""

from decimal import Decimal
from typing import Optional


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


# Validation


class PaymentValidationError(DomainException):
    """Input rejected before any state was created or mutated"""

    pass


# Lookup


class PaymentNotFoundError(DomainException):
    """No payment request exists with the given id"""

    def __init__(self, payment_request_id: str):
        super().__init__(f"Payment request not found: {payment_request_id}")
        self.payment_request_id = payment_request_id


# State


class InvalidStateError(DomainException):
    """Operation is not valid for the payment request's current status"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


# Authentication


class AuthenticationError(DomainException):
    """Customer could not be authenticated"""

    pass


class InvalidPINError(AuthenticationError):
    """PIN did not match the resolved account"""

    def __init__(self, consecutive_failures: int):
        super().__init__("Invalid PIN. Please check and try again.")
        self.consecutive_failures = consecutive_failures


class InvalidCredentialError(AuthenticationError):
    """Proof was not accepted or did not carry the required claims"""

    pass


class AccountNotFoundError(InvalidCredentialError):
    """No account matches the presented credential claims"""

    pass


# Business


class InsufficientFundsError(DomainException):
    """Account balance is lower than the payment amount"""

    def __init__(self, available: Decimal, required: Decimal):
        super().__init__(f"Insufficient balance. Available: {available:.2f}, Required: {required:.2f}")
        self.available = available
        self.required = required


class PaymentExpiredError(DomainException):
    """Payment request passed its expiry window"""

    pass


# Collaborators


class VerifierAPIError(DomainException):
    """Credential verifier returned an error or is unavailable"""

    pass


class VerifierNotConfiguredError(VerifierAPIError):
    """Credential verifier credentials/schema are not configured"""

    pass


class NotificationError(DomainException):
    """Notification service rejected or did not accept an event"""

    pass


# Ledger


class LedgerError(DomainException):
    """Attempt could not be appended (malformed input)"""

    pass


class LedgerImmutableError(LedgerError):
    """Attempt rows are append-only"""

    pass
