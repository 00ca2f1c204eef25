"""Security threshold engine - progressive response to consecutive PIN failures"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Union

from vcpay_gateway.domain.models import AttemptStatus, PaymentAttempt

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLD = 2
DEFAULT_REVOKE_THRESHOLD = 5


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class SecurityStatus:
    """Human-readable view of a risk level"""

    level: RiskLevel
    message: str
    action: str  # none | monitor | alert_sent | credential_revoked


@dataclass(frozen=True)
class SecurityPolicy:
    """
    Alert/revoke thresholds, immutable once loaded.

    Invariant: 1 <= alert_threshold < revoke_threshold. Build through
    from_thresholds() so bad configuration is corrected with a warning
    instead of failing startup.
    """

    alert_threshold: int
    revoke_threshold: int

    @classmethod
    def from_thresholds(cls, alert_threshold: int, revoke_threshold: int) -> "SecurityPolicy":
        """
        Validate raw thresholds.

        Corrections (each logged as a warning):
        - revoke < 2: fall back to the default revoke threshold (5), since no
          alert threshold could sit below it
        - alert < 1: fall back to the default alert threshold (2)
        - alert >= revoke: clamp alert to revoke - 1
        """
        if revoke_threshold < 2:
            logger.warning(
                "Revoke threshold must be at least 2, defaulting",
                extra={"configured": revoke_threshold, "default": DEFAULT_REVOKE_THRESHOLD},
            )
            revoke_threshold = DEFAULT_REVOKE_THRESHOLD

        if alert_threshold < 1:
            logger.warning(
                "Alert threshold must be at least 1, defaulting",
                extra={"configured": alert_threshold, "default": DEFAULT_ALERT_THRESHOLD},
            )
            alert_threshold = DEFAULT_ALERT_THRESHOLD

        if alert_threshold >= revoke_threshold:
            logger.warning(
                "Alert threshold must be below revoke threshold, clamping to revoke - 1",
                extra={"alert_threshold": alert_threshold, "revoke_threshold": revoke_threshold},
            )
            alert_threshold = revoke_threshold - 1

        logger.info(
            "Security configuration loaded",
            extra={"alert_threshold": alert_threshold, "revoke_threshold": revoke_threshold},
        )
        return cls(alert_threshold=alert_threshold, revoke_threshold=revoke_threshold)

    @classmethod
    def from_settings(cls, settings: Any) -> "SecurityPolicy":
        return cls.from_thresholds(
            settings.max_pin_failures_before_alert,
            settings.max_pin_failures_before_revoke,
        )

    def should_alert(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= self.alert_threshold

    def should_revoke(self, consecutive_failures: int) -> bool:
        return consecutive_failures >= self.revoke_threshold

    def risk_level(self, consecutive_failures: int) -> RiskLevel:
        """
        Bands relative to the thresholds:
        - CRITICAL: at or above revoke threshold
        - HIGH:     at or above alert threshold
        - MEDIUM:   at or above half the alert threshold (rounded up)
        - LOW:      otherwise
        """
        if consecutive_failures >= self.revoke_threshold:
            return RiskLevel.CRITICAL
        elif consecutive_failures >= self.alert_threshold:
            return RiskLevel.HIGH
        elif consecutive_failures >= math.ceil(self.alert_threshold / 2):
            return RiskLevel.MEDIUM
        else:
            return RiskLevel.LOW

    def security_status(self, consecutive_failures: int) -> SecurityStatus:
        level = self.risk_level(consecutive_failures)
        if level is RiskLevel.CRITICAL:
            return SecurityStatus(
                level, f"{consecutive_failures} consecutive PIN failures - credential revoked", "credential_revoked"
            )
        if level is RiskLevel.HIGH:
            return SecurityStatus(
                level, f"{consecutive_failures} consecutive PIN failures - security alert sent", "alert_sent"
            )
        if level is RiskLevel.MEDIUM:
            return SecurityStatus(level, f"{consecutive_failures} consecutive PIN failures detected", "monitor")
        return SecurityStatus(level, "Account security normal", "none")

    def threshold_percentages(self) -> Dict[str, int]:
        """Thresholds as percentages of the revoke threshold (half-up rounding)"""
        total = self.revoke_threshold
        return {
            "alert_percentage": math.floor(self.alert_threshold * 100 / total + 0.5),
            "revoke_percentage": 100,
            "safe_zone_percentage": math.floor((self.alert_threshold - 1) * 100 / total + 0.5),
        }

    def configuration(self) -> Dict[str, Any]:
        return {
            "alert_threshold": self.alert_threshold,
            "revoke_threshold": self.revoke_threshold,
            "validation_status": "configured",
            "source": "environment_variables",
            "threshold_percentages": self.threshold_percentages(),
        }


def consecutive_pin_failures(attempts_newest_first: Iterable[Union[PaymentAttempt, AttemptStatus, str]]) -> int:
    """
    Count the current PIN-failure streak for one account.

    Walks the account's ledger rows newest-first:
    - failed_pin increments the streak
    - completed ends the scan (a successful payment resets the streak)
    - every other failure kind (expired, insufficient funds, invalid
      credential, invalid state) is skipped: it neither breaks nor extends
      the streak

    Never stored; always recomputed from the ledger.
    """
    streak = 0
    for attempt in attempts_newest_first:
        status = AttemptStatus(attempt.status if isinstance(attempt, PaymentAttempt) else attempt)
        if status is AttemptStatus.FAILED_PIN:
            streak += 1
        elif status is AttemptStatus.COMPLETED:
            break
    return streak


@dataclass(frozen=True)
class SecurityDecision:
    """What the engine wants done after a failed PIN check"""

    account_id: str
    consecutive_failures: int
    risk_level: RiskLevel
    alert: bool
    revoke: bool
    status: SecurityStatus


class AccountAttemptSource(Protocol):
    def by_account(self, account_id: str) -> List[PaymentAttempt]:
        """Ledger rows for one account, newest first"""
        ...


class SecurityThresholdEngine:
    """Derive risk from the attempt ledger and decide alert/revoke"""

    def __init__(self, ledger: AccountAttemptSource, policy: SecurityPolicy):
        self.ledger = ledger
        self.policy = policy

    def consecutive_failures(self, account_id: str) -> int:
        return consecutive_pin_failures(self.ledger.by_account(account_id))

    def evaluate(self, account_id: str) -> SecurityDecision:
        count = self.consecutive_failures(account_id)
        decision = SecurityDecision(
            account_id=account_id,
            consecutive_failures=count,
            risk_level=self.policy.risk_level(count),
            alert=self.policy.should_alert(count),
            revoke=self.policy.should_revoke(count),
            status=self.policy.security_status(count),
        )
        logger.info(
            "Security evaluation",
            extra={
                "account_id": account_id,
                "consecutive_failures": count,
                "risk_level": decision.risk_level.value,
                "alert": decision.alert,
                "revoke": decision.revoke,
            },
        )
        return decision

    def statistics(self, account_id: str) -> Dict[str, Any]:
        """Per-account security report, computed from the ledger on demand"""
        attempts = self.ledger.by_account(account_id)
        count = consecutive_pin_failures(attempts)
        status = self.policy.security_status(count)
        last_attempt: Optional[PaymentAttempt] = attempts[0] if attempts else None
        return {
            "account_id": account_id,
            "total_attempts": len(attempts),
            "successful_payments": sum(1 for a in attempts if a.status is AttemptStatus.COMPLETED),
            "pin_failures": sum(1 for a in attempts if a.status is AttemptStatus.FAILED_PIN),
            "consecutive_pin_failures": count,
            "last_attempt": last_attempt,
            "risk_level": status.level.value,
            "status_message": status.message,
            "action": status.action,
        }
