"""Aggregate statistics over payment requests and the attempt ledger"""

from decimal import Decimal
from typing import Any, Dict, Iterable, List

from vcpay_gateway.domain.models import FAILURE_KINDS, AttemptStatus, PaymentAttempt, PaymentStatus
from vcpay_gateway.utils.money import CENT


def _amount_summary(successful: List[PaymentAttempt]) -> Dict[str, Decimal]:
    total = sum((a.amount for a in successful), Decimal("0")).quantize(CENT)
    average = (total / len(successful)).quantize(CENT) if successful else Decimal("0.00")
    return {"total_amount": total, "average_amount": average}


def payment_statistics(request_counts: Dict[str, int], attempts: Iterable[PaymentAttempt]) -> Dict[str, Any]:
    """
    Overall statistics, computed on demand.

    Amount totals and averages cover successful attempts only.
    """
    attempts = list(attempts)
    successful = [a for a in attempts if a.status is AttemptStatus.COMPLETED]

    requests = {status.value: request_counts.get(status.value, 0) for status in PaymentStatus}
    requests["total"] = sum(requests.values())

    attempt_stats: Dict[str, Any] = {"total": len(attempts), "successful": len(successful)}
    for kind in FAILURE_KINDS:
        attempt_stats[kind.value] = sum(1 for a in attempts if a.status is kind)
    attempt_stats.update(_amount_summary(successful))

    return {"payment_requests": requests, "attempts": attempt_stats}


def merchant_statistics(
    merchant_id: str, request_counts: Dict[str, int], attempts: Iterable[PaymentAttempt]
) -> Dict[str, Any]:
    attempts = [a for a in attempts if a.merchant_id == merchant_id]
    successful = [a for a in attempts if a.status is AttemptStatus.COMPLETED]

    attempt_stats: Dict[str, Any] = {
        "total": len(attempts),
        "successful": len(successful),
        "failed": len(attempts) - len(successful),
    }
    attempt_stats.update(_amount_summary(successful))

    return {
        "merchant_id": merchant_id,
        "requests": {
            "total": sum(request_counts.values()),
            "pending": request_counts.get(PaymentStatus.PENDING.value, 0),
            "completed": request_counts.get(PaymentStatus.COMPLETED.value, 0),
        },
        "attempts": attempt_stats,
    }
