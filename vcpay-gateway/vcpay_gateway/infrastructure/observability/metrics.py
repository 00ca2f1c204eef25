"""Prometheus metrics for monitoring authorization outcomes, security actions, and collaborator health"""

from prometheus_client import Counter, Histogram

# Payment metrics
payment_request_counter = Counter(
    "vcpay_payment_requests_total",
    "Payment requests created",
)

payment_attempt_counter = Counter(
    "vcpay_payment_attempts_total",
    "Ledger appends by attempt status",
    ["status"],  # completed | failed_pin | failed_expired | ...
)

state_transition_counter = Counter(
    "vcpay_state_transitions_total",
    "Payment request transitions by target status",
    ["to_status"],
)

# Security metrics
security_action_counter = Counter(
    "vcpay_security_actions_total",
    "Security side effects by action and outcome",
    ["action", "outcome"],  # alert|revoke|revoked_notice|suspend_notice x success|failure|skipped
)

side_effect_latency_histogram = Histogram(
    "vcpay_side_effect_latency_seconds",
    "Security side effect duration including retries",
    ["action"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

# Verifier metrics
verifier_failure_counter = Counter(
    "vcpay_verifier_failures_total",
    "Failed credential verifier calls",
    ["operation"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_attempt(status: str) -> None:
    payment_attempt_counter.labels(status=status).inc()


def record_transition(to_status: str) -> None:
    state_transition_counter.labels(to_status=to_status).inc()


def record_security_action(action: str, outcome: str) -> None:
    security_action_counter.labels(action=action, outcome=outcome).inc()
