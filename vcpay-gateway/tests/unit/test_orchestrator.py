"""Unit tests for the payment orchestrator (mocked verifier and notifier, sqlite ledger)"""

import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal
from vcpay_gateway.domain import state_machine
from vcpay_gateway.domain.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidCredentialError,
    InvalidPINError,
    InvalidStateError,
    PaymentExpiredError,
    PaymentNotFoundError,
    PaymentValidationError,
    VerifierAPIError,
)
from vcpay_gateway.domain.models import AttemptFilter, AttemptStatus, PaymentStatus, ProofState
from vcpay_gateway.infrastructure.database.models import AccountRow

CORRECT_PIN = "1234"
WRONG_PIN = "9999"


def _statuses(orchestrator, payment_request_id):
    return [a.status for a in orchestrator.ledger.by_payment_request(payment_request_id)]


def _scheduled_names(scheduled):
    return [func.__name__ for func, _, _ in scheduled]


# ----------------------------------------------------------------------
# Creation and proof exchange
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_payment_request(orchestrator, clock):
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1", "Coffee")

    assert request.status is PaymentStatus.PENDING
    assert request.expires_at == clock() + timedelta(minutes=30)
    assert (await orchestrator.get_status(request.id)) == request


@pytest.mark.asyncio
async def test_create_payment_request_rejects_invalid_input(orchestrator):
    with pytest.raises(PaymentValidationError):
        await orchestrator.create_payment_request(Decimal("0"), "m1")
    with pytest.raises(PaymentValidationError):
        await orchestrator.create_payment_request(Decimal("10"), " ")

    assert orchestrator.requests.count_by_status()["pending"] == 0


@pytest.mark.asyncio
async def test_begin_proof_exchange_attaches_links(orchestrator, verifier):
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")

    exchange = await orchestrator.begin_proof_exchange(request.id)

    assert exchange.warning is None
    assert exchange.payment_request.proof_reference == "proof-1"
    assert exchange.payment_request.state.qr_url == "openid4vp://proof?id=proof-1"
    verifier.share_proof.assert_awaited_once_with("proof-1")


@pytest.mark.asyncio
async def test_begin_proof_exchange_without_verifier_returns_warning(orchestrator, verifier):
    verifier.is_configured.return_value = False
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")

    exchange = await orchestrator.begin_proof_exchange(request.id)

    assert "not configured" in exchange.warning
    assert exchange.payment_request.status is PaymentStatus.PENDING
    assert exchange.payment_request.proof_reference is None
    verifier.request_proof.assert_not_called()


@pytest.mark.asyncio
async def test_begin_proof_exchange_survives_verifier_failure(orchestrator, verifier):
    verifier.request_proof.side_effect = VerifierAPIError("Verifier timeout")
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")

    exchange = await orchestrator.begin_proof_exchange(request.id)

    assert exchange.warning == "Proof request failed: Verifier timeout"
    assert exchange.payment_request.status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_begin_proof_exchange_keeps_reference_when_share_fails(orchestrator, verifier):
    verifier.share_proof.side_effect = VerifierAPIError("share failed")
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")

    exchange = await orchestrator.begin_proof_exchange(request.id)

    assert exchange.payment_request.proof_reference == "proof-1"
    assert exchange.payment_request.state.qr_url is None
    assert "share failed" in exchange.warning


@pytest.mark.asyncio
async def test_begin_proof_exchange_twice_is_rejected(orchestrator):
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")
    await orchestrator.begin_proof_exchange(request.id)

    with pytest.raises(InvalidStateError):
        await orchestrator.begin_proof_exchange(request.id)


@pytest.mark.asyncio
async def test_poll_advances_to_processing(processing_request):
    request = await processing_request()

    assert request.status is PaymentStatus.PROCESSING
    assert request.state.proof_state == "ACCEPTED"


@pytest.mark.asyncio
async def test_poll_keeps_pending_until_proof_accepted(orchestrator, verifier):
    verifier.get_proof_state.return_value = ProofState(state="PENDING")
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")
    await orchestrator.begin_proof_exchange(request.id)

    polled = await orchestrator.poll_and_advance(request.id)

    assert polled.status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_poll_is_idempotent_once_processing(orchestrator, processing_request, verifier):
    request = await processing_request()
    verifier.get_proof_state.reset_mock()

    again = await orchestrator.poll_and_advance(request.id)

    assert again.status is PaymentStatus.PROCESSING
    verifier.get_proof_state.assert_not_called()


@pytest.mark.asyncio
async def test_poll_verifier_error_leaves_request_unchanged(orchestrator, verifier):
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")
    await orchestrator.begin_proof_exchange(request.id)
    verifier.get_proof_state.side_effect = VerifierAPIError("Verifier unavailable")

    with pytest.raises(VerifierAPIError):
        await orchestrator.poll_and_advance(request.id)

    assert (await orchestrator.get_status(request.id)).status is PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_payment_request(orchestrator):
    with pytest.raises(PaymentNotFoundError):
        await orchestrator.get_status("pay_missing")
    with pytest.raises(PaymentNotFoundError):
        await orchestrator.verify_pin("pay_missing", CORRECT_PIN)


# ----------------------------------------------------------------------
# Expiry
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pending_request_expires_on_poll_once(orchestrator, clock):
    """PENDING past expiresAt -> EXPIRED with exactly one failed_expired row, second poll idempotent"""
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")
    clock.advance(minutes=31)

    first = await orchestrator.poll_and_advance(request.id)
    second = await orchestrator.poll_and_advance(request.id)

    assert first.status is PaymentStatus.EXPIRED
    assert second == first
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_EXPIRED]


@pytest.mark.asyncio
async def test_verify_pin_after_expiry_fails_processing_request(orchestrator, processing_request, clock, account):
    request = await processing_request()
    clock.advance(minutes=30)

    with pytest.raises(PaymentExpiredError) as exc_info:
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert str(exc_info.value) == state_machine.EXPIRED_DURING_PROCESSING_REASON
    status = await orchestrator.get_status(request.id)
    assert status.status is PaymentStatus.FAILED
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_EXPIRED]


# ----------------------------------------------------------------------
# PIN verification
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_verify_pin_completes_payment(orchestrator, processing_request, account, balance_cents):
    request = await processing_request(amount="50.00")

    record = await orchestrator.verify_pin(request.id, CORRECT_PIN, client_ip="10.0.0.1", user_agent="pytest")

    assert record.transaction_id.startswith("txn_")
    assert record.previous_balance == Decimal("100.00")
    assert record.new_balance == Decimal("50.00")
    assert record.cardholder_name == "Alice Smith"
    assert balance_cents("acc_alice") == 5000

    status = await orchestrator.get_status(request.id)
    assert status.status is PaymentStatus.COMPLETED
    assert status.state.transaction_id == record.transaction_id
    assert status.state.attempt_id == record.attempt_id

    [attempt] = orchestrator.ledger.by_payment_request(request.id)
    assert attempt.status is AttemptStatus.COMPLETED
    assert attempt.account_id == "acc_alice"
    assert attempt.previous_balance == Decimal("100.00")
    assert attempt.new_balance == Decimal("50.00")
    assert attempt.client_ip == "10.0.0.1"


@pytest.mark.asyncio
async def test_verify_pin_insufficient_funds(orchestrator, processing_request, account, set_balance, balance_cents):
    """Balance 10.00 against a 50.00 request with the right PIN -> FAILED, nothing debited"""
    set_balance("acc_alice", Decimal("10.00"))
    request = await processing_request(amount="50.00")

    with pytest.raises(InsufficientFundsError) as exc_info:
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert exc_info.value.available == Decimal("10.00")
    assert balance_cents("acc_alice") == 1000

    status = await orchestrator.get_status(request.id)
    assert status.status is PaymentStatus.FAILED
    assert status.state.error_reason == state_machine.INSUFFICIENT_FUNDS_REASON

    [attempt] = orchestrator.ledger.by_payment_request(request.id)
    assert attempt.status is AttemptStatus.FAILED_INSUFFICIENT_FUNDS
    assert attempt.previous_balance == Decimal("10.00")
    assert attempt.error_details == "Available: 10.00, Required: 50.00"


@pytest.mark.asyncio
async def test_verify_pin_wrong_pin_keeps_request_processing(orchestrator, processing_request, account, balance_cents):
    request = await processing_request()

    with pytest.raises(InvalidPINError) as exc_info:
        await orchestrator.verify_pin(request.id, WRONG_PIN)

    assert exc_info.value.consecutive_failures == 1
    assert (await orchestrator.get_status(request.id)).status is PaymentStatus.PROCESSING
    assert balance_cents("acc_alice") == 10000
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_PIN]

    # Retry with the right PIN still works
    record = await orchestrator.verify_pin(request.id, CORRECT_PIN)
    assert record.new_balance == Decimal("50.00")


@pytest.mark.asyncio
async def test_verify_pin_requires_pin(orchestrator, processing_request, account):
    request = await processing_request()

    with pytest.raises(PaymentValidationError):
        await orchestrator.verify_pin(request.id, "  ")

    assert _statuses(orchestrator, request.id) == []


@pytest.mark.asyncio
async def test_verify_pin_on_pending_request_is_invalid_state(orchestrator, account):
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")

    with pytest.raises(InvalidStateError) as exc_info:
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert exc_info.value.current_status == "pending"
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_INVALID_STATE]


@pytest.mark.asyncio
async def test_verify_pin_twice_after_completion(orchestrator, processing_request, account, balance_cents):
    request = await processing_request()
    await orchestrator.verify_pin(request.id, CORRECT_PIN)

    with pytest.raises(InvalidStateError):
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert balance_cents("acc_alice") == 5000
    assert _statuses(orchestrator, request.id) == [AttemptStatus.COMPLETED, AttemptStatus.FAILED_INVALID_STATE]


@pytest.mark.asyncio
async def test_verify_pin_without_claims_is_invalid_credential(orchestrator, processing_request, verifier, account):
    verifier.get_proof_state.return_value = ProofState(state="ACCEPTED", claims={"cardHolderName": "Alice Smith"})
    request = await processing_request()

    with pytest.raises(InvalidCredentialError) as exc_info:
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert type(exc_info.value) is InvalidCredentialError
    assert str(exc_info.value) == "Required credential data not found"
    assert (await orchestrator.get_status(request.id)).status is PaymentStatus.PROCESSING
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_INVALID_CREDENTIAL]


@pytest.mark.asyncio
async def test_verify_pin_with_unknown_cardholder(orchestrator, processing_request, verifier, account):
    verifier.get_proof_state.return_value = ProofState(
        state="ACCEPTED", claims={"cardHolderName": "Mallory", "last4Digits": "4242"}
    )
    request = await processing_request()

    with pytest.raises(AccountNotFoundError):
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    [attempt] = orchestrator.ledger.by_payment_request(request.id)
    assert attempt.status is AttemptStatus.FAILED_INVALID_CREDENTIAL
    assert attempt.error_details == "Credential: Mallory - *4242"


@pytest.mark.asyncio
async def test_verify_pin_when_verifier_unavailable(orchestrator, processing_request, verifier, account):
    request = await processing_request()
    verifier.get_proof_state.side_effect = VerifierAPIError("Verifier unavailable")

    with pytest.raises(VerifierAPIError):
        await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert _statuses(orchestrator, request.id) == []
    assert (await orchestrator.get_status(request.id)).status is PaymentStatus.PROCESSING


# ----------------------------------------------------------------------
# Security thresholds
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_consecutive_pin_failures_alert_then_revoke(
    orchestrator, processing_request, account, scheduled, verifier, notifier
):
    """alert at 2 consecutive failures, revoke at 5"""
    request = await processing_request()

    counts = []
    for _ in range(5):
        with pytest.raises(InvalidPINError) as exc_info:
            await orchestrator.verify_pin(request.id, WRONG_PIN)
        counts.append(exc_info.value.consecutive_failures)

    assert counts == [1, 2, 3, 4, 5]
    # One alert per failing check at or above the alert threshold
    assert _scheduled_names(scheduled) == [
        "send_security_alert",
        "send_security_alert",
        "send_security_alert",
        "send_security_alert",
        "revoke_credential_and_notify",
    ]

    # Run the queued side effects the way the request lifecycle would
    for func, args, kwargs in scheduled:
        assert await func(*args, **kwargs) is True

    assert notifier.send_security_alert.await_count == 4
    verifier.revoke.assert_awaited_once_with("cred-alice")
    notifier.send_revoked.assert_awaited_once()


@pytest.mark.asyncio
async def test_completed_payment_resets_failure_streak(orchestrator, processing_request, account, scheduled):
    """4 failed PINs then a successful payment -> streak back to 0"""
    request = await processing_request()
    for _ in range(4):
        with pytest.raises(InvalidPINError):
            await orchestrator.verify_pin(request.id, WRONG_PIN)

    await orchestrator.verify_pin(request.id, CORRECT_PIN)

    assert orchestrator.engine.consecutive_failures("acc_alice") == 0
    assert "revoke_credential_and_notify" not in _scheduled_names(scheduled)

    report = orchestrator.security_report("acc_alice")
    assert report["pin_failures"] == 4
    assert report["successful_payments"] == 1
    assert report["risk_level"] == "LOW"


@pytest.mark.asyncio
async def test_failure_streak_spans_payment_requests(orchestrator, processing_request, account):
    first = await processing_request()
    second = await processing_request()

    with pytest.raises(InvalidPINError):
        await orchestrator.verify_pin(first.id, WRONG_PIN)
    with pytest.raises(InvalidPINError) as exc_info:
        await orchestrator.verify_pin(second.id, WRONG_PIN)

    assert exc_info.value.consecutive_failures == 2


@pytest.mark.asyncio
async def test_side_effect_failure_does_not_change_pin_result(
    orchestrator, processing_request, account, scheduled, notifier
):
    notifier.send_security_alert.side_effect = RuntimeError("smtp down")
    request = await processing_request()

    for _ in range(2):
        with pytest.raises(InvalidPINError):
            await orchestrator.verify_pin(request.id, WRONG_PIN)

    func, args, kwargs = scheduled[-1]
    assert await func(*args, **kwargs) is False
    assert (await orchestrator.get_status(request.id)).status is PaymentStatus.PROCESSING


# ----------------------------------------------------------------------
# Concurrency
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_concurrent_verify_pin_completes_once(orchestrator, processing_request, account, balance_cents):
    request = await processing_request()

    results = await asyncio.gather(
        orchestrator.verify_pin(request.id, CORRECT_PIN),
        orchestrator.verify_pin(request.id, CORRECT_PIN),
        return_exceptions=True,
    )

    completed = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(completed) == 1
    assert len(rejected) == 1
    assert balance_cents("acc_alice") == 5000


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(orchestrator, processing_request, account, balance_cents):
    first = await processing_request(amount="60.00")
    second = await processing_request(amount="60.00")

    results = await asyncio.gather(
        orchestrator.verify_pin(first.id, CORRECT_PIN),
        orchestrator.verify_pin(second.id, CORRECT_PIN),
        return_exceptions=True,
    )

    assert sum(1 for r in results if isinstance(r, InsufficientFundsError)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert balance_cents("acc_alice") == 4000


# ----------------------------------------------------------------------
# Cancel, listing and retention
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_cancel_pending_request(orchestrator):
    request = await orchestrator.create_payment_request(Decimal("50.00"), "m1")

    cancelled = await orchestrator.cancel(request.id, reason="customer left")

    assert cancelled.status is PaymentStatus.CANCELLED
    assert cancelled.state.reason == "customer left"

    with pytest.raises(InvalidStateError):
        await orchestrator.cancel(request.id)
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_INVALID_STATE]


@pytest.mark.asyncio
async def test_list_attempts_with_statistics(orchestrator, processing_request, account):
    paid = await processing_request(amount="20.00", merchant_id="m1")
    await orchestrator.verify_pin(paid.id, CORRECT_PIN)
    other = await processing_request(amount="5.00", merchant_id="m2")
    with pytest.raises(InvalidPINError):
        await orchestrator.verify_pin(other.id, WRONG_PIN)

    listing = await orchestrator.list_attempts()
    assert len(listing.attempts) == 2
    assert listing.statistics["attempts"]["successful"] == 1
    assert listing.statistics["attempts"]["failed_pin"] == 1
    assert listing.statistics["attempts"]["total_amount"] == Decimal("20.00")
    assert listing.statistics["payment_requests"]["completed"] == 1
    assert "merchant" not in listing.statistics

    filtered = await orchestrator.list_attempts(AttemptFilter(merchant_id="m2"))
    assert [a.merchant_id for a in filtered.attempts] == ["m2"]
    assert [r.id for r in filtered.payment_requests] == [other.id]
    assert filtered.statistics["merchant"]["attempts"]["failed"] == 1

    successful = await orchestrator.list_attempts(AttemptFilter(only_successful=True))
    assert [a.status for a in successful.attempts] == [AttemptStatus.COMPLETED]


@pytest.mark.asyncio
async def test_cleanup_expires_then_purges(orchestrator, clock):
    first = await orchestrator.create_payment_request(Decimal("1.00"), "m1")
    await orchestrator.create_payment_request(Decimal("2.00"), "m1")
    clock.advance(minutes=31)

    result = await orchestrator.cleanup()
    assert (result.expired, result.purged) == (2, 0)
    assert (await orchestrator.get_status(first.id)).status is PaymentStatus.EXPIRED

    clock.advance(hours=25)
    result = await orchestrator.cleanup()
    assert (result.expired, result.purged) == (0, 2)

    with pytest.raises(PaymentNotFoundError):
        await orchestrator.get_status(first.id)
    # Ledger rows outlive the purged requests
    assert _statuses(orchestrator, first.id) == [AttemptStatus.FAILED_EXPIRED]


@pytest.mark.asyncio
async def test_purge_keeps_recent_terminal_requests(orchestrator, processing_request, account, clock):
    request = await processing_request()
    await orchestrator.verify_pin(request.id, CORRECT_PIN)

    clock.advance(hours=23)
    assert orchestrator.purge_old() == 0
    clock.advance(hours=2)
    assert orchestrator.purge_old() == 1


@pytest.mark.asyncio
async def test_purge_leaves_lapsed_pending_request_for_expiry(orchestrator, clock):
    request = await orchestrator.create_payment_request(Decimal("1.00"), "m1")
    clock.advance(minutes=31)

    assert orchestrator.purge_old() == 0

    # Still there, and the expiry leaves its audit row when observed
    assert (await orchestrator.get_status(request.id)).status is PaymentStatus.EXPIRED
    assert _statuses(orchestrator, request.id) == [AttemptStatus.FAILED_EXPIRED]


@pytest.mark.asyncio
async def test_list_attempts_expires_requests_past_window(orchestrator, processing_request, clock):
    pending = await orchestrator.create_payment_request(Decimal("1.00"), "m1")
    processing = await processing_request()
    clock.advance(minutes=31)

    listing = await orchestrator.list_attempts()

    statuses = {r.id: r.status for r in listing.payment_requests}
    assert statuses[pending.id] is PaymentStatus.EXPIRED
    assert statuses[processing.id] is PaymentStatus.FAILED
    assert listing.statistics["payment_requests"]["pending"] == 0
    assert listing.statistics["payment_requests"]["processing"] == 0
    assert listing.statistics["payment_requests"]["expired"] == 1
    assert _statuses(orchestrator, pending.id) == [AttemptStatus.FAILED_EXPIRED]
    assert _statuses(orchestrator, processing.id) == [AttemptStatus.FAILED_EXPIRED]


# ----------------------------------------------------------------------
# Credential suspension and configuration
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_suspend_credential(orchestrator, account, verifier, notifier, scheduled, clock):
    result = await orchestrator.suspend_credential("cred-alice", "acc_alice")

    assert result.suspended_until == clock() + timedelta(days=30)
    verifier.suspend.assert_awaited_once_with("cred-alice", result.suspended_until)
    assert _scheduled_names(scheduled) == ["send_suspension_confirmation"]

    func, args, kwargs = scheduled[0]
    await func(*args, **kwargs)
    notifier.send_suspended.assert_awaited_once()


@pytest.mark.asyncio
async def test_suspend_credential_validation(orchestrator, account, verifier, db):
    with pytest.raises(PaymentValidationError):
        await orchestrator.suspend_credential("", "acc_alice")
    with pytest.raises(AccountNotFoundError):
        await orchestrator.suspend_credential("cred-alice", "acc_missing")
    with pytest.raises(PaymentValidationError):
        await orchestrator.suspend_credential("cred-mallory", "acc_alice")
    verifier.suspend.assert_not_called()

    db.add(
        AccountRow(
            id="acc_bob", cardholder_name="Bob", email="bob@example.com", pan_last4="1111", balance_cents=0, pin="0000"
        )
    )
    db.commit()
    verifier.suspend.side_effect = VerifierAPIError("Verifier unavailable")
    with pytest.raises(VerifierAPIError):
        await orchestrator.suspend_credential("cred-bob", "acc_bob")


def test_security_configuration(orchestrator):
    config = orchestrator.security_configuration()

    assert config["alert_threshold"] == 2
    assert config["revoke_threshold"] == 5
    assert config["threshold_percentages"]["alert_percentage"] == 40
