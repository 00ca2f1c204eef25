"""Payment request endpoints - create, proof exchange, PIN verification, reporting"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from vcpay_gateway.api.dependencies import get_orchestrator, get_request_id
from vcpay_gateway.api.v1.schemas import (
    AttemptSchema,
    CancelPaymentRequest,
    CleanupResponse,
    CompletionResponse,
    CreatePaymentRequest,
    PaymentListResponse,
    PaymentRequestResponse,
    VerifyPinRequest,
)
from vcpay_gateway.domain.exceptions import (
    AuthenticationError,
    InsufficientFundsError,
    InvalidPINError,
    InvalidStateError,
    PaymentExpiredError,
    PaymentNotFoundError,
    PaymentValidationError,
    VerifierAPIError,
)
from vcpay_gateway.domain.models import AttemptFilter
from vcpay_gateway.services.authorization import PaymentOrchestrator
from vcpay_gateway.utils.date_utils import ensure_utc

router = APIRouter()


@router.post("/payments", response_model=PaymentRequestResponse, status_code=201)
async def create_payment(
    request_body: CreatePaymentRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Create a payment request and start the proof exchange.

    A verifier outage does not fail creation: the request is returned
    without wallet links and with a warning.
    """
    request_id = get_request_id(request)

    try:
        payment_request = await orchestrator.create_payment_request(
            request_body.amount, request_body.merchant_id, request_body.description
        )
        exchange = await orchestrator.begin_proof_exchange(payment_request.id)
        return PaymentRequestResponse.from_domain(exchange.payment_request, warning=exchange.warning)

    except PaymentValidationError as e:
        orchestrator.db.rollback()
        logging.warning(f"Invalid payment request: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=400, detail=str(e))

    except Exception as e:
        orchestrator.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payments", response_model=PaymentListResponse)
async def list_payments(
    only_successful: bool = False,
    merchant_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Payment requests and ledger attempts with aggregate statistics"""
    filters = AttemptFilter(
        only_successful=only_successful,
        merchant_id=merchant_id,
        start=ensure_utc(start),
        end=ensure_utc(end),
        limit=limit,
    )
    listing = await orchestrator.list_attempts(filters)
    return PaymentListResponse(
        payment_requests=[PaymentRequestResponse.from_domain(r) for r in listing.payment_requests],
        attempts=[AttemptSchema.from_domain(a) for a in listing.attempts],
        statistics=listing.statistics,
        filters=asdict(listing.filters),
    )


@router.post("/payments/cleanup", response_model=CleanupResponse)
async def cleanup_payments(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Expire stale pending requests and purge old ones (attempts are kept)"""
    try:
        result = await orchestrator.cleanup()
        return CleanupResponse(expired=result.expired, purged=result.purged)

    except Exception as e:
        orchestrator.db.rollback()
        logging.error(f"Cleanup failed: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/payments/{payment_request_id}/status", response_model=PaymentRequestResponse)
async def get_payment_status(
    payment_request_id: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        return PaymentRequestResponse.from_domain(await orchestrator.get_status(payment_request_id))

    except PaymentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except Exception as e:
        orchestrator.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/payments/{payment_request_id}/advance", response_model=PaymentRequestResponse)
async def advance_payment(
    payment_request_id: str,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Poll the verifier and move to processing once the proof is accepted"""
    request_id = get_request_id(request)

    try:
        return PaymentRequestResponse.from_domain(await orchestrator.poll_and_advance(payment_request_id))

    except PaymentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except VerifierAPIError as e:
        orchestrator.db.rollback()
        logging.error(f"Verifier error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Credential verifier unavailable")

    except Exception as e:
        orchestrator.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/payments/{payment_request_id}/verify-pin", response_model=CompletionResponse)
async def verify_pin(
    payment_request_id: str,
    request_body: VerifyPinRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Verify the PIN against the account resolved from the proof and debit it.

    Status mapping:
    - 400 blank PIN
    - 401 wrong PIN or unusable credential
    - 402 insufficient funds
    - 404 unknown payment request
    - 409 not in processing state
    - 410 expired
    - 503 verifier unavailable
    """
    request_id = get_request_id(request)
    client_ip = request.client.host if request.client else None

    try:
        record = await orchestrator.verify_pin(
            payment_request_id,
            request_body.pin,
            client_ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )
        return CompletionResponse.from_domain(record)

    except PaymentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    except PaymentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except InvalidPINError as e:
        logging.warning(
            f"Invalid PIN: {e}",
            extra={"request_id": request_id, "consecutive_failures": e.consecutive_failures},
        )
        # Security side effects were queued on background_tasks; attach them to the error response
        return JSONResponse(status_code=401, content={"detail": str(e)}, background=background_tasks)

    except AuthenticationError as e:
        logging.warning(f"Credential rejected: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=401, detail=str(e))

    except InsufficientFundsError as e:
        raise HTTPException(status_code=402, detail=str(e))

    except PaymentExpiredError as e:
        raise HTTPException(status_code=410, detail=str(e))

    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    except VerifierAPIError as e:
        orchestrator.db.rollback()
        logging.error(f"Verifier error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Credential verifier unavailable")

    except Exception as e:
        orchestrator.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/payments/{payment_request_id}/cancel", response_model=PaymentRequestResponse)
async def cancel_payment(
    payment_request_id: str,
    request: Request,
    request_body: Optional[CancelPaymentRequest] = None,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    try:
        reason = request_body.reason if request_body else None
        return PaymentRequestResponse.from_domain(await orchestrator.cancel(payment_request_id, reason))

    except PaymentNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except InvalidStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    except Exception as e:
        orchestrator.db.rollback()
        logging.error(f"Unexpected error: {e}", extra={"request_id": get_request_id(request)})
        raise HTTPException(status_code=500, detail="Internal server error")
