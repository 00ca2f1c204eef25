"""Security endpoints - threshold configuration, account risk report, credential suspension"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from vcpay_gateway.api.dependencies import get_orchestrator, get_request_id
from vcpay_gateway.api.v1.schemas import (
    AttemptSchema,
    SecurityConfigResponse,
    SecurityReportResponse,
    SuspendCredentialRequest,
    SuspendCredentialResponse,
)
from vcpay_gateway.domain.exceptions import AccountNotFoundError, PaymentValidationError, VerifierAPIError
from vcpay_gateway.services.authorization import PaymentOrchestrator

router = APIRouter()


@router.get("/security/config", response_model=SecurityConfigResponse)
def get_security_config(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    return SecurityConfigResponse(**orchestrator.security_configuration())


@router.get("/security/accounts/{account_id}", response_model=SecurityReportResponse)
def get_account_security(account_id: str, orchestrator: PaymentOrchestrator = Depends(get_orchestrator)):
    """Consecutive PIN failures and risk level, derived from the attempt ledger"""
    report = orchestrator.security_report(account_id)
    last_attempt = report.pop("last_attempt")
    return SecurityReportResponse(
        **report,
        last_attempt=AttemptSchema.from_domain(last_attempt) if last_attempt else None,
    )


@router.post("/security/suspend-credential", response_model=SuspendCredentialResponse)
async def suspend_credential(
    request_body: SuspendCredentialRequest,
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """Customer-initiated suspension (linked from the security alert email)"""
    request_id = get_request_id(request)

    try:
        result = await orchestrator.suspend_credential(request_body.credential_id, request_body.account_id)
        return SuspendCredentialResponse(
            credential_id=result.credential_id,
            account_id=result.account_id,
            suspended_until=result.suspended_until,
        )

    except PaymentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    except AccountNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    except VerifierAPIError as e:
        logging.error(f"Credential suspension failed: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=503, detail="Credential verifier unavailable")

    except Exception as e:
        logging.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")
