"""Dependency injection for FastAPI endpoints"""

from functools import lru_cache

from fastapi import BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from vcpay_gateway.config import settings
from vcpay_gateway.domain.security import SecurityPolicy
from vcpay_gateway.infrastructure.clients.notifier import WebhookNotifier
from vcpay_gateway.infrastructure.clients.verifier import VerifierClient
from vcpay_gateway.infrastructure.database.session import get_db
from vcpay_gateway.services.authorization import PaymentOrchestrator


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


@lru_cache
def get_verifier_client() -> VerifierClient:
    """Provide the credential verifier client (shared so its access token is reused)"""
    return VerifierClient()


def get_notifier() -> WebhookNotifier:
    """Provide notification webhook client instance"""
    return WebhookNotifier()


@lru_cache
def get_security_policy() -> SecurityPolicy:
    """Thresholds are validated once per process"""
    return SecurityPolicy.from_settings(settings)


def get_orchestrator(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    verifier: VerifierClient = Depends(get_verifier_client),
    notifier: WebhookNotifier = Depends(get_notifier),
    policy: SecurityPolicy = Depends(get_security_policy),
) -> PaymentOrchestrator:
    """Request-scoped orchestrator; side effects run as response background tasks"""
    return PaymentOrchestrator(
        db=db,
        verifier=verifier,
        notifier=notifier,
        policy=policy,
        scheduler=background_tasks.add_task,
    )
