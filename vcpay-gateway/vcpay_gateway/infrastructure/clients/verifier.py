"""Credential verifier HTTP client (Procivis-style REST API with OAuth2 client credentials)"""

import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from vcpay_gateway.config import settings
from vcpay_gateway.domain.exceptions import VerifierAPIError, VerifierNotConfiguredError
from vcpay_gateway.domain.models import ProofShare, ProofState
from vcpay_gateway.infrastructure.observability.metrics import verifier_failure_counter

logger = logging.getLogger(__name__)

PROOF_EXCHANGE_PROTOCOL = "OPENID4VP_DRAFT25"
TOKEN_EXPIRY_MARGIN_SECONDS = 30


class VerifierClient:
    """Client for the external credential verifier"""

    def __init__(
        self,
        base_url: str | None = None,
        token_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        proof_schema_id: str | None = None,
        verifier_id: str | None = None,
        verifier_key_id: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.verifier_api_base).rstrip("/")
        self.token_url = token_url or settings.verifier_token_url
        self.client_id = client_id or settings.verifier_client_id
        self.client_secret = settings.verifier_client_secret if client_secret is None else client_secret
        self.proof_schema_id = settings.verifier_proof_schema_id if proof_schema_id is None else proof_schema_id
        self.verifier_id = settings.verifier_issuer_id if verifier_id is None else verifier_id
        self.verifier_key_id = settings.verifier_issuer_key_id if verifier_key_id is None else verifier_key_id
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

        self._access_token: Optional[str] = None
        self._token_expires_at: float = 0.0

    def is_configured(self) -> bool:
        return bool(self.client_secret and self.proof_schema_id)

    async def request_proof(self) -> str:
        """
        Create a proof request for the card credential schema.

        Returns: proof request id

        Raises:
            VerifierNotConfiguredError: Missing client secret or proof schema
            VerifierAPIError: On timeout, HTTP errors, or missing id
        """
        payload = {
            "proofSchemaId": self.proof_schema_id,
            "verifier": self.verifier_id,
            "verifierKey": self.verifier_key_id,
            "protocol": PROOF_EXCHANGE_PROTOCOL,
            "exchange": PROOF_EXCHANGE_PROTOCOL,
        }
        data = await self._call("request_proof", "POST", "/api/proof-request/v1", json=payload)
        if not data.get("id"):
            verifier_failure_counter.labels(operation="request_proof").inc()
            raise VerifierAPIError("Verifier did not return a proof request id")
        return data["id"]

    async def share_proof(self, proof_reference: str) -> ProofShare:
        data = await self._call("share_proof", "POST", f"/api/proof-request/v1/{proof_reference}/share")
        if not data.get("url"):
            verifier_failure_counter.labels(operation="share_proof").inc()
            raise VerifierAPIError("Verifier did not return sharing URLs")
        return ProofShare(qr_url=data["url"], app_url=data.get("appUrl"))

    async def get_proof_state(self, proof_reference: str) -> ProofState:
        data = await self._call("get_proof_state", "GET", f"/api/proof-request/v1/{proof_reference}")
        try:
            return ProofState(
                state=data["state"],
                claims=_extract_claims(data),
                completed_at=_parse_datetime(data.get("completedDate")),
            )
        except (KeyError, TypeError, ValueError) as e:
            verifier_failure_counter.labels(operation="get_proof_state").inc()
            raise VerifierAPIError(f"Invalid proof request data from verifier: {e}") from e

    async def revoke(self, credential_id: str) -> None:
        await self._call("revoke", "POST", f"/api/credential/v1/{credential_id}/revoke")
        logger.info("Credential revoked", extra={"credential_id": credential_id})

    async def suspend(self, credential_id: str, until: datetime) -> None:
        await self._call(
            "suspend",
            "POST",
            f"/api/credential/v1/{credential_id}/suspend",
            json={"suspendEndDate": until.isoformat()},
        )
        logger.info("Credential suspended", extra={"credential_id": credential_id, "until": until.isoformat()})

    async def _call(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Authenticated request with one re-authentication after a 401.

        Empty or non-JSON success bodies (204 No Content) decode to {}.
        """
        if not self.is_configured():
            raise VerifierNotConfiguredError("Credential verifier is not configured")

        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await self._send(client, method, path, **kwargs)
                if response.status_code == 401:
                    logger.warning("Verifier rejected token, re-authenticating", extra={"operation": operation})
                    self.clear_token()
                    response = await self._send(client, method, path, **kwargs)
                response.raise_for_status()

            except httpx.TimeoutException as e:
                verifier_failure_counter.labels(operation=operation).inc()
                raise VerifierAPIError(f"Verifier timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                verifier_failure_counter.labels(operation=operation).inc()
                raise VerifierAPIError(f"Verifier API error ({operation}): {e.response.status_code}") from e
            except httpx.RequestError as e:
                verifier_failure_counter.labels(operation=operation).inc()
                raise VerifierAPIError(f"Verifier unreachable ({operation}): {e}") from e

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def _send(self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._get_token(client)
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        return await client.request(method, path, headers=headers, **kwargs)

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        """Cached client-credentials token, refreshed shortly before expiry"""
        if self._access_token and time.monotonic() < self._token_expires_at:
            return self._access_token

        response = await client.post(
            self.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        if response.status_code != 200:
            raise httpx.HTTPStatusError(
                f"Verifier authentication failed: {response.status_code}",
                request=response.request,
                response=response,
            )
        try:
            token_data = response.json()
            self._access_token = token_data["access_token"]
            expires_in = float(token_data.get("expires_in", 300))
        except (KeyError, TypeError, ValueError) as e:
            verifier_failure_counter.labels(operation="token").inc()
            raise VerifierAPIError("Verifier returned an invalid token response") from e
        self._token_expires_at = time.monotonic() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        return self._access_token

    def clear_token(self) -> None:
        self._access_token = None
        self._token_expires_at = 0.0


def _extract_claims(data: Dict[str, Any]) -> Dict[str, str]:
    """Flatten the first proof input's claims into {path: value}"""
    inputs = data.get("proofInputs") or []
    if not inputs:
        return {}
    claims: Dict[str, str] = {}
    for claim in inputs[0].get("claims") or []:
        path = claim.get("path") or (claim.get("schema") or {}).get("key")
        value = claim.get("value")
        if path and value is not None:
            claims[path] = value
    return claims


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))
