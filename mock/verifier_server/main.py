from fastapi import FastAPI, Form, Header, HTTPException, Response
from typing import Dict, Optional
import uuid

app = FastAPI(title="Mock Credential Verifier", version="1.0.0")

# In-memory state, reset between test runs
TOKENS: set = set()
PROOFS: Dict[str, dict] = {}
CREDENTIALS: Dict[str, dict] = {}
CLIENT_SECRET = "mock-secret"


def reset() -> None:
    TOKENS.clear()
    PROOFS.clear()
    CREDENTIALS.clear()


def _authorize(authorization: Optional[str]) -> None:
    if not authorization or authorization.removeprefix("Bearer ") not in TOKENS:
        raise HTTPException(status_code=401, detail="invalid token")


@app.get("/health")
def health(): return {"status": "ok"}

@app.post("/realms/trial/protocol/openid-connect/token")
def token(grant_type: str = Form(...), client_id: str = Form(...), client_secret: str = Form(...)):
    if grant_type != "client_credentials" or client_secret != CLIENT_SECRET:
        raise HTTPException(status_code=401, detail="invalid client")
    access_token = uuid.uuid4().hex
    TOKENS.add(access_token)
    return {"access_token": access_token, "expires_in": 300, "token_type": "Bearer"}

@app.post("/api/proof-request/v1", status_code=201)
def create_proof_request(body: dict, authorization: Optional[str] = Header(None)):
    _authorize(authorization)
    proof_id = str(uuid.uuid4())
    PROOFS[proof_id] = {"id": proof_id, "state": "CREATED", "schema": body.get("proofSchemaId"), "claims": []}
    return {"id": proof_id}

@app.post("/api/proof-request/v1/{proof_id}/share")
def share_proof_request(proof_id: str, authorization: Optional[str] = Header(None)):
    _authorize(authorization)
    if proof_id not in PROOFS:
        raise HTTPException(status_code=404, detail="proof request not found")
    PROOFS[proof_id]["state"] = "PENDING"
    return {"url": f"openid4vp://proof?id={proof_id}", "appUrl": f"https://wallet.example/proof/{proof_id}"}

@app.get("/api/proof-request/v1/{proof_id}")
def get_proof_request(proof_id: str, authorization: Optional[str] = Header(None)):
    _authorize(authorization)
    proof = PROOFS.get(proof_id)
    if proof is None:
        raise HTTPException(status_code=404, detail="proof request not found")
    return {"id": proof_id, "state": proof["state"], "proofInputs": [{"claims": proof["claims"]}]}

@app.post("/api/credential/v1/{credential_id}/revoke", status_code=204)
def revoke_credential(credential_id: str, authorization: Optional[str] = Header(None)):
    _authorize(authorization)
    CREDENTIALS.setdefault(credential_id, {})["status"] = "REVOKED"
    return Response(status_code=204)

@app.post("/api/credential/v1/{credential_id}/suspend", status_code=204)
def suspend_credential(credential_id: str, body: dict, authorization: Optional[str] = Header(None)):
    _authorize(authorization)
    CREDENTIALS.setdefault(credential_id, {}).update(status="SUSPENDED", suspend_end_date=body.get("suspendEndDate"))
    return Response(status_code=204)

# Test control: simulate the wallet presenting a credential
@app.post("/_mock/proof-request/{proof_id}/present")
def present_proof(proof_id: str, claims: Dict[str, str]):
    if proof_id not in PROOFS:
        raise HTTPException(status_code=404, detail="proof request not found")
    PROOFS[proof_id]["state"] = "ACCEPTED"
    PROOFS[proof_id]["claims"] = [{"path": path, "value": value} for path, value in claims.items()]
    return PROOFS[proof_id]

# Test control: invalidate issued tokens to exercise re-authentication
@app.post("/_mock/expire-tokens")
def expire_tokens():
    TOKENS.clear()
    return {"status": "ok"}

@app.get("/_mock/credentials/{credential_id}")
def credential_status(credential_id: str):
    return CREDENTIALS.get(credential_id, {"status": "ACTIVE"})
