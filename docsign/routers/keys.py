from typing import Optional

from fastapi import APIRouter, Depends

from docsign import crypto
from docsign.deps import get_service, ok
from docsign.schemas import KeyGenerateRequest, KeyStatus, KeyValidateRequest, SignerRole
from docsign.service import SigningService

router = APIRouter(prefix="/keys", tags=["keys"])


@router.post("/generate")
def generate(body: KeyGenerateRequest, svc: SigningService = Depends(get_service)):
    # the private key is returned once and never stored
    return ok(svc.generate_key(body.role, body.name, body.email))


@router.get("")
def list_keys(role: Optional[SignerRole] = None, status: Optional[KeyStatus] = None, svc: SigningService = Depends(get_service)):
    return ok(svc.list_keys(role=role, status=status))


@router.get("/algorithm/info")
def algorithm_info():
    return ok(crypto.algorithm_info())


@router.post("/validate")
def validate(body: KeyValidateRequest, svc: SigningService = Depends(get_service)):
    return ok({"valid": svc.validate_keypair(body.public_key_b64u, body.private_key_b64u)})


@router.get("/{key_id}")
def get_key(key_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.get_key(key_id))


@router.post("/{key_id}/revoke")
def revoke(key_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.revoke_key(key_id))
