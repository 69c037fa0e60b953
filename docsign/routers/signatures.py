from fastapi import APIRouter, Depends

from docsign.deps import get_service, ok
from docsign.schemas import SingleSignRequest, VerifySignatureRequest
from docsign.service import SigningService

router = APIRouter(prefix="/signatures", tags=["signatures"])


@router.post("/single")
def sign_single(body: SingleSignRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.sign_single(body.document_id, body.role, body.private_key_b64u, body.signer))


@router.post("/verify")
def verify(body: VerifySignatureRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.verify_single(body.signed, body.document, strict=body.strict))


@router.get("/{document_id}")
def signatures_for(document_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.signatures_for(document_id))
