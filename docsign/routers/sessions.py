from typing import Optional

from fastapi import APIRouter, Depends

from docsign.deps import get_service, ok
from docsign.schemas import AddSignatureRequest, CancelRequest, SessionVerifyRequest, SignerRole
from docsign.service import SigningService

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("/{session_id}")
def get_session(session_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.get_session(session_id))


@router.post("/{session_id}/signatures/{role}")
def add_signature(session_id: str, role: str, body: AddSignatureRequest, svc: SigningService = Depends(get_service)):
    # role stays a plain string so an unlisted role surfaces as unknown_signer, not a 422
    session = svc.add_signature(session_id, role, body.private_key_b64u, body.signer)
    return ok({"session": session.model_dump(mode="json"), "progress": svc.progress(session_id).model_dump(mode="json")})


@router.get("/{session_id}/progress")
def progress(session_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.progress(session_id))


@router.post("/{session_id}/verify")
def verify(session_id: str, body: Optional[SessionVerifyRequest] = None, svc: SigningService = Depends(get_service)):
    body = body or SessionVerifyRequest()
    return ok(svc.verify_session(session_id, body.document, strict=body.strict))


@router.get("/{session_id}/aggregate")
def aggregate(session_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.aggregate(session_id))


@router.get("/{session_id}/signing-request/{role}")
def signing_request(session_id: str, role: str, svc: SigningService = Depends(get_service)):
    return ok(svc.signing_request(session_id, role))


@router.post("/{session_id}/cancel")
def cancel(session_id: str, body: Optional[CancelRequest] = None, svc: SigningService = Depends(get_service)):
    return ok(svc.cancel_session(session_id, (body or CancelRequest()).reason))
