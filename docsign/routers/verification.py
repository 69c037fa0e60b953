from fastapi import APIRouter, Depends

from docsign.deps import get_service, ok
from docsign.schemas import BatchVerifyRequest, QRDataRequest, QREncodeRequest
from docsign.service import SigningService

router = APIRouter(tags=["qr"])


@router.post("/qr/encode")
def encode(body: QREncodeRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.qr_encode(body.document_id, body.source, render=body.render))


@router.post("/qr/decode")
def decode(body: QRDataRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.qr_decode(body.qr_data))


@router.post("/qr/validate")
def validate(body: QRDataRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.qr_validate(body.qr_data))


@router.post("/verification/qr")
def verify_qr(body: QRDataRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.verify_qr(body.qr_data))


@router.post("/verification/document/{document_id}")
def verify_document(document_id: str, svc: SigningService = Depends(get_service)):
    return ok(svc.verify_document(document_id))


@router.post("/verification/batch")
def verify_batch(body: BatchVerifyRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.verify_batch(body.document_ids))


@router.get("/verification/report/{token}")
def report(token: str, render: bool = False, svc: SigningService = Depends(get_service)):
    return ok(svc.verification_report(token, render=render))


@router.get("/verification/{token}")
def resolve(token: str, svc: SigningService = Depends(get_service)):
    return ok(svc.resolve_payload(token))
