from fastapi import APIRouter, Depends

from docsign.deps import get_service, ok
from docsign.schemas import DocumentCreateRequest, PrepareSigningRequest
from docsign.service import SigningService

router = APIRouter(prefix="/documents", tags=["documents"])


@router.post("")
def create(body: DocumentCreateRequest, svc: SigningService = Depends(get_service)):
    doc = svc.create_document(body)
    data = doc.model_dump(mode="json")
    data["document_hash"] = svc.document_hash(doc.id)
    return ok(data)


@router.get("/{document_id}")
def get_document(document_id: str, svc: SigningService = Depends(get_service)):
    doc = svc.get_document(document_id)
    data = doc.model_dump(mode="json")
    data["document_hash"] = svc.document_hash(document_id)
    return ok(data)


@router.post("/{document_id}/prepare-signing")
def prepare_signing(document_id: str, body: PrepareSigningRequest, svc: SigningService = Depends(get_service)):
    return ok(svc.prepare_signing(document_id, body.required_signers, body.threshold))
