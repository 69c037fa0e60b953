from fastapi import APIRouter, Depends

from docsign.deps import get_service
from docsign.service import SigningService

router = APIRouter()


@router.get("/.well-known/jwks.json")
def signer_jwks(svc: SigningService = Depends(get_service)):
    # plain JWKS document, no envelope, so standard JOSE clients can consume it
    return svc.jwks()
