from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from docsign.deps import ok

router = APIRouter()


@router.get("/")
def root():
    return ok({"service": "docsign", "algorithm": "Ed25519", "multi_signature": True})


@router.get("/health")
def health():
    return ok({"status": "ok"})


@router.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
