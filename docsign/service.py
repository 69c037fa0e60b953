from __future__ import annotations
import datetime as dt
import logging
import uuid
from typing import List, Optional, Sequence, Tuple, Union

from docsign import crypto
from docsign.audit import audit
from docsign.config import Settings
from docsign.db import init_db
from docsign.errors import InvalidBatch, InvalidSignature, NotCompleted, NotFound, SigningError, TamperDetected, UnrecognizedFormat
from docsign.hashing import hash_record
from docsign.metrics import SIGNATURES, VERIFICATIONS
from docsign.multisig import MultiSigEngine, SignerSpec
from docsign.qr import QRCodec, metadata_subset, payload_signatures
from docsign.schemas import (
    AggregateSignature,
    BatchEntry,
    BatchVerification,
    DecodedPayload,
    Document,
    DocumentCheck,
    DocumentCreateRequest,
    DocumentIn,
    DocumentSignatures,
    DocumentVerification,
    EmbeddedPayload,
    KeyGenerateResponse,
    KeyRecord,
    KeyStatus,
    MultiSigSession,
    PayloadValidation,
    PayloadVerification,
    QREncoding,
    SessionProgress,
    SessionStatus,
    SessionVerification,
    SignedDocument,
    SignerInfo,
    SignerRole,
    SigningRequest,
    Verification,
    VerificationReason,
    VerificationReport,
)
from docsign.stores import (
    Clock,
    DocumentStore,
    InMemoryDocumentStore,
    InMemoryKeyRegistry,
    InMemoryPayloadStore,
    InMemorySessionStore,
    KeyRegistry,
    PayloadStore,
    RedisPayloadStore,
    SessionStore,
    SqlDocumentStore,
    SqlKeyRegistry,
    SqlPayloadStore,
    SqlSessionStore,
)
from docsign.util import b64u_encode, utcnow

logger = logging.getLogger(__name__)


class SigningService:
    """Operations exposed to transports. Every failure is a typed SigningError."""

    def __init__(
        self,
        documents: DocumentStore,
        sessions: SessionStore,
        keys: KeyRegistry,
        payloads: PayloadStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        s = settings or Settings()
        self.documents = documents
        self.keys = keys
        self.batch_max = s.verify_batch_max
        self._clock = clock
        self.multisig = MultiSigEngine(
            sessions,
            min_signers=s.min_signers,
            max_signers=s.max_signers,
            default_threshold=s.default_threshold,
            session_ttl=dt.timedelta(days=s.session_ttl_days),
            clock=clock,
        )
        self.qr = QRCodec(
            payloads,
            max_embedded_bytes=s.qr_max_embedded_bytes,
            payload_ttl=dt.timedelta(days=s.qr_payload_ttl_days),
            hash_prefix_len=s.qr_hash_prefix_len,
            url_prefix=s.verification_url_prefix,
            image_scale=s.qr_image_scale,
            clock=clock,
        )

    # ---- keys ----

    def generate_key(self, role: SignerRole, name: str, email: str = "") -> KeyGenerateResponse:
        kp = crypto.generate_keypair(role, name, email)
        record = kp.record()
        self.keys.put(record)
        audit(actor=name, action="key_generate", meta={"key_id": kp.key_id, "role": record.role.value})
        # the private key leaves with the caller and is not retained here
        return KeyGenerateResponse(key=record, private_key_b64u=b64u_encode(kp.private_key))

    def get_key(self, key_id: str) -> KeyRecord:
        rec = self.keys.get(key_id)
        if rec is None:
            raise NotFound("key", key_id)
        return rec

    def list_keys(self, role: Optional[SignerRole] = None, status: Optional[KeyStatus] = None) -> List[KeyRecord]:
        return self.keys.list(role=role, status=status)

    def revoke_key(self, key_id: str, actor: str = "system") -> KeyRecord:
        rec = self.keys.revoke(key_id)
        audit(actor=actor, action="key_revoke", meta={"key_id": key_id})
        return rec

    def validate_keypair(self, public_key: str, private_key: str) -> bool:
        return crypto.validate_keypair(public_key, private_key)

    def jwks(self) -> dict:
        return {"keys": [crypto.public_key_jwk(r.key_id, r.public_key_b64u) for r in self.keys.list(status=KeyStatus.ACTIVE)]}

    def _revoked(self, public_key_b64u: str) -> bool:
        return any(r.public_key_b64u == public_key_b64u for r in self.keys.list(status=KeyStatus.REVOKED))

    # ---- documents ----

    def create_document(self, req: DocumentCreateRequest) -> Document:
        doc = Document(id=req.id or uuid.uuid4().hex, title=req.title, content=req.content, metadata=req.metadata)
        # unhashable documents are refused before anything is stored
        document_hash = hash_record(doc)
        self.documents.put(doc)
        audit(actor="system", action="document_create", meta={"hash": document_hash}, document_id=doc.id)
        return doc

    def get_document(self, document_id: str) -> Document:
        doc = self.documents.get(document_id)
        if doc is None:
            raise NotFound("document", document_id)
        return doc

    def document_hash(self, document_id: str) -> str:
        return hash_record(self.get_document(document_id))

    @staticmethod
    def _inline(req: DocumentIn, fallback_id: str) -> Document:
        return Document(id=req.id or fallback_id, title=req.title, content=req.content, metadata=req.metadata)

    # ---- single signature ----

    def sign_single(self, document_id: str, role: SignerRole, private_key: str, signer: Optional[SignerInfo] = None) -> SignedDocument:
        doc = self.get_document(document_id)
        signed = crypto.sign_document(doc, private_key, role, signer)
        doc.signature = signed
        self.documents.put(doc)
        SIGNATURES.labels(flow="single").inc()
        audit(actor=signed.signature.signer_name or SignerRole(role).value, action="sign_single",
              meta={"role": SignerRole(role).value, "hash": signed.document_hash}, document_id=document_id)
        return signed

    def verify_single(self, signed: SignedDocument, document: Optional[DocumentIn] = None, strict: bool = False) -> DocumentVerification:
        doc = self._inline(document, signed.document_id) if document else self.get_document(signed.document_id)
        out = self._check_single(signed, doc)
        VERIFICATIONS.labels(flow="single", reason=out.reason.value).inc()
        audit(actor="verifier", action="verify_single", meta={"valid": out.valid, "reason": out.reason.value}, document_id=signed.document_id)
        return crypto.ensure_valid(out) if strict else out

    def _check_single(self, signed: SignedDocument, doc: Document) -> DocumentVerification:
        out = crypto.verify_document_signature(signed, doc)
        if out.valid and self._revoked(signed.signature.signer_public_key_b64u):
            out = out.model_copy(update={"valid": False, "reason": VerificationReason.KEY_REVOKED})
        return out

    def signatures_for(self, document_id: str) -> DocumentSignatures:
        doc = self.get_document(document_id)
        if doc.signature is not None:
            return DocumentSignatures(type="single", signature=doc.signature)
        if doc.session_id:
            session = self.multisig.get(doc.session_id)
            return DocumentSignatures(type="multi", session=session, progress=self.multisig.progress(session))
        raise NotFound("signatures for document", document_id)

    # ---- multi signature ----

    def prepare_signing(self, document_id: str, required_signers: Sequence[SignerSpec], threshold: Optional[int] = None) -> MultiSigSession:
        doc = self.get_document(document_id)
        session = self.multisig.initialize(doc.id, hash_record(doc), required_signers, threshold)
        doc.session_id = session.session_id
        self.documents.put(doc)
        audit(actor="system", action="session_initialize", meta={"threshold": session.threshold,
              "roles": [s.role.value for s in session.required_signers]}, session_id=session.session_id, document_id=doc.id)
        return session

    def get_session(self, session_id: str) -> MultiSigSession:
        return self.multisig.get(session_id)

    def add_signature(self, session_id: str, role: Union[SignerRole, str], private_key: str, signer: Optional[SignerInfo] = None) -> MultiSigSession:
        session = self.multisig.add_signature(session_id, role, private_key, signer)
        audit(actor=(signer.name if signer and signer.name else str(getattr(role, "value", role))), action="add_signature",
              meta={"role": str(getattr(role, "value", role)), "status": session.status.value, "signed": session.signed_count},
              session_id=session_id, document_id=session.document_id)
        return session

    def progress(self, session_id: str) -> SessionProgress:
        return self.multisig.progress(self.multisig.get(session_id))

    def verify_session(self, session_id: str, document: Optional[DocumentIn] = None, strict: bool = False) -> SessionVerification:
        session = self.multisig.get(session_id)
        doc = self._inline(document, session.document_id) if document else self.get_document(session.document_id)
        out = self.multisig.verify(session, doc)
        VERIFICATIONS.labels(flow="multi", reason=out.reason.value).inc()
        audit(actor="verifier", action="verify_session", meta={"valid": out.valid, "valid_signatures": out.valid_signatures},
              session_id=session_id, document_id=session.document_id)
        if strict and out.reason == VerificationReason.TAMPERED:
            raise TamperDetected(out.message, {"session_id": session_id})
        if strict and not out.valid:
            raise InvalidSignature(out.message, {"session_id": session_id, "valid_signatures": out.valid_signatures})
        return out

    def aggregate(self, session_id: str) -> AggregateSignature:
        return self.multisig.create_aggregate(self.multisig.get(session_id))

    def cancel_session(self, session_id: str, reason: str = "", actor: str = "system") -> MultiSigSession:
        session = self.multisig.cancel(session_id, reason)
        audit(actor=actor, action="session_cancel", meta={"reason": reason}, session_id=session_id, document_id=session.document_id)
        return session

    def signing_request(self, session_id: str, role: Union[SignerRole, str]) -> SigningRequest:
        return self.multisig.signing_request(session_id, role)

    # ---- QR ----

    def qr_encode(self, document_id: str, source: str = "auto", render: bool = False) -> QREncoding:
        doc = self.get_document(document_id)
        artifact: Union[SignedDocument, AggregateSignature, None] = None
        if source in ("auto", "session") and doc.session_id:
            session = self.multisig.get(doc.session_id)
            if session.status == SessionStatus.COMPLETED or source == "session":
                artifact = self.multisig.create_aggregate(session)
        if artifact is None and source in ("auto", "single") and doc.signature is not None:
            artifact = doc.signature
        if artifact is None:
            raise NotCompleted(f"Document {document_id} has no completed signature to encode", {"document_id": document_id, "source": source})
        enc = self.qr.encode(artifact, doc, render=render)
        audit(actor="system", action="qr_encode", meta={"kind": enc.kind, "size": enc.size}, document_id=document_id)
        return enc

    def qr_decode(self, qr_data: str) -> DecodedPayload:
        return self.qr.decode(qr_data)

    def qr_validate(self, qr_data: str) -> PayloadValidation:
        return self.qr.validate(qr_data)

    def resolve_payload(self, token: str) -> EmbeddedPayload:
        return self.qr.resolve(token)

    # ---- verification ----

    def _verify_payload(self, payload: EmbeddedPayload) -> Tuple[Document, Verification]:
        """Check what a scanned payload claims against the stored document."""
        doc = self.get_document(payload.document_id)
        signatures = payload_signatures(payload)
        if payload.signature_type == "multi-signature":
            # the payload's threshold is not signed; never accept fewer than the stored session requires
            threshold = max(payload.threshold or 0, self.multisig.min_signers)
            if doc.session_id:
                session = self.multisig.get(doc.session_id)
                if session.document_hash == payload.document_hash:
                    threshold = max(threshold, session.threshold)
            return doc, self.multisig.verify_signatures(payload.document_hash, threshold, signatures, doc)
        if len(signatures) != 1:
            raise UnrecognizedFormat("Single-signature payload must carry exactly one signer", {"signers": len(signatures)})
        signed = SignedDocument(document_id=payload.document_id, document_hash=payload.document_hash, signature=signatures[0])
        return doc, self._check_single(signed, doc)

    def verify_qr(self, qr_data: str) -> PayloadVerification:
        decoded = self.qr.decode(qr_data)
        token = None
        if decoded.kind == "reference":
            token = decoded.payload.token
            payload = self.qr.resolve(token)
        else:
            payload = decoded.payload
        _, out = self._verify_payload(payload)
        VERIFICATIONS.labels(flow="qr", reason=out.reason.value).inc()
        audit(actor="verifier", action="verify_qr", meta={"kind": decoded.kind, "valid": out.valid, "reason": out.reason.value},
              document_id=payload.document_id)
        return PayloadVerification(
            kind=decoded.kind,
            token=token,
            document_id=payload.document_id,
            signature_type=payload.signature_type,
            metadata=payload.metadata,
            valid=out.valid,
            reason=out.reason,
            verification=out,
        )

    def verify_document(self, document_id: str) -> DocumentCheck:
        doc = self.get_document(document_id)
        if doc.session_id:
            out: Verification = self.multisig.verify(self.multisig.get(doc.session_id), doc)
            signature_type = "multi-signature"
        elif doc.signature is not None:
            out = self._check_single(doc.signature, doc)
            signature_type = "single"
        else:
            raise NotCompleted(f"Document {document_id} is not signed", {"document_id": document_id})
        VERIFICATIONS.labels(flow="document", reason=out.reason.value).inc()
        return DocumentCheck(
            document_id=document_id,
            title=doc.title,
            signature_type=signature_type,
            metadata=metadata_subset(doc),
            valid=out.valid,
            reason=out.reason,
            verification=out,
        )

    def verify_batch(self, document_ids: Sequence[str]) -> BatchVerification:
        if not document_ids:
            raise InvalidBatch("At least one document id is required")
        if len(document_ids) > self.batch_max:
            raise InvalidBatch(f"Maximum {self.batch_max} documents allowed per batch", {"count": len(document_ids)})
        results: List[BatchEntry] = []
        for document_id in document_ids:
            # one document's failure is reported in its entry and never aborts the batch
            try:
                check = self.verify_document(document_id)
            except SigningError as e:
                results.append(BatchEntry(document_id=document_id, success=False, error=e.code, message=e.message))
                continue
            results.append(BatchEntry(
                document_id=document_id,
                success=True,
                title=check.title,
                valid=check.valid,
                reason=check.reason,
                verified_at=check.verification.verified_at,
            ))
        valid = sum(1 for r in results if r.success and r.valid)
        errors = sum(1 for r in results if not r.success)
        audit(actor="verifier", action="verify_batch", meta={"total": len(results), "valid": valid, "errors": errors})
        return BatchVerification(total=len(results), valid=valid, invalid=len(results) - valid - errors, errors=errors, results=results)

    def verification_report(self, token: str, render: bool = False) -> VerificationReport:
        payload = self.qr.resolve(token)
        doc, out = self._verify_payload(payload)
        VERIFICATIONS.labels(flow="report", reason=out.reason.value).inc()
        return VerificationReport(
            report_id=uuid.uuid4().hex,
            token=token,
            generated_at=self._clock(),
            document_id=doc.id,
            title=doc.title,
            metadata=metadata_subset(doc),
            status="VALID" if out.valid else "INVALID",
            document_hash=payload.document_hash,
            signature_count=len(payload.signers),
            verification=out,
            qr=self.qr.report(token, payload, out.valid, render=render),
        )


def build_service(settings: Settings) -> SigningService:
    if settings.database_url:
        sf = init_db(settings.database_url)
        documents, sessions, keys = SqlDocumentStore(sf), SqlSessionStore(sf), SqlKeyRegistry(sf)
        payloads: PayloadStore = SqlPayloadStore(sf)
        logger.info("using SQL stores")
    else:
        documents, sessions, keys = InMemoryDocumentStore(), InMemorySessionStore(), InMemoryKeyRegistry()
        payloads = InMemoryPayloadStore()
        logger.info("using in-memory stores")
    if settings.redis_url:
        payloads = RedisPayloadStore.from_url(settings.redis_url)
        logger.info("verification payloads stored in redis")
    return SigningService(documents, sessions, keys, payloads, settings=settings)
