from __future__ import annotations
import datetime as dt
import logging
import secrets
import uuid
from typing import Any, Dict, List, Union

import orjson
import segno
from pydantic import ValidationError

from docsign.errors import NotFound, UnrecognizedFormat
from docsign.metrics import QR_PAYLOADS
from docsign.schemas import (
    AggregateSignature,
    DecodedPayload,
    Document,
    EmbeddedPayload,
    PayloadMetadata,
    PayloadSigner,
    PayloadValidation,
    QREncoding,
    QuickVerify,
    ReferencePayload,
    ReportPayload,
    ReportQR,
    ReportSummary,
    Signature,
    SignedDocument,
    SignerRole,
)
from docsign.stores import Clock, PayloadStore
from docsign.util import iso, utcnow

logger = logging.getLogger(__name__)

# QR codes have a hard data-density ceiling; past this the payload goes out of band
MAX_EMBEDDED_BYTES = 2000
PAYLOAD_TTL = dt.timedelta(days=30)
HASH_PREFIX_LEN = 16

EMBEDDED_TYPE = "document_verification"
REFERENCE_TYPE = "verification_url"

EMBEDDED_REQUIRED = ("document_id", "document_hash", "signature_type", "algorithm", "signers", "timestamp")
REFERENCE_REQUIRED = ("token", "url", "document_id", "quick_verify")

Artifact = Union[SignedDocument, AggregateSignature]

VALID_COLOR = "#059669"
INVALID_COLOR = "#dc2626"


def serialize(payload: Union[EmbeddedPayload, ReferencePayload, ReportPayload]) -> bytes:
    return orjson.dumps(payload.model_dump(mode="json", exclude_none=True))


def render_png(qr_data: str, scale: int = 4, dark: str = "#000000") -> str:
    """PNG data URI for qr_data. Error level M holds the largest embedded payload at version 40."""
    return segno.make(qr_data, error="m", micro=False).png_data_uri(scale=scale, dark=dark, light="#ffffff")


def payload_signatures(payload: EmbeddedPayload) -> List[Signature]:
    """Signature records as claimed by a scanned payload, bound to the payload's document hash."""
    out = []
    for s in payload.signers:
        try:
            out.append(Signature(
                signature_id=uuid.uuid4().hex,
                signature_b64u=s.signature,
                signer_role=SignerRole(s.role),
                signer_name=s.name,
                signer_public_key_b64u=s.public_key,
                signed_at=s.signed_at or payload.timestamp,
                message_hash=payload.document_hash,
            ))
        except ValueError as e:
            raise UnrecognizedFormat(f"Unusable signer entry in payload: {e}", {"role": s.role}) from e
    return out


def metadata_subset(document: Union[Document, Dict[str, Any]]) -> PayloadMetadata:
    if isinstance(document, Document):
        title, meta = document.title, document.metadata
    else:
        title, meta = document.get("title"), document.get("metadata") or document

    def pick(*keys):
        for k in keys:
            v = meta.get(k)
            if v not in (None, ""):
                return str(v)
        return None

    return PayloadMetadata(
        title=title,
        type=pick("type", "document_type"),
        issuer=pick("issuer"),
        recipient=pick("recipient"),
        issue_date=pick("issue_date", "date_issued", "issueDate"),
    )


class QRCodec:
    def __init__(
        self,
        store: PayloadStore,
        *,
        max_embedded_bytes: int = MAX_EMBEDDED_BYTES,
        payload_ttl: dt.timedelta = PAYLOAD_TTL,
        hash_prefix_len: int = HASH_PREFIX_LEN,
        url_prefix: str = "/verification",
        image_scale: int = 4,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.image_scale = image_scale
        self.max_embedded_bytes = max_embedded_bytes
        self.payload_ttl = payload_ttl
        self.hash_prefix_len = hash_prefix_len
        self.url_prefix = url_prefix.rstrip("/")
        self._clock = clock

    def build_payload(self, artifact: Artifact, document: Union[Document, Dict[str, Any]]) -> EmbeddedPayload:
        if isinstance(artifact, AggregateSignature):
            signers = [
                PayloadSigner(role=e.role.value, name=e.name, public_key=e.public_key_b64u, signature=e.signature_b64u, signed_at=iso(e.signed_at))
                for e in artifact.signatures
            ]
            return EmbeddedPayload(
                document_id=artifact.document_id,
                document_hash=artifact.document_hash,
                signature_type="multi-signature",
                algorithm=artifact.algorithm,
                threshold=artifact.threshold,
                signers=signers,
                metadata=metadata_subset(document),
                timestamp=iso(self._clock()),
            )
        sig = artifact.signature
        return EmbeddedPayload(
            document_id=artifact.document_id,
            document_hash=artifact.document_hash,
            signature_type="single",
            algorithm=artifact.algorithm,
            signers=[PayloadSigner(role=sig.signer_role.value, name=sig.signer_name, public_key=sig.signer_public_key_b64u,
                                   signature=sig.signature_b64u, signed_at=iso(sig.signed_at))],
            metadata=metadata_subset(document),
            timestamp=iso(self._clock()),
        )

    def encode(self, artifact: Artifact, document: Union[Document, Dict[str, Any]], render: bool = False) -> QREncoding:
        """Always yields exactly one variant: embedded if it fits, otherwise a stored reference."""
        enc = self._encode(artifact, document)
        if render:
            enc.image = render_png(enc.qr_data, scale=self.image_scale)
        return enc

    def _encode(self, artifact: Artifact, document: Union[Document, Dict[str, Any]]) -> QREncoding:
        payload = self.build_payload(artifact, document)
        embedded = serialize(payload)
        size = len(embedded)
        if size <= self.max_embedded_bytes:
            QR_PAYLOADS.labels(kind="embedded").inc()
            return QREncoding(kind="embedded", qr_data=embedded.decode("utf-8"), size=size, payload=payload)

        token = secrets.token_urlsafe(24)
        self.store.put(token, payload, int(self.payload_ttl.total_seconds()))
        reference = ReferencePayload(
            token=token,
            url=f"{self.url_prefix}/{token}",
            document_id=payload.document_id,
            quick_verify=QuickVerify(
                document_hash_prefix=payload.document_hash[: self.hash_prefix_len],
                signature_count=len(payload.signers),
            ),
        )
        QR_PAYLOADS.labels(kind="reference").inc()
        logger.info("payload for document %s is %d bytes, stored out of band", payload.document_id, size)
        return QREncoding(kind="reference", qr_data=serialize(reference).decode("utf-8"), size=size, payload=payload, reference=reference)

    @staticmethod
    def _parse(qr_data: Union[str, bytes]) -> Dict[str, Any]:
        try:
            data = orjson.loads(qr_data)
        except (orjson.JSONDecodeError, TypeError) as e:
            raise UnrecognizedFormat(f"QR data is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise UnrecognizedFormat("QR data must be a JSON object")
        return data

    def decode(self, qr_data: Union[str, bytes]) -> DecodedPayload:
        data = self._parse(qr_data)
        tag = data.get("type")
        try:
            if tag == EMBEDDED_TYPE:
                return DecodedPayload(kind="embedded", payload=EmbeddedPayload.model_validate(data))
            if tag == REFERENCE_TYPE:
                return DecodedPayload(kind="reference", payload=ReferencePayload.model_validate(data))
        except ValidationError as e:
            raise UnrecognizedFormat(f"Malformed {tag} payload", {"errors": [err["msg"] for err in e.errors()]}) from e
        raise UnrecognizedFormat(f"Unknown QR payload type: {tag!r}", {"type": tag})

    def validate(self, qr_data: Union[str, bytes]) -> PayloadValidation:
        # structure only; signatures are checked by the signing engine
        try:
            data = self._parse(qr_data)
        except UnrecognizedFormat as e:
            return PayloadValidation(valid=False, errors=[e.message], type="unknown")

        tag = data.get("type")
        errors: List[str] = []
        if tag == EMBEDDED_TYPE:
            errors += [f"Missing required field: {f}" for f in EMBEDDED_REQUIRED if not data.get(f)]
            signers = data.get("signers")
            if signers is not None and not isinstance(signers, list):
                errors.append("Field signers must be a list")
            elif signers:
                for i, s in enumerate(signers):
                    if not isinstance(s, dict):
                        errors.append(f"signers[{i}] must be an object")
                        continue
                    errors += [f"Missing required field: signers[{i}].{f}" for f in ("public_key", "signature") if not s.get(f)]
        elif tag == REFERENCE_TYPE:
            errors += [f"Missing required field: {f}" for f in REFERENCE_REQUIRED if not data.get(f)]
            qv = data.get("quick_verify")
            if isinstance(qv, dict):
                errors += [f"Missing required field: quick_verify.{f}" for f in ("document_hash_prefix", "signature_count") if qv.get(f) in (None, "")]
            elif qv:
                errors.append("Field quick_verify must be an object")
        else:
            errors.append(f"Unknown payload type: {tag!r}")
        return PayloadValidation(valid=not errors, errors=errors, type=str(tag) if tag else "unknown")

    def resolve(self, token: str) -> EmbeddedPayload:
        payload = self.store.get(token)
        if payload is None:
            raise NotFound("verification payload", token)
        return payload

    def report(self, token: str, payload: EmbeddedPayload, valid: bool, render: bool = False) -> ReportQR:
        report_url = f"{self.url_prefix}/report/{token}"
        data = ReportPayload(
            document_id=payload.document_id,
            valid=valid,
            verified_at=iso(self._clock()),
            summary=ReportSummary(signature_type=payload.signature_type, signer_count=len(payload.signers), algorithm=payload.algorithm),
            report_url=report_url,
        )
        qr_data = serialize(data).decode("utf-8")
        image = render_png(qr_data, scale=self.image_scale, dark=VALID_COLOR if valid else INVALID_COLOR) if render else None
        return ReportQR(qr_data=qr_data, report_url=report_url, image=image)

    @staticmethod
    def quick_check(reference: ReferencePayload, document_hash: str) -> bool:
        prefix = reference.quick_verify.document_hash_prefix
        return bool(prefix) and document_hash.lower().startswith(prefix.lower())
