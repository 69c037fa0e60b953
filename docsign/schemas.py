from __future__ import annotations
import datetime as dt
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from docsign.hashing import HASH_ALG
from docsign.util import b64u_decode, utcnow


class SignerRole(str, Enum):
    DOSEN = "dosen"
    KAPRODI = "kaprodi"
    DEKAN = "dekan"
    REKTOR = "rektor"
    ADMIN = "admin"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SignerStatus(str, Enum):
    PENDING = "pending"
    SIGNED = "signed"


class VerificationReason(str, Enum):
    VALID = "valid"
    TAMPERED = "tampered"
    INVALID_SIGNATURE = "invalid_signature"
    KEY_REVOKED = "key_revoked"
    THRESHOLD_NOT_MET = "threshold_not_met"


# ---- domain records ----

class SignerInfo(BaseModel):
    name: str = Field(default="", max_length=500)
    email: str = Field(default="", max_length=200)


class KeyRecord(BaseModel):
    """Public half of a signer key. Private material is never stored."""
    key_id: str
    role: SignerRole
    owner_name: str = ""
    owner_email: str = ""
    public_key_b64u: str
    algorithm: Literal["Ed25519"] = "Ed25519"
    status: KeyStatus = KeyStatus.ACTIVE
    created_at: dt.datetime = Field(default_factory=utcnow)
    revoked_at: Optional[dt.datetime] = None


class Signature(BaseModel):
    signature_id: str
    signature_b64u: str
    signer_role: SignerRole
    signer_name: str = ""
    signer_email: str = ""
    signer_public_key_b64u: str
    signed_at: dt.datetime
    message_hash: str

    @property
    def signature_bytes(self) -> bytes:
        return b64u_decode(self.signature_b64u)


class SignedDocument(BaseModel):
    document_id: str
    document_hash: str
    algorithm: Literal["Ed25519"] = "Ed25519"
    hash_alg: str = HASH_ALG
    version: str = "1.0"
    signature: Signature


class Document(BaseModel):
    id: str
    title: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    signature: Optional[SignedDocument] = None
    created_at: dt.datetime = Field(default_factory=utcnow)


class RequiredSigner(BaseModel):
    role: SignerRole
    name: str = ""
    email: str = ""
    required: bool = True
    status: SignerStatus = SignerStatus.PENDING
    signed_at: Optional[dt.datetime] = None


class MultiSigSession(BaseModel):
    session_id: str
    document_id: str
    document_hash: str
    required_signers: List[RequiredSigner]
    threshold: int
    signatures: List[Signature] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.PENDING
    created_at: dt.datetime
    expires_at: dt.datetime
    completed_at: Optional[dt.datetime] = None
    cancelled_at: Optional[dt.datetime] = None
    cancel_reason: Optional[str] = None
    updated_at: Optional[dt.datetime] = None
    # bumped on every persisted mutation; SQL store uses it for compare-and-swap
    version: int = 0

    @property
    def signed_count(self) -> int:
        return len(self.signatures)

    def signer(self, role: SignerRole) -> Optional[RequiredSigner]:
        for s in self.required_signers:
            if s.role == role:
                return s
        return None

    def signature_for(self, role: SignerRole) -> Optional[Signature]:
        for sig in self.signatures:
            if sig.signer_role == role:
                return sig
        return None


# ---- verification / progress views ----

class DocumentVerification(BaseModel):
    valid: bool
    reason: VerificationReason
    document_hash_match: bool
    signature_valid: bool
    computed_hash: str
    recorded_hash: str
    signer_role: Optional[SignerRole] = None
    signer_public_key_b64u: Optional[str] = None
    signed_at: Optional[dt.datetime] = None
    verified_at: dt.datetime = Field(default_factory=utcnow)


class SignatureCheck(BaseModel):
    signature_id: str
    role: SignerRole
    name: str = ""
    public_key_b64u: str
    signed_at: dt.datetime
    valid: bool
    reason: str


class SessionVerification(BaseModel):
    valid: bool
    reason: VerificationReason
    message: str
    document_hash_match: bool
    threshold: int
    total_signatures: int
    valid_signatures: int
    results: List[SignatureCheck] = Field(default_factory=list)
    session_status: SessionStatus
    verified_at: dt.datetime = Field(default_factory=utcnow)


class SignedEntry(BaseModel):
    role: SignerRole
    name: str = ""
    signed_at: dt.datetime


class PendingEntry(BaseModel):
    role: SignerRole
    name: str = ""
    required: bool = True


class SessionProgress(BaseModel):
    session_id: str
    status: SessionStatus
    signed: int
    total: int
    threshold: int
    # signed / threshold as a raw percentage, not capped at 100
    percentage: int
    signed_signers: List[SignedEntry]
    pending_signers: List[PendingEntry]
    created_at: dt.datetime
    expires_at: dt.datetime
    completed_at: Optional[dt.datetime] = None
    is_expired: bool


class AggregateEntry(BaseModel):
    role: SignerRole
    name: str = ""
    public_key_b64u: str
    signature_b64u: str
    signed_at: dt.datetime


class AggregateSignature(BaseModel):
    type: Literal["multi-signature"] = "multi-signature"
    algorithm: Literal["Ed25519-Multi"] = "Ed25519-Multi"
    version: str = "1.0"
    session_id: str
    document_id: str
    document_hash: str
    threshold: int
    signatures: List[AggregateEntry]
    completed_at: Optional[dt.datetime] = None


class SigningRequest(BaseModel):
    type: Literal["signing_request"] = "signing_request"
    session_id: str
    signer_role: SignerRole
    url: str
    expires_at: dt.datetime
    timestamp: str


# ---- QR payloads ----

class PayloadSigner(BaseModel):
    role: Optional[str] = None
    name: str = ""
    public_key: str
    signature: str
    signed_at: Optional[str] = None


class PayloadMetadata(BaseModel):
    title: Optional[str] = None
    type: Optional[str] = None
    issuer: Optional[str] = None
    recipient: Optional[str] = None
    issue_date: Optional[str] = None


class EmbeddedPayload(BaseModel):
    type: Literal["document_verification"] = "document_verification"
    version: str = "1.0"
    document_id: str
    document_hash: str
    signature_type: Literal["single", "multi-signature"]
    algorithm: str
    threshold: Optional[int] = None
    signers: List[PayloadSigner]
    metadata: PayloadMetadata = Field(default_factory=PayloadMetadata)
    timestamp: str


class QuickVerify(BaseModel):
    document_hash_prefix: str
    signature_count: int


class ReferencePayload(BaseModel):
    type: Literal["verification_url"] = "verification_url"
    token: str
    url: str
    document_id: str
    quick_verify: QuickVerify


QRPayload = Annotated[Union[EmbeddedPayload, ReferencePayload], Field(discriminator="type")]


class QREncoding(BaseModel):
    kind: Literal["embedded", "reference"]
    qr_data: str
    # serialized size of the full embedded form, which decides the variant
    size: int
    payload: EmbeddedPayload
    reference: Optional[ReferencePayload] = None
    # PNG data URI of qr_data, only when rendering was requested
    image: Optional[str] = None


class DecodedPayload(BaseModel):
    kind: Literal["embedded", "reference"]
    payload: QRPayload


class PayloadValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    type: str = "unknown"


# ---- API requests ----

class KeyGenerateRequest(BaseModel):
    role: SignerRole
    name: str = Field(min_length=1, max_length=200)
    email: str = Field(default="", max_length=200)


class KeyGenerateResponse(BaseModel):
    key: KeyRecord
    # returned once; the service keeps only the public record
    private_key_b64u: str


class KeyValidateRequest(BaseModel):
    public_key_b64u: str
    private_key_b64u: str


class DocumentIn(BaseModel):
    """A document as presented for verification; any shape a stored one could have been altered into."""
    id: Optional[str] = None
    title: str = ""
    content: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DocumentCreateRequest(DocumentIn):
    id: Optional[str] = Field(default=None, max_length=120)
    title: str = Field(min_length=5, max_length=200)
    content: str


class RequiredSignerIn(BaseModel):
    role: SignerRole
    name: str = ""
    email: str = ""
    required: bool = True


class PrepareSigningRequest(BaseModel):
    required_signers: List[RequiredSignerIn]
    threshold: Optional[int] = None


class SingleSignRequest(BaseModel):
    document_id: str
    role: SignerRole
    private_key_b64u: str
    signer: SignerInfo = Field(default_factory=SignerInfo)


class VerifySignatureRequest(BaseModel):
    signed: SignedDocument
    # when omitted, the stored document named by signed.document_id is used
    document: Optional[DocumentIn] = None
    strict: bool = False


class AddSignatureRequest(BaseModel):
    private_key_b64u: str
    signer: SignerInfo = Field(default_factory=SignerInfo)


class SessionVerifyRequest(BaseModel):
    document: Optional[DocumentIn] = None
    strict: bool = False


class CancelRequest(BaseModel):
    reason: str = Field(default="", max_length=500)


class QRDataRequest(BaseModel):
    qr_data: str = Field(max_length=100_000)


class QREncodeRequest(BaseModel):
    document_id: str
    source: Literal["auto", "single", "session"] = "auto"
    render: bool = False


class BatchVerifyRequest(BaseModel):
    document_ids: List[str] = Field(min_length=1, max_length=10)


# ---- verification of stored documents and scanned payloads ----

Verification = Union[DocumentVerification, SessionVerification]


class PayloadVerification(BaseModel):
    kind: Literal["embedded", "reference"]
    token: Optional[str] = None
    document_id: str
    signature_type: Literal["single", "multi-signature"]
    metadata: PayloadMetadata
    valid: bool
    reason: VerificationReason
    verification: Verification


class DocumentCheck(BaseModel):
    document_id: str
    title: str
    signature_type: Literal["single", "multi-signature"]
    metadata: PayloadMetadata
    valid: bool
    reason: VerificationReason
    verification: Verification


class BatchEntry(BaseModel):
    document_id: str
    success: bool
    title: Optional[str] = None
    valid: Optional[bool] = None
    reason: Optional[VerificationReason] = None
    verified_at: Optional[dt.datetime] = None
    error: Optional[str] = None
    message: Optional[str] = None


class BatchVerification(BaseModel):
    total: int
    valid: int
    invalid: int
    errors: int
    results: List[BatchEntry]


class DocumentSignatures(BaseModel):
    type: Literal["single", "multi"]
    signature: Optional[SignedDocument] = None
    session: Optional[MultiSigSession] = None
    progress: Optional[SessionProgress] = None


class ReportSummary(BaseModel):
    signature_type: Literal["single", "multi-signature"]
    signer_count: int
    algorithm: str


class ReportPayload(BaseModel):
    """Compact QR content pointing at a full verification report."""
    type: Literal["verification_report"] = "verification_report"
    document_id: str
    valid: bool
    verified_at: str
    summary: ReportSummary
    report_url: str


class ReportQR(BaseModel):
    qr_data: str
    report_url: str
    image: Optional[str] = None


class VerificationReport(BaseModel):
    report_id: str
    token: str
    generated_at: dt.datetime
    document_id: str
    title: str
    metadata: PayloadMetadata
    status: Literal["VALID", "INVALID"]
    document_hash: str
    signature_count: int
    verification: Verification
    qr: ReportQR
