from __future__ import annotations
import datetime as dt
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Optional, Union

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from docsign.errors import InvalidDocument, InvalidKeyFormat, InvalidSignature, TamperDetected
from docsign.hashing import hash_record
from docsign.schemas import (
    Document,
    DocumentVerification,
    KeyRecord,
    KeyStatus,
    Signature,
    SignedDocument,
    SignerInfo,
    SignerRole,
    VerificationReason,
)
from docsign.util import b64u_decode, b64u_encode, is_hex_digest, sha256_hex, utcnow

SEED_LEN = 32
EXPANDED_LEN = 64
PUBLIC_KEY_LEN = 32
SIGNATURE_LEN = 64

BytesOrText = Union[bytes, str]


@dataclass
class KeyPair:
    key_id: str
    public_key: bytes
    private_key: bytes
    role: SignerRole
    owner_name: str = ""
    owner_email: str = ""
    created_at: dt.datetime = field(default_factory=utcnow)
    status: KeyStatus = KeyStatus.ACTIVE

    def record(self) -> KeyRecord:
        return KeyRecord(
            key_id=self.key_id,
            role=self.role,
            owner_name=self.owner_name,
            owner_email=self.owner_email,
            public_key_b64u=b64u_encode(self.public_key),
            status=self.status,
            created_at=self.created_at,
        )


def new_kid() -> str:
    return sha256_hex(secrets.token_bytes(32))[:32]


def generate_keypair(role: SignerRole, owner_name: str = "", owner_email: str = "") -> KeyPair:
    # entropy failures propagate: nothing generated afterwards could be trusted
    priv = Ed25519PrivateKey.generate()
    return KeyPair(
        key_id=new_kid(),
        public_key=priv.public_key().public_bytes_raw(),
        private_key=priv.private_bytes_raw(),
        role=SignerRole(role),
        owner_name=owner_name,
        owner_email=owner_email,
    )


def _raw(value: BytesOrText) -> bytes:
    if isinstance(value, str):
        return b64u_decode(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise TypeError(f"expected bytes or base64url text, got {type(value).__name__}")


def load_private_key(private_key: BytesOrText) -> Ed25519PrivateKey:
    """Accepts a 32-byte seed or a 64-byte seed||public expanded secret."""
    try:
        raw = _raw(private_key)
    except (ValueError, TypeError) as e:
        raise InvalidKeyFormat(f"Private key is not valid base64url: {e}") from e
    if len(raw) == SEED_LEN:
        return Ed25519PrivateKey.from_private_bytes(raw)
    if len(raw) == EXPANDED_LEN:
        priv = Ed25519PrivateKey.from_private_bytes(raw[:SEED_LEN])
        if priv.public_key().public_bytes_raw() != raw[SEED_LEN:]:
            raise InvalidKeyFormat("Expanded secret key does not match its embedded public key")
        return priv
    raise InvalidKeyFormat(f"Private key must be {SEED_LEN} or {EXPANDED_LEN} bytes, got {len(raw)}")


def derive_public_key(private_key: BytesOrText) -> bytes:
    return load_private_key(private_key).public_key().public_bytes_raw()


def public_key_jwk(kid: str, public_key: BytesOrText) -> dict:
    return {"kty": "OKP", "crv": "Ed25519", "kid": kid, "use": "sig", "alg": "EdDSA", "x": b64u_encode(_raw(public_key))}


def _message_bytes(message_hash: str) -> bytes:
    # the signed message is the digest itself, never the document payload
    if not is_hex_digest(message_hash):
        raise InvalidDocument("Message hash must be 64 hex characters")
    return bytes.fromhex(message_hash)


def verify(signature: BytesOrText, message_hash: str, public_key: BytesOrText) -> bool:
    # malformed input is a failed verification, never an exception
    try:
        sig = _raw(signature)
        pub = _raw(public_key)
        if len(sig) != SIGNATURE_LEN or len(pub) != PUBLIC_KEY_LEN:
            return False
        Ed25519PublicKey.from_public_bytes(pub).verify(sig, _message_bytes(message_hash))
        return True
    except Exception:
        return False


def verify_record(sig: Signature) -> bool:
    return verify(sig.signature_b64u, sig.message_hash, sig.signer_public_key_b64u)


def sign(message_hash: str, private_key: BytesOrText, role: SignerRole, signer: Optional[SignerInfo] = None, now: Optional[dt.datetime] = None) -> Signature:
    priv = load_private_key(private_key)
    sig = priv.sign(_message_bytes(message_hash))
    signer = signer or SignerInfo()
    return Signature(
        signature_id=uuid.uuid4().hex,
        signature_b64u=b64u_encode(sig),
        signer_role=SignerRole(role),
        signer_name=signer.name,
        signer_email=signer.email,
        signer_public_key_b64u=b64u_encode(priv.public_key().public_bytes_raw()),
        signed_at=now or utcnow(),
        message_hash=message_hash,
    )


def sign_document(document: Document, private_key: BytesOrText, role: SignerRole, signer: Optional[SignerInfo] = None) -> SignedDocument:
    document_hash = hash_record(document)
    return SignedDocument(document_id=document.id, document_hash=document_hash, signature=sign(document_hash, private_key, role, signer))


def verify_document_signature(signed: SignedDocument, document: Document) -> DocumentVerification:
    computed = hash_record(document)
    common = dict(
        computed_hash=computed,
        recorded_hash=signed.document_hash,
        signer_role=signed.signature.signer_role,
        signer_public_key_b64u=signed.signature.signer_public_key_b64u,
        signed_at=signed.signature.signed_at,
    )
    if computed != signed.document_hash:
        return DocumentVerification(valid=False, reason=VerificationReason.TAMPERED, document_hash_match=False, signature_valid=False, **common)
    # the recorded signature must cover the recorded hash, not some other message
    ok = signed.signature.message_hash == signed.document_hash and verify(
        signed.signature.signature_b64u, signed.document_hash, signed.signature.signer_public_key_b64u
    )
    reason = VerificationReason.VALID if ok else VerificationReason.INVALID_SIGNATURE
    return DocumentVerification(valid=ok, reason=reason, document_hash_match=True, signature_valid=ok, **common)


def validate_keypair(public_key: BytesOrText, private_key: BytesOrText) -> bool:
    challenge = sha256_hex(b"docsign-keypair-check")
    try:
        priv = load_private_key(private_key)
    except InvalidKeyFormat:
        return False
    return verify(priv.sign(bytes.fromhex(challenge)), challenge, public_key)


def algorithm_info() -> dict:
    return {
        "name": "EdDSA (Ed25519)",
        "curve": "Curve25519",
        "standard": "RFC 8032",
        "message": "SHA-256 document digest (32 bytes)",
        "public_key_bytes": PUBLIC_KEY_LEN,
        "private_key_bytes": [SEED_LEN, EXPANDED_LEN],
        "signature_bytes": SIGNATURE_LEN,
        "security_level_bits": 128,
        "deterministic": True,
    }


def ensure_valid(result: DocumentVerification) -> DocumentVerification:
    """Raise the typed failure matching an unsuccessful verification."""
    if result.reason == VerificationReason.TAMPERED:
        raise TamperDetected("Document has been modified after signing",
                             {"computed_hash": result.computed_hash, "recorded_hash": result.recorded_hash})
    if not result.valid:
        raise InvalidSignature(f"Signature verification failed: {result.reason.value}", {"reason": result.reason.value})
    return result
