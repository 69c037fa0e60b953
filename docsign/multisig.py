"""
Threshold multi-signature sessions over a single document hash.

STATE MACHINE:
    pending -> completed   the accepted signature count reaches the threshold
    pending -> expired     checked lazily whenever the session is accessed
    pending -> cancelled   explicit, only while pending
completed, expired and cancelled are terminal.

INVARIANTS:
1. min_signers <= threshold <= len(required_signers) <= max_signers
2. required signer roles are unique; at most one signature per role
3. every stored signature verified against document_hash before it was appended
4. status becomes completed in the same write that appends the
   threshold-reaching signature, and never reverts
"""
from __future__ import annotations
import datetime as dt
import logging
import uuid
from typing import List, Optional, Sequence, Union

from docsign import crypto
from docsign.errors import (
    DuplicateSignature,
    Expired,
    InvalidConfig,
    InvalidSignature,
    NotCompleted,
    NotFound,
    SessionClosed,
    UnknownSigner,
)
from docsign.metrics import SESSIONS, SIGNATURES
from docsign.schemas import (
    AggregateEntry,
    AggregateSignature,
    Document,
    MultiSigSession,
    PendingEntry,
    RequiredSigner,
    RequiredSignerIn,
    SessionProgress,
    SessionStatus,
    SessionVerification,
    Signature,
    SignatureCheck,
    SignedEntry,
    SignerInfo,
    SignerRole,
    SignerStatus,
    SigningRequest,
    VerificationReason,
)
from docsign.hashing import hash_record
from docsign.stores import Clock, SessionStore
from docsign.util import iso, utcnow

logger = logging.getLogger(__name__)

MIN_SIGNERS = 2
MAX_SIGNERS = 5
DEFAULT_THRESHOLD = 2
SESSION_TTL = dt.timedelta(days=7)

CLOSED_STATES = (SessionStatus.COMPLETED, SessionStatus.EXPIRED, SessionStatus.CANCELLED)

SignerSpec = Union[RequiredSignerIn, RequiredSigner, dict]


def _as_required(signer: SignerSpec) -> RequiredSignerIn:
    if isinstance(signer, RequiredSignerIn):
        return signer
    if isinstance(signer, RequiredSigner):
        return RequiredSignerIn(role=signer.role, name=signer.name, email=signer.email, required=signer.required)
    return RequiredSignerIn.model_validate(signer)


def _role_or_none(role: Union[SignerRole, str]) -> Optional[SignerRole]:
    try:
        return SignerRole(role)
    except ValueError:
        return None


class MultiSigEngine:
    def __init__(
        self,
        sessions: SessionStore,
        *,
        min_signers: int = MIN_SIGNERS,
        max_signers: int = MAX_SIGNERS,
        default_threshold: int = DEFAULT_THRESHOLD,
        session_ttl: dt.timedelta = SESSION_TTL,
        signing_url_prefix: str = "/sessions",
        clock: Clock = utcnow,
    ):
        self.sessions = sessions
        self.min_signers = min_signers
        self.max_signers = max_signers
        self.default_threshold = default_threshold
        self.session_ttl = session_ttl
        self.signing_url_prefix = signing_url_prefix.rstrip("/")
        self._clock = clock

    # ---- configuration ----

    def validate_config(self, signers: Sequence[SignerSpec], threshold: Optional[int]) -> List[str]:
        """Every violated rule, in a stable order. Empty list means the config is valid."""
        errors: List[str] = []
        roles = [_as_required(s).role for s in signers]
        if not roles:
            errors.append("At least one signer is required")
        if len(roles) > self.max_signers:
            errors.append(f"Maximum {self.max_signers} signers allowed")
        if threshold is not None:
            if threshold < self.min_signers:
                errors.append(f"Minimum threshold is {self.min_signers}")
            if threshold > len(roles):
                errors.append("Threshold cannot exceed number of signers")
        elif roles and min(self.default_threshold, len(roles)) < self.min_signers:
            errors.append(f"At least {self.min_signers} signers are required for a threshold session")
        seen, dupes = set(), []
        for role in roles:
            if role in seen and role not in dupes:
                dupes.append(role)
            seen.add(role)
        if dupes:
            errors.append("Duplicate signer roles found: " + ", ".join(r.value for r in dupes))
        return errors

    def initialize(self, document_id: str, document_hash: str, required_signers: Sequence[SignerSpec], threshold: Optional[int] = None) -> MultiSigSession:
        try:
            signers = [_as_required(s) for s in required_signers]
        except ValueError as e:
            # pydantic ValidationError is a ValueError: unknown role, bad field types
            raise InvalidConfig([f"Invalid signer definition: {e}"]) from e
        errors = self.validate_config(signers, threshold)
        if errors:
            raise InvalidConfig(errors)

        now = self._clock()
        session = MultiSigSession(
            session_id=str(uuid.uuid4()),
            document_id=document_id,
            document_hash=document_hash,
            required_signers=[RequiredSigner(role=s.role, name=s.name, email=s.email, required=s.required) for s in signers],
            threshold=threshold if threshold is not None else min(self.default_threshold, len(signers)),
            created_at=now,
            expires_at=now + self.session_ttl,
            updated_at=now,
        )
        self.sessions.create(session)
        SESSIONS.labels(status=SessionStatus.PENDING.value).inc()
        logger.info("session %s created for document %s (threshold %d of %d)", session.session_id, document_id, session.threshold, len(signers))
        return session

    # ---- access with lazy expiry ----

    def _expire_if_due(self, session: MultiSigSession, now: dt.datetime) -> bool:
        if session.status == SessionStatus.PENDING and now > session.expires_at:
            session.status = SessionStatus.EXPIRED
            session.updated_at = now
            session.version += 1
            return True
        return False

    def get(self, session_id: str) -> MultiSigSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound("session", session_id)
        if session.status == SessionStatus.PENDING and self._clock() > session.expires_at:
            with self.sessions.lock(session_id) as txn:
                session = txn.session
                if self._expire_if_due(session, self._clock()):
                    txn.save(session)
                    SESSIONS.labels(status=SessionStatus.EXPIRED.value).inc()
                    logger.info("session %s expired", session_id)
        return session

    # ---- mutation ----

    def add_signature(self, session_id: str, role: Union[SignerRole, str], private_key: crypto.BytesOrText, signer_info: Optional[SignerInfo] = None) -> MultiSigSession:
        with self.sessions.lock(session_id) as txn:
            session = txn.session
            now = self._clock()
            if self._expire_if_due(session, now):
                txn.save(session)
                SESSIONS.labels(status=SessionStatus.EXPIRED.value).inc()
            if session.status in CLOSED_STATES:
                raise SessionClosed(session_id, session.status.value)

            signer_role = _role_or_none(role)
            required = session.signer(signer_role) if signer_role else None
            if required is None:
                raise UnknownSigner(str(getattr(role, "value", role)))
            if session.signature_for(signer_role) is not None or required.status == SignerStatus.SIGNED:
                raise DuplicateSignature(signer_role.value)

            # fall back to the registered signer's identity for blank fields
            info = SignerInfo(
                name=(signer_info.name if signer_info else "") or required.name,
                email=(signer_info.email if signer_info else "") or required.email,
            )
            signature = crypto.sign(session.document_hash, private_key, signer_role, info, now=now)
            # re-verify before acceptance; a signature is never stored unverified
            if not crypto.verify_record(signature):
                raise InvalidSignature("Generated signature failed verification", {"role": signer_role.value})

            session.signatures.append(signature)
            required.status = SignerStatus.SIGNED
            required.signed_at = signature.signed_at
            if len(session.signatures) >= session.threshold:
                session.status = SessionStatus.COMPLETED
                session.completed_at = now
            session.updated_at = now
            session.version += 1
            txn.save(session)

        SIGNATURES.labels(flow="multi").inc()
        logger.info("session %s: %s signed (%d/%d)", session_id, signer_role.value, session.signed_count, session.threshold)
        if session.status == SessionStatus.COMPLETED:
            SESSIONS.labels(status=SessionStatus.COMPLETED.value).inc()
            logger.info("session %s completed", session_id)
        return session

    def cancel(self, session_id: str, reason: str = "") -> MultiSigSession:
        with self.sessions.lock(session_id) as txn:
            session = txn.session
            now = self._clock()
            if self._expire_if_due(session, now):
                txn.save(session)
            if session.status != SessionStatus.PENDING:
                raise SessionClosed(session_id, session.status.value)
            session.status = SessionStatus.CANCELLED
            session.cancelled_at = now
            session.cancel_reason = reason or None
            session.updated_at = now
            session.version += 1
            txn.save(session)
        SESSIONS.labels(status=SessionStatus.CANCELLED.value).inc()
        logger.info("session %s cancelled", session_id)
        return session

    # ---- read-only views ----

    def verify(self, session: MultiSigSession, document: Document) -> SessionVerification:
        return self.verify_signatures(session.document_hash, session.threshold, session.signatures, document, session.status)

    def verify_signatures(
        self,
        document_hash: str,
        threshold: int,
        signatures: Sequence[Signature],
        document: Document,
        status: SessionStatus = SessionStatus.COMPLETED,
    ) -> SessionVerification:
        """Threshold check of a signature set, independent of any stored session (e.g. one read from a QR code)."""
        common = dict(threshold=threshold, total_signatures=len(signatures), session_status=status)
        if hash_record(document) != document_hash:
            return SessionVerification(
                valid=False,
                reason=VerificationReason.TAMPERED,
                message="Document has been modified after signing",
                document_hash_match=False,
                valid_signatures=0,
                **common,
            )

        results = [self._check(sig, document_hash) for sig in signatures]
        valid_count = sum(1 for r in results if r.valid)
        met = valid_count >= threshold
        return SessionVerification(
            valid=met,
            reason=VerificationReason.VALID if met else VerificationReason.THRESHOLD_NOT_MET,
            message=(f"Valid multi-signature with {valid_count}/{threshold} required signatures" if met
                     else f"Insufficient valid signatures: {valid_count}/{threshold}"),
            document_hash_match=True,
            valid_signatures=valid_count,
            results=results,
            **common,
        )

    @staticmethod
    def _check(sig: Signature, document_hash: str) -> SignatureCheck:
        if sig.message_hash != document_hash:
            ok, reason = False, "Signature covers a different document hash"
        else:
            ok = crypto.verify(sig.signature_b64u, document_hash, sig.signer_public_key_b64u)
            reason = "Valid signature" if ok else "Invalid signature"
        return SignatureCheck(
            signature_id=sig.signature_id,
            role=sig.signer_role,
            name=sig.signer_name,
            public_key_b64u=sig.signer_public_key_b64u,
            signed_at=sig.signed_at,
            valid=ok,
            reason=reason,
        )

    def progress(self, session: MultiSigSession) -> SessionProgress:
        signed_roles = {s.signer_role for s in session.signatures}
        now = self._clock()
        return SessionProgress(
            session_id=session.session_id,
            status=session.status,
            signed=len(session.signatures),
            total=len(session.required_signers),
            threshold=session.threshold,
            percentage=round(len(session.signatures) / session.threshold * 100),
            signed_signers=[SignedEntry(role=s.signer_role, name=s.signer_name, signed_at=s.signed_at) for s in session.signatures],
            pending_signers=[PendingEntry(role=s.role, name=s.name, required=s.required) for s in session.required_signers if s.role not in signed_roles],
            created_at=session.created_at,
            expires_at=session.expires_at,
            completed_at=session.completed_at,
            is_expired=session.status == SessionStatus.EXPIRED or (session.status == SessionStatus.PENDING and now > session.expires_at),
        )

    def create_aggregate(self, session: MultiSigSession) -> AggregateSignature:
        if session.status != SessionStatus.COMPLETED:
            raise NotCompleted(f"Session {session.session_id} is {session.status.value}, not completed",
                               {"session_id": session.session_id, "status": session.status.value})
        return AggregateSignature(
            session_id=session.session_id,
            document_id=session.document_id,
            document_hash=session.document_hash,
            threshold=session.threshold,
            signatures=[
                AggregateEntry(
                    role=s.signer_role,
                    name=s.signer_name,
                    public_key_b64u=s.signer_public_key_b64u,
                    signature_b64u=s.signature_b64u,
                    signed_at=s.signed_at,
                )
                for s in session.signatures
            ],
            completed_at=session.completed_at,
        )

    def signing_request(self, session_id: str, role: Union[SignerRole, str]) -> SigningRequest:
        session = self.get(session_id)
        if session.status == SessionStatus.EXPIRED:
            raise Expired(f"Session {session_id} expired at {iso(session.expires_at)}", {"session_id": session_id})
        if session.status in CLOSED_STATES:
            raise SessionClosed(session_id, session.status.value)
        signer_role = _role_or_none(role)
        if signer_role is None or session.signer(signer_role) is None:
            raise UnknownSigner(str(getattr(role, "value", role)))
        if session.signature_for(signer_role) is not None:
            raise DuplicateSignature(signer_role.value)
        return SigningRequest(
            session_id=session_id,
            signer_role=signer_role,
            url=f"{self.signing_url_prefix}/{session_id}/signatures/{signer_role.value}",
            expires_at=session.expires_at,
            timestamp=iso(self._clock()),
        )
