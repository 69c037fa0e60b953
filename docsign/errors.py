from __future__ import annotations
from typing import Any


class SigningError(Exception):
    """Base class for every typed failure the engine returns to callers."""

    code = "signing_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": self.code, "message": self.message, "details": self.details}


class InvalidConfig(SigningError):
    code = "invalid_config"

    def __init__(self, violations: list[str]):
        self.violations = list(violations)
        super().__init__("Invalid multi-signature configuration: " + "; ".join(self.violations),
                         {"violations": self.violations})


class SessionClosed(SigningError):
    code = "session_closed"
    status_code = 409

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is {status}", {"session_id": session_id, "status": status})


class UnknownSigner(SigningError):
    code = "unknown_signer"

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Signer role '{role}' is not required for this document", {"role": role})


class DuplicateSignature(SigningError):
    code = "duplicate_signature"
    status_code = 409

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Signer with role '{role}' has already signed this document", {"role": role})


class NotCompleted(SigningError):
    code = "not_completed"
    status_code = 409


class TamperDetected(SigningError):
    code = "tamper_detected"
    status_code = 422


class InvalidSignature(SigningError):
    code = "invalid_signature"
    status_code = 422


class UnrecognizedFormat(SigningError):
    code = "unrecognized_format"


class NotFound(SigningError):
    code = "not_found"
    status_code = 404

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"Unknown {kind}: {ident}", {"kind": kind, "id": ident})


class Expired(SigningError):
    code = "expired"
    status_code = 410


class InvalidKeyFormat(SigningError):
    code = "invalid_key_format"


class InvalidDocument(SigningError):
    code = "invalid_document"


class ConcurrentUpdate(SigningError):
    code = "concurrent_update"
    status_code = 409


class InvalidBatch(SigningError):
    code = "invalid_batch"
