from __future__ import annotations
from typing import TYPE_CHECKING, Any, Mapping

from docsign.canonical import canonical_document_bytes
from docsign.util import sha256_hex

if TYPE_CHECKING:
    from docsign.schemas import Document

HASH_ALG = "SHA-256"


def hash_document(document_id: str, title: str, content: Any, metadata: Mapping[str, Any] | None = None) -> str:
    """SHA-256 (hex) over the canonical id/title/content/metadata serialization."""
    return sha256_hex(canonical_document_bytes(document_id, title, content, metadata))


def hash_record(document: "Document") -> str:
    return hash_document(document.id, document.title, document.content, document.metadata)
