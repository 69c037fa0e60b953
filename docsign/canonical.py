from __future__ import annotations
import math
from typing import Any, Mapping

import orjson

from docsign.errors import InvalidDocument
from docsign.util import b64u_encode

# Fixed binding order of the signable fields. Never derived from dict iteration.
DOCUMENT_FIELDS = ("id", "title", "content", "metadata")


def canonical_json_bytes(obj: object) -> bytes:
    # Deterministic JSON for hashing:
    # - sorted keys at every mapping level
    # - UTF-8
    # - no whitespace
    return orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)


def _bindable_content(content: Any) -> Any:
    if isinstance(content, (bytes, bytearray, memoryview)):
        return {"kind": "bytes", "b64u": b64u_encode(bytes(content))}
    return content


def _reject_non_finite(value: Any, path: str):
    # orjson writes NaN and +/-Infinity as null
    if isinstance(value, float) and not math.isfinite(value):
        raise InvalidDocument(f"Non-finite number at {path} cannot be signed", {"path": path})
    if isinstance(value, Mapping):
        for k, v in value.items():
            _reject_non_finite(v, f"{path}.{k}")
    elif isinstance(value, (list, tuple)):
        for i, v in enumerate(value):
            _reject_non_finite(v, f"{path}[{i}]")


def canonical_document_bytes(document_id: str, title: str, content: Any, metadata: Mapping[str, Any] | None) -> bytes:
    values = (document_id, title, _bindable_content(content), dict(metadata or {}))
    for name, value in zip(DOCUMENT_FIELDS, values):
        _reject_non_finite(value, name)
    pairs = [[name, value] for name, value in zip(DOCUMENT_FIELDS, values)]
    try:
        return canonical_json_bytes(pairs)
    except (orjson.JSONEncodeError, TypeError, ValueError) as e:
        raise InvalidDocument(f"Document {document_id!r} is not serializable: {e}") from e
