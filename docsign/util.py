import base64
import binascii
import datetime as dt
import hashlib
import json
from typing import Any


def b64u_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def b64u_decode(s: str) -> bytes:
    # accepts both url-safe and standard alphabets, padded or not
    s = s.strip().replace("+", "-").replace("/", "_").rstrip("=")
    pad = "=" * ((4 - len(s) % 4) % 4)
    try:
        return base64.b64decode(s + pad, altchars=b"-_", validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_hex_digest(s: Any, length: int = 64) -> bool:
    if not isinstance(s, str) or len(s) != length:
        return False
    try:
        bytes.fromhex(s)
    except ValueError:
        return False
    return True


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: dt.datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False, default=str)
