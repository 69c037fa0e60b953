"""
Store interfaces consumed by the engine, with in-memory, SQLAlchemy and Redis
implementations.

Every mutation of a signing session goes through ``SessionStore.lock``, which
gives exclusive access to that one record for the whole read-modify-write.
Locks are per session id; unrelated sessions never wait on each other.
"""
from __future__ import annotations
import datetime as dt
import logging
import threading
from contextlib import contextmanager
from typing import Callable, ContextManager, Dict, Iterator, List, Optional, Protocol, Tuple

import redis
from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from docsign.errors import ConcurrentUpdate, NotFound
from docsign.models import DocumentRow, SignerKeyRow, SigningSessionRow, VerificationPayloadRow
from docsign.schemas import Document, EmbeddedPayload, KeyRecord, KeyStatus, MultiSigSession, SignerRole
from docsign.util import utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], dt.datetime]


class SessionTxn:
    """Handle for one locked session. ``session`` is a private copy; ``save`` stages it."""

    def __init__(self, session: MultiSigSession):
        self.session = session
        self.saved: Optional[MultiSigSession] = None

    def save(self, session: MultiSigSession):
        self.saved = session.model_copy(deep=True)


class DocumentStore(Protocol):
    def get(self, document_id: str) -> Optional[Document]: ...
    def put(self, document: Document) -> None: ...


class SessionStore(Protocol):
    def get(self, session_id: str) -> Optional[MultiSigSession]: ...
    def create(self, session: MultiSigSession) -> None: ...
    def lock(self, session_id: str) -> ContextManager[SessionTxn]: ...


class KeyRegistry(Protocol):
    def put(self, record: KeyRecord) -> None: ...
    def get(self, key_id: str) -> Optional[KeyRecord]: ...
    def list(self, role: Optional[SignerRole] = None, status: Optional[KeyStatus] = None) -> List[KeyRecord]: ...
    def revoke(self, key_id: str, now: Optional[dt.datetime] = None) -> KeyRecord: ...


class PayloadStore(Protocol):
    def put(self, token: str, payload: EmbeddedPayload, ttl_seconds: int) -> None: ...
    def get(self, token: str) -> Optional[EmbeddedPayload]: ...


# ---- in-memory ----

class _KeyedLocks:
    """Per-key mutexes; an entry lives only while some caller holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}

    @contextmanager
    def __call__(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class InMemoryDocumentStore:
    def __init__(self):
        self._rows: Dict[str, str] = {}

    def get(self, document_id: str) -> Optional[Document]:
        raw = self._rows.get(document_id)
        return Document.model_validate_json(raw) if raw else None

    def put(self, document: Document) -> None:
        self._rows[document.id] = document.model_dump_json()


class InMemorySessionStore:
    def __init__(self):
        # JSON text, so readers always get an independent copy
        self._rows: Dict[str, str] = {}
        self._locks = _KeyedLocks()

    def get(self, session_id: str) -> Optional[MultiSigSession]:
        raw = self._rows.get(session_id)
        return MultiSigSession.model_validate_json(raw) if raw else None

    def create(self, session: MultiSigSession) -> None:
        with self._locks(session.session_id):
            if session.session_id in self._rows:
                raise ConcurrentUpdate(f"Session {session.session_id} already exists")
            self._rows[session.session_id] = session.model_dump_json()

    @contextmanager
    def lock(self, session_id: str) -> Iterator[SessionTxn]:
        with self._locks(session_id):
            current = self.get(session_id)
            if current is None:
                raise NotFound("session", session_id)
            txn = SessionTxn(current)
            try:
                yield txn
            finally:
                # a staged save is kept even when the caller raises afterwards (e.g. lazy expiry)
                if txn.saved is not None:
                    self._rows[session_id] = txn.saved.model_dump_json()


class InMemoryKeyRegistry:
    def __init__(self):
        self._rows: Dict[str, KeyRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: KeyRecord) -> None:
        with self._lock:
            self._rows[record.key_id] = record.model_copy()

    def get(self, key_id: str) -> Optional[KeyRecord]:
        rec = self._rows.get(key_id)
        return rec.model_copy() if rec else None

    def list(self, role: Optional[SignerRole] = None, status: Optional[KeyStatus] = None) -> List[KeyRecord]:
        out = []
        for rec in self._rows.values():
            if role is not None and rec.role != role:
                continue
            if status is not None and rec.status != status:
                continue
            out.append(rec.model_copy())
        return sorted(out, key=lambda r: r.created_at)

    def revoke(self, key_id: str, now: Optional[dt.datetime] = None) -> KeyRecord:
        with self._lock:
            rec = self._rows.get(key_id)
            if rec is None:
                raise NotFound("key", key_id)
            if rec.status != KeyStatus.REVOKED:
                rec = rec.model_copy(update={"status": KeyStatus.REVOKED, "revoked_at": now or utcnow()})
                self._rows[key_id] = rec
            return rec.model_copy()


class InMemoryPayloadStore:
    def __init__(self, clock: Clock = utcnow):
        self._rows: Dict[str, Tuple[dt.datetime, str]] = {}
        self._clock = clock

    def put(self, token: str, payload: EmbeddedPayload, ttl_seconds: int) -> None:
        self._rows[token] = (self._clock() + dt.timedelta(seconds=ttl_seconds), payload.model_dump_json())

    def get(self, token: str) -> Optional[EmbeddedPayload]:
        row = self._rows.get(token)
        if row is None:
            return None
        expires_at, raw = row
        if self._clock() > expires_at:
            self._rows.pop(token, None)
            return None
        return EmbeddedPayload.model_validate_json(raw)


# ---- SQLAlchemy ----

class SqlDocumentStore:
    def __init__(self, session_factory: sessionmaker):
        self._sf = session_factory

    def get(self, document_id: str) -> Optional[Document]:
        with self._sf() as db:
            row = db.get(DocumentRow, document_id)
            return Document.model_validate_json(row.body_json) if row else None

    def put(self, document: Document) -> None:
        with self._sf() as db:
            row = db.get(DocumentRow, document.id)
            if row is None:
                row = DocumentRow(document_id=document.id, created_at=document.created_at)
                db.add(row)
            row.title = document.title
            row.session_id = document.session_id
            row.body_json = document.model_dump_json()
            row.updated_at = utcnow()
            db.commit()


class SqlSessionStore:
    def __init__(self, session_factory: sessionmaker):
        self._sf = session_factory

    def get(self, session_id: str) -> Optional[MultiSigSession]:
        with self._sf() as db:
            row = db.get(SigningSessionRow, session_id)
            return MultiSigSession.model_validate_json(row.body_json) if row else None

    def create(self, session: MultiSigSession) -> None:
        with self._sf() as db:
            db.add(SigningSessionRow(
                session_id=session.session_id,
                document_id=session.document_id,
                status=session.status.value,
                version=session.version,
                body_json=session.model_dump_json(),
                expires_at=session.expires_at,
            ))
            db.commit()

    @contextmanager
    def lock(self, session_id: str) -> Iterator[SessionTxn]:
        with self._sf() as db:
            # row lock where the dialect supports it; the version check below covers the rest
            row = db.execute(
                select(SigningSessionRow).where(SigningSessionRow.session_id == session_id).with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise NotFound("session", session_id)
            expected = row.version
            txn = SessionTxn(MultiSigSession.model_validate_json(row.body_json))
            try:
                yield txn
            finally:
                if txn.saved is None:
                    db.rollback()
                else:
                    self._write(db, session_id, expected, txn.saved)

    def _write(self, db, session_id: str, expected: int, session: MultiSigSession):
        res = db.execute(
            update(SigningSessionRow)
            .where(SigningSessionRow.session_id == session_id, SigningSessionRow.version == expected)
            .values(
                status=session.status.value,
                version=session.version,
                body_json=session.model_dump_json(),
                updated_at=utcnow(),
            )
        )
        if res.rowcount != 1:
            db.rollback()
            logger.warning("session %s changed concurrently (expected version %s)", session_id, expected)
            raise ConcurrentUpdate(f"Session {session_id} was modified concurrently", {"session_id": session_id})
        db.commit()


class SqlKeyRegistry:
    def __init__(self, session_factory: sessionmaker):
        self._sf = session_factory

    def put(self, record: KeyRecord) -> None:
        with self._sf() as db:
            db.merge(SignerKeyRow(
                key_id=record.key_id,
                role=record.role.value,
                status=record.status.value,
                public_key_b64u=record.public_key_b64u,
                body_json=record.model_dump_json(),
                created_at=record.created_at,
            ))
            db.commit()

    def get(self, key_id: str) -> Optional[KeyRecord]:
        with self._sf() as db:
            row = db.get(SignerKeyRow, key_id)
            return KeyRecord.model_validate_json(row.body_json) if row else None

    def list(self, role: Optional[SignerRole] = None, status: Optional[KeyStatus] = None) -> List[KeyRecord]:
        q = select(SignerKeyRow).order_by(SignerKeyRow.created_at.asc())
        if role is not None:
            q = q.where(SignerKeyRow.role == SignerRole(role).value)
        if status is not None:
            q = q.where(SignerKeyRow.status == KeyStatus(status).value)
        with self._sf() as db:
            return [KeyRecord.model_validate_json(r.body_json) for r in db.execute(q).scalars()]

    def revoke(self, key_id: str, now: Optional[dt.datetime] = None) -> KeyRecord:
        with self._sf() as db:
            row = db.execute(select(SignerKeyRow).where(SignerKeyRow.key_id == key_id).with_for_update()).scalar_one_or_none()
            if row is None:
                raise NotFound("key", key_id)
            rec = KeyRecord.model_validate_json(row.body_json)
            if rec.status != KeyStatus.REVOKED:
                rec = rec.model_copy(update={"status": KeyStatus.REVOKED, "revoked_at": now or utcnow()})
                row.status = rec.status.value
                row.body_json = rec.model_dump_json()
                db.commit()
            return rec


class SqlPayloadStore:
    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow):
        self._sf = session_factory
        self._clock = clock

    def put(self, token: str, payload: EmbeddedPayload, ttl_seconds: int) -> None:
        now = self._clock()
        with self._sf() as db:
            db.add(VerificationPayloadRow(
                token=token,
                body_json=payload.model_dump_json(),
                created_at=now,
                expires_at=now + dt.timedelta(seconds=ttl_seconds),
            ))
            db.commit()

    def get(self, token: str) -> Optional[EmbeddedPayload]:
        with self._sf() as db:
            row = db.get(VerificationPayloadRow, token)
            if row is None:
                return None
            expires_at = row.expires_at
            if expires_at.tzinfo is None:
                # sqlite drops tzinfo on the way back
                expires_at = expires_at.replace(tzinfo=dt.timezone.utc)
            if self._clock() > expires_at:
                db.delete(row)
                db.commit()
                return None
            return EmbeddedPayload.model_validate_json(row.body_json)


# ---- Redis ----

class RedisPayloadStore:
    """Payloads under ``qr:<token>`` with a native Redis expiry."""

    def __init__(self, client, prefix: str = "qr:"):
        self._r = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisPayloadStore":
        return cls(redis.from_url(url, decode_responses=True))

    def put(self, token: str, payload: EmbeddedPayload, ttl_seconds: int) -> None:
        self._r.set(self._prefix + token, payload.model_dump_json(), ex=ttl_seconds)

    def get(self, token: str) -> Optional[EmbeddedPayload]:
        raw = self._r.get(self._prefix + token)
        if raw is None:
            return None
        return EmbeddedPayload.model_validate_json(raw)
