import datetime as dt

import orjson
import pytest

from docsign import crypto
from docsign.errors import NotFound, UnrecognizedFormat
from docsign.hashing import hash_record
from docsign.multisig import MultiSigEngine
from docsign.qr import QRCodec, payload_signatures, render_png
from docsign.schemas import Document, EmbeddedPayload, ReferencePayload, SignerInfo, SignerRole
from docsign.stores import InMemoryPayloadStore, InMemorySessionStore

T0 = dt.datetime(2026, 5, 2, 9, 30, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self):
        self.now = T0

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(clock):
    return InMemoryPayloadStore(clock=clock)


@pytest.fixture()
def codec(store, clock):
    return QRCodec(store, clock=clock)


def _single(content="x" * 150):
    doc = Document(id="SK-2026-001", title="Surat Keterangan Aktif", content=content,
                   metadata={"type": "surat_keterangan", "issuer": "Fakultas Teknik", "recipient": "Andi"})
    kp = crypto.generate_keypair(SignerRole.DEKAN)
    return doc, crypto.sign_document(doc, kp.private_key, SignerRole.DEKAN, SignerInfo(name="Prof. Hadi"))


def _five_long_names(clock):
    doc = Document(id="IJZ-2026-042", title="Ijazah Sarjana Teknik", content="lulus dengan pujian")
    engine = MultiSigEngine(InMemorySessionStore(), clock=clock)
    roles = list(SignerRole)
    signers = [{"role": r.value, "name": f"{r.value} " + "N" * 300} for r in roles]
    s = engine.initialize(doc.id, hash_record(doc), signers, threshold=5)
    for r in roles:
        s = engine.add_signature(s.session_id, r, crypto.generate_keypair(r).private_key)
    return doc, engine.create_aggregate(s)


def test_small_single_signature_is_embedded(codec):
    doc, signed = _single()
    enc = codec.encode(signed, doc)
    assert enc.kind == "embedded"
    assert enc.size <= 2000
    assert enc.reference is None
    data = orjson.loads(enc.qr_data)
    assert data["type"] == "document_verification"
    assert data["signature_type"] == "single"
    assert data["document_hash"] == signed.document_hash
    assert data["metadata"]["issuer"] == "Fakultas Teknik"
    assert data["timestamp"] == "2026-05-02T09:30:00Z"
    assert "threshold" not in data


def test_large_multi_signature_goes_to_reference(codec, store, clock):
    doc, agg = _five_long_names(clock)
    enc = codec.encode(agg, doc)
    assert enc.kind == "reference"
    assert enc.size > 2000
    ref = enc.reference
    assert ref.quick_verify.document_hash_prefix == agg.document_hash[:16]
    assert ref.quick_verify.signature_count == 5
    assert ref.url == f"/verification/{ref.token}"
    assert len(enc.qr_data.encode()) < enc.size

    stored = codec.resolve(ref.token)
    assert stored.signature_type == "multi-signature"
    assert stored.threshold == 5
    assert len(stored.signers) == 5
    assert QRCodec.quick_check(ref, agg.document_hash)
    assert not QRCodec.quick_check(ref, "0" * 64)


def test_payload_exactly_at_limit_is_embedded(store, clock):
    doc, signed = _single()
    size = QRCodec(store, clock=clock).encode(signed, doc).size
    assert QRCodec(store, max_embedded_bytes=size, clock=clock).encode(signed, doc).kind == "embedded"
    assert QRCodec(store, max_embedded_bytes=size - 1, clock=clock).encode(signed, doc).kind == "reference"


def test_decode_classifies_both_variants(codec, clock):
    doc, signed = _single()
    embedded = codec.decode(codec.encode(signed, doc).qr_data)
    assert embedded.kind == "embedded"
    assert isinstance(embedded.payload, EmbeddedPayload)
    assert embedded.payload.signers[0].name == "Prof. Hadi"

    doc, agg = _five_long_names(clock)
    reference = codec.decode(codec.encode(agg, doc).qr_data)
    assert reference.kind == "reference"
    assert isinstance(reference.payload, ReferencePayload)


@pytest.mark.parametrize("qr_data", [
    "not json",
    "[1, 2, 3]",
    '"document_verification"',
    '{"type": "signing_request", "session_id": "s"}',
    '{"document_id": "x"}',
    '{"type": "document_verification", "document_id": "x"}',
])
def test_decode_rejects_unrecognized(codec, qr_data):
    with pytest.raises(UnrecognizedFormat):
        codec.decode(qr_data)


def test_validate_lists_missing_fields(codec):
    v = codec.validate('{"type": "document_verification", "document_id": "x"}')
    assert not v.valid
    assert v.type == "document_verification"
    assert "Missing required field: document_hash" in v.errors
    assert "Missing required field: signers" in v.errors
    assert "Missing required field: timestamp" in v.errors

    v = codec.validate('{"type": "verification_url", "token": "t", "quick_verify": {}}')
    assert "Missing required field: url" in v.errors
    assert "Missing required field: quick_verify" in v.errors


def test_validate_never_raises(codec):
    assert codec.validate("{{{").valid is False
    assert codec.validate('{"type": "other"}').errors == ["Unknown payload type: 'other'"]


def test_validate_accepts_encoded_payload(codec):
    doc, signed = _single()
    v = codec.validate(codec.encode(signed, doc).qr_data)
    assert v.valid
    assert v.errors == []


def test_stored_payload_expires(codec, clock):
    doc, agg = _five_long_names(clock)
    token = codec.encode(agg, doc).reference.token
    clock.now += dt.timedelta(days=30, seconds=1)
    with pytest.raises(NotFound):
        codec.resolve(token)


def test_unknown_token(codec):
    with pytest.raises(NotFound):
        codec.resolve("missing")


def test_render_is_opt_in(codec):
    doc, signed = _single()
    assert codec.encode(signed, doc).image is None
    enc = codec.encode(signed, doc, render=True)
    assert enc.image.startswith("data:image/png;base64,")


def test_render_png_data_uri():
    uri = render_png('{"type":"document_verification"}', scale=2)
    assert uri.startswith("data:image/png;base64,")
    assert uri != render_png('{"type":"document_verification"}', scale=2, dark="#dc2626")


def test_report_points_at_token(codec, clock):
    doc, agg = _five_long_names(clock)
    enc = codec.encode(agg, doc)
    payload = codec.resolve(enc.reference.token)
    rep = codec.report(enc.reference.token, payload, valid=True)
    assert rep.report_url == f"/verification/report/{enc.reference.token}"
    assert rep.image is None
    data = orjson.loads(rep.qr_data)
    assert data["type"] == "verification_report"
    assert data["valid"] is True
    assert data["verified_at"] == "2026-05-02T09:30:00Z"
    assert data["summary"] == {"signature_type": "multi-signature", "signer_count": 5, "algorithm": payload.algorithm}
    assert codec.report(enc.reference.token, payload, valid=False, render=True).image.startswith("data:image/png;base64,")


def test_payload_signatures_bind_payload_hash(codec):
    doc, signed = _single()
    payload = codec.encode(signed, doc).payload
    [sig] = payload_signatures(payload)
    assert sig.signer_role == SignerRole.DEKAN
    assert sig.message_hash == signed.document_hash
    assert sig.signature_b64u == signed.signature.signature_b64u


def test_payload_signatures_reject_unknown_role(codec):
    doc, signed = _single()
    payload = codec.encode(signed, doc).payload
    payload.signers[0].role = "satpam"
    with pytest.raises(UnrecognizedFormat):
        payload_signatures(payload)
