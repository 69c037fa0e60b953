import json

import pytest
from fastapi.testclient import TestClient

from app import create_app
from docsign.config import Settings
from docsign.service import SigningService
from docsign.stores import InMemoryDocumentStore, InMemoryKeyRegistry, InMemoryPayloadStore, InMemorySessionStore


@pytest.fixture()
def client():
    svc = SigningService(InMemoryDocumentStore(), InMemorySessionStore(), InMemoryKeyRegistry(), InMemoryPayloadStore(), settings=Settings())
    return TestClient(create_app(svc))


def _key(client, role, name):
    r = client.post("/keys/generate", json={"role": role, "name": name})
    assert r.status_code == 200
    return r.json()["data"]


def _document(client, doc_id="TA-2026-015", **extra):
    body = {"id": doc_id, "title": "Lembar Pengesahan Tugas Akhir", "content": "Judul: Deteksi Plagiarisme",
            "metadata": {"type": "tugas_akhir", "issuer": "Prodi Informatika"}}
    body.update(extra)
    r = client.post("/documents", json=body)
    assert r.status_code == 200
    return r.json()["data"]


def test_root(client):
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.headers["x-request-id"]


def test_health_and_metrics(client):
    assert client.get("/health").json() == {"success": True, "data": {"status": "ok"}}
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "docsign_requests_total" in r.text


def test_keys(client):
    k = _key(client, "dosen", "Dr. Budi")
    assert len(k["private_key_b64u"]) == 43
    key_id = k["key"]["key_id"]

    assert client.get(f"/keys/{key_id}").json()["data"]["role"] == "dosen"
    assert [x["key_id"] for x in client.get("/keys", params={"role": "dosen"}).json()["data"]] == [key_id]
    assert client.post("/keys/validate", json={"public_key_b64u": k["key"]["public_key_b64u"],
                                               "private_key_b64u": k["private_key_b64u"]}).json()["data"]["valid"]
    assert client.get("/keys/algorithm/info").json()["data"]["signature_bytes"] == 64

    jwks = client.get("/.well-known/jwks.json").json()
    assert [j["kid"] for j in jwks["keys"]] == [key_id]
    assert client.post(f"/keys/{key_id}/revoke").json()["data"]["status"] == "revoked"
    assert client.get("/.well-known/jwks.json").json() == {"keys": []}


def test_unknown_key_is_404(client):
    r = client.get("/keys/nope")
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "not_found", "message": "Unknown key: nope", "details": {"kind": "key", "id": "nope"}}


def test_invalid_role_is_rejected(client):
    r = client.post("/keys/generate", json={"role": "satpam", "name": "X"})
    assert r.status_code == 422
    assert r.json()["error"] == "validation_error"


def test_single_signature_flow(client):
    k = _key(client, "dekan", "Prof. Hadi")
    doc = _document(client)
    assert len(doc["document_hash"]) == 64

    r = client.post("/signatures/single", json={"document_id": doc["id"], "role": "dekan", "private_key_b64u": k["private_key_b64u"]})
    assert r.status_code == 200
    signed = r.json()["data"]
    assert signed["document_hash"] == doc["document_hash"]

    out = client.post("/signatures/verify", json={"signed": signed}).json()["data"]
    assert out["valid"] is True
    assert out["reason"] == "valid"

    tampered = {"id": doc["id"], "title": doc["title"], "content": "Judul: Lain", "metadata": doc["metadata"]}
    out = client.post("/signatures/verify", json={"signed": signed, "document": tampered}).json()["data"]
    assert out["reason"] == "tampered"

    r = client.post("/signatures/verify", json={"signed": signed, "document": tampered, "strict": True})
    assert r.status_code == 422
    assert r.json()["error"] == "tamper_detected"

    client.post(f"/keys/{k['key']['key_id']}/revoke")
    out = client.post("/signatures/verify", json={"signed": signed}).json()["data"]
    assert out["valid"] is False
    assert out["reason"] == "key_revoked"


def test_bad_private_key(client):
    doc = _document(client)
    r = client.post("/signatures/single", json={"document_id": doc["id"], "role": "dekan", "private_key_b64u": "c2hvcnQ"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_key_format"


def test_multi_signature_flow(client):
    keys = {role: _key(client, role, name) for role, name in [("dosen", "Dr. Budi"), ("kaprodi", "Dr. Sari"), ("dekan", "Prof. Hadi")]}
    doc = _document(client)
    r = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": r, "name": keys[r]["key"]["owner_name"]} for r in keys],
        "threshold": 2,
    })
    assert r.status_code == 200
    sid = r.json()["data"]["session_id"]
    assert client.get(f"/documents/{doc['id']}").json()["data"]["session_id"] == sid

    req = client.get(f"/sessions/{sid}/signing-request/dosen").json()["data"]
    assert req["url"] == f"/sessions/{sid}/signatures/dosen"

    r = client.post(req["url"], json={"private_key_b64u": keys["dosen"]["private_key_b64u"]})
    data = r.json()["data"]
    assert data["session"]["status"] == "pending"
    assert data["progress"]["percentage"] == 50

    r = client.post(f"/sessions/{sid}/signatures/dosen", json={"private_key_b64u": keys["dosen"]["private_key_b64u"]})
    assert r.status_code == 409
    assert r.json()["error"] == "duplicate_signature"

    assert client.get(f"/sessions/{sid}/aggregate").json()["error"] == "not_completed"

    r = client.post(f"/sessions/{sid}/signatures/kaprodi", json={"private_key_b64u": keys["kaprodi"]["private_key_b64u"]})
    assert r.json()["data"]["session"]["status"] == "completed"

    r = client.post(f"/sessions/{sid}/signatures/dekan", json={"private_key_b64u": keys["dekan"]["private_key_b64u"]})
    assert r.status_code == 409
    assert r.json()["error"] == "session_closed"

    out = client.post(f"/sessions/{sid}/verify").json()["data"]
    assert out["valid"] is True
    assert out["valid_signatures"] == 2

    agg = client.get(f"/sessions/{sid}/aggregate").json()["data"]
    assert [e["role"] for e in agg["signatures"]] == ["dosen", "kaprodi"]

    enc = client.post("/qr/encode", json={"document_id": doc["id"]}).json()["data"]
    assert enc["kind"] == "embedded"
    assert enc["payload"]["signature_type"] == "multi-signature"
    decoded = client.post("/qr/decode", json={"qr_data": enc["qr_data"]}).json()["data"]
    assert decoded["kind"] == "embedded"
    assert client.post("/qr/validate", json={"qr_data": enc["qr_data"]}).json()["data"]["valid"] is True


def test_unknown_signer_role(client):
    doc = _document(client)
    sid = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": "dosen"}, {"role": "kaprodi"}]}).json()["data"]["session_id"]
    k = _key(client, "rektor", "Prof. Rektor")
    r = client.post(f"/sessions/{sid}/signatures/satpam", json={"private_key_b64u": k["private_key_b64u"]})
    assert r.status_code == 400
    assert r.json()["error"] == "unknown_signer"


def test_invalid_config_lists_violations(client):
    doc = _document(client)
    r = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": "dosen"}, {"role": "dosen"}], "threshold": 3})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "invalid_config"
    assert body["details"]["violations"] == ["Threshold cannot exceed number of signers", "Duplicate signer roles found: dosen"]


def test_cancel_session(client):
    doc = _document(client)
    sid = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": "dosen"}, {"role": "kaprodi"}]}).json()["data"]["session_id"]
    r = client.post(f"/sessions/{sid}/cancel", json={"reason": "data mahasiswa salah"})
    assert r.json()["data"]["status"] == "cancelled"
    assert client.post(f"/sessions/{sid}/cancel").status_code == 409
    assert client.get(f"/sessions/{sid}/progress").json()["data"]["status"] == "cancelled"


def test_qr_reference_flow(client):
    roles = ["dosen", "kaprodi", "dekan", "rektor", "admin"]
    keys = {r: _key(client, r, r) for r in roles}
    doc = _document(client, doc_id="IJZ-2026-001")
    sid = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": r, "name": r.upper() + " " + "X" * 300} for r in roles],
        "threshold": 5,
    }).json()["data"]["session_id"]
    for r in roles:
        assert client.post(f"/sessions/{sid}/signatures/{r}", json={"private_key_b64u": keys[r]["private_key_b64u"]}).status_code == 200

    enc = client.post("/qr/encode", json={"document_id": doc["id"], "source": "session"}).json()["data"]
    assert enc["kind"] == "reference"
    assert enc["reference"]["quick_verify"]["document_hash_prefix"] == doc["document_hash"][:16]

    payload = client.get(enc["reference"]["url"]).json()["data"]
    assert len(payload["signers"]) == 5
    assert client.get("/verification/unknown-token").status_code == 404


def test_qr_encode_unsigned_document(client):
    doc = _document(client)
    r = client.post("/qr/encode", json={"document_id": doc["id"]})
    assert r.status_code == 409
    assert r.json()["error"] == "not_completed"


def test_qr_decode_garbage(client):
    r = client.post("/qr/decode", json={"qr_data": "hello"})
    assert r.status_code == 400
    assert r.json()["error"] == "unrecognized_format"


def test_body_size_cap(client):
    r = client.post("/documents", json={"title": "Dokumen Besar", "content": "x" * 1_100_000})
    assert r.status_code == 413
    assert r.json()["success"] is False


def _signed_single(client, doc_id="SK-2026-101"):
    k = _key(client, "dekan", "Prof. Hadi")
    doc = _document(client, doc_id=doc_id)
    r = client.post("/signatures/single", json={"document_id": doc["id"], "role": "dekan", "private_key_b64u": k["private_key_b64u"]})
    assert r.status_code == 200
    return doc, r.json()["data"]


def _two_of_three(client, doc_id="TA-2026-020"):
    keys = {role: _key(client, role, role) for role in ["dosen", "kaprodi", "dekan"]}
    doc = _document(client, doc_id=doc_id)
    sid = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": r} for r in keys], "threshold": 2}).json()["data"]["session_id"]
    for role in ["dosen", "kaprodi"]:
        assert client.post(f"/sessions/{sid}/signatures/{role}", json={"private_key_b64u": keys[role]["private_key_b64u"]}).status_code == 200
    return doc, sid


def _five_signer_reference(client):
    roles = ["dosen", "kaprodi", "dekan", "rektor", "admin"]
    keys = {r: _key(client, r, r) for r in roles}
    doc = _document(client, doc_id="IJZ-2026-002")
    sid = client.post(f"/documents/{doc['id']}/prepare-signing", json={
        "required_signers": [{"role": r, "name": r.upper() + " " + "X" * 300} for r in roles],
        "threshold": 5,
    }).json()["data"]["session_id"]
    for r in roles:
        client.post(f"/sessions/{sid}/signatures/{r}", json={"private_key_b64u": keys[r]["private_key_b64u"]})
    enc = client.post("/qr/encode", json={"document_id": doc["id"]}).json()["data"]
    assert enc["kind"] == "reference"
    return doc, enc


def test_nan_metadata_is_refused(client):
    r = client.post("/documents", content='{"title": "Transkrip Nilai", "content": "isi", "metadata": {"ipk": NaN}}',
                    headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_document"
    assert r.json()["details"] == {"path": "metadata.ipk"}


def test_short_tampered_title_is_reported_not_rejected(client):
    doc, signed = _signed_single(client)
    r = client.post("/signatures/verify", json={"signed": signed, "document": {
        "id": doc["id"], "title": "TA", "content": doc["content"], "metadata": doc["metadata"]}})
    assert r.status_code == 200
    assert r.json()["data"]["reason"] == "tampered"


def test_signatures_for_document(client):
    doc, signed = _signed_single(client)
    data = client.get(f"/signatures/{doc['id']}").json()["data"]
    assert data["type"] == "single"
    assert data["signature"]["signature"]["signature_b64u"] == signed["signature"]["signature_b64u"]

    multi, sid = _two_of_three(client)
    data = client.get(f"/signatures/{multi['id']}").json()["data"]
    assert data["type"] == "multi"
    assert data["session"]["session_id"] == sid
    assert data["progress"]["signed"] == 2

    plain = _document(client, doc_id="SK-2026-999")
    assert client.get(f"/signatures/{plain['id']}").status_code == 404


def test_verify_qr_single_embedded(client):
    doc, _ = _signed_single(client)
    enc = client.post("/qr/encode", json={"document_id": doc["id"]}).json()["data"]
    out = client.post("/verification/qr", json={"qr_data": enc["qr_data"]}).json()["data"]
    assert out["kind"] == "embedded"
    assert out["token"] is None
    assert out["signature_type"] == "single"
    assert out["valid"] is True
    assert out["metadata"]["issuer"] == "Prodi Informatika"


def test_verify_qr_detects_altered_hash(client):
    doc, _ = _signed_single(client)
    payload = client.post("/qr/encode", json={"document_id": doc["id"]}).json()["data"]["payload"]
    payload["document_hash"] = "0" * 64
    out = client.post("/verification/qr", json={"qr_data": json.dumps(payload)}).json()["data"]
    assert out["valid"] is False
    assert out["reason"] == "tampered"


def test_verify_qr_keeps_session_threshold(client):
    doc, _ = _two_of_three(client)
    payload = client.post("/qr/encode", json={"document_id": doc["id"]}).json()["data"]["payload"]
    out = client.post("/verification/qr", json={"qr_data": json.dumps(payload)}).json()["data"]
    assert out["valid"] is True

    payload["threshold"] = 1
    payload["signers"] = payload["signers"][:1]
    out = client.post("/verification/qr", json={"qr_data": json.dumps(payload)}).json()["data"]
    assert out["valid"] is False
    assert out["reason"] == "threshold_not_met"
    assert out["verification"]["threshold"] == 2


def test_verify_qr_reference(client):
    doc, enc = _five_signer_reference(client)
    out = client.post("/verification/qr", json={"qr_data": enc["qr_data"]}).json()["data"]
    assert out["kind"] == "reference"
    assert out["token"] == enc["reference"]["token"]
    assert out["document_id"] == doc["id"]
    assert out["valid"] is True
    assert out["verification"]["valid_signatures"] == 5


def test_verify_stored_document(client):
    doc, _ = _signed_single(client)
    out = client.post(f"/verification/document/{doc['id']}").json()["data"]
    assert out["signature_type"] == "single"
    assert out["title"] == doc["title"]
    assert out["valid"] is True

    multi, _ = _two_of_three(client)
    out = client.post(f"/verification/document/{multi['id']}").json()["data"]
    assert out["signature_type"] == "multi-signature"
    assert out["valid"] is True

    plain = _document(client, doc_id="SK-2026-999")
    r = client.post(f"/verification/document/{plain['id']}")
    assert r.status_code == 409
    assert r.json()["error"] == "not_completed"


def test_verify_batch(client):
    doc, _ = _signed_single(client)
    out = client.post("/verification/batch", json={"document_ids": [doc["id"], "missing"]}).json()["data"]
    assert (out["total"], out["valid"], out["invalid"], out["errors"]) == (2, 1, 0, 1)
    assert out["results"][0]["valid"] is True
    assert out["results"][1] == {"document_id": "missing", "success": False, "title": None, "valid": None, "reason": None,
                                 "verified_at": None, "error": "not_found", "message": "Unknown document: missing"}


def test_verify_batch_limits(client):
    r = client.post("/verification/batch", json={"document_ids": [f"D-{i}" for i in range(11)]})
    assert r.status_code == 422
    assert client.post("/verification/batch", json={"document_ids": []}).status_code == 422


def test_verification_report(client):
    doc, enc = _five_signer_reference(client)
    token = enc["reference"]["token"]
    rep = client.get(f"/verification/report/{token}").json()["data"]
    assert rep["status"] == "VALID"
    assert rep["document_id"] == doc["id"]
    assert rep["signature_count"] == 5
    assert rep["qr"]["report_url"] == f"/verification/report/{token}"
    assert rep["qr"]["image"] is None
    assert json.loads(rep["qr"]["qr_data"])["type"] == "verification_report"

    rep = client.get(f"/verification/report/{token}", params={"render": "true"}).json()["data"]
    assert rep["qr"]["image"].startswith("data:image/png;base64,")
    assert client.get("/verification/report/unknown").status_code == 404


def test_qr_encode_with_image(client):
    doc, _ = _signed_single(client)
    enc = client.post("/qr/encode", json={"document_id": doc["id"], "render": True}).json()["data"]
    assert enc["image"].startswith("data:image/png;base64,")
