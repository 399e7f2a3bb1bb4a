from datetime import datetime, timedelta

from app.etmf.modules.esignatures.models import ESignature
from app.etmf.modules.esignatures.service import evaluate_status, is_valid
from helpers import create_document


def _request_signature(client, document_pk, **overrides):
    payload = {"document_id": document_pk, "type": "ELECTRONIC", "signature_data": "data:image/png;base64,AAAA"}
    payload.update(overrides)
    r = client.post("/api/esignatures", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def test_designated_signer_signs(client, admin_id):
    doc = create_document(client)
    sig = _request_signature(client, doc["id"])
    assert sig["esignature_id"].startswith("ESIG-")
    assert sig["user_id"] == admin_id
    assert sig["status"] == "PENDING"
    assert sig["is_valid"] is False

    r = client.post(f"/api/esignatures/{sig['id']}/sign")
    assert r.status_code == 200
    assert r.json["status"] == "SIGNED"
    assert r.json["is_valid"] is True
    assert r.json["signed_at"] is not None

    assert client.post(f"/api/esignatures/{sig['id']}/sign").status_code == 409


def test_other_user_cannot_sign(client, make_user, user_client):
    make_user("monitor@example.com", "documents.read", "documents.sign")
    doc = create_document(client)
    sig = _request_signature(client, doc["id"])

    r = user_client("monitor@example.com").post(f"/api/esignatures/{sig['id']}/sign")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"


def test_signature_for_another_signer(client, make_user, user_client):
    signer_id = make_user("pi@example.com", "documents.read", "documents.sign")
    doc = create_document(client)
    sig = _request_signature(client, doc["id"], user_id=signer_id, type="digital")
    assert sig["type"] == "DIGITAL"

    assert client.post(f"/api/esignatures/{sig['id']}/sign").status_code == 409
    r = user_client("pi@example.com").post(f"/api/esignatures/{sig['id']}/sign")
    assert r.json["status"] == "SIGNED"


def test_past_expiry_marks_expired(client):
    doc = create_document(client)
    past = (datetime.utcnow() - timedelta(hours=1)).isoformat() + "Z"
    sig = _request_signature(client, doc["id"], expires_at=past)
    assert sig["status"] == "EXPIRED"
    assert sig["is_valid"] is False

    assert client.post(f"/api/esignatures/{sig['id']}/sign").status_code == 409
    assert client.post(f"/api/esignatures/{sig['id']}/revoke").status_code == 409


def test_get_refreshes_expired_status(client):
    doc = create_document(client)
    sig = _request_signature(client, doc["id"])
    client.post(f"/api/esignatures/{sig['id']}/sign")

    past = (datetime.utcnow() - timedelta(minutes=5)).isoformat()
    r = client.post(f"/api/esignatures/{sig['id']}/expiry", json={"expires_at": past})
    assert r.json["status"] == "EXPIRED"

    r = client.get(f"/api/esignatures/{sig['id']}")
    assert r.json["status"] == "EXPIRED"
    assert [x["id"] for x in client.get("/api/esignatures?status=expired").json] == [sig["id"]]


def test_revoke(client):
    doc = create_document(client)
    sig = _request_signature(client, doc["id"])
    client.post(f"/api/esignatures/{sig['id']}/sign")

    r = client.post(f"/api/esignatures/{sig['id']}/revoke", json={"reason": "Wrong document version"})
    assert r.status_code == 200
    assert r.json["status"] == "REVOKED"
    assert r.json["is_valid"] is False
    assert client.post(f"/api/esignatures/{sig['id']}/revoke").status_code == 409


def test_create_validation(client):
    doc = create_document(client)
    assert client.post("/api/esignatures", json={"document_id": doc["id"], "type": "ELECTRONIC"}).status_code == 400
    assert client.post("/api/esignatures", json={"document_id": doc["id"], "type": "INK", "signature_data": "x"}).status_code == 400
    assert client.post("/api/esignatures", json={"document_id": 999, "type": "WET", "signature_data": "x"}).status_code == 404


def test_validity_helpers():
    now = datetime(2026, 6, 1, 12, 0)
    sig = ESignature(status="SIGNED", expires_at=now + timedelta(days=1))
    assert is_valid(sig, now) is True
    assert evaluate_status(sig, now) == "SIGNED"
    assert evaluate_status(sig, now + timedelta(days=2)) == "EXPIRED"
    assert is_valid(sig, now) is False

    revoked = ESignature(status="REVOKED", expires_at=now - timedelta(days=1))
    assert evaluate_status(revoked, now) == "REVOKED"
