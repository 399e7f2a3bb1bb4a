import io
import json
from datetime import datetime, timedelta

import pytest

from app.etmf.db import session_scope
from app.etmf.errors import Conflict, InvalidState, StorageUnavailable, ValidationError
from app.etmf.models import User
from app.etmf.modules.documents.models import Document
from app.etmf.modules.documents import service as documents_service
from app.etmf.modules.documents.service import add_version, upload_document
from app.etmf.modules.documents.service import create_document as create_document_record
from app.etmf.storage import LocalStorage, Storage
from helpers import create_document, create_trial

MB = 1024 * 1024


class RecordingStorage(Storage):
    def __init__(self, fail: bool = False):
        self.stored: list[str] = []
        self.fail = fail

    def put_bytes(self, key, data, *, content_type=None):
        if self.fail:
            raise StorageUnavailable("bucket offline")
        self.stored.append(key)

    def url_for(self, key):
        return f"memory://{key}"


def _admin(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def test_create_document_defaults(client):
    d = create_document(client, tags=["protocol", "protocol", "v1"])
    assert d["document_id"].startswith("DOC-")
    assert d["status"] == "DRAFT"
    assert d["version"] == 1
    assert d["access_level"] == "RESTRICTED"
    assert d["tags"] == ["protocol", "v1"]
    assert [e["action"] for e in d["audit_trail"]] == ["create"]


def test_title_is_required_and_bounded(client):
    assert client.post("/api/documents", json={"title": ""}).status_code == 400
    assert client.post("/api/documents", json={"title": "t" * 101}).status_code == 400


def test_unknown_classification_or_trial_is_not_found(client):
    r = client.post("/api/documents", json={"title": "Doc", "zone_id": 999})
    assert r.status_code == 404
    r = client.post("/api/documents", json={"title": "Doc", "trial_id": 999})
    assert r.status_code == 404


def test_duplicate_document_id_is_conflict(client):
    create_document(client, document_id="DOC-FIXED-1")
    r = client.post("/api/documents", json={"title": "Other", "document_id": "DOC-FIXED-1"})
    assert r.status_code == 409


def test_full_lifecycle_to_approved(client):
    d = create_document(client)
    base = f"/api/documents/{d['id']}"
    for name, expected in (
        ("submit_for_review", "IN_REVIEW"),
        ("complete_review", "IN_QC"),
        ("pass_qc", "PENDING_APPROVAL"),
        ("approve", "APPROVED"),
    ):
        r = client.post(f"{base}/{name}")
        assert r.status_code == 200, r.json
        assert r.json["status"] == expected

    detail = client.get(base).json
    assert detail["qc_status"] == "PASSED"
    assert detail["approval_date"] is not None
    assert [e["action"] for e in detail["audit_trail"]][-1] == "approve"

    r = client.post(f"{base}/submit_for_review")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"


def test_fail_qc_rejects_and_delete_archives(client):
    d = create_document(client)
    base = f"/api/documents/{d['id']}"
    client.post(f"{base}/submit_for_review")
    client.post(f"{base}/complete_review")
    r = client.post(f"{base}/fail_qc", json={"reason": "Missing signature page"})
    assert r.json["status"] == "REJECTED"
    assert r.json["qc_status"] == "FAILED"

    r = client.delete(base, json={"reason": "superseded"})
    assert r.status_code == 200
    assert r.json["status"] == "ARCHIVED"

    assert client.post(f"{base}/archive").status_code == 409
    assert client.patch(base, json={"title": "Nope"}).status_code == 409


def test_add_version_keeps_prior_file(client):
    d = create_document(client, file={"url": "https://files.example/v1.pdf", "name": "v1.pdf", "size": 100})
    r = client.post(
        f"/api/documents/{d['id']}/versions",
        json={"file_url": "https://files.example/v2.pdf", "file_name": "v2.pdf", "file_size": 200, "change_summary": "typos"},
    )
    assert r.status_code == 200, r.json
    assert r.json["version"] == 2
    assert r.json["file"]["url"] == "https://files.example/v2.pdf"
    prior = r.json["previous_versions"]
    assert len(prior) == 1
    assert prior[0]["version"] == 1
    assert prior[0]["file_url"] == "https://files.example/v1.pdf"
    assert prior[0]["change_summary"] == "typos"


def test_oversized_upload_is_rejected_before_storage(app):
    storage = RecordingStorage()
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            upload_document(
                s,
                storage,
                data=b"\0" * (51 * MB),
                filename="big.pdf",
                mime_type="application/pdf",
                metadata={"title": "Too big"},
                user=_admin(s),
            )
    assert storage.stored == []
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_upload_under_limit_records_exact_size(app, tmp_path):
    storage = LocalStorage(root=tmp_path / "blobs")
    data = b"\1" * (49 * MB)
    with session_scope(app) as s:
        doc = upload_document(
            s,
            storage,
            data=data,
            filename="site file.pdf",
            mime_type="application/pdf",
            metadata={"title": "Investigator Brochure", "document_type": "INVESTIGATOR_BROCHURE"},
            user=_admin(s),
        )
        doc_pk = doc.id
    with session_scope(app) as s:
        doc = s.get(Document, doc_pk)
        assert doc.file_size == 49 * MB
        assert doc.file_name == "site file.pdf"
        assert storage.exists(doc.storage_key)
        assert len(doc.sha256) == 64


def test_storage_failure_leaves_no_record(app):
    with session_scope(app) as s:
        with pytest.raises(StorageUnavailable):
            upload_document(
                s,
                RecordingStorage(fail=True),
                data=b"pdf",
                filename="a.pdf",
                mime_type="application/pdf",
                metadata={"title": "Unstored"},
                user=_admin(s),
            )
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_http_upload_and_download(client):
    r = client.post(
        "/api/documents/upload",
        data={
            "file": (io.BytesIO(b"hello tmf"), "consent.pdf"),
            "metadata": json.dumps({"title": "Informed Consent Form", "document_type": "INFORMED_CONSENT"}),
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 201, r.json
    assert r.json["file_size"] == 9
    assert r.json["file"]["name"] == "consent.pdf"

    r = client.get(f"/api/documents/{r.json['id']}/file")
    assert r.status_code == 200
    assert r.data == b"hello tmf"


def test_http_upload_over_limit_is_400(app, client):
    r = client.post(
        "/api/documents/upload",
        data={"file": (io.BytesIO(b"\0" * (51 * MB)), "big.pdf"), "metadata": json.dumps({"title": "Big"})},
        content_type="multipart/form-data",
    )
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"
    with session_scope(app) as s:
        assert s.query(Document).count() == 0


def test_expired_is_derived_from_expiration_date(client):
    past = (datetime.utcnow() - timedelta(days=1)).isoformat()
    future = (datetime.utcnow() + timedelta(days=30)).isoformat()
    old = create_document(client, title="Old CV", expiration_date=past)
    create_document(client, title="Fresh CV", expiration_date=future)

    assert old["status"] == "EXPIRED"
    assert old["stored_status"] == "DRAFT"
    assert [d["title"] for d in client.get("/api/documents/expired").json] == ["Old CV"]
    assert [d["title"] for d in client.get("/api/documents?status=expired").json] == ["Old CV"]

    # Only archive is legal once expired.
    assert client.post(f"/api/documents/{old['id']}/submit_for_review").status_code == 409
    assert client.post(f"/api/documents/{old['id']}/archive").json["status"] == "ARCHIVED"


def test_list_filters_and_limit(client):
    t = create_trial(client)
    for i in range(3):
        create_document(client, title=f"Doc {i}", trial_id=t["id"], tags=["site"] if i else [])
    create_document(client, title="Unrelated")

    assert len(client.get(f"/api/documents?trial={t['id']}").json) == 3
    assert len(client.get("/api/documents?tag=site").json) == 2
    assert len(client.get("/api/documents?limit=2").json) == 2
    assert len(client.get("/api/documents?limit=1000").json) == 4


def test_tags_comments_and_approvers(client):
    d = create_document(client)
    base = f"/api/documents/{d['id']}"

    assert client.post(f"{base}/tags", json={"tag": "urgent"}).json["tags"] == ["urgent"]
    assert client.post(f"{base}/tags", json={"tag": "urgent"}).json["tags"] == ["urgent"]
    assert client.delete(f"{base}/tags/urgent").json["tags"] == []

    c = client.post(f"{base}/comments", json={"content": "Please check page 4"}).json
    r = client.post(f"{base}/comments/{c['id']}/replies", json={"content": "Fixed"})
    assert r.status_code == 201
    assert [x["content"] for x in r.json["replies"]] == ["Fixed"]

    r = client.post(f"{base}/approvers", json={"signature": "sig-data", "comments": "ok"})
    assert r.status_code == 201
    assert len(r.json["approvers"]) == 1
    assert r.json["status"] == "DRAFT"


def test_lookup_by_document_id(client):
    d = create_document(client)
    r = client.get(f"/api/documents/by-document-id/{d['document_id']}")
    assert r.json["id"] == d["id"]
    assert client.get("/api/documents/by-document-id/DOC-MISSING").status_code == 404


def test_archived_document_rejects_new_versions(app, client):
    d = create_document(client)
    client.delete(f"/api/documents/{d['id']}")
    r = client.post(f"/api/documents/{d['id']}/versions", json={"file_url": "https://x/v2.pdf"})
    assert r.status_code == 409
    with session_scope(app) as s:
        with pytest.raises(InvalidState):
            add_version(s, s.get(Document, d["id"]), file_ref={"file_url": "https://x"}, user=_admin(s))


def test_update_metadata_dates_are_audited(client):
    d = create_document(client)
    r = client.patch(
        f"/api/documents/{d['id']}",
        json={
            "title": "Protocol v2",
            "document_date": "2026-02-01",
            "expiration_date": "2030-01-01T00:00:00",
            "retention_end_date": "2041-12-31",
        },
    )
    assert r.status_code == 200, r.json
    assert r.json["document_date"] == "2026-02-01"
    assert r.json["retention_end_date"] == "2041-12-31"
    assert r.json["status"] == "DRAFT"

    entry = r.json["audit_trail"][-1]
    assert entry["action"] == "update_metadata"
    changes = entry["details"]["changes"]
    assert changes["title"] == {"old": "Clinical Study Protocol", "new": "Protocol v2"}
    assert changes["document_date"] == {"old": None, "new": "2026-02-01"}
    assert changes["expiration_date"] == {"old": None, "new": "2030-01-01T00:00:00"}

    r = client.patch(f"/api/documents/{d['id']}", json={"document_date": "2026-03-01"})
    assert r.json["audit_trail"][-1]["details"]["changes"]["document_date"] == {"old": "2026-02-01", "new": "2026-03-01"}


def test_stored_status_filter_excludes_expired(client):
    past = (datetime.utcnow() - timedelta(days=1)).isoformat()
    create_document(client, title="Lapsed CV", expiration_date=past)
    create_document(client, title="Current CV")

    assert [d["title"] for d in client.get("/api/documents?status=draft").json] == ["Current CV"]
    assert [d["title"] for d in client.get("/api/documents?status=expired").json] == ["Lapsed CV"]


def test_upload_losing_document_id_race_is_conflict(app, monkeypatch):
    storage = RecordingStorage()
    sm = app.extensions["sqlalchemy_sessionmaker"]
    rival, loser = sm(), sm()
    real_flush = documents_service.flush_or_raise
    raced = []

    def flush_after_rival_commits(s, **kwargs):
        # The rival claims the id after the loser's up-front check has passed.
        if s is loser and not raced:
            raced.append(True)
            create_document_record(rival, {"title": "Rival", "document_id": "DOC-RACE-1"}, _admin(rival))
            rival.commit()
        real_flush(s, **kwargs)

    monkeypatch.setattr(documents_service, "flush_or_raise", flush_after_rival_commits)
    try:
        with pytest.raises(Conflict):
            upload_document(
                loser,
                storage,
                data=b"pdf",
                filename="race.pdf",
                mime_type="application/pdf",
                metadata={"title": "Loser", "document_id": "DOC-RACE-1"},
                user=_admin(loser),
            )
    finally:
        rival.close()
        loser.close()

    assert raced == [True]
    assert len(storage.stored) == 1
    with session_scope(app) as s:
        assert [d.title for d in s.query(Document).all()] == ["Rival"]
