from datetime import date

from app.etmf.db import session_scope
from app.etmf.modules.trials.models import Site, Trial
from app.etmf.modules.trials.service import enrollment_progress, is_trial_running
from helpers import create_site, create_trial, trial_payload


def test_create_and_fetch_by_study_id(client):
    t = create_trial(client)
    assert t["status"] == "PLANNING"
    assert t["regulatory"]["status"] == "PENDING"

    r = client.get("/api/trials/by-study/STUDY-001")
    assert r.status_code == 200
    assert r.json["id"] == t["id"]
    assert r.json["protocol_number"] == "PROT-001"

    assert client.get("/api/trials/by-study/NOPE").status_code == 404


def test_start_on_or_after_end_is_validation_error(app, client):
    r = client.post("/api/trials", json=trial_payload(start_date="2027-01-01", end_date="2027-01-01"))
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"

    r = client.post("/api/trials", json=trial_payload(start_date="2027-06-01", end_date="2027-01-01"))
    assert r.status_code == 400

    with session_scope(app) as s:
        assert s.query(Trial).count() == 0


def test_update_rechecks_date_range(client):
    t = create_trial(client)
    r = client.patch(f"/api/trials/{t['id']}", json={"end_date": "2025-01-01"})
    assert r.status_code == 400

    r = client.patch(f"/api/trials/{t['id']}", json={"title": "Renamed Study", "end_date": "2028-06-30"})
    assert r.status_code == 200
    assert r.json["title"] == "Renamed Study"
    assert r.json["end_date"] == "2028-06-30"


def test_field_validation(client):
    assert client.post("/api/trials", json=trial_payload(protocol_number="prot 1")).status_code == 400
    assert client.post("/api/trials", json=trial_payload(title="x" * 101)).status_code == 400
    assert client.post("/api/trials", json=trial_payload(phase="PHASE_9")).status_code == 400
    r = client.post("/api/trials", json=trial_payload(sponsor=""))
    assert r.status_code == 400
    assert "sponsor" in r.json["details"]["missing"]


def test_duplicate_study_or_protocol_is_conflict(client):
    create_trial(client)
    r = client.post("/api/trials", json=trial_payload(protocol_number="PROT-999"))
    assert r.status_code == 409
    r = client.post("/api/trials", json=trial_payload(study_id="STUDY-999"))
    assert r.status_code == 409


def test_status_transitions(client):
    t = create_trial(client)
    url = f"/api/trials/{t['id']}/status"

    r = client.post(url, json={"status": "COMPLETED"})
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"

    for status in ("ACTIVE", "ON_HOLD", "ACTIVE", "COMPLETED", "ARCHIVED"):
        r = client.post(url, json={"status": status, "reason": "test"})
        assert r.status_code == 200, r.json
        assert r.json["status"] == status

    r = client.patch(f"/api/trials/{t['id']}", json={"title": "Too late"})
    assert r.status_code == 409

    audit = client.get(f"/api/trials/{t['id']}/audit").json
    assert [e["action"] for e in audit].count("status_change") == 5


def test_list_is_paginated(client):
    for i in range(3):
        create_trial(client, study_id=f"STUDY-{i}", protocol_number=f"PROT-{i}")
    r = client.get("/api/trials?limit=2&page=2")
    assert r.status_code == 200
    assert r.json["total"] == 3
    assert r.json["pages"] == 2
    assert len(r.json["items"]) == 1


def test_team_and_countries_are_idempotent(client, admin_id):
    t = create_trial(client)
    for _ in range(2):
        r = client.post(f"/api/trials/{t['id']}/team", json={"user_id": admin_id, "role": "study_manager"})
        assert r.status_code == 200
    assert len(r.json["team"]) == 1
    assert r.json["team"][0]["role"] == "STUDY_MANAGER"

    for _ in range(2):
        r = client.post(f"/api/trials/{t['id']}/countries", json={"code": "de", "name": "Germany"})
    assert [c["code"] for c in r.json["countries"]] == ["DE"]

    r = client.delete(f"/api/trials/{t['id']}/team/{admin_id}")
    assert r.json["team"] == []


def test_sites_enrollment_and_close(client):
    t = create_trial(client)
    site = create_site(client, t["id"], start_date="2026-02-01", enrollment_target=40)
    assert site["status"] == "PLANNED"

    r = client.post(f"/api/trials/{t['id']}/sites", json={"site_id": "SITE-001", "name": "Dup"})
    assert r.status_code == 409

    r = client.post(f"/api/sites/{site['id']}/status", json={"status": "ACTIVE"})
    assert r.json["status"] == "ACTIVE"

    r = client.post(f"/api/sites/{site['id']}/enrollment", json={"actual_enrollment": 10})
    assert r.json["enrollment_progress"] == 25.0

    r = client.post(f"/api/sites/{site['id']}/close", json={"actual_end_date": "2026-01-15"})
    assert r.status_code == 400

    r = client.post(f"/api/sites/{site['id']}/close", json={"actual_end_date": "2026-11-30"})
    assert r.status_code == 200
    assert r.json["status"] == "COMPLETED"
    assert r.json["actual_end_date"] == "2026-11-30"

    r = client.post(f"/api/sites/{site['id']}/enrollment", json={"actual_enrollment": 11})
    assert r.status_code == 409

    assert [s["site_id"] for s in client.get(f"/api/trials/{t['id']}/sites").json] == ["SITE-001"]


def test_terminated_site_cannot_be_closed(client):
    t = create_trial(client)
    site = create_site(client, t["id"])
    client.post(f"/api/sites/{site['id']}/status", json={"status": "TERMINATED"})
    r = client.post(f"/api/sites/{site['id']}/close", json={"actual_end_date": "2026-11-30"})
    assert r.status_code == 409


def test_derived_helpers():
    t = Trial(start_date=date(2026, 1, 1), end_date=date(2026, 12, 31))
    assert is_trial_running(t, date(2026, 6, 1)) is True
    assert is_trial_running(t, date(2027, 1, 1)) is False

    assert enrollment_progress(Site(enrollment_target=0, actual_enrollment=5)) is None
    assert enrollment_progress(Site(enrollment_target=3, actual_enrollment=1)) == 33.33
