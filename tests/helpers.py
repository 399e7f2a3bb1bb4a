"""Request helpers shared by the API tests."""


def trial_payload(**overrides):
    payload = {
        "study_id": "STUDY-001",
        "protocol_number": "PROT-001",
        "sponsor": "Acme Pharma",
        "title": "A Phase 3 Study of Example Drug",
        "phase": "PHASE_3",
        "start_date": "2026-01-01",
        "end_date": "2027-12-31",
    }
    payload.update(overrides)
    return payload


def create_trial(client, **overrides):
    r = client.post("/api/trials", json=trial_payload(**overrides))
    assert r.status_code == 201, r.json
    return r.json


def create_site(client, trial_pk, **overrides):
    payload = {"site_id": "SITE-001", "name": "General Hospital", "site_type": "HOSPITAL"}
    payload.update(overrides)
    r = client.post(f"/api/trials/{trial_pk}/sites", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def create_document(client, **overrides):
    payload = {"title": "Clinical Study Protocol", "document_type": "PROTOCOL"}
    payload.update(overrides)
    r = client.post("/api/documents", json=payload)
    assert r.status_code == 201, r.json
    return r.json
