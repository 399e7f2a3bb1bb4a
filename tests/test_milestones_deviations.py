from datetime import date, timedelta

from app.etmf.modules.milestones.models import Milestone
from app.etmf.modules.milestones.service import completion_status, is_overdue
from helpers import create_site, create_trial


def _milestone(client, trial_pk, **overrides):
    payload = {
        "trial_id": trial_pk,
        "name": "First patient in",
        "type": "ENROLLMENT",
        "due_date": (date.today() + timedelta(days=30)).isoformat(),
    }
    payload.update(overrides)
    r = client.post("/api/milestones", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def _deviation(client, trial_pk, site_pk, **overrides):
    payload = {
        "type": "PROTOCOL",
        "severity": "MAJOR",
        "trial_id": trial_pk,
        "site_id": site_pk,
        "description": "Visit 3 performed outside window",
        "impact": "Primary endpoint data point at risk",
        "reported_date": "2026-03-10",
    }
    payload.update(overrides)
    r = client.post("/api/deviations", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def test_milestone_defaults(client, admin_id):
    t = create_trial(client)
    m = _milestone(client, t["id"], assigned_to=[admin_id])
    assert m["milestone_id"].startswith("MS-")
    assert m["status"] == "PENDING"
    assert m["priority"] == "MEDIUM"
    assert m["is_overdue"] is False
    assert m["assigned_to"] == [admin_id]


def test_overdue_milestone_then_complete(client):
    t = create_trial(client)
    m = _milestone(client, t["id"], due_date=(date.today() - timedelta(days=2)).isoformat())
    assert m["is_overdue"] is True
    assert m["completion_status"] == "OVERDUE"

    r = client.post(f"/api/milestones/{m['id']}/complete", json={"completed_date": date.today().isoformat()})
    assert r.status_code == 200
    assert r.json["status"] == "COMPLETED"
    assert r.json["is_overdue"] is False
    assert r.json["completion_status"] == "COMPLETED"

    assert client.post(f"/api/milestones/{m['id']}/complete").status_code == 409
    assert client.post(f"/api/milestones/{m['id']}/start").status_code == 409


def test_milestone_transitions(client):
    t = create_trial(client)
    m = _milestone(client, t["id"])
    base = f"/api/milestones/{m['id']}"
    assert client.post(f"{base}/start").json["status"] == "IN_PROGRESS"
    assert client.post(f"{base}/delay", json={"reason": "site not ready"}).json["status"] == "DELAYED"
    assert client.post(f"{base}/cancel").json["status"] == "CANCELLED"
    assert client.post(f"{base}/complete").status_code == 409


def test_milestone_site_must_belong_to_trial(client):
    t1 = create_trial(client)
    t2 = create_trial(client, study_id="STUDY-002", protocol_number="PROT-002")
    other_site = create_site(client, t2["id"])
    r = client.post(
        "/api/milestones",
        json={"trial_id": t1["id"], "site_id": other_site["id"], "name": "SIV", "type": "OTHER", "due_date": "2026-05-01"},
    )
    assert r.status_code == 400


def test_milestone_requires_due_date(client):
    t = create_trial(client)
    r = client.post("/api/milestones", json={"trial_id": t["id"], "name": "x", "type": "OTHER"})
    assert r.status_code == 400


def test_overdue_helpers():
    m = Milestone(status="IN_PROGRESS", due_date=date(2026, 1, 10))
    assert is_overdue(m, date(2026, 1, 9)) is False
    assert is_overdue(m, date(2026, 1, 11)) is True
    assert completion_status(m, date(2026, 1, 9)) == "IN_PROGRESS"
    m.status = "COMPLETED"
    assert completion_status(m, date(2026, 1, 11)) == "COMPLETED"


def test_deviation_review_flow(client):
    t = create_trial(client)
    site = create_site(client, t["id"])
    d = _deviation(client, t["id"], site["id"])
    assert d["deviation_id"].startswith("DEV-")
    assert d["status"] == "DRAFT"
    base = f"/api/deviations/{d['id']}"

    r = client.post(f"{base}/reviews", json={"decision": "APPROVED"})
    assert r.status_code == 409

    r = client.patch(base, json={"root_cause": "Scheduling error", "corrective_action_planned": "Retrain staff"})
    assert r.json["root_cause"] == "Scheduling error"
    assert r.json["corrective_action"]["planned"] == "Retrain staff"

    assert client.post(f"{base}/submit").json["status"] == "SUBMITTED"
    assert client.post(f"{base}/start_review").json["status"] == "REVIEW"
    r = client.post(f"{base}/reviews", json={"decision": "approved", "role": "QA", "comments": "CAPA adequate"})
    assert r.status_code == 201
    assert r.json["reviews"][0]["decision"] == "APPROVED"

    assert client.post(f"{base}/approve").json["status"] == "APPROVED"
    assert client.post(f"{base}/close").json["status"] == "CLOSED"
    assert client.patch(base, json={"root_cause": "x"}).status_code == 409


def test_resolve_closes_with_valid_date(client):
    t = create_trial(client)
    site = create_site(client, t["id"])
    d = _deviation(client, t["id"], site["id"])
    base = f"/api/deviations/{d['id']}/resolve"

    assert client.post(base, json={"resolved_date": "2026-03-01"}).status_code == 400
    assert client.post(base, json={}).status_code == 400

    r = client.post(base, json={"resolved_date": "2026-03-15"})
    assert r.status_code == 200
    assert r.json["status"] == "CLOSED"
    assert r.json["resolved_date"] == "2026-03-15"
    assert r.json["duration_days"] == 5

    r = client.post(base, json={"resolved_date": "2026-04-01"})
    assert r.json["resolved_date"] == "2026-03-15"


def test_deviation_validation(client):
    t = create_trial(client)
    t2 = create_trial(client, study_id="STUDY-002", protocol_number="PROT-002")
    site = create_site(client, t2["id"])

    r = client.post("/api/deviations", json={"type": "PROTOCOL", "severity": "MINOR", "trial_id": t["id"], "site_id": site["id"]})
    assert r.status_code == 400
    assert set(r.json["details"]["missing"]) == {"description", "impact"}

    r = client.post(
        "/api/deviations",
        json={
            "type": "PROTOCOL",
            "severity": "MINOR",
            "trial_id": t["id"],
            "site_id": site["id"],
            "description": "d",
            "impact": "i",
        },
    )
    assert r.status_code == 400
    assert r.json["details"]["field"] == "site_id"


def test_review_transitions_need_manage_permission(client, make_user, user_client):
    t = create_trial(client)
    site = create_site(client, t["id"])
    d = _deviation(client, t["id"], site["id"])
    make_user("cra@example.com", "trials.read", "trials.update")
    c = user_client("cra@example.com")

    assert c.post(f"/api/deviations/{d['id']}/submit").status_code == 200
    r = c.post(f"/api/deviations/{d['id']}/start_review")
    assert r.status_code == 403
    assert r.json["details"]["missing_permission"] == "trials.manage"
