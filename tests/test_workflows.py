import pytest

from app.etmf.errors import InvalidState, OutOfOrder
from app.etmf.models import User
from app.etmf.modules.workflows.models import Workflow, WorkflowStep
from app.etmf.modules.workflows.service import complete_step, compute_current_step, get_workflow, workflow_status
from helpers import create_document


def _create_workflow(client, assignee_ids, n_steps=3, **overrides):
    doc = create_document(client)
    payload = {
        "name": "Protocol review",
        "type": "DOCUMENT_REVIEW",
        "document_id": doc["id"],
        "steps": [
            {"name": f"Step {i}", "type": "REVIEW", "assignees": list(assignee_ids)} for i in range(n_steps)
        ],
        "notifications": [{"type": "EMAIL", "trigger": "STEP_COMPLETE", "recipients": list(assignee_ids)}],
    }
    payload.update(overrides)
    r = client.post("/api/workflows", json=payload)
    assert r.status_code == 201, r.json
    return r.json


def test_create_workflow(client, admin_id):
    wf = _create_workflow(client, [admin_id])
    assert wf["workflow_id"].startswith("WF-")
    assert wf["status"] == "DRAFT"
    assert wf["current_step"] == 0
    assert [st["order"] for st in wf["steps"]] == [0, 1, 2]
    assert wf["notifications"][0]["trigger"] == "STEP_COMPLETE"

    r = client.get(f"/api/workflows/by-workflow-id/{wf['workflow_id']}")
    assert r.json["id"] == wf["id"]


def test_create_requires_steps_and_assignees(client, admin_id):
    doc = create_document(client)
    base = {"name": "WF", "type": "DOCUMENT_REVIEW", "document_id": doc["id"]}
    assert client.post("/api/workflows", json={**base, "steps": []}).status_code == 400
    r = client.post("/api/workflows", json={**base, "steps": [{"name": "a", "type": "REVIEW", "assignees": []}]})
    assert r.status_code == 400
    r = client.post("/api/workflows", json={**base, "steps": [{"name": "a", "type": "REVIEW", "assignees": [9999]}]})
    assert r.status_code == 404


def test_steps_complete_in_order(client, admin_id):
    wf = _create_workflow(client, [admin_id])
    base = f"/api/workflows/{wf['id']}"

    r = client.post(f"{base}/steps/1/complete")
    assert r.status_code == 409
    assert r.json["error"] == "out_of_order"

    r = client.post(f"{base}/steps/0/start")
    assert r.json["steps"][0]["status"] == "IN_PROGRESS"
    assert r.json["current_step"] == 0

    r = client.post(f"{base}/steps/0/complete", json={"comments": "Looks good"})
    assert r.status_code == 200
    assert r.json["current_step"] == 1
    assert r.json["steps"][0]["comments"][0]["text"] == "Looks good"
    assert r.json["workflow_status"] == "PENDING"

    r = client.post(f"{base}/steps/0/complete")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"

    client.post(f"{base}/steps/1/complete")
    r = client.post(f"{base}/steps/2/complete")
    assert r.json["current_step"] == 3
    assert r.json["workflow_status"] == "COMPLETED"
    assert r.json["progress"] == 100.0


def test_skipped_steps_unblock_later_steps(client, admin_id):
    wf = _create_workflow(client, [admin_id])
    base = f"/api/workflows/{wf['id']}"

    r = client.post(f"{base}/steps/0/skip")
    assert r.json["current_step"] == 0
    r = client.post(f"{base}/steps/1/complete")
    assert r.status_code == 200
    assert r.json["current_step"] == 2


def test_rejected_step_halts_workflow(client, admin_id):
    wf = _create_workflow(client, [admin_id])
    base = f"/api/workflows/{wf['id']}"

    r = client.post(f"{base}/steps/0/reject", json={"comments": "Wrong version"})
    assert r.json["workflow_status"] == "REJECTED"
    r = client.post(f"{base}/steps/1/skip")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"


def test_only_assignees_complete_steps(app, client, admin_id, make_user, user_client):
    other_id = make_user("reviewer@example.com", "documents.read", "documents.update")
    wf = _create_workflow(client, [admin_id])
    c = user_client("reviewer@example.com")

    r = c.post(f"/api/workflows/{wf['id']}/steps/0/complete")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"

    wf2 = _create_workflow(client, [other_id], n_steps=1)
    assert c.post(f"/api/workflows/{wf2['id']}/steps/0/complete").status_code == 200


def test_archived_workflow_rejects_step_actions(client, admin_id):
    wf = _create_workflow(client, [admin_id])
    base = f"/api/workflows/{wf['id']}"
    assert client.post(f"{base}/activate").json["status"] == "ACTIVE"
    assert client.post(f"{base}/activate").status_code == 409
    assert client.post(f"{base}/archive").json["status"] == "ARCHIVED"
    assert client.post(f"{base}/steps/0/complete").status_code == 409


def test_unknown_step_is_not_found(client, admin_id):
    wf = _create_workflow(client, [admin_id], n_steps=1)
    r = client.post(f"/api/workflows/{wf['id']}/steps/7/complete")
    assert r.status_code == 404


def test_concurrent_completion_of_same_step(app, client, admin_id):
    wf = _create_workflow(client, [admin_id], n_steps=2)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s1, s2 = sm(), sm()
    try:
        wf1 = get_workflow(s1, wf["id"])
        wf2 = get_workflow(s2, wf["id"])
        user1 = s1.get(User, admin_id)
        user2 = s2.get(User, admin_id)
        # Both sessions see step 0 as PENDING before either writes.
        assert [st.status for st in wf1.steps] == [st.status for st in wf2.steps] == ["PENDING", "PENDING"]
        assert wf2.steps[0].assignee_ids == [admin_id]

        complete_step(s1, wf1, 0, user1)
        s1.commit()

        with pytest.raises(InvalidState):
            complete_step(s2, wf2, 0, user2)
    finally:
        s1.close()
        s2.close()

    r = client.get(f"/api/workflows/{wf['id']}")
    assert r.json["current_step"] == 1
    assert [st["status"] for st in r.json["steps"]] == ["COMPLETED", "PENDING"]


def test_service_raises_out_of_order(app, client, admin_id):
    wf = _create_workflow(client, [admin_id], n_steps=2)
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s = sm()
    try:
        with pytest.raises(OutOfOrder):
            complete_step(s, get_workflow(s, wf["id"]), 1, s.get(User, admin_id))
    finally:
        s.close()


def test_current_step_is_completed_prefix():
    def steps(*statuses):
        return [WorkflowStep(order_index=i, status=st) for i, st in enumerate(statuses)]

    assert compute_current_step(steps("PENDING", "PENDING")) == 0
    assert compute_current_step(steps("COMPLETED", "IN_PROGRESS", "PENDING")) == 1
    assert compute_current_step(steps("COMPLETED", "SKIPPED", "COMPLETED")) == 3
    assert compute_current_step(steps("SKIPPED", "PENDING")) == 0
    assert compute_current_step(steps("COMPLETED", "REJECTED", "PENDING")) == 1


def test_skipped_steps_never_complete_workflow(client, admin_id):
    wf = _create_workflow(client, [admin_id], n_steps=2)
    base = f"/api/workflows/{wf['id']}"
    client.post(f"{base}/steps/0/skip")
    r = client.post(f"{base}/steps/1/skip")
    assert r.status_code == 200
    assert r.json["workflow_status"] == "PENDING"
    assert r.json["progress"] == 0.0
    assert r.json["current_step"] == 0

    wf = _create_workflow(client, [admin_id], n_steps=3)
    base = f"/api/workflows/{wf['id']}"
    client.post(f"{base}/steps/0/complete")
    client.post(f"{base}/steps/1/skip")
    r = client.post(f"{base}/steps/2/complete")
    assert r.json["current_step"] == 3
    assert r.json["workflow_status"] == "PENDING"
    assert r.json["progress"] < 100.0


def test_skip_requires_assignee_and_order(client, admin_id, make_user, user_client):
    make_user("outsider@example.com", "documents.read", "documents.update")
    wf = _create_workflow(client, [admin_id], n_steps=2)
    base = f"/api/workflows/{wf['id']}"

    r = user_client("outsider@example.com").post(f"{base}/steps/0/skip")
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"

    r = client.post(f"{base}/steps/1/skip")
    assert r.status_code == 409
    assert r.json["error"] == "out_of_order"

    steps = client.get(base).json["steps"]
    assert [st["status"] for st in steps] == ["PENDING", "PENDING"]


def test_workflow_status_derivation():
    def wf(*statuses, stored="ACTIVE"):
        return Workflow(status=stored, steps=[WorkflowStep(order_index=i, status=st) for i, st in enumerate(statuses)])

    assert workflow_status(wf("COMPLETED", "COMPLETED")) == "COMPLETED"
    assert workflow_status(wf("SKIPPED", "SKIPPED")) == "PENDING"
    assert workflow_status(wf("COMPLETED", "SKIPPED")) == "PENDING"
    assert workflow_status(wf("COMPLETED", "REJECTED")) == "REJECTED"
    assert workflow_status(wf("COMPLETED", "IN_PROGRESS")) == "IN_PROGRESS"
    assert workflow_status(wf("COMPLETED", "COMPLETED", stored="ARCHIVED")) == "ARCHIVED"
