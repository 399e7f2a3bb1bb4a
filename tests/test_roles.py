import pytest

from app.etmf.db import session_scope
from app.etmf.errors import InvalidState, ValidationError
from app.etmf.models import Role
from app.etmf.roles import has_permissions, normalize_permissions, update_role_permissions
from conftest import login


def _role_pk(client, role_key):
    return next(r["id"] for r in client.get("/api/roles").json if r["role_key"] == role_key)


def test_system_roles_are_immutable(client):
    admin_pk = _role_pk(client, "etmf_admin")
    r = client.patch(f"/api/roles/{admin_pk}/permissions", json={"permissions": {"documents": {"approve": False}}})
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"

    r = client.post(f"/api/roles/{admin_pk}/status", json={"status": "INACTIVE"})
    assert r.status_code == 409

    auditor = client.get(f"/api/roles/{_role_pk(client, 'auditor')}").json
    assert auditor["is_system"] is True
    assert auditor["permissions"]["documents"]["read"] is True
    assert auditor["permissions"]["documents"]["update"] is False


def test_create_custom_role(client):
    r = client.post(
        "/api/roles",
        json={
            "role_key": "site_monitor",
            "name": "Site Monitor",
            "level": "site",
            "is_system": True,
            "permissions": {"documents": {"read": True}, "sites": {"read": True}},
        },
    )
    assert r.status_code == 201, r.json
    role = r.json
    assert role["is_system"] is False
    assert role["level"] == "SITE"
    assert role["permissions"]["documents"] == {
        "create": False,
        "read": True,
        "update": False,
        "delete": False,
        "approve": False,
        "sign": False,
    }

    r = client.patch(f"/api/roles/{role['id']}/permissions", json={"permissions": {"documents": {"update": True}}})
    assert r.status_code == 200
    assert r.json["permissions"]["documents"]["read"] is True
    assert r.json["permissions"]["documents"]["update"] is True

    assert client.post("/api/roles", json={"role_key": "site_monitor", "name": "Another"}).status_code == 409


def test_role_input_validation(client):
    assert client.post("/api/roles", json={"role_key": "Bad Key", "name": "x"}).status_code == 400
    r = client.post("/api/roles", json={"role_key": "ok_key", "name": "x", "permissions": {"spaceships": {"fly": True}}})
    assert r.status_code == 400
    r = client.post("/api/roles", json={"role_key": "ok_key", "name": "x", "permissions": {"documents": {"fly": True}}})
    assert r.status_code == 400


def test_create_user_and_assign_role(anon_client, client):
    role = client.post(
        "/api/roles",
        json={"role_key": "trial_viewer", "name": "Trial Viewer", "permissions": {"trials": {"read": True}}},
    ).json

    r = client.post("/api/users", json={"email": "Viewer@Example.com", "password": "short"})
    assert r.status_code == 400
    r = client.post("/api/users", json={"email": "Viewer@Example.com", "password": "long-enough-1"})
    assert r.status_code == 201
    user = r.json
    assert user["email"] == "viewer@example.com"
    assert user["roles"] == []
    assert client.post("/api/users", json={"email": "viewer@example.com", "password": "long-enough-1"}).status_code == 409

    login(anon_client, "viewer@example.com", "long-enough-1")
    assert anon_client.get("/api/trials").status_code == 403

    for _ in range(2):
        r = client.post(f"/api/users/{user['id']}/roles", json={"role_id": role["id"]})
        assert r.status_code == 200
    assert r.json["roles"] == ["trial_viewer"]
    assert anon_client.get("/api/trials").status_code == 200

    r = client.delete(f"/api/users/{user['id']}/roles/{role['id']}")
    assert r.json["roles"] == []
    assert anon_client.get("/api/trials").status_code == 403


def test_inactive_role_cannot_be_assigned_or_grant(client, make_user, user_client):
    uid = make_user("ops@example.com", "trials.read")
    c = user_client("ops@example.com")
    assert c.get("/api/trials").status_code == 200

    own_role = _role_pk(client, "ops")
    r = client.post(f"/api/roles/{own_role}/status", json={"status": "inactive"})
    assert r.json["status"] == "INACTIVE"
    assert c.get("/api/trials").status_code == 403

    r = client.post(f"/api/users/{uid}/roles", json={"role_id": own_role})
    assert r.status_code == 409
    assert r.json["error"] == "invalid_state"


def test_role_administration_needs_permissions(make_user, user_client):
    make_user("clerk@example.com", "roles.read")
    c = user_client("clerk@example.com")
    assert c.get("/api/roles").status_code == 200
    assert c.post("/api/roles", json={"role_key": "x_role", "name": "X"}).status_code == 403
    assert c.get("/api/users").status_code == 403


def test_has_permissions(app):
    with session_scope(app) as s:
        auditor = s.query(Role).filter(Role.role_key == "auditor").one()
        assert has_permissions(auditor, "documents.read", "audit.read") is True
        assert has_permissions(auditor, "documents.read", "documents.approve") is False


def test_normalize_permissions_rejects_non_objects():
    with pytest.raises(ValidationError):
        normalize_permissions(["documents.read"])
    with pytest.raises(ValidationError):
        normalize_permissions({"documents": True})
    assert normalize_permissions(None)["audit"] == {"read": False, "export": False}


def test_service_rejects_system_role_edits(app):
    with session_scope(app) as s:
        role = s.query(Role).filter(Role.role_key == "etmf_admin").one()
        with pytest.raises(InvalidState):
            update_role_permissions(s, role, {"permissions": {}}, None)
