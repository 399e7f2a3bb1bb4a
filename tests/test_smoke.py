from app.etmf.db import session_scope
from app.etmf.models import AuditEvent, Role


def test_health_ok(anon_client):
    r = anon_client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = anon_client.get("/healthz")
    assert r.status_code == 200
    assert r.data == b"ok"


def test_seed_creates_system_roles_zones_and_admin(app, client):
    with session_scope(app) as s:
        admin_role = s.query(Role).filter(Role.role_key == "etmf_admin").one()
        assert admin_role.is_system is True
        assert admin_role.permissions["documents"]["approve"] is True

    r = client.get("/api/zones")
    assert r.status_code == 200
    assert [z["zone_number"] for z in r.json] == list(range(1, 12))


def test_anonymous_api_call_is_401_json(anon_client):
    r = anon_client.get("/api/trials")
    assert r.status_code == 401
    assert r.json["error"] == "unauthorized"


def test_login_me_logout(anon_client):
    r = anon_client.post("/auth/login", json={"email": "admin@example.com", "password": "wrong"})
    assert r.status_code == 401

    r = anon_client.post("/auth/login", json={"email": "admin@example.com", "password": "pw-admin-123"})
    assert r.status_code == 200
    assert "etmf_admin" in r.json["roles"]

    r = anon_client.get("/auth/me")
    assert r.status_code == 200
    assert r.json["email"] == "admin@example.com"

    r = anon_client.post("/auth/logout")
    assert r.status_code == 200
    assert anon_client.get("/auth/me").status_code == 401


def test_missing_permission_is_403_json(make_user, user_client):
    make_user("reader@example.com", "trials.read")
    c = user_client("reader@example.com")

    assert c.get("/api/trials").status_code == 200

    r = c.post("/api/trials", json={"study_id": "X"})
    assert r.status_code == 403
    assert r.json["error"] == "forbidden"
    assert r.json["details"]["missing_permission"] == "trials.create"


def test_unknown_route_and_method_are_json(client):
    r = client.get("/api/nope")
    assert r.status_code == 404
    assert r.json["error"] == "not_found"

    r = client.put("/api/trials")
    assert r.status_code == 405
    assert r.json["error"] == "method_not_allowed"


def test_non_object_json_body_is_validation_error(client):
    r = client.post("/api/trials", data="[1, 2]", content_type="application/json")
    assert r.status_code == 400
    assert r.json["error"] == "validation_error"


def test_login_events_are_audited(app, anon_client):
    anon_client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    anon_client.post("/auth/login", json={"email": "admin@example.com", "password": "pw-admin-123"})
    with session_scope(app) as s:
        actions = [e.action for e in s.query(AuditEvent).order_by(AuditEvent.id.asc()).all()]
    assert actions[-2:] == ["auth.login_failed", "auth.login"]
