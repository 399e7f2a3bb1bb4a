import pytest

from app.etmf.db import session_scope
from app.etmf.errors import Conflict, NotFound
from app.etmf.models import User
from app.etmf.modules.tmf_reference import service as tmf_service
from app.etmf.modules.tmf_reference.models import Section, Zone
from app.etmf.modules.tmf_reference.service import create_section, create_zone


def _zone_pk(client, zone_number):
    return next(z["id"] for z in client.get("/api/zones").json if z["zone_number"] == zone_number)


def test_duplicate_zone_number_is_conflict(client):
    r = client.post("/api/zones", json={"zone_number": 1, "zone_name": "Trial Management (copy)"})
    assert r.status_code == 409
    assert r.json["error"] == "conflict"

    r = client.post("/api/zones", json={"zone_number": 12, "zone_name": "Sponsor Specific"})
    assert r.status_code == 201
    assert r.json["zone_number"] == 12


def test_section_artifact_sub_artifact_hierarchy(client):
    zone_pk = _zone_pk(client, 1)

    r = client.post(f"/api/zones/{zone_pk}/sections", json={"section_number": "01.01", "section_name": "Trial Oversight"})
    assert r.status_code == 201, r.json
    section = r.json
    assert section["zone"]["zone_number"] == 1

    r = client.post(
        f"/api/sections/{section['id']}/artifacts",
        json={"artifact_number": "01.01.01", "artifact_name": "Trial Master File Plan", "ich_code": "8.1"},
    )
    assert r.status_code == 201, r.json
    artifact = r.json
    assert artifact["ich_code"] == "8.1"

    r = client.post(
        f"/api/artifacts/{artifact['id']}/subartifacts",
        json={"sub_artifact_number": "01.01.01.01", "sub_artifact_name": "TMF Plan v1"},
    )
    assert r.status_code == 201, r.json

    listed = client.get(f"/api/zones/{zone_pk}/sections").json
    assert [sec["section_number"] for sec in listed] == ["01.01"]
    assert len(client.get(f"/api/artifacts/{artifact['id']}/subartifacts").json) == 1


def test_section_number_unique_per_zone_only(client):
    z1, z2 = _zone_pk(client, 1), _zone_pk(client, 2)
    body = {"section_number": "01.01", "section_name": "Oversight"}

    assert client.post(f"/api/zones/{z1}/sections", json=body).status_code == 201
    r = client.post(f"/api/zones/{z1}/sections", json=body)
    assert r.status_code == 409
    assert client.post(f"/api/zones/{z2}/sections", json=body).status_code == 201


def test_section_under_missing_zone_is_not_found(client):
    r = client.post("/api/zones/999/sections", json={"section_number": "99.01", "section_name": "Nowhere"})
    assert r.status_code == 404
    assert r.json["error"] == "not_found"


def test_deactivate_and_reactivate_zone(client):
    zone_pk = _zone_pk(client, 11)
    r = client.post(f"/api/zones/{zone_pk}/deactivate")
    assert r.status_code == 200
    assert r.json["is_active"] is False

    r = client.post(f"/api/zones/{zone_pk}/activate")
    assert r.json["is_active"] is True


def test_classification_writes_need_settings_permission(make_user, user_client):
    make_user("viewer@example.com", "documents.read")
    c = user_client("viewer@example.com")
    assert c.get("/api/zones").status_code == 200
    r = c.post("/api/zones", json={"zone_number": 20, "zone_name": "X"})
    assert r.status_code == 403


def test_service_level_duplicate_raises(app):
    with session_scope(app) as s:
        admin = s.query(User).first()
        with pytest.raises(Conflict):
            create_zone(s, zone_number=3, zone_name="Regulatory again", user=admin)
        with pytest.raises(NotFound):
            create_section(s, 12345, section_number="1", section_name="x", user=admin)


@pytest.mark.parametrize("kind", ["zone", "section"])
def test_concurrent_creation_has_one_winner(app, monkeypatch, kind):
    sm = app.extensions["sqlalchemy_sessionmaker"]
    rival, loser = sm(), sm()
    zone_pk = rival.query(Zone.id).filter(Zone.zone_number == 1).scalar()
    real_flush = tmf_service.flush_or_raise
    raced = []

    def create(s):
        user = s.query(User).first()
        if kind == "zone":
            return create_zone(s, zone_number=12, zone_name="Sponsor Specific", user=user)
        return create_section(s, zone_pk, section_number="01.09", section_name="Oversight", user=user)

    def flush_after_rival_commits(s, **kwargs):
        # Both sessions have passed the up-front duplicate check by now.
        if s is loser and not raced:
            raced.append(True)
            create(rival)
            rival.commit()
        real_flush(s, **kwargs)

    monkeypatch.setattr(tmf_service, "flush_or_raise", flush_after_rival_commits)
    try:
        with pytest.raises(Conflict):
            create(loser)
    finally:
        rival.close()
        loser.close()

    assert raced == [True]
    with session_scope(app) as s:
        if kind == "zone":
            assert s.query(Zone).filter(Zone.zone_number == 12).count() == 1
        else:
            assert s.query(Section).filter(Section.section_number == "01.09").count() == 1
