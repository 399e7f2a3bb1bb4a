from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.rbac import require_permission
from app.etmf.utils import iso, json_payload, parse_bool, require_fields

from .models import Artifact, Section, SubArtifact, Zone
from .service import (
    create_artifact,
    create_section,
    create_sub_artifact,
    create_zone,
    get_artifact,
    get_section,
    get_sub_artifact,
    get_zone,
    list_artifacts,
    list_sections,
    list_sub_artifacts,
    list_zones,
    set_node_active,
)

bp = Blueprint("tmf_reference", __name__)


def zone_to_dict(z: Zone) -> dict[str, Any]:
    return {
        "id": z.id,
        "zone_number": z.zone_number,
        "zone_name": z.zone_name,
        "is_active": z.is_active,
        "created_at": iso(z.created_at),
        "updated_at": iso(z.updated_at),
    }


def section_to_dict(sec: Section) -> dict[str, Any]:
    return {
        "id": sec.id,
        "section_number": sec.section_number,
        "section_name": sec.section_name,
        "zone": {"id": sec.zone.id, "zone_number": sec.zone.zone_number, "zone_name": sec.zone.zone_name},
        "is_required": sec.is_required,
        "is_active": sec.is_active,
        "created_at": iso(sec.created_at),
        "updated_at": iso(sec.updated_at),
    }


def artifact_to_dict(a: Artifact) -> dict[str, Any]:
    return {
        "id": a.id,
        "artifact_number": a.artifact_number,
        "artifact_name": a.artifact_name,
        "section": {"id": a.section.id, "section_number": a.section.section_number, "section_name": a.section.section_name},
        "ich_code": a.ich_code,
        "is_required": a.is_required,
        "is_active": a.is_active,
        "created_at": iso(a.created_at),
        "updated_at": iso(a.updated_at),
    }


def sub_artifact_to_dict(sa: SubArtifact) -> dict[str, Any]:
    return {
        "id": sa.id,
        "sub_artifact_number": sa.sub_artifact_number,
        "sub_artifact_name": sa.sub_artifact_name,
        "artifact": {
            "id": sa.artifact.id,
            "artifact_number": sa.artifact.artifact_number,
            "artifact_name": sa.artifact.artifact_name,
        },
        "is_required": sa.is_required,
        "is_active": sa.is_active,
        "created_at": iso(sa.created_at),
        "updated_at": iso(sa.updated_at),
    }


# --- zones -----------------------------------------------------------------


@bp.get("/zones")
@require_permission("documents.read")
def zones_list():
    s = db_session()
    return jsonify([zone_to_dict(z) for z in list_zones(s)])


@bp.post("/zones")
@require_permission("settings.update")
def zones_create():
    s = db_session()
    payload = json_payload()
    require_fields(payload, "zone_number", "zone_name")
    z = create_zone(
        s,
        zone_number=payload["zone_number"],
        zone_name=payload["zone_name"],
        is_active=parse_bool(payload.get("is_active"), True),
        user=current_user(),
    )
    commit_or_raise(s, conflict_message="Zone number already exists.")
    return jsonify(zone_to_dict(z)), 201


@bp.get("/zones/<int:zone_id>")
@require_permission("documents.read")
def zones_get(zone_id: int):
    s = db_session()
    return jsonify(zone_to_dict(get_zone(s, zone_id)))


# --- sections --------------------------------------------------------------


@bp.get("/zones/<int:zone_id>/sections")
@require_permission("documents.read")
def sections_list(zone_id: int):
    s = db_session()
    return jsonify([section_to_dict(sec) for sec in list_sections(s, zone_id)])


@bp.post("/zones/<int:zone_id>/sections")
@require_permission("settings.update")
def sections_create(zone_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "section_number", "section_name")
    sec = create_section(
        s,
        zone_id,
        section_number=payload["section_number"],
        section_name=payload["section_name"],
        is_required=parse_bool(payload.get("is_required"), True),
        is_active=parse_bool(payload.get("is_active"), True),
        user=current_user(),
    )
    commit_or_raise(s, conflict_message="Section number already exists in this zone.")
    return jsonify(section_to_dict(sec)), 201


@bp.get("/sections/<int:section_id>")
@require_permission("documents.read")
def sections_get(section_id: int):
    s = db_session()
    return jsonify(section_to_dict(get_section(s, section_id)))


# --- artifacts -------------------------------------------------------------


@bp.get("/sections/<int:section_id>/artifacts")
@require_permission("documents.read")
def artifacts_list(section_id: int):
    s = db_session()
    return jsonify([artifact_to_dict(a) for a in list_artifacts(s, section_id)])


@bp.post("/sections/<int:section_id>/artifacts")
@require_permission("settings.update")
def artifacts_create(section_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "artifact_number", "artifact_name")
    a = create_artifact(
        s,
        section_id,
        artifact_number=payload["artifact_number"],
        artifact_name=payload["artifact_name"],
        ich_code=payload.get("ich_code"),
        is_required=parse_bool(payload.get("is_required"), True),
        is_active=parse_bool(payload.get("is_active"), True),
        user=current_user(),
    )
    commit_or_raise(s, conflict_message="Artifact number already exists in this section.")
    return jsonify(artifact_to_dict(a)), 201


@bp.get("/artifacts/<int:artifact_id>")
@require_permission("documents.read")
def artifacts_get(artifact_id: int):
    s = db_session()
    return jsonify(artifact_to_dict(get_artifact(s, artifact_id)))


# --- sub-artifacts ---------------------------------------------------------


@bp.get("/artifacts/<int:artifact_id>/subartifacts")
@require_permission("documents.read")
def sub_artifacts_list(artifact_id: int):
    s = db_session()
    return jsonify([sub_artifact_to_dict(sa) for sa in list_sub_artifacts(s, artifact_id)])


@bp.post("/artifacts/<int:artifact_id>/subartifacts")
@require_permission("settings.update")
def sub_artifacts_create(artifact_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "sub_artifact_number", "sub_artifact_name")
    sa = create_sub_artifact(
        s,
        artifact_id,
        sub_artifact_number=payload["sub_artifact_number"],
        sub_artifact_name=payload["sub_artifact_name"],
        is_required=parse_bool(payload.get("is_required"), True),
        is_active=parse_bool(payload.get("is_active"), True),
        user=current_user(),
    )
    commit_or_raise(s, conflict_message="Sub-artifact number already exists in this artifact.")
    return jsonify(sub_artifact_to_dict(sa)), 201


@bp.get("/subartifacts/<int:sub_artifact_id>")
@require_permission("documents.read")
def sub_artifacts_get(sub_artifact_id: int):
    s = db_session()
    return jsonify(sub_artifact_to_dict(get_sub_artifact(s, sub_artifact_id)))


# --- soft delete -----------------------------------------------------------

_NODE_LOADERS = {
    "zones": (get_zone, zone_to_dict),
    "sections": (get_section, section_to_dict),
    "artifacts": (get_artifact, artifact_to_dict),
    "subartifacts": (get_sub_artifact, sub_artifact_to_dict),
}


@bp.post("/<any(zones, sections, artifacts, subartifacts):kind>/<int:node_id>/<any(activate, deactivate):op>")
@require_permission("settings.update")
def node_set_active(kind: str, node_id: int, op: str):
    s = db_session()
    loader, to_dict = _NODE_LOADERS[kind]
    node = set_node_active(s, loader(s, node_id), active=(op == "activate"), user=current_user())
    commit_or_raise(s)
    return jsonify(to_dict(node))
