from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.rbac import require_permission
from app.etmf.utils import iso, json_payload, parse_date, parse_int, require_fields

from .models import Site, Trial, TrialAuditEntry
from .service import (
    TRIAL_STATUSES,
    add_country,
    add_team_member,
    change_site_status,
    change_trial_status,
    close_site,
    create_site,
    create_trial,
    enrollment_progress,
    get_site,
    get_trial,
    get_trial_by_study_id,
    is_trial_running,
    list_sites,
    list_trials,
    remove_team_member,
    update_site_enrollment,
    update_trial,
)

bp = Blueprint("trials", __name__)


def trial_audit_to_dict(e: TrialAuditEntry) -> dict[str, Any]:
    return {
        "action": e.action,
        "timestamp": iso(e.timestamp),
        "actor_user_id": e.actor_user_id,
        "details": e.details,
        "ip_address": e.ip_address,
    }


def trial_to_dict(t: Trial, *, include_audit: bool = False) -> dict[str, Any]:
    out = {
        "id": t.id,
        "study_id": t.study_id,
        "protocol_number": t.protocol_number,
        "title": t.title,
        "description": t.description,
        "phase": t.phase,
        "therapeutic_area": t.therapeutic_area,
        "indication": t.indication,
        "sponsor": t.sponsor,
        "cro": {"name": t.cro_name, "contract_number": t.cro_contract_number},
        "status": t.status,
        "start_date": iso(t.start_date),
        "end_date": iso(t.end_date),
        "estimated_completion_date": iso(t.estimated_completion_date),
        "is_running": is_trial_running(t),
        "regulatory": {
            "authority": t.regulatory_authority,
            "status": t.regulatory_status,
            "retention_period_years": t.retention_period_years,
        },
        "metadata": t.metadata_json or {},
        "team": [
            {"user_id": m.user_id, "email": m.user.email if m.user else None, "role": m.role, "assigned_at": iso(m.assigned_at)}
            for m in t.team
        ],
        "countries": [
            {"code": c.code, "name": c.name, "status": c.status, "start_date": iso(c.start_date), "end_date": iso(c.end_date)}
            for c in t.countries
        ],
        "site_count": len(t.sites),
        "revision": t.revision,
        "created_at": iso(t.created_at),
        "updated_at": iso(t.updated_at),
    }
    if include_audit:
        out["audit_trail"] = [trial_audit_to_dict(e) for e in t.audit_trail]
    return out


def site_to_dict(site: Site) -> dict[str, Any]:
    return {
        "id": site.id,
        "site_id": site.site_id,
        "trial_id": site.trial_id,
        "name": site.name,
        "site_type": site.site_type,
        "status": site.status,
        "address": {
            "street": site.street,
            "city": site.city,
            "state": site.state,
            "country": site.country,
            "postal_code": site.postal_code,
        },
        "contact": {"phone": site.phone, "email": site.email},
        "start_date": iso(site.start_date),
        "estimated_end_date": iso(site.estimated_end_date),
        "actual_end_date": iso(site.actual_end_date),
        "enrollment_target": site.enrollment_target,
        "actual_enrollment": site.actual_enrollment,
        "enrollment_progress": enrollment_progress(site),
        "revision": site.revision,
        "created_at": iso(site.created_at),
        "updated_at": iso(site.updated_at),
    }


# ---------- Trials ----------
@bp.get("/trials")
@require_permission("trials.read")
def trials_list():
    s = db_session()
    status = (request.args.get("status") or "").strip().upper() or None
    if status and status not in TRIAL_STATUSES:
        status = None
    page = parse_int(request.args.get("page"), "page", default=1, minimum=1)
    limit = parse_int(request.args.get("limit"), "limit", default=10, minimum=1, maximum=100)
    items, total = list_trials(s, status=status, page=page, limit=limit)
    return jsonify(
        {
            "items": [trial_to_dict(t) for t in items],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        }
    )


@bp.post("/trials")
@require_permission("trials.create")
def trials_create():
    s = db_session()
    trial = create_trial(s, json_payload(), current_user())
    commit_or_raise(s, conflict_message="Trial study_id or protocol_number already exists.")
    return jsonify(trial_to_dict(trial)), 201


@bp.get("/trials/<int:trial_id>")
@require_permission("trials.read")
def trials_get(trial_id: int):
    s = db_session()
    include_audit = request.args.get("audit") == "1"
    return jsonify(trial_to_dict(get_trial(s, trial_id), include_audit=include_audit))


@bp.get("/trials/by-study/<study_id>")
@require_permission("trials.read")
def trials_get_by_study(study_id: str):
    s = db_session()
    return jsonify(trial_to_dict(get_trial_by_study_id(s, study_id)))


@bp.patch("/trials/<int:trial_id>")
@require_permission("trials.update")
def trials_update(trial_id: int):
    s = db_session()
    trial = update_trial(s, get_trial(s, trial_id), json_payload(), current_user())
    commit_or_raise(s)
    return jsonify(trial_to_dict(trial))


@bp.post("/trials/<int:trial_id>/status")
@require_permission("trials.manage")
def trials_change_status(trial_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "status")
    trial = change_trial_status(s, get_trial(s, trial_id), payload["status"], current_user(), reason=payload.get("reason"))
    commit_or_raise(s)
    return jsonify(trial_to_dict(trial))


@bp.get("/trials/<int:trial_id>/audit")
@require_permission("audit.read")
def trials_audit(trial_id: int):
    s = db_session()
    return jsonify([trial_audit_to_dict(e) for e in get_trial(s, trial_id).audit_trail])


@bp.post("/trials/<int:trial_id>/team")
@require_permission("trials.manage")
def trials_team_add(trial_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "user_id", "role")
    trial = get_trial(s, trial_id)
    add_team_member(
        s,
        trial,
        user_id=parse_int(payload["user_id"], "user_id", minimum=1),
        role=payload["role"],
        user=current_user(),
    )
    commit_or_raise(s, conflict_message="User is already on the study team.")
    return jsonify(trial_to_dict(trial))


@bp.delete("/trials/<int:trial_id>/team/<int:user_id>")
@require_permission("trials.manage")
def trials_team_remove(trial_id: int, user_id: int):
    s = db_session()
    trial = get_trial(s, trial_id)
    remove_team_member(s, trial, user_id=user_id, user=current_user())
    commit_or_raise(s)
    return jsonify(trial_to_dict(trial))


@bp.post("/trials/<int:trial_id>/countries")
@require_permission("trials.update")
def trials_country_add(trial_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "code", "name")
    trial = get_trial(s, trial_id)
    add_country(s, trial, code=payload["code"], name=payload["name"], user=current_user())
    commit_or_raise(s)
    return jsonify(trial_to_dict(trial))


# ---------- Sites ----------
@bp.get("/trials/<int:trial_id>/sites")
@require_permission("sites.read")
def sites_list(trial_id: int):
    s = db_session()
    return jsonify([site_to_dict(site) for site in list_sites(s, trial_id)])


@bp.post("/trials/<int:trial_id>/sites")
@require_permission("sites.create")
def sites_create(trial_id: int):
    s = db_session()
    site = create_site(s, trial_id, json_payload(), current_user())
    commit_or_raise(s, conflict_message="Site id already exists.")
    return jsonify(site_to_dict(site)), 201


@bp.get("/sites/<int:site_pk>")
@require_permission("sites.read")
def sites_get(site_pk: int):
    s = db_session()
    return jsonify(site_to_dict(get_site(s, site_pk)))


@bp.post("/sites/<int:site_pk>/status")
@require_permission("sites.manage")
def sites_change_status(site_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "status")
    site = change_site_status(s, get_site(s, site_pk), payload["status"], current_user(), reason=payload.get("reason"))
    commit_or_raise(s)
    return jsonify(site_to_dict(site))


@bp.post("/sites/<int:site_pk>/close")
@require_permission("sites.manage")
def sites_close(site_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "actual_end_date")
    site = close_site(
        s,
        get_site(s, site_pk),
        actual_end_date=parse_date(payload["actual_end_date"], "actual_end_date"),
        user=current_user(),
    )
    commit_or_raise(s)
    return jsonify(site_to_dict(site))


@bp.post("/sites/<int:site_pk>/enrollment")
@require_permission("sites.update")
def sites_enrollment(site_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "actual_enrollment")
    site = update_site_enrollment(s, get_site(s, site_pk), actual_enrollment=payload["actual_enrollment"], user=current_user())
    commit_or_raise(s)
    return jsonify(site_to_dict(site))
