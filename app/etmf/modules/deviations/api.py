from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.rbac import require_permission
from app.etmf.utils import iso, json_payload, parse_choice, parse_date, parse_int, require_fields

from .models import Deviation
from .service import (
    DEVIATION_STATUSES,
    SEVERITIES,
    add_review,
    age_days,
    approve_deviation,
    close_deviation,
    create_deviation,
    duration_days,
    get_deviation,
    list_deviations,
    reject_deviation,
    resolve_deviation,
    start_review,
    submit_deviation,
    update_investigation,
)

bp = Blueprint("deviations", __name__)


def deviation_to_dict(d: Deviation) -> dict[str, Any]:
    return {
        "id": d.id,
        "deviation_id": d.deviation_id,
        "trial_id": d.trial_id,
        "site_id": d.site_id,
        "subject": d.subject_ref,
        "type": d.deviation_type,
        "severity": d.severity,
        "status": d.status,
        "description": d.description,
        "impact": d.impact,
        "root_cause": d.root_cause,
        "corrective_action": {
            "planned": d.corrective_action_planned,
            "implemented": d.corrective_action_implemented,
            "effectiveness": d.corrective_action_effectiveness,
        },
        "preventive_action": d.preventive_action,
        "reported_date": iso(d.reported_date),
        "discovered_date": iso(d.discovered_date),
        "resolved_date": iso(d.resolved_date),
        "age_days": age_days(d),
        "duration_days": duration_days(d),
        "reviews": [
            {
                "user_id": r.user_id,
                "role": r.role,
                "decision": r.decision,
                "comments": r.comments,
                "reviewed_at": iso(r.reviewed_at),
            }
            for r in d.reviews
        ],
        "metadata": d.metadata_json or {},
        "created_at": iso(d.created_at),
        "updated_at": iso(d.updated_at),
    }


@bp.get("/deviations")
@require_permission("trials.read")
def deviations_list():
    s = db_session()
    args = request.args
    items = list_deviations(
        s,
        trial_id=parse_int(args.get("trial"), "trial"),
        site_id=parse_int(args.get("site"), "site"),
        status=parse_choice(args.get("status"), "status", DEVIATION_STATUSES),
        severity=parse_choice(args.get("severity"), "severity", SEVERITIES),
    )
    return jsonify([deviation_to_dict(d) for d in items])


@bp.post("/deviations")
@require_permission("trials.update")
def deviations_create():
    s = db_session()
    d = create_deviation(s, json_payload(), current_user())
    commit_or_raise(s, conflict_message="Deviation id already exists.")
    return jsonify(deviation_to_dict(d)), 201


@bp.get("/deviations/<int:deviation_pk>")
@require_permission("trials.read")
def deviations_get(deviation_pk: int):
    s = db_session()
    return jsonify(deviation_to_dict(get_deviation(s, deviation_pk)))


@bp.patch("/deviations/<int:deviation_pk>")
@require_permission("trials.update")
def deviations_update(deviation_pk: int):
    s = db_session()
    d = update_investigation(s, get_deviation(s, deviation_pk), json_payload(), current_user())
    commit_or_raise(s)
    return jsonify(deviation_to_dict(d))


_OPS = {
    "submit": (submit_deviation, "trials.update"),
    "start_review": (start_review, "trials.manage"),
    "approve": (approve_deviation, "trials.manage"),
    "reject": (reject_deviation, "trials.manage"),
    "close": (close_deviation, "trials.manage"),
}


@bp.post("/deviations/<int:deviation_pk>/<any(submit, start_review, approve, reject, close):op>")
def deviations_transition(deviation_pk: int, op: str):
    fn, permission = _OPS[op]

    @require_permission(permission)
    def _run():
        s = db_session()
        payload = json_payload()
        d = fn(s, get_deviation(s, deviation_pk), current_user(), payload.get("reason"))
        commit_or_raise(s)
        return jsonify(deviation_to_dict(d))

    return _run()


@bp.post("/deviations/<int:deviation_pk>/reviews")
@require_permission("trials.manage")
def deviations_add_review(deviation_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "decision")
    d = get_deviation(s, deviation_pk)
    add_review(s, d, current_user(), decision=payload["decision"], role=payload.get("role"), comments=payload.get("comments"))
    commit_or_raise(s)
    return jsonify(deviation_to_dict(d)), 201


@bp.post("/deviations/<int:deviation_pk>/resolve")
@require_permission("trials.update")
def deviations_resolve(deviation_pk: int):
    s = db_session()
    payload = json_payload()
    d = resolve_deviation(
        s,
        get_deviation(s, deviation_pk),
        resolved_date=parse_date(payload.get("resolved_date"), "resolved_date"),
        user=current_user(),
    )
    commit_or_raise(s)
    return jsonify(deviation_to_dict(d))
