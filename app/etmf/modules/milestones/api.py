from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.rbac import require_permission
from app.etmf.utils import iso, json_payload, parse_choice, parse_date, parse_int

from .models import Milestone
from .service import (
    MILESTONE_STATUSES,
    cancel_milestone,
    complete_milestone,
    completion_status,
    create_milestone,
    get_milestone,
    is_overdue,
    list_milestones,
    mark_delayed,
    start_milestone,
)

bp = Blueprint("milestones", __name__)


def milestone_to_dict(m: Milestone) -> dict[str, Any]:
    return {
        "id": m.id,
        "milestone_id": m.milestone_id,
        "trial_id": m.trial_id,
        "site_id": m.site_id,
        "name": m.name,
        "type": m.milestone_type,
        "description": m.description,
        "status": m.status,
        "priority": m.priority,
        "due_date": iso(m.due_date),
        "completed_date": iso(m.completed_date),
        "is_overdue": is_overdue(m),
        "completion_status": completion_status(m),
        "assigned_to": list(m.assigned_user_ids or []),
        "metadata": m.metadata_json or {},
        "created_at": iso(m.created_at),
        "updated_at": iso(m.updated_at),
    }


@bp.get("/milestones")
@require_permission("trials.read")
def milestones_list():
    s = db_session()
    items = list_milestones(
        s,
        trial_id=parse_int(request.args.get("trial"), "trial"),
        site_id=parse_int(request.args.get("site"), "site"),
        status=parse_choice(request.args.get("status"), "status", MILESTONE_STATUSES),
    )
    return jsonify([milestone_to_dict(m) for m in items])


@bp.post("/milestones")
@require_permission("trials.update")
def milestones_create():
    s = db_session()
    m = create_milestone(s, json_payload(), current_user())
    commit_or_raise(s, conflict_message="Milestone id already exists.")
    return jsonify(milestone_to_dict(m)), 201


@bp.get("/milestones/<int:milestone_pk>")
@require_permission("trials.read")
def milestones_get(milestone_pk: int):
    s = db_session()
    return jsonify(milestone_to_dict(get_milestone(s, milestone_pk)))


_OPS = {
    "start": start_milestone,
    "delay": mark_delayed,
    "cancel": cancel_milestone,
}


@bp.post("/milestones/<int:milestone_pk>/<any(start, delay, cancel):op>")
@require_permission("trials.update")
def milestones_transition(milestone_pk: int, op: str):
    s = db_session()
    payload = json_payload()
    m = _OPS[op](s, get_milestone(s, milestone_pk), current_user(), payload.get("reason"))
    commit_or_raise(s)
    return jsonify(milestone_to_dict(m))


@bp.post("/milestones/<int:milestone_pk>/complete")
@require_permission("trials.update")
def milestones_complete(milestone_pk: int):
    s = db_session()
    payload = json_payload()
    m = complete_milestone(
        s,
        get_milestone(s, milestone_pk),
        completed_date=parse_date(payload.get("completed_date"), "completed_date"),
        user=current_user(),
    )
    commit_or_raise(s)
    return jsonify(milestone_to_dict(m))
