from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.rbac import require_permission
from app.etmf.utils import iso, json_payload, parse_choice, parse_int, require_fields

from .models import Workflow, WorkflowStep
from .service import (
    WORKFLOW_STATUSES,
    activate_workflow,
    add_step_comment,
    archive_workflow,
    complete_step,
    create_workflow,
    deprecate_workflow,
    get_workflow,
    get_workflow_by_workflow_id,
    list_workflows,
    progress,
    reject_step,
    skip_step,
    start_step,
    workflow_status,
)

bp = Blueprint("workflows", __name__)


def step_to_dict(st: WorkflowStep) -> dict[str, Any]:
    return {
        "order": st.order_index,
        "name": st.name,
        "type": st.step_type,
        "status": st.status,
        "assignees": st.assignee_ids,
        "deadline": iso(st.deadline),
        "completed_by": st.completed_by_user_id,
        "completed_at": iso(st.completed_at),
        "comments": [{"user_id": c.user_id, "text": c.text, "timestamp": iso(c.timestamp)} for c in st.comments],
        "metadata": st.metadata_json or {},
    }


def workflow_to_dict(wf: Workflow) -> dict[str, Any]:
    return {
        "id": wf.id,
        "workflow_id": wf.workflow_id,
        "name": wf.name,
        "description": wf.description,
        "type": wf.workflow_type,
        "status": wf.status,
        "workflow_status": workflow_status(wf),
        "progress": progress(wf),
        "current_step": wf.current_step,
        "document": {"id": wf.document.id, "document_id": wf.document.document_id, "title": wf.document.title},
        "steps": [step_to_dict(st) for st in wf.steps],
        "notifications": [
            {
                "type": n.channel,
                "trigger": n.trigger,
                "recipients": list(n.recipient_user_ids or []),
                "template": n.template,
                "enabled": n.enabled,
            }
            for n in wf.notifications
        ],
        "metadata": wf.metadata_json or {},
        "revision": wf.revision,
        "created_at": iso(wf.created_at),
        "updated_at": iso(wf.updated_at),
    }


@bp.get("/workflows")
@require_permission("documents.read")
def workflows_list():
    s = db_session()
    items = list_workflows(
        s,
        document_id=parse_int(request.args.get("document"), "document"),
        status=parse_choice(request.args.get("status"), "status", WORKFLOW_STATUSES),
    )
    return jsonify([workflow_to_dict(wf) for wf in items])


@bp.post("/workflows")
@require_permission("documents.update")
def workflows_create():
    s = db_session()
    wf = create_workflow(s, json_payload(), current_user())
    commit_or_raise(s, conflict_message="Workflow id already exists.")
    return jsonify(workflow_to_dict(wf)), 201


@bp.get("/workflows/<int:wf_pk>")
@require_permission("documents.read")
def workflows_get(wf_pk: int):
    s = db_session()
    return jsonify(workflow_to_dict(get_workflow(s, wf_pk)))


@bp.get("/workflows/by-workflow-id/<workflow_id>")
@require_permission("documents.read")
def workflows_get_by_workflow_id(workflow_id: str):
    s = db_session()
    return jsonify(workflow_to_dict(get_workflow_by_workflow_id(s, workflow_id)))


_LIFECYCLE_OPS = {
    "activate": activate_workflow,
    "archive": archive_workflow,
    "deprecate": deprecate_workflow,
}


@bp.post("/workflows/<int:wf_pk>/<any(activate, archive, deprecate):op>")
@require_permission("documents.approve")
def workflows_lifecycle(wf_pk: int, op: str):
    s = db_session()
    payload = json_payload()
    wf = _LIFECYCLE_OPS[op](s, get_workflow(s, wf_pk, for_update=True), current_user(), payload.get("reason"))
    commit_or_raise(s)
    return jsonify(workflow_to_dict(wf))


_STEP_OPS = {
    "complete": complete_step,
    "reject": reject_step,
    "skip": skip_step,
}


@bp.post("/workflows/<int:wf_pk>/steps/<int:order>/start")
@require_permission("documents.update")
def workflows_step_start(wf_pk: int, order: int):
    s = db_session()
    wf = get_workflow(s, wf_pk, for_update=True)
    start_step(s, wf, order, current_user())
    commit_or_raise(s)
    return jsonify(workflow_to_dict(wf))


@bp.post("/workflows/<int:wf_pk>/steps/<int:order>/<any(complete, reject, skip):op>")
@require_permission("documents.update")
def workflows_step_action(wf_pk: int, order: int, op: str):
    s = db_session()
    payload = json_payload()
    wf = get_workflow(s, wf_pk, for_update=True)
    _STEP_OPS[op](s, wf, order, current_user(), payload.get("comments"))
    commit_or_raise(s)
    return jsonify(workflow_to_dict(wf))


@bp.post("/workflows/<int:wf_pk>/steps/<int:order>/comments")
@require_permission("documents.read")
def workflows_step_comment(wf_pk: int, order: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "text")
    wf = get_workflow(s, wf_pk)
    add_step_comment(s, wf, order, current_user(), payload["text"])
    commit_or_raise(s)
    return jsonify(workflow_to_dict(wf)), 201
