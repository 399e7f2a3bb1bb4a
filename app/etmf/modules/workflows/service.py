"""
Workflow engine.

A workflow is an ordered list of steps attached to one document. Steps are
worked strictly in order: a step can only be started or completed once every
earlier step is COMPLETED or SKIPPED, and a REJECTED step halts the workflow.
`current_step` is recomputed from the step statuses after every change.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.etmf.audit import record_event
from app.etmf.constants import NOTIFICATION_CHANNELS
from app.etmf.db import flush_or_raise
from app.etmf.errors import Conflict, InvalidState, NotFound, OutOfOrder, ValidationError
from app.etmf.models import User
from app.etmf.modules.documents.service import get_document
from app.etmf.utils import clean_str, parse_bool, parse_choice, parse_datetime, parse_int

from .models import Workflow, WorkflowNotification, WorkflowStep, WorkflowStepAssignee, WorkflowStepComment

logger = logging.getLogger(__name__)

WORKFLOW_TYPES = frozenset({"DOCUMENT_REVIEW", "DOCUMENT_APPROVAL", "DOCUMENT_SIGNATURE", "DOCUMENT_ARCHIVAL"})
WORKFLOW_STATUSES = frozenset({"DRAFT", "ACTIVE", "ARCHIVED", "DEPRECATED"})
STEP_TYPES = frozenset({"REVIEW", "APPROVE", "SIGN", "NOTIFY"})
NOTIFICATION_TRIGGERS = frozenset({"STEP_START", "STEP_COMPLETE", "WORKFLOW_COMPLETE", "DEADLINE_APPROACHING"})

# operation -> (allowed stored statuses, target)
WORKFLOW_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "activate": (frozenset({"DRAFT"}), "ACTIVE"),
    "deprecate": (frozenset({"DRAFT", "ACTIVE"}), "DEPRECATED"),
    "archive": (frozenset({"DRAFT", "ACTIVE", "DEPRECATED"}), "ARCHIVED"),
}

_OPEN_STEP_STATUSES = frozenset({"PENDING", "IN_PROGRESS"})


def new_workflow_id() -> str:
    return f"WF-{uuid.uuid4().hex[:12].upper()}"


# --- derived state ---------------------------------------------------------


def compute_current_step(steps: list[WorkflowStep]) -> int:
    """One past the last COMPLETED step of the in-order prefix; SKIPPED steps are passed over."""
    current = 0
    for i, step in enumerate(steps):
        if step.status == "COMPLETED":
            current = i + 1
        elif step.status == "SKIPPED":
            continue
        else:
            break
    return current


def progress(wf: Workflow) -> float:
    if not wf.steps:
        return 0.0
    done = sum(1 for st in wf.steps if st.status == "COMPLETED")
    return done / len(wf.steps) * 100


def workflow_status(wf: Workflow) -> str:
    if wf.status in ("ARCHIVED", "DEPRECATED"):
        return wf.status
    statuses = [st.status for st in wf.steps]
    if statuses and all(x == "COMPLETED" for x in statuses):
        return "COMPLETED"
    if "REJECTED" in statuses:
        return "REJECTED"
    if "IN_PROGRESS" in statuses:
        return "IN_PROGRESS"
    return "PENDING"


def is_halted(wf: Workflow) -> bool:
    return any(st.status == "REJECTED" for st in wf.steps)


# --- lookups ---------------------------------------------------------------


def get_workflow(s: Session, wf_pk: int, *, for_update: bool = False) -> Workflow:
    wf = s.get(Workflow, wf_pk, with_for_update=True if for_update else None)
    if not wf:
        raise NotFound("Workflow", wf_pk)
    return wf


def get_workflow_by_workflow_id(s: Session, workflow_id: str) -> Workflow:
    wf = s.query(Workflow).filter(Workflow.workflow_id == (workflow_id or "").strip()).one_or_none()
    if not wf:
        raise NotFound("Workflow", workflow_id)
    return wf


def list_workflows(s: Session, *, document_id: int | None = None, status: str | None = None) -> list[Workflow]:
    q = s.query(Workflow)
    if document_id is not None:
        q = q.filter(Workflow.document_id == document_id)
    if status:
        q = q.filter(Workflow.status == status)
    return q.order_by(Workflow.created_at.desc(), Workflow.id.desc()).all()


def get_step(wf: Workflow, order: int) -> WorkflowStep:
    for st in wf.steps:
        if st.order_index == order:
            return st
    raise NotFound("Workflow step", order)


# --- creation --------------------------------------------------------------


def _build_steps(s: Session, raw_steps: Any) -> list[WorkflowStep]:
    if not isinstance(raw_steps, list) or not raw_steps:
        raise ValidationError("At least one step is required.", details={"field": "steps"})

    steps: list[WorkflowStep] = []
    for i, raw in enumerate(raw_steps):
        if not isinstance(raw, dict):
            raise ValidationError(f"Step {i} must be an object.", details={"step": i})
        name = clean_str(raw.get("name"))
        if not name:
            raise ValidationError(f"Step {i} name is required.", details={"step": i, "field": "name"})
        step_type = parse_choice(raw.get("type"), "type", STEP_TYPES)
        if not step_type:
            raise ValidationError(f"Step {i} type is required.", details={"step": i, "field": "type"})

        assignee_ids = raw.get("assignees")
        if not isinstance(assignee_ids, list) or not assignee_ids:
            raise ValidationError(f"Step {i} needs at least one assignee.", details={"step": i, "field": "assignees"})
        assignees: list[WorkflowStepAssignee] = []
        seen: set[int] = set()
        for raw_id in assignee_ids:
            uid = parse_int(raw_id, "assignees", minimum=1)
            if uid in seen:
                continue
            if not s.get(User, uid):
                raise NotFound("User", uid)
            seen.add(uid)
            assignees.append(WorkflowStepAssignee(user_id=uid))

        steps.append(
            WorkflowStep(
                # Renumbered in submitted order regardless of any client-supplied order.
                order_index=i,
                name=name,
                step_type=step_type,
                status="PENDING",
                deadline=parse_datetime(raw.get("deadline"), "deadline"),
                metadata_json=raw.get("metadata") if isinstance(raw.get("metadata"), dict) else None,
                assignees=assignees,
            )
        )
    return steps


def _build_notifications(s: Session, raw_notifications: Any) -> list[WorkflowNotification]:
    if raw_notifications in (None, []):
        return []
    if not isinstance(raw_notifications, list):
        raise ValidationError("notifications must be a list.", details={"field": "notifications"})
    out = []
    for raw in raw_notifications:
        if not isinstance(raw, dict):
            raise ValidationError("Each notification must be an object.", details={"field": "notifications"})
        channel = parse_choice(raw.get("type"), "notification type", NOTIFICATION_CHANNELS)
        trigger = parse_choice(raw.get("trigger"), "trigger", NOTIFICATION_TRIGGERS)
        if not channel or not trigger:
            raise ValidationError("Notification type and trigger are required.", details={"field": "notifications"})
        recipients = []
        for raw_id in raw.get("recipients") or []:
            uid = parse_int(raw_id, "recipients", minimum=1)
            if not s.get(User, uid):
                raise NotFound("User", uid)
            recipients.append(uid)
        out.append(
            WorkflowNotification(
                channel=channel,
                trigger=trigger,
                recipient_user_ids=recipients,
                template=raw.get("template"),
                enabled=parse_bool(raw.get("enabled"), True),
            )
        )
    return out


def create_workflow(s: Session, payload: dict[str, Any], user: User) -> Workflow:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("name is required.", details={"field": "name"})
    workflow_type = parse_choice(payload.get("type"), "type", WORKFLOW_TYPES)
    if not workflow_type:
        raise ValidationError("type is required.", details={"field": "type"})
    document_pk = parse_int(payload.get("document_id"), "document_id", minimum=1)
    if document_pk is None:
        raise ValidationError("document_id is required.", details={"field": "document_id"})
    document = get_document(s, document_pk)

    workflow_id = clean_str(payload.get("workflow_id")) or new_workflow_id()
    if s.query(Workflow.id).filter(Workflow.workflow_id == workflow_id).first():
        raise Conflict(f"Workflow {workflow_id} already exists.")

    steps = _build_steps(s, payload.get("steps"))
    notifications = _build_notifications(s, payload.get("notifications"))

    now = datetime.utcnow()
    wf = Workflow(
        workflow_id=workflow_id,
        name=name,
        description=(payload.get("description") or "").strip(),
        workflow_type=workflow_type,
        status="DRAFT",
        document_id=document.id,
        current_step=0,
        metadata_json=payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None,
        steps=steps,
        notifications=notifications,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(wf)
    flush_or_raise(s, conflict_message=f"Workflow {workflow_id} already exists.")
    record_event(
        s,
        actor=user,
        action="workflow.create",
        entity_type="Workflow",
        entity_id=str(wf.id),
        metadata={"workflow_id": workflow_id, "document_id": document.document_id, "steps": len(steps)},
    )
    return wf


# --- workflow lifecycle ----------------------------------------------------


def _change_workflow_status(s: Session, wf: Workflow, op: str, user: User, reason: str | None = None) -> Workflow:
    allowed_from, target = WORKFLOW_TRANSITIONS[op]
    if wf.status not in allowed_from:
        raise InvalidState(f"Cannot {op} a workflow in status {wf.status}.", details={"status": wf.status})
    before = wf.status
    wf.status = target
    wf.updated_at = datetime.utcnow()
    wf.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action=f"workflow.{op}",
        entity_type="Workflow",
        entity_id=str(wf.id),
        reason=reason,
        metadata={"from": before, "to": target},
    )
    flush_or_raise(s)
    return wf


def activate_workflow(s: Session, wf: Workflow, user: User, reason: str | None = None) -> Workflow:
    return _change_workflow_status(s, wf, "activate", user, reason)


def deprecate_workflow(s: Session, wf: Workflow, user: User, reason: str | None = None) -> Workflow:
    return _change_workflow_status(s, wf, "deprecate", user, reason)


def archive_workflow(s: Session, wf: Workflow, user: User, reason: str | None = None) -> Workflow:
    return _change_workflow_status(s, wf, "archive", user, reason)


# --- steps -----------------------------------------------------------------


def _require_open_workflow(wf: Workflow) -> None:
    if wf.status in ("ARCHIVED", "DEPRECATED"):
        raise InvalidState(f"Workflow {wf.workflow_id} is {wf.status}.", details={"status": wf.status})
    if is_halted(wf):
        raise InvalidState(f"Workflow {wf.workflow_id} was rejected and is halted.", details={"status": "REJECTED"})


def _require_assignee(step: WorkflowStep, user: User) -> None:
    if user.id not in step.assignee_ids:
        raise InvalidState(
            f"User is not assigned to step {step.order_index}.",
            details={"order": step.order_index, "user_id": user.id},
        )


def _require_prior_steps_closed(wf: Workflow, step: WorkflowStep) -> None:
    for earlier in wf.steps:
        if earlier.order_index >= step.order_index:
            break
        if earlier.status in _OPEN_STEP_STATUSES:
            raise OutOfOrder(
                f"Step {earlier.order_index} must be completed or skipped before step {step.order_index}.",
                details={"order": step.order_index, "blocking_step": earlier.order_index, "blocking_status": earlier.status},
            )


def _after_step_change(s: Session, wf: Workflow, step: WorkflowStep, user: User, action: str, comments: str | None) -> None:
    if comments and comments.strip():
        step.comments.append(WorkflowStepComment(user_id=user.id, text=comments.strip()))
    wf.current_step = compute_current_step(wf.steps)
    wf.updated_at = datetime.utcnow()
    wf.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action=f"workflow.step_{action}",
        entity_type="Workflow",
        entity_id=str(wf.id),
        metadata={"order": step.order_index, "status": step.status, "current_step": wf.current_step},
    )
    flush_or_raise(s)
    logger.info("Workflow %s step %s -> %s by user %s", wf.workflow_id, step.order_index, step.status, user.id)


def start_step(s: Session, wf: Workflow, order: int, user: User) -> WorkflowStep:
    step = get_step(wf, order)
    if step.status != "PENDING":
        raise InvalidState(f"Step {order} is {step.status}; only PENDING steps can be started.")
    _require_open_workflow(wf)
    _require_assignee(step, user)
    _require_prior_steps_closed(wf, step)

    step.status = "IN_PROGRESS"
    _after_step_change(s, wf, step, user, "start", None)
    return step


def complete_step(s: Session, wf: Workflow, order: int, user: User, comments: str | None = None) -> WorkflowStep:
    step = get_step(wf, order)
    if step.status not in _OPEN_STEP_STATUSES:
        raise InvalidState(f"Step {order} is already {step.status}.", details={"status": step.status})
    _require_open_workflow(wf)
    _require_assignee(step, user)
    _require_prior_steps_closed(wf, step)

    step.status = "COMPLETED"
    step.completed_by_user_id = user.id
    step.completed_at = datetime.utcnow()
    _after_step_change(s, wf, step, user, "complete", comments)
    return step


def reject_step(s: Session, wf: Workflow, order: int, user: User, comments: str | None = None) -> WorkflowStep:
    step = get_step(wf, order)
    if step.status not in _OPEN_STEP_STATUSES:
        raise InvalidState(f"Step {order} is already {step.status}.", details={"status": step.status})
    _require_open_workflow(wf)
    _require_assignee(step, user)
    _require_prior_steps_closed(wf, step)

    step.status = "REJECTED"
    step.completed_by_user_id = user.id
    step.completed_at = datetime.utcnow()
    _after_step_change(s, wf, step, user, "reject", comments)
    return step


def skip_step(s: Session, wf: Workflow, order: int, user: User, comments: str | None = None) -> WorkflowStep:
    step = get_step(wf, order)
    if step.status not in _OPEN_STEP_STATUSES:
        raise InvalidState(f"Step {order} is already {step.status}.", details={"status": step.status})
    _require_open_workflow(wf)
    _require_assignee(step, user)
    _require_prior_steps_closed(wf, step)

    step.status = "SKIPPED"
    step.completed_by_user_id = user.id
    step.completed_at = datetime.utcnow()
    _after_step_change(s, wf, step, user, "skip", comments)
    return step


def add_step_comment(s: Session, wf: Workflow, order: int, user: User, text: str) -> WorkflowStepComment:
    step = get_step(wf, order)
    text = (text or "").strip()
    if not text:
        raise ValidationError("text is required.", details={"field": "text"})
    c = WorkflowStepComment(user_id=user.id, text=text)
    step.comments.append(c)
    flush_or_raise(s)
    return c
