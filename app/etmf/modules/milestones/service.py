from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from app.etmf.audit import record_event
from app.etmf.db import flush_or_raise
from app.etmf.errors import Conflict, InvalidState, NotFound, ValidationError
from app.etmf.models import User
from app.etmf.modules.trials.service import get_site, get_trial
from app.etmf.utils import clean_str, parse_choice, parse_date, parse_int

from .models import Milestone

MILESTONE_TYPES = frozenset({"REGULATORY", "ENROLLMENT", "SAFETY", "EFFICACY", "QUALITY", "DOCUMENTATION", "OTHER"})
MILESTONE_STATUSES = frozenset({"PENDING", "IN_PROGRESS", "COMPLETED", "DELAYED", "CANCELLED"})
PRIORITIES = frozenset({"HIGH", "MEDIUM", "LOW"})

# operation -> (allowed from, target)
MILESTONE_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "start": (frozenset({"PENDING", "DELAYED"}), "IN_PROGRESS"),
    "mark_delayed": (frozenset({"PENDING", "IN_PROGRESS"}), "DELAYED"),
    "cancel": (frozenset({"PENDING", "IN_PROGRESS", "DELAYED"}), "CANCELLED"),
}


def is_overdue(m: Milestone, today: date | None = None) -> bool:
    today = today or date.today()
    return m.status != "COMPLETED" and m.due_date < today


def completion_status(m: Milestone, today: date | None = None) -> str:
    if m.status == "COMPLETED":
        return "COMPLETED"
    if is_overdue(m, today):
        return "OVERDUE"
    if m.status == "IN_PROGRESS":
        return "IN_PROGRESS"
    return "PENDING"


def get_milestone(s: Session, milestone_pk: int) -> Milestone:
    m = s.get(Milestone, milestone_pk)
    if not m:
        raise NotFound("Milestone", milestone_pk)
    return m


def list_milestones(
    s: Session,
    *,
    trial_id: int | None = None,
    site_id: int | None = None,
    status: str | None = None,
) -> list[Milestone]:
    q = s.query(Milestone)
    if trial_id is not None:
        q = q.filter(Milestone.trial_id == trial_id)
    if site_id is not None:
        q = q.filter(Milestone.site_id == site_id)
    if status:
        q = q.filter(Milestone.status == status)
    return q.order_by(Milestone.due_date.asc(), Milestone.id.asc()).all()


def create_milestone(s: Session, payload: dict[str, Any], user: User) -> Milestone:
    name = clean_str(payload.get("name"))
    if not name:
        raise ValidationError("name is required.", details={"field": "name"})
    milestone_type = parse_choice(payload.get("type"), "type", MILESTONE_TYPES)
    if not milestone_type:
        raise ValidationError("type is required.", details={"field": "type"})
    due_date = parse_date(payload.get("due_date"), "due_date")
    if due_date is None:
        raise ValidationError("due_date is required.", details={"field": "due_date"})

    trial_pk = parse_int(payload.get("trial_id"), "trial_id", minimum=1)
    if trial_pk is None:
        raise ValidationError("trial_id is required.", details={"field": "trial_id"})
    trial = get_trial(s, trial_pk)

    site_pk = parse_int(payload.get("site_id"), "site_id", minimum=1)
    if site_pk is not None:
        site = get_site(s, site_pk)
        if site.trial_id != trial.id:
            raise ValidationError("Site does not belong to the milestone's trial.", details={"field": "site_id"})

    milestone_id = clean_str(payload.get("milestone_id")) or f"MS-{uuid.uuid4().hex[:12].upper()}"
    if s.query(Milestone.id).filter(Milestone.milestone_id == milestone_id).first():
        raise Conflict(f"Milestone {milestone_id} already exists.")

    assigned = [parse_int(v, "assigned_to", minimum=1) for v in (payload.get("assigned_to") or [])]
    for uid in assigned:
        if not s.get(User, uid):
            raise NotFound("User", uid)

    now = datetime.utcnow()
    m = Milestone(
        milestone_id=milestone_id,
        trial_id=trial.id,
        site_id=site_pk,
        name=name,
        milestone_type=milestone_type,
        description=(payload.get("description") or "").strip(),
        status="PENDING",
        priority=parse_choice(payload.get("priority"), "priority", PRIORITIES, default="MEDIUM"),
        due_date=due_date,
        assigned_user_ids=assigned,
        metadata_json=payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(m)
    flush_or_raise(s, conflict_message=f"Milestone {milestone_id} already exists.")
    record_event(
        s,
        actor=user,
        action="milestone.create",
        entity_type="Milestone",
        entity_id=str(m.id),
        metadata={"milestone_id": milestone_id, "trial_id": trial.id, "due_date": due_date},
    )
    return m


def _transition(s: Session, m: Milestone, op: str, user: User, reason: str | None = None) -> Milestone:
    allowed_from, target = MILESTONE_TRANSITIONS[op]
    if m.status not in allowed_from:
        raise InvalidState(f"Cannot {op.replace('_', ' ')} a milestone in status {m.status}.")
    before = m.status
    m.status = target
    m.updated_at = datetime.utcnow()
    m.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action=f"milestone.{op}",
        entity_type="Milestone",
        entity_id=str(m.id),
        reason=reason,
        metadata={"from": before, "to": target},
    )
    flush_or_raise(s)
    return m


def start_milestone(s: Session, m: Milestone, user: User, reason: str | None = None) -> Milestone:
    return _transition(s, m, "start", user, reason)


def mark_delayed(s: Session, m: Milestone, user: User, reason: str | None = None) -> Milestone:
    return _transition(s, m, "mark_delayed", user, reason)


def cancel_milestone(s: Session, m: Milestone, user: User, reason: str | None = None) -> Milestone:
    return _transition(s, m, "cancel", user, reason)


def complete_milestone(s: Session, m: Milestone, *, completed_date: date | None, user: User) -> Milestone:
    """Setting the completion date is what completes a milestone."""
    if m.status in ("COMPLETED", "CANCELLED"):
        raise InvalidState(f"Milestone is already {m.status}.")
    completed_date = completed_date or date.today()
    before = m.status
    m.completed_date = completed_date
    m.status = "COMPLETED"
    m.updated_at = datetime.utcnow()
    m.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="milestone.complete",
        entity_type="Milestone",
        entity_id=str(m.id),
        metadata={"from": before, "completed_date": completed_date},
    )
    flush_or_raise(s)
    return m
