"""
Protocol deviation service.
DRAFT -> SUBMITTED -> REVIEW -> APPROVED | REJECTED -> CLOSED, plus
`resolve`, which records the resolution date and closes from any state.
"""
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

from .models import Deviation, DeviationReview

DEVIATION_TYPES = frozenset({"PROTOCOL", "PROCEDURE", "REGULATORY", "SAFETY", "QUALITY", "OTHER"})
SEVERITIES = frozenset({"MINOR", "MODERATE", "MAJOR", "CRITICAL"})
DEVIATION_STATUSES = frozenset({"DRAFT", "SUBMITTED", "REVIEW", "APPROVED", "REJECTED", "CLOSED"})
REVIEW_DECISIONS = frozenset({"PENDING", "APPROVED", "REJECTED"})

DEVIATION_TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "submit": (frozenset({"DRAFT"}), "SUBMITTED"),
    "start_review": (frozenset({"SUBMITTED"}), "REVIEW"),
    "approve": (frozenset({"REVIEW"}), "APPROVED"),
    "reject": (frozenset({"REVIEW"}), "REJECTED"),
    "close": (frozenset({"APPROVED", "REJECTED"}), "CLOSED"),
}

_INVESTIGATION_FIELDS = (
    "root_cause",
    "corrective_action_planned",
    "corrective_action_implemented",
    "corrective_action_effectiveness",
    "preventive_action",
)


def get_deviation(s: Session, deviation_pk: int) -> Deviation:
    d = s.get(Deviation, deviation_pk)
    if not d:
        raise NotFound("Deviation", deviation_pk)
    return d


def list_deviations(
    s: Session,
    *,
    trial_id: int | None = None,
    site_id: int | None = None,
    status: str | None = None,
    severity: str | None = None,
) -> list[Deviation]:
    q = s.query(Deviation)
    if trial_id is not None:
        q = q.filter(Deviation.trial_id == trial_id)
    if site_id is not None:
        q = q.filter(Deviation.site_id == site_id)
    if status:
        q = q.filter(Deviation.status == status)
    if severity:
        q = q.filter(Deviation.severity == severity)
    return q.order_by(Deviation.reported_date.desc(), Deviation.id.desc()).all()


def age_days(d: Deviation, today: date | None = None) -> int:
    today = today or date.today()
    return (today - d.reported_date).days


def duration_days(d: Deviation) -> int | None:
    if d.resolved_date is None:
        return None
    return (d.resolved_date - d.reported_date).days


def create_deviation(s: Session, payload: dict[str, Any], user: User) -> Deviation:
    description = (payload.get("description") or "").strip()
    impact = (payload.get("impact") or "").strip()
    missing = [f for f, v in (("description", description), ("impact", impact)) if not v]
    if missing:
        raise ValidationError(f"Required fields missing: {', '.join(missing)}", details={"missing": missing})

    deviation_type = parse_choice(payload.get("type"), "type", DEVIATION_TYPES)
    severity = parse_choice(payload.get("severity"), "severity", SEVERITIES)
    if not deviation_type or not severity:
        raise ValidationError("type and severity are required.", details={"fields": ["type", "severity"]})

    trial_pk = parse_int(payload.get("trial_id"), "trial_id", minimum=1)
    site_pk = parse_int(payload.get("site_id"), "site_id", minimum=1)
    if trial_pk is None or site_pk is None:
        raise ValidationError("trial_id and site_id are required.", details={"fields": ["trial_id", "site_id"]})
    trial = get_trial(s, trial_pk)
    site = get_site(s, site_pk)
    if site.trial_id != trial.id:
        raise ValidationError("Site does not belong to the deviation's trial.", details={"field": "site_id"})

    reported_date = parse_date(payload.get("reported_date"), "reported_date") or date.today()
    discovered_date = parse_date(payload.get("discovered_date"), "discovered_date")
    if discovered_date and discovered_date > reported_date:
        raise ValidationError("discovered_date cannot be after reported_date.", details={"field": "discovered_date"})

    deviation_id = clean_str(payload.get("deviation_id")) or f"DEV-{uuid.uuid4().hex[:12].upper()}"
    if s.query(Deviation.id).filter(Deviation.deviation_id == deviation_id).first():
        raise Conflict(f"Deviation {deviation_id} already exists.")

    now = datetime.utcnow()
    d = Deviation(
        deviation_id=deviation_id,
        trial_id=trial.id,
        site_id=site.id,
        subject_ref=clean_str(payload.get("subject")),
        deviation_type=deviation_type,
        severity=severity,
        status="DRAFT",
        description=description,
        impact=impact,
        reported_date=reported_date,
        discovered_date=discovered_date,
        metadata_json=payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    for field in _INVESTIGATION_FIELDS:
        setattr(d, field, clean_str(payload.get(field)))
    s.add(d)
    flush_or_raise(s, conflict_message=f"Deviation {deviation_id} already exists.")
    record_event(
        s,
        actor=user,
        action="deviation.create",
        entity_type="Deviation",
        entity_id=str(d.id),
        metadata={"deviation_id": deviation_id, "severity": severity, "site_id": site.id},
    )
    return d


def update_investigation(s: Session, d: Deviation, payload: dict[str, Any], user: User) -> Deviation:
    """Root cause and CAPA fields; frozen once CLOSED."""
    if d.status == "CLOSED":
        raise InvalidState("Closed deviations cannot be modified.")
    changes = {}
    for field in _INVESTIGATION_FIELDS:
        if field in payload:
            new_val = clean_str(payload.get(field))
            if new_val != getattr(d, field):
                changes[field] = {"old": getattr(d, field), "new": new_val}
                setattr(d, field, new_val)
    if changes:
        d.updated_at = datetime.utcnow()
        d.updated_by_user_id = user.id
        record_event(
            s,
            actor=user,
            action="deviation.update",
            entity_type="Deviation",
            entity_id=str(d.id),
            metadata={"changes": changes},
        )
        flush_or_raise(s)
    return d


def _transition(s: Session, d: Deviation, op: str, user: User, reason: str | None = None) -> Deviation:
    allowed_from, target = DEVIATION_TRANSITIONS[op]
    if d.status not in allowed_from:
        raise InvalidState(f"Cannot {op.replace('_', ' ')} a deviation in status {d.status}.")
    before = d.status
    d.status = target
    d.updated_at = datetime.utcnow()
    d.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action=f"deviation.{op}",
        entity_type="Deviation",
        entity_id=str(d.id),
        reason=reason,
        metadata={"from": before, "to": target},
    )
    flush_or_raise(s)
    return d


def submit_deviation(s: Session, d: Deviation, user: User, reason: str | None = None) -> Deviation:
    return _transition(s, d, "submit", user, reason)


def start_review(s: Session, d: Deviation, user: User, reason: str | None = None) -> Deviation:
    return _transition(s, d, "start_review", user, reason)


def approve_deviation(s: Session, d: Deviation, user: User, reason: str | None = None) -> Deviation:
    return _transition(s, d, "approve", user, reason)


def reject_deviation(s: Session, d: Deviation, user: User, reason: str | None = None) -> Deviation:
    return _transition(s, d, "reject", user, reason)


def close_deviation(s: Session, d: Deviation, user: User, reason: str | None = None) -> Deviation:
    return _transition(s, d, "close", user, reason)


def add_review(
    s: Session,
    d: Deviation,
    user: User,
    *,
    decision: str,
    role: str | None = None,
    comments: str | None = None,
) -> DeviationReview:
    if d.status != "REVIEW":
        raise InvalidState(f"Reviews can only be added while in REVIEW (status is {d.status}).")
    decision = parse_choice(decision, "decision", REVIEW_DECISIONS)
    if not decision:
        raise ValidationError("decision is required.", details={"field": "decision"})
    r = DeviationReview(user_id=user.id, role=clean_str(role), decision=decision, comments=clean_str(comments))
    d.reviews.append(r)
    d.updated_at = datetime.utcnow()
    d.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="deviation.review",
        entity_type="Deviation",
        entity_id=str(d.id),
        metadata={"decision": decision, "role": r.role},
    )
    flush_or_raise(s)
    return r


def resolve_deviation(s: Session, d: Deviation, *, resolved_date: date | None, user: User) -> Deviation:
    """Record the resolution date; the deviation is CLOSED from any state. No-op when already CLOSED."""
    if d.status == "CLOSED":
        return d
    if resolved_date is None:
        raise ValidationError("resolved_date is required.", details={"field": "resolved_date"})
    if resolved_date < d.reported_date:
        raise ValidationError("resolved_date cannot precede reported_date.", details={"field": "resolved_date"})
    before = d.status
    d.resolved_date = resolved_date
    d.status = "CLOSED"
    d.updated_at = datetime.utcnow()
    d.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="deviation.resolve",
        entity_type="Deviation",
        entity_id=str(d.id),
        metadata={"from": before, "resolved_date": resolved_date},
    )
    flush_or_raise(s)
    return d
