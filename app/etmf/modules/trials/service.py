"""
Trial and site service layer.
Handles creation, date-range validation, status transitions, study team,
countries and the trial's owned audit trail.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from app.etmf.audit import current_client_ip, record_event
from app.etmf.constants import REGULATORY_AUTHORITIES
from app.etmf.db import flush_or_raise
from app.etmf.errors import Conflict, InvalidState, NotFound, ValidationError
from app.etmf.models import User
from app.etmf.utils import clean_str, parse_choice, parse_date, parse_int

from .models import Site, Trial, TrialAuditEntry, TrialCountry, TrialTeamMember

PHASES = frozenset({"PHASE_1", "PHASE_2", "PHASE_3", "PHASE_4", "POST_MARKETING"})
REGULATORY_STATUSES = frozenset({"PENDING", "APPROVED", "REJECTED", "WITHDRAWN"})
TEAM_ROLES = frozenset({
    "STUDY_MANAGER",
    "PROJECT_MANAGER",
    "QUALITY_ASSURANCE",
    "MONITOR_CRA",
    "COUNTRY_MANAGER",
    "INVESTIGATOR",
    "STUDY_COORDINATOR",
})
COUNTRY_STATUSES = frozenset({"PLANNED", "ACTIVE", "COMPLETED", "TERMINATED"})

TRIAL_STATUSES = frozenset({"PLANNING", "ACTIVE", "ON_HOLD", "COMPLETED", "TERMINATED", "ARCHIVED"})
TRIAL_TRANSITIONS = {
    "PLANNING": {"ACTIVE", "TERMINATED", "ARCHIVED"},
    "ACTIVE": {"ON_HOLD", "COMPLETED", "TERMINATED", "ARCHIVED"},
    "ON_HOLD": {"ACTIVE", "TERMINATED", "ARCHIVED"},
    "COMPLETED": {"ARCHIVED"},
    "TERMINATED": {"ARCHIVED"},
    "ARCHIVED": set(),
}

SITE_TYPES = frozenset({"HOSPITAL", "CLINIC", "RESEARCH_CENTER", "PHYSICIAN_OFFICE", "OTHER"})
SITE_STATUSES = frozenset({"PLANNED", "ACTIVE", "COMPLETED", "SUSPENDED", "TERMINATED"})
SITE_TRANSITIONS = {
    "PLANNED": {"ACTIVE", "TERMINATED"},
    "ACTIVE": {"SUSPENDED", "COMPLETED", "TERMINATED"},
    "SUSPENDED": {"ACTIVE", "TERMINATED"},
    "COMPLETED": set(),
    "TERMINATED": set(),
}

PROTOCOL_NUMBER_RE = re.compile(r"^[A-Z0-9-]+$")
TITLE_MAX = 100

# Fields editable through update_trial (status has its own operation).
_TRIAL_TEXT_FIELDS = ("description", "therapeutic_area", "indication", "sponsor", "cro_name", "cro_contract_number")


def append_trial_audit(trial: Trial, *, action: str, user: User | None, details: dict[str, Any] | None = None) -> TrialAuditEntry:
    entry = TrialAuditEntry(
        action=action,
        actor_user_id=user.id if user else None,
        details=details,
        ip_address=current_client_ip(),
    )
    trial.audit_trail.append(entry)
    return entry


def _touch(trial: Trial, user: User) -> None:
    trial.updated_at = datetime.utcnow()
    trial.updated_by_user_id = user.id


def validate_date_range(start_date: date | None, end_date: date | None) -> None:
    if start_date is None or end_date is None:
        raise ValidationError("start_date and end_date are required.", details={"fields": ["start_date", "end_date"]})
    if start_date >= end_date:
        raise ValidationError(
            "End date must be after start date.",
            details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )


def _validate_title(title: str | None) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required.", details={"field": "title"})
    if len(title) > TITLE_MAX:
        raise ValidationError(f"title cannot be more than {TITLE_MAX} characters.", details={"field": "title"})
    return title


# --- lookups ---------------------------------------------------------------


def get_trial(s: Session, trial_id: int) -> Trial:
    t = s.get(Trial, trial_id)
    if not t:
        raise NotFound("Trial", trial_id)
    return t


def get_trial_by_study_id(s: Session, study_id: str) -> Trial:
    t = s.query(Trial).filter(Trial.study_id == (study_id or "").strip()).one_or_none()
    if not t:
        raise NotFound("Trial", study_id)
    return t


def list_trials(s: Session, *, status: str | None = None, page: int = 1, limit: int = 10) -> tuple[list[Trial], int]:
    q = s.query(Trial)
    if status:
        q = q.filter(Trial.status == status)
    total = q.count()
    items = q.order_by(Trial.created_at.desc(), Trial.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return items, total


def is_trial_running(trial: Trial, today: date | None = None) -> bool:
    today = today or date.today()
    return trial.start_date <= today <= trial.end_date


# --- trials ----------------------------------------------------------------


def create_trial(s: Session, payload: dict[str, Any], user: User) -> Trial:
    """Create a trial. Raises ValidationError / Conflict."""
    study_id = clean_str(payload.get("study_id"))
    protocol_number = clean_str(payload.get("protocol_number"))
    sponsor = clean_str(payload.get("sponsor"))
    errors = []
    if not study_id:
        errors.append("study_id")
    if not protocol_number:
        errors.append("protocol_number")
    if not sponsor:
        errors.append("sponsor")
    if errors:
        raise ValidationError(f"Required fields missing: {', '.join(errors)}", details={"missing": errors})
    if not PROTOCOL_NUMBER_RE.match(protocol_number):
        raise ValidationError(
            "protocol_number may only contain A-Z, 0-9 and '-'.",
            details={"field": "protocol_number"},
        )

    title = _validate_title(payload.get("title"))
    phase = parse_choice(payload.get("phase"), "phase", PHASES)
    if not phase:
        raise ValidationError("phase is required.", details={"field": "phase"})

    start_date = parse_date(payload.get("start_date"), "start_date")
    end_date = parse_date(payload.get("end_date"), "end_date")
    validate_date_range(start_date, end_date)

    if s.query(Trial.id).filter(Trial.study_id == study_id).first():
        raise Conflict(f"Trial with study_id {study_id} already exists.")
    if s.query(Trial.id).filter(Trial.protocol_number == protocol_number).first():
        raise Conflict(f"Trial with protocol_number {protocol_number} already exists.")

    now = datetime.utcnow()
    trial = Trial(
        study_id=study_id,
        protocol_number=protocol_number,
        title=title,
        description=(payload.get("description") or "").strip(),
        phase=phase,
        therapeutic_area=clean_str(payload.get("therapeutic_area")),
        indication=clean_str(payload.get("indication")),
        sponsor=sponsor,
        cro_name=clean_str(payload.get("cro_name")),
        cro_contract_number=clean_str(payload.get("cro_contract_number")),
        status="PLANNING",
        start_date=start_date,
        end_date=end_date,
        estimated_completion_date=parse_date(payload.get("estimated_completion_date"), "estimated_completion_date"),
        regulatory_authority=parse_choice(payload.get("regulatory_authority"), "regulatory_authority", REGULATORY_AUTHORITIES),
        regulatory_status="PENDING",
        retention_period_years=parse_int(payload.get("retention_period_years"), "retention_period_years", minimum=0),
        metadata_json=payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(trial)
    append_trial_audit(trial, action="create", user=user, details={"study_id": study_id, "protocol_number": protocol_number})
    flush_or_raise(s, conflict_message="Trial study_id or protocol_number already exists.")

    record_event(
        s,
        actor=user,
        action="trial.create",
        entity_type="Trial",
        entity_id=str(trial.id),
        metadata={"study_id": study_id, "protocol_number": protocol_number},
    )
    return trial


def update_trial(s: Session, trial: Trial, payload: dict[str, Any], user: User) -> Trial:
    """Update descriptive fields and dates; start < end is re-checked on every update."""
    if trial.status == "ARCHIVED":
        raise InvalidState("Archived trials cannot be modified.")

    changes: dict[str, dict[str, Any]] = {}

    if "title" in payload:
        new_title = _validate_title(payload.get("title"))
        if new_title != trial.title:
            changes["title"] = {"old": trial.title, "new": new_title}
            trial.title = new_title

    for field in _TRIAL_TEXT_FIELDS:
        if field not in payload:
            continue
        new_val = (payload.get(field) or "").strip() if field == "description" else clean_str(payload.get(field))
        if field == "sponsor" and not new_val:
            raise ValidationError("sponsor cannot be empty.", details={"field": "sponsor"})
        if new_val != getattr(trial, field):
            changes[field] = {"old": getattr(trial, field), "new": new_val}
            setattr(trial, field, new_val)

    new_start = parse_date(payload["start_date"], "start_date") if "start_date" in payload else trial.start_date
    new_end = parse_date(payload["end_date"], "end_date") if "end_date" in payload else trial.end_date
    validate_date_range(new_start, new_end)
    if new_start != trial.start_date:
        changes["start_date"] = {"old": str(trial.start_date), "new": str(new_start)}
        trial.start_date = new_start
    if new_end != trial.end_date:
        changes["end_date"] = {"old": str(trial.end_date), "new": str(new_end)}
        trial.end_date = new_end

    if "estimated_completion_date" in payload:
        new_ecd = parse_date(payload.get("estimated_completion_date"), "estimated_completion_date")
        if new_ecd != trial.estimated_completion_date:
            changes["estimated_completion_date"] = {"old": str(trial.estimated_completion_date), "new": str(new_ecd)}
            trial.estimated_completion_date = new_ecd

    if "regulatory_authority" in payload:
        new_ra = parse_choice(payload.get("regulatory_authority"), "regulatory_authority", REGULATORY_AUTHORITIES)
        if new_ra != trial.regulatory_authority:
            changes["regulatory_authority"] = {"old": trial.regulatory_authority, "new": new_ra}
            trial.regulatory_authority = new_ra

    if "regulatory_status" in payload:
        new_rs = parse_choice(payload.get("regulatory_status"), "regulatory_status", REGULATORY_STATUSES, default="PENDING")
        if new_rs != trial.regulatory_status:
            changes["regulatory_status"] = {"old": trial.regulatory_status, "new": new_rs}
            trial.regulatory_status = new_rs

    if "retention_period_years" in payload:
        new_rp = parse_int(payload.get("retention_period_years"), "retention_period_years", minimum=0)
        if new_rp != trial.retention_period_years:
            changes["retention_period_years"] = {"old": trial.retention_period_years, "new": new_rp}
            trial.retention_period_years = new_rp

    if changes:
        _touch(trial, user)
        append_trial_audit(trial, action="update", user=user, details={"changes": changes})
        flush_or_raise(s)
    return trial


def change_trial_status(s: Session, trial: Trial, new_status: str, user: User, reason: str | None = None) -> Trial:
    new_status = (new_status or "").strip().upper()
    if new_status not in TRIAL_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}", details={"field": "status"})
    if new_status not in TRIAL_TRANSITIONS.get(trial.status, set()):
        raise InvalidState(f"Cannot transition trial from '{trial.status}' to '{new_status}'.")

    old_status = trial.status
    trial.status = new_status
    _touch(trial, user)
    append_trial_audit(
        trial,
        action="status_change",
        user=user,
        details={"from": old_status, "to": new_status, "reason": reason},
    )
    flush_or_raise(s)
    return trial


def add_team_member(s: Session, trial: Trial, *, user_id: int, role: str, user: User) -> TrialTeamMember:
    """Idempotent per user: an existing membership is returned unchanged."""
    if trial.status == "ARCHIVED":
        raise InvalidState("Archived trials cannot be modified.")
    role = parse_choice(role, "role", TEAM_ROLES)
    if not role:
        raise ValidationError("role is required.", details={"field": "role"})
    member_user = s.get(User, user_id)
    if not member_user:
        raise NotFound("User", user_id)

    for m in trial.team:
        if m.user_id == member_user.id:
            return m

    m = TrialTeamMember(user_id=member_user.id, role=role)
    trial.team.append(m)
    _touch(trial, user)
    append_trial_audit(trial, action="team_member_add", user=user, details={"user_id": member_user.id, "role": role})
    flush_or_raise(s, conflict_message="User is already on the study team.")
    return m


def remove_team_member(s: Session, trial: Trial, *, user_id: int, user: User) -> bool:
    if trial.status == "ARCHIVED":
        raise InvalidState("Archived trials cannot be modified.")
    member = next((m for m in trial.team if m.user_id == user_id), None)
    if member is None:
        return False
    trial.team.remove(member)
    _touch(trial, user)
    append_trial_audit(trial, action="team_member_remove", user=user, details={"user_id": user_id})
    flush_or_raise(s)
    return True


def add_country(s: Session, trial: Trial, *, code: str, name: str, user: User) -> TrialCountry:
    """Idempotent per country code."""
    if trial.status == "ARCHIVED":
        raise InvalidState("Archived trials cannot be modified.")
    code = (code or "").strip().upper()
    name = (name or "").strip()
    if not code or not name:
        raise ValidationError("code and name are required.", details={"missing": [f for f, v in (("code", code), ("name", name)) if not v]})

    for c in trial.countries:
        if c.code == code:
            return c

    c = TrialCountry(code=code, name=name, status="PLANNED")
    trial.countries.append(c)
    _touch(trial, user)
    append_trial_audit(trial, action="country_add", user=user, details={"code": code, "name": name})
    flush_or_raise(s, conflict_message=f"Country {code} already on trial.")
    return c


# --- sites -----------------------------------------------------------------


def get_site(s: Session, site_pk: int) -> Site:
    site = s.get(Site, site_pk)
    if not site:
        raise NotFound("Site", site_pk)
    return site


def list_sites(s: Session, trial_id: int) -> list[Site]:
    get_trial(s, trial_id)
    return s.query(Site).filter(Site.trial_id == trial_id).order_by(Site.site_id.asc()).all()


def create_site(s: Session, trial_id: int, payload: dict[str, Any], user: User) -> Site:
    trial = get_trial(s, trial_id)
    if trial.status == "ARCHIVED":
        raise InvalidState("Cannot add sites to an archived trial.")

    site_id = clean_str(payload.get("site_id"))
    name = clean_str(payload.get("name"))
    missing = [f for f, v in (("site_id", site_id), ("name", name)) if not v]
    if missing:
        raise ValidationError(f"Required fields missing: {', '.join(missing)}", details={"missing": missing})
    site_type = parse_choice(payload.get("site_type"), "site_type", SITE_TYPES, default="OTHER")

    if s.query(Site.id).filter(Site.site_id == site_id).first():
        raise Conflict(f"Site {site_id} already exists.")

    now = datetime.utcnow()
    site = Site(
        site_id=site_id,
        trial_id=trial.id,
        name=name,
        site_type=site_type,
        status="PLANNED",
        street=clean_str(payload.get("street")),
        city=clean_str(payload.get("city")),
        state=clean_str(payload.get("state")),
        country=clean_str(payload.get("country")),
        postal_code=clean_str(payload.get("postal_code")),
        phone=clean_str(payload.get("phone")),
        email=clean_str(payload.get("email")),
        start_date=parse_date(payload.get("start_date"), "start_date"),
        estimated_end_date=parse_date(payload.get("estimated_end_date"), "estimated_end_date"),
        enrollment_target=parse_int(payload.get("enrollment_target"), "enrollment_target", minimum=0),
        actual_enrollment=parse_int(payload.get("actual_enrollment"), "actual_enrollment", minimum=0),
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(site)
    _touch(trial, user)
    append_trial_audit(trial, action="site_add", user=user, details={"site_id": site_id, "name": name})
    flush_or_raise(s, conflict_message=f"Site {site_id} already exists.")

    record_event(
        s,
        actor=user,
        action="site.create",
        entity_type="Site",
        entity_id=str(site.id),
        metadata={"site_id": site_id, "trial_id": trial.id},
    )
    return site


def update_site_enrollment(s: Session, site: Site, *, actual_enrollment: int, user: User) -> Site:
    if site.status in ("COMPLETED", "TERMINATED"):
        raise InvalidState(f"Site is {site.status}; enrollment is frozen.")
    old = site.actual_enrollment
    site.actual_enrollment = parse_int(actual_enrollment, "actual_enrollment", minimum=0)
    site.updated_at = datetime.utcnow()
    site.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="site.enrollment_update",
        entity_type="Site",
        entity_id=str(site.id),
        metadata={"from": old, "to": site.actual_enrollment},
    )
    flush_or_raise(s)
    return site


def change_site_status(s: Session, site: Site, new_status: str, user: User, reason: str | None = None) -> Site:
    new_status = (new_status or "").strip().upper()
    if new_status not in SITE_STATUSES:
        raise ValidationError(f"Invalid status: {new_status}", details={"field": "status"})
    if new_status == "COMPLETED":
        # Completion always goes through close_site so actual_end_date is recorded.
        return close_site(s, site, actual_end_date=date.today(), user=user)
    if new_status not in SITE_TRANSITIONS.get(site.status, set()):
        raise InvalidState(f"Cannot transition site from '{site.status}' to '{new_status}'.")

    old_status = site.status
    site.status = new_status
    site.updated_at = datetime.utcnow()
    site.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="site.status_change",
        entity_type="Site",
        entity_id=str(site.id),
        reason=reason,
        metadata={"site_id": site.site_id, "from": old_status, "to": new_status},
    )
    flush_or_raise(s)
    return site


def close_site(s: Session, site: Site, *, actual_end_date: date | None, user: User) -> Site:
    """Record the actual end date; the site becomes COMPLETED."""
    if actual_end_date is None:
        raise ValidationError("actual_end_date is required.", details={"field": "actual_end_date"})
    if site.status == "TERMINATED":
        raise InvalidState("Terminated sites cannot be completed.")
    if site.start_date and actual_end_date < site.start_date:
        raise ValidationError("actual_end_date cannot precede start_date.", details={"field": "actual_end_date"})

    old_status = site.status
    site.actual_end_date = actual_end_date
    site.status = "COMPLETED"
    site.updated_at = datetime.utcnow()
    site.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="site.close",
        entity_type="Site",
        entity_id=str(site.id),
        metadata={"site_id": site.site_id, "from": old_status, "actual_end_date": actual_end_date.isoformat()},
    )
    flush_or_raise(s)
    return site


def enrollment_progress(site: Site) -> float | None:
    if not site.enrollment_target or site.actual_enrollment is None:
        return None
    return round(site.actual_enrollment / site.enrollment_target * 100, 2)
