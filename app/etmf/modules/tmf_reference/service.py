"""
TMF Reference Model classification service.

Zone -> Section -> Artifact -> SubArtifact. Numbers are unique within their
parent (zones globally). Nodes are never deleted, only deactivated.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Union

from sqlalchemy.orm import Session

from app.etmf.audit import record_event
from app.etmf.db import flush_or_raise
from app.etmf.errors import Conflict, NotFound, ValidationError

from .models import Artifact, Section, SubArtifact, Zone

if TYPE_CHECKING:
    from app.etmf.models import User

ClassificationNode = Union[Zone, Section, Artifact, SubArtifact]


def _require_name(name: str | None, field: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValidationError(f"{field} is required.", details={"field": field})
    return name


def _require_number(number: str | int | None, field: str) -> str:
    num = str(number if number is not None else "").strip()
    if not num:
        raise ValidationError(f"{field} is required.", details={"field": field})
    return num


# --- lookups ---------------------------------------------------------------


def get_zone(s: Session, zone_id: int) -> Zone:
    z = s.get(Zone, zone_id)
    if not z:
        raise NotFound("Zone", zone_id)
    return z


def get_section(s: Session, section_id: int) -> Section:
    sec = s.get(Section, section_id)
    if not sec:
        raise NotFound("Section", section_id)
    return sec


def get_artifact(s: Session, artifact_id: int) -> Artifact:
    a = s.get(Artifact, artifact_id)
    if not a:
        raise NotFound("Artifact", artifact_id)
    return a


def get_sub_artifact(s: Session, sub_artifact_id: int) -> SubArtifact:
    sa = s.get(SubArtifact, sub_artifact_id)
    if not sa:
        raise NotFound("SubArtifact", sub_artifact_id)
    return sa


def list_zones(s: Session) -> list[Zone]:
    return s.query(Zone).order_by(Zone.zone_number.asc()).all()


def list_sections(s: Session, zone_id: int) -> list[Section]:
    """All sections of a zone, active or not (callers filter)."""
    get_zone(s, zone_id)
    return s.query(Section).filter(Section.zone_id == zone_id).order_by(Section.section_number.asc()).all()


def list_artifacts(s: Session, section_id: int) -> list[Artifact]:
    get_section(s, section_id)
    return s.query(Artifact).filter(Artifact.section_id == section_id).order_by(Artifact.artifact_number.asc()).all()


def list_sub_artifacts(s: Session, artifact_id: int) -> list[SubArtifact]:
    get_artifact(s, artifact_id)
    return (
        s.query(SubArtifact)
        .filter(SubArtifact.artifact_id == artifact_id)
        .order_by(SubArtifact.sub_artifact_number.asc())
        .all()
    )


# --- creation --------------------------------------------------------------


def create_zone(s: Session, *, zone_number: int, zone_name: str, user: User, is_active: bool = True) -> Zone:
    try:
        number = int(zone_number)
    except (TypeError, ValueError):
        raise ValidationError("zone_number must be an integer.", details={"field": "zone_number"})
    name = _require_name(zone_name, "zone_name")

    msg = f"Zone number {number} already exists."
    if s.query(Zone.id).filter(Zone.zone_number == number).first():
        raise Conflict(msg)

    z = Zone(zone_number=number, zone_name=name, is_active=is_active)
    s.add(z)
    flush_or_raise(s, conflict_message=msg)

    record_event(
        s,
        actor=user,
        action="tmf.zone.create",
        entity_type="Zone",
        entity_id=str(z.id),
        metadata={"zone_number": number, "zone_name": name},
    )
    return z


def create_section(
    s: Session,
    zone_id: int,
    *,
    section_number: str,
    section_name: str,
    user: User,
    is_required: bool = True,
    is_active: bool = True,
) -> Section:
    zone = get_zone(s, zone_id)
    number = _require_number(section_number, "section_number")
    name = _require_name(section_name, "section_name")

    msg = f"Section number {number} already exists in zone {zone.zone_number}."
    exists = s.query(Section.id).filter(Section.zone_id == zone.id, Section.section_number == number).first()
    if exists:
        raise Conflict(msg)

    sec = Section(
        section_number=number,
        section_name=name,
        zone_id=zone.id,
        is_required=is_required,
        is_active=is_active,
    )
    s.add(sec)
    flush_or_raise(s, conflict_message=msg)

    record_event(
        s,
        actor=user,
        action="tmf.section.create",
        entity_type="Section",
        entity_id=str(sec.id),
        metadata={"zone_id": zone.id, "section_number": number},
    )
    return sec


def create_artifact(
    s: Session,
    section_id: int,
    *,
    artifact_number: str,
    artifact_name: str,
    user: User,
    ich_code: str | None = None,
    is_required: bool = True,
    is_active: bool = True,
) -> Artifact:
    section = get_section(s, section_id)
    number = _require_number(artifact_number, "artifact_number")
    name = _require_name(artifact_name, "artifact_name")

    msg = f"Artifact number {number} already exists in section {section.section_number}."
    exists = (
        s.query(Artifact.id)
        .filter(Artifact.section_id == section.id, Artifact.artifact_number == number)
        .first()
    )
    if exists:
        raise Conflict(msg)

    a = Artifact(
        artifact_number=number,
        artifact_name=name,
        section_id=section.id,
        ich_code=(ich_code or "").strip() or None,
        is_required=is_required,
        is_active=is_active,
    )
    s.add(a)
    flush_or_raise(s, conflict_message=msg)

    record_event(
        s,
        actor=user,
        action="tmf.artifact.create",
        entity_type="Artifact",
        entity_id=str(a.id),
        metadata={"section_id": section.id, "artifact_number": number, "ich_code": a.ich_code},
    )
    return a


def create_sub_artifact(
    s: Session,
    artifact_id: int,
    *,
    sub_artifact_number: str,
    sub_artifact_name: str,
    user: User,
    is_required: bool = True,
    is_active: bool = True,
) -> SubArtifact:
    artifact = get_artifact(s, artifact_id)
    number = _require_number(sub_artifact_number, "sub_artifact_number")
    name = _require_name(sub_artifact_name, "sub_artifact_name")

    msg = f"Sub-artifact number {number} already exists in artifact {artifact.artifact_number}."
    exists = (
        s.query(SubArtifact.id)
        .filter(SubArtifact.artifact_id == artifact.id, SubArtifact.sub_artifact_number == number)
        .first()
    )
    if exists:
        raise Conflict(msg)

    sa = SubArtifact(
        sub_artifact_number=number,
        sub_artifact_name=name,
        artifact_id=artifact.id,
        is_required=is_required,
        is_active=is_active,
    )
    s.add(sa)
    flush_or_raise(s, conflict_message=msg)

    record_event(
        s,
        actor=user,
        action="tmf.sub_artifact.create",
        entity_type="SubArtifact",
        entity_id=str(sa.id),
        metadata={"artifact_id": artifact.id, "sub_artifact_number": number},
    )
    return sa


def set_node_active(s: Session, node: ClassificationNode, *, active: bool, user: User) -> ClassificationNode:
    """Soft delete / restore. Children are left untouched."""
    if node.is_active == active:
        return node
    node.is_active = active
    node.updated_at = datetime.utcnow()
    kind = type(node).__name__
    record_event(
        s,
        actor=user,
        action=f"tmf.{kind.lower()}.{'activate' if active else 'deactivate'}",
        entity_type=kind,
        entity_id=str(node.id),
    )
    return node


def resolve_classification_path(
    s: Session,
    *,
    zone_id: int | None = None,
    section_id: int | None = None,
    artifact_id: int | None = None,
    sub_artifact_id: int | None = None,
) -> None:
    """Each supplied reference must resolve; they are independent of one another."""
    if zone_id is not None:
        get_zone(s, zone_id)
    if section_id is not None:
        get_section(s, section_id)
    if artifact_id is not None:
        get_artifact(s, artifact_id)
    if sub_artifact_id is not None:
        get_sub_artifact(s, sub_artifact_id)
