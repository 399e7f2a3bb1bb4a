"""
Roles, permission flags and user administration.

A role's `permissions` is a fixed grid of resource -> action -> bool
(constants.PERMISSION_FLAGS). System roles are seeded by scripts/init_db.py
and can never be edited afterwards.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any

from flask import Blueprint, jsonify, request
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from app.etmf.audit import record_event
from app.etmf.auth import current_user
from app.etmf.constants import PERMISSION_FLAGS, ROLE_LEVELS, ROLE_STATUSES, empty_permissions
from app.etmf.db import commit_or_raise, db_session, flush_or_raise
from app.etmf.errors import Conflict, InvalidState, NotFound, ValidationError
from app.etmf.models import Role, User
from app.etmf.rbac import require_permission, role_allows
from app.etmf.utils import clean_str, iso, json_payload, parse_bool, parse_choice, parse_int, require_fields, user_to_dict

bp = Blueprint("roles", __name__)

ROLE_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{1,63}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_permissions(raw: Any, *, base: dict[str, dict[str, bool]] | None = None) -> dict[str, dict[str, bool]]:
    """Merge `raw` onto `base` (all-false by default). Unknown resources or actions are rejected."""
    out = {res: dict(flags) for res, flags in (base or empty_permissions()).items()}
    if raw in (None, {}):
        return out
    if not isinstance(raw, dict):
        raise ValidationError("permissions must be an object.", details={"field": "permissions"})
    for resource, flags in raw.items():
        if resource not in PERMISSION_FLAGS:
            raise ValidationError(f"Unknown permission resource: {resource}", details={"resource": resource})
        if not isinstance(flags, dict):
            raise ValidationError(f"permissions.{resource} must be an object.", details={"resource": resource})
        for action, value in flags.items():
            if action not in PERMISSION_FLAGS[resource]:
                raise ValidationError(
                    f"Unknown action {action!r} for {resource}.",
                    details={"resource": resource, "action": action},
                )
            out[resource][action] = parse_bool(value)
    return out


def has_permissions(role: Role, *permission_keys: str) -> bool:
    return all(role_allows(role, key) for key in permission_keys)


def get_role(s: Session, role_pk: int) -> Role:
    role = s.get(Role, role_pk)
    if not role:
        raise NotFound("Role", role_pk)
    return role


def get_user(s: Session, user_pk: int) -> User:
    user = s.get(User, user_pk)
    if not user:
        raise NotFound("User", user_pk)
    return user


def create_role(s: Session, payload: dict[str, Any], user: User | None) -> Role:
    role_key = (payload.get("role_key") or "").strip().lower()
    name = clean_str(payload.get("name"))
    if not role_key or not name:
        raise ValidationError("role_key and name are required.", details={"fields": ["role_key", "name"]})
    if not ROLE_KEY_RE.match(role_key):
        raise ValidationError("role_key must be lowercase letters, digits and underscores.", details={"field": "role_key"})
    if s.query(Role.id).filter((Role.role_key == role_key) | (Role.name == name)).first():
        raise Conflict(f"Role {role_key} / {name} already exists.")

    now = datetime.utcnow()
    role = Role(
        role_key=role_key,
        name=name,
        description=(payload.get("description") or "").strip(),
        level=parse_choice(payload.get("level"), "level", ROLE_LEVELS, default="ENTERPRISE"),
        permissions=normalize_permissions(payload.get("permissions")),
        is_system=parse_bool(payload.get("is_system")),
        status="ACTIVE",
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id if user else None,
        updated_by_user_id=user.id if user else None,
    )
    s.add(role)
    flush_or_raise(s, conflict_message="Role key or name already exists.")
    record_event(
        s,
        actor=user,
        action="role.create",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"role_key": role_key, "is_system": role.is_system},
    )
    return role


def update_role_permissions(s: Session, role: Role, payload: dict[str, Any], user: User) -> Role:
    """Edit permissions (and description). System roles always raise InvalidState."""
    if role.is_system:
        raise InvalidState(f"System role {role.role_key} cannot be modified.", details={"role_key": role.role_key})
    before = role.permissions
    role.permissions = normalize_permissions(payload.get("permissions"), base=role.permissions)
    if "description" in payload:
        role.description = (payload.get("description") or "").strip()
    role.updated_at = datetime.utcnow()
    role.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="role.update_permissions",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"before": before, "after": role.permissions},
    )
    flush_or_raise(s)
    return role


def change_role_status(s: Session, role: Role, new_status: str, user: User) -> Role:
    if role.is_system:
        raise InvalidState(f"System role {role.role_key} cannot be modified.", details={"role_key": role.role_key})
    new_status = parse_choice(new_status, "status", ROLE_STATUSES)
    if not new_status:
        raise ValidationError("status is required.", details={"field": "status"})
    if new_status == role.status:
        return role
    before = role.status
    role.status = new_status
    role.updated_at = datetime.utcnow()
    role.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="role.status_change",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"from": before, "to": new_status},
    )
    flush_or_raise(s)
    return role


def assign_role(s: Session, target: User, role: Role, actor: User | None) -> User:
    """Idempotent."""
    if role.status != "ACTIVE":
        raise InvalidState(f"Role {role.role_key} is {role.status} and cannot be assigned.")
    if role in target.roles:
        return target
    target.roles.append(role)
    record_event(
        s,
        actor=actor,
        action="role.assign",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"role_key": role.role_key},
    )
    flush_or_raise(s)
    return target


def unassign_role(s: Session, target: User, role: Role, actor: User) -> User:
    if role not in target.roles:
        return target
    target.roles.remove(role)
    record_event(
        s,
        actor=actor,
        action="role.unassign",
        entity_type="User",
        entity_id=str(target.id),
        metadata={"role_key": role.role_key},
    )
    flush_or_raise(s)
    return target


def create_user(s: Session, payload: dict[str, Any], actor: User | None) -> User:
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    if not EMAIL_RE.match(email):
        raise ValidationError("A valid email is required.", details={"field": "email"})
    if len(password) < 8:
        raise ValidationError("password must be at least 8 characters.", details={"field": "password"})
    if s.query(User.id).filter(User.email == email).first():
        raise Conflict(f"User {email} already exists.")
    u = User(
        email=email,
        user_name=clean_str(payload.get("user_name")),
        password_hash=generate_password_hash(password),
        is_active=True,
    )
    s.add(u)
    flush_or_raise(s, conflict_message=f"User {email} already exists.")
    record_event(s, actor=actor, action="user.create", entity_type="User", entity_id=str(u.id), metadata={"email": email})
    return u


def role_to_dict(role: Role) -> dict[str, Any]:
    return {
        "id": role.id,
        "role_key": role.role_key,
        "name": role.name,
        "description": role.description,
        "level": role.level,
        "permissions": role.permissions,
        "is_system": role.is_system,
        "status": role.status,
        "created_at": iso(role.created_at),
        "updated_at": iso(role.updated_at),
    }


# ---------- Roles ----------
@bp.get("/roles")
@require_permission("roles.read")
def roles_list():
    s = db_session()
    return jsonify([role_to_dict(r) for r in s.query(Role).order_by(Role.name.asc()).all()])


@bp.post("/roles")
@require_permission("roles.create")
def roles_create():
    s = db_session()
    payload = json_payload()
    # System roles only come from the seed script.
    payload.pop("is_system", None)
    role = create_role(s, payload, current_user())
    commit_or_raise(s, conflict_message="Role key or name already exists.")
    return jsonify(role_to_dict(role)), 201


@bp.get("/roles/<int:role_pk>")
@require_permission("roles.read")
def roles_get(role_pk: int):
    s = db_session()
    return jsonify(role_to_dict(get_role(s, role_pk)))


@bp.patch("/roles/<int:role_pk>/permissions")
@require_permission("roles.update")
def roles_update_permissions(role_pk: int):
    s = db_session()
    role = update_role_permissions(s, get_role(s, role_pk), json_payload(), current_user())
    commit_or_raise(s)
    return jsonify(role_to_dict(role))


@bp.post("/roles/<int:role_pk>/status")
@require_permission("roles.manage")
def roles_change_status(role_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "status")
    role = change_role_status(s, get_role(s, role_pk), payload["status"], current_user())
    commit_or_raise(s)
    return jsonify(role_to_dict(role))


# ---------- Users ----------
@bp.get("/users")
@require_permission("users.read")
def users_list():
    s = db_session()
    active = request.args.get("active")
    q = s.query(User)
    if active in ("0", "1"):
        q = q.filter(User.is_active.is_(active == "1"))
    return jsonify([user_to_dict(u) for u in q.order_by(User.email.asc()).all()])


@bp.post("/users")
@require_permission("users.create")
def users_create():
    s = db_session()
    u = create_user(s, json_payload(), current_user())
    commit_or_raise(s, conflict_message="User email already exists.")
    return jsonify(user_to_dict(u)), 201


@bp.post("/users/<int:user_pk>/roles")
@require_permission("users.manage")
def users_assign_role(user_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "role_id")
    target = assign_role(s, get_user(s, user_pk), get_role(s, parse_int(payload["role_id"], "role_id", minimum=1)), current_user())
    commit_or_raise(s)
    return jsonify(user_to_dict(target))


@bp.delete("/users/<int:user_pk>/roles/<int:role_pk>")
@require_permission("users.manage")
def users_unassign_role(user_pk: int, role_pk: int):
    s = db_session()
    target = unassign_role(s, get_user(s, user_pk), get_role(s, role_pk), current_user())
    commit_or_raise(s)
    return jsonify(user_to_dict(target))
