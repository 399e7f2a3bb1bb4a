import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.etmf.models import AuditEvent, User


def current_request_id() -> str | None:
    if not has_request_context():
        return None
    return getattr(g, "request_id", None)


def current_client_ip() -> str | None:
    if not has_request_context():
        return None
    return request.remote_addr


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper.
    """
    ev = AuditEvent(
        request_id=request_id or current_request_id(),
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=current_client_ip(),
    )
    s.add(ev)
    return ev
