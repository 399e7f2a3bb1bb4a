from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.etmf.audit import record_event
from app.etmf.db import flush_or_raise
from app.etmf.errors import Conflict, InvalidState, NotFound, ValidationError
from app.etmf.models import User
from app.etmf.modules.documents.service import get_document
from app.etmf.utils import clean_str, parse_choice, parse_datetime, parse_int

from .models import ESignature

SIGNATURE_TYPES = frozenset({"ELECTRONIC", "DIGITAL", "WET"})
SIGNATURE_STATUSES = frozenset({"PENDING", "SIGNED", "EXPIRED", "REVOKED"})


def evaluate_status(sig: ESignature, now: datetime | None = None) -> str:
    """Move PENDING/SIGNED to EXPIRED once `expires_at` has passed. Returns the resulting status."""
    now = now or datetime.utcnow()
    if sig.status in ("PENDING", "SIGNED") and sig.expires_at is not None and sig.expires_at < now:
        sig.status = "EXPIRED"
        sig.updated_at = now
    return sig.status


def is_valid(sig: ESignature, now: datetime | None = None) -> bool:
    now = now or datetime.utcnow()
    if sig.status != "SIGNED":
        return False
    return sig.expires_at is None or sig.expires_at >= now


def get_esignature(s: Session, sig_pk: int) -> ESignature:
    sig = s.get(ESignature, sig_pk)
    if not sig:
        raise NotFound("ESignature", sig_pk)
    return sig


def list_esignatures(
    s: Session,
    *,
    document_id: int | None = None,
    user_id: int | None = None,
    status: str | None = None,
) -> list[ESignature]:
    q = s.query(ESignature)
    if document_id is not None:
        q = q.filter(ESignature.document_id == document_id)
    if user_id is not None:
        q = q.filter(ESignature.user_id == user_id)
    if status:
        q = q.filter(ESignature.status == status)
    return q.order_by(ESignature.created_at.desc(), ESignature.id.desc()).all()


def create_esignature(s: Session, payload: dict[str, Any], user: User) -> ESignature:
    document_pk = parse_int(payload.get("document_id"), "document_id", minimum=1)
    if document_pk is None:
        raise ValidationError("document_id is required.", details={"field": "document_id"})
    document = get_document(s, document_pk)

    signer_id = parse_int(payload.get("user_id"), "user_id", minimum=1) or user.id
    if not s.get(User, signer_id):
        raise NotFound("User", signer_id)

    signature_type = parse_choice(payload.get("type"), "type", SIGNATURE_TYPES)
    if not signature_type:
        raise ValidationError("type is required.", details={"field": "type"})
    signature_data = (payload.get("signature_data") or "").strip()
    if not signature_data:
        raise ValidationError("signature_data is required.", details={"field": "signature_data"})

    esignature_id = clean_str(payload.get("esignature_id")) or f"ESIG-{uuid.uuid4().hex[:12].upper()}"
    if s.query(ESignature.id).filter(ESignature.esignature_id == esignature_id).first():
        raise Conflict(f"ESignature {esignature_id} already exists.")

    cert = payload.get("certificate") if isinstance(payload.get("certificate"), dict) else {}
    now = datetime.utcnow()
    sig = ESignature(
        esignature_id=esignature_id,
        user_id=signer_id,
        document_id=document.id,
        signature_type=signature_type,
        status="PENDING",
        expires_at=parse_datetime(payload.get("expires_at"), "expires_at"),
        signature_data=signature_data,
        certificate_issuer=clean_str(cert.get("issuer")),
        certificate_serial_number=clean_str(cert.get("serial_number")),
        certificate_valid_from=parse_datetime(cert.get("valid_from"), "certificate.valid_from"),
        certificate_valid_to=parse_datetime(cert.get("valid_to"), "certificate.valid_to"),
        metadata_json=payload.get("metadata") if isinstance(payload.get("metadata"), dict) else None,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    evaluate_status(sig, now)
    s.add(sig)
    flush_or_raise(s, conflict_message=f"ESignature {esignature_id} already exists.")
    record_event(
        s,
        actor=user,
        action="esignature.create",
        entity_type="ESignature",
        entity_id=str(sig.id),
        metadata={"esignature_id": esignature_id, "document_id": document.document_id, "signer_id": signer_id},
    )
    return sig


def sign(s: Session, sig: ESignature, user: User, now: datetime | None = None) -> ESignature:
    now = now or datetime.utcnow()
    if user.id != sig.user_id:
        raise InvalidState("Only the designated signer can sign.", details={"signer_id": sig.user_id})
    if sig.expires_at is not None and sig.expires_at < now:
        raise InvalidState("Signature request has expired.", details={"expires_at": sig.expires_at.isoformat()})
    if sig.status != "PENDING":
        raise InvalidState(f"Cannot sign a signature in status {sig.status}.")
    sig.status = "SIGNED"
    sig.signed_at = now
    sig.updated_at = now
    sig.updated_by_user_id = user.id
    record_event(s, actor=user, action="esignature.sign", entity_type="ESignature", entity_id=str(sig.id))
    flush_or_raise(s)
    return sig


def revoke(s: Session, sig: ESignature, user: User, reason: str | None = None) -> ESignature:
    if sig.status not in ("PENDING", "SIGNED"):
        raise InvalidState(f"Cannot revoke a signature in status {sig.status}.")
    before = sig.status
    sig.status = "REVOKED"
    sig.updated_at = datetime.utcnow()
    sig.updated_by_user_id = user.id
    record_event(
        s,
        actor=user,
        action="esignature.revoke",
        entity_type="ESignature",
        entity_id=str(sig.id),
        reason=reason,
        metadata={"from": before},
    )
    flush_or_raise(s)
    return sig


def set_expiry(s: Session, sig: ESignature, *, expires_at: datetime | None, user: User) -> ESignature:
    if sig.status in ("REVOKED", "EXPIRED"):
        raise InvalidState(f"Cannot change expiry of a signature in status {sig.status}.")
    sig.expires_at = expires_at
    sig.updated_at = datetime.utcnow()
    sig.updated_by_user_id = user.id
    evaluate_status(sig)
    record_event(
        s,
        actor=user,
        action="esignature.set_expiry",
        entity_type="ESignature",
        entity_id=str(sig.id),
        metadata={"expires_at": expires_at, "status": sig.status},
    )
    flush_or_raise(s)
    return sig


def refresh_status(s: Session, sig: ESignature, now: datetime | None = None) -> ESignature:
    """Persist an expiry transition discovered on read."""
    before = sig.status
    if evaluate_status(sig, now) != before:
        record_event(
            s,
            actor=None,
            action="esignature.expire",
            entity_type="ESignature",
            entity_id=str(sig.id),
            metadata={"from": before},
        )
        flush_or_raise(s)
    return sig
