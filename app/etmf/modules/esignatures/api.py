from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify, request

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.rbac import require_permission
from app.etmf.utils import iso, json_payload, parse_choice, parse_datetime, parse_int

from .models import ESignature
from .service import (
    SIGNATURE_STATUSES,
    create_esignature,
    get_esignature,
    is_valid,
    list_esignatures,
    refresh_status,
    revoke,
    set_expiry,
    sign,
)

bp = Blueprint("esignatures", __name__)


def esignature_to_dict(sig: ESignature) -> dict[str, Any]:
    return {
        "id": sig.id,
        "esignature_id": sig.esignature_id,
        "user_id": sig.user_id,
        "document_id": sig.document_id,
        "type": sig.signature_type,
        "status": sig.status,
        "is_valid": is_valid(sig),
        "signed_at": iso(sig.signed_at),
        "expires_at": iso(sig.expires_at),
        "certificate": {
            "issuer": sig.certificate_issuer,
            "serial_number": sig.certificate_serial_number,
            "valid_from": iso(sig.certificate_valid_from),
            "valid_to": iso(sig.certificate_valid_to),
        },
        "metadata": sig.metadata_json or {},
        "created_at": iso(sig.created_at),
        "updated_at": iso(sig.updated_at),
    }


@bp.get("/esignatures")
@require_permission("documents.read")
def esignatures_list():
    s = db_session()
    items = list_esignatures(
        s,
        document_id=parse_int(request.args.get("document"), "document"),
        user_id=parse_int(request.args.get("user"), "user"),
        status=parse_choice(request.args.get("status"), "status", SIGNATURE_STATUSES),
    )
    return jsonify([esignature_to_dict(sig) for sig in items])


@bp.post("/esignatures")
@require_permission("documents.sign")
def esignatures_create():
    s = db_session()
    sig = create_esignature(s, json_payload(), current_user())
    commit_or_raise(s, conflict_message="ESignature id already exists.")
    return jsonify(esignature_to_dict(sig)), 201


@bp.get("/esignatures/<int:sig_pk>")
@require_permission("documents.read")
def esignatures_get(sig_pk: int):
    s = db_session()
    sig = refresh_status(s, get_esignature(s, sig_pk))
    commit_or_raise(s)
    return jsonify(esignature_to_dict(sig))


@bp.post("/esignatures/<int:sig_pk>/sign")
@require_permission("documents.sign")
def esignatures_sign(sig_pk: int):
    s = db_session()
    sig = sign(s, get_esignature(s, sig_pk), current_user())
    commit_or_raise(s)
    return jsonify(esignature_to_dict(sig))


@bp.post("/esignatures/<int:sig_pk>/revoke")
@require_permission("documents.sign")
def esignatures_revoke(sig_pk: int):
    s = db_session()
    payload = json_payload()
    sig = revoke(s, get_esignature(s, sig_pk), current_user(), reason=payload.get("reason"))
    commit_or_raise(s)
    return jsonify(esignature_to_dict(sig))


@bp.post("/esignatures/<int:sig_pk>/expiry")
@require_permission("documents.sign")
def esignatures_set_expiry(sig_pk: int):
    s = db_session()
    payload = json_payload()
    sig = set_expiry(
        s,
        get_esignature(s, sig_pk),
        expires_at=parse_datetime(payload.get("expires_at"), "expires_at"),
        user=current_user(),
    )
    commit_or_raise(s)
    return jsonify(esignature_to_dict(sig))
