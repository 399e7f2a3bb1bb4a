from __future__ import annotations

import json
from typing import Any

from flask import Blueprint, current_app, jsonify, request, send_file
from werkzeug.utils import secure_filename

from app.etmf.auth import current_user
from app.etmf.db import commit_or_raise, db_session
from app.etmf.errors import NotFound, ValidationError
from app.etmf.rbac import require_permission
from app.etmf.storage import storage_from_config
from app.etmf.utils import iso, json_payload, parse_choice, parse_int, require_fields

from .models import Document, DocumentAuditEntry, DocumentComment
from .service import (
    DOCUMENT_STATUSES,
    LIST_LIMIT_MAX,
    add_approver,
    add_comment,
    add_reply,
    add_tag,
    add_version,
    archive,
    create_document,
    effective_status,
    get_document,
    get_document_by_document_id,
    list_documents,
    list_expired_documents,
    remove_tag,
    requires_archival,
    transition,
    update_metadata,
    upload_document,
    upload_version,
)

bp = Blueprint("documents", __name__)

# Transitions reachable through POST /documents/<id>/<name>; archive also answers DELETE.
_TRANSITION_PERMISSIONS = {
    "submit_for_review": "documents.update",
    "complete_review": "documents.update",
    "pass_qc": "documents.approve",
    "fail_qc": "documents.approve",
    "approve": "documents.approve",
    "reject": "documents.approve",
    "archive": "documents.delete",
}


def comment_to_dict(c: DocumentComment) -> dict[str, Any]:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "content": c.content,
        "created_at": iso(c.created_at),
        "replies": [
            {"id": r.id, "user_id": r.user_id, "content": r.content, "created_at": iso(r.created_at)} for r in c.replies
        ],
    }


def document_audit_to_dict(e: DocumentAuditEntry) -> dict[str, Any]:
    return {
        "action": e.action,
        "timestamp": iso(e.timestamp),
        "actor_user_id": e.actor_user_id,
        "details": e.details,
        "request_id": e.request_id,
    }


def document_to_dict(d: Document, *, detail: bool = False) -> dict[str, Any]:
    out = {
        "id": d.id,
        "document_id": d.document_id,
        "title": d.title,
        "description": d.description,
        "document_type": d.document_type,
        "tmf_reference": d.tmf_reference,
        "classification": {
            "zone_id": d.zone_id,
            "section_id": d.section_id,
            "artifact_id": d.artifact_id,
            "sub_artifact_id": d.sub_artifact_id,
        },
        "version": d.version,
        "trial_id": d.trial_id,
        "study": d.study,
        "site": d.site,
        "country": d.country,
        "language": d.language,
        "file": {
            "url": d.file_url,
            "name": d.file_name,
            "size": d.file_size,
            "mime_type": d.mime_type,
            "sha256": d.sha256,
        },
        "file_size": d.file_size,
        "status": effective_status(d),
        "stored_status": d.status,
        "qc_status": d.qc_status,
        "access_level": d.access_level,
        "tags": list(d.tags or []),
        "document_date": iso(d.document_date),
        "creation_date": iso(d.creation_date),
        "modification_date": iso(d.modification_date),
        "import_date": iso(d.import_date),
        "approval_date": iso(d.approval_date),
        "expiration_date": iso(d.expiration_date),
        "retention_end_date": iso(d.retention_end_date),
        "requires_archival": requires_archival(d),
        "revision": d.revision,
    }
    if detail:
        out["approvers"] = [
            {"user_id": a.user_id, "approved_at": iso(a.approved_at), "signature": a.signature, "comments": a.comments}
            for a in d.approvers
        ]
        out["previous_versions"] = [
            {
                "version": v.version,
                "file_url": v.file_url,
                "file_name": v.file_name,
                "uploaded_at": iso(v.uploaded_at),
                "uploaded_by_user_id": v.uploaded_by_user_id,
                "change_summary": v.change_summary,
            }
            for v in d.previous_versions
        ]
        out["comments"] = [comment_to_dict(c) for c in d.comments]
        out["audit_trail"] = [document_audit_to_dict(e) for e in d.audit_trail]
    return out


def _read_upload() -> tuple[bytes, str, str | None]:
    f = request.files.get("file")
    if not f or not f.filename:
        raise ValidationError("A file is required.", details={"field": "file"})
    filename = secure_filename(f.filename) or "document.bin"
    return f.read(), filename, f.mimetype


def _form_metadata() -> dict[str, Any]:
    raw = (request.form.get("metadata") or "").strip()
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"metadata JSON is invalid: {e}", details={"field": "metadata"})
    if not isinstance(value, dict):
        raise ValidationError("metadata must be a JSON object.", details={"field": "metadata"})
    return value


# ---------- List / create ----------
@bp.get("/documents")
@require_permission("documents.read")
def documents_list():
    s = db_session()
    args = request.args
    status = parse_choice(args.get("status"), "status", DOCUMENT_STATUSES)
    docs = list_documents(
        s,
        zone_id=parse_int(args.get("zone"), "zone"),
        section_id=parse_int(args.get("section"), "section"),
        artifact_id=parse_int(args.get("artifact"), "artifact"),
        trial_id=parse_int(args.get("trial"), "trial"),
        status=status,
        tag=(args.get("tag") or "").strip() or None,
        limit=parse_int(args.get("limit"), "limit", default=LIST_LIMIT_MAX, minimum=1, maximum=LIST_LIMIT_MAX),
        skip=parse_int(args.get("skip"), "skip", default=0, minimum=0),
    )
    return jsonify([document_to_dict(d) for d in docs])


@bp.post("/documents")
@require_permission("documents.create")
def documents_create():
    s = db_session()
    payload = json_payload()
    file_ref = payload.get("file") if isinstance(payload.get("file"), dict) else None
    if file_ref is not None:
        file_ref = {
            "file_url": file_ref.get("url"),
            "file_name": file_ref.get("name"),
            "file_size": parse_int(file_ref.get("size"), "file.size", minimum=0),
            "mime_type": file_ref.get("mime_type"),
        }
    doc = create_document(s, payload, current_user(), file_ref=file_ref)
    commit_or_raise(s, conflict_message="Document id already exists.")
    return jsonify(document_to_dict(doc, detail=True)), 201


@bp.post("/documents/upload")
@require_permission("documents.create")
def documents_upload():
    s = db_session()
    data, filename, mime_type = _read_upload()
    doc = upload_document(
        s,
        storage_from_config(current_app.config),
        data=data,
        filename=filename,
        mime_type=mime_type,
        metadata=_form_metadata(),
        user=current_user(),
    )
    commit_or_raise(s, conflict_message="Document id already exists.")
    return jsonify(document_to_dict(doc, detail=True)), 201


@bp.get("/documents/expired")
@require_permission("documents.read")
def documents_expired():
    s = db_session()
    return jsonify([document_to_dict(d) for d in list_expired_documents(s)])


@bp.get("/documents/by-document-id/<document_id>")
@require_permission("documents.read")
def documents_get_by_document_id(document_id: str):
    s = db_session()
    return jsonify(document_to_dict(get_document_by_document_id(s, document_id), detail=True))


# ---------- Single document ----------
@bp.get("/documents/<int:doc_pk>")
@require_permission("documents.read")
def documents_get(doc_pk: int):
    s = db_session()
    return jsonify(document_to_dict(get_document(s, doc_pk), detail=True))


@bp.patch("/documents/<int:doc_pk>")
@require_permission("documents.update")
def documents_update(doc_pk: int):
    s = db_session()
    doc = update_metadata(s, get_document(s, doc_pk, for_update=True), json_payload(), current_user())
    commit_or_raise(s)
    return jsonify(document_to_dict(doc, detail=True))


@bp.delete("/documents/<int:doc_pk>")
@require_permission("documents.delete")
def documents_delete(doc_pk: int):
    s = db_session()
    payload = json_payload()
    doc = archive(s, get_document(s, doc_pk, for_update=True), current_user(), reason=payload.get("reason"))
    commit_or_raise(s)
    return jsonify(document_to_dict(doc))


@bp.post("/documents/<int:doc_pk>/<any(submit_for_review, complete_review, pass_qc, fail_qc, approve, reject, archive):name>")
def documents_transition(doc_pk: int, name: str):
    @require_permission(_TRANSITION_PERMISSIONS[name])
    def _run():
        s = db_session()
        payload = json_payload()
        doc = transition(s, get_document(s, doc_pk, for_update=True), name, current_user(), reason=payload.get("reason"))
        commit_or_raise(s)
        return jsonify(document_to_dict(doc))

    return _run()


@bp.get("/documents/<int:doc_pk>/file")
@require_permission("documents.read")
def documents_download(doc_pk: int):
    s = db_session()
    doc = get_document(s, doc_pk)
    if not doc.storage_key:
        raise NotFound("File for document", doc.document_id)
    fobj = storage_from_config(current_app.config).open(doc.storage_key)
    return send_file(
        fobj,
        mimetype=doc.mime_type or "application/octet-stream",
        as_attachment=True,
        download_name=doc.file_name or "document.bin",
        max_age=0,
    )


# ---------- Versions ----------
@bp.post("/documents/<int:doc_pk>/versions")
@require_permission("documents.update")
def documents_add_version(doc_pk: int):
    s = db_session()
    doc = get_document(s, doc_pk, for_update=True)
    if request.files:
        data, filename, mime_type = _read_upload()
        upload_version(
            s,
            storage_from_config(current_app.config),
            doc,
            data=data,
            filename=filename,
            mime_type=mime_type,
            user=current_user(),
            change_summary=request.form.get("change_summary"),
        )
    else:
        payload = json_payload()
        require_fields(payload, "file_url")
        add_version(
            s,
            doc,
            file_ref={
                "file_url": payload["file_url"],
                "file_name": payload.get("file_name"),
                "file_size": parse_int(payload.get("file_size"), "file_size", minimum=0),
                "mime_type": payload.get("mime_type"),
            },
            user=current_user(),
            change_summary=payload.get("change_summary"),
        )
    commit_or_raise(s)
    return jsonify(document_to_dict(doc, detail=True))


# ---------- Approvers ----------
@bp.post("/documents/<int:doc_pk>/approvers")
@require_permission("documents.sign")
def documents_add_approver(doc_pk: int):
    s = db_session()
    payload = json_payload()
    doc = get_document(s, doc_pk, for_update=True)
    add_approver(s, doc, current_user(), signature=payload.get("signature"), comments=payload.get("comments"))
    commit_or_raise(s)
    return jsonify(document_to_dict(doc, detail=True)), 201


# ---------- Comments ----------
@bp.post("/documents/<int:doc_pk>/comments")
@require_permission("documents.read")
def documents_add_comment(doc_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "content")
    c = add_comment(s, get_document(s, doc_pk, for_update=True), current_user(), payload["content"])
    commit_or_raise(s)
    return jsonify(comment_to_dict(c)), 201


@bp.post("/documents/<int:doc_pk>/comments/<int:comment_id>/replies")
@require_permission("documents.read")
def documents_add_reply(doc_pk: int, comment_id: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "content")
    doc = get_document(s, doc_pk, for_update=True)
    add_reply(s, doc, comment_id, current_user(), payload["content"])
    commit_or_raise(s)
    comment = next(c for c in doc.comments if c.id == comment_id)
    return jsonify(comment_to_dict(comment)), 201


# ---------- Tags ----------
@bp.post("/documents/<int:doc_pk>/tags")
@require_permission("documents.update")
def documents_add_tag(doc_pk: int):
    s = db_session()
    payload = json_payload()
    require_fields(payload, "tag")
    doc = add_tag(s, get_document(s, doc_pk, for_update=True), payload["tag"], current_user())
    commit_or_raise(s)
    return jsonify({"tags": list(doc.tags or [])})


@bp.delete("/documents/<int:doc_pk>/tags/<tag>")
@require_permission("documents.update")
def documents_remove_tag(doc_pk: int, tag: str):
    s = db_session()
    doc = remove_tag(s, get_document(s, doc_pk, for_update=True), tag, current_user())
    commit_or_raise(s)
    return jsonify({"tags": list(doc.tags or [])})
