"""
Document lifecycle service.

Status only moves through the named transitions below; each one validates
the effective status (EXPIRED is derived from `expiration_date`) and appends
a row to the document's own audit trail. Every mutation bumps
`modification_date`, which also advances the optimistic `revision`.
"""
from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import date, datetime
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.etmf.audit import current_request_id
from app.etmf.config import MAX_DOCUMENT_BYTES
from app.etmf.constants import ACCESS_LEVELS
from app.etmf.db import flush_or_raise
from app.etmf.errors import Conflict, InvalidState, NotFound, ValidationError
from app.etmf.models import User
from app.etmf.modules.tmf_reference.service import resolve_classification_path
from app.etmf.modules.trials.service import get_trial
from app.etmf.storage import Storage
from app.etmf.utils import clean_str, iso, parse_choice, parse_date, parse_datetime, parse_int

from .models import Document, DocumentApprover, DocumentAuditEntry, DocumentComment, DocumentCommentReply, DocumentVersion

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = frozenset({
    "PROTOCOL",
    "INVESTIGATOR_BROCHURE",
    "INFORMED_CONSENT",
    "REGULATORY_DOCUMENT",
    "CLINICAL_REPORT",
    "SAFETY_REPORT",
    "QUALITY_DOCUMENT",
    "TRAINING_DOCUMENT",
    "OTHER",
})
DOCUMENT_STATUSES = frozenset({
    "DRAFT",
    "IN_REVIEW",
    "IN_QC",
    "PENDING_APPROVAL",
    "APPROVED",
    "REJECTED",
    "EXPIRED",
    "ARCHIVED",
})
QC_STATUSES = frozenset({"PENDING", "PASSED", "FAILED", "NOT_REQUIRED"})

# transition name -> (allowed effective statuses, target status)
TRANSITIONS: dict[str, tuple[frozenset[str], str]] = {
    "submit_for_review": (frozenset({"DRAFT"}), "IN_REVIEW"),
    "complete_review": (frozenset({"IN_REVIEW"}), "IN_QC"),
    "pass_qc": (frozenset({"IN_QC"}), "PENDING_APPROVAL"),
    "fail_qc": (frozenset({"IN_QC"}), "REJECTED"),
    "approve": (frozenset({"PENDING_APPROVAL"}), "APPROVED"),
    "reject": (frozenset({"DRAFT", "IN_REVIEW", "IN_QC", "PENDING_APPROVAL"}), "REJECTED"),
    "archive": (DOCUMENT_STATUSES - {"ARCHIVED"}, "ARCHIVED"),
}

LIST_LIMIT_MAX = 100

_CLASSIFICATION_FIELDS = ("zone_id", "section_id", "artifact_id", "sub_artifact_id")


def new_document_id() -> str:
    return f"DOC-{uuid.uuid4().hex[:12].upper()}"


def effective_status(doc: Document, now: datetime | None = None) -> str:
    now = now or datetime.utcnow()
    if doc.status != "ARCHIVED" and doc.expiration_date is not None and doc.expiration_date <= now:
        return "EXPIRED"
    return doc.status


def is_expired(doc: Document, now: datetime | None = None) -> bool:
    return effective_status(doc, now) == "EXPIRED"


def requires_archival(doc: Document, today: date | None = None) -> bool:
    today = today or date.today()
    return doc.retention_end_date is not None and doc.retention_end_date <= today


def append_document_audit(
    doc: Document,
    *,
    action: str,
    user: User | None,
    details: dict[str, Any] | None = None,
) -> DocumentAuditEntry:
    entry = DocumentAuditEntry(
        action=action,
        actor_user_id=user.id if user else None,
        details=details,
        request_id=current_request_id(),
    )
    doc.audit_trail.append(entry)
    return entry


def _touch(doc: Document, user: User | None) -> None:
    doc.modification_date = datetime.utcnow()
    if user is not None:
        doc.updated_by_user_id = user.id


def _require_mutable(doc: Document) -> None:
    if doc.status == "ARCHIVED":
        raise InvalidState(f"Document {doc.document_id} is archived.")


def _validate_title(title: Any) -> str:
    title = str(title or "").strip()
    if not title:
        raise ValidationError("title is required.", details={"field": "title"})
    if len(title) > 100:
        raise ValidationError("title cannot be more than 100 characters.", details={"field": "title"})
    return title


def validate_file_size(size: int | None) -> None:
    if size is not None and size > MAX_DOCUMENT_BYTES:
        raise ValidationError(
            "File size exceeds maximum limit of 50MB.",
            details={"file_size": size, "max_bytes": MAX_DOCUMENT_BYTES},
        )


def build_file_ref(data: bytes, *, url: str, storage_key: str, filename: str, mime_type: str | None) -> dict[str, Any]:
    return {
        "file_url": url,
        "file_name": filename,
        "file_size": len(data),
        "mime_type": mime_type or "application/octet-stream",
        "storage_key": storage_key,
        "sha256": hashlib.sha256(data).hexdigest(),
    }


def _classification_ids(payload: dict[str, Any]) -> dict[str, int | None]:
    return {f: parse_int(payload.get(f), f, minimum=1) for f in _CLASSIFICATION_FIELDS}


# --- lookups ---------------------------------------------------------------


def get_document(s: Session, doc_pk: int, *, for_update: bool = False) -> Document:
    doc = s.get(Document, doc_pk, with_for_update=True if for_update else None)
    if not doc:
        raise NotFound("Document", doc_pk)
    return doc


def get_document_by_document_id(s: Session, document_id: str) -> Document:
    doc = s.query(Document).filter(Document.document_id == (document_id or "").strip()).one_or_none()
    if not doc:
        raise NotFound("Document", document_id)
    return doc


def list_documents(
    s: Session,
    *,
    zone_id: int | None = None,
    section_id: int | None = None,
    artifact_id: int | None = None,
    trial_id: int | None = None,
    status: str | None = None,
    tag: str | None = None,
    limit: int = LIST_LIMIT_MAX,
    skip: int = 0,
    now: datetime | None = None,
) -> list[Document]:
    limit = max(1, min(limit, LIST_LIMIT_MAX))
    skip = max(0, skip)
    now = now or datetime.utcnow()

    q = s.query(Document)
    if zone_id is not None:
        q = q.filter(Document.zone_id == zone_id)
    if section_id is not None:
        q = q.filter(Document.section_id == section_id)
    if artifact_id is not None:
        q = q.filter(Document.artifact_id == artifact_id)
    if trial_id is not None:
        q = q.filter(Document.trial_id == trial_id)
    if status == "EXPIRED":
        q = q.filter(Document.expiration_date.isnot(None), Document.expiration_date <= now, Document.status != "ARCHIVED")
    elif status:
        q = q.filter(Document.status == status)
        if status != "ARCHIVED":
            # Expired rows report EXPIRED, not their stored status.
            q = q.filter(or_(Document.expiration_date.is_(None), Document.expiration_date > now))
    q = q.order_by(Document.creation_date.desc(), Document.id.desc())

    if not tag:
        return q.offset(skip).limit(limit).all()
    # Tags are a JSON array; membership is checked here to stay dialect-neutral.
    tagged = [d for d in q.all() if tag in (d.tags or [])]
    return tagged[skip : skip + limit]


def list_expired_documents(s: Session, now: datetime | None = None) -> list[Document]:
    now = now or datetime.utcnow()
    return (
        s.query(Document)
        .filter(
            Document.expiration_date.isnot(None),
            Document.expiration_date <= now,
            Document.status != "ARCHIVED",
        )
        .order_by(Document.expiration_date.asc(), Document.id.asc())
        .all()
    )


# --- creation --------------------------------------------------------------


def _normalize_create_payload(s: Session, payload: dict[str, Any]) -> dict[str, Any]:
    """Validate everything that can fail before any blob is written."""
    title = _validate_title(payload.get("title"))
    document_id = clean_str(payload.get("document_id"))
    if document_id and s.query(Document.id).filter(Document.document_id == document_id).first():
        raise Conflict(f"Document {document_id} already exists.")

    classification = _classification_ids(payload)
    resolve_classification_path(s, **classification)

    trial_id = parse_int(payload.get("trial_id"), "trial_id", minimum=1)
    if trial_id is not None:
        get_trial(s, trial_id)

    document_date = parse_date(payload.get("document_date"), "document_date")
    expiration_date = parse_datetime(payload.get("expiration_date"), "expiration_date")
    retention_end_date = parse_date(payload.get("retention_end_date"), "retention_end_date")

    tags = payload.get("tags") or []
    if not isinstance(tags, list):
        raise ValidationError("tags must be a list of strings.", details={"field": "tags"})
    clean_tags: list[str] = []
    for t in tags:
        t = clean_str(t)
        if t and t not in clean_tags:
            clean_tags.append(t)

    return {
        "document_id": document_id or new_document_id(),
        "title": title,
        "description": (payload.get("description") or "").strip(),
        "document_type": parse_choice(payload.get("document_type"), "document_type", DOCUMENT_TYPES, default="OTHER"),
        "tmf_reference": clean_str(payload.get("tmf_reference")),
        **classification,
        "trial_id": trial_id,
        "study": clean_str(payload.get("study")),
        "site": clean_str(payload.get("site")),
        "country": clean_str(payload.get("country")),
        "language": clean_str(payload.get("language")),
        "document_date": document_date,
        "expiration_date": expiration_date,
        "retention_end_date": retention_end_date,
        "access_level": parse_choice(payload.get("access_level"), "access_level", ACCESS_LEVELS, default="RESTRICTED"),
        "qc_status": parse_choice(payload.get("qc_status"), "qc_status", QC_STATUSES, default="PENDING"),
        "tags": clean_tags,
    }


def create_document(
    s: Session,
    payload: dict[str, Any],
    user: User,
    *,
    file_ref: dict[str, Any] | None = None,
    prevalidated: dict[str, Any] | None = None,
) -> Document:
    """
    Create a DRAFT document. `file_ref` is the stored-blob reference
    (see `build_file_ref`); its size is capped at 50 MB.
    Raises ValidationError / NotFound / Conflict.
    """
    file_ref = file_ref or {}
    validate_file_size(file_ref.get("file_size"))
    fields = prevalidated if prevalidated is not None else _normalize_create_payload(s, payload)

    now = datetime.utcnow()
    doc = Document(
        **fields,
        file_url=file_ref.get("file_url"),
        file_name=file_ref.get("file_name"),
        file_size=file_ref.get("file_size"),
        mime_type=file_ref.get("mime_type"),
        storage_key=file_ref.get("storage_key"),
        sha256=file_ref.get("sha256"),
        uploaded_by_user_id=user.id if file_ref else None,
        version=1,
        status="DRAFT",
        creation_date=now,
        modification_date=now,
        import_date=now if file_ref else None,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    s.add(doc)
    append_document_audit(
        doc,
        action="create",
        user=user,
        details={"document_id": doc.document_id, "status": "DRAFT", "file_name": doc.file_name},
    )
    flush_or_raise(s, conflict_message=f"Document {doc.document_id} already exists.")
    return doc


def upload_document(
    s: Session,
    storage: Storage,
    *,
    data: bytes,
    filename: str,
    mime_type: str | None,
    metadata: dict[str, Any],
    user: User,
) -> Document:
    """
    Size and metadata are validated first, then the blob is stored, then the
    record is persisted. A storage failure leaves no record behind.
    """
    validate_file_size(len(data))
    if not data:
        raise ValidationError("Uploaded file is empty.", details={"field": "file"})
    fields = _normalize_create_payload(s, metadata)

    url, key = storage.store(data, filename, mime_type)
    file_ref = build_file_ref(data, url=url, storage_key=key, filename=filename, mime_type=mime_type)
    logger.info("Uploaded document blob document_id=%s key=%s size=%s", fields["document_id"], key, len(data))
    return create_document(s, metadata, user, file_ref=file_ref, prevalidated=fields)


# --- lifecycle -------------------------------------------------------------


def transition(s: Session, doc: Document, name: str, user: User, *, reason: str | None = None) -> Document:
    if name not in TRANSITIONS:
        raise ValidationError(f"Unknown transition: {name}", details={"transition": name})
    allowed_from, target = TRANSITIONS[name]
    current = effective_status(doc)
    if current not in allowed_from:
        raise InvalidState(
            f"Cannot {name.replace('_', ' ')} a document in status {current}.",
            details={"status": current, "transition": name},
        )

    before = doc.status
    doc.status = target
    if name == "pass_qc":
        doc.qc_status = "PASSED"
    elif name == "fail_qc":
        doc.qc_status = "FAILED"
    elif name == "approve":
        doc.approval_date = datetime.utcnow()
    _touch(doc, user)
    append_document_audit(
        doc,
        action=name,
        user=user,
        details={"from": before, "effective_from": current, "to": target, "reason": reason},
    )
    flush_or_raise(s)
    return doc


def submit_for_review(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "submit_for_review", user, reason=reason)


def complete_review(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "complete_review", user, reason=reason)


def pass_qc(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "pass_qc", user, reason=reason)


def fail_qc(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "fail_qc", user, reason=reason)


def approve(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "approve", user, reason=reason)


def reject(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "reject", user, reason=reason)


def archive(s: Session, doc: Document, user: User, reason: str | None = None) -> Document:
    return transition(s, doc, "archive", user, reason=reason)


# --- versions, approvers, metadata -----------------------------------------


def add_version(
    s: Session,
    doc: Document,
    *,
    file_ref: dict[str, Any],
    user: User,
    change_summary: str | None = None,
) -> Document:
    """Snapshot the current file into previous_versions, then bump `version`."""
    _require_mutable(doc)
    if not file_ref.get("file_url"):
        raise ValidationError("file_url is required.", details={"field": "file_url"})
    validate_file_size(file_ref.get("file_size"))

    old_version = doc.version
    doc.previous_versions.append(
        DocumentVersion(
            version=old_version,
            file_url=doc.file_url,
            file_name=doc.file_name,
            file_size=doc.file_size,
            storage_key=doc.storage_key,
            sha256=doc.sha256,
            uploaded_at=doc.modification_date,
            uploaded_by_user_id=doc.uploaded_by_user_id,
            change_summary=(change_summary or "").strip(),
        )
    )
    doc.file_url = file_ref["file_url"]
    doc.file_name = file_ref.get("file_name") or doc.file_name
    doc.file_size = file_ref.get("file_size")
    doc.mime_type = file_ref.get("mime_type") or doc.mime_type
    doc.storage_key = file_ref.get("storage_key")
    doc.sha256 = file_ref.get("sha256")
    doc.uploaded_by_user_id = user.id
    doc.version = old_version + 1
    _touch(doc, user)
    append_document_audit(
        doc,
        action="add_version",
        user=user,
        details={"from_version": old_version, "to_version": doc.version, "change_summary": change_summary},
    )
    flush_or_raise(s)
    return doc


def upload_version(
    s: Session,
    storage: Storage,
    doc: Document,
    *,
    data: bytes,
    filename: str,
    mime_type: str | None,
    user: User,
    change_summary: str | None = None,
) -> Document:
    _require_mutable(doc)
    validate_file_size(len(data))
    if not data:
        raise ValidationError("Uploaded file is empty.", details={"field": "file"})
    url, key = storage.store(data, filename, mime_type)
    file_ref = build_file_ref(data, url=url, storage_key=key, filename=filename, mime_type=mime_type)
    return add_version(s, doc, file_ref=file_ref, user=user, change_summary=change_summary)


def add_approver(
    s: Session,
    doc: Document,
    user: User,
    *,
    signature: str | None = None,
    comments: str | None = None,
) -> DocumentApprover:
    """Record an approval signature. Status is left untouched."""
    approver = DocumentApprover(user_id=user.id, signature=signature, comments=comments)
    doc.approvers.append(approver)
    _touch(doc, user)
    append_document_audit(doc, action="add_approver", user=user, details={"user_id": user.id})
    flush_or_raise(s)
    return approver


def update_metadata(s: Session, doc: Document, payload: dict[str, Any], user: User) -> Document:
    _require_mutable(doc)
    changes: dict[str, dict[str, Any]] = {}

    def _set(field: str, value: Any) -> None:
        old = getattr(doc, field)
        if old != value:
            # Audit details are stored as JSON.
            changes[field] = {
                "old": iso(old) if isinstance(old, date) else old,
                "new": iso(value) if isinstance(value, date) else value,
            }
            setattr(doc, field, value)

    if "title" in payload:
        _set("title", _validate_title(payload.get("title")))
    if "description" in payload:
        _set("description", (payload.get("description") or "").strip())
    if "document_type" in payload:
        _set("document_type", parse_choice(payload.get("document_type"), "document_type", DOCUMENT_TYPES, default="OTHER"))
    if "tmf_reference" in payload:
        _set("tmf_reference", clean_str(payload.get("tmf_reference")))

    supplied = {f: payload.get(f) for f in _CLASSIFICATION_FIELDS if f in payload}
    if supplied:
        ids = {f: parse_int(v, f, minimum=1) for f, v in supplied.items()}
        resolve_classification_path(s, **ids)
        for f, v in ids.items():
            _set(f, v)

    if "trial_id" in payload:
        trial_id = parse_int(payload.get("trial_id"), "trial_id", minimum=1)
        if trial_id is not None:
            get_trial(s, trial_id)
        _set("trial_id", trial_id)

    for field in ("study", "site", "country", "language"):
        if field in payload:
            _set(field, clean_str(payload.get(field)))
    if "document_date" in payload:
        _set("document_date", parse_date(payload.get("document_date"), "document_date"))
    if "expiration_date" in payload:
        _set("expiration_date", parse_datetime(payload.get("expiration_date"), "expiration_date"))
    if "retention_end_date" in payload:
        _set("retention_end_date", parse_date(payload.get("retention_end_date"), "retention_end_date"))
    if "access_level" in payload:
        _set("access_level", parse_choice(payload.get("access_level"), "access_level", ACCESS_LEVELS, default="RESTRICTED"))

    if changes:
        _touch(doc, user)
        append_document_audit(doc, action="update_metadata", user=user, details={"changes": changes})
        flush_or_raise(s)
    return doc


# --- comments and tags -----------------------------------------------------


def add_comment(s: Session, doc: Document, user: User, content: str) -> DocumentComment:
    content = (content or "").strip()
    if not content:
        raise ValidationError("content is required.", details={"field": "content"})
    c = DocumentComment(user_id=user.id, content=content)
    doc.comments.append(c)
    _touch(doc, user)
    flush_or_raise(s)
    append_document_audit(doc, action="add_comment", user=user, details={"comment_id": c.id})
    flush_or_raise(s)
    return c


def add_reply(s: Session, doc: Document, comment_id: int, user: User, content: str) -> DocumentCommentReply:
    comment = next((c for c in doc.comments if c.id == comment_id), None)
    if comment is None:
        raise NotFound("Comment", comment_id)
    content = (content or "").strip()
    if not content:
        raise ValidationError("content is required.", details={"field": "content"})
    r = DocumentCommentReply(user_id=user.id, content=content)
    comment.replies.append(r)
    _touch(doc, user)
    append_document_audit(doc, action="add_reply", user=user, details={"comment_id": comment_id})
    flush_or_raise(s)
    return r


def add_tag(s: Session, doc: Document, tag: str, user: User) -> Document:
    tag = clean_str(tag)
    if not tag:
        raise ValidationError("tag is required.", details={"field": "tag"})
    if tag in (doc.tags or []):
        return doc
    # Reassign so the JSON column is flagged dirty.
    doc.tags = [*(doc.tags or []), tag]
    _touch(doc, user)
    append_document_audit(doc, action="add_tag", user=user, details={"tag": tag})
    flush_or_raise(s)
    return doc


def remove_tag(s: Session, doc: Document, tag: str, user: User) -> Document:
    tag = clean_str(tag)
    if not tag or tag not in (doc.tags or []):
        return doc
    doc.tags = [t for t in doc.tags if t != tag]
    _touch(doc, user)
    append_document_audit(doc, action="remove_tag", user=user, details={"tag": tag})
    flush_or_raise(s)
    return doc
