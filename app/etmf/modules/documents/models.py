from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base, User


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_status", "status"),
        Index("idx_documents_trial", "trial_id"),
        Index("idx_documents_classification", "zone_id", "section_id", "artifact_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    document_type: Mapped[str] = mapped_column(String(32), nullable=False, default="OTHER")
    tmf_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Classification path; each level optional and independent.
    zone_id: Mapped[int | None] = mapped_column(ForeignKey("tmf_zones.id", ondelete="RESTRICT"), nullable=True)
    section_id: Mapped[int | None] = mapped_column(ForeignKey("tmf_sections.id", ondelete="RESTRICT"), nullable=True)
    artifact_id: Mapped[int | None] = mapped_column(ForeignKey("tmf_artifacts.id", ondelete="RESTRICT"), nullable=True)
    sub_artifact_id: Mapped[int | None] = mapped_column(
        ForeignKey("tmf_sub_artifacts.id", ondelete="RESTRICT"),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    trial_id: Mapped[int | None] = mapped_column(ForeignKey("trials.id", ondelete="RESTRICT"), nullable=True)
    study: Mapped[str | None] = mapped_column(String(128), nullable=True)
    site: Mapped[str | None] = mapped_column(String(128), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)

    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    document_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    creation_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    modification_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    import_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    approval_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expiration_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    retention_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # DRAFT -> IN_REVIEW -> IN_QC -> PENDING_APPROVAL -> APPROVED -> ARCHIVED (+ REJECTED).
    # EXPIRED is never stored; see service.effective_status.
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    qc_status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="RESTRICTED")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_by: Mapped[User | None] = relationship("User", foreign_keys=[created_by_user_id], lazy="selectin")

    approvers: Mapped[list["DocumentApprover"]] = relationship(
        "DocumentApprover",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentApprover.id",
        lazy="selectin",
    )
    previous_versions: Mapped[list["DocumentVersion"]] = relationship(
        "DocumentVersion",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentVersion.version",
        lazy="selectin",
    )
    audit_trail: Mapped[list["DocumentAuditEntry"]] = relationship(
        "DocumentAuditEntry",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentAuditEntry.id",
        lazy="selectin",
    )
    comments: Mapped[list["DocumentComment"]] = relationship(
        "DocumentComment",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="DocumentComment.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": revision}


class DocumentApprover(Base):
    __tablename__ = "document_approvers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    approved_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)

    document: Mapped[Document] = relationship("Document", back_populates="approvers")
    user: Mapped[User] = relationship("User", lazy="selectin")


class DocumentVersion(Base):
    """Snapshot of the file reference a document carried before `add_version`."""

    __tablename__ = "document_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    change_summary: Mapped[str] = mapped_column(String(512), nullable=False, default="")

    document: Mapped[Document] = relationship("Document", back_populates="previous_versions")


class DocumentAuditEntry(Base):
    """Append-only; rows are never updated or removed."""

    __tablename__ = "document_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    document: Mapped[Document] = relationship("Document", back_populates="audit_trail")


class DocumentComment(Base):
    __tablename__ = "document_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="comments")
    user: Mapped[User] = relationship("User", lazy="selectin")
    replies: Mapped[list["DocumentCommentReply"]] = relationship(
        "DocumentCommentReply",
        back_populates="comment",
        cascade="all, delete-orphan",
        order_by="DocumentCommentReply.id",
        lazy="selectin",
    )


class DocumentCommentReply(Base):
    __tablename__ = "document_comment_replies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    comment_id: Mapped[int] = mapped_column(
        ForeignKey("document_comments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    comment: Mapped[DocumentComment] = relationship("DocumentComment", back_populates="replies")
    user: Mapped[User] = relationship("User", lazy="selectin")
