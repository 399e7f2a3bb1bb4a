from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.etmf.constants import empty_permissions


class Base(DeclarativeBase):
    pass


class UserRole(Base):
    __tablename__ = "user_roles"
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_id: Mapped[int] = mapped_column(ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    user_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    roles: Mapped[list["Role"]] = relationship(
        secondary="user_roles",
        back_populates="users",
        lazy="selectin",
    )


class Role(Base):
    """
    Named permission bundle. `permissions` maps resource -> {action: bool}
    (see constants.PERMISSION_FLAGS). System roles are immutable once created.
    """

    __tablename__ = "roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role_key: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "etmf_admin"
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)  # display name
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    level: Mapped[str] = mapped_column(String(16), nullable=False, default="ENTERPRISE")
    permissions: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=empty_permissions)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="ACTIVE")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    users: Mapped[list[User]] = relationship(secondary="user_roles", back_populates="roles", lazy="selectin")


class AuditEvent(Base):
    """
    Append-only, system-wide audit event.
    Documents and trials additionally keep their own owned audit trail.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "workflow.step.complete"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "Workflow"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.etmf.modules.tmf_reference.models import Artifact, Section, SubArtifact, Zone  # noqa: E402,F401
from app.etmf.modules.trials.models import (  # noqa: E402,F401
    Site,
    Trial,
    TrialAuditEntry,
    TrialCountry,
    TrialTeamMember,
)
from app.etmf.modules.documents.models import (  # noqa: E402,F401
    Document,
    DocumentApprover,
    DocumentAuditEntry,
    DocumentComment,
    DocumentCommentReply,
    DocumentVersion,
)
from app.etmf.modules.workflows.models import (  # noqa: E402,F401
    Workflow,
    WorkflowNotification,
    WorkflowStep,
    WorkflowStepAssignee,
    WorkflowStepComment,
)
from app.etmf.modules.milestones.models import Milestone  # noqa: E402,F401
from app.etmf.modules.deviations.models import Deviation, DeviationReview  # noqa: E402,F401
from app.etmf.modules.esignatures.models import ESignature  # noqa: E402,F401
