from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base, User
from app.etmf.modules.documents.models import Document


class Workflow(Base):
    __tablename__ = "workflows"
    __table_args__ = (
        Index("idx_workflows_document", "document_id"),
        Index("idx_workflows_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workflow_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    workflow_type: Mapped[str] = mapped_column(String(32), nullable=False)  # DOCUMENT_REVIEW, ...

    # Stored lifecycle only (DRAFT, ACTIVE, ARCHIVED, DEPRECATED); progress status is derived from steps.
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    document: Mapped[Document] = relationship("Document", lazy="selectin")
    steps: Mapped[list["WorkflowStep"]] = relationship(
        "WorkflowStep",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowStep.order_index",
        lazy="selectin",
    )
    notifications: Mapped[list["WorkflowNotification"]] = relationship(
        "WorkflowNotification",
        back_populates="workflow",
        cascade="all, delete-orphan",
        order_by="WorkflowNotification.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": revision}


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"
    __table_args__ = (
        UniqueConstraint("workflow_id", "order_index", name="uq_workflow_step_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workflow_id: Mapped[int] = mapped_column(ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    step_type: Mapped[str] = mapped_column(String(16), nullable=False)  # REVIEW, APPROVE, SIGN, NOTIFY

    # PENDING -> IN_PROGRESS -> COMPLETED | REJECTED | SKIPPED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    workflow: Mapped[Workflow] = relationship("Workflow", back_populates="steps")
    assignees: Mapped[list["WorkflowStepAssignee"]] = relationship(
        "WorkflowStepAssignee",
        back_populates="step",
        cascade="all, delete-orphan",
        order_by="WorkflowStepAssignee.id",
        lazy="selectin",
    )
    comments: Mapped[list["WorkflowStepComment"]] = relationship(
        "WorkflowStepComment",
        back_populates="step",
        cascade="all, delete-orphan",
        order_by="WorkflowStepComment.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": revision}

    @property
    def assignee_ids(self) -> list[int]:
        return [a.user_id for a in self.assignees]


class WorkflowStepAssignee(Base):
    __tablename__ = "workflow_step_assignees"
    __table_args__ = (
        UniqueConstraint("step_id", "user_id", name="uq_workflow_step_assignee"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    step_id: Mapped[int] = mapped_column(ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    step: Mapped[WorkflowStep] = relationship("WorkflowStep", back_populates="assignees")
    user: Mapped[User] = relationship("User", lazy="selectin")


class WorkflowStepComment(Base):
    __tablename__ = "workflow_step_comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    step_id: Mapped[int] = mapped_column(ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    step: Mapped[WorkflowStep] = relationship("WorkflowStep", back_populates="comments")


class WorkflowNotification(Base):
    """Stored configuration only; nothing dispatches these."""

    __tablename__ = "workflow_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    workflow_id: Mapped[int] = mapped_column(ForeignKey("workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)  # EMAIL, IN_APP, SMS
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_user_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    template: Mapped[str | None] = mapped_column(Text, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    workflow: Mapped[Workflow] = relationship("Workflow", back_populates="notifications")
