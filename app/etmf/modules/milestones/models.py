from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base
from app.etmf.modules.trials.models import Site, Trial


class Milestone(Base):
    __tablename__ = "milestones"
    __table_args__ = (
        Index("idx_milestones_trial", "trial_id"),
        Index("idx_milestones_status", "status"),
        Index("idx_milestones_due_date", "due_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    milestone_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id", ondelete="RESTRICT"), nullable=False)
    site_id: Mapped[int | None] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    milestone_type: Mapped[str] = mapped_column(String(32), nullable=False)  # REGULATORY, ENROLLMENT, ...
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # PENDING, IN_PROGRESS, COMPLETED, DELAYED, CANCELLED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    priority: Mapped[str] = mapped_column(String(8), nullable=False, default="MEDIUM")
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    assigned_user_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    trial: Mapped[Trial] = relationship("Trial", lazy="selectin")
    site: Mapped[Site | None] = relationship("Site", lazy="selectin")
