from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base, User
from app.etmf.modules.trials.models import Site, Trial


class Deviation(Base):
    __tablename__ = "deviations"
    __table_args__ = (
        Index("idx_deviations_trial", "trial_id"),
        Index("idx_deviations_site", "site_id"),
        Index("idx_deviations_status", "status"),
        Index("idx_deviations_severity", "severity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    deviation_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id", ondelete="RESTRICT"), nullable=False)
    site_id: Mapped[int] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    subject_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)

    deviation_type: Mapped[str] = mapped_column(String(16), nullable=False)  # PROTOCOL, PROCEDURE, ...
    severity: Mapped[str] = mapped_column(String(16), nullable=False)  # MINOR..CRITICAL
    # DRAFT -> SUBMITTED -> REVIEW -> APPROVED | REJECTED -> CLOSED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")

    description: Mapped[str] = mapped_column(Text, nullable=False)
    impact: Mapped[str] = mapped_column(Text, nullable=False)
    root_cause: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrective_action_planned: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrective_action_implemented: Mapped[str | None] = mapped_column(Text, nullable=True)
    corrective_action_effectiveness: Mapped[str | None] = mapped_column(Text, nullable=True)
    preventive_action: Mapped[str | None] = mapped_column(Text, nullable=True)

    reported_date: Mapped[date] = mapped_column(Date, nullable=False)
    discovered_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    resolved_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    trial: Mapped[Trial] = relationship("Trial", lazy="selectin")
    site: Mapped[Site] = relationship("Site", lazy="selectin")
    reviews: Mapped[list["DeviationReview"]] = relationship(
        "DeviationReview",
        back_populates="deviation",
        cascade="all, delete-orphan",
        order_by="DeviationReview.id",
        lazy="selectin",
    )


class DeviationReview(Base):
    __tablename__ = "deviation_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    deviation_id: Mapped[int] = mapped_column(ForeignKey("deviations.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    decision: Mapped[str] = mapped_column(String(16), nullable=False)  # PENDING, APPROVED, REJECTED
    comments: Mapped[str | None] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    deviation: Mapped[Deviation] = relationship("Deviation", back_populates="reviews")
    user: Mapped[User] = relationship("User", lazy="selectin")
