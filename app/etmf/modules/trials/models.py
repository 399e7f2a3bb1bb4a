from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base, User


class Trial(Base):
    __tablename__ = "trials"
    __table_args__ = (
        Index("idx_trials_status", "status"),
        Index("idx_trials_sponsor", "sponsor"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    study_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    protocol_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    phase: Mapped[str] = mapped_column(String(32), nullable=False)  # PHASE_1..PHASE_4, POST_MARKETING
    therapeutic_area: Mapped[str | None] = mapped_column(String(128), nullable=True)
    indication: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sponsor: Mapped[str] = mapped_column(String(255), nullable=False)
    cro_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cro_contract_number: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # PLANNING -> ACTIVE <-> ON_HOLD -> COMPLETED | TERMINATED -> ARCHIVED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PLANNING")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    estimated_completion_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    regulatory_authority: Mapped[str | None] = mapped_column(String(16), nullable=True)
    regulatory_status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    retention_period_years: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    sites: Mapped[list["Site"]] = relationship("Site", back_populates="trial", order_by="Site.id", lazy="selectin")
    team: Mapped[list["TrialTeamMember"]] = relationship(
        "TrialTeamMember",
        back_populates="trial",
        cascade="all, delete-orphan",
        order_by="TrialTeamMember.id",
        lazy="selectin",
    )
    countries: Mapped[list["TrialCountry"]] = relationship(
        "TrialCountry",
        back_populates="trial",
        cascade="all, delete-orphan",
        order_by="TrialCountry.id",
        lazy="selectin",
    )
    audit_trail: Mapped[list["TrialAuditEntry"]] = relationship(
        "TrialAuditEntry",
        back_populates="trial",
        cascade="all, delete-orphan",
        order_by="TrialAuditEntry.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": revision}


class TrialTeamMember(Base):
    __tablename__ = "trial_team_members"
    __table_args__ = (
        UniqueConstraint("trial_id", "user_id", name="uq_trial_team_member"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. STUDY_MANAGER, MONITOR_CRA
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    trial: Mapped[Trial] = relationship("Trial", back_populates="team")
    user: Mapped[User] = relationship("User", lazy="selectin")


class TrialCountry(Base):
    __tablename__ = "trial_countries"
    __table_args__ = (
        UniqueConstraint("trial_id", "code", name="uq_trial_country_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id", ondelete="CASCADE"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(8), nullable=False)  # ISO 3166 alpha-2/3
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PLANNED")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    trial: Mapped[Trial] = relationship("Trial", back_populates="countries")


class TrialAuditEntry(Base):
    """Append-only; rows are never updated or removed."""

    __tablename__ = "trial_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    trial: Mapped[Trial] = relationship("Trial", back_populates="audit_trail")


class Site(Base):
    __tablename__ = "sites"
    __table_args__ = (
        Index("idx_sites_status", "status"),
        Index("idx_sites_country", "country"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    site_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    trial_id: Mapped[int] = mapped_column(ForeignKey("trials.id", ondelete="RESTRICT"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    site_type: Mapped[str] = mapped_column(String(32), nullable=False)  # HOSPITAL, CLINIC, ...
    # PLANNED -> ACTIVE <-> SUSPENDED -> COMPLETED | TERMINATED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PLANNED")

    street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    estimated_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    actual_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    enrollment_target: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_enrollment: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    trial: Mapped[Trial] = relationship("Trial", back_populates="sites", lazy="selectin")

    __mapper_args__ = {"version_id_col": revision}
