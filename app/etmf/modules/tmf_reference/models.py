from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base


class Zone(Base):
    __tablename__ = "tmf_zones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    zone_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)  # e.g. 1..11 in the DIA model
    zone_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Section(Base):
    __tablename__ = "tmf_sections"
    __table_args__ = (
        UniqueConstraint("zone_id", "section_number", name="uq_tmf_section_number_zone"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    section_number: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "01.01"
    section_name: Mapped[str] = mapped_column(String(255), nullable=False)
    zone_id: Mapped[int] = mapped_column(ForeignKey("tmf_zones.id", ondelete="RESTRICT"), nullable=False, index=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    zone: Mapped[Zone] = relationship("Zone", lazy="selectin")


class Artifact(Base):
    __tablename__ = "tmf_artifacts"
    __table_args__ = (
        UniqueConstraint("section_id", "artifact_number", name="uq_tmf_artifact_number_section"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    artifact_number: Mapped[str] = mapped_column(String(32), nullable=False)  # e.g. "01.01.01"
    artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    section_id: Mapped[int] = mapped_column(ForeignKey("tmf_sections.id", ondelete="RESTRICT"), nullable=False, index=True)
    ich_code: Mapped[str | None] = mapped_column(String(64), nullable=True)  # ICH E6 reference if applicable
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    section: Mapped[Section] = relationship("Section", lazy="selectin")


class SubArtifact(Base):
    __tablename__ = "tmf_sub_artifacts"
    __table_args__ = (
        UniqueConstraint("artifact_id", "sub_artifact_number", name="uq_tmf_sub_artifact_number_artifact"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sub_artifact_number: Mapped[str] = mapped_column(String(32), nullable=False)
    sub_artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    artifact_id: Mapped[int] = mapped_column(ForeignKey("tmf_artifacts.id", ondelete="RESTRICT"), nullable=False, index=True)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    artifact: Mapped[Artifact] = relationship("Artifact", lazy="selectin")
