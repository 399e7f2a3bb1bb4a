from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.etmf.models import Base, User
from app.etmf.modules.documents.models import Document


class ESignature(Base):
    __tablename__ = "esignatures"
    __table_args__ = (
        Index("idx_esignatures_document", "document_id"),
        Index("idx_esignatures_user", "user_id"),
        Index("idx_esignatures_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    esignature_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="RESTRICT"), nullable=False)
    signature_type: Mapped[str] = mapped_column(String(16), nullable=False)  # ELECTRONIC, DIGITAL, WET
    # PENDING -> SIGNED -> EXPIRED | REVOKED
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    signature_data: Mapped[str] = mapped_column(Text, nullable=False)

    certificate_issuer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    certificate_serial_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    certificate_valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    certificate_valid_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    signer: Mapped[User] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    document: Mapped[Document] = relationship("Document", lazy="selectin")
