"""Intake link model."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from intakeai.db.base import Base
from intakeai.db.enums import IntakeLinkStatus
from intakeai.utils.datetime_parsing import utcnow

if TYPE_CHECKING:
    from intakeai.db.models import Patient


class IntakeLink(Base):
    """Single-use, time-bounded link granting one patient access to one intake form.

    Only the keyed hash of the token is stored. ``status`` and
    ``verification_attempts`` are changed exclusively through conditional
    UPDATEs (see intake_link_service / identity_verification_service).
    """

    __tablename__ = "intake_links"
    __table_args__ = (
        UniqueConstraint("token_hash", name="uq_intake_links_token_hash"),
        Index("idx_intake_links_patient_status", "patient_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    created_by_provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=IntakeLinkStatus.PENDING.value,
        server_default=text(f"'{IntakeLinkStatus.PENDING.value}'"),
        nullable=False,
    )
    expired_reason: Mapped[str | None] = mapped_column(String(20), nullable=True)

    requires_dob_verification: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    verification_attempts: Mapped[int] = mapped_column(
        Integer, default=0, server_default=text("0"), nullable=False
    )
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(nullable=True)

    patient: Mapped["Patient"] = relationship()
