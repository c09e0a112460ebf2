"""Intake and red flag models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from intakeai.db.base import Base
from intakeai.db.enums import IntakeStatus
from intakeai.db.types import EncryptedJSON
from intakeai.utils.datetime_parsing import utcnow

if TYPE_CHECKING:
    from intakeai.db.models import IntakeLink, Patient, Summary


class Intake(Base):
    """A patient's structured submission, created exactly once per completed link.

    Section columns hold JSON already validated against the typed,
    length-bounded schemas in ``intakeai.schemas.intake``. Only the status
    and review columns change after creation.
    """

    __tablename__ = "intakes"
    __table_args__ = (
        UniqueConstraint("intake_link_id", name="uq_intakes_link"),
        Index("idx_intakes_patient", "patient_id"),
        Index("idx_intakes_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    patient_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False
    )
    intake_link_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("intake_links.id", ondelete="RESTRICT"), nullable=False
    )

    # Contact details live here, so the whole section is encrypted at rest.
    demographics: Mapped[dict] = mapped_column(EncryptedJSON, nullable=False, default=dict)
    chief_complaint: Mapped[str] = mapped_column(Text, nullable=False)
    medical_history: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    medications: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    allergies: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    social_history: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    review_of_systems: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    additional_concerns: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(
        String(30),
        default=IntakeStatus.READY_FOR_REVIEW.value,
        server_default=text(f"'{IntakeStatus.READY_FOR_REVIEW.value}'"),
        nullable=False,
    )
    submitted_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    reviewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reviewed_by_provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    patient: Mapped["Patient"] = relationship()
    intake_link: Mapped["IntakeLink"] = relationship()
    red_flags: Mapped[list["RedFlag"]] = relationship(
        back_populates="intake", order_by="RedFlag.rank"
    )
    summaries: Mapped[list["Summary"]] = relationship(
        back_populates="intake", order_by="Summary.created_at.desc()"
    )


class RedFlag(Base):
    """A detected clinical signal. Never mutated except acknowledgment."""

    __tablename__ = "red_flags"
    __table_args__ = (
        UniqueConstraint("intake_id", "category", name="uq_red_flags_intake_category"),
        Index("idx_red_flags_intake", "intake_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    intake_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("intakes.id", ondelete="CASCADE"), nullable=False
    )
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    source_field: Mapped[str] = mapped_column(String(100), nullable=False)
    matched_text: Mapped[str | None] = mapped_column(String(200), nullable=True)
    # Position in the detector's output (severity desc, then detection order)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    detected_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    acknowledged: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=text("false"), nullable=False
    )
    acknowledged_at: Mapped[datetime | None] = mapped_column(nullable=True)
    acknowledged_by_provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    intake: Mapped["Intake"] = relationship(back_populates="red_flags")
