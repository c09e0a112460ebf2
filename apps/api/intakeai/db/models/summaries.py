"""AI summary and generation lease models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import ForeignKey, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from intakeai.db.base import Base
from intakeai.utils.datetime_parsing import utcnow

if TYPE_CHECKING:
    from intakeai.db.models import Intake


class Summary(Base):
    """AI-generated clinical narrative. Append-only; the latest row is current."""

    __tablename__ = "summaries"
    __table_args__ = (Index("idx_summaries_intake_created", "intake_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    intake_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("intakes.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    generated_by_provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    intake: Mapped["Intake"] = relationship(back_populates="summaries")


class SummaryGenerationLease(Base):
    """Single-flight lease for summary generation on one intake.

    A lease is held by ``holder`` until ``expires_at``; an expired lease may
    be taken over, so a crashed worker never blocks generation for good.
    """

    __tablename__ = "summary_generation_leases"

    intake_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("intakes.id", ondelete="CASCADE"), primary_key=True
    )
    holder: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
