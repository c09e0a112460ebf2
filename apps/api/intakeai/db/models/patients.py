"""Patient model (owned by the patient-management collaborator; read-only here)."""

from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from intakeai.db.base import Base
from intakeai.db.types import EncryptedDate, EncryptedString
from intakeai.utils.datetime_parsing import utcnow


class Patient(Base):
    """A provider's patient. PHI columns are encrypted at rest."""

    __tablename__ = "patients"
    __table_args__ = (Index("idx_patients_provider", "provider_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    full_name: Mapped[str] = mapped_column(EncryptedString, nullable=False)
    date_of_birth: Mapped[date | None] = mapped_column(EncryptedDate, nullable=True)
    email: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    phone: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    external_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
