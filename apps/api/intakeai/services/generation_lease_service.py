"""Single-flight leases for summary generation.

A lease row (holder + expiry) per intake means at most one generation runs
at a time. An expired lease can be taken over, so a crashed worker never
blocks generation permanently.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from intakeai.core.config import settings
from intakeai.core.exceptions import GenerationInProgressError
from intakeai.core.structured_logging import build_log_context
from intakeai.db.models import SummaryGenerationLease
from intakeai.utils.datetime_parsing import utcnow

logger = logging.getLogger(__name__)


def new_holder_id() -> str:
    return uuid.uuid4().hex


def _lease_expiry():
    return utcnow() + timedelta(seconds=settings.SUMMARY_LEASE_SECONDS)


def acquire_lease(db: Session, intake_id: uuid.UUID, holder: str | None = None) -> str:
    """
    Take the generation lease for an intake and return the holder id.

    Raises:
        GenerationInProgressError: another holder has an unexpired lease
    """
    holder = holder or new_holder_id()
    now = utcnow()

    # Take over an expired lease in place
    result = db.execute(
        update(SummaryGenerationLease)
        .where(
            SummaryGenerationLease.intake_id == intake_id,
            SummaryGenerationLease.expires_at <= now,
        )
        .values(holder=holder, acquired_at=now, expires_at=_lease_expiry())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        db.commit()
        logger.info(
            "Took over expired summary lease",
            extra=build_log_context(intake_id=str(intake_id), reason="lease_takeover"),
        )
        return holder

    db.add(
        SummaryGenerationLease(
            intake_id=intake_id,
            holder=holder,
            acquired_at=now,
            expires_at=_lease_expiry(),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise GenerationInProgressError("lease_held", intake_id=str(intake_id))
    return holder


def renew_lease(db: Session, intake_id: uuid.UUID, holder: str) -> bool:
    """Push the expiry forward; False if the lease is no longer ours."""
    result = db.execute(
        update(SummaryGenerationLease)
        .where(
            SummaryGenerationLease.intake_id == intake_id,
            SummaryGenerationLease.holder == holder,
        )
        .values(expires_at=_lease_expiry())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return bool(result.rowcount)


def release_lease(db: Session, intake_id: uuid.UUID, holder: str) -> None:
    """Drop the lease if still held by ``holder``; a taken-over lease is left alone."""
    db.execute(
        delete(SummaryGenerationLease)
        .where(
            SummaryGenerationLease.intake_id == intake_id,
            SummaryGenerationLease.holder == holder,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
