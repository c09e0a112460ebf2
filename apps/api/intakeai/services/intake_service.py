"""Provider-side intake access: listing, detail, review and flag acknowledgment."""

import logging
import uuid

from sqlalchemy import func, update
from sqlalchemy.orm import Session, selectinload

from intakeai.core.exceptions import (
    ConcurrencyConflictError,
    IntakeNotFoundError,
    RedFlagNotFoundError,
)
from intakeai.core.state_machine import assert_intake_transition, intake_sources
from intakeai.core.structured_logging import build_log_context
from intakeai.db.enums import IntakeStatus, RedFlagSeverity
from intakeai.db.models import Intake, Patient, RedFlag, Summary
from intakeai.schemas.intake import IntakeListItem, IntakeRead, IntakeSubmission, RedFlagRead
from intakeai.utils.datetime_parsing import utcnow

logger = logging.getLogger(__name__)


def _owned_intakes(db: Session, provider_id: uuid.UUID):
    return db.query(Intake).join(Patient, Intake.patient_id == Patient.id).filter(
        Patient.provider_id == provider_id
    )


def get_intake(db: Session, provider_id: uuid.UUID, intake_id: uuid.UUID) -> Intake:
    """Fetch an intake owned by the provider or raise IntakeNotFoundError."""
    intake = (
        _owned_intakes(db, provider_id)
        .options(selectinload(Intake.red_flags), selectinload(Intake.summaries))
        .filter(Intake.id == intake_id)
        .first()
    )
    if not intake:
        raise IntakeNotFoundError("intake_not_found", intake_id=str(intake_id))
    return intake


def list_intakes(
    db: Session,
    provider_id: uuid.UUID,
    *,
    status: IntakeStatus | None = None,
    patient_id: uuid.UUID | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[IntakeListItem], int]:
    """List a provider's intakes, newest first."""
    query = _owned_intakes(db, provider_id)
    if status:
        query = query.filter(Intake.status == status.value)
    if patient_id:
        query = query.filter(Intake.patient_id == patient_id)

    total = query.count()
    intakes = (
        query.options(selectinload(Intake.red_flags))
        .order_by(Intake.submitted_at.desc(), Intake.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
        .all()
    )

    summary_counts: dict[uuid.UUID, int] = {}
    if intakes:
        rows = (
            db.query(Summary.intake_id, func.count(Summary.id))
            .filter(Summary.intake_id.in_([i.id for i in intakes]))
            .group_by(Summary.intake_id)
            .all()
        )
        summary_counts = {intake_id: count for intake_id, count in rows}

    return [_to_list_item(i, summary_counts.get(i.id, 0)) for i in intakes], total


def _to_list_item(intake: Intake, summary_count: int) -> IntakeListItem:
    # red_flags are ordered by rank, so the first is the most severe
    highest = RedFlagSeverity(intake.red_flags[0].severity) if intake.red_flags else None
    return IntakeListItem(
        id=intake.id,
        patient_id=intake.patient_id,
        status=IntakeStatus(intake.status),
        chief_complaint=intake.chief_complaint,
        submitted_at=intake.submitted_at,
        reviewed_at=intake.reviewed_at,
        red_flag_count=len(intake.red_flags),
        highest_severity=highest,
        has_summary=summary_count > 0,
    )


def to_submission(intake: Intake) -> IntakeSubmission:
    """Rebuild the typed submission from a stored intake."""
    return IntakeSubmission.model_validate(
        {
            "chief_complaint": intake.chief_complaint,
            "demographics": intake.demographics or {},
            "medical_history": intake.medical_history or {},
            "medications": intake.medications or [],
            "allergies": intake.allergies or [],
            "social_history": intake.social_history or {},
            "review_of_systems": intake.review_of_systems or {},
            "additional_concerns": intake.additional_concerns,
        }
    )


def to_read(intake: Intake) -> IntakeRead:
    content = to_submission(intake)
    return IntakeRead(
        id=intake.id,
        patient_id=intake.patient_id,
        intake_link_id=intake.intake_link_id,
        status=IntakeStatus(intake.status),
        demographics=content.demographics,
        chief_complaint=content.chief_complaint,
        medical_history=content.medical_history,
        medications=content.medications,
        allergies=content.allergies,
        social_history=content.social_history,
        review_of_systems=content.review_of_systems,
        additional_concerns=content.additional_concerns,
        submitted_at=intake.submitted_at,
        reviewed_at=intake.reviewed_at,
        red_flags=[RedFlagRead.model_validate(flag) for flag in intake.red_flags],
        summary_ids=[summary.id for summary in intake.summaries],
    )


def review_intake(db: Session, provider_id: uuid.UUID, intake_id: uuid.UUID) -> Intake:
    """
    Mark an intake REVIEWED.

    Reviewing an already-reviewed intake returns it unchanged.
    """
    intake = get_intake(db, provider_id, intake_id)
    if intake.status == IntakeStatus.REVIEWED.value:
        return intake
    assert_intake_transition(intake.status, IntakeStatus.REVIEWED)

    result = db.execute(
        update(Intake)
        .where(
            Intake.id == intake.id,
            Intake.status.in_(intake_sources(IntakeStatus.REVIEWED)),
        )
        .values(
            status=IntakeStatus.REVIEWED.value,
            reviewed_at=utcnow(),
            reviewed_by_provider_id=provider_id,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(intake)
    if result.rowcount != 1 and intake.status != IntakeStatus.REVIEWED.value:
        raise ConcurrencyConflictError("review_lost_race", intake_id=str(intake.id))

    logger.info(
        "Intake reviewed",
        extra=build_log_context(provider_id=str(provider_id), intake_id=str(intake.id)),
    )
    return intake


def acknowledge_red_flag(
    db: Session,
    provider_id: uuid.UUID,
    intake_id: uuid.UUID,
    flag_id: uuid.UUID,
) -> RedFlag:
    """Acknowledge a red flag. Acknowledging twice keeps the first timestamp."""
    intake = get_intake(db, provider_id, intake_id)
    flag = (
        db.query(RedFlag)
        .filter(RedFlag.id == flag_id, RedFlag.intake_id == intake.id)
        .first()
    )
    if not flag:
        raise RedFlagNotFoundError("red_flag_not_found", flag_id=str(flag_id))

    db.execute(
        update(RedFlag)
        .where(RedFlag.id == flag.id, RedFlag.acknowledged.is_(False))
        .values(
            acknowledged=True,
            acknowledged_at=utcnow(),
            acknowledged_by_provider_id=provider_id,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(flag)
    return flag
