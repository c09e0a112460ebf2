"""Intake submission ingestion.

The link's PENDING -> COMPLETED flip is a conditional UPDATE and is the
linearization point for concurrent submissions. The intake row, its red
flags and the flip commit in one transaction.
"""

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from intakeai.core.exceptions import (
    LinkAlreadyUsedError,
    LinkExpiredError,
    VerificationRequiredError,
)
from intakeai.core.security import form_access_granted
from intakeai.core.state_machine import assert_intake_transition, link_sources
from intakeai.core.structured_logging import build_log_context
from intakeai.db.enums import IntakeLinkStatus, IntakeStatus
from intakeai.db.models import Intake, IntakeLink, RedFlag
from intakeai.schemas.intake import IntakeSubmission
from intakeai.services import intake_link_service, red_flag_service
from intakeai.services.red_flag_service import DetectedFlag
from intakeai.utils.datetime_parsing import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    intake: Intake
    created: bool
    flags: list[DetectedFlag] = field(default_factory=list)


def get_intake_for_link(db: Session, link_id: uuid.UUID) -> Intake | None:
    return db.query(Intake).filter(Intake.intake_link_id == link_id).first()


def _lost_race(db: Session, link: IntakeLink) -> Exception:
    """Build the error for a caller whose status flip matched no row."""
    db.refresh(link)
    if link.status != IntakeLinkStatus.COMPLETED.value:
        return LinkExpiredError("submission_after_expiry", link_id=str(link.id))
    winner = get_intake_for_link(db, link.id)
    logger.info(
        "Concurrent submission lost the race",
        extra=build_log_context(
            link_id=str(link.id),
            intake_id=str(winner.id) if winner else None,
            reason="submission_race_lost",
        ),
    )
    return LinkAlreadyUsedError(
        "submission_race_lost", intake_id=winner.id if winner else None
    )


def _build_intake(link: IntakeLink, payload: IntakeSubmission) -> Intake:
    assert_intake_transition(None, IntakeStatus.READY_FOR_REVIEW)
    sections = payload.model_dump(mode="json")
    return Intake(
        patient_id=link.patient_id,
        intake_link_id=link.id,
        demographics=sections["demographics"],
        chief_complaint=payload.chief_complaint,
        medical_history=sections["medical_history"],
        medications=sections["medications"],
        allergies=sections["allergies"],
        social_history=sections["social_history"],
        review_of_systems=sections["review_of_systems"],
        additional_concerns=payload.additional_concerns,
        status=IntakeStatus.READY_FOR_REVIEW.value,
    )


def persist_submission(
    db: Session, link: IntakeLink, payload: IntakeSubmission
) -> SubmissionResult:
    """
    Flip the link to COMPLETED and write the intake with its red flags.

    Everything commits together or not at all. A caller whose flip matches
    no row (another submission got there first) gets LinkAlreadyUsedError
    carrying the winner's intake id.
    """
    now = utcnow()
    try:
        result = db.execute(
            update(IntakeLink)
            .where(
                IntakeLink.id == link.id,
                IntakeLink.status.in_(link_sources(IntakeLinkStatus.COMPLETED)),
            )
            .values(status=IntakeLinkStatus.COMPLETED.value, used_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            raise _lost_race(db, link)

        flags = red_flag_service.detect(payload)
        intake = _build_intake(link, payload)
        intake.submitted_at = now
        db.add(intake)
        db.flush()

        for rank, flag in enumerate(flags):
            db.add(
                RedFlag(
                    intake_id=intake.id,
                    category=flag.category,
                    severity=flag.severity.value,
                    description=flag.description,
                    source_field=flag.source_field,
                    matched_text=flag.matched_text,
                    rank=rank,
                    detected_at=now,
                )
            )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise _lost_race(db, link)
    except Exception:
        db.rollback()
        raise

    db.refresh(intake)
    logger.info(
        "Intake submitted with %s red flag(s)",
        len(flags),
        extra=build_log_context(
            link_id=str(link.id), patient_id=str(link.patient_id), intake_id=str(intake.id)
        ),
    )
    return SubmissionResult(intake=intake, created=True, flags=flags)


def submit(
    db: Session,
    token: str,
    payload: IntakeSubmission,
    access_token: str | None = None,
) -> SubmissionResult:
    """
    Ingest a patient's intake for a link token.

    The token is the idempotency key: re-submitting on a COMPLETED link
    returns the existing intake with ``created=False``.
    """
    link = intake_link_service.validate_token(db, token, allow_completed=True)

    if link.status == IntakeLinkStatus.COMPLETED.value:
        existing = get_intake_for_link(db, link.id)
        if existing is None:
            raise LinkAlreadyUsedError("completed_without_intake", link_id=str(link.id))
        logger.info(
            "Duplicate submission returned existing intake",
            extra=build_log_context(link_id=str(link.id), intake_id=str(existing.id)),
        )
        return SubmissionResult(intake=existing, created=False)

    if intake_link_service.needs_verification(link) and not form_access_granted(
        access_token, link.id
    ):
        raise VerificationRequiredError("missing_form_access", link_id=str(link.id))

    return persist_submission(db, link, payload)
