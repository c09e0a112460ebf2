"""Date-of-birth challenge for intake links.

Failed attempts are counted with a single atomic UPDATE so that concurrent
guesses can never exceed the configured ceiling. The attempt that reaches
the ceiling moves the link to EXPIRED in the same statement.
"""

import hmac
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from intakeai.core.config import settings
from intakeai.core.exceptions import LinkExpiredError, VerificationFailedError
from intakeai.core.security import create_form_access_token
from intakeai.core.state_machine import link_sources
from intakeai.core.structured_logging import build_log_context
from intakeai.db.enums import IntakeLinkStatus, LinkExpiryReason
from intakeai.db.models import IntakeLink
from intakeai.services import intake_link_service
from intakeai.utils.datetime_parsing import ensure_utc, parse_date_of_birth, utcnow

logger = logging.getLogger(__name__)


@dataclass
class VerificationGrant:
    link: IntakeLink
    access_token: str
    expires_at: datetime


def _dob_matches(link: IntakeLink, submitted: str) -> bool:
    expected = link.patient.date_of_birth if link.patient else None
    parsed = parse_date_of_birth(submitted)
    if expected is None or parsed is None:
        return False
    return hmac.compare_digest(parsed.isoformat(), expected.isoformat())


def _record_failed_attempt(db: Session, link: IntakeLink) -> bool:
    """Increment the attempt counter; returns False if the link already left PENDING."""
    next_attempts = IntakeLink.verification_attempts + 1
    exhausted = next_attempts >= settings.DOB_MAX_ATTEMPTS
    result = db.execute(
        update(IntakeLink)
        .where(
            IntakeLink.id == link.id,
            IntakeLink.status.in_(link_sources(IntakeLinkStatus.EXPIRED)),
        )
        .values(
            verification_attempts=next_attempts,
            status=case((exhausted, IntakeLinkStatus.EXPIRED.value), else_=IntakeLink.status),
            expired_reason=case(
                (exhausted, LinkExpiryReason.ATTEMPTS.value), else_=IntakeLink.expired_reason
            ),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(link)
    return bool(result.rowcount)


def _mark_verified(db: Session, link: IntakeLink) -> bool:
    result = db.execute(
        update(IntakeLink)
        .where(
            IntakeLink.id == link.id,
            IntakeLink.status == IntakeLinkStatus.PENDING.value,
        )
        .values(verified_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(link)
    return bool(result.rowcount)


def verify_identity(db: Session, token: str, submitted_dob: str) -> VerificationGrant:
    """
    Check a submitted date of birth against the link's patient.

    On success returns a form-access grant bound to the link and valid until
    the link's own expiry. On mismatch raises VerificationFailedError; once
    the attempt ceiling is reached the link is EXPIRED and every later call
    raises a link error, even with the correct date.
    """
    link = intake_link_service.validate_token(db, token)
    log_context = build_log_context(link_id=str(link.id), patient_id=str(link.patient_id))

    if link.requires_dob_verification and not _dob_matches(link, submitted_dob):
        if not _record_failed_attempt(db, link):
            raise LinkExpiredError("verification_after_terminal", link_id=str(link.id))
        if link.status == IntakeLinkStatus.EXPIRED.value:
            logger.warning(
                "Intake link locked after %s failed verification attempts",
                link.verification_attempts,
                extra={**log_context, "reason": "attempts_exhausted"},
            )
        else:
            logger.info(
                "Identity verification failed (attempt %s of %s)",
                link.verification_attempts,
                settings.DOB_MAX_ATTEMPTS,
                extra={**log_context, "reason": "dob_mismatch"},
            )
        raise VerificationFailedError("dob_mismatch", attempts=link.verification_attempts)

    if not _mark_verified(db, link):
        raise LinkExpiredError("verification_after_terminal", link_id=str(link.id))

    expires_at = ensure_utc(link.expires_at)
    logger.info("Identity verified for intake link", extra=log_context)
    return VerificationGrant(
        link=link,
        access_token=create_form_access_token(link.id, expires_at),
        expires_at=expires_at,
    )
