"""Intake link issuance and validation.

Tokens are opaque ``secrets.token_urlsafe`` values; only their keyed hash is
stored. Validation distinguishes unknown / expired / used links internally
(for logging) while raising errors that share a single public message.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from intakeai.core.config import settings
from intakeai.core.exceptions import (
    IntakeValidationError,
    LinkAlreadyUsedError,
    LinkExpiredError,
    LinkNotFoundError,
    PatientNotFoundError,
)
from intakeai.core.security import (
    form_access_granted,
    generate_link_token,
    hash_link_token,
    link_token_matches,
)
from intakeai.core.state_machine import link_sources
from intakeai.core.structured_logging import build_log_context
from intakeai.db.enums import IntakeLinkStatus, LinkExpiryReason
from intakeai.db.models import IntakeLink, Patient
from intakeai.utils.datetime_parsing import ensure_utc, utcnow

logger = logging.getLogger(__name__)

MAX_TOKEN_ATTEMPTS = 3


@dataclass
class IssuedLink:
    link: IntakeLink
    token: str
    url: str


def build_intake_url(token: str) -> str:
    cleaned_base = (settings.INTAKE_FORM_URL or "").rstrip("/")
    return f"{cleaned_base}/form/{token}"


def _validate_ttl(ttl_hours: int) -> None:
    low = settings.INTAKE_LINK_MIN_TTL_HOURS
    high = settings.INTAKE_LINK_MAX_TTL_HOURS
    if ttl_hours < low or ttl_hours > high:
        raise IntakeValidationError.for_field(
            "ttl_hours", f"Must be between {low} and {high} hours"
        )


def get_patient_for_provider(
    db: Session, provider_id: uuid.UUID, patient_id: uuid.UUID
) -> Patient:
    patient = (
        db.query(Patient)
        .filter(Patient.id == patient_id, Patient.provider_id == provider_id)
        .first()
    )
    if not patient:
        raise PatientNotFoundError("patient_not_found", patient_id=str(patient_id))
    return patient


def _supersede_pending_links(db: Session, patient_id: uuid.UUID) -> int:
    """Expire earlier pending links so only the newest link is usable."""
    result = db.execute(
        update(IntakeLink)
        .where(
            IntakeLink.patient_id == patient_id,
            IntakeLink.status.in_(link_sources(IntakeLinkStatus.EXPIRED)),
        )
        .values(
            status=IntakeLinkStatus.EXPIRED.value,
            expired_reason=LinkExpiryReason.SUPERSEDED.value,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def issue_link(
    db: Session,
    provider_id: uuid.UUID,
    patient_id: uuid.UUID,
    ttl_hours: int | None = None,
    require_dob: bool = True,
) -> IssuedLink:
    """Create a one-time intake link for a patient.

    Returns the raw token exactly once; it cannot be recovered afterwards.
    """
    ttl_hours = ttl_hours if ttl_hours is not None else settings.INTAKE_LINK_DEFAULT_TTL_HOURS
    _validate_ttl(ttl_hours)
    patient = get_patient_for_provider(db, provider_id, patient_id)

    for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
        superseded = _supersede_pending_links(db, patient.id)
        token = generate_link_token()
        now = utcnow()
        link = IntakeLink(
            patient_id=patient.id,
            created_by_provider_id=provider_id,
            token_hash=hash_link_token(token),
            status=IntakeLinkStatus.PENDING.value,
            requires_dob_verification=require_dob,
            verification_attempts=0,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
        )
        db.add(link)
        try:
            db.commit()
        except IntegrityError:
            # Token hash collision; astronomically unlikely but enforced by the constraint.
            db.rollback()
            logger.warning(
                "Intake link token collision, regenerating (attempt %s)",
                attempt,
                extra=build_log_context(patient_id=str(patient.id)),
            )
            continue
        db.refresh(link)
        logger.info(
            "Intake link issued (superseded=%s)",
            superseded,
            extra=build_log_context(
                provider_id=str(provider_id), patient_id=str(patient.id), link_id=str(link.id)
            ),
        )
        return IssuedLink(link=link, token=token, url=build_intake_url(token))

    raise RuntimeError("Unable to generate a unique intake link token")


def get_link_by_token(db: Session, token: str) -> IntakeLink | None:
    """Fetch a link row by token without applying validity rules."""
    if not token:
        return None
    token_hash = hash_link_token(token)
    link = db.query(IntakeLink).filter(IntakeLink.token_hash == token_hash).first()
    if link is None or not link_token_matches(token, link.token_hash):
        return None
    return link


def is_past_expiry(link: IntakeLink) -> bool:
    return ensure_utc(link.expires_at) <= utcnow()


def expire_link(db: Session, link: IntakeLink, reason: LinkExpiryReason) -> bool:
    """Conditionally move a link to EXPIRED. Returns True if this call did it."""
    result = db.execute(
        update(IntakeLink)
        .where(
            IntakeLink.id == link.id,
            IntakeLink.status.in_(link_sources(IntakeLinkStatus.EXPIRED)),
        )
        .values(status=IntakeLinkStatus.EXPIRED.value, expired_reason=reason.value)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(link)
    return bool(result.rowcount)


def _reject(error_cls, link: IntakeLink | None, reason: str):
    logger.info(
        "Intake link rejected",
        extra=build_log_context(link_id=str(link.id) if link else None, reason=reason),
    )
    return error_cls(reason)


def validate_token(db: Session, token: str, *, allow_completed: bool = False) -> IntakeLink:
    """
    Resolve a token to a usable link.

    Check order: lookup, wall-clock expiry (wins over any status), status.
    With ``allow_completed`` a COMPLETED link is returned instead of raising,
    which the submission ingestor uses for idempotent retries.

    Raises:
        LinkNotFoundError / LinkExpiredError / LinkAlreadyUsedError
    """
    link = get_link_by_token(db, token)
    if link is None:
        raise _reject(LinkNotFoundError, None, "unknown_token")

    if is_past_expiry(link):
        if link.status == IntakeLinkStatus.PENDING.value:
            expire_link(db, link, LinkExpiryReason.TTL)
        raise _reject(LinkExpiredError, link, "ttl_elapsed")

    if link.status == IntakeLinkStatus.EXPIRED.value:
        raise _reject(LinkExpiredError, link, f"expired_{link.expired_reason or 'unknown'}")

    if link.status == IntakeLinkStatus.COMPLETED.value:
        if allow_completed:
            return link
        raise _reject(LinkAlreadyUsedError, link, "already_completed")

    return link


def needs_verification(link: IntakeLink) -> bool:
    return bool(link.requires_dob_verification)


@dataclass
class LinkDescription:
    status: str
    expires_at: datetime
    requires_dob_verification: bool
    verification_needed: bool


def describe_link(db: Session, token: str, access_token: str | None = None) -> LinkDescription:
    """Public metadata for a usable link; carries no patient data."""
    link = validate_token(db, token)
    verification_needed = needs_verification(link) and not form_access_granted(
        access_token, link.id
    )
    return LinkDescription(
        status=link.status,
        expires_at=ensure_utc(link.expires_at),
        requires_dob_verification=link.requires_dob_verification,
        verification_needed=verification_needed,
    )
