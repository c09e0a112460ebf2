"""Intake link endpoints: provider issuance plus the public patient flow."""

import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from sqlalchemy.orm import Session

from intakeai.core.config import settings
from intakeai.core.deps import get_current_provider, get_db, get_form_access_token
from intakeai.core.exceptions import LinkError, VerificationFailedError
from intakeai.core.rate_limit import limiter
from intakeai.db.enums import IntakeStatus
from intakeai.schemas.intake import IntakeSubmission, IntakeSubmitResponse
from intakeai.schemas.intake_link import (
    IntakeLinkCreate,
    IntakeLinkIssued,
    IntakeLinkPublicRead,
    VerifyIdentityRequest,
    VerifyIdentityResponse,
)
from intakeai.services import (
    alert_service,
    identity_verification_service,
    intake_link_service,
    intake_submission_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/intake-links", tags=["intake-links"])


@router.post("", response_model=IntakeLinkIssued, status_code=status.HTTP_201_CREATED)
def issue_intake_link(
    body: IntakeLinkCreate,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    """Issue a one-time intake link. The raw token is only ever returned here."""
    issued = intake_link_service.issue_link(
        db,
        provider_id=provider_id,
        patient_id=body.patient_id,
        ttl_hours=body.ttl_hours,
        require_dob=body.require_dob_verification,
    )
    link = issued.link
    return IntakeLinkIssued(
        id=link.id,
        patient_id=link.patient_id,
        token=issued.token,
        url=issued.url,
        expires_at=link.expires_at,
        requires_dob_verification=link.requires_dob_verification,
        created_at=link.created_at,
    )


@router.get("/{token}", response_model=IntakeLinkPublicRead)
@limiter.limit(f"{settings.RATE_LIMIT_PUBLIC_READ}/minute")
def get_public_intake_link(
    request: Request,
    token: str,
    db: Session = Depends(get_db),
    access_token: str | None = Depends(get_form_access_token),
):
    description = intake_link_service.describe_link(db, token, access_token)
    return IntakeLinkPublicRead(
        status=description.status,
        expires_at=description.expires_at,
        requires_dob_verification=description.requires_dob_verification,
        verification_needed=description.verification_needed,
    )


@router.post("/{token}/verify", response_model=VerifyIdentityResponse)
@limiter.limit(f"{settings.RATE_LIMIT_VERIFY}/minute")
def verify_intake_identity(
    request: Request,
    token: str,
    body: VerifyIdentityRequest,
    db: Session = Depends(get_db),
):
    """DOB challenge. Link problems and mismatches get the same response."""
    try:
        grant = identity_verification_service.verify_identity(db, token, body.date_of_birth)
    except LinkError as exc:
        raise VerificationFailedError(exc.reason) from exc
    return VerifyIdentityResponse(
        verified=True,
        access_token=grant.access_token,
        expires_at=grant.expires_at,
    )


@router.post(
    "/{token}/submit",
    response_model=IntakeSubmitResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(f"{settings.RATE_LIMIT_SUBMIT}/minute")
def submit_intake(
    request: Request,
    response: Response,
    token: str,
    body: IntakeSubmission,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    access_token: str | None = Depends(get_form_access_token),
):
    """
    Submit the intake form.

    201 for a new intake, 200 when the link was already completed (the
    existing intake is returned). A concurrent loser gets 409 with the
    winning ``intake_id``.
    """
    result = intake_submission_service.submit(db, token, body, access_token)
    if not result.created:
        response.status_code = status.HTTP_200_OK
    elif alert_service.alertable(result.flags):
        background_tasks.add_task(
            alert_service.dispatch_red_flag_alerts, result.intake.id, result.flags
        )
    return IntakeSubmitResponse(
        intake_id=result.intake.id,
        status=IntakeStatus(result.intake.status),
        created=result.created,
    )
