"""Intake link request/response schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class IntakeLinkCreate(BaseModel):
    """
    Request schema for issuing an intake link.

    ``ttl_hours`` bounds are enforced by the service against configuration so
    that the error carries the configured window.
    """
    patient_id: UUID
    ttl_hours: int | None = None  # None = INTAKE_LINK_DEFAULT_TTL_HOURS
    require_dob_verification: bool = True


class IntakeLinkIssued(BaseModel):
    """Returned once, at issuance; the raw token is never retrievable again."""
    id: UUID
    patient_id: UUID
    token: str
    url: str
    expires_at: datetime
    requires_dob_verification: bool
    created_at: datetime


class IntakeLinkPublicRead(BaseModel):
    """What a patient's browser may learn about a link (no PHI)."""
    status: str
    expires_at: datetime
    requires_dob_verification: bool
    verification_needed: bool


class VerifyIdentityRequest(BaseModel):
    date_of_birth: str = Field(..., min_length=1, max_length=32)


class VerifyIdentityResponse(BaseModel):
    verified: bool
    access_token: str
    expires_at: datetime
