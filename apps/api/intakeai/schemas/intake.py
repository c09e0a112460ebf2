"""Intake payload and response schemas.

The submission payload is fully typed and length-bounded so that the red
flag scanner and the prompt builder always see the same shapes.
"""

from datetime import datetime
from typing import Annotated
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints

from intakeai.db.enums import IntakeStatus, RedFlagSeverity

ShortText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=200)]
MediumText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=1000)]
LongText = Annotated[str, StringConstraints(strip_whitespace=True, max_length=4000)]

MAX_LIST_ITEMS = 50


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Demographics(_Section):
    preferred_name: ShortText | None = None
    sex: ShortText | None = None
    gender_identity: ShortText | None = None
    preferred_language: ShortText | None = None
    occupation: ShortText | None = None
    phone: Annotated[str, StringConstraints(strip_whitespace=True, max_length=32)] | None = None
    email: EmailStr | None = None
    address: MediumText | None = None
    emergency_contact_name: ShortText | None = None
    emergency_contact_phone: Annotated[
        str, StringConstraints(strip_whitespace=True, max_length=32)
    ] | None = None


class MedicalHistory(_Section):
    conditions: list[ShortText] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    surgical_history: LongText | None = None
    family_history: LongText | None = None
    hospitalizations: LongText | None = None
    notes: LongText | None = None


class Medication(_Section):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
    dosage: ShortText | None = None
    frequency: ShortText | None = None
    purpose: ShortText | None = None


class Allergy(_Section):
    allergen: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]
    reaction: ShortText | None = None


class SocialHistory(_Section):
    smoking: ShortText | None = None
    alcohol: ShortText | None = None
    exercise: ShortText | None = None
    diet: ShortText | None = None
    sleep: ShortText | None = None
    stress: ShortText | None = None


class ReviewOfSystems(_Section):
    general: MediumText | None = None
    cardiovascular: MediumText | None = None
    respiratory: MediumText | None = None
    gastrointestinal: MediumText | None = None
    neurological: MediumText | None = None
    musculoskeletal: MediumText | None = None
    psychiatric: MediumText | None = None
    genitourinary: MediumText | None = None
    skin: MediumText | None = None


class IntakeSubmission(_Section):
    """Patient-submitted intake form."""

    chief_complaint: Annotated[
        str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2000)
    ]
    demographics: Demographics = Field(default_factory=Demographics)
    medical_history: MedicalHistory = Field(default_factory=MedicalHistory)
    medications: list[Medication] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    allergies: list[Allergy] = Field(default_factory=list, max_length=MAX_LIST_ITEMS)
    social_history: SocialHistory = Field(default_factory=SocialHistory)
    review_of_systems: ReviewOfSystems = Field(default_factory=ReviewOfSystems)
    additional_concerns: LongText | None = None


class IntakeSubmitResponse(BaseModel):
    """Public response after submitting (or re-submitting) an intake."""

    intake_id: UUID
    status: IntakeStatus
    created: bool


class RedFlagRead(BaseModel):
    id: UUID
    category: str
    severity: RedFlagSeverity
    description: str
    source_field: str
    detected_at: datetime
    acknowledged: bool
    acknowledged_at: datetime | None = None

    model_config = {"from_attributes": True}


class IntakeListItem(BaseModel):
    id: UUID
    patient_id: UUID
    status: IntakeStatus
    chief_complaint: str
    submitted_at: datetime
    reviewed_at: datetime | None = None
    red_flag_count: int
    highest_severity: RedFlagSeverity | None = None
    has_summary: bool


class IntakeListResponse(BaseModel):
    items: list[IntakeListItem]
    total: int
    page: int
    per_page: int


class IntakeRead(BaseModel):
    """Provider view of an intake with red flags and summary history."""

    id: UUID
    patient_id: UUID
    intake_link_id: UUID
    status: IntakeStatus
    demographics: Demographics
    chief_complaint: str
    medical_history: MedicalHistory
    medications: list[Medication]
    allergies: list[Allergy]
    social_history: SocialHistory
    review_of_systems: ReviewOfSystems
    additional_concerns: str | None = None
    submitted_at: datetime
    reviewed_at: datetime | None = None
    red_flags: list[RedFlagRead]
    summary_ids: list[UUID]
