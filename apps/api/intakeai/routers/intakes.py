"""Provider intake endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from intakeai.core.deps import get_current_provider, get_db
from intakeai.db.enums import IntakeStatus
from intakeai.schemas.intake import IntakeListResponse, IntakeRead, RedFlagRead
from intakeai.services import intake_service

router = APIRouter(prefix="/intakes", tags=["intakes"])


@router.get("", response_model=IntakeListResponse)
def list_intakes(
    status: IntakeStatus | None = Query(None),
    patient_id: UUID | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    items, total = intake_service.list_intakes(
        db,
        provider_id,
        status=status,
        patient_id=patient_id,
        page=page,
        per_page=per_page,
    )
    return IntakeListResponse(items=items, total=total, page=page, per_page=per_page)


@router.get("/{intake_id}", response_model=IntakeRead)
def get_intake(
    intake_id: UUID,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    intake = intake_service.get_intake(db, provider_id, intake_id)
    return intake_service.to_read(intake)


@router.post("/{intake_id}/review", response_model=IntakeRead)
def review_intake(
    intake_id: UUID,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    """Mark an intake as reviewed (terminal)."""
    intake = intake_service.review_intake(db, provider_id, intake_id)
    return intake_service.to_read(intake)


@router.post("/{intake_id}/red-flags/{flag_id}/acknowledge", response_model=RedFlagRead)
def acknowledge_red_flag(
    intake_id: UUID,
    flag_id: UUID,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    flag = intake_service.acknowledge_red_flag(db, provider_id, intake_id, flag_id)
    return RedFlagRead.model_validate(flag)
