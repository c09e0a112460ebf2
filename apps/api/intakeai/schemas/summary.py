"""Summary request/response schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel


class SummaryGenerateRequest(BaseModel):
    intake_id: UUID


class SummaryRead(BaseModel):
    id: UUID
    intake_id: UUID
    content: str
    model_id: str
    tokens_used: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class SummaryListResponse(BaseModel):
    items: list[SummaryRead]
    total: int
