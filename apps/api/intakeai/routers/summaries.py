"""Summary generation and history endpoints."""

import logging
from typing import AsyncIterator
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from intakeai.core.deps import get_ai_provider, get_current_provider, get_db, get_session_factory
from intakeai.core.exceptions import IntakeCoreError
from intakeai.schemas.summary import SummaryGenerateRequest, SummaryListResponse, SummaryRead
from intakeai.services import summary_service
from intakeai.services.ai_provider import AIProvider
from intakeai.utils.sse import (
    STREAM_HEADERS,
    SUMMARY_DELTA_EVENT,
    SUMMARY_DONE_EVENT,
    SUMMARY_ERROR_EVENT,
    format_sse,
    sse_preamble,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/summaries", tags=["summaries"])


@router.post("/generate", response_model=SummaryRead, status_code=status.HTTP_201_CREATED)
async def generate_summary(
    body: SummaryGenerateRequest,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
    ai: AIProvider = Depends(get_ai_provider),
):
    summary = await summary_service.generate_summary(db, body.intake_id, provider_id, ai=ai)
    return SummaryRead.model_validate(summary)


@router.post("/generate/stream")
async def generate_summary_stream(
    body: SummaryGenerateRequest,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
    ai: AIProvider = Depends(get_ai_provider),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> StreamingResponse:
    """
    Stream a summary via SSE (``delta`` events, then ``done`` or ``error``).

    Ownership, state and lease conflicts are rejected before the stream
    starts. A client disconnect closes the upstream provider call.
    """
    stream = summary_service.open_summary_stream(
        db, body.intake_id, provider_id, ai=ai, session_factory=session_factory
    )

    async def event_generator() -> AsyncIterator[str]:
        try:
            yield sse_preamble()
            async for text in stream:
                yield format_sse(SUMMARY_DELTA_EVENT, {"text": text})
        except IntakeCoreError as exc:
            yield format_sse(SUMMARY_ERROR_EVENT, exc.to_payload())
            return
        except Exception:
            logger.exception("Summary stream failed")
            yield format_sse(SUMMARY_ERROR_EVENT, IntakeCoreError().to_payload())
            return
        finally:
            await stream.aclose()

        summary = SummaryRead.model_validate(stream.summary)
        yield format_sse(SUMMARY_DONE_EVENT, summary.model_dump(mode="json"))

    return StreamingResponse(
        event_generator(), media_type="text/event-stream", headers=STREAM_HEADERS
    )


@router.get("", response_model=SummaryListResponse)
def list_summaries(
    intake_id: UUID | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    items, total = summary_service.list_summaries(
        db, provider_id, intake_id, limit=limit, offset=offset
    )
    return SummaryListResponse(
        items=[SummaryRead.model_validate(item) for item in items], total=total
    )


@router.get("/{summary_id}", response_model=SummaryRead)
def get_summary(
    summary_id: UUID,
    db: Session = Depends(get_db),
    provider_id: UUID = Depends(get_current_provider),
):
    return SummaryRead.model_validate(summary_service.get_summary(db, provider_id, summary_id))
