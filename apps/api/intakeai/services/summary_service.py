"""AI summary orchestration.

Both modes share the same discipline:
- every provider attempt runs under ``AI_REQUEST_DEADLINE_SECONDS``
- transient failures (transport, timeout, 5xx, 429) are retried with
  exponential backoff; terminal ones are raised at once
- one generation per intake at a time, enforced by a lease
- exactly one Summary row on success, nothing on failure or cancellation
"""

import logging
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import anyio
from sqlalchemy.orm import Session, sessionmaker

from intakeai.core.config import settings
from intakeai.core.exceptions import (
    AIContentRejectedError,
    AIError,
    AITimeoutError,
    GenerationInProgressError,
    SummaryNotFoundError,
)
from intakeai.core.state_machine import ensure_summary_allowed
from intakeai.core.structured_logging import build_log_context
from intakeai.db.models import Intake, Patient, Summary
from intakeai.services import generation_lease_service, intake_service
from intakeai.services.ai_provider import AIProvider, ChatMessage, ChatStreamChunk
from intakeai.services.summary_prompt import build_summary_messages

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Shared helpers
# =============================================================================


def _backoff_seconds(attempt: int) -> float:
    return settings.AI_RETRY_BACKOFF_SECONDS * (2**attempt)


async def call_with_retries(
    request_fn: Callable[[], Awaitable[T]],
    *,
    intake_id: uuid.UUID | None = None,
    before_retry: Callable[[], None] | None = None,
) -> T:
    """
    Run a provider call under the deadline, retrying transient failures.

    ``before_retry`` runs after each backoff, just before the next attempt.
    """
    attempts = settings.AI_MAX_RETRIES + 1
    for attempt in range(attempts):
        try:
            with anyio.fail_after(settings.AI_REQUEST_DEADLINE_SECONDS):
                return await request_fn()
        except TimeoutError:
            error: AIError = AITimeoutError("deadline_exceeded")
        except AIError as exc:
            if not exc.retryable:
                raise
            error = exc

        if attempt >= attempts - 1:
            raise error
        delay = _backoff_seconds(attempt)
        logger.warning(
            "AI call failed (%s), retrying in %.2fs",
            error.reason,
            delay,
            extra=build_log_context(intake_id=str(intake_id) if intake_id else None),
        )
        if delay:
            await anyio.sleep(delay)
        if before_retry is not None:
            before_retry()


def renew_or_abort(db: Session, intake_id: uuid.UUID, holder: str) -> None:
    """Extend our lease; a lease taken over by another generation ends this one."""
    if not generation_lease_service.renew_lease(db, intake_id, holder):
        raise GenerationInProgressError("lease_lost", intake_id=str(intake_id))


def load_intake_for_summary(db: Session, provider_id: uuid.UUID, intake_id: uuid.UUID) -> Intake:
    intake = intake_service.get_intake(db, provider_id, intake_id)
    ensure_summary_allowed(intake.status)
    return intake


def build_messages(intake: Intake) -> list[ChatMessage]:
    return build_summary_messages(intake_service.to_submission(intake), list(intake.red_flags))


def persist_summary(
    db: Session,
    *,
    intake_id: uuid.UUID,
    provider_id: uuid.UUID,
    content: str,
    model_id: str,
    tokens_used: int | None,
) -> Summary:
    if not content.strip():
        raise AIContentRejectedError("empty_completion", intake_id=str(intake_id))
    summary = Summary(
        intake_id=intake_id,
        content=content,
        model_id=model_id,
        tokens_used=tokens_used or None,
        generated_by_provider_id=provider_id,
    )
    db.add(summary)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(summary)
    logger.info(
        "Summary persisted",
        extra=build_log_context(provider_id=str(provider_id), intake_id=str(intake_id)),
    )
    return summary


# =============================================================================
# Synchronous generation
# =============================================================================


async def generate_summary(
    db: Session,
    intake_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    ai: AIProvider,
) -> Summary:
    """Generate and persist one summary, holding the intake's lease throughout."""
    intake = load_intake_for_summary(db, provider_id, intake_id)
    messages = build_messages(intake)
    holder = generation_lease_service.acquire_lease(db, intake.id)
    try:
        response = await call_with_retries(
            lambda: ai.chat(
                messages,
                temperature=settings.AI_TEMPERATURE,
                max_tokens=settings.AI_MAX_TOKENS,
            ),
            intake_id=intake.id,
            before_retry=lambda: renew_or_abort(db, intake.id, holder),
        )
        return persist_summary(
            db,
            intake_id=intake.id,
            provider_id=provider_id,
            content=response.content,
            model_id=response.model,
            tokens_used=response.total_tokens,
        )
    except AIError as exc:
        logger.warning(
            "Summary generation failed: %s",
            exc.code,
            extra=build_log_context(intake_id=str(intake.id), reason=exc.reason),
        )
        raise
    finally:
        generation_lease_service.release_lease(db, intake.id, holder)


# =============================================================================
# Streaming generation
# =============================================================================


class SummaryStream:
    """
    Cancellable async iterator of summary text chunks.

    ``aclose()`` closes the upstream provider stream immediately, which
    closes its HTTP response; nothing is persisted. After the iterator is
    exhausted ``summary`` holds the persisted row.
    """

    def __init__(
        self,
        *,
        intake_id: uuid.UUID,
        provider_id: uuid.UUID,
        holder: str,
        messages: list[ChatMessage],
        ai: AIProvider,
        session_factory: sessionmaker,
    ):
        self.intake_id = intake_id
        self.provider_id = provider_id
        self.summary: Summary | None = None
        self._holder = holder
        self._messages = messages
        self._ai = ai
        self._session_factory = session_factory
        self._upstream: AsyncIterator[ChatStreamChunk] | None = None
        self._started = False
        self._iterator = self._run()

    def __aiter__(self) -> "SummaryStream":
        return self

    async def __anext__(self) -> str:
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        if not self._started:
            # Never iterated: the generator body (and its cleanup) will not run.
            self._started = True
            db = self._session_factory()
            try:
                generation_lease_service.release_lease(db, self.intake_id, self._holder)
            finally:
                db.close()
        await self._iterator.aclose()

    async def _close_upstream(self) -> None:
        if self._upstream is None:
            return
        upstream, self._upstream = self._upstream, None
        with anyio.CancelScope(shield=True):
            await upstream.aclose()

    async def _next_upstream(self) -> ChatStreamChunk | None:
        assert self._upstream is not None
        try:
            with anyio.fail_after(settings.AI_REQUEST_DEADLINE_SECONDS):
                return await self._upstream.__anext__()
        except StopAsyncIteration:
            return None

    async def _first_chunk(self, db: Session) -> ChatStreamChunk | None:
        """Open the upstream stream; retry only until a chunk has arrived."""
        attempts = settings.AI_MAX_RETRIES + 1
        for attempt in range(attempts):
            self._upstream = self._ai.stream_chat(
                self._messages,
                temperature=settings.AI_TEMPERATURE,
                max_tokens=settings.AI_MAX_TOKENS,
            )
            try:
                return await self._next_upstream()
            except TimeoutError:
                error: AIError = AITimeoutError("deadline_exceeded")
            except AIError as exc:
                if not exc.retryable:
                    raise
                error = exc
            await self._close_upstream()

            if attempt >= attempts - 1:
                raise error
            delay = _backoff_seconds(attempt)
            logger.warning(
                "AI stream failed to start (%s), retrying in %.2fs",
                error.reason,
                delay,
                extra=build_log_context(intake_id=str(self.intake_id)),
            )
            if delay:
                await anyio.sleep(delay)
            renew_or_abort(db, self.intake_id, self._holder)

    async def _run(self) -> AsyncIterator[str]:
        self._started = True
        db = self._session_factory()
        renew_every = settings.SUMMARY_LEASE_SECONDS / 3
        last_renewal = time.monotonic()
        # Kept only to build the final row once the stream completes.
        parts: list[str] = []
        final: ChatStreamChunk | None = None
        try:
            chunk = await self._first_chunk(db)
            while chunk is not None:
                if chunk.is_final:
                    final = chunk
                if chunk.text:
                    parts.append(chunk.text)
                    yield chunk.text
                if time.monotonic() - last_renewal >= renew_every:
                    renew_or_abort(db, self.intake_id, self._holder)
                    last_renewal = time.monotonic()
                try:
                    chunk = await self._next_upstream()
                except TimeoutError:
                    raise AITimeoutError("stream_stalled") from None

            self.summary = persist_summary(
                db,
                intake_id=self.intake_id,
                provider_id=self.provider_id,
                content="".join(parts),
                model_id=(final.model if final else None) or getattr(self._ai, "default_model", "unknown"),
                tokens_used=final.total_tokens if final else None,
            )
            # Loaded by persist_summary; detach so the lease commit and close
            # below do not expire it for the caller.
            db.expunge(self.summary)
        except AIError as exc:
            logger.warning(
                "Summary stream failed: %s",
                exc.code,
                extra=build_log_context(intake_id=str(self.intake_id), reason=exc.reason),
            )
            raise
        finally:
            await self._close_upstream()
            if self.summary is None:
                logger.info(
                    "Summary stream ended without a summary",
                    extra=build_log_context(intake_id=str(self.intake_id), reason="not_persisted"),
                )
            generation_lease_service.release_lease(db, self.intake_id, self._holder)
            db.close()


def open_summary_stream(
    db: Session,
    intake_id: uuid.UUID,
    provider_id: uuid.UUID,
    *,
    ai: AIProvider,
    session_factory: sessionmaker,
) -> SummaryStream:
    """
    Check preconditions and take the lease, then hand back a stream.

    Ownership, state and lease errors are raised here, before any response
    has started; the returned stream releases the lease however it ends.
    """
    intake = load_intake_for_summary(db, provider_id, intake_id)
    messages = build_messages(intake)
    holder = generation_lease_service.acquire_lease(db, intake.id)
    return SummaryStream(
        intake_id=intake.id,
        provider_id=provider_id,
        holder=holder,
        messages=messages,
        ai=ai,
        session_factory=session_factory,
    )


# =============================================================================
# History
# =============================================================================


def _owned_summaries(db: Session, provider_id: uuid.UUID):
    return (
        db.query(Summary)
        .join(Intake, Summary.intake_id == Intake.id)
        .join(Patient, Intake.patient_id == Patient.id)
        .filter(Patient.provider_id == provider_id)
    )


def list_summaries(
    db: Session,
    provider_id: uuid.UUID,
    intake_id: uuid.UUID | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Summary], int]:
    """Summary history, newest first. The first row is the current summary."""
    query = _owned_summaries(db, provider_id)
    if intake_id:
        query = query.filter(Summary.intake_id == intake_id)
    total = query.count()
    items = (
        query.order_by(Summary.created_at.desc(), Summary.id)
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total


def get_summary(db: Session, provider_id: uuid.UUID, summary_id: uuid.UUID) -> Summary:
    summary = _owned_summaries(db, provider_id).filter(Summary.id == summary_id).first()
    if not summary:
        raise SummaryNotFoundError("summary_not_found", summary_id=str(summary_id))
    return summary
