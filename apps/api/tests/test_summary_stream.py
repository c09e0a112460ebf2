"""Tests for streamed summary generation and the SSE endpoint."""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from intakeai.core.exceptions import (
    AIContentRejectedError,
    AITimeoutError,
    AIUnavailableError,
    GenerationInProgressError,
)
from intakeai.db.models import Summary, SummaryGenerationLease
from intakeai.services import generation_lease_service, summary_service


@pytest.fixture
def open_stream(db: Session, submitted_intake, provider_id, fake_ai, session_factory):
    def _open():
        return summary_service.open_summary_stream(
            db, submitted_intake.id, provider_id, ai=fake_ai, session_factory=session_factory
        )

    return _open


@pytest.fixture
def fast_deadlines(monkeypatch):
    monkeypatch.setattr(summary_service.settings, "AI_REQUEST_DEADLINE_SECONDS", 0.05)
    monkeypatch.setattr(summary_service.settings, "AI_RETRY_BACKOFF_SECONDS", 0.0)


def _counts(session_factory) -> tuple[int, int]:
    """(summaries, leases) as seen by a fresh session."""
    with session_factory() as session:
        return session.query(Summary).count(), session.query(SummaryGenerationLease).count()


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.split("\n\n"):
        lines = block.strip().splitlines()
        event = next((line[len("event: "):] for line in lines if line.startswith("event: ")), None)
        data = next((line[len("data: "):] for line in lines if line.startswith("data: ")), None)
        if event and data:
            events.append((event, json.loads(data)))
    return events


# =============================================================================
# Service
# =============================================================================


@pytest.mark.asyncio
async def test_stream_yields_chunks_and_persists_once(open_stream, fake_ai, session_factory):
    stream = open_stream()
    texts = [text async for text in stream]

    assert texts == fake_ai.stream_parts
    assert stream.summary is not None
    assert stream.summary.content == "".join(fake_ai.stream_parts)
    assert stream.summary.tokens_used == 150
    assert stream.summary.created_at is not None
    assert _counts(session_factory) == (1, 0)


@pytest.mark.asyncio
async def test_closing_stream_halts_upstream_and_persists_nothing(
    open_stream, fake_ai, session_factory
):
    fake_ai.stream_parts = [f"part {i} " for i in range(50)]
    stream = open_stream()

    first = await stream.__anext__()
    assert first == "part 0 "
    await stream.aclose()

    assert fake_ai.stream_closed is True
    assert fake_ai.chunks_read == 1
    assert stream.summary is None
    assert _counts(session_factory) == (0, 0)


@pytest.mark.asyncio
async def test_closing_unstarted_stream_releases_lease(open_stream, fake_ai, session_factory):
    stream = open_stream()
    assert _counts(session_factory) == (0, 1)

    await stream.aclose()
    assert fake_ai.stream_calls == 0
    assert _counts(session_factory) == (0, 0)


@pytest.mark.asyncio
async def test_second_stream_rejected_while_first_is_open(open_stream):
    stream = open_stream()
    try:
        with pytest.raises(GenerationInProgressError):
            open_stream()
    finally:
        await stream.aclose()


@pytest.mark.asyncio
async def test_failure_before_first_chunk_is_retried(
    open_stream, fake_ai, session_factory, fast_deadlines
):
    fake_ai.failures = [AIUnavailableError("provider_transport_error")]
    stream = open_stream()
    texts = [text async for text in stream]

    assert fake_ai.stream_calls == 2
    assert "".join(texts) == "".join(fake_ai.stream_parts)
    assert _counts(session_factory) == (1, 0)


@pytest.mark.asyncio
async def test_lost_lease_stops_stream_retries(
    open_stream, fake_ai, session_factory, fast_deadlines, monkeypatch
):
    monkeypatch.setattr(generation_lease_service, "renew_lease", lambda *args: False)
    fake_ai.failures = [AIUnavailableError("provider_transport_error")]
    stream = open_stream()

    with pytest.raises(GenerationInProgressError):
        async for _ in stream:
            pass
    assert fake_ai.stream_calls == 1
    assert _counts(session_factory) == (0, 0)


@pytest.mark.asyncio
async def test_stall_after_first_chunk_fails_without_retry(
    open_stream, fake_ai, session_factory, fast_deadlines
):
    fake_ai.stall_after = 1
    stream = open_stream()
    received = []

    with pytest.raises(AITimeoutError):
        async for text in stream:
            received.append(text)

    assert received == [fake_ai.stream_parts[0]]
    assert fake_ai.stream_calls == 1
    assert fake_ai.stream_closed is True
    assert _counts(session_factory) == (0, 0)


@pytest.mark.asyncio
async def test_rejection_is_not_retried(open_stream, fake_ai, session_factory):
    fake_ai.failures = [AIContentRejectedError("candidate_blocked")]
    stream = open_stream()

    with pytest.raises(AIContentRejectedError):
        async for _ in stream:
            pass
    assert fake_ai.stream_calls == 1
    assert _counts(session_factory) == (0, 0)


# =============================================================================
# Endpoints
# =============================================================================


@pytest.mark.asyncio
async def test_stream_endpoint_emits_deltas_then_done(
    authed_client: AsyncClient, submitted_intake, fake_ai
):
    response = await authed_client.post(
        "/summaries/generate/stream", json={"intake_id": str(submitted_intake.id)}
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = _parse_sse(response.text)
    deltas = [data["text"] for event, data in events if event == "delta"]
    assert deltas == fake_ai.stream_parts
    assert events[-1][0] == "done"
    assert events[-1][1]["intake_id"] == str(submitted_intake.id)
    assert events[-1][1]["content"] == "".join(fake_ai.stream_parts)


@pytest.mark.asyncio
async def test_stream_endpoint_reports_errors_as_events(
    authed_client: AsyncClient, submitted_intake, fake_ai, session_factory
):
    fake_ai.failures = [AIContentRejectedError("candidate_blocked")]
    response = await authed_client.post(
        "/summaries/generate/stream", json={"intake_id": str(submitted_intake.id)}
    )
    events = _parse_sse(response.text)
    assert events[-1] == (
        "error",
        {"code": "AI_CONTENT_REJECTED", "message": AIContentRejectedError.public_message},
    )
    assert _counts(session_factory) == (0, 0)


@pytest.mark.asyncio
async def test_stream_endpoint_rejects_held_lease_before_streaming(
    authed_client: AsyncClient, db: Session, submitted_intake
):
    generation_lease_service.acquire_lease(db, submitted_intake.id)
    response = await authed_client.post(
        "/summaries/generate/stream", json={"intake_id": str(submitted_intake.id)}
    )
    assert response.status_code == 409
    assert response.json()["code"] == "GENERATION_IN_PROGRESS"


@pytest.mark.asyncio
async def test_generate_endpoint_and_history(authed_client: AsyncClient, submitted_intake):
    created = await authed_client.post(
        "/summaries/generate", json={"intake_id": str(submitted_intake.id)}
    )
    assert created.status_code == 201
    summary = created.json()

    listed = await authed_client.get("/summaries", params={"intake_id": str(submitted_intake.id)})
    assert listed.status_code == 200
    assert listed.json()["total"] == 1
    assert listed.json()["items"][0]["id"] == summary["id"]

    fetched = await authed_client.get(f"/summaries/{summary['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["content"] == summary["content"]


@pytest.mark.asyncio
async def test_generate_endpoint_maps_timeout(
    authed_client: AsyncClient, submitted_intake, fake_ai, fast_deadlines, monkeypatch
):
    monkeypatch.setattr(summary_service.settings, "AI_MAX_RETRIES", 0)
    fake_ai.delay = 1.0
    response = await authed_client.post(
        "/summaries/generate", json={"intake_id": str(submitted_intake.id)}
    )
    assert response.status_code == 504
    assert response.json()["code"] == "AI_TIMEOUT"


@pytest.mark.asyncio
async def test_unknown_summary_is_404(authed_client: AsyncClient):
    response = await authed_client.get("/summaries/00000000-0000-0000-0000-000000000000")
    assert response.status_code == 404
