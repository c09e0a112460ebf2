"""
Test configuration and fixtures.

Provides:
- A fresh SQLite database per test (schema from Base.metadata)
- Session-token minting for provider-authenticated tests
- HTTPX AsyncClients with the database and AI provider overridden
- A configurable fake AI provider that counts its calls
"""
import os
import tempfile
import uuid
from datetime import date
from typing import AsyncGenerator, Generator

import anyio
import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Settings are read at import time, so the environment must be ready first.
_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="intakeai-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_BOOTSTRAP_DIR}/bootstrap.db"
os.environ["TESTING"] = "1"
os.environ["DATA_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["TOKEN_HASH_KEY"] = "test-token-hash-key"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["AI_API_KEY"] = ""
os.environ["ALERT_WEBHOOK_URL"] = ""

from intakeai.core.deps import get_ai_provider, get_db, get_session_factory
from intakeai.core.security import create_session_token
from intakeai.db.base import Base
from intakeai.db.models import Intake, Patient
from intakeai.main import app
from intakeai.schemas.intake import IntakeSubmission
from intakeai.services import intake_link_service, intake_submission_service
from intakeai.services.ai_provider import AIProvider, ChatResponse, ChatStreamChunk

PATIENT_DOB = date(1985, 4, 12)


# =============================================================================
# Fake AI provider
# =============================================================================


class FakeAIProvider(AIProvider):
    """
    In-memory provider.

    ``failures`` are raised in order (one per call) before calls succeed;
    ``delay`` sleeps before answering so deadline handling can be exercised;
    ``stall_after`` makes a stream hang once that many chunks were sent.
    """

    default_model = "fake-model-1"

    def __init__(self):
        self.chat_calls = 0
        self.stream_calls = 0
        self.chunks_read = 0
        self.stream_closed = False
        self.failures: list[Exception] = []
        self.delay = 0.0
        self.stall_after: int | None = None
        self.content = "Chief complaint: chest pain. Red flags: cardiac (HIGH)."
        self.stream_parts = ["Chief complaint: ", "chest pain. ", "Red flags: cardiac (HIGH)."]
        self.last_messages = None

    async def chat(self, messages, model=None, temperature=0.2, max_tokens=2000):
        self.chat_calls += 1
        self.last_messages = messages
        if self.delay:
            await anyio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return ChatResponse(
            content=self.content,
            prompt_tokens=100,
            completion_tokens=50,
            total_tokens=150,
            model=self.default_model,
        )

    async def stream_chat(self, messages, model=None, temperature=0.2, max_tokens=2000):
        self.stream_calls += 1
        self.last_messages = messages
        try:
            if self.delay:
                await anyio.sleep(self.delay)
            if self.failures:
                raise self.failures.pop(0)
            for part in self.stream_parts:
                if self.stall_after is not None and self.chunks_read >= self.stall_after:
                    await anyio.sleep(60)
                self.chunks_read += 1
                yield ChatStreamChunk(text=part, model=self.default_model)
            yield ChatStreamChunk(
                text="",
                model=self.default_model,
                prompt_tokens=100,
                completion_tokens=50,
                total_tokens=150,
                is_final=True,
            )
        finally:
            self.stream_closed = True


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def engine(tmp_path):
    test_engine = create_engine(
        f"sqlite:///{tmp_path}/intake.db", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def provider_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture(scope="function")
def patient(db: Session, provider_id: uuid.UUID) -> Patient:
    """A patient owned by ``provider_id``."""
    record = Patient(
        provider_id=provider_id,
        full_name="Jordan Rivera",
        date_of_birth=PATIENT_DOB,
        email="jordan@mailbox.org",
        phone="555-0100",
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


@pytest.fixture(scope="function")
def fake_ai() -> FakeAIProvider:
    return FakeAIProvider()


@pytest.fixture(scope="function")
def make_submission():
    def _make(**overrides) -> IntakeSubmission:
        data = {"chief_complaint": "Mild headache for two days"}
        data.update(overrides)
        return IntakeSubmission.model_validate(data)

    return _make


# =============================================================================
# Client Fixtures
# =============================================================================


def _install_overrides(db: Session, session_factory: sessionmaker, fake_ai: FakeAIProvider):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_ai_provider] = lambda: fake_ai


@pytest.fixture(scope="function")
async def client(db, session_factory, fake_ai) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client for the public patient endpoints."""
    _install_overrides(db, session_factory, fake_ai)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(
    db, session_factory, fake_ai, provider_id
) -> AsyncGenerator[AsyncClient, None]:
    """Client carrying a provider session token."""
    _install_overrides(db, session_factory, fake_ai)
    token = create_session_token(provider_id)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {token}"},
    ) as c:
        yield c
    app.dependency_overrides.clear()


# =============================================================================
# Intake Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def new_link(db: Session, provider_id: uuid.UUID, patient: Patient):
    """Issue a link for ``patient``; returns the IssuedLink (raw token included)."""

    def _issue(**kwargs):
        return intake_link_service.issue_link(db, provider_id, patient.id, **kwargs)

    return _issue


@pytest.fixture(scope="function")
def submitted_intake(db: Session, new_link, make_submission) -> Intake:
    """A READY_FOR_REVIEW intake with one HIGH cardiac flag."""
    issued = new_link(require_dob=False)
    result = intake_submission_service.submit(
        db,
        issued.token,
        make_submission(
            chief_complaint="Chest pain when climbing stairs",
            demographics={"sex": "female", "email": "jordan@mailbox.org"},
        ),
    )
    return result.intake
