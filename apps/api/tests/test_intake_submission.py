"""Tests for intake submission ingestion."""

import pytest
from httpx import AsyncClient
from sqlalchemy import text
from sqlalchemy.orm import Session

from intakeai.core.exceptions import LinkAlreadyUsedError, LinkExpiredError
from intakeai.db.enums import LinkExpiryReason
from intakeai.db.models import Intake, RedFlag
from intakeai.services import (
    alert_service,
    identity_verification_service,
    intake_link_service,
    intake_submission_service,
)

FORM = {
    "chief_complaint": "Crushing chest pain since this morning",
    "demographics": {"sex": "male", "phone": "555-0199", "email": "pat@mailbox.org"},
    "medical_history": {"conditions": ["Hypertension"]},
    "medications": [{"name": "Lisinopril", "dosage": "10mg", "frequency": "daily"}],
    "allergies": [{"allergen": "Penicillin", "reaction": "mild rash"}],
    "review_of_systems": {"skin": "Mild rash on both arms"},
}


async def _verified_access(client: AsyncClient, token: str) -> dict:
    response = await client.post(
        f"/intake-links/{token}/verify", json={"date_of_birth": "1985-04-12"}
    )
    assert response.status_code == 200
    return {"X-Intake-Access": response.json()["access_token"]}


@pytest.mark.asyncio
async def test_submit_then_resubmit_returns_same_intake(
    client: AsyncClient, db: Session, new_link
):
    issued = new_link()
    headers = await _verified_access(client, issued.token)

    first = await client.post(f"/intake-links/{issued.token}/submit", json=FORM, headers=headers)
    assert first.status_code == 201
    first_body = first.json()
    assert first_body["created"] is True
    assert first_body["status"] == "ready_for_review"

    second = await client.post(f"/intake-links/{issued.token}/submit", json=FORM, headers=headers)
    assert second.status_code == 200
    assert second.json()["intake_id"] == first_body["intake_id"]
    assert second.json()["created"] is False

    assert db.query(Intake).count() == 1
    db.refresh(issued.link)
    assert issued.link.status == "completed"
    assert issued.link.used_at is not None


@pytest.mark.asyncio
async def test_submit_without_verification_is_refused(client: AsyncClient, db: Session, new_link):
    issued = new_link()
    response = await client.post(f"/intake-links/{issued.token}/submit", json=FORM)
    assert response.status_code == 403
    assert response.json()["code"] == "VERIFICATION_REQUIRED"

    db.refresh(issued.link)
    assert issued.link.status == "pending"
    assert db.query(Intake).count() == 0


@pytest.mark.asyncio
async def test_grant_from_another_link_is_refused(client: AsyncClient, db: Session, new_link):
    other = new_link(require_dob=False)
    grant = identity_verification_service.verify_identity(db, other.token, "1985-04-12")
    issued = new_link()

    response = await client.post(
        f"/intake-links/{issued.token}/submit",
        json=FORM,
        headers={"X-Intake-Access": grant.access_token},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_submit_persists_ranked_red_flags(client: AsyncClient, db: Session, new_link):
    issued = new_link(require_dob=False)
    response = await client.post(f"/intake-links/{issued.token}/submit", json=FORM)
    assert response.status_code == 201

    flags = db.query(RedFlag).order_by(RedFlag.rank).all()
    assert [(f.category, f.severity) for f in flags] == [
        ("cardiac", "critical"),
        ("dermatological", "low"),
    ]
    assert [f.rank for f in flags] == [0, 1]
    assert all(f.acknowledged is False for f in flags)


@pytest.mark.asyncio
async def test_critical_flags_are_handed_to_alerting(client: AsyncClient, new_link, monkeypatch):
    dispatched = []

    async def fake_dispatch(intake_id, flags, **kwargs):
        dispatched.append((intake_id, [f.category for f in flags]))
        return True

    monkeypatch.setattr(alert_service, "dispatch_red_flag_alerts", fake_dispatch)
    issued = new_link(require_dob=False)
    response = await client.post(f"/intake-links/{issued.token}/submit", json=FORM)
    assert response.status_code == 201

    assert len(dispatched) == 1
    assert str(dispatched[0][0]) == response.json()["intake_id"]
    assert "cardiac" in dispatched[0][1]


@pytest.mark.asyncio
async def test_low_only_flags_are_not_alerted(client: AsyncClient, new_link, monkeypatch):
    dispatched = []

    async def fake_dispatch(intake_id, flags, **kwargs):
        dispatched.append(intake_id)
        return True

    monkeypatch.setattr(alert_service, "dispatch_red_flag_alerts", fake_dispatch)
    issued = new_link(require_dob=False)
    response = await client.post(
        f"/intake-links/{issued.token}/submit",
        json={"chief_complaint": "Itchy skin and a mild rash"},
    )
    assert response.status_code == 201
    assert dispatched == []


@pytest.mark.asyncio
async def test_invalid_payload_names_the_field(client: AsyncClient, db: Session, new_link):
    issued = new_link(require_dob=False)
    response = await client.post(
        f"/intake-links/{issued.token}/submit", json={"demographics": {"sex": "female"}}
    )
    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert "chief_complaint" in [error["field"] for error in body["errors"]]

    db.refresh(issued.link)
    assert issued.link.status == "pending"


@pytest.mark.asyncio
async def test_unknown_fields_are_rejected(client: AsyncClient, new_link):
    issued = new_link(require_dob=False)
    response = await client.post(
        f"/intake-links/{issued.token}/submit",
        json={"chief_complaint": "Cough", "favourite_colour": "blue"},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_oversized_text_is_rejected(client: AsyncClient, new_link):
    issued = new_link(require_dob=False)
    response = await client.post(
        f"/intake-links/{issued.token}/submit", json={"chief_complaint": "x" * 2001}
    )
    assert response.status_code == 422


def test_concurrent_loser_gets_winners_intake(db: Session, new_link, make_submission):
    issued = new_link(require_dob=False)
    link = intake_link_service.validate_token(db, issued.token)

    winner = intake_submission_service.persist_submission(db, link, make_submission())

    # A second request that validated the same pending link before the flip
    with pytest.raises(LinkAlreadyUsedError) as exc_info:
        intake_submission_service.persist_submission(
            db, link, make_submission(chief_complaint="Different answer")
        )
    error = exc_info.value
    assert error.status_code == 409
    assert error.intake_id == winner.intake.id
    assert error.to_payload()["intake_id"] == str(winner.intake.id)
    assert db.query(Intake).count() == 1


def test_submission_after_expiry_flip_is_rejected(db: Session, new_link, make_submission):
    issued = new_link(require_dob=False)
    link = intake_link_service.validate_token(db, issued.token)
    intake_link_service.expire_link(db, link, LinkExpiryReason.TTL)

    with pytest.raises(LinkExpiredError):
        intake_submission_service.persist_submission(db, link, make_submission())
    assert db.query(Intake).count() == 0


def test_demographics_are_encrypted_at_rest(db: Session, submitted_intake):
    raw = db.execute(
        text("SELECT demographics FROM intakes WHERE id = :id"),
        {"id": submitted_intake.id.hex},
    ).scalar_one()
    assert raw.startswith("enc:")
    assert "jordan@mailbox.org" not in raw

    db.expire_all()
    intake = db.get(Intake, submitted_intake.id)
    assert intake.demographics["email"] == "jordan@mailbox.org"
