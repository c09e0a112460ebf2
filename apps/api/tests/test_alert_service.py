"""Tests for the red flag alert hand-off."""

import json
import uuid

import httpx
import pytest

from intakeai.db.enums import RedFlagSeverity
from intakeai.services import alert_service
from intakeai.services.red_flag_service import DetectedFlag

WEBHOOK_URL = "https://alerts.example.test/hooks/red-flags"

CRITICAL = DetectedFlag(
    category="psychiatric",
    severity=RedFlagSeverity.CRITICAL,
    description="Suicidal ideation or self-harm reported",
    source_field="chief_complaint",
    matched_text="suicidal",
)
LOW = DetectedFlag(
    category="sleep",
    severity=RedFlagSeverity.LOW,
    description="Sleep disturbance",
    source_field="chief_complaint",
    matched_text="insomnia",
)


def test_fingerprint_is_stable_per_intake_and_category():
    intake_id = uuid.uuid4()
    assert alert_service.fingerprint(intake_id, "cardiac") == alert_service.fingerprint(
        intake_id, "cardiac"
    )
    assert alert_service.fingerprint(intake_id, "cardiac") != alert_service.fingerprint(
        intake_id, "respiratory"
    )


@pytest.mark.asyncio
async def test_nothing_sent_for_low_flags(monkeypatch):
    monkeypatch.setattr(alert_service.settings, "ALERT_WEBHOOK_URL", WEBHOOK_URL)

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("webhook must not be called")

    sent = await alert_service.dispatch_red_flag_alerts(
        uuid.uuid4(), [LOW], transport=httpx.MockTransport(handler)
    )
    assert sent is False


@pytest.mark.asyncio
async def test_without_webhook_alert_is_logged(monkeypatch, caplog):
    monkeypatch.setattr(alert_service.settings, "ALERT_WEBHOOK_URL", "")
    sent = await alert_service.dispatch_red_flag_alerts(uuid.uuid4(), [CRITICAL, LOW])
    assert sent is True
    assert "psychiatric/critical" in caplog.text
    assert "sleep" not in caplog.text


@pytest.mark.asyncio
async def test_webhook_payload_carries_no_free_text(monkeypatch):
    monkeypatch.setattr(alert_service.settings, "ALERT_WEBHOOK_URL", WEBHOOK_URL)
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(202)

    intake_id = uuid.uuid4()
    sent = await alert_service.dispatch_red_flag_alerts(
        intake_id, [CRITICAL, LOW], transport=httpx.MockTransport(handler)
    )
    assert sent is True
    assert captured == [
        {
            "event": "intake.red_flags",
            "intake_id": str(intake_id),
            "flags": [
                {
                    "category": "psychiatric",
                    "severity": "critical",
                    "dedupe_key": alert_service.fingerprint(intake_id, "psychiatric"),
                }
            ],
        }
    ]


@pytest.mark.asyncio
async def test_webhook_failure_is_not_raised(monkeypatch):
    monkeypatch.setattr(alert_service.settings, "ALERT_WEBHOOK_URL", WEBHOOK_URL)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    sent = await alert_service.dispatch_red_flag_alerts(
        uuid.uuid4(), [CRITICAL], transport=httpx.MockTransport(handler)
    )
    assert sent is False


@pytest.mark.asyncio
async def test_webhook_connection_error_is_not_raised(monkeypatch):
    monkeypatch.setattr(alert_service.settings, "ALERT_WEBHOOK_URL", WEBHOOK_URL)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    sent = await alert_service.dispatch_red_flag_alerts(
        uuid.uuid4(), [CRITICAL], transport=httpx.MockTransport(handler)
    )
    assert sent is False
