"""
Red flag alert hand-off.

Hands CRITICAL/HIGH flags to the external notification collaborator. Delivery
is fire-and-forget: this runs after the submission has committed and a
failure here is logged, never surfaced to the patient.
"""

import hashlib
import logging
from uuid import UUID

import httpx

from intakeai.core.config import settings
from intakeai.core.structured_logging import build_log_context
from intakeai.services.red_flag_service import DetectedFlag, alertable

logger = logging.getLogger(__name__)


def fingerprint(intake_id: UUID, category: str) -> str:
    """Stable dedupe key so the collaborator can drop repeated hand-offs."""
    normalized = f"red_flag:{intake_id}:{category}"
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def build_alert_payload(intake_id: UUID, flags: list[DetectedFlag]) -> dict:
    """PHI-free payload: identifiers, categories and severities only."""
    return {
        "event": "intake.red_flags",
        "intake_id": str(intake_id),
        "flags": [
            {
                "category": flag.category,
                "severity": flag.severity.value,
                "dedupe_key": fingerprint(intake_id, flag.category),
            }
            for flag in flags
        ],
    }


async def dispatch_red_flag_alerts(
    intake_id: UUID,
    flags: list[DetectedFlag],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Send alertable flags to the webhook. Returns True when handed off."""
    to_send = alertable(flags)
    if not to_send:
        return False

    payload = build_alert_payload(intake_id, to_send)
    log_context = build_log_context(intake_id=str(intake_id))

    if not settings.ALERT_WEBHOOK_URL:
        logger.warning(
            "Red flag alert (no webhook configured): %s",
            ", ".join(f"{f.category}/{f.severity.value}" for f in to_send),
            extra=log_context,
        )
        return True

    try:
        async with httpx.AsyncClient(
            timeout=settings.ALERT_WEBHOOK_TIMEOUT_SECONDS, transport=transport
        ) as client:
            response = await client.post(settings.ALERT_WEBHOOK_URL, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.error(
            "Red flag alert hand-off failed: %s",
            exc.__class__.__name__,
            extra={**log_context, "reason": "alert_delivery_failed"},
        )
        return False

    logger.info("Red flag alert handed off (%s flags)", len(to_send), extra=log_context)
    return True
