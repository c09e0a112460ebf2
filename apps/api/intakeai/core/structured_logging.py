"""Structured logging helpers (PHI-safe)."""

import logging
from typing import Any

from intakeai.core.config import settings


def configure_logging() -> None:
    """Fallback console logging for the API process."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_log_context(
    *,
    provider_id: str | None = None,
    patient_id: str | None = None,
    link_id: str | None = None,
    intake_id: str | None = None,
    reason: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PHI-safe log context dict.

    Only identifiers and reason codes belong here; never tokens, dates of
    birth or free text from the intake.
    """
    context: dict[str, Any] = {}
    if provider_id:
        context["provider_id"] = str(provider_id)
    if patient_id:
        context["patient_id"] = str(patient_id)
    if link_id:
        context["link_id"] = str(link_id)
    if intake_id:
        context["intake_id"] = str(intake_id)
    if reason:
        context["reason"] = reason
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context
