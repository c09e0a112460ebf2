"""Domain error taxonomy.

Every error carries a public ``code``/``public_message`` pair that is safe to
return to callers, plus an internal ``reason`` that is only ever logged.
Link errors deliberately share one public code and message so that a caller
cannot probe which tokens exist.
"""

from __future__ import annotations

import uuid
from typing import Any


class IntakeCoreError(Exception):
    """Base exception for intake pipeline errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    public_message: str = "An unexpected error occurred."

    def __init__(self, reason: str | None = None, **context: Any) -> None:
        self.reason = reason or self.__class__.__name__
        self.context = context
        super().__init__(self.reason)

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.public_message}


# =============================================================================
# Links
# =============================================================================


class LinkError(IntakeCoreError):
    """Uniform public failure for unknown, expired and used links."""

    status_code = 410
    code = "LINK_UNAVAILABLE"
    public_message = "This intake link is invalid or no longer available."


class LinkNotFoundError(LinkError):
    pass


class LinkExpiredError(LinkError):
    pass


class LinkAlreadyUsedError(LinkError):
    """Link was already completed.

    When raised to the loser of a concurrent submission it carries the
    winner's intake id so the client can fetch it instead of retrying.
    """

    def __init__(self, reason: str | None = None, *, intake_id: uuid.UUID | None = None, **context: Any):
        super().__init__(reason, **context)
        self.intake_id = intake_id
        if intake_id is not None:
            self.status_code = 409

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.intake_id is not None:
            payload["intake_id"] = str(self.intake_id)
        return payload


# =============================================================================
# Identity verification
# =============================================================================


class VerificationFailedError(IntakeCoreError):
    status_code = 403
    code = "VERIFICATION_FAILED"
    public_message = "We could not verify your details."


class VerificationRequiredError(IntakeCoreError):
    status_code = 403
    code = "VERIFICATION_REQUIRED"
    public_message = "Identity verification is required before submitting this form."


# =============================================================================
# Validation / lookups
# =============================================================================


class IntakeValidationError(IntakeCoreError):
    """Field-level validation failure (safe to expose)."""

    status_code = 422
    code = "VALIDATION_ERROR"
    public_message = "The submitted data is invalid."

    def __init__(self, errors: list[dict[str, str]], reason: str | None = None):
        super().__init__(reason or "validation_failed")
        self.errors = errors

    @classmethod
    def for_field(cls, field: str, message: str) -> "IntakeValidationError":
        return cls([{"field": field, "message": message}])

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["errors"] = self.errors
        return payload


class NotFoundError(IntakeCoreError):
    status_code = 404
    code = "NOT_FOUND"
    public_message = "Resource not found."


class PatientNotFoundError(NotFoundError):
    public_message = "Patient not found."


class IntakeNotFoundError(NotFoundError):
    public_message = "Intake not found."


class RedFlagNotFoundError(NotFoundError):
    public_message = "Red flag not found."


class SummaryNotFoundError(NotFoundError):
    public_message = "Summary not found."


# =============================================================================
# State / concurrency
# =============================================================================


class InvalidStateTransitionError(IntakeCoreError):
    status_code = 409
    code = "INVALID_STATE"
    public_message = "This action is not allowed in the current state."


class ConcurrencyConflictError(IntakeCoreError):
    """Caller lost a race; it must re-fetch current state rather than retry blindly."""

    status_code = 409
    code = "CONCURRENCY_CONFLICT"
    public_message = "This record was changed by another request. Refresh and try again."


class GenerationInProgressError(ConcurrencyConflictError):
    code = "GENERATION_IN_PROGRESS"
    public_message = "A summary is already being generated for this intake."


# =============================================================================
# AI provider
# =============================================================================


class AIError(IntakeCoreError):
    retryable: bool = False


class AIUnavailableError(AIError):
    status_code = 503
    code = "AI_UNAVAILABLE"
    public_message = "Summary generation is temporarily unavailable. Please try again."
    retryable = True


class AITimeoutError(AIError):
    status_code = 504
    code = "AI_TIMEOUT"
    public_message = "Summary generation timed out. Please try again."
    retryable = True


class AIContentRejectedError(AIError):
    status_code = 422
    code = "AI_CONTENT_REJECTED"
    public_message = "A summary cannot be generated for this intake."
