"""Intake pipeline enums."""

from enum import Enum


class IntakeLinkStatus(str, Enum):
    """Lifecycle of a one-time intake link."""

    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class LinkExpiryReason(str, Enum):
    """Why a link left PENDING for EXPIRED."""

    TTL = "ttl"
    ATTEMPTS = "attempts"
    SUPERSEDED = "superseded"


class IntakeStatus(str, Enum):
    """Review status of a submitted intake."""

    READY_FOR_REVIEW = "ready_for_review"
    REVIEWED = "reviewed"


class RedFlagSeverity(str, Enum):
    """Ordered severity taxonomy (LOW < MEDIUM < HIGH < CRITICAL)."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def requires_alert(self) -> bool:
        return self.rank >= _SEVERITY_RANK[RedFlagSeverity.HIGH]


_SEVERITY_RANK = {
    RedFlagSeverity.LOW: 1,
    RedFlagSeverity.MEDIUM: 2,
    RedFlagSeverity.HIGH: 3,
    RedFlagSeverity.CRITICAL: 4,
}
