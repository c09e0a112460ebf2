"""Enum definitions for application constants."""

from intakeai.db.enums.intake import (
    IntakeLinkStatus,
    IntakeStatus,
    LinkExpiryReason,
    RedFlagSeverity,
)

__all__ = [
    "IntakeLinkStatus",
    "IntakeStatus",
    "LinkExpiryReason",
    "RedFlagSeverity",
]
