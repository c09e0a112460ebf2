"""SQLAlchemy ORM models."""

from intakeai.db.models.patients import Patient
from intakeai.db.models.intake_links import IntakeLink
from intakeai.db.models.intakes import Intake, RedFlag
from intakeai.db.models.summaries import Summary, SummaryGenerationLease

__all__ = [
    "Patient",
    "IntakeLink",
    "Intake",
    "RedFlag",
    "Summary",
    "SummaryGenerationLease",
]
