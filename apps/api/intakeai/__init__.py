"""IntakeAI intake submission and clinical-signal API."""
