"""Intake core tables

Revision ID: 0001_intake_core
Revises:
Create Date: 2026-10-19

Patients (read-only mirror), intake links, intakes, red flags, summaries
and summary generation leases.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_intake_core'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create intake pipeline tables."""
    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Patients (PHI columns hold Fernet ciphertext)
    # ==========================================================================
    op.execute('''
        CREATE TABLE patients (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            provider_id UUID NOT NULL,
            full_name TEXT NOT NULL,
            date_of_birth TEXT,
            email TEXT,
            phone TEXT,
            external_ref VARCHAR(100),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_patients_provider ON patients(provider_id)')

    # ==========================================================================
    # Intake links (only the keyed token hash is stored)
    # ==========================================================================
    op.execute('''
        CREATE TABLE intake_links (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            patient_id UUID NOT NULL REFERENCES patients(id) ON DELETE CASCADE,
            created_by_provider_id UUID,
            token_hash VARCHAR(64) NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            expired_reason VARCHAR(20),
            requires_dob_verification BOOLEAN NOT NULL DEFAULT true,
            verification_attempts INTEGER NOT NULL DEFAULT 0,
            verified_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            expires_at TIMESTAMPTZ NOT NULL,
            used_at TIMESTAMPTZ,
            CONSTRAINT uq_intake_links_token_hash UNIQUE (token_hash),
            CONSTRAINT ck_intake_links_status CHECK (status IN ('pending', 'completed', 'expired'))
        )
    ''')
    op.execute('CREATE INDEX idx_intake_links_patient_status ON intake_links(patient_id, status)')

    # ==========================================================================
    # Intakes
    # ==========================================================================
    op.execute('''
        CREATE TABLE intakes (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            patient_id UUID NOT NULL REFERENCES patients(id) ON DELETE CASCADE,
            intake_link_id UUID NOT NULL REFERENCES intake_links(id) ON DELETE RESTRICT,
            demographics TEXT NOT NULL,
            chief_complaint TEXT NOT NULL,
            medical_history JSON NOT NULL,
            medications JSON NOT NULL,
            allergies JSON NOT NULL,
            social_history JSON NOT NULL,
            review_of_systems JSON NOT NULL,
            additional_concerns TEXT,
            status VARCHAR(30) NOT NULL DEFAULT 'ready_for_review',
            submitted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            reviewed_at TIMESTAMPTZ,
            reviewed_by_provider_id UUID,
            CONSTRAINT uq_intakes_link UNIQUE (intake_link_id),
            CONSTRAINT ck_intakes_status CHECK (status IN ('ready_for_review', 'reviewed'))
        )
    ''')
    op.execute('CREATE INDEX idx_intakes_patient ON intakes(patient_id)')
    op.execute('CREATE INDEX idx_intakes_status ON intakes(status)')

    # ==========================================================================
    # Red flags
    # ==========================================================================
    op.execute('''
        CREATE TABLE red_flags (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            intake_id UUID NOT NULL REFERENCES intakes(id) ON DELETE CASCADE,
            category VARCHAR(50) NOT NULL,
            severity VARCHAR(20) NOT NULL,
            description VARCHAR(500) NOT NULL,
            source_field VARCHAR(100) NOT NULL,
            matched_text VARCHAR(200),
            rank INTEGER NOT NULL,
            detected_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            acknowledged BOOLEAN NOT NULL DEFAULT false,
            acknowledged_at TIMESTAMPTZ,
            acknowledged_by_provider_id UUID,
            CONSTRAINT uq_red_flags_intake_category UNIQUE (intake_id, category)
        )
    ''')
    op.execute('CREATE INDEX idx_red_flags_intake ON red_flags(intake_id)')

    # ==========================================================================
    # Summaries (append-only) and generation leases
    # ==========================================================================
    op.execute('''
        CREATE TABLE summaries (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            intake_id UUID NOT NULL REFERENCES intakes(id) ON DELETE CASCADE,
            content TEXT NOT NULL,
            model_id VARCHAR(100) NOT NULL,
            tokens_used INTEGER,
            generated_by_provider_id UUID,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_summaries_intake_created ON summaries(intake_id, created_at)')

    op.execute('''
        CREATE TABLE summary_generation_leases (
            intake_id UUID PRIMARY KEY REFERENCES intakes(id) ON DELETE CASCADE,
            holder VARCHAR(64) NOT NULL,
            acquired_at TIMESTAMPTZ NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL
        )
    ''')


def downgrade() -> None:
    """Drop intake pipeline tables."""
    op.execute('DROP TABLE IF EXISTS summary_generation_leases')
    op.execute('DROP TABLE IF EXISTS summaries')
    op.execute('DROP TABLE IF EXISTS red_flags')
    op.execute('DROP TABLE IF EXISTS intakes')
    op.execute('DROP TABLE IF EXISTS intake_links')
    op.execute('DROP TABLE IF EXISTS patients')
