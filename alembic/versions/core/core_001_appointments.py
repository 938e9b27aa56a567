"""appointments and payments tables

Revision ID: core_001
Revises:
Create Date: 2026-10-01 00:00:00.000000

Baseline schema for fresh installs.  The appointment row doubles as the
mapping between a record and its calendar event: ``external_event_id`` is
unique among non-null values and NULL for consultations that were never
written to the calendar.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS appointments (
            id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
            external_event_id TEXT,
            patient_name TEXT NOT NULL DEFAULT '',
            patient_email TEXT NOT NULL DEFAULT '',
            patient_phone TEXT NOT NULL DEFAULT '',
            date DATE NOT NULL,
            time TIME NOT NULL,
            appointment_type TEXT NOT NULL DEFAULT 'consultation',
            status TEXT NOT NULL DEFAULT 'pending',
            notes TEXT NOT NULL DEFAULT '',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT appointments_status_check
                CHECK (status IN ('pending', 'confirmed', 'cancelled')),
            CONSTRAINT appointments_external_event_id_not_blank
                CHECK (external_event_id IS NULL OR btrim(external_event_id) <> '')
        )
        """
    )
    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_appointments_external_event_id
        ON appointments (external_event_id)
        WHERE external_event_id IS NOT NULL
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_appointments_created_at_id
        ON appointments (created_at DESC, id DESC)
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_appointments_date ON appointments (date)")

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS payments (
            id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
            stripe_payment_id TEXT NOT NULL UNIQUE,
            amount NUMERIC(12, 2) NOT NULL,
            currency CHAR(3) NOT NULL,
            status TEXT NOT NULL DEFAULT 'completed',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS payments")
    op.execute("DROP INDEX IF EXISTS ix_appointments_date")
    op.execute("DROP INDEX IF EXISTS ix_appointments_created_at_id")
    op.execute("DROP INDEX IF EXISTS uq_appointments_external_event_id")
    op.execute("DROP TABLE IF EXISTS appointments")
