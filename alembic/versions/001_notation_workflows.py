"""Create the notation_workflows table.

Revision ID: 001
Create Date: 2026-10-19

One row per upload-to-text workflow. Status values are constrained to the
workflow state machine; expires_at drives the purge-expired maintenance task.
"""

from alembic import op

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE notation_workflows (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL
                CHECK (status IN ('initiated', 'stored', 'processing', 'completed', 'failed')),

            storage_bucket TEXT,
            storage_key TEXT,
            job_id TEXT,

            extracted_text TEXT,
            confidence DOUBLE PRECISION
                CHECK (confidence IS NULL OR (confidence >= 0 AND confidence <= 100)),
            error_message TEXT,

            metadata JSONB NOT NULL DEFAULT '{}',

            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            expires_at TIMESTAMPTZ NOT NULL
        )
        """
    )
    op.execute("CREATE INDEX idx_notation_workflows_expires_at ON notation_workflows (expires_at)")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS notation_workflows")
