"""Add progress column to Jobs table.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Add progress column to Jobs table."""
    op.add_column(
        "Jobs",
        sa.Column(
            "progress",
            sa.JSON(),
            nullable=True,
            comment="Finished steps, kept across retries",
        ),
    )


def downgrade() -> None:
    """Remove progress column from Jobs table."""
    with op.batch_alter_table("Jobs") as batch_op:
        batch_op.drop_column("progress")
