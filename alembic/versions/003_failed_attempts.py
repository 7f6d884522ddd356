"""Failed login counters.

One row per (ip_address, identifier).  Rows are restarted in place when
their window lapses, so the table only grows with distinct keys.

Revision ID: 003
Revises: 002
Create Date: 2026-10-19
"""

import sqlalchemy as sa

from alembic import op

revision = "003"
down_revision = "002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "failed_attempts",
        sa.Column("ip_address", sa.String(), nullable=False),
        sa.Column("identifier", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reset", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("ip_address", "identifier"),
    )
    op.create_index("ix_failed_attempts_last_reset", "failed_attempts", ["last_reset"])


def downgrade() -> None:
    op.drop_index("ix_failed_attempts_last_reset", table_name="failed_attempts")
    op.drop_table("failed_attempts")
