"""track dispute deadline alerts

Revision ID: 0002_dispute_alert_stages
Revises: 0001_payment_core
Create Date: 2026-10-18 14:00:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision = "0002_dispute_alert_stages"
down_revision = "0001_payment_core"
branch_labels = None
depends_on = None


def upgrade() -> None:  # noqa: D401
    op.add_column(
        "disputes",
        sa.Column("alert_stages", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
    )


def downgrade() -> None:  # noqa: D401
    op.drop_column("disputes", "alert_stages")
