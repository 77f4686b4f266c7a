"""add trigger_events table

Revision ID: e07d4b8a2c96
Revises: c51a9e3d7f20
Create Date: 2026-10-02 10:31:56.090412
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "e07d4b8a2c96"
down_revision: Union[str, Sequence[str], None] = "c51a9e3d7f20"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "trigger_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("processed", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("org_id", "event_type", "idempotency_key", name="uq_trigger_events_idempotency"),
    )

    op.create_index("ix_trigger_events_processed", "trigger_events", ["processed", "created_at"], unique=False)
    op.create_index(op.f("ix_trigger_events_org_id"), "trigger_events", ["org_id"], unique=False)
    op.create_index(op.f("ix_trigger_events_event_type"), "trigger_events", ["event_type"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_trigger_events_event_type"), table_name="trigger_events")
    op.drop_index(op.f("ix_trigger_events_org_id"), table_name="trigger_events")
    op.drop_index("ix_trigger_events_processed", table_name="trigger_events")
    op.drop_table("trigger_events")
