"""add campaign_sequences and campaign_steps

Revision ID: 3f9c1a7e2b4d
Revises:
Create Date: 2026-09-28 09:12:41.508113
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "3f9c1a7e2b4d"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "campaign_sequences",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_event", sa.String(length=100), nullable=True),
        sa.Column("is_default", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("org_id", "name", name="uq_campaign_sequences_org_name"),
    )
    op.create_index(op.f("ix_campaign_sequences_org_id"), "campaign_sequences", ["org_id"], unique=False)
    op.create_index("ix_campaign_sequences_org_active", "campaign_sequences", ["org_id", "is_active"], unique=False)
    # At most one default per org.
    op.create_index(
        "uq_campaign_sequences_org_default",
        "campaign_sequences",
        ["org_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "campaign_steps",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("sequence_id", sa.Integer(), sa.ForeignKey("campaign_sequences.id"), nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("delay_hours", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("subject_template", sa.String(length=255), nullable=True),
        sa.Column("body_template", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("step_number >= 1", name="ck_campaign_steps_step_number_positive"),
        sa.CheckConstraint("delay_hours >= 0", name="ck_campaign_steps_delay_nonnegative"),
        sa.CheckConstraint(
            "channel in ('SMS','EMAIL_PROFESSIONAL','EMAIL_PLAIN')",
            name="ck_campaign_steps_channel_valid",
        ),
    )
    op.create_index(op.f("ix_campaign_steps_sequence_id"), "campaign_steps", ["sequence_id"], unique=False)
    op.create_index(op.f("ix_campaign_steps_org_id"), "campaign_steps", ["org_id"], unique=False)
    op.create_index(
        "uq_campaign_steps_active_number",
        "campaign_steps",
        ["sequence_id", "step_number"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )


def downgrade() -> None:
    op.drop_index("uq_campaign_steps_active_number", table_name="campaign_steps")
    op.drop_index(op.f("ix_campaign_steps_org_id"), table_name="campaign_steps")
    op.drop_index(op.f("ix_campaign_steps_sequence_id"), table_name="campaign_steps")
    op.drop_table("campaign_steps")

    op.drop_index("uq_campaign_sequences_org_default", table_name="campaign_sequences")
    op.drop_index("ix_campaign_sequences_org_active", table_name="campaign_sequences")
    op.drop_index(op.f("ix_campaign_sequences_org_id"), table_name="campaign_sequences")
    op.drop_table("campaign_sequences")
