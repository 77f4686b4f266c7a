"""add campaign_executions and campaign_step_executions

Revision ID: 8b2e6d0f4a1c
Revises: 3f9c1a7e2b4d
Create Date: 2026-09-28 11:47:03.221907
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "8b2e6d0f4a1c"
down_revision: Union[str, Sequence[str], None] = "3f9c1a7e2b4d"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "campaign_executions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("sequence_id", sa.Integer(), sa.ForeignKey("campaign_sequences.id"), nullable=False),
        sa.Column("subject_type", sa.String(length=50), nullable=False),
        sa.Column("subject_id", sa.String(length=100), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("current_step", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("stop_reason", sa.String(length=255), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "status in ('ACTIVE','COMPLETED','CANCELLED','FAILED')",
            name="ck_campaign_executions_status_valid",
        ),
        sa.CheckConstraint(
            "(status = 'ACTIVE' AND completed_at IS NULL) OR (status <> 'ACTIVE' AND completed_at IS NOT NULL)",
            name="ck_campaign_executions_completed_at_consistent",
        ),
    )
    op.create_index(op.f("ix_campaign_executions_org_id"), "campaign_executions", ["org_id"], unique=False)
    op.create_index(op.f("ix_campaign_executions_sequence_id"), "campaign_executions", ["sequence_id"], unique=False)
    op.create_index("ix_campaign_executions_org_status", "campaign_executions", ["org_id", "status"], unique=False)
    op.create_index(
        "ix_campaign_executions_subject",
        "campaign_executions",
        ["org_id", "subject_type", "subject_id"],
        unique=False,
    )
    # At most one ACTIVE execution per subject.
    op.create_index(
        "uq_campaign_executions_active_subject",
        "campaign_executions",
        ["org_id", "subject_type", "subject_id"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )

    op.create_table(
        "campaign_step_executions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column(
            "execution_id",
            sa.Integer(),
            sa.ForeignKey("campaign_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_id", sa.Integer(), sa.ForeignKey("campaign_steps.id"), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("attempt_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("execution_id", "step_id", name="uq_campaign_step_executions_execution_step"),
        sa.CheckConstraint(
            "status in ('PENDING','SENT','DELIVERED','FAILED','SKIPPED')",
            name="ck_campaign_step_executions_status_valid",
        ),
    )
    op.create_index(op.f("ix_campaign_step_executions_org_id"), "campaign_step_executions", ["org_id"], unique=False)
    op.create_index(
        op.f("ix_campaign_step_executions_execution_id"),
        "campaign_step_executions",
        ["execution_id"],
        unique=False,
    )
    op.create_index(op.f("ix_campaign_step_executions_step_id"), "campaign_step_executions", ["step_id"], unique=False)
    op.create_index(
        "ix_campaign_step_executions_due",
        "campaign_step_executions",
        ["org_id", "status", "scheduled_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_campaign_step_executions_due", table_name="campaign_step_executions")
    op.drop_index(op.f("ix_campaign_step_executions_step_id"), table_name="campaign_step_executions")
    op.drop_index(op.f("ix_campaign_step_executions_execution_id"), table_name="campaign_step_executions")
    op.drop_index(op.f("ix_campaign_step_executions_org_id"), table_name="campaign_step_executions")
    op.drop_table("campaign_step_executions")

    op.drop_index("uq_campaign_executions_active_subject", table_name="campaign_executions")
    op.drop_index("ix_campaign_executions_subject", table_name="campaign_executions")
    op.drop_index("ix_campaign_executions_org_status", table_name="campaign_executions")
    op.drop_index(op.f("ix_campaign_executions_sequence_id"), table_name="campaign_executions")
    op.drop_index(op.f("ix_campaign_executions_org_id"), table_name="campaign_executions")
    op.drop_table("campaign_executions")
