"""add campaign_subjects

Revision ID: c51a9e3d7f20
Revises: 8b2e6d0f4a1c
Create Date: 2026-09-30 14:05:19.774310
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "c51a9e3d7f20"
down_revision: Union[str, Sequence[str], None] = "8b2e6d0f4a1c"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "campaign_subjects",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Integer(), nullable=False),
        sa.Column("subject_type", sa.String(length=50), nullable=False),
        sa.Column("subject_id", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column(
            "attributes",
            postgresql.JSONB(astext_type=sa.Text()),
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
        ),
        sa.Column("goal_achieved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("org_id", "subject_type", "subject_id", name="uq_campaign_subjects_subject"),
    )
    op.create_index(op.f("ix_campaign_subjects_org_id"), "campaign_subjects", ["org_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_campaign_subjects_org_id"), table_name="campaign_subjects")
    op.drop_table("campaign_subjects")
