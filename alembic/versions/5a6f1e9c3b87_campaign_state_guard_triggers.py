"""campaign_state_guard_triggers

Revision ID: 5a6f1e9c3b87
Revises: e07d4b8a2c96
Create Date: 2026-10-03 16:22:08.613554

"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '5a6f1e9c3b87'
down_revision: Union[str, Sequence[str], None] = 'e07d4b8a2c96'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.execute(
        """
        CREATE OR REPLACE FUNCTION campaign_step_executions_guard()
        RETURNS trigger AS $$
        BEGIN
            IF NEW.scheduled_at IS DISTINCT FROM OLD.scheduled_at THEN
                RAISE EXCEPTION 'campaign_step_executions.scheduled_at is immutable';
            END IF;
            IF NEW.status = 'PENDING' AND OLD.status <> 'PENDING' THEN
                RAISE EXCEPTION 'campaign_step_executions cannot return to PENDING';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;

        DROP TRIGGER IF EXISTS trg_campaign_step_executions_guard ON campaign_step_executions;
        CREATE TRIGGER trg_campaign_step_executions_guard
        BEFORE UPDATE ON campaign_step_executions
        FOR EACH ROW
        EXECUTE FUNCTION campaign_step_executions_guard();

        CREATE OR REPLACE FUNCTION campaign_executions_guard()
        RETURNS trigger AS $$
        BEGIN
            IF OLD.status <> 'ACTIVE' AND NEW.status IS DISTINCT FROM OLD.status THEN
                RAISE EXCEPTION 'campaign_executions terminal status is final';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;

        DROP TRIGGER IF EXISTS trg_campaign_executions_guard ON campaign_executions;
        CREATE TRIGGER trg_campaign_executions_guard
        BEFORE UPDATE ON campaign_executions
        FOR EACH ROW
        EXECUTE FUNCTION campaign_executions_guard();
        """
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.execute(
        """
        DROP TRIGGER IF EXISTS trg_campaign_executions_guard ON campaign_executions;
        DROP FUNCTION IF EXISTS campaign_executions_guard();
        DROP TRIGGER IF EXISTS trg_campaign_step_executions_guard ON campaign_step_executions;
        DROP FUNCTION IF EXISTS campaign_step_executions_guard();
        """
    )
