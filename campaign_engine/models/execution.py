from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.schema import Index, UniqueConstraint

from campaign_engine.database import Base


class ExecutionStatus(Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class StepStatus(Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ExecutionInstance(Base):
    __tablename__ = "campaign_executions"

    id = Column(Integer, primary_key=True)

    org_id = Column(Integer, nullable=False, index=True)
    sequence_id = Column(Integer, ForeignKey("campaign_sequences.id"), nullable=False, index=True)

    # Triggering subject, e.g. ("review_request", "812") or ("customer", "77")
    subject_type = Column(String(50), nullable=False)
    subject_id = Column(String(100), nullable=False)

    status = Column(String(20), nullable=False, default=ExecutionStatus.ACTIVE.value)
    current_step = Column(Integer, nullable=False, server_default="1", default=1)
    stop_reason = Column(String(255), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    step_executions = relationship(
        "StepExecution",
        back_populates="execution",
        order_by="StepExecution.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "uq_campaign_executions_active_subject",
            "org_id",
            "subject_type",
            "subject_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_campaign_executions_org_status", "org_id", "status"),
        Index("ix_campaign_executions_subject", "org_id", "subject_type", "subject_id"),
        CheckConstraint(
            "status in ('ACTIVE','COMPLETED','CANCELLED','FAILED')",
            name="ck_campaign_executions_status_valid",
        ),
        CheckConstraint(
            "(status = 'ACTIVE' AND completed_at IS NULL) OR (status <> 'ACTIVE' AND completed_at IS NOT NULL)",
            name="ck_campaign_executions_completed_at_consistent",
        ),
    )

    @property
    def is_finished(self) -> bool:
        return self.status != ExecutionStatus.ACTIVE.value


class StepExecution(Base):
    __tablename__ = "campaign_step_executions"

    id = Column(Integer, primary_key=True)

    org_id = Column(Integer, nullable=False, index=True)
    execution_id = Column(
        Integer,
        ForeignKey("campaign_executions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id = Column(Integer, ForeignKey("campaign_steps.id"), nullable=False, index=True)

    # Snapshot of the definition at schedule time
    step_number = Column(Integer, nullable=False)
    channel = Column(String(32), nullable=False)

    scheduled_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(String(20), nullable=False, default=StepStatus.PENDING.value)
    error_detail = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    attempt_count = Column(Integer, nullable=False, server_default="0", default=0)

    delivered_at = Column(DateTime(timezone=True), nullable=True)
    opened_at = Column(DateTime(timezone=True), nullable=True)
    clicked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    execution = relationship("ExecutionInstance", back_populates="step_executions")
    step = relationship("StepDefinition")

    __table_args__ = (
        UniqueConstraint("execution_id", "step_id", name="uq_campaign_step_executions_execution_step"),
        Index("ix_campaign_step_executions_due", "org_id", "status", "scheduled_at"),
        CheckConstraint(
            "status in ('PENDING','SENT','DELIVERED','FAILED','SKIPPED')",
            name="ck_campaign_step_executions_status_valid",
        ),
    )

    @property
    def is_pending(self) -> bool:
        return self.status == StepStatus.PENDING.value
