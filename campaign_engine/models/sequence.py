from __future__ import annotations

from enum import Enum

from sqlalchemy import (
    Boolean,
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


class ChannelType(Enum):
    SMS = "SMS"
    EMAIL_PROFESSIONAL = "EMAIL_PROFESSIONAL"
    EMAIL_PLAIN = "EMAIL_PLAIN"

    @property
    def is_email(self) -> bool:
        return self in (ChannelType.EMAIL_PROFESSIONAL, ChannelType.EMAIL_PLAIN)


class SequenceDefinition(Base):
    __tablename__ = "campaign_sequences"

    id = Column(Integer, primary_key=True)

    org_id = Column(Integer, nullable=False, index=True)

    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    trigger_event = Column(String(100), nullable=True)

    is_default = Column(Boolean, nullable=False, server_default="false", default=False)
    is_active = Column(Boolean, nullable=False, server_default="true", default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    steps = relationship(
        "StepDefinition",
        back_populates="sequence",
        order_by="StepDefinition.step_number",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("org_id", "name", name="uq_campaign_sequences_org_name"),
        Index(
            "uq_campaign_sequences_org_default",
            "org_id",
            unique=True,
            postgresql_where=text("is_default"),
        ),
        Index("ix_campaign_sequences_org_active", "org_id", "is_active"),
    )

    @property
    def active_steps(self) -> list[StepDefinition]:
        return [s for s in self.steps if s.is_active]


class StepDefinition(Base):
    __tablename__ = "campaign_steps"

    id = Column(Integer, primary_key=True)

    sequence_id = Column(Integer, ForeignKey("campaign_sequences.id"), nullable=False, index=True)
    org_id = Column(Integer, nullable=False, index=True)

    step_number = Column(Integer, nullable=False)
    delay_hours = Column(Integer, nullable=False, server_default="0", default=0)
    channel = Column(String(32), nullable=False)

    subject_template = Column(String(255), nullable=True)
    body_template = Column(Text, nullable=False)

    is_active = Column(Boolean, nullable=False, server_default="true", default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    sequence = relationship("SequenceDefinition", back_populates="steps")

    __table_args__ = (
        Index(
            "uq_campaign_steps_active_number",
            "sequence_id",
            "step_number",
            unique=True,
            postgresql_where=text("is_active"),
        ),
        CheckConstraint("step_number >= 1", name="ck_campaign_steps_step_number_positive"),
        CheckConstraint("delay_hours >= 0", name="ck_campaign_steps_delay_nonnegative"),
        CheckConstraint(
            "channel in ('SMS','EMAIL_PROFESSIONAL','EMAIL_PLAIN')",
            name="ck_campaign_steps_channel_valid",
        ),
    )
