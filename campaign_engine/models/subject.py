from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.schema import UniqueConstraint

from campaign_engine.database import Base


class CampaignSubject(Base):
    """Contact snapshot for a triggering subject, kept current by the host application."""

    __tablename__ = "campaign_subjects"

    id = Column(Integer, primary_key=True)

    org_id = Column(Integer, nullable=False, index=True)
    subject_type = Column(String(50), nullable=False)
    subject_id = Column(String(100), nullable=False)

    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    attributes = Column(JSONB, nullable=False, server_default="{}", default=dict)

    # External stop condition: the subject already completed the goal action.
    goal_achieved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("org_id", "subject_type", "subject_id", name="uq_campaign_subjects_subject"),
    )
