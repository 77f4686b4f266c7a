from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from campaign_engine.core.errors import NotFoundError, ValidationError
from campaign_engine.models.subject import CampaignSubject
from campaign_engine.services import execution_service
from campaign_engine.services.channels import SubjectContact

logger = logging.getLogger(__name__)

GOAL_ACHIEVED_REASON = "goal achieved"

MAX_NAME_LENGTH = 255
MAX_EMAIL_LENGTH = 255
MAX_PHONE_LENGTH = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _bounded(value: str, field: str, limit: int) -> Optional[str]:
    cleaned = value.strip() or None
    if cleaned is not None and len(cleaned) > limit:
        raise ValidationError(f"{field} must be at most {limit} characters")
    return cleaned


def get_subject(*, org_id: int, subject_type: str, subject_id: str, db: Session) -> Optional[CampaignSubject]:
    st, sid = execution_service.clean_subject_key(subject_type, subject_id)
    return (
        db.query(CampaignSubject)
        .filter(
            CampaignSubject.org_id == int(org_id),
            CampaignSubject.subject_type == st,
            CampaignSubject.subject_id == sid,
        )
        .first()
    )


def upsert_subject(
    *,
    org_id: int,
    subject_type: str,
    subject_id: str,
    db: Session,
    name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None,
) -> CampaignSubject:
    st, sid = execution_service.clean_subject_key(subject_type, subject_id)

    row = (
        db.query(CampaignSubject)
        .filter(
            CampaignSubject.org_id == int(org_id),
            CampaignSubject.subject_type == st,
            CampaignSubject.subject_id == sid,
        )
        .with_for_update()
        .first()
    )
    if row is None:
        row = CampaignSubject(org_id=int(org_id), subject_type=st, subject_id=sid, attributes={})
        db.add(row)

    if name is not None:
        row.name = _bounded(name, "name", MAX_NAME_LENGTH)
    if email is not None:
        row.email = _bounded(email, "email", MAX_EMAIL_LENGTH)
    if phone is not None:
        row.phone = _bounded(phone, "phone", MAX_PHONE_LENGTH)
    if attributes is not None:
        row.attributes = dict(attributes)

    row.updated_at = _utcnow()
    db.flush()
    return row


def mark_goal_achieved(
    *,
    org_id: int,
    subject_type: str,
    subject_id: str,
    db: Session,
    stop_active: bool = True,
    now: Optional[datetime] = None,
) -> CampaignSubject:
    """Record the external stop condition for a subject.

    With stop_active the subject's active execution is stopped right away;
    the poller re-checks before every dispatch either way, counting only an
    achievement at or after the execution started.
    """
    now = now or _utcnow()
    row = upsert_subject(org_id=org_id, subject_type=subject_type, subject_id=subject_id, db=db)
    # Latest achievement wins; the stop check compares it with each execution start.
    if row.goal_achieved_at is None or row.goal_achieved_at < now:
        row.goal_achieved_at = now
        row.updated_at = now
        db.flush()

    logger.info(
        "Subject goal achieved",
        extra={"org_id": int(org_id), "subject": f"{row.subject_type}:{row.subject_id}"},
    )

    if stop_active:
        active = execution_service.find_active_execution(
            org_id=org_id,
            subject_type=row.subject_type,
            subject_id=row.subject_id,
            db=db,
        )
        if active is not None:
            execution_service.stop(
                org_id=org_id,
                execution_id=active.id,
                reason=GOAL_ACHIEVED_REASON,
                db=db,
                now=now,
            )

    return row


class DatabaseSubjectResolver:
    """Resolves contacts from campaign_subjects at dispatch time."""

    def resolve(self, db: Session, *, org_id: int, subject_type: str, subject_id: str) -> SubjectContact:
        row = get_subject(org_id=org_id, subject_type=subject_type, subject_id=subject_id, db=db)
        if row is None:
            raise NotFoundError(f"Campaign subject not found: {subject_type}:{subject_id}")

        return SubjectContact(
            org_id=int(row.org_id),
            subject_type=row.subject_type,
            subject_id=row.subject_id,
            name=row.name,
            email=row.email,
            phone=row.phone,
            goal_achieved=row.goal_achieved_at is not None,
            goal_achieved_at=row.goal_achieved_at,
            attributes=dict(row.attributes or {}),
        )
