from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from campaign_engine.core.config import get_settings
from campaign_engine.database import SessionLocal
from campaign_engine.models.execution import ExecutionInstance, ExecutionStatus, StepExecution, StepStatus
from campaign_engine.services.scheduler_service import list_active_org_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StuckExecution:
    org_id: int
    execution_id: int
    sequence_id: int
    subject_type: str
    subject_id: str
    oldest_pending_at: datetime
    overdue_minutes: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_stuck_executions(
    *,
    org_id: int,
    db: Session,
    now: Optional[datetime] = None,
    threshold_minutes: Optional[int] = None,
    limit: int = 100,
) -> List[StuckExecution]:
    """ACTIVE executions whose oldest PENDING step is overdue by more than the threshold.

    Reporting only; nothing is changed.
    """
    now = now or _utcnow()
    if threshold_minutes is None:
        threshold_minutes = get_settings().stuck_threshold_minutes
    cutoff = now - timedelta(minutes=int(threshold_minutes))

    oldest = func.min(StepExecution.scheduled_at).label("oldest_pending_at")
    rows = (
        db.query(
            ExecutionInstance.id,
            ExecutionInstance.sequence_id,
            ExecutionInstance.subject_type,
            ExecutionInstance.subject_id,
            oldest,
        )
        .join(StepExecution, StepExecution.execution_id == ExecutionInstance.id)
        .filter(
            ExecutionInstance.org_id == int(org_id),
            ExecutionInstance.status == ExecutionStatus.ACTIVE.value,
            StepExecution.org_id == int(org_id),
            StepExecution.status == StepStatus.PENDING.value,
            StepExecution.scheduled_at < cutoff,
        )
        .group_by(
            ExecutionInstance.id,
            ExecutionInstance.sequence_id,
            ExecutionInstance.subject_type,
            ExecutionInstance.subject_id,
        )
        .order_by(oldest.asc(), ExecutionInstance.id.asc())
        .limit(int(limit))
        .all()
    )

    return [
        StuckExecution(
            org_id=int(org_id),
            execution_id=int(r.id),
            sequence_id=int(r.sequence_id),
            subject_type=r.subject_type,
            subject_id=r.subject_id,
            oldest_pending_at=r.oldest_pending_at,
            overdue_minutes=int((now - r.oldest_pending_at).total_seconds() // 60),
        )
        for r in rows
    ]


def scan_stuck_executions(
    *,
    now: Optional[datetime] = None,
    threshold_minutes: Optional[int] = None,
) -> List[StuckExecution]:
    """Per-org sweep that logs a warning for every stuck execution."""
    now = now or _utcnow()
    found: List[StuckExecution] = []

    db = SessionLocal()
    try:
        for org_id in list_active_org_ids(db):
            stuck = find_stuck_executions(org_id=org_id, db=db, now=now, threshold_minutes=threshold_minutes)
            for item in stuck:
                logger.warning(
                    "Campaign execution appears stuck",
                    extra={
                        "org_id": item.org_id,
                        "execution_id": item.execution_id,
                        "sequence_id": item.sequence_id,
                        "overdue_minutes": item.overdue_minutes,
                    },
                )
            found.extend(stuck)
        db.rollback()
    finally:
        db.close()

    return found
