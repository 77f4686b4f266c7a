from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import and_, extract, func, or_
from sqlalchemy.orm import Session

from campaign_engine.models.execution import ExecutionInstance, ExecutionStatus, StepExecution, StepStatus
from campaign_engine.models.sequence import ChannelType, SequenceDefinition
from campaign_engine.models.subject import CampaignSubject
from campaign_engine.services import sequence_service
from campaign_engine.services.subject_service import GOAL_ACHIEVED_REASON

EMAIL_CHANNELS = (ChannelType.EMAIL_PROFESSIONAL.value, ChannelType.EMAIL_PLAIN.value)
SMS_CHANNELS = (ChannelType.SMS.value,)

_SENT_STATUSES = (StepStatus.SENT.value, StepStatus.DELIVERED.value)


def _rate(numerator: int, denominator: int) -> float:
    """Percentage rounded to 2 places; 0.0 when there is nothing to divide by."""
    if not denominator:
        return 0.0
    return round(100.0 * float(numerator) / float(denominator), 2)


def _executions(
    db: Session,
    org_id: int,
    sequence_id: Optional[int],
    date_start: Optional[datetime],
    date_end: Optional[datetime],
):
    q = db.query(ExecutionInstance).filter(ExecutionInstance.org_id == int(org_id))
    if sequence_id is not None:
        q = q.filter(ExecutionInstance.sequence_id == int(sequence_id))
    if date_start is not None:
        q = q.filter(ExecutionInstance.started_at >= date_start)
    if date_end is not None:
        q = q.filter(ExecutionInstance.started_at < date_end)
    return q


def _steps(
    db: Session,
    org_id: int,
    sequence_id: Optional[int],
    date_start: Optional[datetime],
    date_end: Optional[datetime],
):
    q = (
        db.query(StepExecution)
        .join(ExecutionInstance, ExecutionInstance.id == StepExecution.execution_id)
        .filter(
            StepExecution.org_id == int(org_id),
            ExecutionInstance.org_id == int(org_id),
        )
    )
    if sequence_id is not None:
        q = q.filter(ExecutionInstance.sequence_id == int(sequence_id))
    if date_start is not None:
        q = q.filter(ExecutionInstance.started_at >= date_start)
    if date_end is not None:
        q = q.filter(ExecutionInstance.started_at < date_end)
    return q


def execution_status_counts(
    *,
    org_id: int,
    db: Session,
    sequence_id: Optional[int] = None,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> dict[str, int]:
    counts = {s.value: 0 for s in ExecutionStatus}
    rows = (
        _executions(db, org_id, sequence_id, date_start, date_end)
        .with_entities(ExecutionInstance.status, func.count(ExecutionInstance.id))
        .group_by(ExecutionInstance.status)
        .all()
    )
    for status, n in rows:
        counts[status] = int(n)
    return counts


def completion_rate(
    *,
    org_id: int,
    sequence_id: int,
    db: Session,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> float:
    """Completed executions as a percentage of all executions started in the window."""
    counts = execution_status_counts(
        org_id=org_id,
        sequence_id=sequence_id,
        db=db,
        date_start=date_start,
        date_end=date_end,
    )
    return _rate(counts[ExecutionStatus.COMPLETED.value], sum(counts.values()))


def average_completion_time_hours(
    *,
    org_id: int,
    sequence_id: int,
    db: Session,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> float:
    seconds = (
        _executions(db, org_id, sequence_id, date_start, date_end)
        .filter(
            ExecutionInstance.status == ExecutionStatus.COMPLETED.value,
            ExecutionInstance.completed_at.isnot(None),
        )
        .with_entities(
            func.avg(extract("epoch", ExecutionInstance.completed_at - ExecutionInstance.started_at))
        )
        .scalar()
    )
    if seconds is None:
        return 0.0
    return round(float(seconds) / 3600.0, 2)


def goal_conversion_rate(
    *,
    org_id: int,
    db: Session,
    sequence_id: Optional[int] = None,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> float:
    """
    Executions whose subject reached the goal while the run was live, as a
    percentage of all executions started in the window.

    A goal recorded after the run began counts, as does a run stopped with the
    goal reason (the subject may have reached the goal again since).
    """
    row = (
        _executions(db, org_id, sequence_id, date_start, date_end)
        .outerjoin(
            CampaignSubject,
            and_(
                CampaignSubject.org_id == ExecutionInstance.org_id,
                CampaignSubject.subject_type == ExecutionInstance.subject_type,
                CampaignSubject.subject_id == ExecutionInstance.subject_id,
            ),
        )
        .with_entities(
            func.count(ExecutionInstance.id).label("total"),
            func.count(ExecutionInstance.id)
            .filter(
                or_(
                    CampaignSubject.goal_achieved_at >= ExecutionInstance.started_at,
                    ExecutionInstance.stop_reason == GOAL_ACHIEVED_REASON,
                )
            )
            .label("converted"),
        )
        .one()
    )
    return _rate(int(row.converted or 0), int(row.total or 0))


def step_status_counts(
    *,
    org_id: int,
    db: Session,
    sequence_id: Optional[int] = None,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> dict[str, int]:
    counts = {s.value: 0 for s in StepStatus}
    rows = (
        _steps(db, org_id, sequence_id, date_start, date_end)
        .with_entities(StepExecution.status, func.count(StepExecution.id))
        .group_by(StepExecution.status)
        .all()
    )
    for status, n in rows:
        counts[status] = int(n)
    return counts


def channel_performance(
    *,
    org_id: int,
    db: Session,
    channels: Iterable[str],
    sequence_id: Optional[int] = None,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> dict[str, Any]:
    """
    Funnel counts for the given channels.

    Each rate is relative to the previous stage:
      delivery_rate = delivered / sent, open_rate = opened / delivered,
      click_rate = clicked / opened
    """
    row = (
        _steps(db, org_id, sequence_id, date_start, date_end)
        .filter(StepExecution.channel.in_(list(channels)))
        .with_entities(
            func.count(StepExecution.id).filter(StepExecution.status.in_(_SENT_STATUSES)).label("sent"),
            func.count(StepExecution.delivered_at).label("delivered"),
            func.count(StepExecution.opened_at).label("opened"),
            func.count(StepExecution.clicked_at).label("clicked"),
            func.count(StepExecution.id).filter(StepExecution.status == StepStatus.FAILED.value).label("failed"),
        )
        .one()
    )

    sent = int(row.sent or 0)
    delivered = int(row.delivered or 0)
    opened = int(row.opened or 0)
    clicked = int(row.clicked or 0)

    return {
        "sent": sent,
        "delivered": delivered,
        "opened": opened,
        "clicked": clicked,
        "failed": int(row.failed or 0),
        "delivery_rate": _rate(delivered, sent),
        "open_rate": _rate(opened, delivered),
        "click_rate": _rate(clicked, opened),
    }


def sequence_performance(
    *,
    org_id: int,
    sequence_id: int,
    db: Session,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> dict[str, Any]:
    sequence = sequence_service.get_sequence(org_id=org_id, sequence_id=sequence_id, db=db)
    window = {"date_start": date_start, "date_end": date_end}

    counts = execution_status_counts(org_id=org_id, sequence_id=sequence.id, db=db, **window)

    return {
        "sequence_id": sequence.id,
        "name": sequence.name,
        "is_default": bool(sequence.is_default),
        "is_active": bool(sequence.is_active),
        "total_executions": sum(counts.values()),
        "execution_status_counts": counts,
        "completion_rate": _rate(counts[ExecutionStatus.COMPLETED.value], sum(counts.values())),
        "goal_conversion_rate": goal_conversion_rate(org_id=org_id, sequence_id=sequence.id, db=db, **window),
        "average_completion_time_hours": average_completion_time_hours(
            org_id=org_id, sequence_id=sequence.id, db=db, **window
        ),
        "sms": channel_performance(org_id=org_id, sequence_id=sequence.id, channels=SMS_CHANNELS, db=db, **window),
        "email": channel_performance(
            org_id=org_id, sequence_id=sequence.id, channels=EMAIL_CHANNELS, db=db, **window
        ),
        "step_status_counts": step_status_counts(org_id=org_id, sequence_id=sequence.id, db=db, **window),
    }


def org_summary(
    *,
    org_id: int,
    db: Session,
    date_start: Optional[datetime] = None,
    date_end: Optional[datetime] = None,
) -> dict[str, Any]:
    """Organization-wide campaign summary. All-zero for an organization with no history."""
    window = {"date_start": date_start, "date_end": date_end}

    counts = execution_status_counts(org_id=org_id, db=db, **window)
    total = sum(counts.values())

    avg_steps = (
        _executions(db, org_id, None, date_start, date_end)
        .filter(ExecutionInstance.status == ExecutionStatus.COMPLETED.value)
        .with_entities(func.avg(ExecutionInstance.current_step - 1))
        .scalar()
    )

    step_counts = step_status_counts(org_id=org_id, db=db, **window)

    sequence_ids = [
        r.id
        for r in db.query(SequenceDefinition.id)
        .filter(SequenceDefinition.org_id == int(org_id))
        .order_by(SequenceDefinition.id.asc())
        .all()
    ]

    return {
        "org_id": int(org_id),
        "date_start": None if date_start is None else date_start.isoformat(),
        "date_end": None if date_end is None else date_end.isoformat(),
        "total_executions": total,
        "active_executions": counts[ExecutionStatus.ACTIVE.value],
        "completed_executions": counts[ExecutionStatus.COMPLETED.value],
        "cancelled_executions": counts[ExecutionStatus.CANCELLED.value],
        "failed_executions": counts[ExecutionStatus.FAILED.value],
        "completion_rate": _rate(counts[ExecutionStatus.COMPLETED.value], total),
        "goal_conversion_rate": goal_conversion_rate(org_id=org_id, db=db, **window),
        "average_steps_completed": 0.0 if avg_steps is None else round(float(avg_steps), 2),
        "failed_step_count": step_counts[StepStatus.FAILED.value],
        "step_status_counts": step_counts,
        "sequences": [
            sequence_performance(org_id=org_id, sequence_id=sid, db=db, **window) for sid in sequence_ids
        ],
    }
