"""Execution state machine.

ACTIVE is the only non-terminal instance status; COMPLETED, CANCELLED and
FAILED are final. Step executions are created eagerly at start and move
PENDING -> SENT | FAILED | SKIPPED, SENT -> DELIVERED, and FAILED -> SENT on
an operator retry. Nothing moves back to PENDING.

All writes flush; the caller owns commit/rollback.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_engine.core.errors import ConflictError, ConsistencyError, NotFoundError, ValidationError
from campaign_engine.models.execution import ExecutionInstance, ExecutionStatus, StepExecution, StepStatus
from campaign_engine.models.sequence import SequenceDefinition

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "superseded"
DEFAULT_STOP_REASON = "stopped"
DEFAULT_CANCEL_REASON = "cancelled by operator"
DEFAULT_FAIL_REASON = "failed"
LINK_CLICKED_REASON = "link clicked"

DELIVERY_EVENTS = ("delivered", "opened", "clicked")

MAX_PAGE_SIZE = 500

# Column widths on campaign_executions / campaign_subjects.
MAX_SUBJECT_TYPE_LENGTH = 50
MAX_SUBJECT_ID_LENGTH = 100
MAX_REASON_LENGTH = 255

_ALLOWED_STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.SENT, StepStatus.FAILED, StepStatus.SKIPPED},
    StepStatus.FAILED: {StepStatus.SENT, StepStatus.FAILED},
    StepStatus.SENT: {StepStatus.DELIVERED},
    StepStatus.DELIVERED: set(),
    StepStatus.SKIPPED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_subject_key(subject_type: str, subject_id: str) -> tuple[str, str]:
    st = (subject_type or "").strip()
    sid = str(subject_id if subject_id is not None else "").strip()
    if not st or not sid:
        raise ValidationError("subject_type and subject_id are required")
    if len(st) > MAX_SUBJECT_TYPE_LENGTH:
        raise ValidationError(f"subject_type must be at most {MAX_SUBJECT_TYPE_LENGTH} characters")
    if len(sid) > MAX_SUBJECT_ID_LENGTH:
        raise ValidationError(f"subject_id must be at most {MAX_SUBJECT_ID_LENGTH} characters")
    return st, sid


def _clean_reason(reason: Optional[str], default: str) -> str:
    cleaned = (reason or "").strip() or default
    if len(cleaned) > MAX_REASON_LENGTH:
        raise ValidationError(f"Reason must be at most {MAX_REASON_LENGTH} characters")
    return cleaned


def _page(limit: int, offset: int) -> tuple[int, int]:
    return max(1, min(int(limit), MAX_PAGE_SIZE)), max(0, int(offset))


def _log_extra(execution: ExecutionInstance, **fields) -> dict:
    extra = {
        "org_id": int(execution.org_id),
        "execution_id": execution.id,
        "sequence_id": execution.sequence_id,
    }
    extra.update(fields)
    return extra


# ---------------------------------------------------------------------------
# lookups
# ---------------------------------------------------------------------------


def find_active_execution(
    *,
    org_id: int,
    subject_type: str,
    subject_id: str,
    db: Session,
    lock: bool = False,
) -> Optional[ExecutionInstance]:
    st, sid = clean_subject_key(subject_type, subject_id)
    q = db.query(ExecutionInstance).filter(
        ExecutionInstance.org_id == int(org_id),
        ExecutionInstance.subject_type == st,
        ExecutionInstance.subject_id == sid,
        ExecutionInstance.status == ExecutionStatus.ACTIVE.value,
    )
    if lock:
        q = q.with_for_update().populate_existing()
    return q.first()


def get_execution(*, org_id: int, execution_id: int, db: Session, lock: bool = False) -> ExecutionInstance:
    q = db.query(ExecutionInstance).filter(
        ExecutionInstance.id == int(execution_id),
        ExecutionInstance.org_id == int(org_id),
    )
    if lock:
        q = q.with_for_update().populate_existing()
    row = q.first()
    if row is None:
        raise NotFoundError(f"Campaign execution not found: {execution_id}")
    return row


def get_step_execution(*, org_id: int, step_execution_id: int, db: Session, lock: bool = False) -> StepExecution:
    q = db.query(StepExecution).filter(
        StepExecution.id == int(step_execution_id),
        StepExecution.org_id == int(org_id),
    )
    if lock:
        q = q.with_for_update().populate_existing()
    row = q.first()
    if row is None:
        raise NotFoundError(f"Campaign step execution not found: {step_execution_id}")
    return row


def list_executions(
    *,
    org_id: int,
    db: Session,
    status: Optional[str] = None,
    sequence_id: Optional[int] = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[ExecutionInstance]:
    limit, offset = _page(limit, offset)
    q = db.query(ExecutionInstance).filter(ExecutionInstance.org_id == int(org_id))

    if status is not None:
        try:
            q = q.filter(ExecutionInstance.status == ExecutionStatus(status.upper()).value)
        except ValueError as exc:
            raise ValidationError(f"Unknown execution status: {status}") from exc
    if sequence_id is not None:
        q = q.filter(ExecutionInstance.sequence_id == int(sequence_id))
    if subject_type is not None:
        q = q.filter(ExecutionInstance.subject_type == subject_type)
    if subject_id is not None:
        q = q.filter(ExecutionInstance.subject_id == str(subject_id))

    return q.order_by(ExecutionInstance.id.desc()).offset(offset).limit(limit).all()


def list_failed_steps(*, org_id: int, db: Session, limit: int = 100, offset: int = 0) -> List[StepExecution]:
    limit, offset = _page(limit, offset)
    return (
        db.query(StepExecution)
        .filter(
            StepExecution.org_id == int(org_id),
            StepExecution.status == StepStatus.FAILED.value,
        )
        .order_by(StepExecution.updated_at.desc(), StepExecution.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def pending_step_count(db: Session, execution: ExecutionInstance) -> int:
    db.flush()
    return (
        db.query(StepExecution)
        .filter(
            StepExecution.execution_id == execution.id,
            StepExecution.status == StepStatus.PENDING.value,
        )
        .count()
    )


# ---------------------------------------------------------------------------
# instance lifecycle
# ---------------------------------------------------------------------------


def start(
    *,
    org_id: int,
    sequence_id: int,
    subject_type: str,
    subject_id: str,
    db: Session,
    override: bool = False,
    now: Optional[datetime] = None,
) -> ExecutionInstance:
    """Start a sequence for a subject.

    Returns the subject's existing ACTIVE execution unchanged unless override
    is set, in which case that execution is cancelled as superseded first.
    Every active step is scheduled up front at started_at + delay.
    """
    now = now or _utcnow()
    st, sid = clean_subject_key(subject_type, subject_id)

    sequence = db.query(SequenceDefinition).filter(SequenceDefinition.id == int(sequence_id)).first()
    if sequence is None:
        raise NotFoundError(f"Campaign sequence not found: {sequence_id}")
    if int(sequence.org_id) != int(org_id):
        raise ConflictError("Subject and campaign sequence belong to different organizations")
    if not sequence.is_active:
        raise ValidationError("Campaign sequence is inactive")

    existing = find_active_execution(org_id=org_id, subject_type=st, subject_id=sid, db=db, lock=True)
    if existing is not None:
        if not override:
            logger.info("Campaign already active for subject", extra=_log_extra(existing))
            return existing
        _terminate(db, existing, ExecutionStatus.CANCELLED, SUPERSEDED_REASON, now)

    execution = ExecutionInstance(
        org_id=int(org_id),
        sequence_id=sequence.id,
        subject_type=st,
        subject_id=sid,
        status=ExecutionStatus.ACTIVE.value,
        current_step=1,
        started_at=now,
        updated_at=now,
    )
    steps = sequence.active_steps

    try:
        with db.begin_nested():
            db.add(execution)
            db.flush()
            for step in steps:
                db.add(
                    StepExecution(
                        org_id=int(org_id),
                        execution_id=execution.id,
                        step_id=step.id,
                        step_number=step.step_number,
                        channel=step.channel,
                        scheduled_at=now + timedelta(hours=int(step.delay_hours)),
                        status=StepStatus.PENDING.value,
                        attempt_count=0,
                        updated_at=now,
                    )
                )
            db.flush()
    except IntegrityError:
        # Lost a concurrent start on the one-active-per-subject index.
        winner = find_active_execution(org_id=org_id, subject_type=st, subject_id=sid, db=db)
        if winner is None:
            raise
        logger.info("Concurrent campaign start resolved to existing execution", extra=_log_extra(winner))
        return winner

    logger.info("Started campaign execution", extra=_log_extra(execution, step_count=len(steps)))

    evaluate_completion(db, execution, now=now)
    return execution


def evaluate_completion(db: Session, execution: ExecutionInstance, *, now: Optional[datetime] = None) -> bool:
    """Complete an ACTIVE execution once none of its steps is PENDING."""
    if execution.status != ExecutionStatus.ACTIVE.value:
        return False
    if pending_step_count(db, execution) > 0:
        return False

    now = now or _utcnow()
    execution.status = ExecutionStatus.COMPLETED.value
    execution.completed_at = now
    execution.updated_at = now
    db.flush()

    logger.info("Campaign execution completed", extra=_log_extra(execution))
    return True


def advance(
    *,
    org_id: int,
    step_execution_id: int,
    db: Session,
    now: Optional[datetime] = None,
) -> ExecutionInstance:
    now = now or _utcnow()
    step = get_step_execution(org_id=org_id, step_execution_id=step_execution_id, db=db)

    execution = (
        db.query(ExecutionInstance)
        .filter(
            ExecutionInstance.id == step.execution_id,
            ExecutionInstance.org_id == int(org_id),
        )
        .first()
    )
    if execution is None:
        raise ConsistencyError(f"Step execution {step.id} references a missing campaign execution")

    if execution.status == ExecutionStatus.ACTIVE.value:
        execution.current_step = int(execution.current_step or 1) + 1
        execution.updated_at = now
        db.flush()
        evaluate_completion(db, execution, now=now)

    return execution


def _skip_pending(db: Session, execution: ExecutionInstance, reason: str, now: datetime) -> int:
    rows = (
        db.query(StepExecution)
        .filter(
            StepExecution.execution_id == execution.id,
            StepExecution.status == StepStatus.PENDING.value,
        )
        .all()
    )
    for row in rows:
        mark_step_skipped(db, row, reason=reason, now=now)
    return len(rows)


def _terminate(
    db: Session,
    execution: ExecutionInstance,
    status: ExecutionStatus,
    reason: str,
    now: datetime,
) -> bool:
    if execution.is_finished:
        return False

    skipped = _skip_pending(db, execution, reason, now)

    execution.status = status.value
    execution.stop_reason = reason
    execution.completed_at = now
    execution.updated_at = now
    db.flush()

    logger.info(
        "Campaign execution terminated",
        extra=_log_extra(execution, status=status.value, reason=reason, skipped_steps=skipped),
    )
    return True


def stop(
    *,
    org_id: int,
    execution_id: int,
    db: Session,
    reason: str = DEFAULT_STOP_REASON,
    now: Optional[datetime] = None,
) -> ExecutionInstance:
    """Goal reached externally: COMPLETED, remaining steps skipped. No-op once terminal."""
    reason = _clean_reason(reason, DEFAULT_STOP_REASON)
    execution = get_execution(org_id=org_id, execution_id=execution_id, db=db, lock=True)
    _terminate(db, execution, ExecutionStatus.COMPLETED, reason, now or _utcnow())
    return execution


def cancel(
    *,
    org_id: int,
    execution_id: int,
    db: Session,
    reason: str = DEFAULT_CANCEL_REASON,
    now: Optional[datetime] = None,
) -> ExecutionInstance:
    reason = _clean_reason(reason, DEFAULT_CANCEL_REASON)
    execution = get_execution(org_id=org_id, execution_id=execution_id, db=db, lock=True)
    _terminate(db, execution, ExecutionStatus.CANCELLED, reason, now or _utcnow())
    return execution


def fail(
    *,
    org_id: int,
    execution_id: int,
    db: Session,
    reason: str,
    now: Optional[datetime] = None,
) -> ExecutionInstance:
    reason = _clean_reason(reason, DEFAULT_FAIL_REASON)
    execution = get_execution(org_id=org_id, execution_id=execution_id, db=db, lock=True)
    _terminate(db, execution, ExecutionStatus.FAILED, reason, now or _utcnow())
    return execution


# ---------------------------------------------------------------------------
# step transitions
# ---------------------------------------------------------------------------


def _transition(step: StepExecution, target: StepStatus) -> None:
    current = StepStatus(step.status)
    if target not in _ALLOWED_STEP_TRANSITIONS[current]:
        raise ConflictError(f"Illegal step transition {current.value} -> {target.value}")
    step.status = target.value


def mark_step_sent(
    db: Session,
    step: StepExecution,
    *,
    now: datetime,
    provider_message_id: Optional[str] = None,
) -> StepExecution:
    _transition(step, StepStatus.SENT)
    step.sent_at = now
    step.provider_message_id = provider_message_id
    step.error_detail = None
    step.attempt_count = int(step.attempt_count or 0) + 1
    step.updated_at = now
    db.flush()
    return step


def mark_step_failed(db: Session, step: StepExecution, *, error: str, now: datetime) -> StepExecution:
    _transition(step, StepStatus.FAILED)
    step.error_detail = (error or "unknown delivery error")[:2000]
    step.attempt_count = int(step.attempt_count or 0) + 1
    step.updated_at = now
    db.flush()
    return step


def mark_step_skipped(db: Session, step: StepExecution, *, reason: str, now: datetime) -> StepExecution:
    _transition(step, StepStatus.SKIPPED)
    step.error_detail = reason
    step.updated_at = now
    db.flush()
    return step


def record_delivery_event(
    *,
    org_id: int,
    step_execution_id: int,
    event: str,
    db: Session,
    now: Optional[datetime] = None,
) -> StepExecution:
    """Apply a downstream delivery-status callback. Repeats keep the first timestamp."""
    now = now or _utcnow()
    event = (event or "").strip().lower()
    if event not in DELIVERY_EVENTS:
        raise ValidationError(f"Unknown delivery event: {event}")

    step = get_step_execution(org_id=org_id, step_execution_id=step_execution_id, db=db, lock=True)
    if step.status not in (StepStatus.SENT.value, StepStatus.DELIVERED.value):
        raise ConflictError("Delivery events can only be recorded for sent steps")

    if step.status == StepStatus.SENT.value:
        _transition(step, StepStatus.DELIVERED)
    if step.delivered_at is None:
        step.delivered_at = now
    # An open implies delivery, a click implies an open.
    if event in ("opened", "clicked") and step.opened_at is None:
        step.opened_at = now
    if event == "clicked" and step.clicked_at is None:
        step.clicked_at = now

    step.updated_at = now
    db.flush()

    # A click is a response; nothing further goes out for this execution.
    if event == "clicked":
        execution = get_execution(org_id=org_id, execution_id=step.execution_id, db=db, lock=True)
        _terminate(db, execution, ExecutionStatus.COMPLETED, LINK_CLICKED_REASON, now)

    logger.info(
        "Recorded delivery event",
        extra={
            "org_id": int(org_id),
            "execution_id": step.execution_id,
            "step_execution_id": step.id,
            "event": event,
        },
    )
    return step


# ---------------------------------------------------------------------------
# retention
# ---------------------------------------------------------------------------


def purge_finished_executions(*, org_id: int, older_than: datetime, db: Session) -> int:
    """Delete terminal executions completed before older_than. Returns the number removed."""
    ids = [
        row.id
        for row in db.query(ExecutionInstance.id)
        .filter(
            ExecutionInstance.org_id == int(org_id),
            ExecutionInstance.status != ExecutionStatus.ACTIVE.value,
            ExecutionInstance.completed_at < older_than,
        )
        .all()
    ]
    if not ids:
        return 0

    db.query(StepExecution).filter(
        StepExecution.org_id == int(org_id),
        StepExecution.execution_id.in_(ids),
    ).delete(synchronize_session=False)
    db.query(ExecutionInstance).filter(
        ExecutionInstance.org_id == int(org_id),
        ExecutionInstance.id.in_(ids),
    ).delete(synchronize_session=False)
    db.flush()

    logger.info("Purged finished campaign executions", extra={"org_id": int(org_id), "count": len(ids)})
    return len(ids)
