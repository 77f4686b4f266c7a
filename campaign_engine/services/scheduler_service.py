"""Due-step poller.

A tick enumerates organizations with ACTIVE executions, then runs one scoped
due query per organization. Each due execution is handed to a bounded thread
pool; the worker locks the execution row with SKIP LOCKED, so a second poller
(in this or another process) never works the same execution concurrently,
and steps of one execution go out one at a time in schedule order.
"""
from __future__ import annotations

import logging
import threading
from bisect import bisect_right
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from campaign_engine.core.config import get_settings
from campaign_engine.core.errors import NotFoundError
from campaign_engine.database import SessionLocal
from campaign_engine.models.execution import ExecutionInstance, ExecutionStatus, StepExecution, StepStatus
from campaign_engine.services import execution_service
from campaign_engine.services.channels import Collaborators, default_collaborators
from campaign_engine.services.dispatch_service import DispatchCoordinator
from campaign_engine.services.subject_service import GOAL_ACHIEVED_REASON

logger = logging.getLogger(__name__)

SUBJECT_MISSING_REASON = "subject not found"

# Hard ceiling on steps worked under one claim; each pass retires one PENDING step.
MAX_STEPS_PER_CLAIM = 100


@dataclass
class DispatchCounts:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, other: "DispatchCounts") -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors += other.errors

    def record(self, status: str) -> None:
        if status in (StepStatus.SENT.value, StepStatus.DELIVERED.value):
            self.sent += 1
        elif status == StepStatus.FAILED.value:
            self.failed += 1
        else:
            self.skipped += 1


@dataclass(frozen=True)
class TickResult:
    orgs_scanned: int
    executions_queued: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def list_active_org_ids(db: Session) -> List[int]:
    rows = (
        db.query(ExecutionInstance.org_id)
        .filter(ExecutionInstance.status == ExecutionStatus.ACTIVE.value)
        .distinct()
        .order_by(ExecutionInstance.org_id.asc())
        .all()
    )
    return [int(r.org_id) for r in rows]


def _rotate_org_ids(org_ids: List[int], after: Optional[int]) -> List[int]:
    """Orgs after `after` first, then wrap around to the start."""
    if after is None:
        return list(org_ids)
    i = bisect_right(org_ids, after)
    return org_ids[i:] + org_ids[:i]


def find_due_execution_ids(db: Session, *, org_id: int, now: datetime, limit: int) -> List[int]:
    """Executions in one org with at least one PENDING step due at `now`, oldest first."""
    due_at = func.min(StepExecution.scheduled_at)
    rows = (
        db.query(StepExecution.execution_id, due_at.label("due_at"))
        .filter(
            StepExecution.org_id == int(org_id),
            StepExecution.status == StepStatus.PENDING.value,
            StepExecution.scheduled_at <= now,
        )
        .group_by(StepExecution.execution_id)
        .order_by(due_at.asc(), StepExecution.execution_id.asc())
        .limit(int(limit))
        .all()
    )
    return [int(r.execution_id) for r in rows]


def _next_due_step(db: Session, execution: ExecutionInstance, now: datetime) -> Optional[StepExecution]:
    return (
        db.query(StepExecution)
        .filter(
            StepExecution.execution_id == execution.id,
            StepExecution.org_id == execution.org_id,
            StepExecution.status == StepStatus.PENDING.value,
            StepExecution.scheduled_at <= now,
        )
        .order_by(
            StepExecution.scheduled_at.asc(),
            StepExecution.step_number.asc(),
            StepExecution.id.asc(),
        )
        .first()
    )


def _work_one_step(
    db: Session,
    *,
    org_id: int,
    execution_id: int,
    now: datetime,
    coordinator: DispatchCoordinator,
) -> Optional[StepExecution]:
    """Claim the execution and retire its earliest due step.

    Returns None when there is nothing to do: the row is locked by another
    poller, gone, or has no due PENDING step left.
    """
    execution = (
        db.query(ExecutionInstance)
        .filter(
            ExecutionInstance.id == int(execution_id),
            ExecutionInstance.org_id == int(org_id),
        )
        .with_for_update(skip_locked=True)
        .populate_existing()
        .first()
    )
    if execution is None:
        return None

    step = _next_due_step(db, execution, now)
    if step is None:
        return None

    if execution.status != ExecutionStatus.ACTIVE.value:
        execution_service.mark_step_skipped(
            db,
            step,
            reason=f"execution {execution.status.lower()}",
            now=now,
        )
        return step

    resolver = coordinator.collaborators.resolver
    try:
        contact = resolver.resolve(
            db,
            org_id=int(org_id),
            subject_type=execution.subject_type,
            subject_id=execution.subject_id,
        )
    except NotFoundError:
        logger.warning(
            "Campaign subject no longer resolvable; failing execution",
            extra={"org_id": int(org_id), "execution_id": execution.id, "step_execution_id": step.id},
        )
        execution_service.fail(org_id=org_id, execution_id=execution.id, reason=SUBJECT_MISSING_REASON, db=db, now=now)
        return step

    # Stop condition is re-read right before every send; an earlier run's goal does not count.
    if contact.goal_reached_since(execution.started_at):
        execution_service.stop(org_id=org_id, execution_id=execution.id, reason=GOAL_ACHIEVED_REASON, db=db, now=now)
        return step

    coordinator.dispatch(db, step, subject=contact, now=now)
    return step


def process_due_execution(
    *,
    org_id: int,
    execution_id: int,
    now: Optional[datetime] = None,
    collaborators: Optional[Collaborators] = None,
) -> DispatchCounts:
    """Work every due step of one execution, one transaction per step.

    An unexpected exception rolls back the current step (it stays PENDING for
    the next tick) and ends this claim.
    """
    now = now or _utcnow()
    coordinator = DispatchCoordinator(collaborators)
    counts = DispatchCounts()

    db = SessionLocal()
    try:
        for _ in range(MAX_STEPS_PER_CLAIM):
            try:
                step = _work_one_step(
                    db,
                    org_id=org_id,
                    execution_id=execution_id,
                    now=now,
                    coordinator=coordinator,
                )
                if step is None:
                    db.rollback()
                    break
                status = step.status
                db.commit()
                counts.record(status)
            except Exception:
                db.rollback()
                counts.errors += 1
                logger.exception(
                    "Campaign step processing failed; left pending",
                    extra={"org_id": int(org_id), "execution_id": int(execution_id)},
                )
                break
    finally:
        db.close()

    return counts


def process_due_steps(
    *,
    now: Optional[datetime] = None,
    collaborators: Optional[Collaborators] = None,
    batch_size: Optional[int] = None,
    per_org_limit: Optional[int] = None,
) -> DispatchCounts:
    """Synchronous tick: same enumeration as the poller, executions worked in order."""
    settings = get_settings()
    now = now or _utcnow()
    batch_size = int(batch_size or settings.batch_size)
    per_org_limit = int(per_org_limit or settings.per_org_limit)
    collaborators = collaborators or default_collaborators()

    db = SessionLocal()
    try:
        work = []
        for org_id in list_active_org_ids(db):
            remaining = batch_size - len(work)
            if remaining <= 0:
                break
            ids = find_due_execution_ids(db, org_id=org_id, now=now, limit=min(per_org_limit, remaining))
            work.extend((org_id, execution_id) for execution_id in ids)
        db.rollback()
    finally:
        db.close()

    totals = DispatchCounts()
    for org_id, execution_id in work:
        totals.add(
            process_due_execution(
                org_id=org_id,
                execution_id=execution_id,
                now=now,
                collaborators=collaborators,
            )
        )
    return totals


class DueStepPoller:
    """Tick-driven poller with a bounded dispatch pool.

    tick() only queries and queues; it never waits for dispatch to finish.
    An execution already queued or in flight is not queued again.
    """

    def __init__(
        self,
        *,
        collaborators: Optional[Collaborators] = None,
        max_workers: Optional[int] = None,
        batch_size: Optional[int] = None,
        per_org_limit: Optional[int] = None,
    ):
        settings = get_settings()
        self.collaborators = collaborators or default_collaborators()
        self.batch_size = int(batch_size or settings.batch_size)
        self.per_org_limit = int(per_org_limit or settings.per_org_limit)
        self._executor = ThreadPoolExecutor(
            max_workers=int(max_workers or settings.worker_threads),
            thread_name_prefix="campaign-dispatch",
        )
        self._in_flight: Set[int] = set()
        self._lock = threading.Lock()
        # Last org scanned; the next tick starts after it.
        self._org_cursor: Optional[int] = None

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _run(self, org_id: int, execution_id: int, now: datetime) -> DispatchCounts:
        try:
            return process_due_execution(
                org_id=org_id,
                execution_id=execution_id,
                now=now,
                collaborators=self.collaborators,
            )
        finally:
            with self._lock:
                self._in_flight.discard(execution_id)

    def _submit(self, org_id: int, execution_id: int, now: datetime) -> Optional[Future]:
        with self._lock:
            if execution_id in self._in_flight or len(self._in_flight) >= self.batch_size:
                return None
            self._in_flight.add(execution_id)
        return self._executor.submit(self._run, org_id, execution_id, now)

    def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or _utcnow()
        org_ids: List[int] = []
        queued = 0

        db = SessionLocal()
        try:
            org_ids = list_active_org_ids(db)
            for org_id in _rotate_org_ids(org_ids, self._org_cursor):
                remaining = self.batch_size - queued
                if remaining <= 0:
                    break
                self._org_cursor = org_id
                ids = find_due_execution_ids(db, org_id=org_id, now=now, limit=min(self.per_org_limit, remaining))
                for execution_id in ids:
                    if self._submit(org_id, execution_id, now) is not None:
                        queued += 1
            db.rollback()
        finally:
            db.close()

        if queued:
            logger.info(
                "Queued due campaign executions",
                extra={"orgs_scanned": len(org_ids), "executions_queued": queued},
            )
        return TickResult(orgs_scanned=len(org_ids), executions_queued=queued)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
