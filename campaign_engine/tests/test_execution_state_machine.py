from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError

from campaign_engine.core.errors import ConflictError, NotFoundError, ValidationError
from campaign_engine.models.execution import ExecutionInstance, StepExecution
from campaign_engine.services import execution_service
from campaign_engine.services.sequence_service import StepInput

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _steps(db, execution_id: int):
    return (
        db.query(StepExecution)
        .filter(StepExecution.execution_id == execution_id)
        .order_by(StepExecution.step_number.asc())
        .all()
    )


def _start(db, sequence, subject_id="77", **kwargs):
    row = execution_service.start(
        org_id=sequence.org_id,
        sequence_id=sequence.id,
        subject_type="customer",
        subject_id=subject_id,
        now=kwargs.pop("now", T0),
        db=db,
        **kwargs,
    )
    db.commit()
    return row


def test_start_schedules_every_step_up_front(db, sequence_factory):
    sequence = sequence_factory()

    execution = _start(db, sequence)

    assert execution.status == "ACTIVE"
    assert execution.current_step == 1
    steps = _steps(db, execution.id)
    assert [s.status for s in steps] == ["PENDING", "PENDING"]
    assert [s.scheduled_at for s in steps] == [T0, T0 + timedelta(hours=24)]
    assert [s.channel for s in steps] == ["SMS", "EMAIL_PLAIN"]


def test_start_is_idempotent_for_active_subject(db, sequence_factory):
    sequence = sequence_factory()

    first = _start(db, sequence)
    second = _start(db, sequence, now=T0 + timedelta(minutes=5))

    assert second.id == first.id
    assert db.query(ExecutionInstance).count() == 1
    assert db.query(StepExecution).count() == 2


def test_override_supersedes_active_execution(db, sequence_factory):
    sequence = sequence_factory()
    first = _start(db, sequence)

    second = _start(db, sequence, override=True, now=T0 + timedelta(hours=1))

    assert second.id != first.id
    db.refresh(first)
    assert first.status == "CANCELLED"
    assert first.stop_reason == "superseded"
    assert {s.status for s in _steps(db, first.id)} == {"SKIPPED"}

    active = db.query(ExecutionInstance).filter(ExecutionInstance.status == "ACTIVE").all()
    assert [a.id for a in active] == [second.id]


def test_start_rejects_sequence_from_another_org(db, sequence_factory):
    sequence = sequence_factory(org_id=1)

    with pytest.raises(ConflictError):
        execution_service.start(
            org_id=2,
            sequence_id=sequence.id,
            subject_type="customer",
            subject_id="77",
            db=db,
        )


def test_start_unknown_sequence_not_found(db):
    with pytest.raises(NotFoundError):
        execution_service.start(org_id=1, sequence_id=999, subject_type="customer", subject_id="1", db=db)


def test_start_requires_subject(db, sequence_factory):
    sequence = sequence_factory()
    with pytest.raises(ValidationError):
        execution_service.start(org_id=1, sequence_id=sequence.id, subject_type="", subject_id="1", db=db)


def test_sequence_without_active_steps_completes_at_start(db, sequence_factory):
    sequence = sequence_factory(steps=[])

    execution = _start(db, sequence)

    assert execution.status == "COMPLETED"
    assert execution.completed_at == T0


def test_completion_is_level_triggered(db, sequence_factory):
    sequence = sequence_factory(
        steps=[
            StepInput(step_number=1, delay_hours=0, channel="SMS", body_template="a"),
            StepInput(step_number=2, delay_hours=1, channel="SMS", body_template="b"),
            StepInput(step_number=3, delay_hours=2, channel="SMS", body_template="c"),
        ]
    )
    execution = _start(db, sequence)
    s1, s2, s3 = _steps(db, execution.id)

    execution_service.mark_step_sent(db, s1, now=T0)
    execution_service.mark_step_failed(db, s3, error="bad number", now=T0)
    assert execution_service.evaluate_completion(db, execution, now=T0) is False
    assert execution.status == "ACTIVE"

    execution_service.mark_step_skipped(db, s2, reason="inactive", now=T0)
    assert execution_service.evaluate_completion(db, execution, now=T0) is True
    db.commit()

    assert execution.status == "COMPLETED"


def test_advance_increments_current_step_and_completes(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)
    s1, s2 = _steps(db, execution.id)

    execution_service.mark_step_sent(db, s1, now=T0)
    execution_service.advance(org_id=1, step_execution_id=s1.id, db=db, now=T0)
    assert execution.current_step == 2
    assert execution.status == "ACTIVE"

    later = T0 + timedelta(hours=24)
    execution_service.mark_step_sent(db, s2, now=later)
    execution_service.advance(org_id=1, step_execution_id=s2.id, db=db, now=later)
    db.commit()

    assert execution.current_step == 3
    assert execution.status == "COMPLETED"
    assert execution.completed_at == later


def test_stop_skips_pending_steps_and_is_idempotent(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)

    stopped_at = T0 + timedelta(hours=2)
    execution_service.stop(org_id=1, execution_id=execution.id, reason="goal achieved", db=db, now=stopped_at)
    db.commit()

    assert execution.status == "COMPLETED"
    assert execution.stop_reason == "goal achieved"
    assert execution.completed_at == stopped_at
    assert [s.status for s in _steps(db, execution.id)] == ["SKIPPED", "SKIPPED"]

    execution_service.stop(org_id=1, execution_id=execution.id, reason="again", db=db, now=T0 + timedelta(days=3))
    db.commit()
    db.refresh(execution)

    assert execution.stop_reason == "goal achieved"
    assert execution.completed_at == stopped_at


def test_cancel_is_distinct_from_stop(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)

    execution_service.cancel(org_id=1, execution_id=execution.id, db=db, now=T0)
    db.commit()

    assert execution.status == "CANCELLED"
    assert {s.status for s in _steps(db, execution.id)} == {"SKIPPED"}

    # Terminal instances ignore later stop requests.
    execution_service.stop(org_id=1, execution_id=execution.id, db=db)
    assert execution.status == "CANCELLED"


def test_fail_marks_execution_failed(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)

    execution_service.fail(org_id=1, execution_id=execution.id, reason="subject not found", db=db, now=T0)
    db.commit()

    assert execution.status == "FAILED"
    assert execution.stop_reason == "subject not found"


def test_step_status_never_returns_to_pending(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)
    s1, _ = _steps(db, execution.id)

    execution_service.mark_step_sent(db, s1, now=T0)
    with pytest.raises(ConflictError):
        execution_service.mark_step_skipped(db, s1, reason="late", now=T0)
    db.commit()

    with pytest.raises(DBAPIError):
        db.execute(
            text("UPDATE campaign_step_executions SET status = 'PENDING' WHERE id = :id"),
            {"id": s1.id},
        )
    db.rollback()


def test_scheduled_at_is_immutable_in_the_database(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)
    s1, _ = _steps(db, execution.id)

    with pytest.raises(DBAPIError):
        db.execute(
            text("UPDATE campaign_step_executions SET scheduled_at = scheduled_at + interval '1 hour' WHERE id = :id"),
            {"id": s1.id},
        )
    db.rollback()


def test_record_delivery_events(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)
    s1, s2 = _steps(db, execution.id)

    execution_service.mark_step_sent(db, s1, now=T0, provider_message_id="abc")
    db.commit()

    opened_at = T0 + timedelta(minutes=10)
    row = execution_service.record_delivery_event(
        org_id=1,
        step_execution_id=s1.id,
        event="opened",
        db=db,
        now=opened_at,
    )
    db.commit()

    assert row.status == "DELIVERED"
    assert row.delivered_at == opened_at
    assert row.opened_at == opened_at
    assert row.clicked_at is None

    with pytest.raises(ConflictError):
        execution_service.record_delivery_event(org_id=1, step_execution_id=s2.id, event="delivered", db=db)

    with pytest.raises(ValidationError):
        execution_service.record_delivery_event(org_id=1, step_execution_id=s1.id, event="bounced", db=db)


def test_click_completes_execution_and_skips_the_rest(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)
    s1, s2 = _steps(db, execution.id)

    execution_service.mark_step_sent(db, s1, now=T0)
    db.commit()

    clicked_at = T0 + timedelta(minutes=30)
    execution_service.record_delivery_event(org_id=1, step_execution_id=s1.id, event="clicked", db=db, now=clicked_at)
    db.commit()
    db.refresh(execution)

    assert execution.status == "COMPLETED"
    assert execution.stop_reason == "link clicked"
    assert execution.completed_at == clicked_at
    assert [s.status for s in _steps(db, execution.id)] == ["DELIVERED", "SKIPPED"]

    # Later callbacks for the same message leave the finished run alone.
    execution_service.record_delivery_event(org_id=1, step_execution_id=s1.id, event="clicked", db=db)
    db.commit()
    db.refresh(execution)
    assert execution.completed_at == clicked_at


def test_overlong_reason_is_rejected_before_any_change(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence)

    with pytest.raises(ValidationError):
        execution_service.stop(org_id=1, execution_id=execution.id, reason="x" * 256, db=db)
    db.rollback()

    db.refresh(execution)
    assert execution.status == "ACTIVE"
    assert {s.status for s in _steps(db, execution.id)} == {"PENDING"}

    with pytest.raises(ValidationError):
        execution_service.start(
            org_id=1, sequence_id=sequence.id, subject_type="customer", subject_id="9" * 101, db=db
        )


def test_list_executions_filters_by_org_and_status(db, sequence_factory):
    seq1 = sequence_factory(org_id=1)
    seq2 = sequence_factory(org_id=2)
    e1 = _start(db, seq1, subject_id="1")
    _start(db, seq1, subject_id="2")
    _start(db, seq2, subject_id="1")
    execution_service.cancel(org_id=1, execution_id=e1.id, db=db)
    db.commit()

    assert len(execution_service.list_executions(org_id=1, db=db)) == 2
    cancelled = execution_service.list_executions(org_id=1, status="cancelled", db=db)
    assert [e.id for e in cancelled] == [e1.id]

    with pytest.raises(ValidationError):
        execution_service.list_executions(org_id=1, status="PAUSED", db=db)

    with pytest.raises(NotFoundError):
        execution_service.get_execution(org_id=2, execution_id=e1.id, db=db)


def test_purge_finished_executions_keeps_active_and_recent(db, sequence_factory):
    sequence = sequence_factory()
    old = _start(db, sequence, subject_id="old")
    recent = _start(db, sequence, subject_id="recent")
    active = _start(db, sequence, subject_id="active")

    execution_service.stop(org_id=1, execution_id=old.id, db=db, now=T0 + timedelta(days=1))
    execution_service.stop(org_id=1, execution_id=recent.id, db=db, now=T0 + timedelta(days=60))
    db.commit()

    deleted = execution_service.purge_finished_executions(
        org_id=1,
        older_than=T0 + timedelta(days=30),
        db=db,
    )
    db.commit()

    assert deleted == 1
    remaining = {e.id for e in db.query(ExecutionInstance).all()}
    assert remaining == {recent.id, active.id}
    assert db.query(StepExecution).filter(StepExecution.execution_id == old.id).count() == 0
