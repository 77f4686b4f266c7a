from datetime import datetime, timedelta, timezone

import pytest

from campaign_engine.core.errors import ValidationError
from campaign_engine.models.execution import ExecutionInstance
from campaign_engine.models.trigger_event import TriggerEvent
from campaign_engine.services import execution_service, sequence_service, subject_service
from campaign_engine.services.scheduler_service import process_due_steps
from campaign_engine.services.sequence_service import StepInput
from campaign_engine.services.trigger_inbox import _retry_wait, enqueue_trigger, process_trigger_batch


def _enqueue(db, event_type, key, payload, org_id=1):
    new_id = enqueue_trigger(
        org_id=org_id,
        event_type=event_type,
        idempotency_key=key,
        payload=payload,
        db=db,
    )
    db.commit()
    return new_id


def _due(db, trigger_id, seconds=1):
    row = db.query(TriggerEvent).filter(TriggerEvent.id == trigger_id).one()
    return row, row.created_at + timedelta(seconds=seconds)


def test_duplicate_trigger_is_absorbed(db):
    first = _enqueue(db, "review_request_created", "rr-1", {"review_request_id": 812})
    second = _enqueue(db, "REVIEW_REQUEST_CREATED", "rr-1", {"review_request_id": 812})

    assert first is not None
    assert second is None
    assert db.query(TriggerEvent).count() == 1


def test_enqueue_validates_type_and_key(db):
    with pytest.raises(ValidationError):
        enqueue_trigger(org_id=1, event_type="PAYROLL_RUN_POSTED", idempotency_key="k", payload={}, db=db)
    with pytest.raises(ValidationError):
        enqueue_trigger(org_id=1, event_type="GOAL_ACHIEVED", idempotency_key="  ", payload={}, db=db)


def test_review_request_trigger_starts_default_sequence(db):
    trigger_id = _enqueue(
        db,
        "REVIEW_REQUEST_CREATED",
        "rr-812",
        {"review_request_id": 812, "contact": {"name": "Jane Doe", "phone": "5550100199"}},
    )
    _, now = _due(db, trigger_id)

    result = process_trigger_batch(db=db, now=now, batch_size=10)
    db.commit()

    assert (result.processed, result.failed) == (1, 0)
    execution = execution_service.find_active_execution(
        org_id=1, subject_type="review_request", subject_id="812", db=db
    )
    assert execution is not None
    sequence = sequence_service.get_sequence(org_id=1, sequence_id=execution.sequence_id, db=db)
    assert sequence.is_default is True
    assert sequence.name == "Default Review Collection"

    subject = subject_service.get_subject(org_id=1, subject_type="review_request", subject_id="812", db=db)
    assert subject.phone == "5550100199"

    # Replaying the same source event does not start a second run.
    assert _enqueue(db, "REVIEW_REQUEST_CREATED", "rr-812", {"review_request_id": 812}) is None
    assert db.query(ExecutionInstance).count() == 1


def test_automation_event_matches_trigger_event(db, sequence_factory):
    matching = sequence_factory(
        name="Job done",
        trigger_event="job_completed",
        steps=[StepInput(step_number=1, delay_hours=2, channel="SMS", body_template="Thanks!")],
    )
    first = _enqueue(db, "AUTOMATION_EVENT", "a-1", {"event": "job_completed", "customer_id": 55})
    second = _enqueue(db, "AUTOMATION_EVENT", "a-2", {"event": "invoice_paid", "customer_id": 56})
    _, now = _due(db, max(first, second))

    result = process_trigger_batch(db=db, now=now, batch_size=10)
    db.commit()

    assert (result.processed, result.failed) == (2, 0)
    executions = db.query(ExecutionInstance).all()
    assert [(e.sequence_id, e.subject_type, e.subject_id) for e in executions] == [
        (matching.id, "customer", "55")
    ]


def test_goal_achieved_trigger_stops_active_execution(db, sequence_factory, subject_factory):
    sequence = sequence_factory()
    subject_factory()
    execution = execution_service.start(
        org_id=1, sequence_id=sequence.id, subject_type="customer", subject_id="77", db=db
    )
    db.commit()

    trigger_id = _enqueue(db, "GOAL_ACHIEVED", "goal-77", {"subject_type": "customer", "subject_id": "77"})
    _, now = _due(db, trigger_id)
    result = process_trigger_batch(db=db, now=now, batch_size=10)
    db.commit()

    assert result.processed == 1
    db.refresh(execution)
    assert execution.status == "COMPLETED"
    assert execution.stop_reason == "goal achieved"


def test_failing_handler_backs_off_and_keeps_no_partial_writes(db, sequence_factory):
    sequence_factory(name="Job done", trigger_event="job_completed")
    trigger_id = _enqueue(db, "AUTOMATION_EVENT", "a-bad", {"event": "job_completed"})
    row, now = _due(db, trigger_id)

    r1 = process_trigger_batch(db=db, now=now, batch_size=10, max_retries=3)
    db.commit()
    db.refresh(row)
    assert (r1.processed, r1.failed) == (0, 1)
    assert row.retry_count == 1
    assert row.processed is False
    assert "customer_id" in row.last_error

    # retry_count=1 waits 2s from created_at.
    r2 = process_trigger_batch(db=db, now=now, batch_size=10, max_retries=3)
    db.commit()
    assert (r2.processed, r2.failed) == (0, 0)

    for seconds in (3, 5):
        process_trigger_batch(db=db, now=row.created_at + timedelta(seconds=seconds), batch_size=10, max_retries=3)
        db.commit()

    db.refresh(row)
    assert row.retry_count == 3
    assert row.processed is True
    assert db.query(ExecutionInstance).count() == 0


def test_earlier_goal_does_not_stop_a_later_run(db, sequence_factory, subject_factory, channel, collaborators):
    sequence_factory(
        name="Job done",
        trigger_event="job_completed",
        steps=[StepInput(step_number=1, delay_hours=0, channel="SMS", body_template="Thanks {{customerName}}")],
    )
    subject_factory()
    subject_service.mark_goal_achieved(
        org_id=1,
        subject_type="customer",
        subject_id="77",
        now=datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
        db=db,
    )
    db.commit()

    trigger_id = _enqueue(db, "AUTOMATION_EVENT", "a-77", {"event": "job_completed", "customer_id": 77})
    _, now = _due(db, trigger_id)
    assert process_trigger_batch(db=db, now=now, batch_size=10).processed == 1
    db.commit()

    counts = process_due_steps(now=datetime.now(timezone.utc) + timedelta(minutes=1), collaborators=collaborators)
    assert (counts.sent, counts.skipped) == (1, 0)
    assert len(channel.sms) == 1

    db.expire_all()
    execution = db.query(ExecutionInstance).one()
    assert execution.status == "ACTIVE"
    assert execution.stop_reason is None


def test_retry_wait_doubles_and_caps():
    assert [_retry_wait(n).total_seconds() for n in (0, 1, 2, 3)] == [0, 2, 4, 8]
    assert _retry_wait(10).total_seconds() == 60
