import logging
from datetime import datetime, timedelta, timezone

from campaign_engine.services import execution_service
from campaign_engine.services.stuck_detector import find_stuck_executions, scan_stuck_executions

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _start(db, sequence, subject_id):
    row = execution_service.start(
        org_id=sequence.org_id,
        sequence_id=sequence.id,
        subject_type="customer",
        subject_id=subject_id,
        now=T0,
        db=db,
    )
    db.commit()
    return row


def test_overdue_pending_step_is_reported(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence, "77")

    # Inside the threshold: nothing to report.
    assert find_stuck_executions(org_id=1, db=db, now=T0 + timedelta(minutes=10), threshold_minutes=15) == []

    stuck = find_stuck_executions(org_id=1, db=db, now=T0 + timedelta(minutes=40), threshold_minutes=15)
    assert len(stuck) == 1
    assert stuck[0].execution_id == execution.id
    assert stuck[0].oldest_pending_at == T0
    assert stuck[0].overdue_minutes == 40

    # Reporting only.
    db.refresh(execution)
    assert execution.status == "ACTIVE"


def test_finished_executions_are_never_stuck(db, sequence_factory):
    sequence = sequence_factory()
    execution = _start(db, sequence, "77")
    execution_service.cancel(org_id=1, execution_id=execution.id, db=db, now=T0)
    db.commit()

    assert find_stuck_executions(org_id=1, db=db, now=T0 + timedelta(days=2), threshold_minutes=15) == []


def test_scan_covers_every_org_and_logs(db, sequence_factory, caplog):
    _start(db, sequence_factory(org_id=1), "a")
    _start(db, sequence_factory(org_id=2), "b")

    with caplog.at_level(logging.WARNING, logger="campaign_engine.services.stuck_detector"):
        found = scan_stuck_executions(now=T0 + timedelta(hours=1), threshold_minutes=15)

    assert sorted(s.org_id for s in found) == [1, 2]
    warnings = [r for r in caplog.records if r.getMessage() == "Campaign execution appears stuck"]
    assert len(warnings) == 2
