import pytest

from campaign_engine.core.errors import ConflictError, DuplicateNameError, NotFoundError, ValidationError
from campaign_engine.models.sequence import SequenceDefinition
from campaign_engine.services import sequence_service
from campaign_engine.services.default_templates import DEFAULT_SEQUENCE_NAME
from campaign_engine.services.sequence_service import StepInput


def _sms(step_number: int, delay_hours: int) -> StepInput:
    return StepInput(step_number=step_number, delay_hours=delay_hours, channel="SMS", body_template="Hi")


def test_create_sequence_persists_ordered_steps(db):
    row = sequence_service.create_sequence(
        org_id=1,
        name="  Win-back  ",
        steps=[
            StepInput(
                step_number=2,
                delay_hours=48,
                channel="email_professional",
                subject_template="We miss you",
                body_template="<p>Come back</p>",
            ),
            _sms(1, 0),
        ],
        db=db,
    )
    db.commit()

    assert row.name == "Win-back"
    assert [s.step_number for s in row.steps] == [1, 2]
    assert [s.channel for s in row.steps] == ["SMS", "EMAIL_PROFESSIONAL"]
    assert row.is_active is True
    assert row.is_default is False


def test_duplicate_name_in_same_org_is_rejected(db, sequence_factory):
    sequence_factory(org_id=1, name="Follow up")

    with pytest.raises(DuplicateNameError) as exc:
        sequence_service.create_sequence(org_id=1, name="Follow up", db=db)

    # Both a validation and a conflict failure.
    assert isinstance(exc.value, ValidationError)
    assert isinstance(exc.value, ConflictError)


def test_same_name_allowed_in_other_org(db, sequence_factory):
    sequence_factory(org_id=1, name="Follow up")
    other = sequence_factory(org_id=2, name="Follow up")
    assert other.org_id == 2


@pytest.mark.parametrize(
    "step,message",
    [
        (StepInput(step_number=0, delay_hours=0, channel="SMS", body_template="x"), "Step number"),
        (StepInput(step_number=1, delay_hours=-1, channel="SMS", body_template="x"), "Delay"),
        (StepInput(step_number=1, delay_hours=0, channel="FAX", body_template="x"), "Unknown channel"),
        (StepInput(step_number=1, delay_hours=0, channel="SMS", body_template="  "), "Body"),
        (StepInput(step_number=1, delay_hours=0, channel="EMAIL_PLAIN", body_template="x"), "Subject"),
    ],
)
def test_invalid_step_definitions_are_rejected_before_persistence(db, step, message):
    with pytest.raises(ValidationError) as exc:
        sequence_service.create_sequence(org_id=1, name="Bad", steps=[step], db=db)
    assert message in exc.value.message
    assert db.query(SequenceDefinition).count() == 0


def test_step_numbers_must_be_unique_and_delays_ordered(db):
    with pytest.raises(ValidationError):
        sequence_service.create_sequence(org_id=1, name="Dup", steps=[_sms(1, 0), _sms(1, 5)], db=db)

    with pytest.raises(ValidationError):
        sequence_service.create_sequence(org_id=1, name="Backwards", steps=[_sms(1, 10), _sms(2, 5)], db=db)


def test_default_sequence_self_heals_and_is_stable(db):
    first = sequence_service.get_default_sequence(org_id=42, db=db)
    db.commit()

    assert first.name == DEFAULT_SEQUENCE_NAME
    assert first.is_default is True
    assert [s.delay_hours for s in first.active_steps] == [0, 24, 120, 336]
    assert [s.channel for s in first.active_steps] == ["SMS", "EMAIL_PROFESSIONAL", "EMAIL_PLAIN", "EMAIL_PLAIN"]
    assert all(s.subject_template for s in first.active_steps[1:])

    second = sequence_service.get_default_sequence(org_id=42, db=db)
    assert second.id == first.id
    assert db.query(SequenceDefinition).filter(SequenceDefinition.org_id == 42).count() == 1


def test_set_default_leaves_exactly_one_default(db, sequence_factory):
    a = sequence_factory(name="A", is_default=True)
    b = sequence_factory(name="B")

    sequence_service.set_default(org_id=1, sequence_id=b.id, db=db)
    db.commit()

    defaults = (
        db.query(SequenceDefinition)
        .filter(SequenceDefinition.org_id == 1, SequenceDefinition.is_default.is_(True))
        .all()
    )
    assert [d.id for d in defaults] == [b.id]
    db.refresh(a)
    assert a.is_default is False


def test_deactivating_only_sequence_conflicts(db, sequence_factory):
    only = sequence_factory(name="Only")

    with pytest.raises(ConflictError):
        sequence_service.deactivate_sequence(org_id=1, sequence_id=only.id, db=db)


def test_deactivating_default_promotes_remaining_sequence(db, sequence_factory):
    a = sequence_factory(name="A", is_default=True)
    b = sequence_factory(name="B")

    sequence_service.deactivate_sequence(org_id=1, sequence_id=a.id, db=db)
    db.commit()

    db.refresh(a)
    db.refresh(b)
    assert a.is_active is False
    assert a.is_default is False
    assert b.is_default is True


def test_sequences_are_scoped_to_their_org(db, sequence_factory):
    row = sequence_factory(org_id=1)

    with pytest.raises(NotFoundError):
        sequence_service.get_sequence(org_id=2, sequence_id=row.id, db=db)
    assert sequence_service.list_sequences(org_id=2, db=db) == []


def test_update_sequence_rename_conflict(db, sequence_factory):
    sequence_factory(name="A")
    b = sequence_factory(name="B")

    with pytest.raises(DuplicateNameError):
        sequence_service.update_sequence(org_id=1, sequence_id=b.id, name="A", db=db)


def test_add_and_remove_step(db, sequence_factory):
    row = sequence_factory()

    added = sequence_service.add_step(org_id=1, sequence_id=row.id, step=_sms(3, 72), db=db)
    db.commit()
    assert added.step_number == 3

    with pytest.raises(ValidationError):
        sequence_service.add_step(org_id=1, sequence_id=row.id, step=_sms(4, 1), db=db)
    db.rollback()

    sequence_service.remove_step(org_id=1, sequence_id=row.id, step_id=added.id, db=db)
    db.commit()
    db.refresh(row)
    assert [s.step_number for s in row.active_steps] == [1, 2]

    # A removed step number can be reused.
    again = sequence_service.add_step(org_id=1, sequence_id=row.id, step=_sms(3, 96), db=db)
    db.commit()
    assert again.id != added.id
