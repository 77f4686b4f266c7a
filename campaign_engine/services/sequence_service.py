from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from campaign_engine.core.errors import ConflictError, DuplicateNameError, NotFoundError, ValidationError
from campaign_engine.models.sequence import ChannelType, SequenceDefinition, StepDefinition
from campaign_engine.services import default_templates

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 255
MAX_SUBJECT_LENGTH = 255


@dataclass(frozen=True)
class StepInput:
    step_number: int
    delay_hours: int
    channel: str
    body_template: str
    subject_template: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Campaign sequence name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(f"Campaign sequence name must be at most {MAX_NAME_LENGTH} characters")
    return cleaned


def _validate_step(step: StepInput) -> None:
    if step.step_number is None or int(step.step_number) < 1:
        raise ValidationError("Step number must be positive")

    if step.delay_hours is None or int(step.delay_hours) < 0:
        raise ValidationError("Delay hours cannot be negative")

    try:
        channel = ChannelType(str(step.channel).upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown channel type: {step.channel}") from exc

    if not (step.body_template or "").strip():
        raise ValidationError("Body template is required")

    subject = (step.subject_template or "").strip()
    if channel.is_email and not subject:
        raise ValidationError("Subject template is required for email messages")
    if len(subject) > MAX_SUBJECT_LENGTH:
        raise ValidationError(f"Subject template must be at most {MAX_SUBJECT_LENGTH} characters")


def _validate_step_set(steps: Iterable[StepInput], existing: Iterable[StepDefinition] = ()) -> None:
    """Validate each step and the ordering of the combined active step set.

    Step numbers are unique, and delays may not decrease as step numbers grow,
    so step-number order and schedule order always agree.
    """
    combined: list[tuple[int, int]] = [(int(s.step_number), int(s.delay_hours)) for s in existing if s.is_active]

    for step in steps:
        _validate_step(step)
        combined.append((int(step.step_number), int(step.delay_hours)))

    numbers = [n for n, _ in combined]
    if len(numbers) != len(set(numbers)):
        raise ValidationError("Step numbers must be unique within a sequence")

    previous_delay = -1
    for _, delay in sorted(combined):
        if delay < previous_delay:
            raise ValidationError("Step delays must not decrease as step numbers increase")
        previous_delay = delay


def _build_step(sequence: SequenceDefinition, step: StepInput) -> StepDefinition:
    subject = (step.subject_template or "").strip() or None
    return StepDefinition(
        sequence=sequence,
        org_id=int(sequence.org_id),
        step_number=int(step.step_number),
        delay_hours=int(step.delay_hours),
        channel=ChannelType(str(step.channel).upper()).value,
        subject_template=subject,
        body_template=step.body_template,
        is_active=True,
    )


def _name_taken(db: Session, org_id: int, name: str, exclude_id: Optional[int] = None) -> bool:
    q = db.query(SequenceDefinition.id).filter(
        SequenceDefinition.org_id == int(org_id),
        SequenceDefinition.name == name,
    )
    if exclude_id is not None:
        q = q.filter(SequenceDefinition.id != int(exclude_id))
    return q.first() is not None


def _unset_defaults(db: Session, org_id: int, keep_id: Optional[int] = None) -> None:
    rows = (
        db.query(SequenceDefinition)
        .filter(
            SequenceDefinition.org_id == int(org_id),
            SequenceDefinition.is_default.is_(True),
        )
        .with_for_update()
        .all()
    )
    now = _utcnow()
    for row in rows:
        if keep_id is not None and row.id == keep_id:
            continue
        row.is_default = False
        row.updated_at = now
    # Flush before a new default is set; the partial unique index is checked row by row.
    db.flush()


def create_sequence(
    *,
    org_id: int,
    name: str,
    db: Session,
    steps: Optional[List[StepInput]] = None,
    description: Optional[str] = None,
    trigger_event: Optional[str] = None,
    is_default: bool = False,
) -> SequenceDefinition:
    """
    Caller owns the transaction: rows are flushed, never committed.
    """
    cleaned = _clean_name(name)
    steps = list(steps or [])
    _validate_step_set(steps)

    if _name_taken(db, org_id, cleaned):
        raise DuplicateNameError(f"Campaign sequence with name '{cleaned}' already exists")

    if is_default:
        _unset_defaults(db, org_id)

    sequence = SequenceDefinition(
        org_id=int(org_id),
        name=cleaned,
        description=description,
        trigger_event=(trigger_event or "").strip() or None,
        is_default=bool(is_default),
        is_active=True,
    )

    try:
        with db.begin_nested():
            db.add(sequence)
            db.flush()
            for step in sorted(steps, key=lambda s: int(s.step_number)):
                db.add(_build_step(sequence, step))
            db.flush()
    except IntegrityError as exc:
        raise DuplicateNameError(f"Campaign sequence with name '{cleaned}' already exists") from exc

    db.refresh(sequence)

    logger.info(
        "Created campaign sequence",
        extra={"org_id": int(org_id), "sequence_id": sequence.id, "step_count": len(steps)},
    )
    return sequence


def get_sequence(*, org_id: int, sequence_id: int, db: Session) -> SequenceDefinition:
    row = (
        db.query(SequenceDefinition)
        .filter(
            SequenceDefinition.id == int(sequence_id),
            SequenceDefinition.org_id == int(org_id),
        )
        .first()
    )
    if row is None:
        raise NotFoundError(f"Campaign sequence not found: {sequence_id}")
    return row


def list_sequences(*, org_id: int, db: Session, active_only: bool = False) -> List[SequenceDefinition]:
    q = db.query(SequenceDefinition).filter(SequenceDefinition.org_id == int(org_id))
    if active_only:
        q = q.filter(SequenceDefinition.is_active.is_(True))
    return q.order_by(SequenceDefinition.id.asc()).all()


def _find_default(db: Session, org_id: int) -> Optional[SequenceDefinition]:
    return (
        db.query(SequenceDefinition)
        .filter(
            SequenceDefinition.org_id == int(org_id),
            SequenceDefinition.is_default.is_(True),
            SequenceDefinition.is_active.is_(True),
        )
        .order_by(SequenceDefinition.id.asc())
        .first()
    )


def _materialize_default(db: Session, org_id: int) -> SequenceDefinition:
    existing = (
        db.query(SequenceDefinition)
        .filter(
            SequenceDefinition.org_id == int(org_id),
            SequenceDefinition.name == default_templates.DEFAULT_SEQUENCE_NAME,
        )
        .first()
    )
    if existing is not None:
        # Built-in sequence was deactivated or un-defaulted earlier; bring it back.
        return set_default(org_id=org_id, sequence_id=existing.id, db=db)

    steps = [
        StepInput(
            step_number=s.step_number,
            delay_hours=s.delay_hours,
            channel=s.channel,
            subject_template=s.subject_template,
            body_template=s.body_template,
        )
        for s in default_templates.default_steps()
    ]
    return create_sequence(
        org_id=org_id,
        name=default_templates.DEFAULT_SEQUENCE_NAME,
        description=default_templates.DEFAULT_SEQUENCE_DESCRIPTION,
        steps=steps,
        is_default=True,
        db=db,
    )


def get_default_sequence(*, org_id: int, db: Session) -> SequenceDefinition:
    """Return the org's default sequence, creating the built-in one if none exists."""
    sequence = _find_default(db, org_id)
    if sequence is not None:
        return sequence

    logger.info(
        "No default campaign sequence; materializing built-in default",
        extra={"org_id": int(org_id)},
    )

    try:
        with db.begin_nested():
            sequence = _materialize_default(db, org_id)
    except (IntegrityError, DuplicateNameError):
        # A concurrent caller materialized it first.
        sequence = _find_default(db, org_id)
        if sequence is None:
            raise

    return sequence


def set_default(*, org_id: int, sequence_id: int, db: Session) -> SequenceDefinition:
    sequence = get_sequence(org_id=org_id, sequence_id=sequence_id, db=db)

    _unset_defaults(db, org_id, keep_id=sequence.id)

    sequence.is_default = True
    sequence.is_active = True
    sequence.updated_at = _utcnow()
    db.flush()

    logger.info(
        "Set default campaign sequence",
        extra={"org_id": int(org_id), "sequence_id": sequence.id},
    )
    return sequence


def deactivate_sequence(*, org_id: int, sequence_id: int, db: Session) -> SequenceDefinition:
    """Soft delete. Executions keep referencing the row."""
    sequence = get_sequence(org_id=org_id, sequence_id=sequence_id, db=db)
    if not sequence.is_active:
        return sequence

    others = (
        db.query(SequenceDefinition)
        .filter(
            SequenceDefinition.org_id == int(org_id),
            SequenceDefinition.is_active.is_(True),
            SequenceDefinition.id != sequence.id,
        )
        .order_by(SequenceDefinition.id.asc())
        .all()
    )
    if not others:
        raise ConflictError("Cannot delete the only campaign sequence for this organization")

    was_default = bool(sequence.is_default)
    sequence.is_active = False
    sequence.is_default = False
    sequence.updated_at = _utcnow()
    db.flush()

    if was_default:
        set_default(org_id=org_id, sequence_id=others[0].id, db=db)

    logger.info(
        "Deactivated campaign sequence",
        extra={"org_id": int(org_id), "sequence_id": sequence.id, "was_default": was_default},
    )
    return sequence


def update_sequence(
    *,
    org_id: int,
    sequence_id: int,
    db: Session,
    name: Optional[str] = None,
    description: Optional[str] = None,
    trigger_event: Optional[str] = None,
    is_active: Optional[bool] = None,
    is_default: Optional[bool] = None,
) -> SequenceDefinition:
    sequence = get_sequence(org_id=org_id, sequence_id=sequence_id, db=db)

    if name is not None:
        cleaned = _clean_name(name)
        if cleaned != sequence.name and _name_taken(db, org_id, cleaned, exclude_id=sequence.id):
            raise DuplicateNameError(f"Campaign sequence with name '{cleaned}' already exists")
        sequence.name = cleaned

    if description is not None:
        sequence.description = description

    if trigger_event is not None:
        sequence.trigger_event = trigger_event.strip() or None

    if is_active is False:
        deactivate_sequence(org_id=org_id, sequence_id=sequence.id, db=db)
    elif is_active is True:
        sequence.is_active = True

    if is_default is True and not sequence.is_default:
        set_default(org_id=org_id, sequence_id=sequence.id, db=db)
    elif is_default is False:
        sequence.is_default = False

    sequence.updated_at = _utcnow()

    try:
        with db.begin_nested():
            db.flush()
    except IntegrityError as exc:
        raise DuplicateNameError(f"Campaign sequence with name '{sequence.name}' already exists") from exc

    return sequence


def add_step(*, org_id: int, sequence_id: int, step: StepInput, db: Session) -> StepDefinition:
    sequence = get_sequence(org_id=org_id, sequence_id=sequence_id, db=db)
    _validate_step_set([step], existing=sequence.steps)

    row = _build_step(sequence, step)
    db.add(row)
    db.flush()
    db.refresh(row)

    logger.info(
        "Added campaign step",
        extra={"org_id": int(org_id), "sequence_id": sequence.id, "step_number": row.step_number},
    )
    return row


def remove_step(*, org_id: int, sequence_id: int, step_id: int, db: Session) -> StepDefinition:
    """Soft removal: pending step executions for this step are skipped at dispatch time."""
    row = (
        db.query(StepDefinition)
        .filter(
            StepDefinition.id == int(step_id),
            StepDefinition.sequence_id == int(sequence_id),
            StepDefinition.org_id == int(org_id),
        )
        .first()
    )
    if row is None:
        raise NotFoundError(f"Campaign step not found: {step_id}")

    row.is_active = False
    db.flush()

    logger.info(
        "Removed campaign step",
        extra={"org_id": int(org_id), "sequence_id": int(sequence_id), "step_id": row.id},
    )
    return row
