"""Trigger-source adapters.

Campaign-style triggers start the org default sequence for a review request.
Automation-style triggers start the first active sequence whose trigger_event
matches the event name. Both go through the same idempotent start.
"""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from campaign_engine.core.errors import ValidationError
from campaign_engine.models.sequence import SequenceDefinition
from campaign_engine.models.trigger_event import TriggerEvent
from campaign_engine.services import execution_service, sequence_service, subject_service

logger = logging.getLogger(__name__)

REVIEW_REQUEST_SUBJECT = "review_request"
CUSTOMER_SUBJECT = "customer"

_CONTACT_FIELDS = ("name", "email", "phone")


def _payload(row: TriggerEvent) -> Dict[str, Any]:
    payload = row.payload or {}
    if not isinstance(payload, dict):
        raise ValidationError("Trigger payload must be an object")
    return payload


def _required(payload: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        v = payload.get(key)
        if v is not None and str(v).strip():
            return str(v).strip()
    raise ValidationError(f"Trigger payload missing {keys[0]}")


def _sync_contact(row: TriggerEvent, payload: Dict[str, Any], subject_type: str, subject_id: str, db: Session) -> None:
    contact = payload.get("contact")
    if not isinstance(contact, dict):
        return
    subject_service.upsert_subject(
        org_id=int(row.org_id),
        subject_type=subject_type,
        subject_id=subject_id,
        db=db,
        attributes=contact.get("attributes"),
        **{k: contact.get(k) for k in _CONTACT_FIELDS},
    )


def find_sequence_for_event(*, org_id: int, event: str, db: Session) -> Optional[SequenceDefinition]:
    return (
        db.query(SequenceDefinition)
        .filter(
            SequenceDefinition.org_id == int(org_id),
            SequenceDefinition.is_active.is_(True),
            SequenceDefinition.trigger_event == event,
        )
        .order_by(SequenceDefinition.id.asc())
        .first()
    )


def handle_review_request_created(row: TriggerEvent, db: Session) -> None:
    payload = _payload(row)
    subject_id = _required(payload, "review_request_id", "id")

    _sync_contact(row, payload, REVIEW_REQUEST_SUBJECT, subject_id, db)

    sequence = sequence_service.get_default_sequence(org_id=int(row.org_id), db=db)
    execution_service.start(
        org_id=int(row.org_id),
        sequence_id=sequence.id,
        subject_type=REVIEW_REQUEST_SUBJECT,
        subject_id=subject_id,
        override=bool(payload.get("override", False)),
        db=db,
    )


def handle_automation_event(row: TriggerEvent, db: Session) -> None:
    payload = _payload(row)
    event = _required(payload, "event")
    subject_id = _required(payload, "customer_id", "subject_id")

    sequence = find_sequence_for_event(org_id=int(row.org_id), event=event, db=db)
    if sequence is None:
        logger.info(
            "No active sequence for automation event; skipping",
            extra={"trigger_event_id": row.id, "org_id": int(row.org_id), "event": event},
        )
        return

    _sync_contact(row, payload, CUSTOMER_SUBJECT, subject_id, db)

    execution_service.start(
        org_id=int(row.org_id),
        sequence_id=sequence.id,
        subject_type=CUSTOMER_SUBJECT,
        subject_id=subject_id,
        override=bool(payload.get("override", False)),
        db=db,
    )


def handle_goal_achieved(row: TriggerEvent, db: Session) -> None:
    payload = _payload(row)
    subject_service.mark_goal_achieved(
        org_id=int(row.org_id),
        subject_type=_required(payload, "subject_type"),
        subject_id=_required(payload, "subject_id"),
        db=db,
    )
