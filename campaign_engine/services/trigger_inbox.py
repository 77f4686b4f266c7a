import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import case, func, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from campaign_engine.core.errors import ValidationError
from campaign_engine.database import SessionLocal
from campaign_engine.models.trigger_event import TriggerEvent

logger = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60


@dataclass(frozen=True)
class TriggerProcessResult:
    processed: int
    failed: int


TriggerHandler = Callable[[TriggerEvent, Session], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _retry_wait(retry_count: int) -> timedelta:
    """Exponential backoff: 0 retries => 0s, then 2s, 4s, 8s ... capped at 60s."""
    n = int(retry_count) if retry_count is not None else 0
    if n <= 0:
        return timedelta(seconds=0)
    return timedelta(seconds=min(2**n, MAX_BACKOFF_SECONDS))


def _is_due_clause(now: datetime):
    """
    SQL-side due filter, applied before LIMIT so backed-off rows never starve due rows.
    due_at := created_at + least(60, 2^retry_count) seconds (0 when retry_count <= 0)
    """
    retry_count = func.coalesce(TriggerEvent.retry_count, 0)

    wait_seconds = case(
        (retry_count <= 0, 0),
        else_=func.least(MAX_BACKOFF_SECONDS, func.power(2, retry_count)),
    )

    due_at = TriggerEvent.created_at + (wait_seconds * text("interval '1 second'"))
    return due_at <= now


def _default_handlers() -> Dict[str, TriggerHandler]:
    from campaign_engine.services.triggers import (
        handle_automation_event,
        handle_goal_achieved,
        handle_review_request_created,
    )

    return {
        "REVIEW_REQUEST_CREATED": handle_review_request_created,
        "AUTOMATION_EVENT": handle_automation_event,
        "GOAL_ACHIEVED": handle_goal_achieved,
    }


def enqueue_trigger(
    *,
    org_id: int,
    event_type: str,
    idempotency_key: str,
    payload: Dict[str, Any],
    db: Session,
) -> Optional[int]:
    """Insert a trigger event. A repeat of (org, type, key) is absorbed and returns None."""
    event_type = (event_type or "").strip().upper()
    idempotency_key = (idempotency_key or "").strip()
    if event_type not in _default_handlers():
        raise ValidationError(f"Unknown trigger event type: {event_type}")
    if not idempotency_key:
        raise ValidationError("idempotency_key is required")

    stmt = (
        insert(TriggerEvent)
        .values(
            org_id=int(org_id),
            event_type=event_type,
            idempotency_key=idempotency_key,
            payload=dict(payload or {}),
        )
        .on_conflict_do_nothing(constraint="uq_trigger_events_idempotency")
        .returning(TriggerEvent.id)
    )
    new_id = db.execute(stmt).scalar()

    if new_id is None:
        logger.info(
            "Duplicate trigger event ignored",
            extra={"org_id": int(org_id), "event_type": event_type, "idempotency_key": idempotency_key},
        )
    return new_id


def process_trigger_batch(
    *,
    db: Optional[Session] = None,
    now: Optional[datetime] = None,
    batch_size: int = 50,
    max_retries: int = 10,
    handlers: Optional[Dict[str, TriggerHandler]] = None,
) -> TriggerProcessResult:
    owns_db = db is None
    if owns_db:
        db = SessionLocal()

    if now is None:
        now = _utcnow()

    if handlers is None:
        handlers = _default_handlers()

    processed = 0
    failed = 0

    try:
        rows = (
            db.query(TriggerEvent)
            .filter(TriggerEvent.processed.is_(False))
            .filter(_is_due_clause(now))
            .order_by(TriggerEvent.id.asc())
            .with_for_update(skip_locked=True)
            .limit(int(batch_size))
            .all()
        )

        for row in rows:
            handler = handlers.get(row.event_type)

            try:
                if handler is None:
                    raise ValueError(f"Unknown event_type: {row.event_type}")

                # Handler writes roll back alone on failure; the retry bookkeeping survives.
                with db.begin_nested():
                    handler(row, db)

                row.processed = True
                row.processed_at = now
                row.last_error = None
                db.flush()
                processed += 1

            except Exception as exc:
                row.retry_count = int(row.retry_count or 0) + 1
                row.last_error = str(exc)[:2000]

                if int(row.retry_count) >= int(max_retries):
                    row.processed = True
                    row.processed_at = now

                db.flush()
                failed += 1
                logger.exception(
                    "Trigger event processing failed",
                    extra={
                        "trigger_event_id": row.id,
                        "org_id": int(row.org_id),
                        "event_type": row.event_type,
                        "retry_count": int(row.retry_count),
                        "max_retries": int(max_retries),
                        "next_attempt_at": None
                        if row.processed
                        else (row.created_at + _retry_wait(row.retry_count)).isoformat(),
                    },
                )

        if owns_db:
            db.commit()

        return TriggerProcessResult(processed=processed, failed=failed)

    except Exception:
        if owns_db:
            db.rollback()
        raise
    finally:
        if owns_db:
            db.close()
