from fastapi import APIRouter, Depends, Request

from campaign_engine.core.authorization import Role, require_role
from campaign_engine.database import SessionLocal
from campaign_engine.schemas.trigger import TriggerAccepted, TriggerCreate
from campaign_engine.services.trigger_inbox import enqueue_trigger

router = APIRouter(prefix="/triggers", tags=["Triggers"])


@router.post("", response_model=TriggerAccepted, status_code=202)
def create_trigger(
    payload: TriggerCreate,
    request: Request,
    _role=Depends(require_role(Role.OPERATOR)),
):
    db = SessionLocal()
    try:
        new_id = enqueue_trigger(
            org_id=int(request.state.org_id),
            event_type=payload.event_type,
            idempotency_key=payload.idempotency_key,
            payload=payload.payload,
            db=db,
        )
        db.commit()
        return {"trigger_event_id": new_id, "duplicate": new_id is None}
    finally:
        db.close()
