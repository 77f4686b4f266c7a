from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TriggerCreate(BaseModel):
    event_type: str
    idempotency_key: str
    payload: Dict[str, Any] = Field(default_factory=dict)


class TriggerAccepted(BaseModel):
    trigger_event_id: Optional[int]
    duplicate: bool
