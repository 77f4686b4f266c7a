from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class SubjectUpsert(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None


class GoalAchieved(BaseModel):
    stop_active: bool = True


class SubjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    subject_type: str
    subject_id: str
    name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    attributes: Dict[str, Any]
    goal_achieved_at: Optional[datetime]
