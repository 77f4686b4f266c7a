from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class StepCreate(BaseModel):
    step_number: int
    delay_hours: int
    channel: str
    body_template: str
    subject_template: Optional[str] = None


class SequenceCreate(BaseModel):
    name: str
    description: Optional[str] = None
    trigger_event: Optional[str] = None
    is_default: bool = False
    steps: List[StepCreate] = Field(default_factory=list)


class SequenceUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_event: Optional[str] = None
    is_active: Optional[bool] = None
    is_default: Optional[bool] = None


class StepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sequence_id: int
    step_number: int
    delay_hours: int
    channel: str
    subject_template: Optional[str]
    body_template: str
    is_active: bool


class SequenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    name: str
    description: Optional[str]
    trigger_event: Optional[str]
    is_default: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime
    steps: List[StepResponse]
