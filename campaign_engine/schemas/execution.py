from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class ExecutionStart(BaseModel):
    subject_type: str
    subject_id: str
    # Omitted: the organization's default sequence.
    sequence_id: Optional[int] = None
    override: bool = False


class ExecutionStop(BaseModel):
    reason: Optional[str] = None


class DeliveryEventCreate(BaseModel):
    event: Literal["delivered", "opened", "clicked"]


class PurgeRequest(BaseModel):
    older_than: datetime


class StepExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    execution_id: int
    step_id: int
    step_number: int
    channel: str
    status: str
    scheduled_at: datetime
    sent_at: Optional[datetime]
    error_detail: Optional[str]
    provider_message_id: Optional[str]
    attempt_count: int
    delivered_at: Optional[datetime]
    opened_at: Optional[datetime]
    clicked_at: Optional[datetime]


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: int
    sequence_id: int
    subject_type: str
    subject_id: str
    status: str
    current_step: int
    stop_reason: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]


class ExecutionDetailResponse(ExecutionResponse):
    step_executions: List[StepExecutionResponse]


class StuckExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    org_id: int
    execution_id: int
    sequence_id: int
    subject_type: str
    subject_id: str
    oldest_pending_at: datetime
    overdue_minutes: int
