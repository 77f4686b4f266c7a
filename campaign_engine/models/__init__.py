from campaign_engine.models.execution import ExecutionInstance, StepExecution
from campaign_engine.models.sequence import SequenceDefinition, StepDefinition
from campaign_engine.models.subject import CampaignSubject
from campaign_engine.models.trigger_event import TriggerEvent

__all__ = [
    "CampaignSubject",
    "ExecutionInstance",
    "SequenceDefinition",
    "StepDefinition",
    "StepExecution",
    "TriggerEvent",
]
