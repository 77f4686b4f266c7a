from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from campaign_engine.core.errors import ConflictError, ConsistencyError, DispatchError
from campaign_engine.models.execution import ExecutionInstance, ExecutionStatus, StepExecution, StepStatus
from campaign_engine.models.sequence import ChannelType, StepDefinition
from campaign_engine.services import execution_service
from campaign_engine.services.channels import (
    Collaborators,
    DeliveryResult,
    SubjectContact,
    default_collaborators,
)
from campaign_engine.services.template_renderer import build_template_variables

logger = logging.getLogger(__name__)

INACTIVE_STEP_REASON = "step definition inactive"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DispatchCoordinator:
    """Sends one step execution through its channel and records the outcome.

    Explicit channel failures, DispatchError included, are stored on the step
    and reported as False. Anything else propagates so the caller can roll
    back and leave the step PENDING.
    """

    def __init__(self, collaborators: Optional[Collaborators] = None):
        self.collaborators = collaborators or default_collaborators()

    def _load_execution(self, db: Session, step: StepExecution) -> ExecutionInstance:
        execution = (
            db.query(ExecutionInstance)
            .filter(
                ExecutionInstance.id == step.execution_id,
                ExecutionInstance.org_id == step.org_id,
            )
            .first()
        )
        if execution is None:
            raise ConsistencyError(f"Step execution {step.id} references a missing campaign execution")
        return execution

    def _load_definition(self, db: Session, step: StepExecution) -> StepDefinition:
        definition = (
            db.query(StepDefinition)
            .filter(
                StepDefinition.id == step.step_id,
                StepDefinition.org_id == step.org_id,
            )
            .first()
        )
        if definition is None:
            raise ConsistencyError(f"Step execution {step.id} references a missing step definition")
        return definition

    def _send(
        self,
        channel: ChannelType,
        contact: SubjectContact,
        definition: StepDefinition,
        body: str,
        variables: dict,
    ) -> DeliveryResult:
        if channel == ChannelType.SMS:
            if not contact.phone:
                raise DispatchError("Subject has no phone number")
            return self.collaborators.sms.send_sms(contact, body)

        if not contact.email:
            raise DispatchError("Subject has no email address")
        subject_line = self.collaborators.renderer(definition.subject_template, variables)
        return self.collaborators.email.send_email(contact, subject_line, body, channel)

    def dispatch(
        self,
        db: Session,
        step: StepExecution,
        *,
        subject: Optional[SubjectContact] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or _utcnow()

        if step.status not in (StepStatus.PENDING.value, StepStatus.FAILED.value):
            raise ConflictError(f"Step execution {step.id} is already {step.status}")

        log_extra = {
            "org_id": int(step.org_id),
            "execution_id": step.execution_id,
            "step_execution_id": step.id,
            "channel": step.channel,
        }

        execution = self._load_execution(db, step)

        try:
            definition = self._load_definition(db, step)
        except ConsistencyError as exc:
            logger.error("Skipping step execution: %s", exc.message, extra=log_extra)
            execution_service.mark_step_skipped(db, step, reason=exc.message, now=now)
            execution_service.evaluate_completion(db, execution, now=now)
            return False

        if not definition.is_active:
            if not step.is_pending:
                raise ConflictError("Step definition is no longer active")
            execution_service.mark_step_skipped(db, step, reason=INACTIVE_STEP_REASON, now=now)
            execution_service.evaluate_completion(db, execution, now=now)
            logger.info("Skipped step for inactive definition", extra=log_extra)
            return False

        if subject is None:
            subject = self.collaborators.resolver.resolve(
                db,
                org_id=int(execution.org_id),
                subject_type=execution.subject_type,
                subject_id=execution.subject_id,
            )

        variables = build_template_variables(
            name=subject.name,
            email=subject.email,
            phone=subject.phone,
            attributes=subject.attributes,
            today=now.date(),
        )
        body = self.collaborators.renderer(definition.body_template, variables)

        try:
            result = self._send(ChannelType(step.channel), subject, definition, body, variables)
        except DispatchError as exc:
            result = DeliveryResult(success=False, error=exc.message)

        if result.success:
            execution_service.mark_step_sent(
                db,
                step,
                now=now,
                provider_message_id=result.provider_message_id,
            )
            execution_service.advance(org_id=int(step.org_id), step_execution_id=step.id, db=db, now=now)
            logger.info("Campaign step sent", extra=log_extra)
            return True

        execution_service.mark_step_failed(db, step, error=result.error or "delivery failed", now=now)
        execution_service.evaluate_completion(db, execution, now=now)
        logger.warning(
            "Campaign step delivery failed",
            extra={**log_extra, "error": step.error_detail},
        )
        return False


def retry_failed_step(
    *,
    org_id: int,
    step_execution_id: int,
    db: Session,
    collaborators: Optional[Collaborators] = None,
    now: Optional[datetime] = None,
) -> StepExecution:
    """Operator-invoked retry of a FAILED step. Dispatches immediately."""
    now = now or _utcnow()
    coordinator = DispatchCoordinator(collaborators)

    step = execution_service.get_step_execution(
        org_id=org_id,
        step_execution_id=step_execution_id,
        db=db,
        lock=True,
    )
    if step.status != StepStatus.FAILED.value:
        raise ConflictError("Only failed steps can be retried")

    execution = execution_service.get_execution(org_id=org_id, execution_id=step.execution_id, db=db, lock=True)
    if execution.status in (ExecutionStatus.CANCELLED.value, ExecutionStatus.FAILED.value) or (
        execution.status == ExecutionStatus.COMPLETED.value and execution.stop_reason
    ):
        raise ConflictError(f"Campaign execution was {execution.status.lower()}; retry refused")

    contact = coordinator.collaborators.resolver.resolve(
        db,
        org_id=int(org_id),
        subject_type=execution.subject_type,
        subject_id=execution.subject_id,
    )
    if contact.goal_reached_since(execution.started_at):
        raise ConflictError("Subject already achieved the campaign goal; retry refused")

    logger.info(
        "Retrying failed campaign step",
        extra={"org_id": int(org_id), "execution_id": execution.id, "step_execution_id": step.id},
    )
    coordinator.dispatch(db, step, subject=contact, now=now)
    return step
