"""Collaborator interfaces consumed by the dispatch coordinator.

Delivery and subject resolution live outside the engine. The engine only
sees a success flag, an optional provider id and an optional error string;
retries belong to the channel implementation.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from sqlalchemy.orm import Session

from campaign_engine.core.config import get_settings
from campaign_engine.models.sequence import ChannelType
from campaign_engine.services.template_renderer import render

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubjectContact:
    org_id: int
    subject_type: str
    subject_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    goal_achieved: bool = False
    goal_achieved_at: Optional[datetime] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def goal_reached_since(self, started_at: Optional[datetime]) -> bool:
        """True when the goal was reached during a run that started at started_at.

        A resolver that reports the flag without a timestamp is taken at its word.
        """
        if not self.goal_achieved:
            return False
        if self.goal_achieved_at is None or started_at is None:
            return True
        return self.goal_achieved_at >= started_at


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class SmsChannel(Protocol):
    def send_sms(self, contact: SubjectContact, body: str) -> DeliveryResult: ...


class EmailChannel(Protocol):
    def send_email(
        self,
        contact: SubjectContact,
        subject: str,
        body: str,
        template_kind: ChannelType,
    ) -> DeliveryResult: ...


class SubjectResolver(Protocol):
    """Looks up current contact details and the stop-condition flag.

    Raises NotFoundError when the subject no longer exists.
    """

    def resolve(self, db: Session, *, org_id: int, subject_type: str, subject_id: str) -> SubjectContact: ...


TemplateRenderer = Callable[[Optional[str], Mapping[str, Any]], str]


class LoggingDeliveryChannel:
    """Development channel: logs the message and reports success."""

    def send_sms(self, contact: SubjectContact, body: str) -> DeliveryResult:
        message_id = f"log-{uuid.uuid4()}"
        logger.info(
            "SMS delivery (log backend)",
            extra={
                "org_id": contact.org_id,
                "subject": f"{contact.subject_type}:{contact.subject_id}",
                "provider_message_id": message_id,
                "body_length": len(body),
            },
        )
        return DeliveryResult(success=True, provider_message_id=message_id)

    def send_email(
        self,
        contact: SubjectContact,
        subject: str,
        body: str,
        template_kind: ChannelType,
    ) -> DeliveryResult:
        message_id = f"log-{uuid.uuid4()}"
        logger.info(
            "Email delivery (log backend)",
            extra={
                "org_id": contact.org_id,
                "subject": f"{contact.subject_type}:{contact.subject_id}",
                "provider_message_id": message_id,
                "template_kind": template_kind.value,
                "email_subject": subject,
            },
        )
        return DeliveryResult(success=True, provider_message_id=message_id)


@dataclass
class Collaborators:
    sms: SmsChannel
    email: EmailChannel
    resolver: SubjectResolver
    renderer: TemplateRenderer = render


def default_collaborators() -> Collaborators:
    from campaign_engine.services.subject_service import DatabaseSubjectResolver

    backend = get_settings().delivery_backend
    if backend != "log":
        raise ValueError(f"Unknown delivery backend: {backend}")

    channel = LoggingDeliveryChannel()
    return Collaborators(sms=channel, email=channel, resolver=DatabaseSubjectResolver())
