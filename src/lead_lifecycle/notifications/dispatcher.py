"""Policy-checked communication dispatch."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..journeys.definitions import ChannelType, Stage
from ..policy.channels import CandidateAction, ChannelPolicyEngine, PolicyDecision
from ..storage.database import LifecycleDatabase
from ..storage.models import CommunicationRecord, local_naive

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Hands an allowed communication to a delivery transport."""

    @abstractmethod
    def dispatch(self, record: CommunicationRecord) -> bool:
        """Deliver a communication. Returns True when accepted."""
        pass


class LoggingDispatcher(NotificationDispatcher):
    """Dispatcher that only logs. Used when no transport is configured."""

    def dispatch(self, record: CommunicationRecord) -> bool:
        logger.info(
            f"[{record.channel.upper()}] lead={record.lead_id} action={record.action} "
            f"priority={record.priority}"
        )
        return True


@dataclass
class SendResult:
    decision: PolicyDecision
    record: Optional[CommunicationRecord] = None

    @property
    def sent(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict:
        return {
            "sent": self.sent,
            "decision": self.decision.to_dict(),
            "communication_id": self.record.id if self.record else None,
        }


class CommunicationService:
    """Consults the channel policy before every communication.

    Only an allowed communication reaches the dispatcher, and only one the
    dispatcher accepts is recorded (feeding frequency caps and lead features).
    """

    def __init__(
        self,
        db: LifecycleDatabase,
        policy: Optional[ChannelPolicyEngine] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.policy = policy or ChannelPolicyEngine()
        self.dispatcher = dispatcher or LoggingDispatcher()

    def send(
        self,
        tenant_id: str,
        lead_id: str,
        stage: Stage,
        channel: ChannelType,
        candidate: CandidateAction,
        now: Optional[datetime] = None,
        enrollment_id: Optional[str] = None,
    ) -> SendResult:
        now = local_naive(now) or datetime.now()
        history = self.db.get_communications(tenant_id, lead_id, channel=channel.value)
        decision = self.policy.is_allowed(stage, channel, candidate, now, history)
        if not decision.allowed:
            logger.info(f"Blocked {channel.value} to lead {lead_id}: {decision.reason}")
            return SendResult(decision=decision)

        record = CommunicationRecord(
            id=None,
            tenant_id=tenant_id,
            lead_id=lead_id,
            channel=channel.value,
            action=candidate.action,
            priority=candidate.priority.value,
            sent_at=now,
            enrollment_id=enrollment_id,
        )
        if not self.dispatcher.dispatch(record):
            logger.error(f"Dispatcher rejected {channel.value} to lead {lead_id}")
            return SendResult(decision=PolicyDecision(False, "dispatcher rejected the communication"))

        return SendResult(decision=decision, record=self.db.record_communication(record))
