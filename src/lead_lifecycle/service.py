"""Tenant-scoped facade over scoring, journeys and enrollments."""

import functools
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .bulk.operations import BulkOperations, DEFAULT_CONCURRENCY
from .core.config import ScoringConfig, ScoringConfigManager
from .core.ledger import ScoreLedger
from .core.scorer import DEFAULT_WEIGHTS, ScoringResult
from .enrollment.executor import EnrollmentExecutor, SweepReport
from .errors import OperationFailed, ValidationError
from .journeys.definitions import ChannelType, JourneyDefinition, Priority
from .journeys.store import JourneyDefinitionStore
from .journeys.templates import seed_master_templates
from .notifications.dispatcher import CommunicationService, NotificationDispatcher, SendResult
from .policy.channels import CandidateAction, ChannelPolicyEngine, PolicyDecision
from .routing.router import RoutingRule
from .storage.database import LifecycleDatabase
from .storage.models import (
    Enrollment,
    Lead,
    ScoreRecord,
    ScoringModel,
    TransitionLogEntry,
    TriggerType,
    VerificationStatus,
)

logger = logging.getLogger(__name__)


def _storage_guard(func: Callable) -> Callable:
    """Turn storage failures into OperationFailed; the cause is only logged."""
    @functools.wraps(func)
    def wrapper(self, tenant_id: str, *args, **kwargs):
        if not tenant_id:
            raise ValidationError("Tenant id is required")
        try:
            return func(self, tenant_id, *args, **kwargs)
        except sqlite3.Error as e:
            logger.exception(f"{func.__name__} failed for tenant {tenant_id}: {e}")
            raise OperationFailed() from e
    return wrapper


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {label} {value!r}. Must be one of: {allowed}")


class LifecycleService:
    """Every externally exposed operation, scoped to one tenant per call."""

    def __init__(
        self,
        db: LifecycleDatabase,
        store: JourneyDefinitionStore,
        scoring_config: Optional[ScoringConfig] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ):
        self.db = db
        self.store = store
        self.ledger = ScoreLedger(db, scoring_config)
        self.bulk = BulkOperations(self.ledger, concurrency)
        self.policy = ChannelPolicyEngine()
        self.executor = EnrollmentExecutor(db, store, policy=self.policy, concurrency=concurrency)
        self.communications = CommunicationService(db, self.policy, dispatcher)

    @classmethod
    def from_settings(cls, settings, dispatcher: Optional[NotificationDispatcher] = None) -> "LifecycleService":
        """Build a service from a Settings object."""
        return cls(
            db=LifecycleDatabase(settings.db_path),
            store=JourneyDefinitionStore(settings.journeys_path),
            scoring_config=ScoringConfigManager(settings.scoring_config_path).config,
            dispatcher=dispatcher,
            concurrency=settings.bulk_concurrency,
        )

    # === LEADS ===

    @_storage_guard
    def add_lead(self, tenant_id: str, lead: Lead) -> Lead:
        if not lead.id:
            raise ValidationError("Lead id is required")
        lead.tenant_id = tenant_id
        return self.db.upsert_lead(lead)

    @_storage_guard
    def get_lead(self, tenant_id: str, lead_id: str) -> Lead:
        lead = self.db.get_lead(tenant_id, lead_id)
        if lead is None:
            raise ValidationError(f"Unknown lead: {lead_id}")
        return lead

    @_storage_guard
    def list_leads(self, tenant_id: str) -> List[Lead]:
        return self.db.list_leads(tenant_id)

    @_storage_guard
    def record_activity(self, tenant_id: str, lead_id: str, activity_type: str,
                        occurred_at: Optional[datetime] = None):
        self.get_lead(tenant_id, lead_id)
        self.db.add_activity(tenant_id, lead_id, activity_type, occurred_at)

    # === SCORING ===

    @_storage_guard
    def compute_score(self, tenant_id: str, lead_id: str, now: Optional[datetime] = None) -> ScoringResult:
        return self.ledger.compute_score(tenant_id, lead_id, now)

    @_storage_guard
    def bulk_score(self, tenant_id: str, lead_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.bulk.bulk_score(tenant_id, lead_ids)

    @_storage_guard
    def get_score_history(self, tenant_id: str, lead_id: str, limit: int = 50) -> List[ScoreRecord]:
        if limit < 1:
            raise ValidationError("limit must be positive")
        return self.ledger.get_score_history(tenant_id, lead_id, limit)

    @_storage_guard
    def score_trend(self, tenant_id: str, lead_id: str) -> Dict[str, Any]:
        return self.ledger.score_trend(tenant_id, lead_id)

    @_storage_guard
    def create_model(self, tenant_id: str, weights: Optional[Dict[str, float]] = None,
                     kind: str = "rule_based", activate: bool = False) -> ScoringModel:
        weights = dict(DEFAULT_WEIGHTS) if weights is None else weights
        for name, weight in weights.items():
            if not isinstance(weight, (int, float)) or isinstance(weight, bool):
                raise ValidationError(f"Weight for {name} must be a number")
        return self.db.create_scoring_model(tenant_id, weights, kind, activate)

    @_storage_guard
    def activate_model(self, tenant_id: str, version: int) -> ScoringModel:
        return self.db.activate_scoring_model(tenant_id, version)

    @_storage_guard
    def list_models(self, tenant_id: str) -> List[ScoringModel]:
        return self.db.list_scoring_models(tenant_id)

    @_storage_guard
    def record_outcome(self, tenant_id: str, lead_id: str, converted: bool) -> int:
        self.get_lead(tenant_id, lead_id)
        return self.ledger.record_outcome(tenant_id, lead_id, converted)

    @_storage_guard
    def model_accuracy(self, tenant_id: str, model_version: Optional[int] = None) -> Dict[str, Any]:
        return self.ledger.model_accuracy(tenant_id, model_version)

    # === JOURNEYS ===

    @_storage_guard
    def list_journeys(self, tenant_id: str) -> List[JourneyDefinition]:
        return self.store.list_journeys(tenant_id)

    @_storage_guard
    def seed_templates(self, tenant_id: str) -> List[JourneyDefinition]:
        return seed_master_templates(self.store, tenant_id)

    @_storage_guard
    def journey_stats(self, tenant_id: str, journey_id: str) -> Dict[str, Any]:
        return self.executor.journey_stats(tenant_id, journey_id)

    # === ENROLLMENTS ===

    @_storage_guard
    def enroll(self, tenant_id: str, lead_id: str, journey_id: str,
               actor: str = "system", replace: bool = False) -> Enrollment:
        return self.executor.enroll(tenant_id, lead_id, journey_id, actor=actor, replace=replace)

    @_storage_guard
    def bulk_enroll(self, tenant_id: str, lead_ids: List[str], journey_id: str,
                    remove_existing: bool = False, actor: str = "system",
                    on_progress: Optional[Callable[[int, int], None]] = None) -> Dict[str, Any]:
        if not lead_ids:
            raise ValidationError("At least one lead id is required")
        return self.executor.bulk_enroll(tenant_id, lead_ids, journey_id, remove_existing, actor, on_progress)

    @_storage_guard
    def re_enroll_all(self, tenant_id: str, on_progress: Optional[Callable[[int, int], None]] = None,
                      dry_run: bool = False) -> Dict[str, Any]:
        return self.executor.re_enroll_all(tenant_id, on_progress, dry_run)

    @_storage_guard
    def add_routing_rule(self, tenant_id: str, name: str, conditions: Dict[str, Any], target: str,
                         priority: int = 100, rule_id: Optional[str] = None) -> RoutingRule:
        return self.executor.router.add_rule(tenant_id, name, conditions, target, priority, rule_id)

    @_storage_guard
    def list_routing_rules(self, tenant_id: str) -> List[RoutingRule]:
        return self.executor.router.get_rules(tenant_id)

    @_storage_guard
    def get_enrollment_state(self, tenant_id: str, lead_id: str, journey_id: str) -> Dict[str, Any]:
        """The lead's active enrollment in the journey, or its most recent one if none is active."""
        return self.executor.find_enrollment_state(tenant_id, lead_id, journey_id)

    @_storage_guard
    def get_enrollment_state_by_id(self, tenant_id: str, enrollment_id: str) -> Dict[str, Any]:
        return self.executor.get_enrollment_state(tenant_id, enrollment_id)

    @_storage_guard
    def list_enrollments(self, tenant_id: str, journey_id: Optional[str] = None,
                         lead_id: Optional[str] = None) -> List[Enrollment]:
        return self.db.list_enrollments(tenant_id, journey_id=journey_id, lead_id=lead_id)

    @_storage_guard
    def list_transition_log(self, tenant_id: str, enrollment_id: str) -> List[TransitionLogEntry]:
        return self.executor.list_transition_log(tenant_id, enrollment_id)

    @_storage_guard
    def advance_step(self, tenant_id: str, enrollment_id: str, trigger: Any = TriggerType.MANUAL,
                     actor: Optional[str] = None, target_stage: Optional[int] = None,
                     expected_version: Optional[int] = None, note: Optional[str] = None) -> Enrollment:
        trigger = _parse_enum(TriggerType, trigger, "trigger")
        return self.executor.advance_step(tenant_id, enrollment_id, trigger, actor,
                                          target_stage, expected_version, note)

    @_storage_guard
    def remove_enrollment(self, tenant_id: str, enrollment_id: str, actor: str,
                          reason: Optional[str] = None) -> Enrollment:
        return self.executor.remove(tenant_id, enrollment_id, actor, reason)

    @_storage_guard
    def update_requirement_status(self, tenant_id: str, enrollment_id: str, requirement_id: str,
                                  status: Any, actor: str) -> Dict[str, Any]:
        status = _parse_enum(VerificationStatus, status, "status")
        return self.executor.update_requirement_status(tenant_id, enrollment_id, requirement_id, status, actor)

    @_storage_guard
    def approve_stage(self, tenant_id: str, enrollment_id: str, actor: str,
                      note: Optional[str] = None) -> Dict[str, Any]:
        return self.executor.approve_stage(tenant_id, enrollment_id, actor, note)

    @_storage_guard
    def sweep(self, tenant_id: str, now: Optional[datetime] = None) -> SweepReport:
        return self.executor.sweep(tenant_id, now)

    # === CHANNELS ===

    def _current_stage(self, tenant_id: str, enrollment_id: str):
        enrollment = self.db.get_enrollment(tenant_id, enrollment_id)
        if enrollment is None:
            raise ValidationError(f"Unknown enrollment: {enrollment_id}")
        journey = self.store.require(tenant_id, enrollment.journey_id, enrollment.journey_version)
        return enrollment, journey.stage_at(enrollment.current_stage_index)

    @_storage_guard
    def preview_channel_decision(self, tenant_id: str, enrollment_id: str, channel: Any,
                                 action: str, priority: Any = Priority.MEDIUM,
                                 now: Optional[datetime] = None) -> PolicyDecision:
        """Would this communication be allowed right now? Nothing is sent."""
        channel = _parse_enum(ChannelType, channel, "channel")
        priority = _parse_enum(Priority, priority, "priority")
        enrollment, stage = self._current_stage(tenant_id, enrollment_id)
        history = self.db.get_communications(tenant_id, enrollment.lead_id, channel=channel.value)
        return self.policy.is_allowed(stage, channel, CandidateAction(action, priority),
                                      now or datetime.now(), history)

    @_storage_guard
    def send_communication(self, tenant_id: str, enrollment_id: str, channel: Any,
                           action: str, priority: Any = Priority.MEDIUM,
                           now: Optional[datetime] = None) -> SendResult:
        channel = _parse_enum(ChannelType, channel, "channel")
        priority = _parse_enum(Priority, priority, "priority")
        enrollment, stage = self._current_stage(tenant_id, enrollment_id)
        return self.communications.send(tenant_id, enrollment.lead_id, stage, channel,
                                        CandidateAction(action, priority), now, enrollment.id)
