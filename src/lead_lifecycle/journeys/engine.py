"""Stage state machine: completion checks, timing and transitions."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from .definitions import ChannelType, CompletionMode, JourneyDefinition, Requirement, RequirementType, Stage
from ..errors import TerminalStateViolation, ValidationError
from ..storage.database import LifecycleDatabase
from ..storage.models import (
    COMPLETED_STAGE,
    EXITED_STAGE,
    Enrollment,
    EnrollmentStatus,
    RequirementState,
    TransitionLogEntry,
    TriggerType,
)

logger = logging.getLogger(__name__)


@dataclass
class CompletionCheck:
    """Outcome of evaluating a stage's completion criteria."""

    satisfied: bool
    mode: CompletionMode
    missing_requirements: List[str] = field(default_factory=list)
    awaiting_approval: bool = False

    def to_dict(self) -> dict:
        return {
            "satisfied": self.satisfied,
            "mode": self.mode.value,
            "missing_requirements": self.missing_requirements,
            "awaiting_approval": self.awaiting_approval,
        }


@dataclass
class StageTiming:
    """Dwell-time status of an enrollment in its current stage."""

    stage_id: str
    days_in_stage: float
    expected_duration_days: Optional[float] = None
    stall_threshold_days: Optional[float] = None
    escalation_threshold_days: Optional[float] = None
    is_overdue: bool = False
    is_stalled: bool = False
    needs_escalation: bool = False

    def to_dict(self) -> dict:
        return {
            "stage_id": self.stage_id,
            "days_in_stage": self.days_in_stage,
            "expected_duration_days": self.expected_duration_days,
            "stall_threshold_days": self.stall_threshold_days,
            "escalation_threshold_days": self.escalation_threshold_days,
            "is_overdue": self.is_overdue,
            "is_stalled": self.is_stalled,
            "needs_escalation": self.needs_escalation,
        }


@dataclass
class EscalationSignal:
    """Raised when an enrollment overstays its stage's escalation threshold."""

    tenant_id: str
    enrollment_id: str
    lead_id: str
    stage_id: str
    stage_name: str
    days_in_stage: float
    threshold_days: float
    escalate_to: str
    notify_channels: List[ChannelType]
    raised_at: datetime

    def to_dict(self) -> dict:
        return {
            "enrollment_id": self.enrollment_id,
            "lead_id": self.lead_id,
            "stage_id": self.stage_id,
            "stage_name": self.stage_name,
            "days_in_stage": self.days_in_stage,
            "threshold_days": self.threshold_days,
            "escalate_to": self.escalate_to,
            "notify_channels": [c.value for c in self.notify_channels],
            "raised_at": self.raised_at.isoformat(),
        }


def days_in_stage(entered_at: datetime, now: datetime, business_days_only: bool = False) -> float:
    """Days elapsed since ``entered_at``, optionally counting weekdays only."""
    if now <= entered_at:
        return 0.0
    if not business_days_only:
        return round((now - entered_at).total_seconds() / 86400, 2)

    total = 0.0
    cursor = entered_at
    one_day = timedelta(days=1)
    while cursor + one_day <= now:
        if cursor.weekday() < 5:
            total += 1
        cursor += one_day
    if cursor.weekday() < 5:
        total += (now - cursor).total_seconds() / 86400
    return round(total, 2)


def evaluate_completion(
    stage: Stage,
    states: Dict[str, RequirementState],
    approved: bool = False,
) -> CompletionCheck:
    """Evaluate a stage's completion criteria against requirement states."""
    def is_met(requirement_id: str) -> bool:
        state = states.get(requirement_id)
        return state is not None and state.status.is_success

    mode = stage.completion.mode
    mandatory_missing = [r.id for r in stage.mandatory_requirements if not is_met(r.id)]

    if mode == CompletionMode.ALL_REQUIREMENTS_MET:
        return CompletionCheck(not mandatory_missing, mode, mandatory_missing)
    elif mode == CompletionMode.SPECIFIC_REQUIREMENTS:
        missing = [rid for rid in stage.completion.requirement_ids if not is_met(rid)]
        return CompletionCheck(not missing, mode, missing)
    elif mode == CompletionMode.APPROVAL_REQUIRED:
        return CompletionCheck(
            not mandatory_missing and approved,
            mode,
            mandatory_missing,
            awaiting_approval=not approved,
        )
    elif mode == CompletionMode.AUTO_ADVANCE:
        return CompletionCheck(not mandatory_missing, mode, mandatory_missing)
    raise ValueError(f"Unhandled completion mode: {mode}")


def stage_timing(stage: Stage, entered_at: datetime, now: datetime) -> StageTiming:
    """Compute overdue, stalled and escalation flags for a stage."""
    timing = stage.timing
    elapsed = days_in_stage(entered_at, now, timing.business_hours_only)

    thresholds = [
        t for t in (timing.escalation_threshold_days, stage.escalation.auto_escalate_after_days)
        if t is not None
    ]
    escalation_threshold = min(thresholds) if thresholds else None

    return StageTiming(
        stage_id=stage.id,
        days_in_stage=elapsed,
        expected_duration_days=timing.expected_duration_days,
        stall_threshold_days=timing.stall_threshold_days,
        escalation_threshold_days=escalation_threshold,
        is_overdue=timing.expected_duration_days is not None and elapsed > timing.expected_duration_days,
        is_stalled=timing.stall_threshold_days is not None and elapsed > timing.stall_threshold_days,
        # Optional stages never escalate
        needs_escalation=(
            stage.is_required
            and escalation_threshold is not None
            and elapsed > escalation_threshold
        ),
    )


def trigger_for_requirement(requirement: Requirement) -> TriggerType:
    """Trigger recorded when a requirement update completes a stage."""
    if requirement.requirement_type == RequirementType.DOCUMENT:
        return TriggerType.DOCUMENT_APPROVED
    if requirement.requirement_type == RequirementType.PAYMENT:
        return TriggerType.PAYMENT_RECEIVED
    return TriggerType.ALL_REQUIREMENTS_COMPLETED


class StageEngine:
    """Moves enrollments through their journey's stages.

    Every transition appends one transition log entry and moves the stage
    pointer in a single transaction guarded by the enrollment version.
    """

    def __init__(self, db: LifecycleDatabase):
        self.db = db

    def completion(self, enrollment: Enrollment, journey: JourneyDefinition) -> CompletionCheck:
        """Evaluate the current stage's completion criteria."""
        stage = journey.stage_at(enrollment.current_stage_index)
        states = self.db.get_requirement_states(enrollment.tenant_id, enrollment.id)
        approved: Set[int] = self.db.get_approved_stages(enrollment.tenant_id, enrollment.id)
        return evaluate_completion(stage, states, enrollment.current_stage_index in approved)

    def timing(self, enrollment: Enrollment, journey: JourneyDefinition,
               now: Optional[datetime] = None) -> StageTiming:
        stage = journey.stage_at(enrollment.current_stage_index)
        return stage_timing(stage, enrollment.stage_entered_at, now or datetime.now())

    def check_escalation(self, enrollment: Enrollment, journey: JourneyDefinition,
                         now: Optional[datetime] = None) -> Optional[EscalationSignal]:
        """Return an escalation signal when the enrollment overstays its stage."""
        if not enrollment.is_active:
            return None
        now = now or datetime.now()
        stage = journey.stage_at(enrollment.current_stage_index)
        status = stage_timing(stage, enrollment.stage_entered_at, now)
        if not status.needs_escalation:
            return None

        logger.warning(
            f"Enrollment {enrollment.id} has been in stage {stage.id} for "
            f"{status.days_in_stage} days, escalating to {stage.escalation.escalate_to}"
        )
        return EscalationSignal(
            tenant_id=enrollment.tenant_id,
            enrollment_id=enrollment.id,
            lead_id=enrollment.lead_id,
            stage_id=stage.id,
            stage_name=stage.name,
            days_in_stage=status.days_in_stage,
            threshold_days=status.escalation_threshold_days,
            escalate_to=stage.escalation.escalate_to,
            notify_channels=list(stage.escalation.notify_channels),
            raised_at=now,
        )

    def _ensure_active(self, enrollment: Enrollment):
        if enrollment.status.is_terminal:
            raise TerminalStateViolation(enrollment.id, enrollment.status.value)

    def advance(
        self,
        enrollment: Enrollment,
        journey: JourneyDefinition,
        trigger: TriggerType,
        actor: Optional[str] = None,
        target_stage: Optional[int] = None,
        expected_version: Optional[int] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Advance an enrollment by one stage, or to ``target_stage`` (manual only).

        Manual transitions are always permitted and require an actor. Other
        triggers require the current stage's completion criteria to hold.
        Advancing from the final stage completes the enrollment.
        """
        self._ensure_active(enrollment)
        now = now or datetime.now()
        current_index = enrollment.current_stage_index
        current = journey.stage_at(current_index)

        if trigger == TriggerType.MANUAL:
            if not actor:
                raise ValidationError("Manual transitions require an actor")
        else:
            if target_stage is not None:
                raise ValidationError("Only manual transitions may target a specific stage")
            check = self.completion(enrollment, journey)
            if not check.satisfied:
                detail = ", ".join(check.missing_requirements) or "approval pending"
                raise ValidationError(f"Stage {current.id} is not complete: {detail}")
            actor = actor or "system"

        if target_stage is not None:
            if target_stage == current_index:
                raise ValidationError(f"Enrollment {enrollment.id} is already in stage {current.id}")
            target = journey.stage_at(target_stage)
            next_index, to_stage, status = target_stage, target.id, EnrollmentStatus.ACTIVE
        elif journey.is_final(current_index):
            next_index, to_stage, status = current_index, COMPLETED_STAGE, EnrollmentStatus.COMPLETED
        else:
            next_index = current_index + 1
            to_stage, status = journey.stage_at(next_index).id, EnrollmentStatus.ACTIVE

        entry = TransitionLogEntry(
            id=None,
            tenant_id=enrollment.tenant_id,
            enrollment_id=enrollment.id,
            from_stage=current.id,
            to_stage=to_stage,
            trigger=trigger,
            actor=actor,
            created_at=now,
            note=note,
        )
        updated = self.db.apply_transition(
            enrollment.tenant_id,
            enrollment.id,
            enrollment.version if expected_version is None else expected_version,
            entry,
            next_index,
            status,
        )
        logger.info(f"Enrollment {enrollment.id}: {current.id} -> {to_stage} ({trigger.value} by {actor})")
        return updated

    def try_auto_advance(
        self,
        enrollment: Enrollment,
        journey: JourneyDefinition,
        trigger: TriggerType,
        actor: str = "system",
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Enrollment]:
        """Advance only if the current stage is complete, else return None.

        The SYSTEM sweep only moves stages whose completion mode is
        auto_advance; requirement events move any stage whose criteria hold.
        """
        if not enrollment.is_active or trigger == TriggerType.MANUAL:
            return None
        stage = journey.stage_at(enrollment.current_stage_index)
        if trigger == TriggerType.SYSTEM and stage.completion.mode != CompletionMode.AUTO_ADVANCE:
            return None
        if not self.completion(enrollment, journey).satisfied:
            return None
        return self.advance(enrollment, journey, trigger, actor=actor, note=note, now=now)

    def exit(
        self,
        enrollment: Enrollment,
        journey: JourneyDefinition,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Remove an enrollment from its journey (terminal ``exited``)."""
        self._ensure_active(enrollment)
        if not actor:
            raise ValidationError("Removing an enrollment requires an actor")
        now = now or datetime.now()
        current = journey.stage_at(enrollment.current_stage_index)

        entry = TransitionLogEntry(
            id=None,
            tenant_id=enrollment.tenant_id,
            enrollment_id=enrollment.id,
            from_stage=current.id,
            to_stage=EXITED_STAGE,
            trigger=TriggerType.MANUAL,
            actor=actor,
            created_at=now,
            note=reason,
        )
        updated = self.db.apply_transition(
            enrollment.tenant_id,
            enrollment.id,
            enrollment.version if expected_version is None else expected_version,
            entry,
            enrollment.current_stage_index,
            EnrollmentStatus.EXITED,
            exit_reason=reason,
        )
        logger.info(f"Enrollment {enrollment.id} exited at stage {current.id}: {reason or 'no reason given'}")
        return updated
