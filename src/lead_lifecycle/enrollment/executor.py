"""Enrollment executor: enroll, advance and track leads in journeys."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any, Callable

from ..bulk.operations import run_bounded, DEFAULT_CONCURRENCY
from ..errors import (
    ConcurrentModification,
    DuplicateActiveEnrollment,
    TerminalStateViolation,
    ValidationError,
)
from ..journeys.definitions import JourneyDefinition
from ..journeys.engine import EscalationSignal, StageEngine, trigger_for_requirement
from ..journeys.store import JourneyDefinitionStore
from ..policy.channels import ChannelPolicyEngine, EscalationPlan
from ..routing.router import LeadRouter, RoutingOutcome
from ..storage.database import LifecycleDatabase
from ..storage.models import (
    Enrollment,
    EnrollmentStatus,
    TransitionLogEntry,
    TriggerType,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class SweepReport:
    """What a timer sweep found and did."""

    checked: int = 0
    stalled: List[Dict[str, Any]] = field(default_factory=list)
    escalations: List[EscalationPlan] = field(default_factory=list)
    advanced: List[str] = field(default_factory=list)
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "stalled": self.stalled,
            "escalations": [plan.to_dict() for plan in self.escalations],
            "advanced": self.advanced,
            "errors": self.errors,
        }


class EnrollmentExecutor:
    """Tracks per-lead progress through journeys.

    All stage movement goes through the StageEngine; the executor resolves
    definitions, validates input and runs bulk work with bounded concurrency.
    """

    def __init__(
        self,
        db: LifecycleDatabase,
        store: JourneyDefinitionStore,
        engine: Optional[StageEngine] = None,
        router: Optional[LeadRouter] = None,
        policy: Optional[ChannelPolicyEngine] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        max_retries: int = 3,
    ):
        self.db = db
        self.store = store
        self.engine = engine or StageEngine(db)
        self.router = router or LeadRouter(db)
        self.policy = policy or ChannelPolicyEngine()
        self.concurrency = concurrency
        self.max_retries = max_retries

    # === LOOKUPS ===

    def _require_enrollment(self, tenant_id: str, enrollment_id: str) -> Enrollment:
        enrollment = self.db.get_enrollment(tenant_id, enrollment_id)
        if enrollment is None:
            raise ValidationError(f"Unknown enrollment: {enrollment_id}")
        return enrollment

    def _journey_for(self, enrollment: Enrollment) -> JourneyDefinition:
        return self.store.require(enrollment.tenant_id, enrollment.journey_id, enrollment.journey_version)

    # === ENROLLMENT ===

    def enroll(
        self,
        tenant_id: str,
        lead_id: str,
        journey_id: str,
        actor: str = "system",
        replace: bool = False,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Enroll a lead at the first stage of the journey's latest version.

        Raises DuplicateActiveEnrollment when the lead is already active in
        the journey, unless ``replace`` is set.
        """
        if not lead_id:
            raise ValidationError("Lead id is required")
        if self.db.get_lead(tenant_id, lead_id) is None:
            raise ValidationError(f"Unknown lead: {lead_id}")
        journey = self.store.require(tenant_id, journey_id)

        now = now or datetime.now()
        enrollment = Enrollment(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            lead_id=lead_id,
            journey_id=journey.id,
            journey_version=journey.version,
            enrolled_at=now,
            stage_entered_at=now,
        )
        trigger = TriggerType.SYSTEM if actor == "system" else TriggerType.MANUAL
        enrollment = self.db.create_enrollment(enrollment, journey.stages[0].id, actor, trigger, replace)
        logger.info(f"Enrolled lead {lead_id} in journey {journey.id} v{journey.version} ({enrollment.id})")
        return enrollment

    def bulk_enroll(
        self,
        tenant_id: str,
        lead_ids: List[str],
        journey_id: str,
        remove_existing: bool = False,
        actor: str = "system",
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Enroll many leads; each lead succeeds or fails on its own.

        Leads already active in the journey are skipped unless
        ``remove_existing`` is set, in which case each lead's existing
        enrollment is replaced in its own transaction.
        """
        self.store.require(tenant_id, journey_id)

        def enroll_one(lead_id: str) -> str:
            if not remove_existing and lead_id and \
                    self.db.find_active_enrollment(tenant_id, lead_id, journey_id) is not None:
                return "skipped"
            try:
                self.enroll(tenant_id, lead_id, journey_id, actor=actor, replace=remove_existing)
            except DuplicateActiveEnrollment:
                return "skipped"
            return "success"

        results: Dict[str, Any] = {"success": 0, "failed": [], "skipped": 0}
        for lead_id, outcome, error in run_bounded(lead_ids, enroll_one, self.concurrency, on_progress):
            if error is not None:
                reason = getattr(error, "message", None) or str(error)
                logger.error(f"Error enrolling lead {lead_id}: {reason}")
                results["failed"].append({"lead_id": lead_id, "reason": reason})
            else:
                results[outcome] += 1

        logger.info(
            f"Bulk enroll into {journey_id}: {results['success']} enrolled, "
            f"{results['skipped']} skipped, {len(results['failed'])} failed"
        )
        return results

    def re_enroll_all(
        self,
        tenant_id: str,
        on_progress: Optional[ProgressCallback] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        """Re-route every lead through the active routing rules.

        Clears all current routing assignments, then assigns each lead to the
        target of the first matching rule in priority order. Leads no rule
        matches are skipped. With ``dry_run`` nothing is cleared or written.
        """
        rules = self.router.get_rules(tenant_id)
        lead_ids = [lead.id for lead in self.db.list_leads(tenant_id)]

        cleared = 0
        if not dry_run:
            cleared = self.db.clear_assignments(tenant_id)
            logger.info(f"Cleared {cleared} routing assignments for tenant {tenant_id}")

        def route_one(lead_id: str) -> RoutingOutcome:
            snapshot = self.db.get_lead_snapshot(tenant_id, lead_id)
            if snapshot is None:
                raise ValidationError(f"Unknown lead: {lead_id}")
            outcome = self.router.route(lead_id, snapshot.routing_view(), rules)
            if outcome.matched and not dry_run:
                self.router.assign(tenant_id, outcome)
            return outcome

        results: Dict[str, Any] = {
            "processed": 0,
            "assigned": 0,
            "skipped": 0,
            "errors": 0,
            "cleared": cleared,
            "dry_run": dry_run,
        }
        for lead_id, outcome, error in run_bounded(lead_ids, route_one, self.concurrency, on_progress):
            results["processed"] += 1
            if error is not None:
                logger.error(f"Error routing lead {lead_id}: {error}")
                results["errors"] += 1
            elif outcome.matched:
                results["assigned"] += 1
            else:
                results["skipped"] += 1

        return results

    # === STAGE MOVEMENT ===

    def advance_step(
        self,
        tenant_id: str,
        enrollment_id: str,
        trigger: TriggerType = TriggerType.MANUAL,
        actor: Optional[str] = None,
        target_stage: Optional[int] = None,
        expected_version: Optional[int] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Enrollment:
        """Advance an enrollment one stage (or to ``target_stage``, manual only)."""
        enrollment = self._require_enrollment(tenant_id, enrollment_id)
        journey = self._journey_for(enrollment)
        return self.engine.advance(
            enrollment, journey, trigger,
            actor=actor,
            target_stage=target_stage,
            expected_version=expected_version,
            note=note,
            now=now,
        )

    def remove(
        self,
        tenant_id: str,
        enrollment_id: str,
        actor: str,
        reason: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Enrollment:
        """Exit an enrollment from its journey."""
        enrollment = self._require_enrollment(tenant_id, enrollment_id)
        journey = self._journey_for(enrollment)
        return self.engine.exit(enrollment, journey, actor, reason, expected_version)

    def _advance_on_event(
        self,
        enrollment: Enrollment,
        journey: JourneyDefinition,
        stage_index: int,
        trigger: TriggerType,
        actor: str,
        note: str,
        now: Optional[datetime],
    ) -> Optional[Enrollment]:
        """Try a criteria-gated advance, retrying against current state on conflict."""
        for _ in range(self.max_retries):
            try:
                return self.engine.try_auto_advance(enrollment, journey, trigger, actor=actor, note=note, now=now)
            except ConcurrentModification:
                enrollment = self._require_enrollment(enrollment.tenant_id, enrollment.id)
                if not enrollment.is_active or enrollment.current_stage_index != stage_index:
                    # Someone else already moved it on
                    return None
        logger.warning(f"Gave up advancing enrollment {enrollment.id} after {self.max_retries} conflicts")
        return None

    def update_requirement_status(
        self,
        tenant_id: str,
        enrollment_id: str,
        requirement_id: str,
        status: VerificationStatus,
        actor: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Record a requirement's verification status.

        A success status on a current-stage requirement may complete the
        stage, which then advances with a system-detected trigger.
        """
        enrollment = self._require_enrollment(tenant_id, enrollment_id)
        if enrollment.status.is_terminal:
            raise TerminalStateViolation(enrollment.id, enrollment.status.value)
        journey = self._journey_for(enrollment)

        found = journey.find_requirement(requirement_id)
        if found is None:
            raise ValidationError(f"Unknown requirement {requirement_id} in journey {journey.id}")
        stage_index, requirement = found
        stage = journey.stage_at(stage_index)
        if stage_index > enrollment.current_stage_index and not stage.parallel_allowed:
            raise ValidationError(
                f"Requirement {requirement_id} belongs to later stage {stage.id}, which does not allow parallel work"
            )

        self.db.set_requirement_status(tenant_id, enrollment_id, requirement_id, status, actor, now)

        advanced = None
        if status.is_success and stage_index == enrollment.current_stage_index:
            advanced = self._advance_on_event(
                enrollment, journey, stage_index, trigger_for_requirement(requirement),
                actor="system", note=f"{requirement.name} {status.value}", now=now,
            )

        current = advanced or self._require_enrollment(tenant_id, enrollment_id)
        return {
            "requirement_id": requirement_id,
            "status": status.value,
            "advanced": advanced is not None,
            "enrollment": current,
        }

    def approve_stage(
        self,
        tenant_id: str,
        enrollment_id: str,
        actor: str,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Record an approval for the current stage and advance if that completes it."""
        if not actor:
            raise ValidationError("Approvals require an actor")
        enrollment = self._require_enrollment(tenant_id, enrollment_id)
        if enrollment.status.is_terminal:
            raise TerminalStateViolation(enrollment.id, enrollment.status.value)
        journey = self._journey_for(enrollment)

        stage_index = enrollment.current_stage_index
        self.db.record_stage_approval(tenant_id, enrollment_id, stage_index, actor, note)
        advanced = self._advance_on_event(
            enrollment, journey, stage_index, TriggerType.ALL_REQUIREMENTS_COMPLETED,
            actor=actor, note=note or "Stage approved", now=now,
        )
        current = advanced or self._require_enrollment(tenant_id, enrollment_id)
        return {"stage_index": stage_index, "advanced": advanced is not None, "enrollment": current}

    # === TIMERS ===

    def sweep(self, tenant_id: str, now: Optional[datetime] = None, auto_advance: bool = True) -> SweepReport:
        """Check every active enrollment for stalls and escalations.

        Stalled enrollments are only reported. Escalations are planned
        against the stage's channel rules. Auto-advance stages whose
        criteria hold are moved on with the system trigger.
        """
        now = now or datetime.now()
        report = SweepReport()

        for enrollment in self.db.list_enrollments(tenant_id, status=EnrollmentStatus.ACTIVE):
            report.checked += 1
            try:
                journey = self._journey_for(enrollment)
                stage = journey.stage_at(enrollment.current_stage_index)

                timing = self.engine.timing(enrollment, journey, now)
                if timing.is_stalled:
                    report.stalled.append({
                        "enrollment_id": enrollment.id,
                        "lead_id": enrollment.lead_id,
                        **timing.to_dict(),
                    })

                signal: Optional[EscalationSignal] = self.engine.check_escalation(enrollment, journey, now)
                if signal is not None:
                    history = self.db.get_communications(tenant_id, enrollment.lead_id)
                    report.escalations.append(self.policy.plan_escalation(stage, signal, now, history))

                if auto_advance:
                    updated = self._advance_on_event(
                        enrollment, journey, enrollment.current_stage_index, TriggerType.SYSTEM,
                        actor="system", note="Auto-advanced", now=now,
                    )
                    if updated is not None:
                        report.advanced.append(enrollment.id)
            except ValidationError as e:
                logger.error(f"Sweep skipped enrollment {enrollment.id}: {e.message}")
                report.errors += 1

        if report.stalled or report.escalations or report.advanced:
            logger.info(
                f"Sweep for tenant {tenant_id}: {len(report.stalled)} stalled, "
                f"{len(report.escalations)} escalations, {len(report.advanced)} advanced"
            )
        return report

    # === READS ===

    def find_enrollment_state(self, tenant_id: str, lead_id: str, journey_id: str,
                              now: Optional[datetime] = None) -> Dict[str, Any]:
        """State of the lead's active enrollment in a journey, else of its latest one."""
        enrollment = self.db.find_enrollment(tenant_id, lead_id, journey_id)
        if enrollment is None:
            raise ValidationError(f"Lead {lead_id} has no enrollment in journey {journey_id}")
        return self._describe(enrollment, now)

    def get_enrollment_state(self, tenant_id: str, enrollment_id: str,
                             now: Optional[datetime] = None) -> Dict[str, Any]:
        """Enrollment with its current stage, completion, timing and requirements."""
        enrollment = self.db.get_enrollment(tenant_id, enrollment_id, with_history=True)
        if enrollment is None:
            raise ValidationError(f"Unknown enrollment: {enrollment_id}")
        return self._describe(enrollment, now)

    def _describe(self, enrollment: Enrollment, now: Optional[datetime]) -> Dict[str, Any]:
        tenant_id, enrollment_id = enrollment.tenant_id, enrollment.id
        journey = self._journey_for(enrollment)
        stage = journey.stage_at(enrollment.current_stage_index)
        states = self.db.get_requirement_states(tenant_id, enrollment_id)

        state: Dict[str, Any] = {
            "enrollment": enrollment,
            "journey_name": journey.name,
            "stage": {"index": enrollment.current_stage_index, "id": stage.id, "name": stage.name},
            "stage_count": journey.stage_count,
            "requirements": [
                {
                    "id": req.id,
                    "name": req.name,
                    "type": req.requirement_type.value,
                    "mandatory": req.is_mandatory,
                    "status": states[req.id].status.value if req.id in states else VerificationStatus.PENDING.value,
                }
                for req in stage.requirements
            ],
            "completion": None,
            "timing": None,
        }
        if enrollment.is_active:
            state["completion"] = self.engine.completion(enrollment, journey).to_dict()
            state["timing"] = self.engine.timing(enrollment, journey, now).to_dict()
        return state

    def list_transition_log(self, tenant_id: str, enrollment_id: str) -> List[TransitionLogEntry]:
        self._require_enrollment(tenant_id, enrollment_id)
        return self.db.list_transition_log(tenant_id, enrollment_id)

    def journey_stats(self, tenant_id: str, journey_id: str) -> Dict[str, Any]:
        """Enrollment counts, completion rate and stage distribution for a journey."""
        journey = self.store.require(tenant_id, journey_id)
        counts = self.db.enrollment_counts(tenant_id, journey_id)
        total = sum(counts.values())

        by_stage = {stage.id: 0 for stage in journey.stages}
        for enrollment in self.db.list_enrollments(tenant_id, journey_id, EnrollmentStatus.ACTIVE):
            if enrollment.journey_version == journey.version:
                by_stage[journey.stages[enrollment.current_stage_index].id] += 1

        return {
            "journey_id": journey_id,
            "total": total,
            "active": counts[EnrollmentStatus.ACTIVE.value],
            "completed": counts[EnrollmentStatus.COMPLETED.value],
            "exited": counts[EnrollmentStatus.EXITED.value],
            "completion_rate": round(counts[EnrollmentStatus.COMPLETED.value] / total * 100, 1) if total else 0.0,
            "active_by_stage": by_stage,
        }
