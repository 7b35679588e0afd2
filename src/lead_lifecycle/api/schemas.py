"""Pydantic models for API requests and responses."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..journeys.definitions import JourneyDefinition
from ..storage.models import Enrollment, ScoreRecord, ScoringModel, TransitionLogEntry, local_naive


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    detail: str


# === SCORING ===

class BulkScoreRequest(BaseModel):
    lead_ids: Optional[List[str]] = None


class OutcomeRequest(BaseModel):
    converted: bool


class CreateModelRequest(BaseModel):
    weights: Optional[Dict[str, float]] = Field(
        default=None, description="Feature name to signed weight. Omit for the default weights."
    )
    kind: str = "rule_based"
    activate: bool = False


# === ENROLLMENTS ===

class EnrollRequest(BaseModel):
    lead_id: str
    journey_id: str
    replace: bool = False


class BulkEnrollRequest(BaseModel):
    lead_ids: List[str] = Field(..., min_length=1)
    journey_id: str
    remove_existing: bool = False


class AdvanceRequest(BaseModel):
    trigger: str = "manual"
    target_stage: Optional[int] = Field(default=None, ge=0)
    expected_version: Optional[int] = Field(default=None, ge=0)
    note: Optional[str] = None


class RemoveRequest(BaseModel):
    reason: Optional[str] = None


class RequirementUpdateRequest(BaseModel):
    status: str


class ApprovalRequest(BaseModel):
    note: Optional[str] = None


class ChannelRequest(BaseModel):
    channel: str
    action: str
    priority: str = "medium"
    at: Optional[datetime] = Field(default=None, description="Evaluate at this time instead of now")

    @field_validator("at")
    @classmethod
    def to_local_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return local_naive(value)


# === ROUTING ===

class RoutingRuleRequest(BaseModel):
    name: str
    conditions: Dict[str, Any] = Field(default_factory=dict)
    target: str
    priority: int = 100
    id: Optional[str] = None


class ReEnrollRequest(BaseModel):
    dry_run: bool = False
    confirm: bool = Field(default=False, description="Required for a run that clears assignments")


# === SERIALIZATION ===

def enrollment_to_dict(enrollment: Enrollment) -> Dict[str, Any]:
    return {
        "id": enrollment.id,
        "lead_id": enrollment.lead_id,
        "journey_id": enrollment.journey_id,
        "journey_version": enrollment.journey_version,
        "current_stage_index": enrollment.current_stage_index,
        "status": enrollment.status.value,
        "version": enrollment.version,
        "enrolled_at": enrollment.enrolled_at.isoformat(),
        "stage_entered_at": enrollment.stage_entered_at.isoformat(),
        "ended_at": enrollment.ended_at.isoformat() if enrollment.ended_at else None,
        "exit_reason": enrollment.exit_reason,
    }


def log_entry_to_dict(entry: TransitionLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "from_stage": entry.from_stage,
        "to_stage": entry.to_stage,
        "trigger": entry.trigger.value,
        "actor": entry.actor,
        "note": entry.note,
        "created_at": entry.created_at.isoformat(),
    }


def score_record_to_dict(record: ScoreRecord) -> Dict[str, Any]:
    return {
        "lead_id": record.lead_id,
        "score": record.score,
        "tier": record.tier,
        "model_version": record.model_version,
        "computed_at": record.computed_at.isoformat(),
        "breakdown": record.breakdown,
    }


def model_to_dict(model: ScoringModel) -> Dict[str, Any]:
    return {
        "version": model.version,
        "kind": model.kind,
        "is_active": model.is_active,
        "weights": model.weights,
        "created_at": model.created_at.isoformat(),
    }


def journey_summary(journey: JourneyDefinition) -> Dict[str, Any]:
    return {
        "id": journey.id,
        "name": journey.name,
        "version": journey.version,
        "is_master_template": journey.is_master_template,
        "stages": [{"index": i, "id": s.id, "name": s.name} for i, s in enumerate(journey.stages)],
    }
