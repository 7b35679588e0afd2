"""Storage layer for leads, scores and enrollments."""

from .database import LifecycleDatabase
from .models import (
    Lead,
    LeadSnapshot,
    ScoringModel,
    ScoreRecord,
    ScorePrediction,
    Enrollment,
    EnrollmentStatus,
    TransitionLogEntry,
    TriggerType,
    RequirementState,
    VerificationStatus,
    CommunicationRecord,
    RoutingAssignment,
    local_naive,
)

__all__ = [
    "LifecycleDatabase",
    "Lead",
    "LeadSnapshot",
    "ScoringModel",
    "ScoreRecord",
    "ScorePrediction",
    "Enrollment",
    "EnrollmentStatus",
    "TransitionLogEntry",
    "TriggerType",
    "RequirementState",
    "VerificationStatus",
    "CommunicationRecord",
    "RoutingAssignment",
    "local_naive",
]
