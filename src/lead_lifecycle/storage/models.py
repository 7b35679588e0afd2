"""Data models for lead lifecycle storage."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


class EnrollmentStatus(Enum):
    """Status of a lead's enrollment in a journey."""

    ACTIVE = "active"
    COMPLETED = "completed"
    EXITED = "exited"

    @property
    def is_terminal(self) -> bool:
        return self is not EnrollmentStatus.ACTIVE


class TriggerType(Enum):
    """What caused a stage transition."""

    MANUAL = "manual"
    DOCUMENT_APPROVED = "document_approved"
    PAYMENT_RECEIVED = "payment_received"
    ALL_REQUIREMENTS_COMPLETED = "all_requirements_completed"
    SYSTEM = "system"


class VerificationStatus(Enum):
    """Verification state of a single stage requirement."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    VERIFIED = "verified"
    WAIVED = "waived"
    REJECTED = "rejected"

    @property
    def is_success(self) -> bool:
        return self in (VerificationStatus.APPROVED, VerificationStatus.VERIFIED, VerificationStatus.WAIVED)


def local_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive local time. Naive values pass through.

    All stored instants are naive local time, so aware values from callers
    are converted before they are compared or written.
    """
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


# Pseudo-stage names written to the transition log for terminal moves
COMPLETED_STAGE = "completed"
EXITED_STAGE = "exited"


@dataclass
class Lead:
    """A prospective-student record."""

    id: str
    tenant_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    source: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    tags: Optional[str] = None  # Comma-separated tags
    assigned_to: Optional[str] = None
    re_enquiry_count: int = 0
    attributes_json: Optional[str] = None  # JSON object used by routing rules
    created_at: datetime = field(default_factory=datetime.now)
    last_contacted_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        """Get best available name for display."""
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email or f"Lead {self.id}"

    def get_tags_list(self) -> List[str]:
        """Get tags as a list."""
        if not self.tags:
            return []
        return [t.strip() for t in self.tags.split(",") if t.strip()]


@dataclass(frozen=True)
class LeadSnapshot:
    """Immutable view of one lead and its related counts.

    Everything the feature extractor needs is read once into this struct, so
    feature computation is a pure function over it.
    """

    lead_id: str
    tenant_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    source: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    tags: Tuple[str, ...] = ()
    note_count: int = 0
    assigned_to: Optional[str] = None
    re_enquiry_count: int = 0
    created_at: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None
    communication_counts: Tuple[Tuple[str, int], ...] = ()
    documents_submitted: int = 0
    documents_approved: int = 0
    attributes: Tuple[Tuple[str, Any], ...] = ()

    def communication_count(self, comm_type: str) -> int:
        return dict(self.communication_counts).get(comm_type, 0)

    @property
    def total_activities(self) -> int:
        return sum(count for _, count in self.communication_counts)

    def routing_view(self) -> Dict[str, Any]:
        """Flat dict used for routing rule evaluation."""
        view = dict(self.attributes)
        view.update({
            "id": self.lead_id,
            "source": self.source,
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
            "tags": list(self.tags),
            "re_enquiry_count": self.re_enquiry_count,
        })
        return view


@dataclass
class ScoringModel:
    """A versioned set of feature weights for one tenant."""

    tenant_id: str
    version: int
    weights: Dict[str, float] = field(default_factory=dict)
    kind: str = "rule_based"
    is_active: bool = False
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class ScoreRecord:
    """A lead score with its full breakdown."""

    tenant_id: str
    lead_id: str
    score: int
    tier: str
    breakdown: List[Dict[str, Any]] = field(default_factory=list)
    model_version: Optional[int] = None
    computed_at: datetime = field(default_factory=datetime.now)


@dataclass
class ScorePrediction:
    """Prediction audit row, later resolved against the lead's outcome."""

    id: Optional[int]
    tenant_id: str
    lead_id: str
    model_version: Optional[int]
    score: int
    tier: str
    predicted_at: datetime
    converted: Optional[bool] = None
    outcome_recorded_at: Optional[datetime] = None


@dataclass
class TransitionLogEntry:
    """Immutable record of one stage change."""

    id: Optional[int]
    tenant_id: str
    enrollment_id: str
    from_stage: Optional[str]
    to_stage: Optional[str]
    trigger: TriggerType
    actor: str
    created_at: datetime
    note: Optional[str] = None


@dataclass
class Enrollment:
    """A lead's live position in one journey definition."""

    id: str
    tenant_id: str
    lead_id: str
    journey_id: str
    journey_version: int
    current_stage_index: int = 0
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    version: int = 0
    enrolled_at: datetime = field(default_factory=datetime.now)
    stage_entered_at: datetime = field(default_factory=datetime.now)
    ended_at: Optional[datetime] = None
    exit_reason: Optional[str] = None
    history: List[TransitionLogEntry] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == EnrollmentStatus.ACTIVE


@dataclass
class RequirementState:
    """Verification state of one requirement within an enrollment."""

    enrollment_id: str
    requirement_id: str
    status: VerificationStatus = VerificationStatus.PENDING
    updated_by: Optional[str] = None
    updated_at: datetime = field(default_factory=datetime.now)


@dataclass
class CommunicationRecord:
    """A communication that was allowed and handed to the dispatcher."""

    id: Optional[int]
    tenant_id: str
    lead_id: str
    channel: str
    action: str
    priority: str
    sent_at: datetime
    enrollment_id: Optional[str] = None


@dataclass
class RoutingAssignment:
    """Lead to advisor assignment produced by routing."""

    tenant_id: str
    lead_id: str
    advisor_id: str
    rule_id: str
    assigned_at: datetime = field(default_factory=datetime.now)
