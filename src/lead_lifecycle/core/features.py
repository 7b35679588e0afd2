"""Feature definitions and extraction from lead snapshots."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, Union

from ..storage.models import LeadSnapshot

logger = logging.getLogger(__name__)

FeatureValue = Union[bool, int, float, str, None]


class FeatureKind(Enum):
    """How a feature's value is turned into points."""

    BOOLEAN = "boolean"  # weight x 10 when true
    DECAY = "decay"  # weight x min(days / denominator, cap) x 10
    RATIO = "ratio"  # weight x ratio x 10
    COUNT = "count"  # weight x min(count, cap)
    CATEGORICAL = "categorical"  # reported, never weighted


@dataclass(frozen=True)
class FeatureDefinition:
    """A named feature with its scoring kind and default parameters."""

    name: str
    label: str
    kind: FeatureKind
    denominator: Optional[float] = None
    cap: Optional[float] = None

    @property
    def default(self) -> FeatureValue:
        if self.kind == FeatureKind.BOOLEAN:
            return False
        if self.kind == FeatureKind.CATEGORICAL:
            return None
        return 0


FEATURE_DEFINITIONS: List[FeatureDefinition] = [
    # === PRESENCE ===
    FeatureDefinition("has_email", "Has email address", FeatureKind.BOOLEAN),
    FeatureDefinition("has_phone", "Has phone number", FeatureKind.BOOLEAN),
    FeatureDefinition("has_notes", "Has advisor notes", FeatureKind.BOOLEAN),
    FeatureDefinition("has_tags", "Has tags", FeatureKind.BOOLEAN),
    FeatureDefinition("has_utm_source", "Has UTM source", FeatureKind.BOOLEAN),
    FeatureDefinition("is_assigned", "Assigned to an advisor", FeatureKind.BOOLEAN),
    FeatureDefinition("has_re_enquired", "Enquired again", FeatureKind.BOOLEAN),

    # === SOURCE CATEGORY ===
    FeatureDefinition("source_referral", "Referral source", FeatureKind.BOOLEAN),
    FeatureDefinition("source_organic", "Organic source", FeatureKind.BOOLEAN),
    FeatureDefinition("source_paid", "Paid source", FeatureKind.BOOLEAN),
    FeatureDefinition("source_web_form", "Web form source", FeatureKind.BOOLEAN),
    FeatureDefinition("source_category", "Source category", FeatureKind.CATEGORICAL),

    # === RECENCY ===
    FeatureDefinition("days_since_created_penalty", "Days since created", FeatureKind.DECAY,
                      denominator=30, cap=3),
    FeatureDefinition("days_since_last_contact_penalty", "Days since last contact", FeatureKind.DECAY,
                      denominator=14, cap=2),

    # === DOCUMENTS ===
    FeatureDefinition("document_completion_ratio", "Document completion", FeatureKind.RATIO),

    # === ACTIVITY COUNTS ===
    FeatureDefinition("call_count", "Calls", FeatureKind.COUNT, cap=5),
    FeatureDefinition("meeting_count", "Meetings", FeatureKind.COUNT, cap=3),
    FeatureDefinition("email_count", "Emails", FeatureKind.COUNT, cap=5),
    FeatureDefinition("form_submission_count", "Form submissions", FeatureKind.COUNT, cap=3),
    FeatureDefinition("total_activities", "Total activities", FeatureKind.COUNT, cap=10),
    FeatureDefinition("note_count", "Notes", FeatureKind.COUNT, cap=5),
    FeatureDefinition("re_enquiry_count", "Re-enquiries", FeatureKind.COUNT, cap=3),
]

FEATURES_BY_NAME: Dict[str, FeatureDefinition] = {f.name: f for f in FEATURE_DEFINITIONS}

# Raw source / UTM medium values grouped into scoring categories
SOURCE_CATEGORIES: Dict[str, set] = {
    "referral": {"referral", "agent_referral", "alumni_referral", "friend", "word_of_mouth"},
    "organic": {"organic", "seo", "direct", "social_organic", "google_organic"},
    "paid": {"paid", "cpc", "ppc", "google_ads", "facebook_ads", "paid_social", "display"},
    "web_form": {"web_form", "website", "contact_form", "landing_page", "inquiry_form"},
}


def categorize_source(source: Optional[str], utm_medium: Optional[str] = None) -> Optional[str]:
    """Map a raw lead source (falling back to UTM medium) to a category."""
    for raw in (source, utm_medium):
        if not raw:
            continue
        value = raw.strip().lower().replace("-", "_").replace(" ", "_")
        for category, members in SOURCE_CATEGORIES.items():
            if value in members:
                return category
    return None


def _days_between(start: Optional[datetime], now: datetime) -> float:
    if start is None:
        return 0.0
    return round(max(0.0, (now - start).total_seconds() / 86400), 2)


class LeadFeatureVector(dict):
    """Feature name to value mapping that never fails on a missing feature."""

    def resolve(self, name: str) -> FeatureValue:
        """Get a feature's value, or its neutral default when absent."""
        value = self.get(name)
        if value is not None:
            return value
        definition = FEATURES_BY_NAME.get(name)
        return definition.default if definition else 0


def build_feature_vector(snapshot: LeadSnapshot, now: Optional[datetime] = None) -> LeadFeatureVector:
    """Compute the feature vector for a lead snapshot.

    Deterministic for a given snapshot and ``now``.
    """
    now = now or datetime.now()
    category = categorize_source(snapshot.source, snapshot.utm_medium)

    submitted = snapshot.documents_submitted or 0
    approved = snapshot.documents_approved or 0
    completion = min(approved / submitted, 1.0) if submitted > 0 else 0.0

    re_enquiries = snapshot.re_enquiry_count or 0

    return LeadFeatureVector({
        "has_email": bool(snapshot.email),
        "has_phone": bool(snapshot.phone),
        "has_notes": snapshot.note_count > 0,
        "has_tags": len(snapshot.tags) > 0,
        "has_utm_source": bool(snapshot.utm_source),
        "is_assigned": bool(snapshot.assigned_to),
        "has_re_enquired": re_enquiries > 0,
        "source_referral": category == "referral",
        "source_organic": category == "organic",
        "source_paid": category == "paid",
        "source_web_form": category == "web_form",
        "source_category": category,
        "days_since_created_penalty": _days_between(snapshot.created_at, now),
        "days_since_last_contact_penalty": _days_between(snapshot.last_contacted_at, now),
        "document_completion_ratio": round(completion, 4),
        "call_count": snapshot.communication_count("call"),
        "meeting_count": snapshot.communication_count("meeting"),
        "email_count": snapshot.communication_count("email"),
        "form_submission_count": snapshot.communication_count("form_submission"),
        "total_activities": snapshot.total_activities,
        "note_count": snapshot.note_count,
        "re_enquiry_count": re_enquiries,
    })


class LeadReader(Protocol):
    """Anything that can load a lead snapshot (the lead-record reader)."""

    def get_lead_snapshot(self, tenant_id: str, lead_id: str) -> Optional[LeadSnapshot]:
        ...


class FeatureExtractor:
    """Reads a lead through a lead reader and produces its feature vector."""

    def __init__(self, reader: LeadReader):
        self.reader = reader

    def extract(self, tenant_id: str, lead_id: str, now: Optional[datetime] = None) -> Optional[LeadFeatureVector]:
        """Extract features for a lead. Returns None for an unknown lead."""
        snapshot = self.reader.get_lead_snapshot(tenant_id, lead_id)
        if snapshot is None:
            logger.debug(f"No lead {lead_id} for tenant {tenant_id}")
            return None
        return build_feature_vector(snapshot, now)
