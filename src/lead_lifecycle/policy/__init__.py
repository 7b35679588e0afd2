"""Escalation and channel eligibility policy."""

from .channels import ChannelPolicyEngine, CandidateAction, PolicyDecision, EscalationPlan

__all__ = [
    "ChannelPolicyEngine",
    "CandidateAction",
    "PolicyDecision",
    "EscalationPlan",
]
