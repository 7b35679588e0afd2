"""Lead routing to advisors."""

from .router import LeadRouter, RoutingRule, RoutingOutcome

__all__ = ["LeadRouter", "RoutingRule", "RoutingOutcome"]
