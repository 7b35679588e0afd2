"""Rule-based routing of leads to advisors."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any
import uuid

from ..errors import ValidationError
from ..storage.database import LifecycleDatabase
from ..storage.models import RoutingAssignment

logger = logging.getLogger(__name__)

CONDITION_OPERATORS = {"equals", "contains", "greater_than", "less_than", "in"}


@dataclass
class RoutingRule:
    """Rule for routing leads to a specific advisor."""

    id: str
    name: str
    priority: int  # Lower = higher priority
    conditions: Dict[str, Any]
    target: str  # Advisor ID
    active: bool = True

    def matches(self, lead: Dict[str, Any]) -> bool:
        """Check if lead matches this rule's conditions."""
        for field_name, condition in self.conditions.items():
            lead_value = lead.get(field_name)

            if isinstance(condition, dict):
                if "equals" in condition and lead_value != condition["equals"]:
                    return False
                if "contains" in condition:
                    needle = str(condition["contains"]).lower()
                    if lead_value is None:
                        return False
                    if isinstance(lead_value, (list, tuple)):
                        if needle not in [str(v).lower() for v in lead_value]:
                            return False
                    elif needle not in str(lead_value).lower():
                        return False
                if "greater_than" in condition:
                    if lead_value is None or lead_value <= condition["greater_than"]:
                        return False
                if "less_than" in condition:
                    if lead_value is None or lead_value >= condition["less_than"]:
                        return False
                if "in" in condition:
                    if lead_value is None or lead_value not in condition["in"]:
                        return False
            else:
                # Simple equality
                if lead_value != condition:
                    return False

        return True

    def validate(self):
        if not self.target:
            raise ValidationError(f"Routing rule {self.name} has no target advisor")
        for field_name, condition in self.conditions.items():
            if isinstance(condition, dict):
                unknown = set(condition) - CONDITION_OPERATORS
                if unknown:
                    raise ValidationError(
                        f"Routing rule {self.name}: unknown operator(s) {', '.join(sorted(unknown))} on {field_name}"
                    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "conditions": self.conditions,
            "target": self.target,
            "active": self.active,
        }


@dataclass
class RoutingOutcome:
    """Result of routing one lead."""

    lead_id: str
    advisor_id: Optional[str] = None
    rule_id: Optional[str] = None
    evaluated_rules: List[str] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.advisor_id is not None


class LeadRouter:
    """Route leads to advisors: rules in priority order, first match wins.

    There is no fallback distribution; a lead no rule matches stays
    unassigned.
    """

    def __init__(self, db: LifecycleDatabase):
        self.db = db

    def add_rule(
        self,
        tenant_id: str,
        name: str,
        conditions: Dict[str, Any],
        target: str,
        priority: int = 100,
        rule_id: Optional[str] = None,
        active: bool = True,
    ) -> RoutingRule:
        """Add or replace a routing rule."""
        rule = RoutingRule(
            id=rule_id or str(uuid.uuid4())[:8],
            name=name,
            priority=priority,
            conditions=conditions,
            target=target,
            active=active,
        )
        rule.validate()
        self.db.save_routing_rule(tenant_id, rule.id, rule.name, rule.priority,
                                  rule.conditions, rule.target, rule.active)
        logger.info(f"Saved routing rule {rule.name} ({rule.id}) for tenant {tenant_id}")
        return rule

    def get_rules(self, tenant_id: str) -> List[RoutingRule]:
        """Active rules, highest priority first."""
        rules = [RoutingRule(**data) for data in self.db.get_routing_rules(tenant_id)]
        rules.sort(key=lambda r: (r.priority, r.id))
        return rules

    def route(self, lead_id: str, lead: Dict[str, Any], rules: List[RoutingRule]) -> RoutingOutcome:
        """Find the first matching rule for a lead."""
        outcome = RoutingOutcome(lead_id=lead_id)
        for rule in rules:
            if not rule.active:
                continue
            outcome.evaluated_rules.append(rule.id)
            if rule.matches(lead):
                outcome.advisor_id = rule.target
                outcome.rule_id = rule.id
                break
        return outcome

    def assign(self, tenant_id: str, outcome: RoutingOutcome,
               assigned_at: Optional[datetime] = None) -> RoutingAssignment:
        """Persist a matched routing outcome."""
        if not outcome.matched:
            raise ValidationError(f"Lead {outcome.lead_id} matched no routing rule")
        return self.db.upsert_assignment(RoutingAssignment(
            tenant_id=tenant_id,
            lead_id=outcome.lead_id,
            advisor_id=outcome.advisor_id,
            rule_id=outcome.rule_id,
            assigned_at=assigned_at or datetime.now(),
        ))
