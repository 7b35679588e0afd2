"""Channel eligibility and escalation policy."""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Iterable, List, Optional, Sequence

from ..journeys.definitions import (
    WEEKDAY_NAMES,
    ChannelRule,
    ChannelType,
    FrequencyLimits,
    Priority,
    Stage,
    TimeRestrictions,
)
from ..journeys.engine import EscalationSignal
from ..storage.models import CommunicationRecord, local_naive

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CandidateAction:
    """A communication the caller would like to send."""

    action: str
    priority: Priority = Priority.MEDIUM


@dataclass(frozen=True)
class PolicyDecision:
    """Whether a channel may be used right now, and why not."""

    allowed: bool
    reason: str
    check: Optional[str] = None  # channel | priority | time | frequency

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "reason": self.reason, "check": self.check}


@dataclass
class EscalationPlan:
    """Channels an escalation may and may not use."""

    signal: EscalationSignal
    allowed_channels: List[ChannelType]
    blocked: List[dict]

    def to_dict(self) -> dict:
        return {
            "signal": self.signal.to_dict(),
            "allowed_channels": [c.value for c in self.allowed_channels],
            "blocked": self.blocked,
        }


def _in_window(now: time, start: str, end: str) -> bool:
    """True when ``now`` falls in [start, end). Windows may span midnight."""
    start_t = time.fromisoformat(start)
    end_t = time.fromisoformat(end)
    if start_t <= end_t:
        return start_t <= now < end_t
    # Window spans midnight
    return now >= start_t or now < end_t


def _check_time(restrictions: TimeRestrictions, now: datetime) -> Optional[str]:
    day = WEEKDAY_NAMES[now.weekday()]
    current = now.time()

    if restrictions.allowed_days and day not in restrictions.allowed_days:
        return f"not allowed on {day}"

    if restrictions.business_hours_only:
        if now.weekday() >= 5:
            return "outside business hours (weekend)"
        if not _in_window(current, restrictions.business_start, restrictions.business_end):
            return (
                f"outside business hours ({restrictions.business_start}-"
                f"{restrictions.business_end})"
            )

    for start, end in restrictions.blackout_windows:
        if _in_window(current, start, end):
            return f"inside blackout window {start}-{end}"

    return None


def _check_frequency(
    limits: FrequencyLimits,
    channel: ChannelType,
    now: datetime,
    history: Sequence[CommunicationRecord],
) -> Optional[str]:
    sent = sorted(
        (r.sent_at for r in history if r.channel == channel.value and r.sent_at <= now),
        reverse=True,
    )

    if limits.max_per_day is not None:
        today = sum(1 for s in sent if s.date() == now.date())
        if today >= limits.max_per_day:
            return f"daily limit reached ({today}/{limits.max_per_day})"

    if limits.max_per_week is not None:
        week_start = now - timedelta(days=7)
        this_week = sum(1 for s in sent if s > week_start)
        if this_week >= limits.max_per_week:
            return f"weekly limit reached ({this_week}/{limits.max_per_week})"

    if limits.min_hours_between is not None and sent:
        hours = (now - sent[0]).total_seconds() / 3600
        if hours < limits.min_hours_between:
            return f"last {channel.value} was {hours:.1f}h ago (minimum {limits.min_hours_between:g}h)"

    return None


class ChannelPolicyEngine:
    """Decides whether a channel may be used for a stage at a given time.

    Checks run in a fixed order (channel, priority, time, frequency) and the
    first failure decides. The engine holds no state.
    """

    def is_allowed(
        self,
        stage: Stage,
        channel: ChannelType,
        candidate: CandidateAction,
        now: datetime,
        history: Iterable[CommunicationRecord] = (),
    ) -> PolicyDecision:
        now = local_naive(now)
        rule: Optional[ChannelRule] = stage.channel_rule(channel)
        if rule is None:
            return PolicyDecision(False, f"{channel.value} is not configured for stage {stage.id}", "channel")
        if not rule.is_allowed:
            return PolicyDecision(False, f"{channel.value} is disabled for stage {stage.id}", "channel")

        if candidate.priority.rank < rule.priority_threshold.rank:
            return PolicyDecision(
                False,
                f"priority {candidate.priority.value} is below the {rule.priority_threshold.value} "
                f"threshold for {channel.value}",
                "priority",
            )

        time_reason = _check_time(rule.time_restrictions, now)
        if time_reason:
            return PolicyDecision(False, f"time restriction: {time_reason}", "time")

        frequency_reason = _check_frequency(rule.frequency_limits, channel, now, list(history))
        if frequency_reason:
            return PolicyDecision(False, f"frequency limit: {frequency_reason}", "frequency")

        return PolicyDecision(True, "allowed")

    def plan_escalation(
        self,
        stage: Stage,
        signal: EscalationSignal,
        now: datetime,
        history: Iterable[CommunicationRecord] = (),
    ) -> EscalationPlan:
        """Evaluate each escalation notify channel at urgent priority."""
        history = list(history)
        candidate = CandidateAction(action=f"escalate:{signal.escalate_to}", priority=Priority.URGENT)

        allowed: List[ChannelType] = []
        blocked: List[dict] = []
        for channel in signal.notify_channels:
            decision = self.is_allowed(stage, channel, candidate, now, history)
            if decision.allowed:
                allowed.append(channel)
            else:
                blocked.append({"channel": channel.value, "reason": decision.reason})

        if not allowed:
            logger.warning(f"Escalation for enrollment {signal.enrollment_id} has no eligible channel")
        return EscalationPlan(signal=signal, allowed_channels=allowed, blocked=blocked)
