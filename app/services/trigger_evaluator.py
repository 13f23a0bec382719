"""Decides which automation rules fire for a lifecycle event."""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from app.models import as_utc, utcnow
from app.models.rules import AutomationRule

logger = logging.getLogger(__name__)

DEFAULT_STALE_DAYS = 14


class TriggerEvent(str, Enum):
    STAGE_CHANGE = "stage_change"
    SLA_BREACH = "sla_breach"
    STALE_LEAD = "stale_lead"
    VALUE_CHANGE = "value_change"
    NEW_LEAD = "new_lead"


TRIGGER_EVENTS = tuple(e.value for e in TriggerEvent)


def _number(value, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def days_since(timestamp: Optional[datetime], now: datetime) -> float:
    if timestamp is None:
        return 0.0
    return (now - as_utc(timestamp)).total_seconds() / 86400


def matches_trigger(
    trigger_event: str,
    conditions: dict,
    current: dict,
    previous: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Apply the trigger-specific comparison for one rule's conditions."""
    if not current:
        return False
    now = now or utcnow()

    if trigger_event == TriggerEvent.STAGE_CHANGE:
        from_stage = conditions.get("from_stage")
        to_stage = conditions.get("to_stage")
        if from_stage and (previous or {}).get("stage") != from_stage:
            return False
        if to_stage and current.get("stage") != to_stage:
            return False
        return True

    elif trigger_event == TriggerEvent.SLA_BREACH:
        return current.get("sla_breached") is True

    elif trigger_event == TriggerEvent.STALE_LEAD:
        stale_days = _number(conditions.get("stale_days"), DEFAULT_STALE_DAYS) or DEFAULT_STALE_DAYS
        return days_since(current.get("updated_at"), now) >= stale_days

    elif trigger_event == TriggerEvent.VALUE_CHANGE:
        if previous is None:
            return False
        value = _number(current.get("expected_value"))
        if value == _number(previous.get("expected_value")):
            return False
        min_value = conditions.get("min_value")
        if min_value not in (None, "") and value < _number(min_value):
            return False
        return True

    elif trigger_event == TriggerEvent.NEW_LEAD:
        return True

    logger.warning(f"Unknown trigger event: {trigger_event}")
    return False


def matching_rules(
    trigger_event: str,
    current: dict,
    previous: Optional[dict],
    rules: list[AutomationRule],
    now: Optional[datetime] = None,
) -> list[AutomationRule]:
    """Enabled rules for ``trigger_event`` that match, lowest ``priority`` first.

    Every match is returned; callers execute each one independently.
    """
    now = now or utcnow()
    candidates = [r for r in rules if r.enabled and r.trigger_event == trigger_event]
    candidates.sort(key=lambda r: r.priority or 0)
    return [
        rule for rule in candidates
        if matches_trigger(trigger_event, rule.conditions(), current, previous, now)
    ]
