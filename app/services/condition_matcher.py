"""Compare a lead field against a rule's operator and value."""

import logging
import math
from datetime import datetime

logger = logging.getLogger(__name__)

OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "greater_than",
    "less_than",
    "is_set",
    "is_not_set",
)

# Lead fields a rule may reference. Anything else is rejected when the rule is saved.
SCORABLE_FIELDS = (
    "stage",
    "priority",
    "probability",
    "expected_value",
    "source",
    "customer_id",
    "assigned_to",
    "title",
    "sla_breached",
    "win_prob_score",
)

_UNSET_LITERALS = ("null", "undefined")


def to_text(value) -> str:
    """Render a field value the way rules compare it: always a string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return ",".join(to_text(v) for v in value)
    return str(value)


def _to_number(text: str) -> float:
    try:
        return float(text.strip())
    except (ValueError, AttributeError):
        return math.nan


def read_field(record, field_name: str) -> str:
    """Read ``field_name`` from a lead (model or snapshot dict) as text.

    Unknown or missing fields read as the empty string.
    """
    if field_name not in SCORABLE_FIELDS:
        return ""
    if isinstance(record, dict):
        value = record.get(field_name)
    else:
        value = getattr(record, field_name, None)
    return to_text(value)


def is_set(value: str) -> bool:
    return bool(value) and value not in _UNSET_LITERALS


def matches(value: str, operator: str, compare_to: str) -> bool:
    """Evaluate one condition. Unknown operators never match."""
    value = value or ""
    compare_to = compare_to or ""

    if operator == "equals":
        return value == compare_to
    elif operator == "not_equals":
        return value != compare_to
    elif operator == "contains":
        return compare_to.lower() in value.lower()
    elif operator == "greater_than":
        # NaN compares False both ways
        return _to_number(value) > _to_number(compare_to)
    elif operator == "less_than":
        return _to_number(value) < _to_number(compare_to)
    elif operator == "is_set":
        return is_set(value)
    elif operator == "is_not_set":
        return not is_set(value)
    else:
        logger.warning(f"Unknown operator: {operator}")
        return False
