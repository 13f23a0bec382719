"""Pydantic schemas for API request/response."""

import json
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from app.services.action_executor import ACTION_TYPES, REQUIRED_PARAMS
from app.services.condition_matcher import OPERATORS, SCORABLE_FIELDS
from app.services.trigger_evaluator import TRIGGER_EVENTS


def validate_rule_definition(
    trigger_event: str,
    trigger_conditions: dict,
    action_type: str,
    action_params: dict,
) -> None:
    """Reject automation rules that could never run as written. Raises ValueError."""
    if trigger_event not in TRIGGER_EVENTS:
        raise ValueError(f"Unknown trigger_event: {trigger_event}")
    if action_type not in ACTION_TYPES:
        raise ValueError(f"Unknown action_type: {action_type}")

    required = REQUIRED_PARAMS.get(action_type)
    if required and not action_params.get(required):
        raise ValueError(f"{action_type} requires action_params.{required}")

    roles = action_params.get("notify_roles")
    if roles is not None and not (isinstance(roles, list) and all(isinstance(r, str) for r in roles)):
        raise ValueError("action_params.notify_roles must be a list of role names")

    for key in ("stale_days", "min_value"):
        value = trigger_conditions.get(key)
        if value in (None, ""):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"trigger_conditions.{key} must be a number")
        if number < 0:
            raise ValueError(f"trigger_conditions.{key} must not be negative")


def _check_field_name(value):
    if value is not None and value not in SCORABLE_FIELDS:
        raise ValueError(f"Unknown field_name: {value}")
    return value


def _check_operator(value):
    if value is not None and value not in OPERATORS:
        raise ValueError(f"Unknown operator: {value}")
    return value


def _json(raw, default):
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return default
        return value if isinstance(value, type(default)) else default
    return raw or default


# ── Lead ─────────────────────────────────────────────────
class LeadCreate(BaseModel):
    company_id: str
    title: str = Field(min_length=1)
    stage: str = "new"
    expected_value: float = 0.0
    probability: int = Field(0, ge=0, le=100)
    priority: str = "medium"
    source: str = ""
    customer_id: Optional[str] = None
    assigned_to: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    win_prob_score: Optional[float] = None
    expected_close_date: Optional[datetime] = None


class LeadUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    stage: Optional[str] = None
    expected_value: Optional[float] = None
    probability: Optional[int] = Field(None, ge=0, le=100)
    priority: Optional[str] = None
    source: Optional[str] = None
    customer_id: Optional[str] = None
    assigned_to: Optional[str] = None
    tags: Optional[list[str]] = None
    win_prob_score: Optional[float] = None
    expected_close_date: Optional[datetime] = None


class LeadOut(BaseModel):
    id: str
    company_id: str
    title: str
    stage: str
    expected_value: float
    probability: int
    priority: str
    source: str
    customer_id: Optional[str] = None
    assigned_to: Optional[str] = None
    escalated_to: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    computed_score: int
    score_updated_at: Optional[datetime] = None
    win_prob_score: Optional[float] = None
    sla_deadline: Optional[datetime] = None
    sla_breached: bool
    expected_close_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, lead):
        return cls(
            id=lead.id,
            company_id=lead.company_id,
            title=lead.title,
            stage=lead.stage,
            expected_value=lead.expected_value or 0.0,
            probability=lead.probability or 0,
            priority=lead.priority or "medium",
            source=lead.source or "",
            customer_id=lead.customer_id,
            assigned_to=lead.assigned_to,
            escalated_to=lead.escalated_to,
            tags=_json(lead.tags, []),
            computed_score=lead.computed_score or 0,
            score_updated_at=lead.score_updated_at,
            win_prob_score=lead.win_prob_score,
            sla_deadline=lead.sla_deadline,
            sla_breached=bool(lead.sla_breached),
            expected_close_date=lead.expected_close_date,
            created_at=lead.created_at,
            updated_at=lead.updated_at,
        )


class ScoreHistoryOut(BaseModel):
    id: str
    lead_id: str
    score: int
    score_factors: dict
    win_probability: Optional[float] = None
    created_at: datetime

    @classmethod
    def from_model(cls, entry):
        return cls(
            id=entry.id,
            lead_id=entry.lead_id,
            score=entry.score,
            score_factors=_json(entry.score_factors, {}),
            win_probability=entry.win_probability,
            created_at=entry.created_at,
        )


# ── User ─────────────────────────────────────────────────
class UserCreate(BaseModel):
    company_id: str
    email: EmailStr
    full_name: str = ""
    roles: list[str] = Field(default_factory=lambda: ["sales"])


class UserOut(BaseModel):
    id: str
    company_id: str
    email: str
    full_name: str
    roles: list[str]
    is_active: bool

    @classmethod
    def from_model(cls, user):
        return cls(
            id=user.id,
            company_id=user.company_id,
            email=user.email,
            full_name=user.full_name or "",
            roles=_json(user.roles, []),
            is_active=bool(user.is_active),
        )


# ── Scoring rules ────────────────────────────────────────
class ScoringRuleCreate(BaseModel):
    company_id: str
    name: str = Field(min_length=1)
    enabled: bool = True
    field_name: str
    operator: str
    field_value: str = ""
    score_points: int

    @field_validator("field_name")
    @classmethod
    def known_field(cls, value):
        return _check_field_name(value)

    @field_validator("operator")
    @classmethod
    def known_operator(cls, value):
        return _check_operator(value)


class ScoringRuleUpdate(BaseModel):
    name: Optional[str] = None
    enabled: Optional[bool] = None
    field_name: Optional[str] = None
    operator: Optional[str] = None
    field_value: Optional[str] = None
    score_points: Optional[int] = None

    @field_validator("field_name")
    @classmethod
    def known_field(cls, value):
        return _check_field_name(value)

    @field_validator("operator")
    @classmethod
    def known_operator(cls, value):
        return _check_operator(value)


class ScoringRuleOut(BaseModel):
    id: str
    company_id: str
    name: str
    enabled: bool
    field_name: str
    operator: str
    field_value: str
    score_points: int
    created_at: datetime

    model_config = {"from_attributes": True}


class RecomputeRequest(BaseModel):
    company_id: str
    concurrency: Optional[int] = Field(None, ge=1, le=64)
    background: bool = False  # enqueue on the Celery worker instead of running inline


# ── Automation rules ─────────────────────────────────────
class AutomationRuleCreate(BaseModel):
    company_id: str
    name: str = Field(min_length=1)
    description: str = ""
    enabled: bool = True
    priority: int = 0
    trigger_event: str
    trigger_conditions: dict = Field(default_factory=dict)
    action_type: str
    action_params: dict = Field(default_factory=dict)

    @model_validator(mode="after")
    def check_definition(self):
        validate_rule_definition(
            self.trigger_event, self.trigger_conditions, self.action_type, self.action_params
        )
        return self


class AutomationRuleUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    trigger_event: Optional[str] = None
    trigger_conditions: Optional[dict] = None
    action_type: Optional[str] = None
    action_params: Optional[dict] = None


class AutomationRuleOut(BaseModel):
    id: str
    company_id: str
    name: str
    description: str
    enabled: bool
    priority: int
    trigger_event: str
    trigger_conditions: dict
    action_type: str
    action_params: dict
    execution_count: int
    last_executed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_model(cls, rule):
        return cls(
            id=rule.id,
            company_id=rule.company_id,
            name=rule.name,
            description=rule.description or "",
            enabled=bool(rule.enabled),
            priority=rule.priority or 0,
            trigger_event=rule.trigger_event,
            trigger_conditions=_json(rule.trigger_conditions, {}),
            action_type=rule.action_type,
            action_params=_json(rule.action_params, {}),
            execution_count=rule.execution_count or 0,
            last_executed_at=rule.last_executed_at,
            created_at=rule.created_at,
        )


class FireEventRequest(BaseModel):
    event: str
    lead_id: str
    previous: Optional[dict] = None

    @field_validator("event")
    @classmethod
    def known_event(cls, value):
        if value not in TRIGGER_EVENTS:
            raise ValueError(f"Unknown trigger event: {value}")
        return value


# ── AI actions ───────────────────────────────────────────
class AIActionOut(BaseModel):
    id: str
    company_id: str
    lead_id: str
    action_type: str
    status: str
    priority: str
    reasoning: str
    suggested_data: dict
    created_by: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    last_error: str = ""
    created_at: datetime

    @classmethod
    def from_model(cls, action):
        return cls(
            id=action.id,
            company_id=action.company_id,
            lead_id=action.lead_id,
            action_type=action.action_type,
            status=action.status,
            priority=action.priority or "medium",
            reasoning=action.reasoning or "",
            suggested_data=_json(action.suggested_data, {}),
            created_by=action.created_by,
            reviewed_by=action.reviewed_by,
            reviewed_at=action.reviewed_at,
            executed_at=action.executed_at,
            last_error=action.last_error or "",
            created_at=action.created_at,
        )


class ScanRequest(BaseModel):
    actor_id: str
    company_id: str


class ReviewRequest(BaseModel):
    actor_id: Optional[str] = None


class BulkReviewRequest(BaseModel):
    company_id: str
    actor_id: Optional[str] = None
    action_ids: Optional[list[str]] = None


# ── Alerts & SLA ─────────────────────────────────────────
class AlertOut(BaseModel):
    id: str
    severity: str
    type: str
    title: str
    description: str
    lead_id: Optional[str] = None
    lead_title: Optional[str] = None


class SlaItemOut(BaseModel):
    lead_id: str
    title: str
    stage: str
    deadline: datetime
    hours_left: float
    status: str


class CompanySettingsIn(BaseModel):
    scan_cooldown_minutes: Optional[int] = Field(None, ge=0)
    stale_days: Optional[int] = Field(None, ge=1)
    stale_bulk_threshold: Optional[int] = Field(None, ge=0)
    high_value_threshold: Optional[float] = Field(None, ge=0)
