"""Scoring and automation rule models."""

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from app.database import Base
from app.models import load_json, new_uuid, utcnow


class ScoringRule(Base):
    """Weighted condition: award ``score_points`` when a lead field matches."""

    __tablename__ = "scoring_rules"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    enabled = Column(Boolean, default=True)
    field_name = Column(String(50), nullable=False)
    operator = Column(String(20), nullable=False)  # equals|not_equals|contains|greater_than|less_than|is_set|is_not_set
    field_value = Column(String(500), default="")
    score_points = Column(Integer, nullable=False, default=0)  # can be negative
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ScoreHistory(Base):
    """Immutable snapshot written each time a recompute changes a lead's score."""

    __tablename__ = "score_history"

    id = Column(String(36), primary_key=True, default=new_uuid)
    lead_id = Column(String(36), ForeignKey("leads.id"), nullable=False, index=True)
    company_id = Column(String(36), nullable=False)
    score = Column(Integer, nullable=False)
    score_factors = Column(Text, default="{}")  # JSON: {rule name: points}
    win_probability = Column(Float, nullable=True)
    priority_score = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    def factors(self) -> dict:
        return load_json(self.score_factors, {})


class AutomationRule(Base):
    """Lifecycle automation: trigger event + conditions → one action."""

    __tablename__ = "automation_rules"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    name = Column(String(300), nullable=False)
    description = Column(Text, default="")
    enabled = Column(Boolean, default=True)
    priority = Column(Integer, default=0)  # Lower = runs first

    # stage_change|sla_breach|stale_lead|value_change|new_lead
    trigger_event = Column(String(30), nullable=False, index=True)
    trigger_conditions = Column(Text, default="{}")  # JSON: {"from_stage": "new", "to_stage": "won"} etc.

    # auto_notify|auto_assign|auto_move_stage|auto_escalate|auto_tag
    action_type = Column(String(30), nullable=False)
    action_params = Column(Text, default="{}")

    # Written only by the action executor
    execution_count = Column(Integer, default=0)
    last_executed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def conditions(self) -> dict:
        return load_json(self.trigger_conditions, {})

    def params(self) -> dict:
        return load_json(self.action_params, {})


class AutomationLog(Base):
    """Log of automation rule executions."""

    __tablename__ = "automation_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    rule_id = Column(String(36), nullable=False, index=True)
    lead_id = Column(String(36), nullable=True)
    trigger_event = Column(String(30), nullable=False)
    action_type = Column(String(30), nullable=False)
    status = Column(String(20), default="success")  # success|failed
    error_message = Column(Text, default="")
    duration_ms = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)
