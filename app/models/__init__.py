"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
)

from app.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def load_json(raw, default):
    """Decode a JSON-as-text column, falling back to ``default`` on garbage."""
    if raw is None:
        return default
    if not isinstance(raw, str):
        return raw
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default
    return value if isinstance(value, type(default)) else default


# ── Lead ────────────────────────────────────────────────
class Lead(Base):
    """Sales lead moving through the pipeline."""

    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    title = Column(String(300), nullable=False)
    stage = Column(String(60), nullable=False, default="new", index=True)
    expected_value = Column(Float, default=0.0)
    probability = Column(Integer, default=0)  # 0-100
    priority = Column(String(20), default="medium")
    source = Column(String(100), default="")
    customer_id = Column(String(36), nullable=True)
    assigned_to = Column(String(36), nullable=True)
    escalated_to = Column(String(100), nullable=True)
    tags = Column(Text, default="[]")  # JSON list, set semantics

    # Owned by the scoring engine
    computed_score = Column(Integer, default=0)
    score_updated_at = Column(DateTime, nullable=True)
    win_prob_score = Column(Float, nullable=True)
    priority_score = Column(Float, nullable=True)

    # SLA
    stage_entered_at = Column(DateTime, default=utcnow)
    sla_deadline = Column(DateTime, nullable=True)
    sla_breached = Column(Boolean, default=False)

    expected_close_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def tag_list(self) -> list[str]:
        return load_json(self.tags, [])


def lead_snapshot(lead: Lead) -> dict:
    """Freeze a lead into a plain dict for trigger evaluation and event payloads."""
    return {
        "id": lead.id,
        "company_id": lead.company_id,
        "title": lead.title,
        "stage": lead.stage,
        "expected_value": lead.expected_value,
        "probability": lead.probability,
        "priority": lead.priority,
        "source": lead.source,
        "customer_id": lead.customer_id,
        "assigned_to": lead.assigned_to,
        "escalated_to": lead.escalated_to,
        "tags": lead.tag_list(),
        "computed_score": lead.computed_score,
        "win_prob_score": lead.win_prob_score,
        "priority_score": lead.priority_score,
        "sla_deadline": as_utc(lead.sla_deadline),
        "sla_breached": bool(lead.sla_breached),
        "expected_close_date": as_utc(lead.expected_close_date),
        "updated_at": as_utc(lead.updated_at),
    }


# ── User ────────────────────────────────────────────────
class User(Base):
    """Company member who can receive automation notifications."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    email = Column(String(320), unique=True, nullable=False)
    full_name = Column(String(200), default="")
    roles = Column(Text, default='["sales"]')  # JSON list of role names
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    def role_list(self) -> list[str]:
        return load_json(self.roles, [])


# ── Notification ────────────────────────────────────────
class Notification(Base):
    """In-app notification delivered to a single user."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    title = Column(String(300), nullable=False)
    description = Column(Text, default="")
    priority = Column(String(20), default="normal")
    link_to = Column(String(300), default="/pipeline")
    status = Column(String(20), default="unread")  # unread|read
    created_at = Column(DateTime, default=utcnow)


# ── Human Task ──────────────────────────────────────────
class HumanTask(Base):
    """Work item for a person; ``dedupe_key`` guarantees at most one per logical trigger."""

    __tablename__ = "human_tasks"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    dedupe_key = Column(String(300), unique=True, nullable=False)
    title = Column(String(300), nullable=False)
    description = Column(Text, default="")
    severity = Column(String(20), default="warning")  # info|warning|critical
    category = Column(String(50), default="automation")
    entity_type = Column(String(30), default="lead")
    entity_id = Column(String(36), nullable=True, index=True)
    status = Column(String(20), default="open")  # open|done
    created_at = Column(DateTime, default=utcnow)


# ── Company Settings ────────────────────────────────────
class CompanySettings(Base):
    """Per-company overrides of engine thresholds; NULL falls back to app settings."""

    __tablename__ = "company_settings"

    company_id = Column(String(36), primary_key=True)
    scan_cooldown_minutes = Column(Integer, nullable=True)
    stale_days = Column(Integer, nullable=True)
    stale_bulk_threshold = Column(Integer, nullable=True)
    high_value_threshold = Column(Float, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


from app.models.rules import AutomationLog, AutomationRule, ScoreHistory, ScoringRule  # noqa: E402,F401
from app.models.ai_action import AIAction, ScanCooldown  # noqa: E402,F401
