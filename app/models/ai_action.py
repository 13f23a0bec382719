"""AI-suggested pipeline actions and the per-actor scan cooldown."""

from sqlalchemy import Column, DateTime, String, Text

from app.database import Base
from app.models import load_json, new_uuid, utcnow


class AIAction(Base):
    """Suggestion awaiting human review. Rows are transitioned, never deleted."""

    __tablename__ = "ai_actions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    company_id = Column(String(36), nullable=False, index=True)
    lead_id = Column(String(36), nullable=False, index=True)
    action_type = Column(String(30), nullable=False)  # move_stage|send_followup|score_update|flag_stale|set_reminder
    status = Column(String(20), default="pending", index=True)  # pending|approved|dismissed|executed
    priority = Column(String(10), default="medium")  # critical|high|medium|low
    reasoning = Column(Text, default="")
    suggested_data = Column(Text, default="{}")
    created_by = Column(String(36), nullable=True)
    reviewed_by = Column(String(36), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, default="")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def payload(self) -> dict:
        return load_json(self.suggested_data, {})


class ScanCooldown(Base):
    """Last AI scan per actor; claimed with a conditional update."""

    __tablename__ = "scan_cooldowns"

    actor_id = Column(String(36), primary_key=True)
    last_scan_at = Column(DateTime, nullable=False)
