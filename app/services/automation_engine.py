"""Automation rule engine — evaluates lifecycle events and runs matched rules."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session
from app.models import Lead, lead_snapshot, utcnow
from app.models.rules import AutomationLog, AutomationRule
from app.services.action_executor import ActionExecutor
from app.services.notifications import NotificationService
from app.services.sla import TERMINAL_STAGES, mark_sla_breaches
from app.services.trigger_evaluator import TriggerEvent, matching_rules

logger = logging.getLogger(__name__)


@dataclass
class EventResult:
    """What happened when one lifecycle event was processed."""
    event: str
    lead_id: Optional[str]
    matched: int = 0
    executed: int = 0
    failed: int = 0
    results: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "lead_id": self.lead_id,
            "rules_matched": self.matched,
            "executed": self.executed,
            "failed": self.failed,
            "results": self.results,
        }


class RuleEngine:
    """Evaluates automation rules against lead lifecycle events."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: Optional[NotificationService] = None,
        session_factory=async_session,
    ):
        self.db = db
        self.notifier = notifier or NotificationService(session_factory)
        self.executor = ActionExecutor(session_factory, self.notifier)

    async def get_rules(self, company_id: str, event: Optional[str] = None) -> list[AutomationRule]:
        """Enabled rules of a company, optionally for one trigger event, lowest priority first."""
        query = select(AutomationRule).where(
            AutomationRule.company_id == company_id,
            AutomationRule.enabled.is_(True),
        )
        if event:
            query = query.where(AutomationRule.trigger_event == event)
        result = await self.db.execute(query.order_by(AutomationRule.priority.asc()))
        return list(result.scalars().all())

    async def on_record_event(
        self,
        event: str,
        current: dict,
        previous: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> EventResult:
        """Run every rule matching ``event`` for the lead in ``current``."""
        company_id = current.get("company_id")
        rules = await self.get_rules(company_id, event) if company_id else []
        return await self._dispatch(event, current, previous, rules, now or utcnow())

    async def _dispatch(
        self,
        event: str,
        current: dict,
        previous: Optional[dict],
        rules: list[AutomationRule],
        now: datetime,
    ) -> EventResult:
        outcome = EventResult(event=event, lead_id=current.get("id"))
        matched = matching_rules(event, current, previous, rules, now)
        outcome.matched = len(matched)

        # Strict priority order: conflicting writes land last-write-wins.
        for rule in matched:
            log = await self.executor.execute(rule, current, current.get("company_id"))
            outcome.results.append({"rule_id": log.rule_id, "status": log.status})
            if log.status == "success":
                outcome.executed += 1
            else:
                outcome.failed += 1

        if matched:
            logger.info(
                f"Event {event} for lead {outcome.lead_id}: matched={outcome.matched} "
                f"executed={outcome.executed} failed={outcome.failed}"
            )
        return outcome

    async def sweep_sla(self, company_id: str, now: Optional[datetime] = None) -> dict:
        """Flag overdue leads and fire ``sla_breach`` for each newly breached one."""
        now = now or utcnow()
        flagged = await mark_sla_breaches(self.db, company_id, now)
        rules = await self.get_rules(company_id, TriggerEvent.SLA_BREACH.value)

        executed = failed = 0
        for previous, current in flagged:
            result = await self._dispatch(TriggerEvent.SLA_BREACH.value, current, previous, rules, now)
            executed += result.executed
            failed += result.failed
        return {"breached": len(flagged), "executed": executed, "failed": failed}

    async def sweep_stale(self, company_id: str, now: Optional[datetime] = None) -> dict:
        """Fire ``stale_lead`` against every active lead of the company."""
        now = now or utcnow()
        rules = await self.get_rules(company_id, TriggerEvent.STALE_LEAD.value)
        if not rules:
            return {"checked": 0, "matched": 0, "executed": 0, "failed": 0}

        result = await self.db.execute(
            select(Lead)
            .where(Lead.company_id == company_id, Lead.stage.not_in(TERMINAL_STAGES))
            .execution_options(populate_existing=True)
        )
        snapshots = [lead_snapshot(lead) for lead in result.scalars().all()]

        matched = executed = failed = 0
        for snapshot in snapshots:
            outcome = await self._dispatch(TriggerEvent.STALE_LEAD.value, snapshot, None, rules, now)
            matched += outcome.matched
            executed += outcome.executed
            failed += outcome.failed
        return {"checked": len(snapshots), "matched": matched, "executed": executed, "failed": failed}

    async def get_rule_stats(self, rule_id: str) -> dict:
        """Get execution stats for a rule."""
        rows = (await self.db.execute(
            select(AutomationLog.status, func.count(AutomationLog.id))
            .where(AutomationLog.rule_id == rule_id)
            .group_by(AutomationLog.status)
        )).all()
        counts = {status: count for status, count in rows}
        success = counts.get("success", 0)
        failed = counts.get("failed", 0)
        total = success + failed

        rule = await self.db.get(AutomationRule, rule_id, populate_existing=True)
        return {
            "rule_id": rule_id,
            "total": total,
            "success": success,
            "failed": failed,
            "success_rate": round(success / total * 100, 2) if total > 0 else 0.0,
            "execution_count": (rule.execution_count or 0) if rule else 0,
            "last_executed_at": rule.last_executed_at.isoformat() if rule and rule.last_executed_at else None,
        }
