"""Applies a matched automation rule's action to a lead."""

import json
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Union

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import insert_ignore
from app.models import HumanTask, Lead, as_utc, utcnow
from app.models.rules import AutomationLog, AutomationRule
from app.services.notifications import NotificationPayload, NotificationService, users_with_roles
from app.services.sla import apply_stage_change

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    AUTO_NOTIFY = "auto_notify"
    AUTO_ASSIGN = "auto_assign"
    AUTO_MOVE_STAGE = "auto_move_stage"
    AUTO_ESCALATE = "auto_escalate"
    AUTO_TAG = "auto_tag"


ACTION_TYPES = tuple(a.value for a in ActionType)

# action_params key each action cannot run without
REQUIRED_PARAMS = {
    ActionType.AUTO_ASSIGN.value: "assign_to",
    ActionType.AUTO_MOVE_STAGE.value: "target_stage",
    ActionType.AUTO_TAG.value: "tag",
}


def escalation_dedupe_key(lead_id: str, instant: Union[datetime, str, None]) -> str:
    """One escalation task per lead per triggering snapshot."""
    if isinstance(instant, str):
        # caller-built snapshots may carry ISO strings; 3.10 rejects a trailing Z
        instant = datetime.fromisoformat(instant.replace("Z", "+00:00")) if instant else None
    stamp = as_utc(instant).isoformat() if instant else utcnow().replace(second=0, microsecond=0).isoformat()
    return f"auto:escalate:{lead_id}:{stamp}"


class ActionExecutor:
    """Runs one rule's action, then records bookkeeping.

    Each execution gets a session of its own, so a failed action rolls back
    only its own writes and sibling rules keep running. ``execute`` never
    raises; the outcome is reported in the returned log.
    """

    def __init__(self, session_factory, notifier: NotificationService):
        self._session_factory = session_factory
        self.notifier = notifier

    async def execute(self, rule: AutomationRule, record: dict, company_id: str) -> AutomationLog:
        start = time.monotonic()
        rule_id, action_type, trigger_event = rule.id, rule.action_type, rule.trigger_event
        params = rule.params()
        lead_id = record.get("id")

        async with self._session_factory() as db:
            status, error = "success", ""
            try:
                await self._run_action(db, action_type, params, record, company_id)
                await db.commit()
            except Exception as e:
                await db.rollback()
                status, error = "failed", str(e)
                logger.error(f"Rule {rule_id} ({action_type}) failed for lead {lead_id}: {e}")

            if status == "success":
                await self._bump_counters(db, rule_id)

            log = AutomationLog(
                rule_id=rule_id,
                lead_id=lead_id,
                trigger_event=trigger_event,
                action_type=action_type,
                status=status,
                error_message=error,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
            try:
                db.add(log)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.warning(f"Failed to write automation log for rule {rule_id}: {e}")
        return log

    async def _run_action(
        self, db: AsyncSession, action_type: str, params: dict, record: dict, company_id: str
    ) -> None:
        if action_type == ActionType.AUTO_NOTIFY:
            await self._notify(db, params, record, company_id)
            return
        if action_type not in ACTION_TYPES:
            logger.warning(f"Unknown action type: {action_type}")
            return

        required = REQUIRED_PARAMS.get(action_type)
        if required and not params.get(required):
            return

        lead = await db.get(Lead, record.get("id"))
        if lead is None:
            raise LookupError(f"Lead {record.get('id')} not found")

        if action_type == ActionType.AUTO_ASSIGN:
            lead.assigned_to = params["assign_to"]

        elif action_type == ActionType.AUTO_MOVE_STAGE:
            apply_stage_change(lead, params["target_stage"])

        elif action_type == ActionType.AUTO_TAG:
            tags = lead.tag_list()
            if params["tag"] not in tags:
                lead.tags = json.dumps(tags + [params["tag"]])

        elif action_type == ActionType.AUTO_ESCALATE:
            escalate_to = params.get("escalate_to") or get_settings().default_escalation_target
            lead.escalated_to = escalate_to
            await db.flush()
            await db.execute(insert_ignore(
                HumanTask,
                "dedupe_key",
                company_id=company_id,
                dedupe_key=escalation_dedupe_key(lead.id, record.get("updated_at")),
                title=f"Auto-escalated: {lead.title}",
                description=f"Lead automatically escalated to {escalate_to} by automation rule.",
                severity="warning",
                category="automation",
                entity_type="lead",
                entity_id=lead.id,
            ))

    async def _notify(self, db: AsyncSession, params: dict, record: dict, company_id: str) -> None:
        roles = params.get("notify_roles") or ["admin"]
        recipients = [u.id for u in await users_with_roles(db, company_id, roles)]
        payload = NotificationPayload(
            title=f"Automation: {params.get('title') or 'Pipeline rule triggered'}",
            message=params.get("message") or f'Lead "{record.get("title")}" triggered an automation rule.',
            priority=params.get("priority") or "normal",
        )
        sent = 0
        for user_id in recipients:
            try:
                delivered = await self.notifier.notify(user_id, payload)
            except Exception as e:
                logger.warning(f"Notification to user {user_id} for lead {record.get('id')} failed: {e}")
                continue
            if delivered:
                sent += 1
            else:
                logger.warning(f"Notification to user {user_id} for lead {record.get('id')} not delivered")
        logger.info(f"auto_notify: {sent}/{len(recipients)} users notified for lead {record.get('id')}")

    async def _bump_counters(self, db: AsyncSession, rule_id: str) -> None:
        """Best-effort telemetry; never undoes the action."""
        try:
            await db.execute(
                update(AutomationRule)
                .where(AutomationRule.id == rule_id)
                .values(
                    execution_count=func.coalesce(AutomationRule.execution_count, 0) + 1,
                    last_executed_at=utcnow(),
                    updated_at=AutomationRule.updated_at,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.warning(f"Failed to update execution count for rule {rule_id}: {e}")
