"""AI suggestion workflow: rate-limited scans, then human-gated approve, dismiss and execute."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import insert_ignore
from app.exceptions import ActionExecutionError, InvalidTransitionError, NotFoundError, SuggestionGeneratorError
from app.models import HumanTask, Lead, as_utc, utcnow
from app.models.ai_action import AIAction, ScanCooldown
from app.services.company_settings import load_engine_settings
from app.services.sla import apply_stage_change, is_active
from app.services.suggestion_generator import parse_proposal
from app.services.trigger_evaluator import days_since

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


class AIActionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DISMISSED = "dismissed"
    EXECUTED = "executed"


ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    AIActionStatus.PENDING.value: frozenset({AIActionStatus.APPROVED.value, AIActionStatus.DISMISSED.value}),
    AIActionStatus.APPROVED.value: frozenset({AIActionStatus.EXECUTED.value}),
    AIActionStatus.DISMISSED.value: frozenset(),
    AIActionStatus.EXECUTED.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


Capability = Callable[[AIAction], Awaitable[Optional[dict]]]


@dataclass
class BulkResult:
    requested: int = 0
    transitioned: int = 0
    skipped: int = 0  # no longer pending when we got to it
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "transitioned": self.transitioned,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


@dataclass
class ScanResult:
    status: str  # completed|skipped
    inserted: int = 0
    rejected: int = 0
    retry_after_seconds: int = 0
    action_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "inserted": self.inserted,
            "rejected": self.rejected,
            "retry_after_seconds": self.retry_after_seconds,
            "action_ids": self.action_ids,
        }


# ── Transitions ────────────────────────────────────────
async def get_action(db: AsyncSession, action_id: str) -> AIAction:
    action = await db.get(AIAction, action_id, populate_existing=True)
    if action is None:
        raise NotFoundError("AI action not found")
    return action


async def _compare_and_set(
    db: AsyncSession,
    action_id: str,
    expected: str,
    target: str,
    **values,
) -> bool:
    result = await db.execute(
        update(AIAction)
        .where(AIAction.id == action_id, AIAction.status == expected)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition(
    db: AsyncSession,
    action_id: str,
    target: str,
    actor_id: Optional[str] = None,
) -> AIAction:
    """Move one action to ``target`` (approved or dismissed).

    Illegal moves raise ``InvalidTransitionError`` and leave the row untouched.
    """
    action = await get_action(db, action_id)
    current = action.status
    if target == AIActionStatus.EXECUTED.value or not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move AI action from {current} to {target}")

    if not await _compare_and_set(db, action_id, current, target, reviewed_by=actor_id, reviewed_at=utcnow()):
        await db.rollback()
        latest = await get_action(db, action_id)
        raise InvalidTransitionError(f"Cannot move AI action from {latest.status} to {target}")
    await db.commit()
    return await get_action(db, action_id)


async def approve(db: AsyncSession, action_id: str, actor_id: Optional[str] = None) -> AIAction:
    return await transition(db, action_id, AIActionStatus.APPROVED.value, actor_id)


async def dismiss(db: AsyncSession, action_id: str, actor_id: Optional[str] = None) -> AIAction:
    return await transition(db, action_id, AIActionStatus.DISMISSED.value, actor_id)


async def _bulk_transition(
    db: AsyncSession,
    company_id: str,
    target: str,
    actor_id: Optional[str],
    action_ids: Optional[list[str]],
) -> BulkResult:
    query = select(AIAction.id).where(
        AIAction.company_id == company_id,
        AIAction.status == AIActionStatus.PENDING.value,
    )
    if action_ids is not None:
        query = query.where(AIAction.id.in_(action_ids))
    ids = list((await db.execute(query)).scalars().all())

    summary = BulkResult(requested=len(ids))
    for action_id in ids:
        try:
            moved = await _compare_and_set(
                db, action_id, AIActionStatus.PENDING.value, target,
                reviewed_by=actor_id, reviewed_at=utcnow(),
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            summary.failed += 1
            if len(summary.errors) < MAX_REPORTED_ERRORS:
                summary.errors.append(f"{action_id}: {e}")
            logger.error(f"Bulk {target} failed for AI action {action_id}: {e}")
            continue
        if moved:
            summary.transitioned += 1
        else:
            summary.skipped += 1

    logger.info(
        f"Bulk {target} for company {company_id}: {summary.transitioned}/{summary.requested} "
        f"transitioned, {summary.skipped} skipped, {summary.failed} failed"
    )
    return summary


async def approve_all(
    db: AsyncSession, company_id: str, actor_id: Optional[str] = None, action_ids: Optional[list[str]] = None
) -> BulkResult:
    return await _bulk_transition(db, company_id, AIActionStatus.APPROVED.value, actor_id, action_ids)


async def dismiss_all(
    db: AsyncSession, company_id: str, actor_id: Optional[str] = None, action_ids: Optional[list[str]] = None
) -> BulkResult:
    return await _bulk_transition(db, company_id, AIActionStatus.DISMISSED.value, actor_id, action_ids)


async def execute(db: AsyncSession, action_id: str, capability: Capability) -> AIAction:
    """Run ``capability`` for an approved action and mark it executed.

    On failure the action stays ``approved`` with ``last_error`` set, and
    ``ActionExecutionError`` is raised.
    """
    action = await get_action(db, action_id)
    if action.status != AIActionStatus.APPROVED.value:
        raise InvalidTransitionError(f"Cannot execute AI action in status {action.status}")

    try:
        await capability(action)
    except Exception as e:
        logger.error(f"AI action {action_id} ({action.action_type}) failed for lead {action.lead_id}: {e}")
        await db.execute(
            update(AIAction)
            .where(AIAction.id == action_id, AIAction.status == AIActionStatus.APPROVED.value)
            .values(last_error=str(e)[:2000], updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        raise ActionExecutionError(f"AI action {action_id} failed: {e}") from e

    if not await _compare_and_set(
        db, action_id, AIActionStatus.APPROVED.value, AIActionStatus.EXECUTED.value,
        executed_at=utcnow(), last_error="",
    ):
        await db.rollback()
        latest = await get_action(db, action_id)
        raise InvalidTransitionError(f"Cannot execute AI action in status {latest.status}")
    await db.commit()
    return await get_action(db, action_id)


# ── Default capability ─────────────────────────────────
class DefaultActionCapability:
    """Applies an approved suggestion to the pipeline in a session of its own."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def __call__(self, action: AIAction) -> Optional[dict]:
        data = action.payload()
        async with self._session_factory() as db:
            lead = await db.get(Lead, action.lead_id)
            if lead is None:
                raise LookupError(f"Lead {action.lead_id} not found")

            if action.action_type == "move_stage":
                target = data.get("target_stage")
                if not target:
                    raise ValueError("move_stage requires suggested_data.target_stage")
                apply_stage_change(lead, target)

            elif action.action_type == "flag_stale":
                tags = lead.tag_list()
                if "stale" not in tags:
                    lead.tags = json.dumps(tags + ["stale"])

            elif action.action_type in ("send_followup", "set_reminder", "score_update"):
                await db.execute(insert_ignore(HumanTask, "dedupe_key", **self._task_for(action, lead, data)))

            else:
                raise ValueError(f"Unsupported AI action type: {action.action_type}")

            await db.commit()
        return {"action_id": action.id, "action_type": action.action_type}

    @staticmethod
    def _task_for(action: AIAction, lead: Lead, data: dict) -> dict:
        if action.action_type == "send_followup":
            title = f"Follow up: {lead.title}"
            description = data.get("message") or action.reasoning or ""
        elif action.action_type == "set_reminder":
            title = f"Reminder: {lead.title}"
            due = data.get("due_date")
            description = f"Due {due}. {data.get('message', '')}".strip() if due else data.get("message", "")
        else:
            # scores belong to the scoring rules; a suggested score is only reviewed
            title = f"Review score: {lead.title}"
            description = f"Suggested score {data.get('score')}. {action.reasoning or ''}".strip()
        return {
            "company_id": action.company_id,
            "dedupe_key": f"ai:action:{action.id}",
            "title": title,
            "description": description,
            "severity": "critical" if action.priority == "critical" else "warning",
            "category": f"ai_{action.action_type}",
            "entity_type": "lead",
            "entity_id": lead.id,
        }


# ── Scan cooldown ──────────────────────────────────────
async def claim_scan_slot(
    db: AsyncSession,
    actor_id: str,
    cooldown_minutes: int,
    now: Optional[datetime] = None,
) -> tuple[bool, Optional[datetime], int]:
    """Atomically claim the actor's scan slot.

    Returns ``(claimed, previous_scan_at, retry_after_seconds)``. Two concurrent
    claims inside the window cannot both succeed: the write is conditional on
    the stored timestamp still being outside the window.
    """
    now = now or utcnow()
    cooldown = timedelta(minutes=cooldown_minutes)
    cutoff = now - cooldown

    row = await db.get(ScanCooldown, actor_id, populate_existing=True)
    if row is None:
        result = await db.execute(insert_ignore(ScanCooldown, "actor_id", actor_id=actor_id, last_scan_at=now))
        await db.commit()
        if result.rowcount == 1:
            return True, None, 0
        row = await db.get(ScanCooldown, actor_id, populate_existing=True)
        return False, None, _retry_after(row.last_scan_at, cooldown, now)

    previous = as_utc(row.last_scan_at)
    if previous > cutoff:
        return False, previous, _retry_after(previous, cooldown, now)

    result = await db.execute(
        update(ScanCooldown)
        .where(ScanCooldown.actor_id == actor_id, ScanCooldown.last_scan_at <= cutoff)
        .values(last_scan_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount == 1:
        return True, previous, 0
    row = await db.get(ScanCooldown, actor_id, populate_existing=True)
    return False, previous, _retry_after(row.last_scan_at, cooldown, now)


def _retry_after(last_scan_at: datetime, cooldown: timedelta, now: datetime) -> int:
    remaining = (as_utc(last_scan_at) + cooldown - now).total_seconds()
    return max(0, int(remaining + 0.999))


async def release_scan_slot(
    db: AsyncSession, actor_id: str, claimed_at: datetime, previous: Optional[datetime]
) -> None:
    """Undo our own claim, leaving any newer claim alone."""
    if previous is None:
        stmt = delete(ScanCooldown).where(
            ScanCooldown.actor_id == actor_id, ScanCooldown.last_scan_at == claimed_at
        )
    else:
        stmt = (
            update(ScanCooldown)
            .where(ScanCooldown.actor_id == actor_id, ScanCooldown.last_scan_at == claimed_at)
            .values(last_scan_at=previous)
        )
    await db.execute(stmt.execution_options(synchronize_session=False))
    await db.commit()


# ── Scan ───────────────────────────────────────────────
def build_pipeline_stats(leads: list[Lead], now: Optional[datetime] = None, stale_days: int = 14) -> dict:
    """Aggregate view of a company's active pipeline for the suggestion generator."""
    now = now or utcnow()
    active = [lead for lead in leads if is_active(lead.stage)]

    by_stage: dict[str, dict] = {}
    total_value = weighted_value = 0.0
    stale, breached = [], 0
    for lead in active:
        value = lead.expected_value or 0.0
        bucket = by_stage.setdefault(lead.stage, {"count": 0, "value": 0.0})
        bucket["count"] += 1
        bucket["value"] += value
        total_value += value
        weighted_value += value * (lead.probability or 0) / 100
        if lead.sla_breached:
            breached += 1
        age = days_since(lead.updated_at, now)
        if age >= stale_days:
            stale.append((age, lead))

    stale.sort(key=lambda item: item[0], reverse=True)
    top = sorted(active, key=lambda lead: lead.expected_value or 0.0, reverse=True)[:25]
    return {
        "active_count": len(active),
        "total_value": round(total_value, 2),
        "weighted_value": round(weighted_value, 2),
        "by_stage": by_stage,
        "stale_count": len(stale),
        "sla_breached_count": breached,
        "stale_leads": [
            {"id": lead.id, "title": lead.title, "stage": lead.stage, "days_stale": int(age)}
            for age, lead in stale[:10]
        ],
        "leads": [
            {
                "id": lead.id,
                "title": lead.title,
                "stage": lead.stage,
                "expected_value": lead.expected_value or 0.0,
                "probability": lead.probability or 0,
                "computed_score": lead.computed_score or 0,
                "days_since_update": int(days_since(lead.updated_at, now)),
                "sla_breached": bool(lead.sla_breached),
            }
            for lead in top
        ],
    }


async def scan(
    db: AsyncSession,
    actor_id: str,
    company_id: str,
    generator,
    now: Optional[datetime] = None,
) -> ScanResult:
    """Ask the generator for proposals and store the valid ones as ``pending``.

    Inside the actor's cooldown the generator is not called and a ``skipped``
    result carries the remaining wait.
    """
    now = now or utcnow()
    cfg = await load_engine_settings(db, company_id)

    claimed, previous, retry_after = await claim_scan_slot(db, actor_id, cfg.scan_cooldown_minutes, now)
    if not claimed:
        logger.info(f"AI scan for actor {actor_id} skipped: cooldown, retry in {retry_after}s")
        return ScanResult(status="skipped", retry_after_seconds=retry_after)

    result = await db.execute(select(Lead).where(Lead.company_id == company_id))
    leads = list(result.scalars().all())
    lead_ids = {lead.id for lead in leads}
    stats = build_pipeline_stats(leads, now, cfg.stale_days)

    try:
        raw_proposals = await generator.propose(stats)
    except Exception as e:
        await release_scan_slot(db, actor_id, now, previous)
        logger.error(f"AI scan for actor {actor_id} failed: {e}")
        if isinstance(e, SuggestionGeneratorError):
            raise
        raise SuggestionGeneratorError(f"Suggestion generator failed: {e}") from e

    if not isinstance(raw_proposals, list):
        raw_proposals = []

    rows, rejected = [], 0
    for raw in raw_proposals:
        proposal = parse_proposal(raw)
        if proposal is None or proposal.lead_id not in lead_ids:
            rejected += 1
            continue
        rows.append(AIAction(
            company_id=company_id,
            lead_id=proposal.lead_id,
            action_type=proposal.action_type,
            priority=proposal.priority,
            reasoning=proposal.reasoning,
            suggested_data=json.dumps(proposal.suggested_data),
            created_by=actor_id,
        ))

    if rows:
        db.add_all(rows)
        await db.commit()

    logger.info(f"AI scan for actor {actor_id}: {len(rows)} proposals stored, {rejected} rejected")
    return ScanResult(
        status="completed",
        inserted=len(rows),
        rejected=rejected,
        action_ids=[row.id for row in rows],
    )
