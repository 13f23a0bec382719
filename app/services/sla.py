"""SLA deadlines: per-stage windows, status classification and breach marking."""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import insert_ignore
from app.models import HumanTask, Lead, as_utc, lead_snapshot, utcnow

logger = logging.getLogger(__name__)

TERMINAL_STAGES = frozenset({
    "won",
    "lost",
    "loss",
    "merged",
    "archived_orphan",
    "no_rebars_out_of_scope",
    "dreamers",
    "migration_others",
    "delivered_pickup_done",
})

# stage -> (SLA hours, escalation target)
STAGE_SLA: dict[str, tuple[int, str]] = {
    "new": (24, "Sales Mgr"),
    "hot_enquiries": (24, "Sales Mgr"),
    "telephonic_enquiries": (24, "Sales Mgr"),
    "qualified": (24, "Sales Mgr"),
    "estimation_ben": (48, "Sales Mgr"),
    "estimation_karthick": (48, "Sales Mgr"),
    "qc_ben": (24, "Ops Mgr"),
    "shop_drawing": (72, "Ops Mgr"),
    "shop_drawing_approval": (120, "Sales Mgr"),
    "quotation_priority": (48, "Sales Mgr"),
    "quotation_bids": (48, "Sales Mgr"),
    "rfi": (48, "Sales Mgr"),
    "addendums": (48, "Sales Mgr"),
}
DEFAULT_SLA: tuple[int, str] = (24, "Ops Mgr")


class SlaStatus(str, Enum):
    ON_TRACK = "on_track"
    WARNING = "warning"
    BREACHED = "breached"


def is_active(stage: Optional[str]) -> bool:
    return stage not in TERMINAL_STAGES


def sla_window(stage: str) -> tuple[int, str]:
    return STAGE_SLA.get(stage, DEFAULT_SLA)


def compute_deadline(stage: str, entered_at: datetime) -> Optional[datetime]:
    """Deadline for a lead that entered ``stage`` at ``entered_at``; terminal stages have none."""
    if not is_active(stage):
        return None
    hours, _ = sla_window(stage)
    return as_utc(entered_at) + timedelta(hours=hours)


def apply_stage_change(lead: Lead, stage: str, now: Optional[datetime] = None) -> None:
    """Move ``lead`` into ``stage`` and restart its SLA clock."""
    now = now or utcnow()
    lead.stage = stage
    lead.stage_entered_at = now
    lead.sla_deadline = compute_deadline(stage, now)
    lead.sla_breached = False


def classify_sla(
    deadline: Optional[datetime],
    now: Optional[datetime] = None,
    breached: bool = False,
    warning_hours: Optional[float] = None,
) -> Optional[SlaStatus]:
    """Classify a deadline; ``None`` when the lead has no SLA at all."""
    if breached:
        return SlaStatus.BREACHED
    if deadline is None:
        return None
    now = now or utcnow()
    if warning_hours is None:
        warning_hours = get_settings().sla_warning_hours
    remaining = as_utc(deadline) - now
    if remaining < timedelta(0):
        return SlaStatus.BREACHED
    if remaining <= timedelta(hours=warning_hours):
        return SlaStatus.WARNING
    return SlaStatus.ON_TRACK


_STATUS_ORDER = {SlaStatus.BREACHED: 0, SlaStatus.WARNING: 1, SlaStatus.ON_TRACK: 2}


def sla_tracker(leads: list[Lead], now: Optional[datetime] = None) -> list[dict]:
    """Active leads with a deadline: breached first, then warning, then soonest due."""
    now = now or utcnow()
    items = []
    for lead in leads:
        if lead.sla_deadline is None or not is_active(lead.stage):
            continue
        deadline = as_utc(lead.sla_deadline)
        status = classify_sla(deadline, now, bool(lead.sla_breached))
        items.append({
            "lead_id": lead.id,
            "title": lead.title,
            "stage": lead.stage,
            "deadline": deadline,
            "hours_left": round((deadline - now).total_seconds() / 3600, 1),
            "status": status.value,
        })
    items.sort(key=lambda i: (_STATUS_ORDER[SlaStatus(i["status"])], i["hours_left"]))
    return items


async def mark_sla_breaches(
    db: AsyncSession,
    company_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[tuple[dict, dict]]:
    """Flag active leads whose deadline has passed.

    Each breach escalates the lead to the stage's target and opens one human
    task keyed ``sla:lead:{id}:{stage}``. Returns ``(previous, current)``
    snapshots of every lead that was newly flagged.
    """
    now = now or utcnow()
    stmt = select(Lead).where(
        Lead.sla_deadline.is_not(None),
        Lead.sla_deadline < now,
        Lead.sla_breached.is_(False),
        Lead.stage.not_in(TERMINAL_STAGES),
    )
    if company_id:
        stmt = stmt.where(Lead.company_id == company_id)
    lead_ids = [lead.id for lead in (await db.execute(stmt)).scalars().all()]

    flagged = []
    for lead_id in lead_ids:
        try:
            lead = await db.get(Lead, lead_id, populate_existing=True)
            stage = lead.stage
            previous = lead_snapshot(lead)
            hours, target = sla_window(stage)
            lead.sla_breached = True
            lead.escalated_to = target
            await db.flush()
            await db.execute(insert_ignore(
                HumanTask,
                "dedupe_key",
                company_id=lead.company_id,
                dedupe_key=f"sla:lead:{lead_id}:{stage}",
                title=f"SLA Breach: {lead.title or 'Lead'} stuck in {stage.replace('_', ' ')}",
                description=(
                    f'This lead exceeded the {hours}h SLA for stage "{stage.replace("_", " ")}". '
                    f"Escalated to {target}."
                ),
                severity="critical",
                category="sla_breach",
                entity_type="lead",
                entity_id=lead_id,
            ))
            await db.commit()
            await db.refresh(lead)
            flagged.append((previous, lead_snapshot(lead)))
        except Exception as e:
            await db.rollback()
            logger.error(f"SLA breach marking failed for lead {lead_id}: {e}")
    if flagged:
        logger.info(f"Marked {len(flagged)} SLA breaches")
    return flagged
