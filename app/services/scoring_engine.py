"""Lead scoring engine. Applies weighted field rules and keeps an audit trail of score changes."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import Lead, utcnow
from app.models.rules import ScoreHistory, ScoringRule
from app.services.condition_matcher import matches, read_field

logger = logging.getLogger(__name__)

MAX_REPORTED_ERRORS = 10


@dataclass
class ScoreBreakdown:
    """Score for one lead plus the rules that produced it."""
    score: int
    factors: dict[str, int] = field(default_factory=dict)


@dataclass
class RescoreSummary:
    """Partial-success summary of a batch recompute."""
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0  # lost a compare-and-set race to a concurrent run
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def record_failure(self, lead_id: str, exc: Exception) -> None:
        self.failed += 1
        if len(self.errors) < MAX_REPORTED_ERRORS:
            self.errors.append(f"{lead_id}: {exc}")

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
        }


# ── Pure scoring ───────────────────────────────────────
def compute_score(lead, rules: list[ScoringRule]) -> ScoreBreakdown:
    """Sum points of every enabled rule whose condition matches ``lead``."""
    score = 0
    factors: dict[str, int] = {}
    for rule in rules:
        if not rule.enabled:
            continue
        value = read_field(lead, rule.field_name)
        if matches(value, rule.operator, rule.field_value or ""):
            points = rule.score_points or 0
            score += points
            factors[rule.name] = factors.get(rule.name, 0) + points
    return ScoreBreakdown(score=score, factors=factors)


# ── Persistence ────────────────────────────────────────
async def load_enabled_rules(db: AsyncSession, company_id: str) -> list[ScoringRule]:
    result = await db.execute(
        select(ScoringRule)
        .where(ScoringRule.company_id == company_id, ScoringRule.enabled.is_(True))
        .order_by(ScoringRule.created_at.asc())
    )
    return list(result.scalars().all())


async def write_score(
    db: AsyncSession,
    lead: Lead,
    breakdown: ScoreBreakdown,
) -> bool:
    """Persist a changed score and its history row.

    The update is conditional on the score we read, so a concurrent run that
    already wrote the same change makes this one a no-op. ``updated_at`` is
    pinned: rescoring is bookkeeping, not a business mutation.
    """
    previous = lead.computed_score
    guard = Lead.computed_score.is_(None) if previous is None else Lead.computed_score == previous
    now = utcnow()

    result = await db.execute(
        update(Lead)
        .where(Lead.id == lead.id, guard)
        .values(
            computed_score=breakdown.score,
            score_updated_at=now,
            updated_at=Lead.updated_at,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        return False

    db.add(ScoreHistory(
        lead_id=lead.id,
        company_id=lead.company_id,
        score=breakdown.score,
        score_factors=json.dumps(breakdown.factors),
        win_probability=lead.win_prob_score,
        priority_score=lead.priority_score,
        created_at=now,
    ))
    await db.commit()
    return True


async def recompute_scores(
    session_factory,
    company_id: str,
    concurrency: Optional[int] = None,
) -> RescoreSummary:
    """Rescore every lead of a company.

    Leads are independent, so writes fan out over a bounded pool of sessions.
    Unchanged leads are never written; one lead's failure does not stop the rest.
    """
    concurrency = concurrency or get_settings().rescore_concurrency

    async with session_factory() as db:
        rules = await load_enabled_rules(db, company_id)
        result = await db.execute(select(Lead).where(Lead.company_id == company_id))
        leads = list(result.scalars().all())

    summary = RescoreSummary(total=len(leads))
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _rescore(lead: Lead) -> None:
        breakdown = compute_score(lead, rules)
        if breakdown.score == lead.computed_score:
            summary.unchanged += 1
            return
        async with semaphore:
            try:
                async with session_factory() as db:
                    written = await write_score(db, lead, breakdown)
            except Exception as exc:
                logger.error(f"Score write failed for lead {lead.id} (company {company_id}): {exc}")
                summary.record_failure(lead.id, exc)
                return
        if written:
            summary.updated += 1
        else:
            summary.skipped += 1

    await asyncio.gather(*(_rescore(lead) for lead in leads))

    logger.info(
        f"Rescored company {company_id}: total={summary.total} updated={summary.updated} "
        f"unchanged={summary.unchanged} skipped={summary.skipped} failed={summary.failed}"
    )
    return summary


async def get_score_history(db: AsyncSession, lead_id: str, limit: int = 50) -> list[ScoreHistory]:
    result = await db.execute(
        select(ScoreHistory)
        .where(ScoreHistory.lead_id == lead_id)
        .order_by(ScoreHistory.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
