"""Lead scoring API."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session, get_db
from app.models import Lead
from app.models.rules import ScoringRule
from app.schemas import RecomputeRequest, ScoringRuleCreate, ScoringRuleOut, ScoringRuleUpdate
from app.services.scoring_engine import compute_score, load_enabled_rules, recompute_scores

router = APIRouter(tags=["scoring"])


# ── Scoring Rules CRUD ─────────────────────────────────
@router.post("/scoring/rules", response_model=ScoringRuleOut, status_code=201)
async def create_scoring_rule(body: ScoringRuleCreate, db: AsyncSession = Depends(get_db)):
    rule = ScoringRule(**body.model_dump())
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return rule


@router.get("/scoring/rules", response_model=list[ScoringRuleOut])
async def list_scoring_rules(
    company_id: str,
    enabled_only: bool = False,
    db: AsyncSession = Depends(get_db),
):
    stmt = select(ScoringRule).where(ScoringRule.company_id == company_id)
    if enabled_only:
        stmt = stmt.where(ScoringRule.enabled.is_(True))
    result = await db.execute(stmt.order_by(ScoringRule.created_at.desc()))
    return list(result.scalars().all())


async def _get_rule(db: AsyncSession, rule_id: str) -> ScoringRule:
    rule = await db.get(ScoringRule, rule_id)
    if not rule:
        raise HTTPException(404, "Scoring rule not found")
    return rule


@router.get("/scoring/rules/{rule_id}", response_model=ScoringRuleOut)
async def get_scoring_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    return await _get_rule(db, rule_id)


@router.patch("/scoring/rules/{rule_id}", response_model=ScoringRuleOut)
async def update_scoring_rule(rule_id: str, body: ScoringRuleUpdate, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    for field, value in body.model_dump(exclude_unset=True).items():
        if value is None and field in ("name", "field_name", "operator", "enabled", "score_points"):
            continue
        setattr(rule, field, value)
    await db.commit()
    await db.refresh(rule)
    return rule


@router.delete("/scoring/rules/{rule_id}", status_code=204)
async def delete_scoring_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    await db.delete(rule)
    await db.commit()


# ── Recompute & preview ────────────────────────────────
@router.post("/scoring/recompute")
async def recompute(body: RecomputeRequest):
    if body.background:
        from app.tasks.pipeline_tasks import rescore_company_task

        task = rescore_company_task.delay(body.company_id)
        return {"status": "queued", "task_id": task.id}
    summary = await recompute_scores(async_session, body.company_id, body.concurrency)
    return summary.to_dict()


@router.get("/scoring/preview/{lead_id}")
async def preview_score(lead_id: str, db: AsyncSession = Depends(get_db)):
    lead = await db.get(Lead, lead_id)
    if not lead:
        raise HTTPException(404, "Lead not found")
    breakdown = compute_score(lead, await load_enabled_rules(db, lead.company_id))
    return {
        "lead_id": lead.id,
        "stored_score": lead.computed_score or 0,
        "score": breakdown.score,
        "factors": breakdown.factors,
        "changed": breakdown.score != (lead.computed_score or 0),
    }
