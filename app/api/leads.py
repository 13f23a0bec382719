"""Lead CRUD. Every mutation fires the matching lifecycle event."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import Lead, lead_snapshot
from app.schemas import LeadCreate, LeadOut, LeadUpdate, ScoreHistoryOut
from app.services.automation_engine import RuleEngine
from app.services.scoring_engine import get_score_history
from app.services.sla import apply_stage_change
from app.services.trigger_evaluator import TriggerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/leads", tags=["leads"])


async def _get_lead(db: AsyncSession, lead_id: str) -> Lead:
    lead = await db.get(Lead, lead_id, populate_existing=True)
    if not lead:
        raise HTTPException(404, "Lead not found")
    return lead


@router.post("/", response_model=LeadOut, status_code=201)
async def create_lead(body: LeadCreate, db: AsyncSession = Depends(get_db)):
    data = body.model_dump(exclude={"tags", "stage"})
    lead = Lead(**data, tags=json.dumps(sorted(set(body.tags))))
    apply_stage_change(lead, body.stage)
    db.add(lead)
    await db.commit()
    await db.refresh(lead)

    await RuleEngine(db).on_record_event(TriggerEvent.NEW_LEAD.value, lead_snapshot(lead))
    return LeadOut.from_model(await _get_lead(db, lead.id))


@router.get("/", response_model=list[LeadOut])
async def list_leads(
    company_id: str,
    stage: Optional[str] = None,
    limit: int = Query(50, le=500),
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(Lead).where(Lead.company_id == company_id).order_by(Lead.created_at.desc())
    if stage:
        query = query.where(Lead.stage == stage)
    result = await db.execute(query.limit(limit).offset(offset))
    return [LeadOut.from_model(lead) for lead in result.scalars().all()]


@router.get("/{lead_id}", response_model=LeadOut)
async def get_lead(lead_id: str, db: AsyncSession = Depends(get_db)):
    return LeadOut.from_model(await _get_lead(db, lead_id))


@router.patch("/{lead_id}", response_model=LeadOut)
async def update_lead(lead_id: str, body: LeadUpdate, db: AsyncSession = Depends(get_db)):
    lead = await _get_lead(db, lead_id)
    previous = lead_snapshot(lead)

    changes = body.model_dump(exclude_unset=True)
    stage = changes.pop("stage", None)
    tags = changes.pop("tags", None)
    for field, value in changes.items():
        if value is None and field == "title":
            continue
        setattr(lead, field, value)
    if tags is not None:
        lead.tags = json.dumps(sorted(set(tags)))
    if stage is not None and stage != lead.stage:
        apply_stage_change(lead, stage)

    await db.commit()
    await db.refresh(lead)
    current = lead_snapshot(lead)

    engine = RuleEngine(db)
    if current["stage"] != previous["stage"]:
        await engine.on_record_event(TriggerEvent.STAGE_CHANGE.value, current, previous)
    if (current["expected_value"] or 0) != (previous["expected_value"] or 0):
        await engine.on_record_event(TriggerEvent.VALUE_CHANGE.value, current, previous)

    return LeadOut.from_model(await _get_lead(db, lead_id))


@router.get("/{lead_id}/score-history", response_model=list[ScoreHistoryOut])
async def score_history(
    lead_id: str,
    limit: int = Query(50, le=200),
    db: AsyncSession = Depends(get_db),
):
    await _get_lead(db, lead_id)
    return [ScoreHistoryOut.from_model(entry) for entry in await get_score_history(db, lead_id, limit)]
