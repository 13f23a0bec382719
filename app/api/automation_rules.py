"""Automation rules — CRUD, manual event firing, execution stats and logs."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.exceptions import RuleValidationError
from app.models import Lead, lead_snapshot
from app.models.rules import AutomationLog, AutomationRule
from app.schemas import (
    AutomationRuleCreate,
    AutomationRuleOut,
    AutomationRuleUpdate,
    FireEventRequest,
    validate_rule_definition,
)
from app.services.automation_engine import RuleEngine

router = APIRouter(prefix="/automation-rules", tags=["automation"])


async def _get_rule(db: AsyncSession, rule_id: str) -> AutomationRule:
    rule = await db.get(AutomationRule, rule_id, populate_existing=True)
    if not rule:
        raise HTTPException(404, "Rule not found")
    return rule


@router.post("/", response_model=AutomationRuleOut, status_code=201)
async def create_rule(body: AutomationRuleCreate, db: AsyncSession = Depends(get_db)):
    rule = AutomationRule(
        company_id=body.company_id,
        name=body.name,
        description=body.description,
        enabled=body.enabled,
        priority=body.priority,
        trigger_event=body.trigger_event,
        trigger_conditions=json.dumps(body.trigger_conditions),
        action_type=body.action_type,
        action_params=json.dumps(body.action_params),
    )
    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return AutomationRuleOut.from_model(rule)


@router.get("/", response_model=list[AutomationRuleOut])
async def list_rules(
    company_id: str,
    enabled: Optional[bool] = None,
    trigger_event: Optional[str] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(AutomationRule).where(AutomationRule.company_id == company_id)
    if enabled is not None:
        query = query.where(AutomationRule.enabled == enabled)
    if trigger_event:
        query = query.where(AutomationRule.trigger_event == trigger_event)
    query = query.order_by(AutomationRule.priority.asc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return [AutomationRuleOut.from_model(r) for r in result.scalars().all()]


@router.get("/{rule_id}", response_model=AutomationRuleOut)
async def get_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    return AutomationRuleOut.from_model(await _get_rule(db, rule_id))


@router.patch("/{rule_id}", response_model=AutomationRuleOut)
async def update_rule(rule_id: str, body: AutomationRuleUpdate, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    changes = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}

    merged = AutomationRuleOut.from_model(rule).model_dump()
    merged.update(changes)
    try:
        validate_rule_definition(
            merged["trigger_event"], merged["trigger_conditions"], merged["action_type"], merged["action_params"]
        )
    except ValueError as e:
        raise RuleValidationError(str(e))

    for field, value in changes.items():
        if field in ("trigger_conditions", "action_params"):
            setattr(rule, field, json.dumps(value))
        else:
            setattr(rule, field, value)

    await db.commit()
    await db.refresh(rule)
    return AutomationRuleOut.from_model(rule)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(rule_id: str, db: AsyncSession = Depends(get_db)):
    rule = await _get_rule(db, rule_id)
    await db.delete(rule)
    await db.commit()


@router.post("/fire")
async def fire_event(body: FireEventRequest, db: AsyncSession = Depends(get_db)):
    lead = await db.get(Lead, body.lead_id)
    if not lead:
        raise HTTPException(404, "Lead not found")
    result = await RuleEngine(db).on_record_event(body.event, lead_snapshot(lead), body.previous)
    return result.to_dict()


@router.get("/{rule_id}/stats")
async def get_rule_stats(rule_id: str, db: AsyncSession = Depends(get_db)):
    await _get_rule(db, rule_id)
    return await RuleEngine(db).get_rule_stats(rule_id)


@router.get("/{rule_id}/logs")
async def get_rule_logs(
    rule_id: str,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(AutomationLog).where(
            AutomationLog.rule_id == rule_id
        ).order_by(AutomationLog.created_at.desc()).limit(limit).offset(offset)
    )
    return [
        {
            "id": log.id,
            "lead_id": log.lead_id,
            "trigger_event": log.trigger_event,
            "action_type": log.action_type,
            "status": log.status,
            "error_message": log.error_message or "",
            "duration_ms": log.duration_ms,
            "created_at": log.created_at.isoformat() if log.created_at else None,
        }
        for log in result.scalars().all()
    ]
