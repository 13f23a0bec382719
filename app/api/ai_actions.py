"""AI suggested actions: scan, review and execute."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import async_session, get_db
from app.models.ai_action import AIAction
from app.schemas import AIActionOut, BulkReviewRequest, ReviewRequest, ScanRequest
from app.services import ai_workflow
from app.services.suggestion_generator import HttpSuggestionGenerator

router = APIRouter(prefix="/ai-actions", tags=["ai-actions"])


def get_suggestion_generator():
    return HttpSuggestionGenerator()


def get_action_capability():
    return ai_workflow.DefaultActionCapability(async_session)


@router.get("/", response_model=list[AIActionOut])
async def list_actions(
    company_id: str,
    status: Optional[str] = None,
    lead_id: Optional[str] = None,
    limit: int = Query(50, le=200),
    offset: int = 0,
    db: AsyncSession = Depends(get_db),
):
    query = select(AIAction).where(AIAction.company_id == company_id)
    if status:
        query = query.where(AIAction.status == status)
    if lead_id:
        query = query.where(AIAction.lead_id == lead_id)
    query = query.order_by(AIAction.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return [AIActionOut.from_model(a) for a in result.scalars().all()]


@router.post("/scan")
async def scan(
    body: ScanRequest,
    db: AsyncSession = Depends(get_db),
    generator=Depends(get_suggestion_generator),
):
    result = await ai_workflow.scan(db, body.actor_id, body.company_id, generator)
    return result.to_dict()


@router.post("/approve-all")
async def approve_all(body: BulkReviewRequest, db: AsyncSession = Depends(get_db)):
    result = await ai_workflow.approve_all(db, body.company_id, body.actor_id, body.action_ids)
    return result.to_dict()


@router.post("/dismiss-all")
async def dismiss_all(body: BulkReviewRequest, db: AsyncSession = Depends(get_db)):
    result = await ai_workflow.dismiss_all(db, body.company_id, body.actor_id, body.action_ids)
    return result.to_dict()


@router.get("/{action_id}", response_model=AIActionOut)
async def get_action(action_id: str, db: AsyncSession = Depends(get_db)):
    return AIActionOut.from_model(await ai_workflow.get_action(db, action_id))


@router.post("/{action_id}/approve", response_model=AIActionOut)
async def approve(action_id: str, body: Optional[ReviewRequest] = None, db: AsyncSession = Depends(get_db)):
    action = await ai_workflow.approve(db, action_id, body.actor_id if body else None)
    return AIActionOut.from_model(action)


@router.post("/{action_id}/dismiss", response_model=AIActionOut)
async def dismiss(action_id: str, body: Optional[ReviewRequest] = None, db: AsyncSession = Depends(get_db)):
    action = await ai_workflow.dismiss(db, action_id, body.actor_id if body else None)
    return AIActionOut.from_model(action)


@router.post("/{action_id}/execute", response_model=AIActionOut)
async def execute(
    action_id: str,
    db: AsyncSession = Depends(get_db),
    capability=Depends(get_action_capability),
):
    return AIActionOut.from_model(await ai_workflow.execute(db, action_id, capability))
