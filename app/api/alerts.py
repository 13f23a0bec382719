"""Pipeline alerts and SLA tracking."""

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models import Lead
from app.schemas import AlertOut, SlaItemOut
from app.services.automation_engine import RuleEngine
from app.services.company_settings import load_engine_settings
from app.services.pipeline_alerts import compute_alerts
from app.services.sla import sla_tracker

router = APIRouter(tags=["alerts"])


async def _company_leads(db: AsyncSession, company_id: str) -> list[Lead]:
    result = await db.execute(select(Lead).where(Lead.company_id == company_id))
    return list(result.scalars().all())


@router.get("/alerts", response_model=list[AlertOut])
async def list_alerts(company_id: str, db: AsyncSession = Depends(get_db)):
    config = await load_engine_settings(db, company_id)
    alerts = compute_alerts(await _company_leads(db, company_id), config=config)
    return [a.to_dict() for a in alerts]


@router.get("/sla", response_model=list[SlaItemOut])
async def list_sla(company_id: str, db: AsyncSession = Depends(get_db)):
    return sla_tracker(await _company_leads(db, company_id))


@router.post("/sla/sweep")
async def sweep_sla(company_id: str, background: bool = False, db: AsyncSession = Depends(get_db)):
    if background:
        from app.tasks.pipeline_tasks import sla_sweep_task

        return {"status": "queued", "task_id": sla_sweep_task.delay(company_id).id}
    return await RuleEngine(db).sweep_sla(company_id)


@router.post("/automation/stale-sweep")
async def sweep_stale(company_id: str, background: bool = False, db: AsyncSession = Depends(get_db)):
    if background:
        from app.tasks.pipeline_tasks import stale_sweep_task

        return {"status": "queued", "task_id": stale_sweep_task.delay(company_id).id}
    return await RuleEngine(db).sweep_stale(company_id)
