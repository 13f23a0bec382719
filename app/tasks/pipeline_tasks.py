"""Pipeline maintenance tasks: rescoring and lifecycle sweeps."""

import asyncio
import logging

from app.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def rescore_company_task(self, company_id: str):
    """Recompute every lead score of a company."""
    return asyncio.run(_rescore_company(company_id))


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def sla_sweep_task(self, company_id: str):
    """Flag SLA breaches and fire sla_breach rules."""
    return asyncio.run(_sla_sweep(company_id))


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def stale_sweep_task(self, company_id: str):
    """Fire stale_lead rules for every active lead."""
    return asyncio.run(_stale_sweep(company_id))


async def _rescore_company(company_id: str) -> dict:
    from app.database import async_session
    from app.services.scoring_engine import recompute_scores

    summary = await recompute_scores(async_session, company_id)
    return summary.to_dict()


async def _sla_sweep(company_id: str) -> dict:
    from app.database import async_session
    from app.services.automation_engine import RuleEngine

    async with async_session() as db:
        result = await RuleEngine(db).sweep_sla(company_id)
    logger.info(f"SLA sweep for company {company_id}: {result}")
    return result


async def _stale_sweep(company_id: str) -> dict:
    from app.database import async_session
    from app.services.automation_engine import RuleEngine

    async with async_session() as db:
        result = await RuleEngine(db).sweep_stale(company_id)
    logger.info(f"Stale sweep for company {company_id}: {result}")
    return result
