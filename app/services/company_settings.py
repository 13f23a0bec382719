"""Effective engine thresholds for a company: app settings overlaid with company overrides."""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.models import CompanySettings


@dataclass(frozen=True)
class EngineSettings:
    scan_cooldown_minutes: int
    stale_days: int
    stale_bulk_threshold: int
    stale_critical_days: int
    high_value_threshold: float
    low_win_probability: float
    sla_warning_hours: float


def default_engine_settings() -> EngineSettings:
    s = get_settings()
    return EngineSettings(
        scan_cooldown_minutes=s.scan_cooldown_minutes,
        stale_days=s.stale_days,
        stale_bulk_threshold=s.stale_bulk_threshold,
        stale_critical_days=s.stale_critical_days,
        high_value_threshold=s.high_value_threshold,
        low_win_probability=s.low_win_probability,
        sla_warning_hours=s.sla_warning_hours,
    )


async def load_engine_settings(db: AsyncSession, company_id: str) -> EngineSettings:
    defaults = default_engine_settings()
    row = await db.get(CompanySettings, company_id)
    if row is None:
        return defaults

    def pick(name):
        value = getattr(row, name)
        return getattr(defaults, name) if value is None else value

    return EngineSettings(
        scan_cooldown_minutes=pick("scan_cooldown_minutes"),
        stale_days=pick("stale_days"),
        stale_bulk_threshold=pick("stale_bulk_threshold"),
        stale_critical_days=defaults.stale_critical_days,
        high_value_threshold=pick("high_value_threshold"),
        low_win_probability=defaults.low_win_probability,
        sla_warning_hours=defaults.sla_warning_hours,
    )
