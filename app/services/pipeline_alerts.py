"""Pipeline alerts, derived fresh from the current lead set and never stored."""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from app.models import as_utc, utcnow
from app.services.company_settings import EngineSettings, default_engine_settings
from app.services.sla import is_active

SEVERITY_ORDER = {"critical": 0, "warning": 1, "info": 2}

ADVANCED_STAGES = frozenset({
    "qualified",
    "quotation_priority",
    "quotation_bids",
    "shop_drawing",
    "fabrication_in_shop",
})


@dataclass
class Alert:
    id: str
    severity: str  # critical|warning|info
    type: str
    title: str
    description: str
    lead_id: Optional[str] = None
    lead_title: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def calendar_days_since(timestamp: Optional[datetime], now: datetime) -> int:
    if timestamp is None:
        return 0
    return (now.date() - as_utc(timestamp).date()).days


def _names(leads, limit: int = 3) -> str:
    return ", ".join(lead.title for lead in leads[:limit])


def _win_probability(lead) -> float:
    if lead.win_prob_score is not None:
        return lead.win_prob_score
    return float(lead.probability or 0)


def compute_alerts(leads, now: Optional[datetime] = None, config: Optional[EngineSettings] = None) -> list[Alert]:
    """Rank stale, breached, at-risk, overdue and data-quality conditions.

    Pure: same leads and ``now`` always give the same list.
    """
    now = now or utcnow()
    config = config or default_engine_settings()
    active = [lead for lead in leads if is_active(lead.stage)]
    alerts: list[Alert] = []

    stale = [lead for lead in active if calendar_days_since(lead.updated_at, now) >= config.stale_days]
    if len(stale) > config.stale_bulk_threshold:
        alerts.append(Alert(
            id="stale-bulk",
            severity="critical",
            type="stale_leads",
            title=f"{len(stale)} stale leads detected",
            description=(
                f"{len(stale)} active leads haven't been updated in {config.stale_days}+ days. "
                f"Top: {_names(stale)}"
            ),
        ))
    else:
        for lead in stale:
            days = calendar_days_since(lead.updated_at, now)
            alerts.append(Alert(
                id=f"stale-{lead.id}",
                severity="critical" if days >= config.stale_critical_days else "warning",
                type="stale_lead",
                title=f"Stale: {lead.title}",
                description=f"No update for {days} days. Stage: {lead.stage.replace('_', ' ')}",
                lead_id=lead.id,
                lead_title=lead.title,
            ))

    breached = [lead for lead in active if lead.sla_breached]
    if breached:
        alerts.append(Alert(
            id="sla-breach",
            severity="critical",
            type="sla_breach",
            title=f"{len(breached)} SLA breach{'es' if len(breached) > 1 else ''}",
            description=f"Leads exceeding stage SLA: {_names(breached)}",
        ))

    for lead in active:
        value = lead.expected_value or 0.0
        win_prob = _win_probability(lead)
        if value > config.high_value_threshold and 0 < win_prob < config.low_win_probability:
            alerts.append(Alert(
                id=f"atrisk-{lead.id}",
                severity="warning",
                type="at_risk",
                title=f"At-risk: {lead.title}",
                description=f"${value:,.0f} deal with only {round(win_prob)}% win probability",
                lead_id=lead.id,
                lead_title=lead.title,
            ))

    overdue = [
        lead for lead in active
        if lead.expected_close_date is not None and as_utc(lead.expected_close_date) < now
    ]
    if overdue:
        alerts.append(Alert(
            id="overdue-close",
            severity="warning",
            type="overdue_close",
            title=f"{len(overdue)} leads past expected close",
            description=f"Leads with overdue close dates: {_names(overdue)}",
        ))

    no_value = [lead for lead in active if lead.stage in ADVANCED_STAGES and not (lead.expected_value or 0)]
    if no_value:
        alerts.append(Alert(
            id="no-value",
            severity="info",
            type="data_quality",
            title=f"{len(no_value)} advanced leads missing revenue",
            description="Leads in advanced stages with $0 expected value impact forecast accuracy",
        ))

    # sorted() is stable, so discovery order holds within a severity
    return sorted(alerts, key=lambda a: SEVERITY_ORDER[a.severity])
