"""Tests for pipeline alert derivation."""

from datetime import datetime, timedelta, timezone

from app.models import Lead
from app.services.company_settings import EngineSettings
from app.services.pipeline_alerts import calendar_days_since, compute_alerts

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

CONFIG = EngineSettings(
    scan_cooldown_minutes=30,
    stale_days=14,
    stale_bulk_threshold=10,
    stale_critical_days=30,
    high_value_threshold=10000.0,
    low_win_probability=30.0,
    sla_warning_hours=2.0,
)


def _lead(id, days_old=0, stage="new", **kwargs):
    return Lead(
        id=id,
        company_id="c1",
        title=kwargs.pop("title", f"Lead {id}"),
        stage=stage,
        expected_value=kwargs.pop("expected_value", 5000.0),
        probability=kwargs.pop("probability", 50),
        updated_at=NOW - timedelta(days=days_old),
        **kwargs,
    )


def _alerts(leads):
    return compute_alerts(leads, NOW, CONFIG)


class TestStale:
    def test_recent_lead_raises_nothing(self):
        assert _alerts([_lead("a", days_old=10)]) == []

    def test_fifteen_days_is_warning(self):
        alerts = _alerts([_lead("a", days_old=15)])
        assert len(alerts) == 1
        assert alerts[0].id == "stale-a"
        assert alerts[0].severity == "warning"
        assert alerts[0].lead_id == "a"

    def test_thirty_one_days_is_critical(self):
        alerts = _alerts([_lead("a", days_old=31)])
        assert alerts[0].severity == "critical"
        assert "31 days" in alerts[0].description

    def test_closed_leads_ignored(self):
        assert _alerts([_lead("a", days_old=60, stage="won"), _lead("b", days_old=60, stage="lost")]) == []

    def test_more_than_threshold_collapses_to_one_alert(self):
        leads = [_lead(str(i), days_old=20) for i in range(11)]
        alerts = _alerts(leads)
        assert len(alerts) == 1
        assert alerts[0].id == "stale-bulk"
        assert alerts[0].severity == "critical"
        assert alerts[0].title == "11 stale leads detected"

    def test_exactly_threshold_stays_per_lead(self):
        leads = [_lead(str(i), days_old=20) for i in range(10)]
        alerts = _alerts(leads)
        assert len(alerts) == 10
        assert {a.severity for a in alerts} == {"warning"}


class TestOtherAlerts:
    def test_sla_breaches_aggregate(self):
        alerts = _alerts([_lead("a", sla_breached=True), _lead("b", sla_breached=True)])
        assert [a.id for a in alerts] == ["sla-breach"]
        assert alerts[0].title == "2 SLA breaches"

    def test_single_breach_title(self):
        assert _alerts([_lead("a", sla_breached=True)])[0].title == "1 SLA breach"

    def test_high_value_low_win_probability_at_risk(self):
        alerts = _alerts([_lead("a", expected_value=50000, probability=20)])
        assert [a.id for a in alerts] == ["atrisk-a"]
        assert alerts[0].description == "$50,000 deal with only 20% win probability"

    def test_model_win_probability_preferred(self):
        lead = _lead("a", expected_value=50000, probability=80, win_prob_score=12.0)
        assert [a.id for a in _alerts([lead])] == ["atrisk-a"]

    def test_zero_win_probability_not_at_risk(self):
        assert _alerts([_lead("a", expected_value=50000, probability=0)]) == []

    def test_overdue_close(self):
        lead = _lead("a", expected_close_date=NOW - timedelta(days=1))
        alerts = _alerts([lead])
        assert alerts[0].id == "overdue-close"
        assert alerts[0].severity == "warning"

    def test_advanced_stage_without_value(self):
        alerts = _alerts([_lead("a", stage="quotation_bids", expected_value=0.0)])
        assert [(a.id, a.severity) for a in alerts] == [("no-value", "info")]

    def test_early_stage_without_value_ignored(self):
        assert _alerts([_lead("a", stage="new", expected_value=0.0)]) == []


class TestOrdering:
    def test_critical_then_warning_then_info(self):
        leads = [
            _lead("info", stage="shop_drawing", expected_value=0.0),
            _lead("warn", days_old=15),
            _lead("crit", days_old=40),
        ]
        alerts = _alerts(leads)
        assert [a.severity for a in alerts] == ["critical", "warning", "info"]
        assert alerts[0].id == "stale-crit"

    def test_same_input_same_output(self):
        leads = [_lead("a", days_old=15), _lead("b", sla_breached=True)]
        assert [a.to_dict() for a in _alerts(leads)] == [a.to_dict() for a in _alerts(leads)]


class TestCalendarDays:
    def test_counts_calendar_boundaries(self):
        late_yesterday = datetime(2026, 2, 28, 23, 30, tzinfo=timezone.utc)
        assert calendar_days_since(late_yesterday, NOW) == 1

    def test_naive_timestamp(self):
        assert calendar_days_since(datetime(2026, 2, 20, 12, 0), NOW) == 9

    def test_missing_timestamp(self):
        assert calendar_days_since(None, NOW) == 0
