"""Tests for SLA deadlines, status classification and breach marking."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.models import HumanTask, Lead, as_utc
from app.services.sla import (
    SlaStatus,
    apply_stage_change,
    classify_sla,
    compute_deadline,
    mark_sla_breaches,
    sla_tracker,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestDeadline:
    def test_stage_window(self):
        assert compute_deadline("new", NOW) == NOW + timedelta(hours=24)
        assert compute_deadline("shop_drawing", NOW) == NOW + timedelta(hours=72)

    def test_unknown_stage_uses_default(self):
        assert compute_deadline("site_visit", NOW) == NOW + timedelta(hours=24)

    def test_terminal_stage_has_none(self):
        assert compute_deadline("won", NOW) is None

    def test_stage_change_restarts_clock(self):
        lead = Lead(company_id="c1", title="x", sla_breached=True)
        apply_stage_change(lead, "estimation_ben", NOW)
        assert lead.stage == "estimation_ben"
        assert lead.stage_entered_at == NOW
        assert lead.sla_deadline == NOW + timedelta(hours=48)
        assert lead.sla_breached is False


class TestClassify:
    def test_on_track(self):
        assert classify_sla(NOW + timedelta(hours=5), NOW, warning_hours=2) == SlaStatus.ON_TRACK

    def test_warning_inside_window(self):
        assert classify_sla(NOW + timedelta(hours=2), NOW, warning_hours=2) == SlaStatus.WARNING
        assert classify_sla(NOW + timedelta(minutes=1), NOW, warning_hours=2) == SlaStatus.WARNING

    def test_past_deadline_breached(self):
        assert classify_sla(NOW - timedelta(seconds=1), NOW, warning_hours=2) == SlaStatus.BREACHED

    def test_flag_wins(self):
        assert classify_sla(NOW + timedelta(days=3), NOW, breached=True) == SlaStatus.BREACHED

    def test_no_deadline(self):
        assert classify_sla(None, NOW) is None


class TestTracker:
    def test_ordering_and_filtering(self):
        leads = [
            Lead(id="ok", company_id="c1", title="ok", stage="new", sla_deadline=NOW + timedelta(hours=10)),
            Lead(id="soon", company_id="c1", title="soon", stage="new", sla_deadline=NOW + timedelta(hours=1)),
            Lead(id="late", company_id="c1", title="late", stage="new", sla_deadline=NOW - timedelta(hours=3)),
            Lead(id="done", company_id="c1", title="done", stage="won", sla_deadline=NOW - timedelta(hours=3)),
            Lead(id="none", company_id="c1", title="none", stage="new", sla_deadline=None),
        ]
        items = sla_tracker(leads, NOW)
        assert [i["lead_id"] for i in items] == ["late", "soon", "ok"]
        assert [i["status"] for i in items] == ["breached", "warning", "on_track"]
        assert items[0]["hours_left"] == -3.0


async def _overdue_lead(db, stage="qc_ben", hours_late=1, **kwargs):
    lead = Lead(company_id="c1", title="Overdue", stage=stage, **kwargs)
    apply_stage_change(lead, stage, NOW - timedelta(hours=24 + hours_late))
    db.add(lead)
    await db.commit()
    return lead.id


class TestMarkBreaches:
    @pytest.mark.asyncio
    async def test_flags_escalates_and_opens_task(self, db):
        lead_id = await _overdue_lead(db)
        flagged = await mark_sla_breaches(db, "c1", NOW)

        assert len(flagged) == 1
        previous, current = flagged[0]
        assert previous["sla_breached"] is False
        assert current["sla_breached"] is True
        assert current["escalated_to"] == "Ops Mgr"

        task = (await db.execute(select(HumanTask))).scalar_one()
        assert task.dedupe_key == f"sla:lead:{lead_id}:qc_ben"
        assert task.severity == "critical"
        assert task.category == "sla_breach"

    @pytest.mark.asyncio
    async def test_second_sweep_is_noop(self, db):
        await _overdue_lead(db)
        await mark_sla_breaches(db, "c1", NOW)
        assert await mark_sla_breaches(db, "c1", NOW) == []
        assert (await db.execute(select(func.count(HumanTask.id)))).scalar() == 1

    @pytest.mark.asyncio
    async def test_not_yet_due_untouched(self, db):
        lead = Lead(company_id="c1", title="Fresh")
        apply_stage_change(lead, "new", NOW - timedelta(hours=2))
        db.add(lead)
        await db.commit()
        assert await mark_sla_breaches(db, "c1", NOW) == []

    @pytest.mark.asyncio
    async def test_other_company_untouched(self, db):
        lead = Lead(company_id="c2", title="Theirs")
        apply_stage_change(lead, "new", NOW - timedelta(days=3))
        db.add(lead)
        await db.commit()
        assert await mark_sla_breaches(db, "c1", NOW) == []
        assert not (await db.get(Lead, lead.id, populate_existing=True)).sla_breached

    @pytest.mark.asyncio
    async def test_deadline_roundtrips_as_utc(self, db):
        lead_id = await _overdue_lead(db, stage="new")
        stored = await db.get(Lead, lead_id, populate_existing=True)
        assert as_utc(stored.sla_deadline) == NOW - timedelta(hours=1)
