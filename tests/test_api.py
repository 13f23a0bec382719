"""API tests: routes, validation errors and status codes."""

from datetime import timedelta

import pytest
from httpx import AsyncClient

from app.api import ai_actions
from app.exceptions import SuggestionGeneratorError
from app.main import app
from app.models import Lead, utcnow

API = "/api/v1"


class StubGenerator:
    def __init__(self, proposals=None, error=None):
        self.proposals = proposals or []
        self.error = error

    async def propose(self, stats):
        if self.error:
            raise self.error
        return self.proposals


@pytest.fixture
def overrides():
    yield app.dependency_overrides
    app.dependency_overrides.clear()


async def _create_lead(client, **fields):
    body = {"company_id": "c1", "title": "Tower rebar", **fields}
    resp = await client.post(f"{API}/leads/", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_api_docs(client: AsyncClient):
    resp = await client.get("/docs")
    assert resp.status_code == 200


# ── Leads ──────────────────────────────────────────────
@pytest.mark.asyncio
async def test_create_lead_starts_sla(client: AsyncClient):
    lead = await _create_lead(client, tags=["b", "a", "a"], expected_value=12000)
    assert lead["stage"] == "new"
    assert lead["sla_deadline"] is not None
    assert lead["sla_breached"] is False
    assert lead["tags"] == ["a", "b"]


@pytest.mark.asyncio
async def test_lead_probability_bounds(client: AsyncClient):
    resp = await client.post(f"{API}/leads/", json={"company_id": "c1", "title": "x", "probability": 120})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_missing_lead(client: AsyncClient):
    resp = await client.get(f"{API}/leads/nope")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_list_leads_by_stage(client: AsyncClient):
    await _create_lead(client, title="A")
    await _create_lead(client, title="B", stage="rfi")
    resp = await client.get(f"{API}/leads/", params={"company_id": "c1", "stage": "rfi"})
    assert [lead["title"] for lead in resp.json()] == ["B"]


@pytest.mark.asyncio
async def test_new_lead_rule_runs_on_create(client: AsyncClient):
    resp = await client.post(f"{API}/automation-rules/", json={
        "company_id": "c1",
        "name": "tag inbound",
        "trigger_event": "new_lead",
        "action_type": "auto_tag",
        "action_params": {"tag": "inbound"},
    })
    assert resp.status_code == 201
    lead = await _create_lead(client)
    assert lead["tags"] == ["inbound"]


@pytest.mark.asyncio
async def test_stage_change_rule_runs_on_patch(client: AsyncClient):
    await client.post(f"{API}/automation-rules/", json={
        "company_id": "c1",
        "name": "assign won deals",
        "trigger_event": "stage_change",
        "trigger_conditions": {"from_stage": "new", "to_stage": "won"},
        "action_type": "auto_assign",
        "action_params": {"assign_to": "closer-1"},
    })
    lead = await _create_lead(client)
    resp = await client.patch(f"{API}/leads/{lead['id']}", json={"stage": "won"})
    assert resp.status_code == 200
    assert resp.json()["stage"] == "won"
    assert resp.json()["assigned_to"] == "closer-1"
    assert resp.json()["sla_deadline"] is None


@pytest.mark.asyncio
async def test_patch_null_title_keeps_title(client: AsyncClient):
    lead = await _create_lead(client)
    resp = await client.patch(f"{API}/leads/{lead['id']}", json={"title": None, "priority": "high"})
    assert resp.status_code == 200
    assert resp.json()["title"] == "Tower rebar"
    assert resp.json()["priority"] == "high"

    resp = await client.patch(f"{API}/leads/{lead['id']}", json={"title": ""})
    assert resp.status_code == 422


# ── Automation rules ───────────────────────────────────
@pytest.mark.asyncio
async def test_rule_with_unknown_action_rejected(client: AsyncClient):
    resp = await client.post(f"{API}/automation-rules/", json={
        "company_id": "c1", "name": "bad", "trigger_event": "new_lead", "action_type": "auto_delete",
    })
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_rule_missing_required_param_rejected(client: AsyncClient):
    resp = await client.post(f"{API}/automation-rules/", json={
        "company_id": "c1", "name": "bad", "trigger_event": "new_lead", "action_type": "auto_move_stage",
    })
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_rule_patch_validates_merged_definition(client: AsyncClient):
    resp = await client.post(f"{API}/automation-rules/", json={
        "company_id": "c1", "name": "notify", "trigger_event": "new_lead", "action_type": "auto_notify",
    })
    rule_id = resp.json()["id"]

    resp = await client.patch(f"{API}/automation-rules/{rule_id}", json={"action_type": "auto_assign"})
    assert resp.status_code == 422
    assert resp.json()["type"] == "rule_validation"

    resp = await client.patch(f"{API}/automation-rules/{rule_id}", json={"priority": 5, "enabled": False})
    assert resp.status_code == 200
    assert resp.json()["priority"] == 5
    assert resp.json()["enabled"] is False


@pytest.mark.asyncio
async def test_fire_event_and_stats(client: AsyncClient):
    resp = await client.post(f"{API}/automation-rules/", json={
        "company_id": "c1", "name": "escalate", "trigger_event": "value_change",
        "trigger_conditions": {"min_value": 1000},
        "action_type": "auto_escalate", "action_params": {"escalate_to": "VP Sales"},
    })
    rule_id = resp.json()["id"]
    lead = await _create_lead(client, expected_value=5000)

    resp = await client.post(f"{API}/automation-rules/fire", json={
        "event": "value_change", "lead_id": lead["id"], "previous": {"expected_value": 10},
    })
    assert resp.status_code == 200
    assert resp.json()["rules_matched"] == 1
    assert resp.json()["executed"] == 1

    stats = (await client.get(f"{API}/automation-rules/{rule_id}/stats")).json()
    assert stats["success"] == 1
    assert stats["execution_count"] == 1

    logs = (await client.get(f"{API}/automation-rules/{rule_id}/logs")).json()
    assert [log["status"] for log in logs] == ["success"]


@pytest.mark.asyncio
async def test_fire_unknown_event_rejected(client: AsyncClient):
    resp = await client.post(f"{API}/automation-rules/fire", json={"event": "deal_closed", "lead_id": "x"})
    assert resp.status_code == 422


# ── Scoring ────────────────────────────────────────────
@pytest.mark.asyncio
async def test_scoring_rule_unknown_field_rejected(client: AsyncClient):
    resp = await client.post(f"{API}/scoring/rules", json={
        "company_id": "c1", "name": "bad", "field_name": "password",
        "operator": "equals", "score_points": 5,
    })
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_recompute_and_history(client: AsyncClient):
    resp = await client.post(f"{API}/scoring/rules", json={
        "company_id": "c1", "name": "low prob", "field_name": "probability",
        "operator": "less_than", "field_value": "30", "score_points": -10,
    })
    assert resp.status_code == 201
    lead = await _create_lead(client, probability=20)

    preview = (await client.get(f"{API}/scoring/preview/{lead['id']}")).json()
    assert preview["score"] == -10
    assert preview["changed"] is True

    summary = (await client.post(f"{API}/scoring/recompute", json={"company_id": "c1"})).json()
    assert summary["updated"] == 1

    history = (await client.get(f"{API}/leads/{lead['id']}/score-history")).json()
    assert len(history) == 1
    assert history[0]["score"] == -10
    assert history[0]["score_factors"] == {"low prob": -10}


# ── AI actions ─────────────────────────────────────────
@pytest.mark.asyncio
async def test_scan_review_execute_flow(client: AsyncClient, overrides):
    lead = await _create_lead(client)
    overrides[ai_actions.get_suggestion_generator] = lambda: StubGenerator([
        {"lead_id": lead["id"], "action_type": "flag_stale", "priority": "high", "reasoning": "quiet"},
    ])

    scan = (await client.post(f"{API}/ai-actions/scan", json={"actor_id": "u1", "company_id": "c1"})).json()
    assert scan["status"] == "completed"
    assert scan["inserted"] == 1
    action_id = scan["action_ids"][0]

    again = (await client.post(f"{API}/ai-actions/scan", json={"actor_id": "u1", "company_id": "c1"})).json()
    assert again["status"] == "skipped"
    assert again["retry_after_seconds"] > 0

    resp = await client.post(f"{API}/ai-actions/{action_id}/approve", json={"actor_id": "u1"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"

    resp = await client.post(f"{API}/ai-actions/{action_id}/dismiss")
    assert resp.status_code == 409
    assert resp.json()["type"] == "invalid_transition"

    resp = await client.post(f"{API}/ai-actions/{action_id}/execute")
    assert resp.status_code == 200
    assert resp.json()["status"] == "executed"
    assert "stale" in (await client.get(f"{API}/leads/{lead['id']}")).json()["tags"]

    resp = await client.post(f"{API}/ai-actions/{action_id}/approve")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_execute_failure_is_502_and_stays_approved(client: AsyncClient, overrides):
    lead = await _create_lead(client)
    overrides[ai_actions.get_suggestion_generator] = lambda: StubGenerator([
        {"lead_id": lead["id"], "action_type": "send_followup"},
    ])

    async def broken(action):
        raise RuntimeError("crm offline")

    overrides[ai_actions.get_action_capability] = lambda: broken

    scan = (await client.post(f"{API}/ai-actions/scan", json={"actor_id": "u1", "company_id": "c1"})).json()
    action_id = scan["action_ids"][0]
    await client.post(f"{API}/ai-actions/{action_id}/approve")

    resp = await client.post(f"{API}/ai-actions/{action_id}/execute")
    assert resp.status_code == 502
    assert resp.json()["type"] == "action_execution_failed"

    action = (await client.get(f"{API}/ai-actions/{action_id}")).json()
    assert action["status"] == "approved"
    assert action["last_error"] == "crm offline"


@pytest.mark.asyncio
async def test_scan_generator_failure_is_502(client: AsyncClient, overrides):
    overrides[ai_actions.get_suggestion_generator] = lambda: StubGenerator(
        error=SuggestionGeneratorError("Suggestion generator rate limited")
    )
    resp = await client.post(f"{API}/ai-actions/scan", json={"actor_id": "u1", "company_id": "c1"})
    assert resp.status_code == 502
    assert resp.json()["type"] == "suggestion_generator_failed"


@pytest.mark.asyncio
async def test_bulk_approve(client: AsyncClient, overrides):
    lead = await _create_lead(client)
    overrides[ai_actions.get_suggestion_generator] = lambda: StubGenerator([
        {"lead_id": lead["id"], "action_type": "send_followup"},
        {"lead_id": lead["id"], "action_type": "set_reminder"},
    ])
    await client.post(f"{API}/ai-actions/scan", json={"actor_id": "u1", "company_id": "c1"})

    result = (await client.post(f"{API}/ai-actions/approve-all", json={"company_id": "c1"})).json()
    assert result["transitioned"] == 2

    pending = (await client.get(f"{API}/ai-actions/", params={"company_id": "c1", "status": "pending"})).json()
    assert pending == []


@pytest.mark.asyncio
async def test_missing_ai_action(client: AsyncClient):
    resp = await client.get(f"{API}/ai-actions/nope")
    assert resp.status_code == 404
    assert resp.json()["type"] == "not_found"


# ── Alerts, SLA, settings, users ───────────────────────
@pytest.mark.asyncio
async def test_alerts_for_stale_lead(client: AsyncClient, db):
    db.add(Lead(company_id="c1", title="Old deal", updated_at=utcnow() - timedelta(days=15)))
    await db.commit()

    alerts = (await client.get(f"{API}/alerts", params={"company_id": "c1"})).json()
    assert [(a["type"], a["severity"]) for a in alerts] == [("stale_lead", "warning")]


@pytest.mark.asyncio
async def test_sla_tracker_and_sweep(client: AsyncClient, db):
    db.add(Lead(company_id="c1", title="Late", stage="new", sla_deadline=utcnow() - timedelta(hours=1)))
    await db.commit()

    items = (await client.get(f"{API}/sla", params={"company_id": "c1"})).json()
    assert [i["status"] for i in items] == ["breached"]

    sweep = (await client.post(f"{API}/sla/sweep", params={"company_id": "c1"})).json()
    assert sweep["breached"] == 1
    again = (await client.post(f"{API}/sla/sweep", params={"company_id": "c1"})).json()
    assert again["breached"] == 0


@pytest.mark.asyncio
async def test_company_settings_override(client: AsyncClient):
    defaults = (await client.get(f"{API}/companies/c1/settings")).json()
    assert defaults["stale_days"] == 14

    resp = await client.put(f"{API}/companies/c1/settings", json={"stale_days": 7, "scan_cooldown_minutes": 5})
    assert resp.status_code == 200
    assert resp.json()["stale_days"] == 7
    assert resp.json()["scan_cooldown_minutes"] == 5
    assert resp.json()["stale_bulk_threshold"] == 10


@pytest.mark.asyncio
async def test_duplicate_user_email(client: AsyncClient):
    body = {"company_id": "c1", "email": "ops@example.com", "roles": ["admin"]}
    assert (await client.post(f"{API}/users/", json=body)).status_code == 201
    assert (await client.post(f"{API}/users/", json=body)).status_code == 409
