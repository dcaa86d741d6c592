import asyncio

import pytest
from fastapi.testclient import TestClient

from agents.base import AgentResult
from dashboard.api.main import create_app, status_for
from orchestrator.errors import (
    CycleInFlightError,
    DepartmentLockedError,
    ReviewerTierError,
    UnknownDepartmentError,
)
from orchestrator.guardrail import BudgetState
from orchestrator.models import Decision, DepartmentType


@pytest.fixture
def client(engine):
    # 不进入 with 块：lifespan 不运行，直接使用注入的 engine
    return TestClient(create_app(engine))


def _enable(client, department="marketing"):
    response = client.post(
        f"/api/companies/acme/departments/{department}/autopilot", json={"enabled": True}
    )
    assert response.status_code == 200, response.text
    return response.json()


def _ingest(client, topic="engagement"):
    response = client.post("/api/companies/acme/intelligence", json={
        "source": "social_listening",
        "structured_signals": [{"title": "Reels engagement up", "impact": "medium", "topic": topic}],
        "relevance_score": 0.8,
    })
    assert response.status_code == 200, response.text
    return response.json()


def test_status_mapping():
    assert status_for(CycleInFlightError("busy")) == 409
    assert status_for(ReviewerTierError("tier")) == 403
    assert status_for(DepartmentLockedError("legal", "growing", "starter")) == 422
    assert status_for(UnknownDepartmentError("research")) == 422


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["decision_engine"] == "rules"
    assert data["agents"] > 0
    assert data["active_cycles"] == 0


def test_departments_and_toggle(client):
    data = _enable(client)
    assert data["success"] is True
    assert data["config"]["autopilot_enabled"] is True

    departments = client.get("/api/companies/acme/departments").json()["departments"]
    by_name = {d["department"]: d for d in departments}
    assert by_name["marketing"]["autopilot_enabled"] is True
    assert by_name["hr"]["unlocked"] is False


def test_toggle_locked_department_is_422(client):
    response = client.post("/api/companies/acme/departments/hr/autopilot", json={"enabled": True})
    assert response.status_code == 422
    assert response.json()["error_code"] == "department_locked"


def test_run_cycle_and_query_results(client):
    _enable(client)
    _ingest(client)

    response = client.post("/api/companies/acme/departments/marketing/cycles")
    assert response.status_code == 200
    summary = response.json()
    assert summary["status"] == "completed"
    assert summary["verdicts"] == {"approved": 1}
    assert summary["executions"]["completed"] == 1

    decisions = client.get(
        "/api/companies/acme/decisions", params={"cycle_id": summary["cycle_id"]}
    ).json()["decisions"]
    assert [d["verdict"] for d in decisions] == ["approved"]

    decision = client.get(f"/api/decisions/{decisions[0]['id']}").json()
    assert decision["action_taken"] is True

    entries = client.get(
        "/api/companies/acme/execution-log", params={"phase": "act"}
    ).json()["entries"]
    assert len(entries) == 2

    lessons = client.get("/api/companies/acme/lessons").json()["lessons"]
    assert lessons[0]["outcome_evaluation"] == "positive"

    iq = client.get("/api/companies/acme/iq").json()
    assert iq["score"] == 27

    credits = client.get("/api/companies/acme/departments/marketing/credits").json()
    assert credits == {"daily_cap": 100, "consumed": 1, "reserved": 0, "headroom": 0.99}


def test_disabled_department_cycle_is_409(client):
    response = client.post("/api/companies/acme/departments/marketing/cycles")
    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "department_disabled"


def test_unknown_decision_is_404(client):
    response = client.get("/api/decisions/missing")
    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "decision_not_found"


def test_cancel_without_cycle(client):
    response = client.post("/api/companies/acme/departments/marketing/cycles/cancel")
    assert response.json() == {"cancel_requested": False, "cycle_id": None}


def test_resolve_approval_tiers_and_conflict(client, engine):
    _enable(client, "finance")
    decision = Decision(
        company_id="acme",
        department=DepartmentType.FINANCE,
        decision_type="optimize_expenses",
        description="Cancel unused subscriptions",
        agent_to_execute="budget_forecaster",
        estimated_cost=1,
    )
    verdict = engine.guardrail.evaluate(decision, BudgetState(daily_cap=50))
    decision.assign_verdict(verdict.verdict, verdict.rule, verdict.reason)
    asyncio.run(engine.repository.save_decision(decision))
    asyncio.run(engine.approvals.submit(decision, verdict))

    approvals = client.get("/api/companies/acme/approvals", params={"department": "finance"}).json()["approvals"]
    assert len(approvals) == 1
    approval_id = approvals[0]["id"]

    response = client.post(f"/api/approvals/{approval_id}/resolve", json={
        "approved": True, "reviewer_id": "ana",
    })
    assert response.status_code == 403

    response = client.post(f"/api/approvals/{approval_id}/resolve", json={
        "approved": True, "reviewer_id": "cfo", "reviewer_tier": "executive",
    })
    assert response.status_code == 200
    assert response.json()["execution"]["status"] == "completed"

    response = client.post(f"/api/approvals/{approval_id}/resolve", json={
        "approved": False, "reviewer_id": "cfo", "reviewer_tier": "executive",
    })
    assert response.status_code == 409


def test_resolve_requires_reviewer(client):
    response = client.post("/api/approvals/any/resolve", json={"approved": True, "reviewer_id": ""})
    assert response.status_code == 422


def test_capability_lifecycle_endpoints(client):
    _enable(client)

    caps = client.get(
        "/api/companies/acme/capabilities", params={"department": "marketing", "status": "trial"}
    ).json()["capabilities"]
    assert {c["capability_code"] for c in caps} == {"content_optimization", "audience_segmentation"}

    response = client.post(
        "/api/companies/acme/departments/marketing/capabilities/content_optimization/activate",
        json={"mode": "active"},
    )
    assert response.json()["status"] == "active"

    response = client.post(
        "/api/companies/acme/departments/marketing/capabilities/content_optimization/reject", json={}
    )
    assert response.status_code == 409

    response = client.post(
        "/api/companies/acme/departments/marketing/capabilities/missing/activate", json={}
    )
    assert response.status_code == 404


def test_report_outcome_resolves_pending_lesson(client, executor):
    executor.set_response("content_creator", AgentResult(success=True, output={"posted": True}))
    _enable(client)
    _ingest(client)
    summary = client.post("/api/companies/acme/departments/marketing/cycles").json()
    decision_id = client.get(
        "/api/companies/acme/decisions", params={"cycle_id": summary["cycle_id"]}
    ).json()["decisions"][0]["id"]

    lessons = client.get("/api/companies/acme/lessons").json()["lessons"]
    assert lessons[0]["outcome_evaluation"] == "pending"

    response = client.post(
        f"/api/companies/acme/decisions/{decision_id}/outcome", json={"metric_value": 3}
    )
    assert response.json()["lesson"]["outcome_evaluation"] == "positive"


def test_maintenance_endpoint(client):
    _enable(client)
    report = client.post("/api/companies/acme/maintenance").json()
    assert report["trials_resolved"] == {}
    assert set(report["departments_unlocked"]) == {"sales", "finance", "legal"}


def test_unlock_endpoint(client):
    unlocked = client.post("/api/companies/acme/departments/unlock").json()["unlocked"]
    assert set(unlocked) == {"marketing", "sales", "finance", "legal"}
