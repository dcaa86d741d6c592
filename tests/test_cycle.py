import asyncio

import pytest

from agents.base import AgentResult
from orchestrator.errors import CycleInFlightError
from orchestrator.intelligence import IntelligenceSource, StaticIntelligenceSource
from orchestrator.models import (
    DepartmentType,
    LogStatus,
    OutcomeEvaluation,
    Phase,
    Verdict,
)

MKT = DepartmentType.MARKETING

ENGAGEMENT = {
    "title": "Reels engagement up 40%",
    "summary": "Short videos outperform carousels this week",
    "impact": "medium",
    "category": "opportunity",
    "topic": "engagement",
}


def _run(coro):
    return asyncio.run(coro)


def _enable(engine, department="marketing"):
    result = _run(engine.toggle_autopilot("acme", department, True))
    assert result.success, result.reason


def _set_cap(engine, cap):
    config = _run(engine.repository.get_department_config("acme", MKT))
    config.daily_credit_cap = cap
    _run(engine.repository.save_department_config(config))


class SlowSource(IntelligenceSource):
    """拉取时让出一次事件循环"""

    name = "slow"

    async def fetch(self, company_id):
        await asyncio.sleep(0)
        return []


class CancellingSource(IntelligenceSource):
    """拉取时请求取消当前周期"""

    name = "cancelling"

    def __init__(self, engine):
        self.engine = engine

    async def fetch(self, company_id):
        self.engine.cancel_cycle(company_id, "marketing")
        return []


def test_full_cycle_dispatches_and_learns(engine, repository, executor):
    _enable(engine)
    _run(engine.ingest_intelligence("acme", "social_listening", [ENGAGEMENT], relevance_score=0.8))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "completed"
    assert summary.decisions_produced == 1
    assert summary.verdicts == {"approved": 1}
    assert summary.executions_completed == 1
    assert summary.credits_consumed == 1
    assert summary.lessons_recorded == 1
    assert executor.calls[0][0] == "content_creator"

    decisions = _run(engine.list_decisions("acme", "marketing", cycle_id=summary.cycle_id))
    assert len(decisions) == 1
    assert decisions[0].decision_type == "create_content"
    assert decisions[0].capability_code == "content_optimization"
    assert decisions[0].action_taken is True

    logs = _run(repository.list_logs("acme", cycle_id=summary.cycle_id))
    phase_logs = [e for e in logs if e.decision_id is None]
    dispatch_logs = [e for e in logs if e.decision_id is not None]
    assert sorted(e.phase.value for e in phase_logs) == ["act", "guard", "learn", "sense", "think"]
    assert all(e.status == LogStatus.COMPLETED for e in phase_logs)
    assert [(e.phase, e.credits_consumed) for e in dispatch_logs] == [(Phase.ACT, 1)]

    lessons = _run(engine.list_lessons("acme"))
    assert [m.outcome_evaluation for m in lessons] == [OutcomeEvaluation.POSITIVE]

    config = _run(repository.get_department_config("acme", MKT))
    assert config.total_cycles_run == 1
    assert config.last_execution_at is not None


def test_planned_cost_counts_within_one_cycle(engine, executor):
    _enable(engine)
    _set_cap(engine, 2)
    second = dict(ENGAGEMENT, title="Comments doubled on launch post")
    _run(engine.ingest_intelligence("acme", "social_listening", [ENGAGEMENT, second]))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.verdicts == {"approved": 1, "blocked": 1}
    assert summary.credits_consumed == 1
    blocked = _run(engine.list_decisions("acme", verdict="blocked"))
    assert [d.guardrail_rule for d in blocked] == ["budget_exhausted"]
    assert len(executor.calls) == 1


def test_uncovered_signal_is_recorded_as_gap(engine):
    _enable(engine)
    _run(engine.ingest_intelligence("acme", "news", [
        {"title": "Competitor cut prices", "topic": "pricing"},
    ]))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.decisions_produced == 0
    assert summary.gap_observations == [
        {"kind": "unhandled_signal", "key": "pricing", "detail": "Competitor cut prices"}
    ]


def test_failed_phase_stops_cycle_and_releases_lease(engine, repository, monkeypatch):
    _enable(engine)

    async def broken(context):
        raise RuntimeError("model offline")

    monkeypatch.setattr(engine.decision_engine, "propose", broken)

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "failed"
    assert summary.failed_phase == "think"
    assert "model offline" in summary.error

    logs = _run(repository.list_logs("acme", cycle_id=summary.cycle_id))
    assert {(e.phase, e.status) for e in logs} == {
        (Phase.SENSE, LogStatus.COMPLETED),
        (Phase.THINK, LogStatus.FAILED),
    }
    assert engine.leases.get("acme", MKT) is None
    # 失败的周期不计入运行次数
    config = _run(repository.get_department_config("acme", MKT))
    assert config.total_cycles_run == 0


def test_cancel_takes_effect_before_next_phase(engine, repository):
    _enable(engine)
    engine.intelligence.sources.append(CancellingSource(engine))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "cancelled"
    logs = _run(repository.list_logs("acme", cycle_id=summary.cycle_id))
    assert [e.phase for e in logs] == [Phase.SENSE]
    assert engine.leases.get("acme", MKT) is None
    config = _run(repository.get_department_config("acme", MKT))
    assert config.total_cycles_run == 0


def test_cancel_without_running_cycle(engine):
    assert engine.cancel_cycle("acme", "marketing") is False


def test_single_flight_per_department(engine):
    _enable(engine)
    engine.intelligence.sources.append(SlowSource())

    async def both():
        return await asyncio.gather(
            engine.run_cycle("acme", "marketing"),
            engine.run_cycle("acme", "marketing"),
            return_exceptions=True,
        )

    first, second = _run(both())

    assert first.status == "completed"
    assert isinstance(second, CycleInFlightError)


def test_departments_run_in_parallel(engine):
    _enable(engine)
    _enable(engine, "sales")
    engine.intelligence.sources.append(SlowSource())

    async def both():
        return await asyncio.gather(
            engine.run_cycle("acme", "marketing"),
            engine.run_cycle("acme", "sales"),
        )

    results = _run(both())
    assert [s.status for s in results] == ["completed", "completed"]


def test_static_source_feeds_sense(engine, executor):
    _enable(engine)
    source = StaticIntelligenceSource("trends")
    source.add("acme", [ENGAGEMENT])
    engine.intelligence.sources.append(source)

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert source.fetch_count == 1
    assert summary.verdicts == {"approved": 1}
    # growing 公司 72 小时内不再拉取
    _run(engine.run_cycle("acme", "marketing"))
    assert source.fetch_count == 1


def test_blocked_decision_logs_intervention(engine, repository, profile):
    _enable(engine)
    profile.set_profile("acme", flags={"finance_budget_status": "exceeded"})
    _run(engine.ingest_intelligence("acme", "social_listening", [ENGAGEMENT]))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.verdicts == {"blocked": 1}
    interventions = _run(repository.list_logs("acme", phase=Phase.GUARDRAIL_INTERVENTION))
    assert [e.rule for e in interventions] == ["finance_budget_freeze"]
    decision = _run(engine.get_decision(interventions[0].decision_id))
    assert decision.verdict == Verdict.BLOCKED
    assert _run(engine.ledger.consumed_today("acme")) == 0


@pytest.mark.parametrize("department", ["marketing", "sales"])
def test_cycle_on_empty_intelligence_completes(engine, department):
    _enable(engine, department)
    summary = _run(engine.run_cycle("acme", department))
    assert summary.status == "completed"
    assert summary.decisions_produced == 0


def _signals(count):
    return [dict(ENGAGEMENT, title=f"Engagement spike #{i}") for i in range(1, count + 1)]


def test_agent_failure_is_logged_and_learned(engine, repository, executor):
    _enable(engine)
    executor.set_response("content_creator", AgentResult(success=False, error="rate limited by platform"))
    _run(engine.ingest_intelligence("acme", "social_listening", [ENGAGEMENT]))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "completed"
    assert summary.executions_failed == 1
    assert summary.executions_completed == 0
    assert summary.credits_consumed == 1

    decision = _run(engine.list_decisions("acme", cycle_id=summary.cycle_id))[0]
    assert decision.verdict == Verdict.APPROVED
    assert decision.action_taken is False

    dispatch_logs = [
        e for e in _run(repository.list_logs("acme", phase=Phase.ACT))
        if e.decision_id == decision.id
    ]
    assert [(e.status, e.error_message) for e in dispatch_logs] == [
        (LogStatus.FAILED, "rate limited by platform")
    ]

    lessons = _run(engine.list_lessons("acme"))
    assert [(m.decision_id, m.outcome_evaluation) for m in lessons] == [
        (decision.id, OutcomeEvaluation.NEGATIVE)
    ]


def test_cancel_during_act_still_learns(engine, repository, executor):
    _enable(engine)

    def cancel_then_fail(agent_id, payload):
        engine.cancel_cycle("acme", "marketing")
        return AgentResult(success=False, error="publish API down")

    executor.set_response("content_creator", cancel_then_fail)
    _run(engine.ingest_intelligence("acme", "social_listening", [ENGAGEMENT]))

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "completed"
    assert summary.executions_failed == 1
    assert summary.lessons_recorded == 1
    lessons = _run(engine.list_lessons("acme"))
    assert [m.outcome_evaluation for m in lessons] == [OutcomeEvaluation.NEGATIVE]

    logs = _run(repository.list_logs("acme", cycle_id=summary.cycle_id))
    assert Phase.LEARN in {e.phase for e in logs if e.decision_id is None}
    assert engine.leases.get("acme", MKT) is None


def test_guard_failure_settles_every_decision(engine, executor, monkeypatch):
    _enable(engine)
    _run(engine.ingest_intelligence("acme", "social_listening", _signals(3)))

    original = engine.learning.positive_count
    calls = []

    async def flaky(*args):
        calls.append(args)
        if len(calls) == 2:
            raise RuntimeError("lesson store unavailable")
        return await original(*args)

    monkeypatch.setattr(engine.learning, "positive_count", flaky)

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "failed"
    assert summary.failed_phase == "guard"
    assert summary.verdicts == {"blocked": 1, "requires_approval": 2}
    assert executor.calls == []

    decisions = _run(engine.list_decisions("acme", cycle_id=summary.cycle_id))
    assert sorted((d.verdict.value, d.guardrail_rule) for d in decisions) == [
        ("blocked", "cycle_failed"),
        ("requires_approval", "cycle_failed"),
        ("requires_approval", "cycle_failed"),
    ]
    assert not any(d.action_taken for d in decisions)

    pending = _run(engine.list_pending_approvals("acme"))
    assert {a.decision_id for a in pending} == {
        d.id for d in decisions if d.verdict == Verdict.REQUIRES_APPROVAL
    }

    interventions = _run(engine.repository.list_logs("acme", phase=Phase.GUARDRAIL_INTERVENTION))
    assert [e.rule for e in interventions] == ["cycle_failed"] * 3


def test_cancel_before_act_blocks_approved_decisions(engine, executor, monkeypatch):
    _enable(engine)
    _run(engine.ingest_intelligence("acme", "social_listening", _signals(2)))

    original = engine.learning.positive_count

    async def cancel_during_guard(*args):
        engine.cancel_cycle("acme", "marketing")
        return await original(*args)

    monkeypatch.setattr(engine.learning, "positive_count", cancel_during_guard)

    summary = _run(engine.run_cycle("acme", "marketing"))

    assert summary.status == "cancelled"
    assert executor.calls == []
    decisions = _run(engine.list_decisions("acme", cycle_id=summary.cycle_id))
    assert [(d.verdict, d.guardrail_rule) for d in decisions] == [
        (Verdict.BLOCKED, "cycle_cancelled"),
        (Verdict.BLOCKED, "cycle_cancelled"),
    ]
    assert _run(engine.list_pending_approvals("acme")) == []
