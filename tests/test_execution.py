import asyncio

import pytest

from agents.base import AgentResult
from orchestrator.errors import DuplicateDispatchError, InvalidTransitionError
from orchestrator.models import (
    Decision,
    DepartmentType,
    ExecutionLogEntry,
    ExecutionStatus,
    LogStatus,
    Phase,
    Verdict,
)

MKT = DepartmentType.MARKETING


def _run(coro):
    return asyncio.run(coro)


def _approved(agent="content_creator", decision_type="create_content", verdict=Verdict.APPROVED):
    decision = Decision(
        company_id="acme",
        department=MKT,
        decision_type=decision_type,
        description="Write a post",
        agent_to_execute=agent,
        estimated_cost=1,
    )
    decision.assign_verdict(verdict, "low_risk")
    return decision


def _spend(repository, clock, credits, decision_id="earlier"):
    _run(repository.append_log(ExecutionLogEntry(
        company_id="acme",
        department=MKT,
        phase=Phase.ACT,
        status=LogStatus.COMPLETED,
        decision_id=decision_id,
        credits_consumed=credits,
        created_at=clock(),
    )))


def test_dispatch_bills_and_marks_action_taken(engine, repository, executor):
    decision = _approved()
    _run(repository.save_decision(decision))

    result = _run(engine.dispatcher.execute(decision, daily_cap=100, cycle_id="cycle-1"))

    assert result.status == ExecutionStatus.COMPLETED
    assert result.credits_consumed == 1
    assert executor.calls[0][0] == "content_creator"
    assert executor.calls[0][1]["decision_id"] == decision.id

    stored = _run(repository.get_decision(decision.id))
    assert stored.action_taken is True

    logs = _run(repository.list_logs("acme", phase=Phase.ACT))
    assert len(logs) == 1
    assert logs[0].decision_id == decision.id
    assert logs[0].cycle_id == "cycle-1"
    assert logs[0].content_generated == 1
    assert _run(engine.ledger.consumed_today("acme")) == 1
    assert engine.ledger.reserved("acme") == 0


def test_failed_agent_is_still_billed(engine, repository, executor):
    executor.set_response("content_creator", AgentResult(success=False, error="rate limited"))
    decision = _approved()

    result = _run(engine.dispatcher.execute(decision, daily_cap=100))

    assert result.status == ExecutionStatus.FAILED
    assert result.error_message == "rate limited"
    assert result.credits_consumed == 1
    assert decision.action_taken is False
    logs = _run(repository.list_logs("acme", phase=Phase.ACT))
    assert logs[0].status == LogStatus.FAILED
    assert _run(engine.ledger.consumed_today("acme")) == 1


def test_agent_exception_becomes_failure(engine, executor):
    executor.set_response("content_creator", RuntimeError("connection reset"))
    result = _run(engine.dispatcher.execute(_approved(), daily_cap=100))
    assert result.status == ExecutionStatus.FAILED
    assert "connection reset" in result.error_message


def test_unknown_agent_fails_without_billing(engine, repository, executor):
    result = _run(engine.dispatcher.execute(_approved(agent="ghost_writer"), daily_cap=100))

    assert result.status == ExecutionStatus.FAILED
    assert result.rule == "unknown_agent"
    assert executor.calls == []
    logs = _run(repository.list_logs("acme", phase=Phase.ACT))
    assert logs[0].rule == "unknown_agent"
    assert logs[0].details["decision_type"] == "create_content"
    assert _run(engine.ledger.consumed_today("acme")) == 0


def test_unapproved_decision_is_refused(engine):
    decision = _approved(verdict=Verdict.REQUIRES_APPROVAL)
    with pytest.raises(InvalidTransitionError):
        _run(engine.dispatcher.execute(decision, daily_cap=100))


def test_decision_is_dispatched_at_most_once(engine):
    decision = _approved()
    _run(engine.dispatcher.execute(decision, daily_cap=100))
    with pytest.raises(DuplicateDispatchError):
        _run(engine.dispatcher.execute(decision, daily_cap=100))


def test_budget_recheck_at_dispatch_blocks(engine, repository, clock, executor):
    _spend(repository, clock, 10)
    decision = _approved()
    _run(repository.save_decision(decision))

    result = _run(engine.dispatcher.execute(decision, daily_cap=10))

    assert result.status == ExecutionStatus.BLOCKED
    assert result.rule == "budget_exhausted_at_dispatch"
    assert executor.calls == []
    stored = _run(repository.get_decision(decision.id))
    assert stored.verdict == Verdict.BLOCKED
    assert stored.guardrail_rule == "budget_exhausted_at_dispatch"
    interventions = _run(repository.list_logs("acme", phase=Phase.GUARDRAIL_INTERVENTION))
    assert len(interventions) == 1
    assert interventions[0].credits_consumed == 0
    assert _run(engine.ledger.consumed_today("acme")) == 10


def test_ledger_counts_only_dispatch_entries_of_today(engine, repository, clock):
    _spend(repository, clock, 4)
    # 阶段日志不计额度
    _run(repository.append_log(ExecutionLogEntry(
        company_id="acme", department=MKT, phase=Phase.ACT, status=LogStatus.COMPLETED,
        credits_consumed=50, created_at=clock(),
    )))
    assert _run(engine.ledger.consumed_today("acme")) == 4

    clock.advance(days=1)
    assert _run(engine.ledger.consumed_today("acme")) == 0


def test_ledger_is_company_wide(engine, repository, clock):
    _run(repository.append_log(ExecutionLogEntry(
        company_id="acme", department=DepartmentType.SALES, phase=Phase.ACT,
        status=LogStatus.COMPLETED, decision_id="sales-1", credits_consumed=7, created_at=clock(),
    )))
    _run(repository.append_log(ExecutionLogEntry(
        company_id="other", department=MKT, phase=Phase.ACT,
        status=LogStatus.COMPLETED, decision_id="other-1", credits_consumed=9, created_at=clock(),
    )))
    state = _run(engine.ledger.snapshot("acme", 100))
    assert state.consumed == 7


def test_dispatch_recheck_allows_exact_fit(engine, repository, clock, executor):
    _spend(repository, clock, 99)
    decision = _approved()

    # GUARD 扣除成本后余量为 0，直接拦截
    state = _run(engine.ledger.snapshot("acme", 100))
    assert engine.guardrail.evaluate(decision, state).rule == "budget_exhausted"

    # 派发复核只拒绝超出上限
    result = _run(engine.dispatcher.execute(decision, daily_cap=100))
    assert result.status == ExecutionStatus.COMPLETED
    assert _run(engine.ledger.consumed_today("acme")) == 100

    result = _run(engine.dispatcher.execute(_approved(), daily_cap=100))
    assert result.status == ExecutionStatus.BLOCKED

def test_concurrent_dispatch_never_exceeds_cap(engine, executor):
    async def slow(agent_id, payload, endpoint=None):
        await asyncio.sleep(0)
        return AgentResult(success=True, output={"content_generated": 1})

    executor.invoke = slow
    decisions = [_approved() for _ in range(5)]

    async def dispatch_all():
        return await asyncio.gather(
            *(engine.dispatcher.execute(d, daily_cap=3) for d in decisions)
        )

    results = _run(dispatch_all())

    statuses = [r.status for r in results]
    assert statuses.count(ExecutionStatus.COMPLETED) == 3
    assert statuses.count(ExecutionStatus.BLOCKED) == 2
    assert _run(engine.ledger.consumed_today("acme")) == 3
