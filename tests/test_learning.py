import asyncio

import pytest

from orchestrator.execution import ExecutionResult
from orchestrator.learning import LearningStore
from orchestrator.models import (
    Decision,
    DepartmentType,
    ExecutionStatus,
    OutcomeEvaluation,
    Verdict,
)
from orchestrator.settings import LearningSettings

MKT = DepartmentType.MARKETING


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def learning(repository, clock):
    return LearningStore(repository, LearningSettings(), clock=clock)


def _decision(decision_type="create_content", verdict=Verdict.APPROVED):
    decision = Decision(
        company_id="acme",
        department=MKT,
        decision_type=decision_type,
        description="Write a post",
        agent_to_execute="content_creator",
    )
    decision.assign_verdict(verdict, "low_risk")
    return decision


def _result(decision, status=ExecutionStatus.COMPLETED, output=None, **kwargs):
    return ExecutionResult(
        decision_id=decision.id,
        status=status,
        agent_id="content_creator",
        output=output or {},
        **kwargs,
    )


def test_failed_dispatch_is_negative(learning, clock):
    decision = _decision()
    lesson = _run(learning.record_outcome(
        decision, _result(decision, ExecutionStatus.FAILED, error_message="timeout")
    ))
    assert lesson.outcome_evaluation == OutcomeEvaluation.NEGATIVE
    assert "timeout" in lesson.lesson_learned
    assert lesson.evaluated_at == clock()


def test_metric_above_baseline_is_positive(learning):
    decision = _decision()
    lesson = _run(learning.record_outcome(decision, _result(decision, output={"engagement": 12}), baseline=10))
    assert lesson.outcome_evaluation == OutcomeEvaluation.POSITIVE
    assert lesson.outcome_score == 12.0


def test_metric_at_baseline_is_neutral(learning):
    decision = _decision()
    lesson = _run(learning.record_outcome(decision, _result(decision, output={"score": 10}), baseline=10))
    assert lesson.outcome_evaluation == OutcomeEvaluation.NEUTRAL


def test_no_measurable_output_is_pending(learning):
    decision = _decision()
    lesson = _run(learning.record_outcome(decision, _result(decision, output={"posted": True})))
    assert lesson.outcome_evaluation == OutcomeEvaluation.PENDING
    assert lesson.evaluated_at is None


def test_measure_skips_non_numeric_values(learning):
    assert learning.measure({"metric_value": "n/a", "engagement": "7"}) == 7.0
    assert learning.measure({"metric_value": True}) is None
    assert learning.measure({}) is None


def test_blocked_without_history_is_neutral(learning):
    decision = _decision(verdict=Verdict.BLOCKED)
    lesson = _run(learning.record_outcome(
        decision, _result(decision, ExecutionStatus.BLOCKED, rule="budget_exhausted_at_dispatch")
    ))
    assert lesson.outcome_evaluation == OutcomeEvaluation.NEUTRAL


def test_blocked_after_earlier_approval_is_negative(learning, repository):
    _run(repository.save_decision(_decision()))
    decision = _decision(verdict=Verdict.BLOCKED)
    lesson = _run(learning.record_outcome(
        decision, _result(decision, ExecutionStatus.BLOCKED, rule="budget_exhausted_at_dispatch")
    ))
    assert lesson.outcome_evaluation == OutcomeEvaluation.NEGATIVE


def test_pending_lessons_are_not_counted(learning):
    decision = _decision()
    _run(learning.record_outcome(decision, _result(decision)))
    _run(learning.record_outcome(decision, _result(decision, output={"engagement": 3})))

    assert _run(learning.count_non_pending("acme")) == 1
    assert _run(learning.positive_count("acme", MKT, "create_content")) == 1
    recent = _run(learning.recent_lessons("acme", MKT))
    assert [m.outcome_evaluation for m in recent] == [OutcomeEvaluation.POSITIVE]


def test_resolve_pending_with_reported_metric(learning):
    decision = _decision()
    _run(learning.record_outcome(decision, _result(decision)))

    lesson = _run(learning.resolve_pending("acme", decision.id, 4.5, baseline=2))

    assert lesson.outcome_evaluation == OutcomeEvaluation.POSITIVE
    assert lesson.outcome_score == 4.5
    assert lesson.evaluated_at is not None
    # 已评估后不能再补报
    assert _run(learning.resolve_pending("acme", decision.id, 9)) is None


def test_stale_pending_become_neutral(learning, clock):
    decision = _decision()
    _run(learning.record_outcome(decision, _result(decision)))

    clock.advance(days=6)
    assert _run(learning.resolve_stale_pending("acme")) == []

    clock.advance(days=2)
    stale = _run(learning.resolve_stale_pending("acme"))
    assert len(stale) == 1
    assert stale[0].outcome_evaluation == OutcomeEvaluation.NEUTRAL
    assert _run(learning.count_non_pending("acme")) == 1
