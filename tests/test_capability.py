import asyncio

import pytest

from orchestrator.capability import CapabilityGenesisEngine, base_code, unique_code
from orchestrator.errors import CapabilityNotFoundError, InvalidTransitionError
from orchestrator.models import (
    Capability,
    CapabilityGapObservation,
    CapabilitySource,
    CapabilityStatus,
    Decision,
    DepartmentType,
    GapKind,
    MaturityLevel,
    MemoryEntry,
    OutcomeEvaluation,
    Verdict,
)

MKT = DepartmentType.MARKETING


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def genesis(repository, settings, engine, clock):
    return CapabilityGenesisEngine(repository, settings, engine.agent_registry, clock=clock)


def _proposal(code="pricing_response", **kwargs):
    return Capability(
        company_id="acme",
        department=MKT,
        code=code,
        name=code,
        source=CapabilitySource.AI_PROPOSED,
        **kwargs,
    )


def test_unique_code_versions():
    assert unique_code("pricing_response", []) == "pricing_response"
    assert unique_code("pricing_response", ["pricing_response"]) == "pricing_response_v2"
    assert unique_code("pricing_response", ["pricing_response", "pricing_response_v2"]) == "pricing_response_v3"
    assert base_code("pricing_response_v3") == "pricing_response"


def test_lifecycle_transitions(genesis):
    cap = _run(genesis.store.create(_proposal()))
    assert cap.status == CapabilityStatus.PROPOSED

    cap = _run(genesis.activate("acme", MKT, cap.code, "trial"))
    assert cap.status == CapabilityStatus.TRIAL
    assert cap.activated_at is not None
    assert cap.trial_expires_at is not None

    cap = _run(genesis.activate("acme", MKT, cap.code, "active"))
    assert cap.status == CapabilityStatus.ACTIVE
    assert cap.trial_expires_at is None


def test_proposed_cannot_skip_trial(genesis):
    _run(genesis.store.create(_proposal()))
    with pytest.raises(InvalidTransitionError):
        _run(genesis.activate("acme", MKT, "pricing_response", "active"))


def test_deprecated_is_terminal(genesis):
    _run(genesis.store.create(_proposal()))
    cap = _run(genesis.reject("acme", MKT, "pricing_response", "not useful"))
    assert cap.status == CapabilityStatus.DEPRECATED
    assert cap.deprecated_at is not None

    with pytest.raises(InvalidTransitionError):
        _run(genesis.activate("acme", MKT, "pricing_response", "trial"))


def test_active_cannot_be_deprecated(genesis):
    _run(genesis.store.create(_proposal()))
    _run(genesis.activate("acme", MKT, "pricing_response", "trial"))
    _run(genesis.activate("acme", MKT, "pricing_response", "active"))
    with pytest.raises(InvalidTransitionError):
        _run(genesis.reject("acme", MKT, "pricing_response"))


def test_unknown_capability(genesis):
    with pytest.raises(CapabilityNotFoundError):
        _run(genesis.activate("acme", MKT, "missing", "trial"))


def test_duplicate_code_is_rejected(genesis):
    _run(genesis.store.create(_proposal()))
    with pytest.raises(InvalidTransitionError):
        _run(genesis.store.create(_proposal()))


def test_seeding_respects_maturity_and_is_idempotent(genesis):
    seeded = _run(genesis.seed_capabilities("acme", MKT, MaturityLevel.STARTER))
    assert [c.code for c in seeded] == ["content_optimization"]

    seeded = _run(genesis.seed_capabilities("acme", MKT, MaturityLevel.ESTABLISHED))
    assert {c.code for c in seeded} == {"audience_segmentation", "ab_testing_auto"}

    assert _run(genesis.seed_capabilities("acme", MKT, MaturityLevel.SCALING)) == []


def test_unhandled_signals_become_proposals(genesis):
    observations = [
        CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "pricing", "Competitor cut prices"),
        CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "regulation", "New ad rules"),
    ]
    evidence = _run(genesis.detect_gaps("acme", MKT, observations))
    assert {t.key for t in evidence.unhandled_signals} == {"pricing", "regulation"}

    proposed = _run(genesis.propose_from_gaps("acme", MKT, evidence))

    codes = {c.code: c for c in proposed}
    assert set(codes) == {"pricing_response", "regulation_response"}
    pricing = codes["pricing_response"]
    assert pricing.source == CapabilitySource.AI_PROPOSED
    assert pricing.handles == ["pricing"]
    assert pricing.gap_evidence.unhandled_signals[0].key == "pricing"
    # 低风险且有可执行 Agent 的提案直接进入试运行
    assert pricing.agent_to_execute is not None
    assert pricing.status == CapabilityStatus.TRIAL


def test_too_few_gaps_propose_nothing(genesis):
    evidence = _run(genesis.detect_gaps(
        "acme", MKT, [CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "pricing", "")]
    ))
    assert evidence.total == 1
    assert _run(genesis.propose_from_gaps("acme", MKT, evidence)) == []


def test_covered_signals_are_not_gaps(genesis):
    _run(genesis.seed_capabilities("acme", MKT, MaturityLevel.GROWING))
    evidence = _run(genesis.detect_gaps(
        "acme", MKT, [CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "engagement", "")]
    ))
    assert evidence.unhandled_signals == []


def test_unmapped_agent_needs_threshold(genesis):
    one = [CapabilityGapObservation(GapKind.UNMAPPED_AGENT, "publish", "no agent")]
    assert _run(genesis.detect_gaps("acme", MKT, one)).unmapped_agents == []


def test_deprecated_gap_is_reproposed_with_new_version(genesis):
    observations = [
        CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "pricing", ""),
        CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "regulation", ""),
    ]
    evidence = _run(genesis.detect_gaps("acme", MKT, observations))
    _run(genesis.propose_from_gaps("acme", MKT, evidence))
    _run(genesis.reject("acme", MKT, "pricing_response"))

    observations.append(CapabilityGapObservation(GapKind.UNHANDLED_SIGNAL, "shipping", ""))
    evidence = _run(genesis.detect_gaps("acme", MKT, observations))
    proposed = _run(genesis.propose_from_gaps("acme", MKT, evidence))

    # regulation_response 仍然存活，不再重复提出
    assert {c.code for c in proposed} == {"pricing_response_v2", "shipping_response"}
    old = _run(genesis.store.get("acme", MKT, "pricing_response"))
    assert old.status == CapabilityStatus.DEPRECATED


def test_recurring_blocks_and_patterns(genesis, repository, clock):
    for _ in range(3):
        d = Decision(company_id="acme", department=MKT, decision_type="publish",
                     description="post", created_at=clock())
        d.assign_verdict(Verdict.BLOCKED, "outside_active_hours")
        _run(repository.save_decision(d))
        _run(repository.save_lesson(MemoryEntry(
            company_id="acme", department=MKT, decision_type="reply_comments",
            outcome_evaluation=OutcomeEvaluation.POSITIVE, created_at=clock(),
        )))

    evidence = _run(genesis.detect_gaps("acme", MKT))

    assert [(t.key, t.count, t.detail) for t in evidence.recurring_blocks] == [
        ("publish", 3, "outside_active_hours")
    ]
    assert [t.key for t in evidence.repeated_patterns] == ["reply_comments"]

    proposed = _run(genesis.propose_from_gaps("acme", MKT, evidence))
    assert {c.code for c in proposed} == {"publish_guardrail_review", "reply_comments_automation"}
    # 非低风险或没有可执行 Agent 的提案等待人工激活
    assert all(c.status == CapabilityStatus.PROPOSED for c in proposed)


def test_expired_trial_promotion(genesis, repository, clock):
    _run(genesis.seed_capabilities("acme", MKT, MaturityLevel.GROWING))
    _run(repository.save_lesson(MemoryEntry(
        company_id="acme", department=MKT, decision_type="analyze",
        outcome_evaluation=OutcomeEvaluation.NEGATIVE, created_at=clock.advance(days=1),
    )))
    clock.advance(days=15)

    changed = {c.code: c.status for c in _run(genesis.promote_expired_trials("acme"))}

    assert changed == {
        "content_optimization": CapabilityStatus.ACTIVE,
        "audience_segmentation": CapabilityStatus.DEPRECATED,
    }


def test_stale_ai_proposals_expire(genesis, clock):
    _run(genesis.store.create(_proposal()))
    clock.advance(days=31)
    expired = _run(genesis.expire_stale_proposals("acme"))
    assert [c.code for c in expired] == ["pricing_response"]
