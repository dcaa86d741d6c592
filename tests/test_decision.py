import asyncio
import json

import pytest

from agents.base import MockLLMClient
from orchestrator.decision import (
    ModelDecisionEngine,
    RuleBasedDecisionEngine,
    ThinkContext,
    downgrade,
    parse_proposals,
)
from orchestrator.models import (
    Capability,
    CapabilityStatus,
    DepartmentConfig,
    DepartmentType,
    GapKind,
    IntelligenceSignal,
    MemoryEntry,
    OutcomeEvaluation,
    RiskLevel,
    StructuredSignal,
)

MKT = DepartmentType.MARKETING


def _run(coro):
    return asyncio.run(coro)


def _capability(code="content_optimization", agent="content_creator", decision_type="create_content",
                handles=("engagement",), risk=RiskLevel.LOW):
    return Capability(
        company_id="acme",
        department=MKT,
        code=code,
        name=code,
        status=CapabilityStatus.TRIAL,
        decision_type=decision_type,
        agent_to_execute=agent,
        handles=list(handles),
        risk_level=risk,
    )


def _signals(*items, source="social_listening", relevance=0.5):
    return IntelligenceSignal(
        company_id="acme",
        source=source,
        structured_signals=[StructuredSignal.from_dict(i) for i in items],
        relevance_score=relevance,
    )


def _context(signals=(), capabilities=(), lessons=(), max_decisions=5):
    return ThinkContext(
        company_id="acme",
        department=MKT,
        config=DepartmentConfig(
            company_id="acme",
            department=MKT,
            allowed_actions=["create_content", "analyze"],
            max_decisions_per_cycle=max_decisions,
        ),
        signals=list(signals),
        capabilities=list(capabilities),
        lessons=list(lessons),
        cycle_id="cycle-1",
    )


def _lesson(outcome, decision_type="create_content"):
    return MemoryEntry(
        company_id="acme",
        department=MKT,
        decision_type=decision_type,
        outcome_evaluation=outcome,
        lesson_learned=f"{decision_type} {outcome.value}",
    )


@pytest.fixture
def rules(engine, settings):
    return RuleBasedDecisionEngine(engine.agent_registry, settings)


def test_covered_signal_becomes_decision(rules):
    context = _context(
        [_signals({"title": "Reels trend", "impact": "high", "topic": "engagement"})],
        [_capability()],
    )
    result = _run(rules.propose(context))

    assert result.observations == []
    decision = result.decisions[0]
    assert decision.decision_type == "create_content"
    assert decision.agent_to_execute == "content_creator"
    assert decision.capability_code == "content_optimization"
    assert decision.priority == "high"
    assert decision.risk.level == RiskLevel.LOW
    assert decision.estimated_cost == 1
    assert decision.cycle_id == "cycle-1"
    assert decision.action_parameters["topic"] == "engagement"


def test_source_name_can_match_capability(rules):
    context = _context(
        [_signals({"title": "New mention"}, source="engagement")],
        [_capability()],
    )
    assert len(_run(rules.propose(context)).decisions) == 1


def test_uncovered_signal_is_a_gap(rules):
    context = _context([_signals({"title": "Price war", "topic": "pricing"})], [_capability()])
    result = _run(rules.propose(context))
    assert result.decisions == []
    assert [(o.kind, o.key) for o in result.observations] == [(GapKind.UNHANDLED_SIGNAL, "pricing")]


def test_unregistered_agent_is_a_gap(rules):
    context = _context(
        [_signals({"title": "Reels trend", "topic": "engagement"})],
        [_capability(agent="ghost_writer")],
    )
    result = _run(rules.propose(context))
    assert result.decisions == []
    assert result.observations[0].kind == GapKind.UNMAPPED_AGENT
    assert result.observations[0].key == "create_content"


def test_negative_lessons_downgrade_priority(rules):
    lessons = [
        _lesson(OutcomeEvaluation.NEGATIVE),
        _lesson(OutcomeEvaluation.NEGATIVE),
        _lesson(OutcomeEvaluation.POSITIVE),
    ]
    context = _context(
        [_signals({"title": "Reels trend", "impact": "high", "topic": "engagement"})],
        [_capability()],
        lessons,
    )
    decision = _run(rules.propose(context)).decisions[0]
    assert decision.priority == "medium"
    assert "mostly negative" in decision.reasoning


def test_balanced_lessons_keep_priority(rules):
    lessons = [_lesson(OutcomeEvaluation.NEGATIVE), _lesson(OutcomeEvaluation.POSITIVE)]
    context = _context(
        [_signals({"title": "Reels trend", "impact": "high", "topic": "engagement"})],
        [_capability()],
        lessons,
    )
    assert _run(rules.propose(context)).decisions[0].priority == "high"


def test_decisions_sorted_and_capped(rules):
    context = _context(
        [
            _signals({"title": "a", "impact": "low", "topic": "engagement"}),
            _signals({"title": "b", "impact": "high", "topic": "engagement"}),
            _signals({"title": "c", "impact": "medium", "topic": "engagement"}),
        ],
        [_capability()],
        max_decisions=2,
    )
    decisions = _run(rules.propose(context)).decisions
    assert [d.description for d in decisions] == ["b", "c"]


def test_downgrade_bottoms_out():
    assert downgrade("critical") == "high"
    assert downgrade("low") == "low"
    assert downgrade("unknown") == "low"


# ========== 模型决策 ==========

def _model(engine, settings, response):
    return ModelDecisionEngine(MockLLMClient(response), engine.agent_registry, settings)


def test_parse_fenced_json():
    text = "```json\n[{\"decision_type\": \"analyze\", \"description\": \"Review reach\"}]\n```"
    proposals = parse_proposals(text)
    assert proposals[0].decision_type == "analyze"
    assert proposals[0].priority == "medium"


def test_parse_wrapped_object():
    proposals = parse_proposals(json.dumps({"decisions": [{"decision_type": "analyze", "description": "x"}]}))
    assert len(proposals) == 1


def test_model_proposals_become_decisions(engine, settings):
    response = json.dumps([
        {
            "decision_type": "create_content",
            "description": "Post a reel",
            "priority": "high",
            "agent_to_execute": "content_creator",
            "risk_factors": ["brand"],
        },
        {
            "decision_type": "segment_audience",
            "description": "Split the list",
            "agent_to_execute": "segment_bot",
        },
    ])
    capabilities = [
        _capability(),
        _capability(code="audience_segmentation", agent="segment_bot", decision_type="segment_audience"),
    ]
    model = _model(engine, settings, response)
    result = _run(model.propose(_context(capabilities=capabilities)))

    assert [d.decision_type for d in result.decisions] == ["create_content"]
    decision = result.decisions[0]
    assert decision.capability_code == "content_optimization"
    # 未声明风险时使用能力的风险等级
    assert decision.risk.level == RiskLevel.LOW
    assert decision.risk.declared_by == "model"
    assert [(o.kind, o.key) for o in result.observations] == [(GapKind.UNMAPPED_AGENT, "segment_audience")]

    messages = model.llm_client.prompts[0]
    assert messages[0]["role"] == "system"
    assert "marketing" in messages[0]["content"]


def test_model_proposals_need_a_covering_capability(engine, settings):
    response = json.dumps([
        {"decision_type": "create_content", "description": "Post a reel", "agent_to_execute": "content_creator"},
    ])
    model = _model(engine, settings, response)

    result = _run(model.propose(_context()))

    assert result.decisions == []
    assert [(o.kind, o.key) for o in result.observations] == [(GapKind.UNHANDLED_SIGNAL, "create_content")]


def test_model_proposal_matched_by_agent_uses_capability(engine, settings):
    response = json.dumps([
        {"decision_type": "schedule_post", "description": "Queue the reel", "agent_to_execute": "content_creator"},
        {"decision_type": "create_content", "description": "Draft a caption"},
    ])
    model = _model(engine, settings, response)

    result = _run(model.propose(_context(capabilities=[_capability()])))

    assert sorted(d.decision_type for d in result.decisions) == ["create_content", "schedule_post"]
    assert {d.agent_to_execute for d in result.decisions} == {"content_creator"}
    assert {d.capability_code for d in result.decisions} == {"content_optimization"}
    assert result.observations == []

def test_unparseable_model_output_falls_back_to_analysis(engine, settings):
    model = _model(engine, settings, "I think you should post more.")
    result = _run(model.propose(_context(capabilities=[_capability()])))

    assert len(result.decisions) == 1
    decision = result.decisions[0]
    assert decision.decision_type == "analyze"
    assert decision.agent_to_execute == "content_creator"
    assert decision.risk.level == RiskLevel.LOW


def test_model_error_without_agents_records_gap(engine, settings):
    model = _model(engine, settings, RuntimeError("upstream 502"))
    result = _run(model.propose(_context()))
    assert result.decisions == []
    assert result.observations[0].kind == GapKind.UNMAPPED_AGENT
