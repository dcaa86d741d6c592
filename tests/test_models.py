import pytest

from orchestrator.errors import InvalidTransitionError
from orchestrator.models import (
    Capability,
    CapabilitySource,
    CapabilityStatus,
    Decision,
    DepartmentConfig,
    DepartmentType,
    LogStatus,
    MaturityLevel,
    Phase,
    ReviewerTier,
    Verdict,
    payload_of,
)


def _decision(**kwargs) -> Decision:
    return Decision(
        company_id="acme",
        department=DepartmentType.MARKETING,
        decision_type=kwargs.pop("decision_type", "create_content"),
        description=kwargs.pop("description", "Write a post"),
        **kwargs,
    )


def test_verdict_first_assignment_accepts_any_verdict():
    for verdict in (Verdict.APPROVED, Verdict.BLOCKED, Verdict.REQUIRES_APPROVAL, Verdict.ESCALATED):
        d = _decision()
        d.assign_verdict(verdict, "rule")
        assert d.verdict == verdict


def test_verdict_review_can_resolve_either_way():
    d = _decision()
    d.assign_verdict(Verdict.REQUIRES_APPROVAL, "medium_risk_review")
    d.assign_verdict(Verdict.APPROVED, "reviewer_approved")
    assert d.verdict == Verdict.APPROVED
    assert d.guardrail_rule == "reviewer_approved"

    e = _decision()
    e.assign_verdict(Verdict.ESCALATED, "high_risk_escalation")
    e.assign_verdict(Verdict.BLOCKED, "reviewer_rejected")
    assert e.verdict == Verdict.BLOCKED


def test_blocked_is_terminal():
    d = _decision()
    d.assign_verdict(Verdict.BLOCKED, "critical_risk")
    with pytest.raises(InvalidTransitionError):
        d.assign_verdict(Verdict.APPROVED, "reviewer_approved")


def test_approved_can_only_fall_back_to_blocked():
    d = _decision()
    d.assign_verdict(Verdict.APPROVED, "low_risk")
    with pytest.raises(InvalidTransitionError):
        d.assign_verdict(Verdict.REQUIRES_APPROVAL, "medium_risk_review")
    d.assign_verdict(Verdict.BLOCKED, "budget_exhausted_at_dispatch")
    assert d.verdict == Verdict.BLOCKED


def test_action_taken_only_once():
    d = _decision()
    d.mark_action_taken()
    with pytest.raises(InvalidTransitionError):
        d.mark_action_taken()


def test_legacy_strings_map_to_members():
    assert Verdict.parse("passed") == Verdict.APPROVED
    assert Verdict.parse("sent_to_approval") == Verdict.REQUIRES_APPROVAL
    assert Verdict.parse("something_else") == Verdict.UNKNOWN
    assert Verdict.parse(None) is None
    assert Phase.parse("error") == Phase.UNKNOWN
    assert LogStatus.parse("error") == LogStatus.FAILED
    assert CapabilityStatus.parse("seeded") == CapabilityStatus.PROPOSED
    assert CapabilitySource.parse("ai_generated") == CapabilitySource.AI_PROPOSED
    assert MaturityLevel.parse("enterprise") == MaturityLevel.STARTER


def test_unknown_department_raises():
    with pytest.raises(ValueError):
        DepartmentType.parse("research")


def test_maturity_ordering():
    assert MaturityLevel.SCALING.reaches(MaturityLevel.GROWING)
    assert MaturityLevel.GROWING.reaches(MaturityLevel.GROWING)
    assert not MaturityLevel.STARTER.reaches(MaturityLevel.GROWING)


def test_reviewer_tier_coverage():
    assert ReviewerTier.EXECUTIVE.covers(ReviewerTier.EXECUTIVE)
    assert ReviewerTier.EXECUTIVE.covers(ReviewerTier.STANDARD)
    assert ReviewerTier.STANDARD.covers(ReviewerTier.STANDARD)
    assert not ReviewerTier.STANDARD.covers(ReviewerTier.EXECUTIVE)


def test_capability_covers_topic_or_source():
    cap = Capability(
        company_id="acme",
        department=DepartmentType.MARKETING,
        code="content_optimization",
        name="Content",
        handles=["Engagement", "social_listening"],
    )
    assert cap.covers("engagement")
    assert cap.covers("", "social_listening")
    assert not cap.covers("pricing", "news")


def test_decision_from_legacy_record():
    d = Decision.from_dict({
        "company_id": "acme",
        "department": "sales",
        "decision_type": "qualify_lead",
        "guardrail_result": "passed",
        "risk": {"risk_level": "low", "factors": ["impact:low"]},
    })
    assert d.verdict == Verdict.APPROVED
    assert d.risk.level.value == "low"
    assert d.department == DepartmentType.SALES


def test_department_config_reads_legacy_maturity_field():
    config = DepartmentConfig.from_dict({
        "company_id": "acme",
        "department": "legal",
        "maturity_level_required": "growing",
        "daily_credit_cap": 40,
    })
    assert config.required_maturity == MaturityLevel.GROWING
    assert config.daily_credit_cap == 40
    assert config.autopilot_enabled is False


def test_payload_of_normalizes_agent_output():
    assert payload_of({"a": 1}) == {"a": 1}
    assert payload_of(None) == {}
    assert payload_of("done") == {"value": "done"}
