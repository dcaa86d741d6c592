import asyncio

from orchestrator.iq import IQ_CAP, enterprise_iq
from orchestrator.models import DepartmentType, MemoryEntry, OutcomeEvaluation


def _run(coro):
    return asyncio.run(coro)


def test_formula_and_cap():
    assert enterprise_iq(0, 0, 0) == 0
    assert enterprise_iq(3, 4, 2) == 3 * 2 + 4 * 5 + 2 * 10
    assert enterprise_iq(1000, 0, 0) == IQ_CAP


def test_iq_after_one_cycle(engine):
    _run(engine.toggle_autopilot("acme", "marketing", True))
    _run(engine.ingest_intelligence("acme", "social_listening", [
        {"title": "Reels engagement up", "impact": "medium", "topic": "engagement"},
    ]))
    _run(engine.run_cycle("acme", "marketing"))

    iq = _run(engine.enterprise_iq("acme"))

    # 1 个周期 + 1 条正面经验 + 2 个试运行能力
    assert (iq.cycles, iq.lessons, iq.active_capabilities) == (1, 1, 2)
    assert iq.score == 2 + 5 + 20


def test_pending_lessons_and_deprecated_capabilities_do_not_count(engine, repository):
    _run(engine.toggle_autopilot("acme", "marketing", True))
    _run(engine.reject_capability("acme", "marketing", "audience_segmentation"))
    _run(repository.save_lesson(MemoryEntry(
        company_id="acme",
        department=DepartmentType.MARKETING,
        decision_type="create_content",
        outcome_evaluation=OutcomeEvaluation.PENDING,
    )))

    iq = _run(engine.enterprise_iq("acme"))

    assert iq.lessons == 0
    assert iq.active_capabilities == 1
    assert iq.score == 10


def test_iq_is_per_company(engine):
    _run(engine.toggle_autopilot("acme", "marketing", True))
    assert _run(engine.enterprise_iq("other")).score == 0
