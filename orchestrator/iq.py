# Enterprise Autopilot - Enterprise IQ
"""
企业智商评分

IQ = min(999, 周期数 * 2 + 已评估经验数 * 5 + 存活能力数 * 10)

按需从存储计算，不落库。
"""

from dataclasses import dataclass

from orchestrator.models import ACTIVE_CAPABILITY_STATUSES, OutcomeEvaluation

IQ_CAP = 999


def enterprise_iq(cycles: int, non_pending_lessons: int, active_capabilities: int) -> int:
    return min(IQ_CAP, cycles * 2 + non_pending_lessons * 5 + active_capabilities * 10)


@dataclass
class EnterpriseIQ:
    company_id: str
    score: int
    cycles: int
    lessons: int
    active_capabilities: int

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "score": self.score,
            "cycles": self.cycles,
            "lessons": self.lessons,
            "active_capabilities": self.active_capabilities,
        }


async def compute_enterprise_iq(repository, company_id: str) -> EnterpriseIQ:
    configs = await repository.list_department_configs(company_id)
    cycles = sum(c.total_cycles_run for c in configs)
    lessons = await repository.list_lessons(
        company_id,
        evaluations=[OutcomeEvaluation.POSITIVE, OutcomeEvaluation.NEGATIVE, OutcomeEvaluation.NEUTRAL],
    )
    capabilities = await repository.list_capabilities(company_id, statuses=ACTIVE_CAPABILITY_STATUSES)
    return EnterpriseIQ(
        company_id=company_id,
        score=enterprise_iq(cycles, len(lessons), len(capabilities)),
        cycles=cycles,
        lessons=len(lessons),
        active_capabilities=len(capabilities),
    )
