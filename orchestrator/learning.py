# Enterprise Autopilot - 学习
"""
记忆与学习（LEARN 阶段）

每次派发记录一条经验:
- failed                         -> negative
- blocked（该类型曾被放行过）     -> negative，否则 neutral
- completed 且指标高于部门基线    -> positive
- completed 且指标不高于基线      -> neutral
- completed 但无可度量指标        -> pending（之后由 report_outcome 或过期处理补评）

pending 经验不计入 IQ，也不参与正面经验计数。
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from orchestrator.models import (
    Decision,
    DepartmentType,
    ExecutionStatus,
    MemoryEntry,
    OutcomeEvaluation,
    Verdict,
    utcnow,
)
from orchestrator.settings import LearningSettings

logger = structlog.get_logger()

EVALUATED = [OutcomeEvaluation.POSITIVE, OutcomeEvaluation.NEGATIVE, OutcomeEvaluation.NEUTRAL]


class LearningStore:
    """记忆与学习存储"""

    def __init__(self, repository, settings: LearningSettings, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.settings = settings
        self.clock = clock

    def measure(self, output: dict) -> Optional[float]:
        """从 Agent 输出中取第一个可度量指标"""
        for key in self.settings.measurable_keys:
            value = (output or {}).get(key)
            if isinstance(value, bool) or value is None:
                continue
            try:
                return float(value)
            except (TypeError, ValueError):
                continue
        return None

    async def _previously_approved(self, decision: Decision) -> bool:
        approved = await self.repository.list_decisions(
            decision.company_id,
            department=decision.department,
            verdict=Verdict.APPROVED,
            limit=500,
        )
        return any(
            d.decision_type == decision.decision_type and d.id != decision.id
            for d in approved
        )

    async def record_outcome(
        self,
        decision: Decision,
        result,
        baseline: float = 0.0,
        cycle_id: Optional[str] = None,
    ) -> MemoryEntry:
        """根据派发结果写入一条经验"""
        now = self.clock()
        lesson = MemoryEntry(
            company_id=decision.company_id,
            department=decision.department,
            decision_type=decision.decision_type,
            decision_id=decision.id,
            cycle_id=cycle_id or decision.cycle_id,
            created_at=now,
        )

        if result.status == ExecutionStatus.FAILED:
            lesson.outcome_evaluation = OutcomeEvaluation.NEGATIVE
            lesson.outcome_score = 0.0
            lesson.lesson_learned = (
                f"{decision.decision_type} via {result.agent_id} failed: {result.error_message}"
            )
        elif result.status == ExecutionStatus.BLOCKED:
            if await self._previously_approved(decision):
                lesson.outcome_evaluation = OutcomeEvaluation.NEGATIVE
                lesson.lesson_learned = (
                    f"{decision.decision_type} was approved before but is now blocked "
                    f"by {result.rule}"
                )
            else:
                lesson.outcome_evaluation = OutcomeEvaluation.NEUTRAL
                lesson.lesson_learned = f"{decision.decision_type} blocked by {result.rule}"
        else:
            metric = self.measure(result.output)
            if metric is None:
                lesson.outcome_evaluation = OutcomeEvaluation.PENDING
                lesson.lesson_learned = f"{decision.decision_type} completed, outcome not yet measurable"
            else:
                self._evaluate_metric(lesson, metric, baseline)

        if not lesson.is_pending:
            lesson.evaluated_at = now
        await self.repository.save_lesson(lesson)

        logger.info(
            "经验已记录",
            company_id=decision.company_id,
            department=decision.department.value,
            decision_id=decision.id,
            outcome=lesson.outcome_evaluation.value,
        )
        return lesson

    @staticmethod
    def _evaluate_metric(lesson: MemoryEntry, metric: float, baseline: float) -> None:
        lesson.outcome_score = metric
        if metric > baseline:
            lesson.outcome_evaluation = OutcomeEvaluation.POSITIVE
            lesson.lesson_learned = f"{lesson.decision_type} beat the baseline ({metric:g} > {baseline:g})"
        else:
            lesson.outcome_evaluation = OutcomeEvaluation.NEUTRAL
            lesson.lesson_learned = f"{lesson.decision_type} did not beat the baseline ({metric:g} <= {baseline:g})"

    async def positive_count(self, company_id: str, department: DepartmentType, decision_type: str) -> int:
        lessons = await self.repository.list_lessons(
            company_id,
            department=department,
            decision_type=decision_type,
            evaluations=[OutcomeEvaluation.POSITIVE],
        )
        return len(lessons)

    async def recent_lessons(
        self,
        company_id: str,
        department: DepartmentType,
        limit: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """最近的已评估经验（THINK 阶段使用）"""
        return await self.repository.list_lessons(
            company_id,
            department=department,
            evaluations=EVALUATED,
            limit=limit or self.settings.recent_lessons_limit,
        )

    async def count_non_pending(self, company_id: str) -> int:
        return len(await self.repository.list_lessons(company_id, evaluations=EVALUATED))

    async def resolve_pending(
        self,
        company_id: str,
        decision_id: str,
        metric_value: float,
        baseline: float = 0.0,
    ) -> Optional[MemoryEntry]:
        """补报指标，完成待定经验的评估；没有待定经验时返回 None"""
        pending = await self.repository.list_lessons(
            company_id, evaluations=[OutcomeEvaluation.PENDING]
        )
        lesson = next((m for m in pending if m.decision_id == decision_id), None)
        if lesson is None:
            return None

        self._evaluate_metric(lesson, float(metric_value), baseline)
        lesson.evaluated_at = self.clock()
        await self.repository.save_lesson(lesson)
        logger.info(
            "待定经验已评估",
            company_id=company_id,
            decision_id=decision_id,
            outcome=lesson.outcome_evaluation.value,
        )
        return lesson

    async def resolve_stale_pending(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        older_than_days: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """长期无法度量的待定经验转为 neutral"""
        days = older_than_days if older_than_days is not None else self.settings.stale_pending_days
        now = self.clock()
        stale = await self.repository.list_lessons(
            company_id,
            department=department,
            evaluations=[OutcomeEvaluation.PENDING],
            before=now - timedelta(days=days),
        )
        for lesson in stale:
            lesson.outcome_evaluation = OutcomeEvaluation.NEUTRAL
            lesson.lesson_learned = (
                f"{lesson.decision_type}: no measurable outcome after {days} days"
            )
            lesson.evaluated_at = now
            await self.repository.save_lesson(lesson)

        if stale:
            logger.info("过期待定经验已处理", company_id=company_id, count=len(stale))
        return stale
