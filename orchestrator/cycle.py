# Enterprise Autopilot - 周期编排
"""
自动驾驶周期编排

SENSE → THINK → GUARD → ACT → LEARN

- 每个阶段写一条执行日志（decision_id 为空）；失败的阶段写 failed 日志后终止周期
- 周期失败或取消时收尾本周期的决策：未裁决的转人工审批，已放行未派发的改判 blocked
- ACT 开始后不再响应取消，LEARN 总是紧随 ACT
- 单次派发的日志由派发器写入（decision_id 不为空），额度按派发日志汇总
- 运行期间后台任务定时续约
"""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from orchestrator.decision import ThinkContext, ThinkResult
from orchestrator.errors import CycleCancelledError, PhaseError
from orchestrator.guardrail import BudgetState, GuardrailPolicyEngine, GuardrailRule, GuardrailVerdict
from orchestrator.models import (
    CycleSummary,
    Decision,
    DepartmentConfig,
    DepartmentType,
    ExecutionLogEntry,
    ExecutionStatus,
    IntelligenceSignal,
    LogStatus,
    MaturityLevel,
    Phase,
    ReviewerTier,
    Verdict,
    new_id,
    utcnow,
)
from orchestrator.state_machine import CycleLease, CycleState, CycleStateMachine

logger = structlog.get_logger()


@dataclass
class PhaseOutcome:
    """阶段日志的计数与明细"""
    details: dict = field(default_factory=dict)
    content_generated: int = 0
    content_approved: int = 0
    content_rejected: int = 0
    content_pending_review: int = 0
    credits_consumed: int = 0


@dataclass
class CycleContext:
    """周期内各阶段共享的数据"""
    cycle_id: str
    company_id: str
    department: DepartmentType
    config: DepartmentConfig
    summary: CycleSummary
    maturity: MaturityLevel = MaturityLevel.STARTER
    signals: list[IntelligenceSignal] = field(default_factory=list)
    think: ThinkResult = field(default_factory=ThinkResult)
    approved: list[Decision] = field(default_factory=list)
    executions: list[tuple[Decision, object]] = field(default_factory=list)
    submitted: set[str] = field(default_factory=set)
    learned: set[str] = field(default_factory=set)


class CycleOrchestrator:
    """周期编排器"""

    def __init__(
        self,
        repository,
        settings,
        departments,
        intelligence,
        decision_engine,
        guardrail: GuardrailPolicyEngine,
        approvals,
        dispatcher,
        ledger,
        learning,
        genesis,
        leases,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.settings = settings
        self.departments = departments
        self.intelligence = intelligence
        self.decision_engine = decision_engine
        self.guardrail = guardrail
        self.approvals = approvals
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.learning = learning
        self.genesis = genesis
        self.leases = leases
        self.clock = clock

    # ============================================
    # 入口
    # ============================================

    async def run_cycle(self, company_id: str, department) -> CycleSummary:
        """运行一个完整周期

        Raises:
            UnknownDepartmentError / DepartmentDisabledError / DepartmentLockedError
            CycleInFlightError: 同一部门已有周期在运行
        """
        dept = self.departments.parse_department(department)
        config = await self.departments.require_runnable(company_id, dept)

        cycle_id = new_id()
        lease = self.leases.acquire(company_id, dept, cycle_id)
        summary = CycleSummary(
            cycle_id=cycle_id,
            company_id=company_id,
            department=dept,
            started_at=self.clock(),
        )
        ctx = CycleContext(cycle_id, company_id, dept, config, summary)
        machine = CycleStateMachine(cycle_id, company_id, dept)
        log = logger.bind(company_id=company_id, department=dept.value, cycle_id=cycle_id)
        log.info("周期开始")

        heartbeat = asyncio.create_task(self._heartbeat(lease))
        try:
            await self._run_phases(ctx, machine, lease)
            if summary.status == "completed":
                machine.trigger("finish")
                await self._stamp_config(company_id, dept)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            self.leases.release(lease)

        summary.finished_at = self.clock()
        log.info(
            "周期结束",
            status=summary.status,
            decisions=summary.decisions_produced,
            credits=summary.credits_consumed,
            execution_time_ms=summary.execution_time_ms,
        )
        return summary

    async def _heartbeat(self, lease: CycleLease) -> None:
        interval = self.settings.cycle.heartbeat_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if not self.leases.heartbeat(lease):
                logger.warning("租约已失效", cycle_id=lease.cycle_id)
                return

    async def _stamp_config(self, company_id: str, department: DepartmentType) -> None:
        # 重新读取，避免覆盖周期期间的开关变更
        config = await self.departments.get_config(company_id, department)
        now = self.clock()
        config.total_cycles_run += 1
        config.last_execution_at = now
        config.updated_at = now
        await self.repository.save_department_config(config)

    # ============================================
    # 阶段调度
    # ============================================

    async def _run_phases(self, ctx: CycleContext, machine: CycleStateMachine, lease: CycleLease) -> None:
        phases: list[tuple[str, Phase, Callable[[CycleContext], Awaitable[PhaseOutcome]]]] = [
            ("sense", Phase.SENSE, self._sense),
            ("think", Phase.THINK, self._think),
            ("guard", Phase.GUARD, self._guard),
            ("act", Phase.ACT, self._act),
            ("learn", Phase.LEARN, self._learn),
        ]
        summary = ctx.summary

        for trigger, phase, handler in phases:
            if self.leases.is_cancel_requested(lease):
                if machine.state == CycleState.ACTING:
                    # 已派发的执行必须由 LEARN 记录
                    logger.info("ACT 后收到取消请求，继续 LEARN", cycle_id=ctx.cycle_id)
                else:
                    error = CycleCancelledError(
                        f"Cycle {ctx.cycle_id} cancelled before {phase.value}",
                        cycle_id=ctx.cycle_id,
                        phase=phase.value,
                    )
                    if machine.state != CycleState.IDLE:
                        machine.trigger("cancel")
                    summary.status = "cancelled"
                    summary.error = error.message
                    logger.info("周期已取消", cycle_id=ctx.cycle_id, before_phase=phase.value)
                    await self._settle(ctx, GuardrailRule.CYCLE_CANCELLED, error.message)
                    return

            machine.trigger(trigger)
            started_at = self.clock()
            try:
                outcome = await handler(ctx)
            except Exception as e:
                error = PhaseError(phase.value, e)
                await self._write_phase_log(ctx, phase, LogStatus.FAILED, started_at, error=error.message)
                machine.trigger("fail")
                summary.status = "failed"
                summary.failed_phase = phase.value
                summary.error = error.message
                logger.error(
                    "阶段执行失败",
                    company_id=ctx.company_id,
                    department=ctx.department.value,
                    cycle_id=ctx.cycle_id,
                    phase=phase.value,
                    error=str(e),
                )
                try:
                    await self._settle(ctx, GuardrailRule.CYCLE_FAILED, error.message)
                except Exception as settle_error:
                    summary.error = f"{error.message}; settle failed: {settle_error}"
                    logger.error(
                        "失败周期的决策收尾异常",
                        cycle_id=ctx.cycle_id,
                        phase=phase.value,
                        error=str(settle_error),
                    )
                return

            await self._write_phase_log(ctx, phase, LogStatus.COMPLETED, started_at, outcome=outcome)

    async def _settle(self, ctx: CycleContext, rule: GuardrailRule, reason: str) -> None:
        """周期中断后收尾：每个决策都进入终态或可审批的待定状态"""
        executed = {decision.id for decision, _ in ctx.executions}
        settled: Counter = Counter()

        for decision in ctx.think.decisions:
            if decision.verdict is None:
                # 未裁决的决策按失败安全方向转人工审批
                result = GuardrailVerdict(
                    Verdict.REQUIRES_APPROVAL, rule.value, reason, ReviewerTier.STANDARD
                )
            elif decision.verdict == Verdict.APPROVED and not decision.action_taken and decision.id not in executed:
                result = GuardrailVerdict(Verdict.BLOCKED, rule.value, reason)
            elif decision.verdict.needs_review and decision.id not in ctx.submitted:
                tier = ReviewerTier.EXECUTIVE if decision.verdict == Verdict.ESCALATED else ReviewerTier.STANDARD
                await self.approvals.submit(decision, GuardrailVerdict(
                    decision.verdict, decision.guardrail_rule or rule.value, reason, tier
                ))
                ctx.submitted.add(decision.id)
                settled["resubmitted"] += 1
                continue
            else:
                continue

            decision.assign_verdict(result.verdict, result.rule, result.reason)
            await self.repository.save_decision(decision)
            await self.repository.append_log(self.guardrail.intervention_entry(
                decision,
                result.verdict,
                result.rule,
                result.reason,
                cycle_id=ctx.cycle_id,
                details=result.to_dict(),
                now=self.clock(),
            ))
            if result.verdict.needs_review:
                await self.approvals.submit(decision, result)
                ctx.submitted.add(decision.id)
            settled[result.verdict.value] += 1

        # 已派发但未进入 LEARN 的执行补记经验
        for decision, execution in ctx.executions:
            if decision.id in ctx.learned:
                continue
            await self.learning.record_outcome(
                decision, execution, baseline=ctx.config.outcome_baseline, cycle_id=ctx.cycle_id
            )
            ctx.learned.add(decision.id)
            ctx.summary.lessons_recorded += 1

        if ctx.think.decisions:
            ctx.summary.verdicts = dict(Counter(
                d.verdict.value for d in ctx.think.decisions if d.verdict is not None
            ))
        if settled:
            logger.warning(
                "中断周期的决策已收尾",
                company_id=ctx.company_id,
                department=ctx.department.value,
                cycle_id=ctx.cycle_id,
                rule=rule.value,
                settled=dict(settled),
            )

    async def _write_phase_log(
        self,
        ctx: CycleContext,
        phase: Phase,
        status: LogStatus,
        started_at: datetime,
        outcome: Optional[PhaseOutcome] = None,
        error: Optional[str] = None,
    ) -> None:
        outcome = outcome or PhaseOutcome()
        finished_at = self.clock()
        await self.repository.append_log(ExecutionLogEntry(
            company_id=ctx.company_id,
            department=ctx.department,
            phase=phase,
            status=status,
            cycle_id=ctx.cycle_id,
            started_at=started_at,
            finished_at=finished_at,
            execution_time_ms=int((finished_at - started_at).total_seconds() * 1000),
            content_generated=outcome.content_generated,
            content_approved=outcome.content_approved,
            content_rejected=outcome.content_rejected,
            content_pending_review=outcome.content_pending_review,
            credits_consumed=outcome.credits_consumed,
            error_message=error,
            details=outcome.details,
            created_at=finished_at,
        ))

    # ============================================
    # 各阶段
    # ============================================

    async def _sense(self, ctx: CycleContext) -> PhaseOutcome:
        ctx.maturity = await self.departments.maturity_provider.get_maturity(ctx.company_id)
        ctx.signals = await self.intelligence.sense(ctx.company_id, ctx.maturity)
        return PhaseOutcome(details={
            "maturity": ctx.maturity.value,
            "signals": sum(len(s.structured_signals) for s in ctx.signals),
            "sources": sorted({s.source for s in ctx.signals}),
        })

    async def _think(self, ctx: CycleContext) -> PhaseOutcome:
        capabilities = await self.genesis.store.list_active(ctx.company_id, ctx.department)
        lessons = await self.learning.recent_lessons(ctx.company_id, ctx.department)
        ctx.think = await self.decision_engine.propose(ThinkContext(
            company_id=ctx.company_id,
            department=ctx.department,
            config=ctx.config,
            signals=ctx.signals,
            capabilities=capabilities,
            lessons=lessons,
            maturity=ctx.maturity,
            cycle_id=ctx.cycle_id,
        ))

        now = self.clock()
        for decision in ctx.think.decisions:
            decision.cycle_id = ctx.cycle_id
            decision.created_at = decision.updated_at = now
            await self.repository.save_decision(decision)

        observations = [o.to_dict() for o in ctx.think.observations]
        ctx.summary.decisions_produced = len(ctx.think.decisions)
        ctx.summary.gap_observations = observations
        return PhaseOutcome(details={
            "decisions": [d.id for d in ctx.think.decisions],
            "capabilities": [c.code for c in capabilities],
            "gap_observations": observations,
        })

    async def _guard(self, ctx: CycleContext) -> PhaseOutcome:
        flags = await self.departments.data_provider.get_company_flags(ctx.company_id)
        budget = await self.ledger.snapshot(ctx.company_id, ctx.config.daily_credit_cap)
        # 本周期已放行决策的预计消耗
        planned = 0
        verdicts: Counter = Counter()
        pending_review = blocked = 0

        for decision in ctx.think.decisions:
            state = BudgetState(budget.daily_cap, budget.consumed, budget.reserved + planned)
            positives = await self.learning.positive_count(
                ctx.company_id, ctx.department, decision.decision_type
            )
            result = self.guardrail.evaluate(
                decision,
                state,
                positives,
                policy=ctx.config.guardrails,
                company_flags=flags,
            )
            decision.assign_verdict(result.verdict, result.rule, result.reason)
            await self.repository.save_decision(decision)
            verdicts[result.verdict.value] += 1

            if result.approved:
                planned += decision.estimated_cost
                ctx.approved.append(decision)
                continue

            await self.repository.append_log(self.guardrail.intervention_entry(
                decision,
                result.verdict,
                result.rule,
                result.reason,
                cycle_id=ctx.cycle_id,
                details=result.to_dict(),
                now=self.clock(),
            ))
            if result.verdict.needs_review:
                await self.approvals.submit(decision, result)
                ctx.submitted.add(decision.id)
                pending_review += 1
            else:
                blocked += 1

        ctx.summary.verdicts = dict(verdicts)
        return PhaseOutcome(
            details={"verdicts": dict(verdicts), "budget": budget.to_dict(), "planned_credits": planned},
            content_approved=len(ctx.approved),
            content_rejected=blocked,
            content_pending_review=pending_review,
        )

    async def _act(self, ctx: CycleContext) -> PhaseOutcome:
        outcome = PhaseOutcome()
        results = []
        for decision in ctx.approved:
            result = await self.dispatcher.execute(
                decision, ctx.config.daily_credit_cap, cycle_id=ctx.cycle_id
            )
            ctx.executions.append((decision, result))
            results.append(result.to_dict())
            outcome.credits_consumed += result.credits_consumed
            generated = result.output.get("content_generated")
            if isinstance(generated, (int, float)) and not isinstance(generated, bool):
                outcome.content_generated += int(generated)

            if result.status == ExecutionStatus.COMPLETED:
                ctx.summary.executions_completed += 1
            elif result.status == ExecutionStatus.FAILED:
                ctx.summary.executions_failed += 1
            else:
                ctx.summary.executions_blocked += 1

        ctx.summary.credits_consumed = outcome.credits_consumed
        outcome.details = {"executions": results}
        return outcome

    async def _learn(self, ctx: CycleContext) -> PhaseOutcome:
        lessons = []
        for decision, result in ctx.executions:
            lesson = await self.learning.record_outcome(
                decision, result, baseline=ctx.config.outcome_baseline, cycle_id=ctx.cycle_id
            )
            lessons.append(lesson)
            ctx.learned.add(decision.id)

        evidence = await self.genesis.detect_gaps(
            ctx.company_id, ctx.department, ctx.think.observations, cycle_id=ctx.cycle_id
        )
        proposed = await self.genesis.propose_from_gaps(ctx.company_id, ctx.department, evidence)

        ctx.summary.lessons_recorded = len(lessons)
        ctx.summary.capabilities_proposed = [c.code for c in proposed]
        return PhaseOutcome(details={
            "lessons": {m.decision_id: m.outcome_evaluation.value for m in lessons},
            "gap_evidence": evidence.to_dict(),
            "capabilities_proposed": ctx.summary.capabilities_proposed,
        })
