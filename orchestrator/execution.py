# Enterprise Autopilot - 执行派发
"""
执行派发（ACT 阶段）与额度账本

- 额度按公司、按 UTC 自然日汇总（执行日志中 decision_id 不为空的记录）
- 同一公司的检查与预留在 asyncio.Lock 内串行，避免并发超额
- Agent 调用无论成功失败都按 credits_per_use 计费
- 派发失败不在此重试，留给后续周期
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import structlog

from agents.base import AgentResult
from orchestrator.errors import BudgetExhaustedError, DuplicateDispatchError, InvalidTransitionError
from orchestrator.guardrail import BudgetState, GuardrailPolicyEngine, GuardrailRule
from orchestrator.models import (
    Decision,
    ExecutionLogEntry,
    ExecutionStatus,
    LogStatus,
    Phase,
    Verdict,
    payload_of,
    utcnow,
)

logger = structlog.get_logger()


# ============================================
# 额度账本
# ============================================

class CreditLedger:
    """公司当日额度账本"""

    def __init__(self, repository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._reserved: dict[str, int] = {}

    def lock(self, company_id: str) -> asyncio.Lock:
        if company_id not in self._locks:
            self._locks[company_id] = asyncio.Lock()
        return self._locks[company_id]

    def day_start(self) -> datetime:
        return self.clock().replace(hour=0, minute=0, second=0, microsecond=0)

    def reserved(self, company_id: str) -> int:
        return self._reserved.get(company_id, 0)

    async def consumed_today(self, company_id: str) -> int:
        return await self.repository.sum_credits(company_id, self.day_start())

    async def snapshot(self, company_id: str, daily_cap: int) -> BudgetState:
        """当前额度状态（已消耗 + 进行中的预留）"""
        return BudgetState(
            daily_cap=daily_cap,
            consumed=await self.consumed_today(company_id),
            reserved=self.reserved(company_id),
        )

    async def reserve(self, company_id: str, amount: int, daily_cap: int) -> bool:
        """在锁内复核并预留额度，超出上限时返回 False

        恰好用满上限仍允许预留：实际成本（credits_per_use）可能与 GUARD 使用的预计成本不同。
        """
        async with self.lock(company_id):
            state = await self.snapshot(company_id, daily_cap)
            if state.used + amount > daily_cap:
                logger.warning(
                    "额度预留失败",
                    company_id=company_id,
                    consumed=state.consumed,
                    reserved=state.reserved,
                    amount=amount,
                    daily_cap=daily_cap,
                )
                return False
            self._reserved[company_id] = state.reserved + amount
            return True

    def release(self, company_id: str, amount: int) -> None:
        """释放预留（实际消耗已写入执行日志后调用）"""
        remaining = self._reserved.get(company_id, 0) - amount
        if remaining > 0:
            self._reserved[company_id] = remaining
        else:
            self._reserved.pop(company_id, None)


# ============================================
# 派发结果
# ============================================

@dataclass
class ExecutionResult:
    """单个决策的派发结果"""
    decision_id: str
    status: ExecutionStatus
    agent_id: Optional[str] = None
    output: dict = field(default_factory=dict)
    summary: str = ""
    credits_consumed: int = 0
    duration_ms: int = 0
    error_message: Optional[str] = None
    rule: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "decision_id": self.decision_id,
            "status": self.status.value,
            "agent_id": self.agent_id,
            "output": self.output,
            "summary": self.summary,
            "credits_consumed": self.credits_consumed,
            "duration_ms": self.duration_ms,
            "error_message": self.error_message,
            "rule": self.rule,
        }


def _count(output: dict, key: str) -> int:
    try:
        return int(output.get(key) or 0)
    except (TypeError, ValueError):
        return 0


# ============================================
# 派发器
# ============================================

class ExecutionDispatcher:
    """执行派发器"""

    def __init__(
        self,
        repository,
        agent_registry,
        ledger: CreditLedger,
        capability_store=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.agent_registry = agent_registry
        self.ledger = ledger
        self.capability_store = capability_store
        self.clock = clock
        self._in_flight: set[str] = set()

    @staticmethod
    def _payload(decision: Decision) -> dict:
        return {
            "company_id": decision.company_id,
            "department": decision.department.value,
            "decision_id": decision.id,
            "decision_type": decision.decision_type,
            "description": decision.description,
            "parameters": decision.action_parameters,
        }

    async def execute(
        self,
        decision: Decision,
        daily_cap: int,
        cycle_id: Optional[str] = None,
    ) -> ExecutionResult:
        """派发已放行的决策

        Raises:
            DuplicateDispatchError: 决策已执行或正在执行
            InvalidTransitionError: 决策未放行
        """
        if decision.action_taken or decision.id in self._in_flight:
            raise DuplicateDispatchError(
                f"Decision {decision.id} already dispatched", decision_id=decision.id
            )
        if decision.verdict != Verdict.APPROVED:
            raise InvalidTransitionError(
                f"Decision {decision.id} is not approved "
                f"({decision.verdict.value if decision.verdict else None})",
                decision_id=decision.id,
            )

        self._in_flight.add(decision.id)
        try:
            return await self._dispatch(decision, daily_cap, cycle_id or decision.cycle_id)
        finally:
            self._in_flight.discard(decision.id)

    async def _dispatch(self, decision: Decision, daily_cap: int, cycle_id: Optional[str]) -> ExecutionResult:
        log = logger.bind(
            company_id=decision.company_id,
            department=decision.department.value,
            decision_id=decision.id,
            agent_id=decision.agent_to_execute,
        )

        spec = self.agent_registry.get(decision.agent_to_execute)
        if spec is None:
            message = f"Agent not registered: {decision.agent_to_execute}"
            now = self.clock()
            await self.repository.append_log(ExecutionLogEntry(
                company_id=decision.company_id,
                department=decision.department,
                phase=Phase.ACT,
                status=LogStatus.FAILED,
                cycle_id=cycle_id,
                decision_id=decision.id,
                agent_id=decision.agent_to_execute,
                rule="unknown_agent",
                started_at=now,
                finished_at=now,
                created_at=now,
                error_message=message,
                details={"decision_type": decision.decision_type},
            ))
            log.error("Agent 未注册，派发失败")
            return ExecutionResult(
                decision_id=decision.id,
                status=ExecutionStatus.FAILED,
                agent_id=decision.agent_to_execute,
                error_message=message,
                rule="unknown_agent",
            )

        cost = spec.credits_per_use
        if not await self.ledger.reserve(decision.company_id, cost, daily_cap):
            return await self._block_for_budget(decision, cost, daily_cap, cycle_id)

        try:
            started_at = self.clock()
            try:
                result = await self.agent_registry.invoke(spec.id, self._payload(decision))
            except Exception as e:
                log.error("Agent 调用异常", error=str(e))
                result = AgentResult(success=False, error=str(e) or type(e).__name__)

            output = payload_of(result.output)
            error_message = None if result.success else (result.error or "agent reported failure")
            await self.repository.append_log(ExecutionLogEntry(
                company_id=decision.company_id,
                department=decision.department,
                phase=Phase.ACT,
                status=LogStatus.COMPLETED if result.success else LogStatus.FAILED,
                cycle_id=cycle_id,
                decision_id=decision.id,
                agent_id=spec.id,
                started_at=started_at,
                finished_at=self.clock(),
                created_at=started_at,
                execution_time_ms=result.duration_ms,
                content_generated=_count(output, "content_generated"),
                content_approved=_count(output, "content_approved"),
                content_rejected=_count(output, "content_rejected"),
                content_pending_review=_count(output, "content_pending_review"),
                credits_consumed=cost,
                error_message=error_message,
                details={
                    "decision_type": decision.decision_type,
                    "summary": result.summary,
                    "output": output,
                },
            ))
        finally:
            self.ledger.release(decision.company_id, cost)

        if not result.success:
            log.error("决策执行失败", error=error_message)
            return ExecutionResult(
                decision_id=decision.id,
                status=ExecutionStatus.FAILED,
                agent_id=spec.id,
                output=output,
                summary=result.summary,
                credits_consumed=cost,
                duration_ms=result.duration_ms,
                error_message=error_message,
            )

        decision.mark_action_taken()
        await self.repository.save_decision(decision)
        if self.capability_store is not None:
            await self.capability_store.touch(
                decision.company_id, decision.department, decision.capability_code
            )

        log.info("决策执行完成", credits=cost, duration_ms=result.duration_ms)
        return ExecutionResult(
            decision_id=decision.id,
            status=ExecutionStatus.COMPLETED,
            agent_id=spec.id,
            output=output,
            summary=result.summary,
            credits_consumed=cost,
            duration_ms=result.duration_ms,
        )

    async def _block_for_budget(
        self,
        decision: Decision,
        cost: int,
        daily_cap: int,
        cycle_id: Optional[str],
    ) -> ExecutionResult:
        """派发时额度不足：事后改判 blocked，写干预日志与额度告警"""
        state = await self.ledger.snapshot(decision.company_id, daily_cap)
        rule = GuardrailRule.BUDGET_EXHAUSTED_AT_DISPATCH.value
        reason = f"Daily credit cap {daily_cap} would be exceeded ({state.used} used, cost {cost})"
        error = BudgetExhaustedError(reason, daily_cap=daily_cap, used=state.used, cost=cost)

        decision.assign_verdict(Verdict.BLOCKED, rule, reason)
        await self.repository.save_decision(decision)
        await self.repository.append_log(GuardrailPolicyEngine.intervention_entry(
            decision,
            Verdict.BLOCKED,
            rule,
            reason,
            cycle_id=cycle_id,
            details={"budget": state.to_dict(), "error": error.to_dict()},
            now=self.clock(),
        ))
        logger.warning(
            "额度告警：派发被拦截",
            company_id=decision.company_id,
            department=decision.department.value,
            decision_id=decision.id,
            consumed=state.consumed,
            reserved=state.reserved,
            daily_cap=daily_cap,
        )
        return ExecutionResult(
            decision_id=decision.id,
            status=ExecutionStatus.BLOCKED,
            agent_id=decision.agent_to_execute,
            error_message=reason,
            rule=rule,
        )
