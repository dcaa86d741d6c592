# Enterprise Autopilot - 护栏
"""
护栏策略引擎（GUARD 阶段）

按顺序匹配，第一条命中的规则给出裁决:
1. 风险 critical 或额度余量 <= 0            -> blocked
2. 部门策略拦截（禁用词/限制话题/时段/冻结） -> blocked
3. 风险 high                                 -> escalated（需高管审批）
4. 风险 medium                               -> requires_approval（正面经验足够时 approved）
5. 部门要求人工审批的类型                     -> requires_approval
6. 风险 low 且余量充足                        -> approved
7. 其他                                       -> requires_approval（low_headroom）

评估过程中的任何异常都降级为 requires_approval，绝不放行。
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import structlog

from orchestrator.errors import GuardrailEvaluationError
from orchestrator.models import (
    Decision,
    ExecutionLogEntry,
    LogStatus,
    Phase,
    ReviewerTier,
    RiskLevel,
    Verdict,
    utcnow,
)
from orchestrator.settings import GuardrailSettings

logger = structlog.get_logger()


class GuardrailRule(str, Enum):
    """护栏规则标识（写入 decision.guardrail_rule 与干预日志）"""
    CRITICAL_RISK = "critical_risk"
    BUDGET_EXHAUSTED = "budget_exhausted"
    FORBIDDEN_WORD = "forbidden_word"
    RESTRICTED_TOPIC = "restricted_topic"
    OUTSIDE_ACTIVE_HOURS = "outside_active_hours"
    BUDGET_FREEZE = "finance_budget_freeze"
    HIGH_RISK = "high_risk_escalation"
    MEDIUM_RISK = "medium_risk_review"
    POSITIVE_HISTORY = "positive_history"
    HUMAN_APPROVAL = "human_approval_required"
    LOW_RISK = "low_risk"
    LOW_HEADROOM = "low_headroom"
    EVALUATION_ERROR = "evaluation_error"
    BUDGET_EXHAUSTED_AT_DISPATCH = "budget_exhausted_at_dispatch"
    REVIEWER_APPROVED = "reviewer_approved"
    REVIEWER_REJECTED = "reviewer_rejected"
    CYCLE_FAILED = "cycle_failed"
    CYCLE_CANCELLED = "cycle_cancelled"


@dataclass
class BudgetState:
    """公司当日额度快照"""
    daily_cap: int
    consumed: int = 0
    reserved: int = 0

    @property
    def used(self) -> int:
        return self.consumed + self.reserved

    def headroom(self, cost: int = 0) -> float:
        """扣除本次成本后的剩余比例；上限为 0 时视为无余量

        GUARD 以 headroom <= 0 拦截，恰好用满上限的决策在 GUARD 即被拦截；
        派发时的复核（CreditLedger.reserve）只拒绝超出上限的预留。
        """
        if self.daily_cap <= 0:
            return 0.0
        return (self.daily_cap - self.used - cost) / self.daily_cap

    def to_dict(self) -> dict:
        return {"daily_cap": self.daily_cap, "consumed": self.consumed, "reserved": self.reserved}


@dataclass
class GuardrailVerdict:
    """护栏裁决"""
    verdict: Verdict
    rule: str
    reason: str = ""
    reviewer_tier: Optional[ReviewerTier] = None
    risk_level: Optional[RiskLevel] = None
    headroom: Optional[float] = None

    @property
    def approved(self) -> bool:
        return self.verdict == Verdict.APPROVED

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "rule": self.rule,
            "reason": self.reason,
            "reviewer_tier": self.reviewer_tier.value if self.reviewer_tier else None,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "headroom": round(self.headroom, 4) if self.headroom is not None else None,
        }


def _hour(value) -> int:
    """8 / "08" / "08:30" -> 8"""
    if isinstance(value, int):
        return value
    return int(str(value).split(":")[0])


class GuardrailPolicyEngine:
    """护栏策略引擎"""

    def __init__(self, settings: GuardrailSettings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock

    def resolve_risk(self, decision: Decision) -> RiskLevel:
        """声明的风险 > 决策类型风险表；都没有时评估失败"""
        if decision.risk is not None:
            return decision.risk.level
        level = self.settings.risk_table.get(decision.decision_type)
        if level is None:
            raise GuardrailEvaluationError(
                f"No risk level for decision type {decision.decision_type}",
                decision_id=decision.id,
                decision_type=decision.decision_type,
            )
        return level

    def _in_active_hours(self, active_hours: dict) -> bool:
        start = _hour(active_hours.get("start", 0))
        end = _hour(active_hours.get("end", 24))
        hour = self.clock().hour
        if start <= end:
            return start <= hour < end
        # 跨午夜，例如 22 -> 6
        return hour >= start or hour < end

    def policy_block(
        self,
        decision: Decision,
        policy: Optional[dict] = None,
        company_flags: Optional[dict] = None,
    ) -> Optional[tuple[GuardrailRule, str]]:
        """部门策略检查，命中时返回 (规则, 原因)"""
        policy = policy or {}
        company_flags = company_flags or {}
        text = f"{decision.description} {decision.reasoning}".lower()

        for word in policy.get("forbidden_words") or []:
            if word and str(word).lower() in text:
                return GuardrailRule.FORBIDDEN_WORD, f"Description contains forbidden word '{word}'"

        topic = str(decision.action_parameters.get("topic") or "").lower()
        for restricted in policy.get("restricted_topics") or []:
            restricted = str(restricted).lower()
            if restricted and (restricted == topic or restricted in text):
                return GuardrailRule.RESTRICTED_TOPIC, f"Topic '{restricted}' is restricted"

        active_hours = policy.get("active_hours")
        if (
            active_hours
            and decision.decision_type in self.settings.publishing_types
            and not self._in_active_hours(active_hours)
        ):
            return (
                GuardrailRule.OUTSIDE_ACTIVE_HOURS,
                f"{decision.decision_type} is only allowed between "
                f"{active_hours.get('start')} and {active_hours.get('end')} UTC",
            )

        if (
            company_flags.get("finance_budget_status") == "exceeded"
            and decision.department.value in self.settings.freeze_departments
            and decision.decision_type in self.settings.spending_types
        ):
            return GuardrailRule.BUDGET_FREEZE, "Finance flagged the company budget as exceeded"

        return None

    def _decide(
        self,
        decision: Decision,
        budget_state: BudgetState,
        positive_lessons: int,
        policy: dict,
        company_flags: dict,
    ) -> GuardrailVerdict:
        risk = self.resolve_risk(decision)
        headroom = budget_state.headroom(decision.estimated_cost)

        def verdict(v: Verdict, rule: GuardrailRule, reason: str, tier=None) -> GuardrailVerdict:
            if tier is None and v.needs_review:
                tier = ReviewerTier.STANDARD
            return GuardrailVerdict(v, rule.value, reason, tier, risk, headroom)

        if risk == RiskLevel.CRITICAL:
            return verdict(Verdict.BLOCKED, GuardrailRule.CRITICAL_RISK, "Critical risk is never executed")
        if headroom <= 0:
            return verdict(
                Verdict.BLOCKED,
                GuardrailRule.BUDGET_EXHAUSTED,
                f"Daily credit cap reached ({budget_state.used}/{budget_state.daily_cap}, "
                f"cost {decision.estimated_cost})",
            )

        blocked = self.policy_block(decision, policy, company_flags)
        if blocked is not None:
            rule, reason = blocked
            return verdict(Verdict.BLOCKED, rule, reason)

        if risk == RiskLevel.HIGH:
            return verdict(
                Verdict.ESCALATED,
                GuardrailRule.HIGH_RISK,
                "High risk requires executive approval",
                ReviewerTier.EXECUTIVE,
            )

        if risk == RiskLevel.MEDIUM:
            if (
                positive_lessons >= self.settings.positive_lessons_for_auto_approve
                and headroom > self.settings.auto_approve_min_headroom
            ):
                return verdict(
                    Verdict.APPROVED,
                    GuardrailRule.POSITIVE_HISTORY,
                    f"{positive_lessons} positive lessons for {decision.decision_type}",
                )
            return verdict(Verdict.REQUIRES_APPROVAL, GuardrailRule.MEDIUM_RISK, "Medium risk requires review")

        if policy.get("require_human_approval") and decision.decision_type in self.settings.human_approval_types:
            return verdict(
                Verdict.REQUIRES_APPROVAL,
                GuardrailRule.HUMAN_APPROVAL,
                f"Department requires human approval for {decision.decision_type}",
            )

        if headroom > self.settings.approval_headroom:
            return verdict(Verdict.APPROVED, GuardrailRule.LOW_RISK, "Low risk within budget")
        return verdict(
            Verdict.REQUIRES_APPROVAL,
            GuardrailRule.LOW_HEADROOM,
            f"Only {headroom:.0%} of the daily credit cap would remain",
        )

    def evaluate(
        self,
        decision: Decision,
        budget_state: BudgetState,
        positive_lessons: int = 0,
        policy: Optional[dict] = None,
        company_flags: Optional[dict] = None,
    ) -> GuardrailVerdict:
        """评估单个决策（不修改决策本身）"""
        try:
            result = self._decide(
                decision, budget_state, positive_lessons, policy or {}, company_flags or {}
            )
        except Exception as e:
            logger.error(
                "护栏评估失败，转人工审批",
                decision_id=decision.id,
                decision_type=decision.decision_type,
                error=str(e),
            )
            return GuardrailVerdict(
                Verdict.REQUIRES_APPROVAL,
                GuardrailRule.EVALUATION_ERROR.value,
                f"Guardrail evaluation failed: {e}",
                ReviewerTier.STANDARD,
            )

        if not result.approved:
            logger.warning(
                "护栏干预",
                company_id=decision.company_id,
                department=decision.department.value,
                decision_id=decision.id,
                verdict=result.verdict.value,
                rule=result.rule,
            )
        return result

    @staticmethod
    def intervention_entry(
        decision: Decision,
        verdict: Verdict,
        rule: str,
        reason: str = "",
        cycle_id: Optional[str] = None,
        details: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionLogEntry:
        """非放行裁决对应的 guardrail_intervention 日志（不计额度）"""
        now = now or utcnow()
        return ExecutionLogEntry(
            company_id=decision.company_id,
            department=decision.department,
            phase=Phase.GUARDRAIL_INTERVENTION,
            status=LogStatus.COMPLETED,
            cycle_id=cycle_id or decision.cycle_id,
            decision_id=decision.id,
            agent_id=decision.agent_to_execute,
            rule=rule,
            started_at=now,
            finished_at=now,
            created_at=now,
            details={
                "verdict": verdict.value,
                "reason": reason,
                "decision_type": decision.decision_type,
                **(details or {}),
            },
        )
