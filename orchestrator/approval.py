# Enterprise Autopilot - 人工审批
"""
人工审批流程

- requires_approval / escalated 的决策进入审批队列
- escalated 需要 executive 审批人
- 批准后立即派发并记录经验；拒绝为终态，不再重试
- 同一请求只能处理一次；没有超时自动处理
- 审批在周期外进行，不占用周期租约
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from orchestrator.errors import (
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    DecisionNotFoundError,
    ReviewerTierError,
)
from orchestrator.guardrail import GuardrailPolicyEngine, GuardrailRule, GuardrailVerdict
from orchestrator.models import (
    ApprovalRequest,
    ApprovalStatus,
    Decision,
    DepartmentType,
    MemoryEntry,
    ReviewerTier,
    Verdict,
    utcnow,
)

logger = structlog.get_logger()


@dataclass
class ResolutionResult:
    """审批处理结果"""
    approval: ApprovalRequest
    decision: Decision
    execution: Optional[object] = None
    lesson: Optional[MemoryEntry] = None

    def to_dict(self) -> dict:
        return {
            "approval": self.approval.to_dict(),
            "decision": self.decision.to_dict(),
            "execution": self.execution.to_dict() if self.execution else None,
            "lesson": self.lesson.to_dict() if self.lesson else None,
        }


class ApprovalWorkflow:
    """人工审批流程"""

    def __init__(
        self,
        repository,
        dispatcher,
        learning,
        departments,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.dispatcher = dispatcher
        self.learning = learning
        self.departments = departments
        self.clock = clock

    async def submit(self, decision: Decision, verdict: GuardrailVerdict) -> ApprovalRequest:
        """为待审决策创建审批请求"""
        approval = ApprovalRequest(
            company_id=decision.company_id,
            department=decision.department,
            decision_id=decision.id,
            content_type=decision.decision_type,
            content_data={
                "description": decision.description,
                "reasoning": decision.reasoning,
                "priority": decision.priority,
                "agent_to_execute": decision.agent_to_execute,
                "action_parameters": decision.action_parameters,
                "estimated_cost": decision.estimated_cost,
                "risk_level": verdict.risk_level.value if verdict.risk_level else None,
                "rule": verdict.rule,
                "reason": verdict.reason,
            },
            verdict=verdict.verdict,
            reviewer_tier=verdict.reviewer_tier or ReviewerTier.STANDARD,
            created_at=self.clock(),
        )
        await self.repository.save_approval(approval)
        logger.info(
            "审批请求已创建",
            company_id=decision.company_id,
            department=decision.department.value,
            approval_id=approval.id,
            decision_id=decision.id,
            reviewer_tier=approval.reviewer_tier.value,
        )
        return approval

    async def list_pending(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
    ) -> list[ApprovalRequest]:
        return await self.repository.list_approvals(
            company_id, status=ApprovalStatus.PENDING_REVIEW, department=department
        )

    async def resolve(
        self,
        approval_id: str,
        approved: bool,
        reviewer_id: str,
        reviewer_tier=ReviewerTier.STANDARD,
        notes: str = "",
    ) -> ResolutionResult:
        """处理审批

        Raises:
            ApprovalNotFoundError: 请求不存在
            ApprovalAlreadyResolvedError: 请求已处理
            ReviewerTierError: 审批人等级不足
        """
        approval = await self.repository.get_approval(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(f"Approval not found: {approval_id}", approval_id=approval_id)
        if approval.status != ApprovalStatus.PENDING_REVIEW:
            raise ApprovalAlreadyResolvedError(
                f"Approval {approval_id} already {approval.status.value}",
                approval_id=approval_id,
                status=approval.status.value,
            )

        tier = ReviewerTier.parse(reviewer_tier)
        if not tier.covers(approval.reviewer_tier):
            raise ReviewerTierError(
                f"Approval {approval_id} requires a {approval.reviewer_tier.value} reviewer",
                approval_id=approval_id,
                required_tier=approval.reviewer_tier.value,
                reviewer_tier=tier.value,
            )

        decision = await self.repository.get_decision(approval.decision_id)
        if decision is None:
            raise DecisionNotFoundError(
                f"Decision not found: {approval.decision_id}", decision_id=approval.decision_id
            )

        approval.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        approval.reviewer_id = reviewer_id
        approval.reviewed_at = self.clock()
        approval.notes = notes
        if not await self.repository.update_approval_if_pending(approval):
            raise ApprovalAlreadyResolvedError(
                f"Approval {approval_id} was resolved concurrently", approval_id=approval_id
            )

        decision.reviewed_by = reviewer_id
        log = logger.bind(
            company_id=approval.company_id,
            department=approval.department.value,
            approval_id=approval_id,
            decision_id=decision.id,
            reviewer_id=reviewer_id,
        )

        if not approved:
            decision.assign_verdict(Verdict.BLOCKED, GuardrailRule.REVIEWER_REJECTED.value, notes)
            await self.repository.save_decision(decision)
            await self.repository.append_log(GuardrailPolicyEngine.intervention_entry(
                decision,
                Verdict.BLOCKED,
                GuardrailRule.REVIEWER_REJECTED.value,
                notes or f"Rejected by {reviewer_id}",
                details={"approval_id": approval_id, "reviewer_id": reviewer_id},
                now=self.clock(),
            ))
            log.info("审批已拒绝")
            return ResolutionResult(approval=approval, decision=decision)

        decision.assign_verdict(Verdict.APPROVED, GuardrailRule.REVIEWER_APPROVED.value, notes)
        await self.repository.save_decision(decision)
        log.info("审批已通过，开始派发")

        config = await self.departments.get_config(decision.company_id, decision.department)
        execution = await self.dispatcher.execute(decision, config.daily_credit_cap)
        lesson = await self.learning.record_outcome(
            decision, execution, baseline=config.outcome_baseline
        )
        return ResolutionResult(approval=approval, decision=decision, execution=execution, lesson=lesson)
