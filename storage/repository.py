# Enterprise Autopilot - 持久化接口
"""
持久化接口

六类集合（决策、执行日志、能力、审批、记忆、情报缓存）加部门配置，
全部按公司（及部门）划分，created_at 单调递增。
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from orchestrator.models import (
    ApprovalRequest,
    ApprovalStatus,
    Capability,
    CapabilityStatus,
    Decision,
    DepartmentConfig,
    DepartmentType,
    ExecutionLogEntry,
    IntelligenceSignal,
    MemoryEntry,
    OutcomeEvaluation,
    Phase,
    Verdict,
)


class AutopilotRepository(ABC):
    """自动驾驶持久化抽象基类"""

    # ========== 部门配置 ==========

    @abstractmethod
    async def get_department_config(
        self, company_id: str, department: DepartmentType
    ) -> Optional[DepartmentConfig]:
        pass

    @abstractmethod
    async def list_department_configs(
        self, company_id: Optional[str] = None, enabled_only: bool = False
    ) -> list[DepartmentConfig]:
        """列出部门配置；company_id 为空时跨公司（调度器使用）"""
        pass

    @abstractmethod
    async def save_department_config(self, config: DepartmentConfig) -> DepartmentConfig:
        pass

    # ========== 决策 ==========

    @abstractmethod
    async def save_decision(self, decision: Decision) -> Decision:
        pass

    @abstractmethod
    async def get_decision(self, decision_id: str) -> Optional[Decision]:
        pass

    @abstractmethod
    async def list_decisions(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        cycle_id: Optional[str] = None,
        verdict: Optional[Verdict] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Decision]:
        """按 created_at 倒序"""
        pass

    # ========== 执行日志 ==========

    @abstractmethod
    async def append_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        pass

    @abstractmethod
    async def list_logs(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        cycle_id: Optional[str] = None,
        phase: Optional[Phase] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[ExecutionLogEntry]:
        """按 created_at 倒序"""
        pass

    @abstractmethod
    async def sum_credits(self, company_id: str, since: datetime) -> int:
        """汇总 since 之后派发记录（decision_id 非空）的 credits_consumed"""
        pass

    # ========== 能力 ==========

    @abstractmethod
    async def save_capability(self, capability: Capability) -> Capability:
        pass

    @abstractmethod
    async def get_capability(
        self, company_id: str, department: DepartmentType, code: str
    ) -> Optional[Capability]:
        pass

    @abstractmethod
    async def list_capabilities(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        statuses: Optional[Iterable[CapabilityStatus]] = None,
    ) -> list[Capability]:
        """按 created_at 正序"""
        pass

    # ========== 审批 ==========

    @abstractmethod
    async def save_approval(self, approval: ApprovalRequest) -> ApprovalRequest:
        pass

    @abstractmethod
    async def get_approval(self, approval_id: str) -> Optional[ApprovalRequest]:
        pass

    @abstractmethod
    async def list_approvals(
        self,
        company_id: str,
        status: Optional[ApprovalStatus] = None,
        department: Optional[DepartmentType] = None,
    ) -> list[ApprovalRequest]:
        """按 created_at 正序"""
        pass

    @abstractmethod
    async def update_approval_if_pending(self, approval: ApprovalRequest) -> bool:
        """仅当库中记录仍为 pending_review 时写入，返回是否写入成功"""
        pass

    # ========== 记忆 ==========

    @abstractmethod
    async def save_lesson(self, lesson: MemoryEntry) -> MemoryEntry:
        pass

    @abstractmethod
    async def list_lessons(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        decision_type: Optional[str] = None,
        evaluations: Optional[Iterable[OutcomeEvaluation]] = None,
        since: Optional[datetime] = None,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[MemoryEntry]:
        """按 created_at 倒序"""
        pass

    # ========== 情报缓存 ==========

    @abstractmethod
    async def save_signal(self, signal: IntelligenceSignal) -> IntelligenceSignal:
        pass

    @abstractmethod
    async def list_signals(
        self,
        company_id: str,
        since: Optional[datetime] = None,
        valid_at: Optional[datetime] = None,
        limit: int = 50,
    ) -> list[IntelligenceSignal]:
        """按 fetched_at 倒序；valid_at 给定时排除已过期记录"""
        pass

    async def close(self) -> None:
        return None
