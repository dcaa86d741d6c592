# Enterprise Autopilot - 内存存储
"""
内存存储（测试与本地开发）

读写都做深拷贝，调用方拿到的对象与存储互不影响。
"""

from copy import deepcopy
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
from storage.repository import AutopilotRepository


def _newest_first(items, key="created_at"):
    return sorted(items, key=lambda x: getattr(x, key), reverse=True)


class InMemoryRepository(AutopilotRepository):
    """内存存储"""

    def __init__(self):
        self.department_configs: dict[tuple[str, DepartmentType], DepartmentConfig] = {}
        self.decisions: dict[str, Decision] = {}
        self.logs: list[ExecutionLogEntry] = []
        self.capabilities: dict[str, Capability] = {}
        self.approvals: dict[str, ApprovalRequest] = {}
        self.lessons: dict[str, MemoryEntry] = {}
        self.signals: list[IntelligenceSignal] = []

    # ========== 部门配置 ==========

    async def get_department_config(self, company_id, department):
        return deepcopy(self.department_configs.get((company_id, department)))

    async def list_department_configs(self, company_id=None, enabled_only=False):
        configs = [
            c for c in self.department_configs.values()
            if (company_id is None or c.company_id == company_id)
            and (not enabled_only or c.autopilot_enabled)
        ]
        return deepcopy(sorted(configs, key=lambda c: c.created_at))

    async def save_department_config(self, config):
        self.department_configs[(config.company_id, config.department)] = deepcopy(config)
        return config

    # ========== 决策 ==========

    async def save_decision(self, decision):
        self.decisions[decision.id] = deepcopy(decision)
        return decision

    async def get_decision(self, decision_id):
        return deepcopy(self.decisions.get(decision_id))

    async def list_decisions(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        cycle_id: Optional[str] = None,
        verdict: Optional[Verdict] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Decision]:
        items = [
            d for d in self.decisions.values()
            if d.company_id == company_id
            and (department is None or d.department == department)
            and (cycle_id is None or d.cycle_id == cycle_id)
            and (verdict is None or d.verdict == verdict)
            and (since is None or d.created_at >= since)
        ]
        return deepcopy(_newest_first(items)[:limit])

    # ========== 执行日志 ==========

    async def append_log(self, entry):
        self.logs.append(deepcopy(entry))
        return entry

    async def list_logs(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        cycle_id: Optional[str] = None,
        phase: Optional[Phase] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[ExecutionLogEntry]:
        items = [
            e for e in self.logs
            if e.company_id == company_id
            and (department is None or e.department == department)
            and (cycle_id is None or e.cycle_id == cycle_id)
            and (phase is None or e.phase == phase)
            and (since is None or e.created_at >= since)
        ]
        return deepcopy(_newest_first(items)[:limit])

    async def sum_credits(self, company_id, since):
        return sum(
            e.credits_consumed for e in self.logs
            if e.company_id == company_id
            and e.decision_id is not None
            and e.created_at >= since
        )

    # ========== 能力 ==========

    async def save_capability(self, capability):
        self.capabilities[capability.id] = deepcopy(capability)
        return capability

    async def get_capability(self, company_id, department, code):
        for capability in self.capabilities.values():
            if (
                capability.company_id == company_id
                and capability.department == department
                and capability.code == code
            ):
                return deepcopy(capability)
        return None

    async def list_capabilities(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        statuses: Optional[Iterable[CapabilityStatus]] = None,
    ) -> list[Capability]:
        wanted = set(statuses) if statuses is not None else None
        items = [
            c for c in self.capabilities.values()
            if c.company_id == company_id
            and (department is None or c.department == department)
            and (wanted is None or c.status in wanted)
        ]
        return deepcopy(sorted(items, key=lambda c: c.created_at))

    # ========== 审批 ==========

    async def save_approval(self, approval):
        self.approvals[approval.id] = deepcopy(approval)
        return approval

    async def get_approval(self, approval_id):
        return deepcopy(self.approvals.get(approval_id))

    async def list_approvals(self, company_id, status=None, department=None):
        items = [
            a for a in self.approvals.values()
            if a.company_id == company_id
            and (status is None or a.status == status)
            and (department is None or a.department == department)
        ]
        return deepcopy(sorted(items, key=lambda a: a.created_at))

    async def update_approval_if_pending(self, approval):
        current = self.approvals.get(approval.id)
        if current is None or current.status != ApprovalStatus.PENDING_REVIEW:
            return False
        self.approvals[approval.id] = deepcopy(approval)
        return True

    # ========== 记忆 ==========

    async def save_lesson(self, lesson):
        self.lessons[lesson.id] = deepcopy(lesson)
        return lesson

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
        wanted = set(evaluations) if evaluations is not None else None
        items = [
            m for m in self.lessons.values()
            if m.company_id == company_id
            and (department is None or m.department == department)
            and (decision_type is None or m.decision_type == decision_type)
            and (wanted is None or m.outcome_evaluation in wanted)
            and (since is None or m.created_at >= since)
            and (before is None or m.created_at < before)
        ]
        items = _newest_first(items)
        if limit is not None:
            items = items[:limit]
        return deepcopy(items)

    # ========== 情报缓存 ==========

    async def save_signal(self, signal):
        self.signals.append(deepcopy(signal))
        return signal

    async def list_signals(self, company_id, since=None, valid_at=None, limit=50):
        items = [
            s for s in self.signals
            if s.company_id == company_id
            and (since is None or s.fetched_at >= since)
            and (valid_at is None or not s.is_expired(valid_at))
        ]
        return deepcopy(_newest_first(items, key="fetched_at")[:limit])
