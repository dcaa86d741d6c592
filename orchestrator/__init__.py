# Enterprise Autopilot - 编排器模块
"""
Orchestrator 核心模块

周期: SENSE → THINK → GUARD → ACT → LEARN

包含:
- departments: 部门注册与解锁
- intelligence: 外部情报缓存
- decision: 决策引擎（THINK）
- guardrail: 护栏策略（GUARD）
- approval: 人工审批流程
- execution: 执行派发与额度账本（ACT）
- learning: 经验记忆（LEARN）
- capability: 能力自生成
- state_machine: 周期状态机与单飞租约
- cycle: 周期编排
- iq: 企业智商
- scheduler: 定时触发
- engine: 组合根（对外入口）
"""

from orchestrator.errors import AutopilotError
from orchestrator.models import (
    ApprovalRequest,
    Capability,
    CapabilityStatus,
    CycleSummary,
    Decision,
    DepartmentConfig,
    DepartmentType,
    ExecutionLogEntry,
    MaturityLevel,
    MemoryEntry,
    Verdict,
)

__all__ = [
    "AutopilotError",
    "ApprovalRequest",
    "Capability",
    "CapabilityStatus",
    "CycleSummary",
    "Decision",
    "DepartmentConfig",
    "DepartmentType",
    "ExecutionLogEntry",
    "MaturityLevel",
    "MemoryEntry",
    "Verdict",
]
