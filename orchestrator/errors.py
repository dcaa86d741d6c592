# Enterprise Autopilot - 异常定义
"""
自动驾驶引擎异常

所有引擎异常都继承自 AutopilotError，HTTP 层据此映射状态码。
"""

from typing import Optional


class AutopilotError(Exception):
    """自动驾驶引擎异常基类"""

    error_code = "autopilot_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


# ============================================
# 部门相关
# ============================================

class UnknownDepartmentError(AutopilotError):
    """未知部门"""
    error_code = "unknown_department"


class DepartmentLockedError(AutopilotError):
    """部门未解锁（公司成熟度不足）"""
    error_code = "department_locked"

    def __init__(self, department: str, required_maturity: str, current_maturity: str):
        super().__init__(
            f"Department {department} requires maturity {required_maturity}, "
            f"company is {current_maturity}",
            department=department,
            required_maturity=required_maturity,
            current_maturity=current_maturity,
        )
        self.department = department
        self.required_maturity = required_maturity
        self.current_maturity = current_maturity


class PrerequisiteError(AutopilotError):
    """缺少开启自动驾驶的前置数据"""
    error_code = "missing_prerequisite"

    def __init__(self, department: str, missing: list[str]):
        super().__init__(
            f"Department {department} is missing prerequisites: {', '.join(missing)}",
            department=department,
            missing=missing,
        )
        self.department = department
        self.missing = missing


class DepartmentDisabledError(AutopilotError):
    """部门自动驾驶未开启"""
    error_code = "department_disabled"


# ============================================
# 周期相关
# ============================================

class CycleInFlightError(AutopilotError):
    """同一 (公司, 部门) 已有周期在运行"""
    error_code = "cycle_in_flight"


class CycleCancelledError(AutopilotError):
    """周期在阶段开始前被取消"""
    error_code = "cycle_cancelled"


class PhaseError(AutopilotError):
    """阶段执行失败"""
    error_code = "phase_failed"

    def __init__(self, phase: str, cause: Exception):
        super().__init__(f"Phase {phase} failed: {cause}", phase=phase)
        self.phase = phase
        self.cause = cause


# ============================================
# Agent / 执行相关
# ============================================

class UnknownAgentError(AutopilotError):
    """Agent 未注册"""
    error_code = "unknown_agent"

    def __init__(self, agent_id: Optional[str]):
        super().__init__(f"Agent not registered: {agent_id}", agent_id=agent_id)
        self.agent_id = agent_id


class BudgetExhaustedError(AutopilotError):
    """当日额度耗尽"""
    error_code = "budget_exhausted"


class DuplicateDispatchError(AutopilotError):
    """决策已执行或正在执行"""
    error_code = "duplicate_dispatch"


# ============================================
# 状态流转相关
# ============================================

class InvalidTransitionError(AutopilotError):
    """非法状态流转"""
    error_code = "invalid_transition"


class CapabilityNotFoundError(AutopilotError):
    """能力不存在"""
    error_code = "capability_not_found"


class DecisionNotFoundError(AutopilotError):
    """决策不存在"""
    error_code = "decision_not_found"


# ============================================
# 审批相关
# ============================================

class ApprovalNotFoundError(AutopilotError):
    """审批请求不存在"""
    error_code = "approval_not_found"


class ApprovalAlreadyResolvedError(AutopilotError):
    """审批请求已处理"""
    error_code = "approval_already_resolved"


class ReviewerTierError(AutopilotError):
    """审批人权限等级不足"""
    error_code = "reviewer_tier_insufficient"


# ============================================
# 护栏相关
# ============================================

class GuardrailEvaluationError(AutopilotError):
    """护栏评估失败（决策数据不完整）"""
    error_code = "guardrail_evaluation_error"
