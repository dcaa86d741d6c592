# Enterprise Autopilot - API 数据模型
"""
Pydantic 模型定义

用于 API 请求和响应的数据验证。
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


# ============================================
# 部门
# ============================================

class ToggleAutopilotRequest(BaseModel):
    """开关部门自动驾驶"""
    enabled: bool


# ============================================
# 审批
# ============================================

class ResolveApprovalRequest(BaseModel):
    """处理审批请求"""
    approved: bool
    reviewer_id: str = Field(..., min_length=1)
    reviewer_tier: Literal["standard", "executive"] = "standard"
    notes: str = ""


# ============================================
# 能力
# ============================================

class ActivateCapabilityRequest(BaseModel):
    """激活能力（proposed → trial 或 trial → active）"""
    mode: Literal["trial", "active"] = "trial"


class RejectCapabilityRequest(BaseModel):
    """淘汰能力"""
    reason: str = ""


# ============================================
# 情报与效果
# ============================================

class StructuredSignalIn(BaseModel):
    """结构化信号"""
    title: str = Field(..., min_length=1)
    summary: str = ""
    impact: Literal["low", "medium", "high", "critical"] = "low"
    category: Literal["opportunity", "threat", "neutral"] = "neutral"
    topic: str = ""


class IngestIntelligenceRequest(BaseModel):
    """写入外部情报"""
    source: str = Field(..., min_length=1)
    structured_signals: list[StructuredSignalIn] = Field(default_factory=list)
    payload: dict = Field(default_factory=dict)
    relevance_score: float = Field(0.5, ge=0.0, le=1.0)


class OutcomeReport(BaseModel):
    """补报决策效果指标"""
    metric_value: float


# ============================================
# 响应
# ============================================

class HealthResponse(BaseModel):
    status: str = "ok"
    decision_engine: str = "rules"
    agents: int = 0
    active_cycles: int = 0


class EnterpriseIQResponse(BaseModel):
    """企业智商"""
    company_id: str
    score: int
    cycles: int
    lessons: int
    active_capabilities: int


class CreditStatusResponse(BaseModel):
    """当日额度"""
    daily_cap: int
    consumed: int
    reserved: int
    headroom: float


class CancelCycleResponse(BaseModel):
    cancel_requested: bool
    cycle_id: Optional[str] = None
