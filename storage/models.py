# Enterprise Autopilot - 数据表定义
"""
数据表定义

列名与各实体 to_dict() 的键一致，PostgresRepository 直接按列读写。
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from storage.db import Base


class DepartmentConfigRow(Base):
    """部门配置"""
    __tablename__ = "department_config"
    __table_args__ = (UniqueConstraint("company_id", "department"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    department: Mapped[str] = mapped_column(String(32))
    autopilot_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    required_maturity: Mapped[str] = mapped_column(String(32))
    allowed_actions: Mapped[list] = mapped_column(JSONB, default=list)
    guardrails: Mapped[dict] = mapped_column(JSONB, default=dict)
    execution_frequency: Mapped[str] = mapped_column(String(8), default="6h")
    daily_credit_cap: Mapped[int] = mapped_column(Integer, default=100)
    max_decisions_per_cycle: Mapped[int] = mapped_column(Integer, default=5)
    outcome_baseline: Mapped[float] = mapped_column(Float, default=0.0)
    last_execution_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    total_cycles_run: Mapped[int] = mapped_column(Integer, default=0)
    auto_unlocked_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class DecisionRow(Base):
    """自动驾驶决策"""
    __tablename__ = "decisions"
    __table_args__ = (Index("ix_decisions_company_created", "company_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64))
    department: Mapped[str] = mapped_column(String(32))
    cycle_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    decision_type: Mapped[str] = mapped_column(String(64))
    description: Mapped[str] = mapped_column(Text, default="")
    reasoning: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    agent_to_execute: Mapped[Optional[str]] = mapped_column(String(64))
    capability_code: Mapped[Optional[str]] = mapped_column(String(128))
    action_parameters: Mapped[dict] = mapped_column(JSONB, default=dict)
    risk: Mapped[Optional[dict]] = mapped_column(JSONB)
    estimated_cost: Mapped[int] = mapped_column(Integer, default=0)
    relevance: Mapped[float] = mapped_column(Float, default=0.0)
    signal_refs: Mapped[list] = mapped_column(JSONB, default=list)
    verdict: Mapped[Optional[str]] = mapped_column(String(32))
    guardrail_rule: Mapped[Optional[str]] = mapped_column(String(64))
    guardrail_details: Mapped[Optional[str]] = mapped_column(Text)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64))
    action_taken: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class ExecutionLogRow(Base):
    """执行日志（只追加）"""
    __tablename__ = "execution_log"
    __table_args__ = (Index("ix_execution_log_company_created", "company_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64))
    department: Mapped[str] = mapped_column(String(32))
    cycle_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    decision_id: Mapped[Optional[str]] = mapped_column(String(36))
    agent_id: Mapped[Optional[str]] = mapped_column(String(64))
    phase: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16))
    rule: Mapped[Optional[str]] = mapped_column(String(64))
    started_at: Mapped[datetime] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    execution_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    content_generated: Mapped[int] = mapped_column(Integer, default=0)
    content_approved: Mapped[int] = mapped_column(Integer, default=0)
    content_rejected: Mapped[int] = mapped_column(Integer, default=0)
    content_pending_review: Mapped[int] = mapped_column(Integer, default=0)
    credits_consumed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    details: Mapped[dict] = mapped_column(JSONB, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime)


class CapabilityRow(Base):
    """部门能力"""
    __tablename__ = "capabilities"
    __table_args__ = (UniqueConstraint("company_id", "department", "capability_code"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    department: Mapped[str] = mapped_column(String(32))
    capability_code: Mapped[str] = mapped_column(String(128))
    capability_name: Mapped[str] = mapped_column(String(256))
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(16))
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    source: Mapped[str] = mapped_column(String(16))
    decision_type: Mapped[Optional[str]] = mapped_column(String(64))
    agent_to_execute: Mapped[Optional[str]] = mapped_column(String(64))
    handles: Mapped[list] = mapped_column(JSONB, default=list)
    risk_level: Mapped[Optional[str]] = mapped_column(String(16))
    required_maturity: Mapped[str] = mapped_column(String(32))
    proposed_reason: Mapped[str] = mapped_column(Text, default="")
    gap_evidence: Mapped[dict] = mapped_column(JSONB, default=dict)
    trial_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deprecated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class ApprovalRow(Base):
    """人工审批请求"""
    __tablename__ = "approvals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64), index=True)
    department: Mapped[str] = mapped_column(String(32))
    decision_id: Mapped[str] = mapped_column(String(36))
    content_type: Mapped[str] = mapped_column(String(64))
    content_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    verdict: Mapped[str] = mapped_column(String(32))
    reviewer_tier: Mapped[str] = mapped_column(String(16))
    status: Mapped[str] = mapped_column(String(16))
    reviewer_id: Mapped[Optional[str]] = mapped_column(String(64))
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    notes: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime)


class MemoryRow(Base):
    """经验记忆"""
    __tablename__ = "memory"
    __table_args__ = (Index("ix_memory_company_type", "company_id", "decision_type"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64))
    department: Mapped[str] = mapped_column(String(32))
    decision_type: Mapped[str] = mapped_column(String(64))
    decision_id: Mapped[Optional[str]] = mapped_column(String(36))
    cycle_id: Mapped[Optional[str]] = mapped_column(String(36))
    outcome_evaluation: Mapped[str] = mapped_column(String(16))
    outcome_score: Mapped[Optional[float]] = mapped_column(Float)
    lesson_learned: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime)
    evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class IntelligenceCacheRow(Base):
    """情报缓存"""
    __tablename__ = "intelligence_cache"
    __table_args__ = (Index("ix_intelligence_company_fetched", "company_id", "fetched_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    company_id: Mapped[str] = mapped_column(String(64))
    source: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSONB, default=dict)
    structured_signals: Mapped[list] = mapped_column(JSONB, default=list)
    relevance_score: Mapped[float] = mapped_column(Float, default=0.0)
    fetched_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
