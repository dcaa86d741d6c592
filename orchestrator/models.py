# Enterprise Autopilot - 核心数据模型
"""
核心数据模型

六类持久化实体（决策、执行日志、能力、审批、记忆、情报缓存）
以及部门配置。所有封闭词表都使用 str Enum，并提供 parse()
把历史数据中的旧字符串映射为合法成员或 UNKNOWN。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4


def utcnow() -> datetime:
    """当前 UTC 时间（naive，与数据库 TIMESTAMP 列一致）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


def _parse_enum(enum_cls, value, legacy: Optional[dict] = None, default=None):
    """把原始字符串解析为枚举成员

    Args:
        enum_cls: 枚举类
        value: 原始值（字符串或枚举成员）
        legacy: 旧字符串到新成员的映射
        default: 无法识别时的返回值；为 None 时抛出 ValueError
    """
    if isinstance(value, enum_cls):
        return value
    raw = str(value or "").strip().lower()
    if legacy and raw in legacy:
        return legacy[raw]
    try:
        return enum_cls(raw)
    except ValueError:
        if default is not None:
            return default
        raise


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ============================================
# 枚举定义
# ============================================

class DepartmentType(str, Enum):
    """部门类型"""
    MARKETING = "marketing"
    SALES = "sales"
    FINANCE = "finance"
    LEGAL = "legal"
    HR = "hr"
    OPERATIONS = "operations"

    @classmethod
    def parse(cls, value) -> "DepartmentType":
        return _parse_enum(cls, value)


class MaturityLevel(str, Enum):
    """公司成熟度"""
    STARTER = "starter"
    GROWING = "growing"
    ESTABLISHED = "established"
    SCALING = "scaling"

    @property
    def rank(self) -> int:
        return MATURITY_ORDER.index(self)

    def reaches(self, required: "MaturityLevel") -> bool:
        """当前成熟度是否达到要求"""
        return self.rank >= required.rank

    @classmethod
    def parse(cls, value) -> "MaturityLevel":
        # 无法识别的成熟度按最低级处理
        return _parse_enum(cls, value, default=cls.STARTER)


MATURITY_ORDER = [
    MaturityLevel.STARTER,
    MaturityLevel.GROWING,
    MaturityLevel.ESTABLISHED,
    MaturityLevel.SCALING,
]


class Phase(str, Enum):
    """周期阶段（执行日志的 phase 标签）"""
    SENSE = "sense"
    THINK = "think"
    GUARD = "guard"
    ACT = "act"
    LEARN = "learn"
    GUARDRAIL_INTERVENTION = "guardrail_intervention"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "Phase":
        return _parse_enum(cls, value, legacy={"error": cls.UNKNOWN}, default=cls.UNKNOWN)


class LogStatus(str, Enum):
    """执行日志状态"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "LogStatus":
        return _parse_enum(cls, value, legacy={"error": cls.FAILED}, default=cls.UNKNOWN)


class Verdict(str, Enum):
    """护栏裁决"""
    APPROVED = "approved"
    BLOCKED = "blocked"
    REQUIRES_APPROVAL = "requires_approval"
    ESCALATED = "escalated"
    UNKNOWN = "unknown"

    @property
    def needs_review(self) -> bool:
        return self in (Verdict.REQUIRES_APPROVAL, Verdict.ESCALATED)

    @classmethod
    def parse(cls, value) -> Optional["Verdict"]:
        if value is None:
            return None
        return _parse_enum(
            cls,
            value,
            legacy={
                "passed": cls.APPROVED,
                "sent_to_approval": cls.REQUIRES_APPROVAL,
            },
            default=cls.UNKNOWN,
        )


class RiskLevel(str, Enum):
    """风险等级"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value) -> "RiskLevel":
        return _parse_enum(cls, value)


class CapabilityStatus(str, Enum):
    """能力生命周期状态"""
    PROPOSED = "proposed"
    TRIAL = "trial"
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "CapabilityStatus":
        return _parse_enum(cls, value, legacy={"seeded": cls.PROPOSED}, default=cls.UNKNOWN)


class CapabilitySource(str, Enum):
    """能力来源"""
    SYSTEM = "system"
    AI_PROPOSED = "ai_proposed"

    @classmethod
    def parse(cls, value) -> "CapabilitySource":
        return _parse_enum(
            cls,
            value,
            legacy={"ai_generated": cls.AI_PROPOSED, "seeded": cls.SYSTEM},
            default=cls.SYSTEM,
        )


class OutcomeEvaluation(str, Enum):
    """经验评估结果"""
    PENDING = "pending"
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "OutcomeEvaluation":
        return _parse_enum(cls, value, default=cls.UNKNOWN)


class ApprovalStatus(str, Enum):
    """审批状态"""
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, value) -> "ApprovalStatus":
        return _parse_enum(cls, value, legacy={"pending": cls.PENDING_REVIEW})


class ReviewerTier(str, Enum):
    """审批人等级"""
    STANDARD = "standard"
    EXECUTIVE = "executive"

    def covers(self, required: "ReviewerTier") -> bool:
        return self == ReviewerTier.EXECUTIVE or required == ReviewerTier.STANDARD

    @classmethod
    def parse(cls, value) -> "ReviewerTier":
        return _parse_enum(cls, value, default=cls.STANDARD)


class ExecutionStatus(str, Enum):
    """单次派发结果"""
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


class GapKind(str, Enum):
    """能力缺口类别"""
    UNMAPPED_AGENT = "unmapped_agent"
    RECURRING_BLOCK = "recurring_block"
    UNHANDLED_SIGNAL = "unhandled_signal"
    REPEATED_PATTERN = "repeated_pattern"


# ============================================
# 部门配置
# ============================================

@dataclass
class DepartmentConfig:
    """部门配置（每个公司每个部门一条，只禁用不删除）"""
    company_id: str
    department: DepartmentType
    id: str = field(default_factory=new_id)
    autopilot_enabled: bool = False
    required_maturity: MaturityLevel = MaturityLevel.STARTER
    allowed_actions: list[str] = field(default_factory=list)
    guardrails: dict = field(default_factory=dict)
    execution_frequency: str = "6h"
    daily_credit_cap: int = 100
    max_decisions_per_cycle: int = 5
    outcome_baseline: float = 0.0
    last_execution_at: Optional[datetime] = None
    total_cycles_run: int = 0
    auto_unlocked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department.value,
            "autopilot_enabled": self.autopilot_enabled,
            "required_maturity": self.required_maturity.value,
            "allowed_actions": self.allowed_actions,
            "guardrails": self.guardrails,
            "execution_frequency": self.execution_frequency,
            "daily_credit_cap": self.daily_credit_cap,
            "max_decisions_per_cycle": self.max_decisions_per_cycle,
            "outcome_baseline": self.outcome_baseline,
            "last_execution_at": _iso(self.last_execution_at),
            "total_cycles_run": self.total_cycles_run,
            "auto_unlocked_at": _iso(self.auto_unlocked_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DepartmentConfig":
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            department=DepartmentType.parse(data["department"]),
            autopilot_enabled=bool(data.get("autopilot_enabled", False)),
            required_maturity=MaturityLevel.parse(
                data.get("required_maturity") or data.get("maturity_level_required")
            ),
            allowed_actions=list(data.get("allowed_actions") or []),
            guardrails=dict(data.get("guardrails") or {}),
            execution_frequency=data.get("execution_frequency") or "6h",
            daily_credit_cap=int(data.get("daily_credit_cap") or 0),
            max_decisions_per_cycle=int(data.get("max_decisions_per_cycle") or 5),
            outcome_baseline=float(data.get("outcome_baseline") or 0.0),
            last_execution_at=_dt(data.get("last_execution_at")),
            total_cycles_run=int(data.get("total_cycles_run") or 0),
            auto_unlocked_at=_dt(data.get("auto_unlocked_at")),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


# ============================================
# 外部情报
# ============================================

@dataclass
class StructuredSignal:
    """结构化情报信号"""
    title: str
    summary: str = ""
    impact: RiskLevel = RiskLevel.LOW
    category: str = "neutral"  # opportunity, threat, neutral
    topic: str = ""

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "summary": self.summary,
            "impact": self.impact.value,
            "category": self.category,
            "topic": self.topic,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StructuredSignal":
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValueError("structured signal requires a title")
        impact = RiskLevel.parse(data.get("impact") or "low")
        if impact == RiskLevel.CRITICAL:
            impact = RiskLevel.HIGH
        category = str(data.get("category") or "neutral").lower()
        if category not in ("opportunity", "threat", "neutral"):
            category = "neutral"
        return cls(
            title=title,
            summary=str(data.get("summary") or ""),
            impact=impact,
            category=category,
            topic=str(data.get("topic") or "").strip().lower(),
        )


@dataclass
class IntelligenceSignal:
    """情报缓存记录（写入后不可变）"""
    company_id: str
    source: str
    id: str = field(default_factory=new_id)
    payload: dict = field(default_factory=dict)
    structured_signals: list[StructuredSignal] = field(default_factory=list)
    relevance_score: float = 0.5
    fetched_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "source": self.source,
            "payload": self.payload,
            "structured_signals": [s.to_dict() for s in self.structured_signals],
            "relevance_score": self.relevance_score,
            "fetched_at": _iso(self.fetched_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IntelligenceSignal":
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            source=str(data.get("source") or "unknown"),
            payload=dict(data.get("payload") or data.get("data") or {}),
            structured_signals=[
                StructuredSignal.from_dict(s) for s in data.get("structured_signals") or []
            ],
            relevance_score=float(data.get("relevance_score") or 0.0),
            fetched_at=_dt(data.get("fetched_at")) or utcnow(),
            expires_at=_dt(data.get("expires_at")),
        )


# ============================================
# 决策
# ============================================

@dataclass
class RiskMetadata:
    """决策风险声明（在生成决策时校验）"""
    level: RiskLevel
    factors: list[str] = field(default_factory=list)
    declared_by: str = "decision_engine"

    def to_dict(self) -> dict:
        return {
            "risk_level": self.level.value,
            "factors": self.factors,
            "declared_by": self.declared_by,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["RiskMetadata"]:
        if not data:
            return None
        return cls(
            level=RiskLevel.parse(data.get("risk_level") or data.get("level")),
            factors=list(data.get("factors") or []),
            declared_by=str(data.get("declared_by") or "decision_engine"),
        )


# 允许的裁决流转：首次赋值、人工审批结果、派发前预算复核
_VERDICT_TRANSITIONS = {
    None: {Verdict.APPROVED, Verdict.BLOCKED, Verdict.REQUIRES_APPROVAL, Verdict.ESCALATED},
    Verdict.REQUIRES_APPROVAL: {Verdict.APPROVED, Verdict.BLOCKED},
    Verdict.ESCALATED: {Verdict.APPROVED, Verdict.BLOCKED},
    Verdict.APPROVED: {Verdict.BLOCKED},
}

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass
class Decision:
    """自动驾驶决策（审计轨迹，永不删除）"""
    company_id: str
    department: DepartmentType
    decision_type: str
    description: str
    id: str = field(default_factory=new_id)
    cycle_id: Optional[str] = None
    reasoning: str = ""
    priority: str = "medium"
    agent_to_execute: Optional[str] = None
    capability_code: Optional[str] = None
    action_parameters: dict = field(default_factory=dict)
    risk: Optional[RiskMetadata] = None
    estimated_cost: int = 0
    relevance: float = 0.0
    signal_refs: list[str] = field(default_factory=list)

    verdict: Optional[Verdict] = None
    guardrail_rule: Optional[str] = None
    guardrail_details: Optional[str] = None
    reviewed_by: Optional[str] = None
    action_taken: bool = False

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def assign_verdict(self, verdict: Verdict, rule: str, details: str = "") -> None:
        """设置裁决，只允许单调流转"""
        from orchestrator.errors import InvalidTransitionError

        allowed = _VERDICT_TRANSITIONS.get(self.verdict, set())
        if verdict not in allowed:
            raise InvalidTransitionError(
                f"Decision {self.id} verdict cannot move "
                f"{self.verdict.value if self.verdict else None} -> {verdict.value}",
                decision_id=self.id,
            )
        self.verdict = verdict
        self.guardrail_rule = rule
        self.guardrail_details = details
        self.updated_at = utcnow()

    def mark_action_taken(self) -> None:
        from orchestrator.errors import InvalidTransitionError

        if self.action_taken:
            raise InvalidTransitionError(
                f"Decision {self.id} already executed", decision_id=self.id
            )
        self.action_taken = True
        self.updated_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department.value,
            "cycle_id": self.cycle_id,
            "decision_type": self.decision_type,
            "description": self.description,
            "reasoning": self.reasoning,
            "priority": self.priority,
            "agent_to_execute": self.agent_to_execute,
            "capability_code": self.capability_code,
            "action_parameters": self.action_parameters,
            "risk": self.risk.to_dict() if self.risk else None,
            "estimated_cost": self.estimated_cost,
            "relevance": self.relevance,
            "signal_refs": self.signal_refs,
            "verdict": self.verdict.value if self.verdict else None,
            "guardrail_rule": self.guardrail_rule,
            "guardrail_details": self.guardrail_details,
            "reviewed_by": self.reviewed_by,
            "action_taken": self.action_taken,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Decision":
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            department=DepartmentType.parse(data["department"]),
            cycle_id=data.get("cycle_id"),
            decision_type=str(data["decision_type"]),
            description=str(data.get("description") or ""),
            reasoning=str(data.get("reasoning") or ""),
            priority=str(data.get("priority") or "medium"),
            agent_to_execute=data.get("agent_to_execute"),
            capability_code=data.get("capability_code"),
            action_parameters=dict(data.get("action_parameters") or {}),
            risk=RiskMetadata.from_dict(data.get("risk")),
            estimated_cost=int(data.get("estimated_cost") or 0),
            relevance=float(data.get("relevance") or 0.0),
            signal_refs=list(data.get("signal_refs") or []),
            verdict=Verdict.parse(data.get("verdict") or data.get("guardrail_result")),
            guardrail_rule=data.get("guardrail_rule"),
            guardrail_details=data.get("guardrail_details"),
            reviewed_by=data.get("reviewed_by"),
            action_taken=bool(data.get("action_taken", False)),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


# ============================================
# 执行日志
# ============================================

@dataclass
class ExecutionLogEntry:
    """执行日志（只追加）

    decision_id 为空的是阶段记录；不为空的是单次派发记录，
    当日额度按派发记录的 credits_consumed 汇总。
    """
    company_id: str
    department: DepartmentType
    phase: Phase
    status: LogStatus
    id: str = field(default_factory=new_id)
    cycle_id: Optional[str] = None
    decision_id: Optional[str] = None
    agent_id: Optional[str] = None
    rule: Optional[str] = None

    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    execution_time_ms: int = 0

    content_generated: int = 0
    content_approved: int = 0
    content_rejected: int = 0
    content_pending_review: int = 0
    credits_consumed: int = 0

    error_message: Optional[str] = None
    details: dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department.value,
            "cycle_id": self.cycle_id,
            "decision_id": self.decision_id,
            "agent_id": self.agent_id,
            "phase": self.phase.value,
            "status": self.status.value,
            "rule": self.rule,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "execution_time_ms": self.execution_time_ms,
            "content_generated": self.content_generated,
            "content_approved": self.content_approved,
            "content_rejected": self.content_rejected,
            "content_pending_review": self.content_pending_review,
            "credits_consumed": self.credits_consumed,
            "error_message": self.error_message,
            "details": self.details,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionLogEntry":
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            department=DepartmentType.parse(data["department"]),
            cycle_id=data.get("cycle_id"),
            decision_id=data.get("decision_id"),
            agent_id=data.get("agent_id"),
            phase=Phase.parse(data.get("phase")),
            status=LogStatus.parse(data.get("status")),
            rule=data.get("rule"),
            started_at=_dt(data.get("started_at")) or utcnow(),
            finished_at=_dt(data.get("finished_at")),
            execution_time_ms=int(data.get("execution_time_ms") or 0),
            content_generated=int(data.get("content_generated") or 0),
            content_approved=int(data.get("content_approved") or 0),
            content_rejected=int(data.get("content_rejected") or 0),
            content_pending_review=int(data.get("content_pending_review") or 0),
            credits_consumed=int(data.get("credits_consumed") or 0),
            error_message=data.get("error_message"),
            details=dict(data.get("details") or {}),
            created_at=_dt(data.get("created_at")) or utcnow(),
        )


# ============================================
# 能力
# ============================================

@dataclass
class GapTally:
    """单项缺口计数"""
    key: str
    count: int
    detail: str = ""

    def to_dict(self) -> dict:
        return {"key": self.key, "count": self.count, "detail": self.detail}

    @classmethod
    def from_dict(cls, data: dict) -> "GapTally":
        return cls(
            key=str(data["key"]),
            count=int(data.get("count") or 0),
            detail=str(data.get("detail") or ""),
        )


@dataclass
class GapEvidence:
    """能力缺口证据（能力提案的结构化依据）"""
    unmapped_agents: list[GapTally] = field(default_factory=list)
    recurring_blocks: list[GapTally] = field(default_factory=list)
    unhandled_signals: list[GapTally] = field(default_factory=list)
    repeated_patterns: list[GapTally] = field(default_factory=list)

    @property
    def total(self) -> int:
        return (
            len(self.unmapped_agents)
            + len(self.recurring_blocks)
            + len(self.unhandled_signals)
            + len(self.repeated_patterns)
        )

    def items(self) -> list[tuple[GapKind, GapTally]]:
        """按缺口类别展开"""
        return (
            [(GapKind.UNMAPPED_AGENT, t) for t in self.unmapped_agents]
            + [(GapKind.RECURRING_BLOCK, t) for t in self.recurring_blocks]
            + [(GapKind.UNHANDLED_SIGNAL, t) for t in self.unhandled_signals]
            + [(GapKind.REPEATED_PATTERN, t) for t in self.repeated_patterns]
        )

    def to_dict(self) -> dict:
        return {
            "unmapped_agents": [t.to_dict() for t in self.unmapped_agents],
            "recurring_blocks": [t.to_dict() for t in self.recurring_blocks],
            "unhandled_signals": [t.to_dict() for t in self.unhandled_signals],
            "repeated_patterns": [t.to_dict() for t in self.repeated_patterns],
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GapEvidence":
        data = data or {}
        return cls(
            unmapped_agents=[GapTally.from_dict(t) for t in data.get("unmapped_agents") or []],
            recurring_blocks=[GapTally.from_dict(t) for t in data.get("recurring_blocks") or []],
            unhandled_signals=[GapTally.from_dict(t) for t in data.get("unhandled_signals") or []],
            repeated_patterns=[GapTally.from_dict(t) for t in data.get("repeated_patterns") or []],
        )


@dataclass
class CapabilityGapObservation:
    """THINK 阶段发现的未覆盖信号或未映射 Agent"""
    kind: GapKind
    key: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "key": self.key, "detail": self.detail}


ACTIVE_CAPABILITY_STATUSES = (CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE)


@dataclass
class Capability:
    """部门能力"""
    company_id: str
    department: DepartmentType
    code: str
    name: str
    id: str = field(default_factory=new_id)
    description: str = ""
    status: CapabilityStatus = CapabilityStatus.PROPOSED
    source: CapabilitySource = CapabilitySource.SYSTEM

    decision_type: Optional[str] = None
    agent_to_execute: Optional[str] = None
    handles: list[str] = field(default_factory=list)
    risk_level: Optional[RiskLevel] = None
    required_maturity: MaturityLevel = MaturityLevel.STARTER

    proposed_reason: str = ""
    gap_evidence: GapEvidence = field(default_factory=GapEvidence)
    trial_expires_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    deprecated_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_CAPABILITY_STATUSES

    def covers(self, topic: str, source: str = "") -> bool:
        keys = {h.lower() for h in self.handles}
        return bool(topic and topic.lower() in keys) or bool(source and source.lower() in keys)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department.value,
            "capability_code": self.code,
            "capability_name": self.name,
            "description": self.description,
            "status": self.status.value,
            "is_active": self.is_active,
            "source": self.source.value,
            "decision_type": self.decision_type,
            "agent_to_execute": self.agent_to_execute,
            "handles": self.handles,
            "risk_level": self.risk_level.value if self.risk_level else None,
            "required_maturity": self.required_maturity.value,
            "proposed_reason": self.proposed_reason,
            "gap_evidence": self.gap_evidence.to_dict(),
            "trial_expires_at": _iso(self.trial_expires_at),
            "activated_at": _iso(self.activated_at),
            "deprecated_at": _iso(self.deprecated_at),
            "last_used_at": _iso(self.last_used_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Capability":
        risk = data.get("risk_level")
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            department=DepartmentType.parse(data["department"]),
            code=str(data.get("capability_code") or data.get("code")),
            name=str(data.get("capability_name") or data.get("name") or ""),
            description=str(data.get("description") or ""),
            status=CapabilityStatus.parse(data.get("status")),
            source=CapabilitySource.parse(data.get("source")),
            decision_type=data.get("decision_type"),
            agent_to_execute=data.get("agent_to_execute"),
            handles=list(data.get("handles") or []),
            risk_level=RiskLevel.parse(risk) if risk else None,
            required_maturity=MaturityLevel.parse(data.get("required_maturity")),
            proposed_reason=str(data.get("proposed_reason") or ""),
            gap_evidence=GapEvidence.from_dict(data.get("gap_evidence")),
            trial_expires_at=_dt(data.get("trial_expires_at")),
            activated_at=_dt(data.get("activated_at")),
            deprecated_at=_dt(data.get("deprecated_at")),
            last_used_at=_dt(data.get("last_used_at")),
            created_at=_dt(data.get("created_at")) or utcnow(),
            updated_at=_dt(data.get("updated_at")) or utcnow(),
        )


# ============================================
# 审批
# ============================================

@dataclass
class ApprovalRequest:
    """人工审批请求"""
    company_id: str
    department: DepartmentType
    decision_id: str
    id: str = field(default_factory=new_id)
    content_type: str = ""
    content_data: dict = field(default_factory=dict)
    verdict: Verdict = Verdict.REQUIRES_APPROVAL
    reviewer_tier: ReviewerTier = ReviewerTier.STANDARD
    status: ApprovalStatus = ApprovalStatus.PENDING_REVIEW
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    notes: str = ""
    created_at: datetime = field(default_factory=utcnow)

    @property
    def risk_level(self) -> Optional[str]:
        return self.content_data.get("risk_level")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department.value,
            "decision_id": self.decision_id,
            "content_type": self.content_type,
            "content_data": self.content_data,
            "verdict": self.verdict.value,
            "reviewer_tier": self.reviewer_tier.value,
            "status": self.status.value,
            "reviewer_id": self.reviewer_id,
            "reviewed_at": _iso(self.reviewed_at),
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalRequest":
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            department=DepartmentType.parse(data["department"]),
            decision_id=str(data["decision_id"]),
            content_type=str(data.get("content_type") or ""),
            content_data=dict(data.get("content_data") or {}),
            verdict=Verdict.parse(data.get("verdict")) or Verdict.REQUIRES_APPROVAL,
            reviewer_tier=ReviewerTier.parse(data.get("reviewer_tier")),
            status=ApprovalStatus.parse(data.get("status")),
            reviewer_id=data.get("reviewer_id"),
            reviewed_at=_dt(data.get("reviewed_at")),
            notes=str(data.get("notes") or ""),
            created_at=_dt(data.get("created_at")) or utcnow(),
        )


# ============================================
# 记忆
# ============================================

@dataclass
class MemoryEntry:
    """经验（Lesson）"""
    company_id: str
    department: DepartmentType
    decision_type: str
    id: str = field(default_factory=new_id)
    decision_id: Optional[str] = None
    cycle_id: Optional[str] = None
    outcome_evaluation: OutcomeEvaluation = OutcomeEvaluation.PENDING
    outcome_score: Optional[float] = None
    lesson_learned: str = ""
    created_at: datetime = field(default_factory=utcnow)
    evaluated_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.outcome_evaluation in (OutcomeEvaluation.PENDING, OutcomeEvaluation.UNKNOWN)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "department": self.department.value,
            "decision_type": self.decision_type,
            "decision_id": self.decision_id,
            "cycle_id": self.cycle_id,
            "outcome_evaluation": self.outcome_evaluation.value,
            "outcome_score": self.outcome_score,
            "lesson_learned": self.lesson_learned,
            "created_at": _iso(self.created_at),
            "evaluated_at": _iso(self.evaluated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEntry":
        score = data.get("outcome_score")
        return cls(
            id=str(data.get("id") or new_id()),
            company_id=str(data["company_id"]),
            department=DepartmentType.parse(data["department"]),
            decision_type=str(data["decision_type"]),
            decision_id=data.get("decision_id"),
            cycle_id=data.get("cycle_id"),
            outcome_evaluation=OutcomeEvaluation.parse(data.get("outcome_evaluation")),
            outcome_score=float(score) if score is not None else None,
            lesson_learned=str(data.get("lesson_learned") or ""),
            created_at=_dt(data.get("created_at")) or utcnow(),
            evaluated_at=_dt(data.get("evaluated_at")),
        )


# ============================================
# 周期汇总
# ============================================

@dataclass
class CycleSummary:
    """单次周期汇总（供 Dashboard 与 IQ 使用）"""
    cycle_id: str
    company_id: str
    department: DepartmentType
    status: str = "completed"  # completed, failed, cancelled
    decisions_produced: int = 0
    verdicts: dict[str, int] = field(default_factory=dict)
    executions_completed: int = 0
    executions_failed: int = 0
    executions_blocked: int = 0
    credits_consumed: int = 0
    gap_observations: list[dict] = field(default_factory=list)
    capabilities_proposed: list[str] = field(default_factory=list)
    lessons_recorded: int = 0
    failed_phase: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def execution_time_ms(self) -> int:
        if not self.finished_at:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict:
        return {
            "cycle_id": self.cycle_id,
            "company_id": self.company_id,
            "department": self.department.value,
            "status": self.status,
            "decisions_produced": self.decisions_produced,
            "verdicts": self.verdicts,
            "executions": {
                "completed": self.executions_completed,
                "failed": self.executions_failed,
                "blocked": self.executions_blocked,
            },
            "credits_consumed": self.credits_consumed,
            "gap_observations": self.gap_observations,
            "capabilities_proposed": self.capabilities_proposed,
            "lessons_recorded": self.lessons_recorded,
            "failed_phase": self.failed_phase,
            "error": self.error,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "execution_time_ms": self.execution_time_ms,
        }


def payload_of(value: Any) -> dict:
    """把 Agent 返回值统一为 dict"""
    if isinstance(value, dict):
        return value
    if value is None:
        return {}
    return {"value": value}
