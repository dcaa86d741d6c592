# Enterprise Autopilot - 决策引擎
"""
决策引擎（THINK 阶段）

- RuleBasedDecisionEngine: 按能力的 handles 匹配情报信号生成决策
- ModelDecisionEngine: 由 LLM 生成决策，pydantic 校验后转换为 Decision

两者都遵循同样的约束:
- 执行 Agent 未注册时不生成决策，改为记录 unmapped_agent 缺口
- 近期经验以负面为主的决策类型降低优先级
- 每周期最多 max_decisions_per_cycle 个决策，按优先级、相关度排序
"""

import json
import re
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Literal, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from orchestrator.models import (
    PRIORITY_ORDER,
    Capability,
    CapabilityGapObservation,
    Decision,
    DepartmentConfig,
    DepartmentType,
    GapKind,
    IntelligenceSignal,
    MaturityLevel,
    MemoryEntry,
    OutcomeEvaluation,
    RiskLevel,
    RiskMetadata,
)

logger = structlog.get_logger()

_PRIORITIES = ["critical", "high", "medium", "low"]


@dataclass
class ThinkContext:
    """THINK 阶段输入"""
    company_id: str
    department: DepartmentType
    config: DepartmentConfig
    signals: list[IntelligenceSignal] = field(default_factory=list)
    capabilities: list[Capability] = field(default_factory=list)
    lessons: list[MemoryEntry] = field(default_factory=list)
    maturity: MaturityLevel = MaturityLevel.STARTER
    cycle_id: Optional[str] = None


@dataclass
class ThinkResult:
    """THINK 阶段输出"""
    decisions: list[Decision] = field(default_factory=list)
    observations: list[CapabilityGapObservation] = field(default_factory=list)

    def observe(self, kind: GapKind, key: str, detail: str = "") -> None:
        if any(o.kind == kind and o.key == key for o in self.observations):
            return
        self.observations.append(CapabilityGapObservation(kind=kind, key=key, detail=detail))


def negative_lessons(lessons: list[MemoryEntry]) -> dict[str, MemoryEntry]:
    """近期非待定经验以负面为主的决策类型 -> 最近一条负面经验"""
    counts: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    latest_negative: dict[str, MemoryEntry] = {}
    for lesson in lessons:
        if lesson.is_pending:
            continue
        counts[lesson.decision_type][1] += 1
        if lesson.outcome_evaluation == OutcomeEvaluation.NEGATIVE:
            counts[lesson.decision_type][0] += 1
            latest_negative.setdefault(lesson.decision_type, lesson)
    return {
        decision_type: latest_negative[decision_type]
        for decision_type, (negative, total) in counts.items()
        if total and negative * 2 > total
    }


def downgrade(priority: str) -> str:
    index = _PRIORITIES.index(priority) if priority in _PRIORITIES else 2
    return _PRIORITIES[min(index + 1, len(_PRIORITIES) - 1)]


def finalize(decisions: list[Decision], lessons: list[MemoryEntry], limit: int) -> list[Decision]:
    """应用经验偏置，排序并截断"""
    biased = negative_lessons(lessons)
    for decision in decisions:
        lesson = biased.get(decision.decision_type)
        if lesson is None:
            continue
        decision.priority = downgrade(decision.priority)
        cited = lesson.lesson_learned or "negative outcome"
        decision.reasoning = (
            f"{decision.reasoning} Recent lessons for {decision.decision_type} "
            f"are mostly negative: {cited}"
        ).strip()

    decisions.sort(key=lambda d: (PRIORITY_ORDER.get(d.priority, 2), -d.relevance))
    return decisions[:max(limit, 0)]


class DecisionEngine(ABC):
    """决策引擎抽象基类"""

    @abstractmethod
    async def propose(self, context: ThinkContext) -> ThinkResult:
        pass


# ============================================
# 规则决策引擎
# ============================================

class RuleBasedDecisionEngine(DecisionEngine):
    """规则决策引擎

    对每条结构化信号，找到 handles 覆盖其 topic 或 source 的存活能力；
    覆盖的信号生成决策，未覆盖的信号记录为 unhandled_signal 缺口。
    """

    def __init__(self, agent_registry, settings):
        self.agent_registry = agent_registry
        self.settings = settings

    def _risk(self, capability: Capability, decision_type: str, factors: list[str]) -> Optional[RiskMetadata]:
        level = capability.risk_level or self.settings.risk_for(decision_type)
        if level is None:
            return None
        return RiskMetadata(level=level, factors=factors, declared_by=f"capability:{capability.code}")

    async def propose(self, context: ThinkContext) -> ThinkResult:
        result = ThinkResult()
        decisions: list[Decision] = []

        for record in context.signals:
            for signal in record.structured_signals:
                capability = next(
                    (c for c in context.capabilities if c.covers(signal.topic, record.source)),
                    None,
                )
                if capability is None:
                    result.observe(
                        GapKind.UNHANDLED_SIGNAL,
                        signal.topic or record.source,
                        signal.title,
                    )
                    continue

                decision_type = capability.decision_type or "analyze"
                if not self.agent_registry.has(capability.agent_to_execute):
                    result.observe(
                        GapKind.UNMAPPED_AGENT,
                        decision_type,
                        f"capability {capability.code} maps to unregistered agent "
                        f"{capability.agent_to_execute}",
                    )
                    continue

                description = signal.title if not signal.summary else f"{signal.title}: {signal.summary}"
                decisions.append(Decision(
                    company_id=context.company_id,
                    department=context.department,
                    cycle_id=context.cycle_id,
                    decision_type=decision_type,
                    description=description,
                    reasoning=(
                        f"Signal '{signal.title}' from {record.source} is handled by "
                        f"capability {capability.code}."
                    ),
                    priority=signal.impact.value,
                    agent_to_execute=capability.agent_to_execute,
                    capability_code=capability.code,
                    action_parameters={
                        "signal": signal.to_dict(),
                        "source": record.source,
                        "topic": signal.topic,
                    },
                    risk=self._risk(
                        capability,
                        decision_type,
                        [f"impact:{signal.impact.value}", f"category:{signal.category}"],
                    ),
                    estimated_cost=self.agent_registry.estimate_cost(capability.agent_to_execute),
                    relevance=record.relevance_score,
                    signal_refs=[record.id],
                ))

        result.decisions = finalize(decisions, context.lessons, context.config.max_decisions_per_cycle)
        logger.info(
            "THINK 完成",
            company_id=context.company_id,
            department=context.department.value,
            decisions=len(result.decisions),
            gap_observations=len(result.observations),
        )
        return result


# ============================================
# 模型决策引擎
# ============================================

class ProposedDecision(BaseModel):
    """LLM 返回的单个决策"""
    decision_type: str = Field(min_length=1)
    description: str = Field(min_length=1)
    reasoning: str = ""
    priority: Literal["critical", "high", "medium", "low"] = "medium"
    agent_to_execute: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    risk_factors: list[str] = Field(default_factory=list)
    action_parameters: dict = Field(default_factory=dict)


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_proposals(text: str) -> list[ProposedDecision]:
    """解析 LLM 输出（允许 ```json 代码块），无法解析时抛出 ValueError"""
    cleaned = _FENCE.sub("", text.strip())
    data = json.loads(cleaned)
    if isinstance(data, dict):
        data = data.get("decisions", [data])
    if not isinstance(data, list):
        raise ValueError("expected a JSON array of decisions")
    return [ProposedDecision.model_validate(item) for item in data]


class ModelDecisionEngine(DecisionEngine):
    """LLM 决策引擎

    模型只负责措辞与排序；没有存活能力覆盖的提案不会成为决策，记录为缺口。
    """

    def __init__(self, llm_client, agent_registry, settings):
        self.llm_client = llm_client
        self.agent_registry = agent_registry
        self.settings = settings

    def _build_messages(self, context: ThinkContext) -> list[dict]:
        signals = [
            {"source": r.source, **s.to_dict()}
            for r in context.signals
            for s in r.structured_signals
        ]
        capabilities = [
            {
                "code": c.code,
                "decision_type": c.decision_type,
                "agent": c.agent_to_execute,
                "handles": c.handles,
            }
            for c in context.capabilities
        ]
        lessons = [
            {
                "decision_type": m.decision_type,
                "outcome": m.outcome_evaluation.value,
                "lesson": m.lesson_learned,
            }
            for m in context.lessons[:10]
        ]
        system = (
            f"You are the autopilot of the {context.department.value} department. "
            f"Company maturity: {context.maturity.value}. "
            f"Allowed actions: {', '.join(context.config.allowed_actions)}. "
            f"Propose at most {context.config.max_decisions_per_cycle} decisions. "
            "Respond ONLY with a JSON array; each item has decision_type, description, "
            "reasoning, priority (critical|high|medium|low), agent_to_execute, "
            "risk_level (low|medium|high|critical), risk_factors and action_parameters."
        )
        user = json.dumps(
            {"signals": signals, "capabilities": capabilities, "lessons": lessons},
            ensure_ascii=False,
        )
        return [{"role": "system", "content": system}, {"role": "user", "content": user}]

    def _fallback(self, context: ThinkContext, result: ThinkResult, reason: str) -> list[Decision]:
        """无法解析时退回一个 analyze 决策"""
        agent = next(
            (c.agent_to_execute for c in context.capabilities
             if self.agent_registry.has(c.agent_to_execute)),
            None,
        )
        if agent is None:
            result.observe(GapKind.UNMAPPED_AGENT, "analyze", "no registered agent for fallback analysis")
            return []
        return [Decision(
            company_id=context.company_id,
            department=context.department,
            cycle_id=context.cycle_id,
            decision_type="analyze",
            description=f"Analyze {context.department.value} performance",
            reasoning=f"Model output unavailable ({reason}); falling back to analysis.",
            priority="low",
            agent_to_execute=agent,
            risk=RiskMetadata(level=RiskLevel.LOW, factors=["fallback"], declared_by="model_fallback"),
            estimated_cost=self.agent_registry.estimate_cost(agent),
        )]

    @staticmethod
    def _covering(context: ThinkContext, proposal: ProposedDecision) -> Optional[Capability]:
        """模型提案只能落在存活能力上：先按决策类型匹配，再按执行 Agent 匹配"""
        for capability in context.capabilities:
            if capability.decision_type == proposal.decision_type:
                return capability
        if proposal.agent_to_execute:
            for capability in context.capabilities:
                if capability.agent_to_execute == proposal.agent_to_execute:
                    return capability
        return None

    async def propose(self, context: ThinkContext) -> ThinkResult:
        result = ThinkResult()
        try:
            text = await self.llm_client.complete(
                self._build_messages(context),
                temperature=self.settings.llm.temperature,
            )
            proposals = parse_proposals(text)
        except (ValueError, ValidationError) as e:
            logger.warning("模型决策解析失败", department=context.department.value, error=str(e))
            result.decisions = self._fallback(context, result, "unparseable response")
            return result
        except Exception as e:
            logger.error("模型决策调用失败", department=context.department.value, error=str(e))
            result.decisions = self._fallback(context, result, "model error")
            return result

        decisions = []
        for proposal in proposals:
            capability = self._covering(context, proposal)
            if capability is None:
                result.observe(
                    GapKind.UNHANDLED_SIGNAL,
                    proposal.decision_type,
                    f"model proposed {proposal.decision_type} without a covering capability",
                )
                continue
            agent = proposal.agent_to_execute or capability.agent_to_execute
            if not self.agent_registry.has(agent):
                result.observe(
                    GapKind.UNMAPPED_AGENT,
                    proposal.decision_type,
                    f"model proposed unregistered agent {agent}",
                )
                continue
            level = (
                proposal.risk_level
                or capability.risk_level
                or self.settings.risk_for(proposal.decision_type)
            )
            decisions.append(Decision(
                company_id=context.company_id,
                department=context.department,
                cycle_id=context.cycle_id,
                decision_type=proposal.decision_type,
                description=proposal.description,
                reasoning=proposal.reasoning,
                priority=proposal.priority,
                agent_to_execute=agent,
                capability_code=capability.code,
                action_parameters=proposal.action_parameters,
                risk=RiskMetadata(
                    level=level,
                    factors=proposal.risk_factors,
                    declared_by="model",
                ) if level else None,
                estimated_cost=self.agent_registry.estimate_cost(agent),
            ))

        result.decisions = finalize(decisions, context.lessons, context.config.max_decisions_per_cycle)
        return result
