# Enterprise Autopilot - Capability Genesis
"""
能力自生成系统

部门能力的完整生命周期:
- 能力缺口分析（未映射 Agent、反复拦截、未覆盖信号、重复成功模式）
- 根据缺口提出新能力（proposed）
- 试运行与激活（proposed → trial → active）
- 淘汰（proposed | trial → deprecated，终态）

已淘汰的能力代码永不复用，同一缺口的新提案使用 _v2、_v3 后缀。
"""

import re
from collections import Counter
from datetime import timedelta
from typing import Callable, Iterable, Optional

import structlog

from orchestrator.errors import CapabilityNotFoundError, InvalidTransitionError
from orchestrator.models import (
    ACTIVE_CAPABILITY_STATUSES,
    Capability,
    CapabilityGapObservation,
    CapabilitySource,
    CapabilityStatus,
    DepartmentType,
    GapEvidence,
    GapKind,
    GapTally,
    MaturityLevel,
    OutcomeEvaluation,
    Phase,
    RiskLevel,
    Verdict,
    utcnow,
)
from orchestrator.settings import AutopilotSettings

logger = structlog.get_logger()


# 合法的能力状态流转
CAPABILITY_TRANSITIONS: set[tuple[CapabilityStatus, CapabilityStatus]] = {
    (CapabilityStatus.PROPOSED, CapabilityStatus.TRIAL),
    (CapabilityStatus.PROPOSED, CapabilityStatus.DEPRECATED),
    (CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE),
    (CapabilityStatus.TRIAL, CapabilityStatus.DEPRECATED),
}

LIVE_STATUSES = (CapabilityStatus.PROPOSED, CapabilityStatus.TRIAL, CapabilityStatus.ACTIVE)

_EVIDENCE_FIELDS = {
    GapKind.UNMAPPED_AGENT: "unmapped_agents",
    GapKind.RECURRING_BLOCK: "recurring_blocks",
    GapKind.UNHANDLED_SIGNAL: "unhandled_signals",
    GapKind.REPEATED_PATTERN: "repeated_patterns",
}

_VERSION_SUFFIX = re.compile(r"_v\d+$")


def base_code(code: str) -> str:
    """去掉版本后缀"""
    return _VERSION_SUFFIX.sub("", code)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")
    return slug or "signal"


def unique_code(base: str, existing: Iterable[str]) -> str:
    """生成未被任何状态占用的能力代码"""
    taken = set(existing)
    if base not in taken:
        return base
    version = 2
    while f"{base}_v{version}" in taken:
        version += 1
    return f"{base}_v{version}"


# ============================================
# 能力存储
# ============================================

class CapabilityStore:
    """能力存储（强制状态流转规则）"""

    def __init__(self, repository, clock: Callable = utcnow):
        self.repository = repository
        self.clock = clock

    async def get(self, company_id: str, department: DepartmentType, code: str) -> Capability:
        capability = await self.repository.get_capability(company_id, department, code)
        if capability is None:
            raise CapabilityNotFoundError(
                f"Capability not found: {code}",
                company_id=company_id,
                department=department.value,
                code=code,
            )
        return capability

    async def find(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
        statuses: Optional[Iterable[CapabilityStatus]] = None,
    ) -> list[Capability]:
        return await self.repository.list_capabilities(company_id, department, statuses)

    async def list_active(self, company_id: str, department: DepartmentType) -> list[Capability]:
        """trial 与 active 状态的能力"""
        return await self.repository.list_capabilities(
            company_id, department, ACTIVE_CAPABILITY_STATUSES
        )

    async def codes(self, company_id: str, department: DepartmentType) -> set[str]:
        """全部状态（含已淘汰）的能力代码"""
        return {c.code for c in await self.find(company_id, department)}

    async def create(self, capability: Capability) -> Capability:
        existing = await self.repository.get_capability(
            capability.company_id, capability.department, capability.code
        )
        if existing is not None:
            raise InvalidTransitionError(
                f"Capability code already exists: {capability.code}",
                code=capability.code,
            )
        capability.status = CapabilityStatus.PROPOSED
        capability.created_at = capability.updated_at = self.clock()
        await self.repository.save_capability(capability)
        return capability

    async def transition(
        self,
        capability: Capability,
        to_status: CapabilityStatus,
        trial_days: Optional[int] = None,
    ) -> Capability:
        """执行状态流转"""
        if (capability.status, to_status) not in CAPABILITY_TRANSITIONS:
            logger.warning(
                "非法能力状态流转",
                code=capability.code,
                from_status=capability.status.value,
                to_status=to_status.value,
            )
            raise InvalidTransitionError(
                f"Capability {capability.code} cannot move "
                f"{capability.status.value} -> {to_status.value}",
                code=capability.code,
                from_status=capability.status.value,
                to_status=to_status.value,
            )

        now = self.clock()
        if to_status == CapabilityStatus.TRIAL:
            capability.activated_at = now
            if trial_days is not None:
                capability.trial_expires_at = now + timedelta(days=trial_days)
        elif to_status == CapabilityStatus.ACTIVE:
            capability.trial_expires_at = None
        elif to_status == CapabilityStatus.DEPRECATED:
            capability.deprecated_at = now

        capability.status = to_status
        capability.updated_at = now
        await self.repository.save_capability(capability)

        logger.info(
            "能力状态已更新",
            company_id=capability.company_id,
            department=capability.department.value,
            code=capability.code,
            status=to_status.value,
        )
        return capability

    async def touch(self, company_id: str, department: DepartmentType, code: Optional[str]) -> None:
        """记录最近使用时间"""
        if not code:
            return
        capability = await self.repository.get_capability(company_id, department, code)
        if capability is None:
            return
        capability.last_used_at = self.clock()
        await self.repository.save_capability(capability)


# ============================================
# 能力自生成引擎
# ============================================

class CapabilityGenesisEngine:
    """能力自生成引擎"""

    def __init__(
        self,
        repository,
        settings: AutopilotSettings,
        agent_registry=None,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.settings = settings
        self.config = settings.genesis
        self.agent_registry = agent_registry
        self.clock = clock
        self.store = CapabilityStore(repository, clock)

    # ============================================
    # 缺口分析
    # ============================================

    async def detect_gaps(
        self,
        company_id: str,
        department: DepartmentType,
        observations: Iterable[CapabilityGapObservation] = (),
        cycle_id: Optional[str] = None,
    ) -> GapEvidence:
        """统计能力缺口

        Args:
            company_id: 公司 ID
            department: 部门
            observations: 本周期 THINK 阶段的缺口观察
            cycle_id: 本周期 ID（历史统计时排除，避免重复计数）
        """
        since = self.clock() - timedelta(days=self.config.lookback_days)
        unmapped: Counter = Counter()
        unhandled: Counter = Counter()
        details: dict[tuple[GapKind, str], str] = {}

        def observe(kind: GapKind, key: str, detail: str) -> None:
            target = unmapped if kind == GapKind.UNMAPPED_AGENT else unhandled
            target[key] += 1
            details.setdefault((kind, key), detail)

        # 1. 历史 THINK 观察与未注册 Agent 的派发记录
        logs = await self.repository.list_logs(
            company_id, department=department, since=since, limit=1000
        )
        for entry in logs:
            if cycle_id is not None and entry.cycle_id == cycle_id:
                continue
            if entry.phase == Phase.THINK:
                for item in entry.details.get("gap_observations", []):
                    kind = GapKind(item["kind"])
                    if kind in (GapKind.UNMAPPED_AGENT, GapKind.UNHANDLED_SIGNAL):
                        observe(kind, item["key"], item.get("detail", ""))
            elif entry.phase == Phase.ACT and entry.rule == "unknown_agent":
                key = entry.details.get("decision_type") or entry.agent_id or "unknown"
                observe(GapKind.UNMAPPED_AGENT, key, f"agent {entry.agent_id} not registered")

        for obs in observations:
            if obs.kind in (GapKind.UNMAPPED_AGENT, GapKind.UNHANDLED_SIGNAL):
                observe(obs.kind, obs.key, obs.detail)

        # 2. 高影响威胁信号
        signals = await self.repository.list_signals(
            company_id, since=self.clock() - timedelta(days=7), limit=20
        )
        for record in signals:
            for signal in record.structured_signals:
                if signal.impact == RiskLevel.HIGH and signal.category == "threat":
                    observe(GapKind.UNHANDLED_SIGNAL, signal.topic or record.source, signal.title)

        # 被存活能力覆盖的信号不算缺口
        live = await self.store.find(company_id, department, LIVE_STATUSES)
        unhandled = Counter({
            key: count for key, count in unhandled.items()
            if not any(c.covers(key) for c in live)
        })

        # 3. 反复被拦截的决策类型
        decisions = await self.repository.list_decisions(
            company_id, department=department, verdict=Verdict.BLOCKED, since=since, limit=200
        )
        blocked: Counter = Counter(d.decision_type for d in decisions)
        block_rules = {}
        for d in decisions:
            block_rules.setdefault(d.decision_type, d.guardrail_rule or "unknown")

        # 4. 重复成功模式
        lessons = await self.repository.list_lessons(
            company_id,
            department=department,
            evaluations=[OutcomeEvaluation.POSITIVE],
            since=since,
        )
        patterns: Counter = Counter(m.decision_type for m in lessons)

        evidence = GapEvidence(
            unmapped_agents=[
                GapTally(key, count, details[(GapKind.UNMAPPED_AGENT, key)])
                for key, count in unmapped.items()
                if count >= self.config.unmapped_agent_threshold
            ],
            recurring_blocks=[
                GapTally(key, count, block_rules[key])
                for key, count in blocked.items()
                if count >= self.config.recurring_block_threshold
            ],
            unhandled_signals=[
                GapTally(key, count, details[(GapKind.UNHANDLED_SIGNAL, key)])
                for key, count in unhandled.items()
            ],
            repeated_patterns=[
                GapTally(key, count, f"{count} positive outcomes")
                for key, count in patterns.items()
                if count >= self.config.repeated_pattern_threshold
            ],
        )

        logger.info(
            "能力缺口分析完成",
            company_id=company_id,
            department=department.value,
            total_gaps=evidence.total,
        )
        return evidence

    # ============================================
    # 提案
    # ============================================

    def _default_agent(self, department: DepartmentType) -> Optional[str]:
        if self.agent_registry is None:
            return None
        agents = self.agent_registry.list_agents(department)
        return agents[0].id if agents else None

    def _draft(
        self,
        company_id: str,
        department: DepartmentType,
        kind: GapKind,
        tally: GapTally,
        live: list[Capability],
    ) -> Capability:
        """根据单项缺口起草能力（代码为未加版本的基础代码）"""
        risk_table = self.settings.guardrails.risk_table

        def agent_for(decision_type: str) -> Optional[str]:
            for c in live:
                if c.decision_type == decision_type and c.agent_to_execute:
                    return c.agent_to_execute
            return None

        if kind == GapKind.UNMAPPED_AGENT:
            return Capability(
                company_id=company_id,
                department=department,
                code=f"{slugify(tally.key)}_executor",
                name=f"{tally.key} executor",
                description=f"Map an executing agent for {tally.key} decisions",
                decision_type=tally.key,
                agent_to_execute=None,
                risk_level=risk_table.get(tally.key, RiskLevel.MEDIUM),
                proposed_reason=f"{tally.count} decisions of type {tally.key} had no registered agent",
            )
        if kind == GapKind.RECURRING_BLOCK:
            return Capability(
                company_id=company_id,
                department=department,
                code=f"{slugify(tally.key)}_guardrail_review",
                name=f"{tally.key} guardrail review",
                description=f"Prepare {tally.key} decisions so they pass the {tally.detail} guardrail",
                decision_type=tally.key,
                agent_to_execute=agent_for(tally.key),
                risk_level=RiskLevel.MEDIUM,
                proposed_reason=f"{tally.count} {tally.key} decisions blocked by {tally.detail}",
            )
        if kind == GapKind.UNHANDLED_SIGNAL:
            topic = slugify(tally.key)
            return Capability(
                company_id=company_id,
                department=department,
                code=f"{topic}_response",
                name=f"{tally.key} response",
                description=f"Analyze and respond to {tally.key} signals",
                decision_type="analyze",
                agent_to_execute=self._default_agent(department),
                handles=[tally.key.lower()],
                risk_level=RiskLevel.LOW,
                proposed_reason=f"{tally.count} signals about {tally.key} had no capability ({tally.detail})",
            )
        return Capability(
            company_id=company_id,
            department=department,
            code=f"{slugify(tally.key)}_automation",
            name=f"{tally.key} automation",
            description=f"Automate the repeatedly successful {tally.key} pattern",
            decision_type=tally.key,
            agent_to_execute=agent_for(tally.key),
            risk_level=risk_table.get(tally.key, RiskLevel.MEDIUM),
            proposed_reason=f"{tally.count} positive outcomes for {tally.key}",
        )

    async def propose_from_gaps(
        self,
        company_id: str,
        department: DepartmentType,
        evidence: GapEvidence,
    ) -> list[Capability]:
        """根据缺口证据提出新能力

        缺口总数不足 min_total_gaps 时不提案；每次最多 max_proposals_per_call 个。
        已有存活能力处理同一缺口时跳过；已淘汰的缺口重新提案时使用新版本代码。
        """
        if evidence.total < self.config.min_total_gaps:
            logger.info(
                "缺口数量不足，不提出新能力",
                company_id=company_id,
                department=department.value,
                total_gaps=evidence.total,
            )
            return []

        all_caps = await self.store.find(company_id, department)
        live = [c for c in all_caps if c.status in LIVE_STATUSES]
        live_bases = {base_code(c.code) for c in live}
        taken = {c.code for c in all_caps}

        proposed = []
        for kind, tally in evidence.items():
            if len(proposed) >= self.config.max_proposals_per_call:
                break

            draft = self._draft(company_id, department, kind, tally, live)
            if draft.code in live_bases:
                continue

            draft.code = unique_code(draft.code, taken)
            draft.source = CapabilitySource.AI_PROPOSED
            draft.gap_evidence = GapEvidence(**{_EVIDENCE_FIELDS[kind]: [tally]})
            capability = await self.store.create(draft)

            if (
                self.config.auto_trial_low_risk
                and capability.risk_level == RiskLevel.LOW
                and capability.agent_to_execute
            ):
                capability = await self.store.transition(
                    capability, CapabilityStatus.TRIAL, trial_days=self.config.trial_days
                )

            taken.add(capability.code)
            live_bases.add(base_code(capability.code))
            proposed.append(capability)

        if proposed:
            logger.info(
                "提出新能力",
                company_id=company_id,
                department=department.value,
                codes=[c.code for c in proposed],
            )
        return proposed

    # ============================================
    # 生命周期
    # ============================================

    async def activate(
        self,
        company_id: str,
        department: DepartmentType,
        code: str,
        mode: str = "trial",
    ) -> Capability:
        """激活能力

        mode=trial: proposed → trial（开始试运行计时）
        mode=active: trial → active
        """
        capability = await self.store.get(company_id, department, code)
        if mode == "trial":
            return await self.store.transition(
                capability, CapabilityStatus.TRIAL, trial_days=self.config.trial_days
            )
        if mode == "active":
            return await self.store.transition(capability, CapabilityStatus.ACTIVE)
        raise InvalidTransitionError(f"Unknown activation mode: {mode}", code=code, mode=mode)

    async def reject(
        self,
        company_id: str,
        department: DepartmentType,
        code: str,
        reason: str = "",
    ) -> Capability:
        """淘汰能力（proposed | trial → deprecated，终态）"""
        capability = await self.store.get(company_id, department, code)
        capability = await self.store.transition(capability, CapabilityStatus.DEPRECATED)
        if reason:
            logger.info("能力已淘汰", code=code, reason=reason)
        return capability

    async def seed_capabilities(
        self,
        company_id: str,
        department: DepartmentType,
        maturity: MaturityLevel,
    ) -> list[Capability]:
        """播种系统能力（成熟度已达到且尚未存在的种子），直接进入试运行"""
        seeds = self.settings.department(department).capability_seeds
        existing = await self.store.codes(company_id, department)

        seeded = []
        for seed in seeds:
            if seed.code in existing or not maturity.reaches(seed.required_maturity):
                continue
            capability = await self.store.create(Capability(
                company_id=company_id,
                department=department,
                code=seed.code,
                name=seed.name,
                description=seed.name,
                source=CapabilitySource.SYSTEM,
                decision_type=seed.decision_type,
                agent_to_execute=seed.agent_to_execute,
                handles=list(seed.handles),
                risk_level=seed.risk_level,
                required_maturity=seed.required_maturity,
                proposed_reason="System capability for unlocked department",
            ))
            capability = await self.store.transition(
                capability, CapabilityStatus.TRIAL, trial_days=self.config.trial_days
            )
            seeded.append(capability)

        if seeded:
            logger.info(
                "系统能力已播种",
                company_id=company_id,
                department=department.value,
                codes=[c.code for c in seeded],
            )
        return seeded

    async def promote_expired_trials(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
    ) -> list[Capability]:
        """试运行到期的能力：无负面经验 → active，否则 → deprecated"""
        now = self.clock()
        changed = []
        trials = await self.store.find(company_id, department, [CapabilityStatus.TRIAL])

        for capability in trials:
            if capability.trial_expires_at is None or capability.trial_expires_at > now:
                continue
            negatives = await self.repository.list_lessons(
                company_id,
                department=capability.department,
                decision_type=capability.decision_type,
                evaluations=[OutcomeEvaluation.NEGATIVE],
                since=capability.activated_at,
                limit=1,
            ) if capability.decision_type else []

            target = CapabilityStatus.DEPRECATED if negatives else CapabilityStatus.ACTIVE
            changed.append(await self.store.transition(capability, target))

        return changed

    async def expire_stale_proposals(
        self,
        company_id: str,
        department: Optional[DepartmentType] = None,
    ) -> list[Capability]:
        """长期未处理的 AI 提案 → deprecated"""
        cutoff = self.clock() - timedelta(days=self.config.proposal_expiry_days)
        proposals = await self.store.find(company_id, department, [CapabilityStatus.PROPOSED])

        expired = []
        for capability in proposals:
            if capability.source != CapabilitySource.AI_PROPOSED or capability.created_at > cutoff:
                continue
            expired.append(await self.store.transition(capability, CapabilityStatus.DEPRECATED))

        if expired:
            logger.info(
                "过期能力提案已淘汰",
                company_id=company_id,
                codes=[c.code for c in expired],
            )
        return expired
