# Enterprise Autopilot - Engine
"""
自动驾驶引擎（组合根）

把各组件装配在一起，并提供对外的全部入口:
- 触发: run_cycle / cancel_cycle / toggle_autopilot / unlock_departments
- 审批与能力: resolve_approval / activate_capability / reject_capability
- 查询: 部门、待审批、能力、决策、执行日志、经验、企业 IQ、额度
- 写入: ingest_intelligence / report_outcome
"""

from datetime import datetime
from typing import Callable, Optional

import structlog

from agents.base import AgentExecutor, LLMClient, MockAgentExecutor
from agents.http import HttpAgentExecutor, HttpLLMClient
from agents.registry import AgentRegistry
from orchestrator.approval import ApprovalWorkflow, ResolutionResult
from orchestrator.capability import CapabilityGenesisEngine
from orchestrator.cycle import CycleOrchestrator
from orchestrator.decision import DecisionEngine, ModelDecisionEngine, RuleBasedDecisionEngine
from orchestrator.departments import (
    CompanyDataProvider,
    DepartmentRegistry,
    MaturityProvider,
    StaticCompanyProfile,
    ToggleResult,
)
from orchestrator.errors import DecisionNotFoundError
from orchestrator.execution import CreditLedger, ExecutionDispatcher
from orchestrator.guardrail import BudgetState, GuardrailPolicyEngine
from orchestrator.intelligence import HttpIntelligenceSource, IntelligenceCache, IntelligenceSource
from orchestrator.iq import EnterpriseIQ, compute_enterprise_iq
from orchestrator.learning import EVALUATED, LearningStore
from orchestrator.models import (
    ApprovalRequest,
    Capability,
    CapabilityStatus,
    CycleSummary,
    Decision,
    DepartmentType,
    ExecutionLogEntry,
    IntelligenceSignal,
    MemoryEntry,
    Phase,
    Verdict,
    utcnow,
)
from orchestrator.settings import AutopilotSettings, load_settings
from orchestrator.state_machine import CycleLeaseManager
from storage.memory import InMemoryRepository

logger = structlog.get_logger()


class AutopilotEngine:
    """自动驾驶引擎"""

    def __init__(
        self,
        settings: AutopilotSettings,
        repository,
        agent_registry: AgentRegistry,
        maturity_provider: MaturityProvider,
        data_provider: CompanyDataProvider,
        sources: Optional[list[IntelligenceSource]] = None,
        decision_engine: Optional[DecisionEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.repository = repository
        self.agent_registry = agent_registry
        self.clock = clock

        self.genesis = CapabilityGenesisEngine(repository, settings, agent_registry, clock=clock)
        self.departments = DepartmentRegistry(
            repository,
            settings,
            maturity_provider,
            data_provider,
            genesis=self.genesis,
            clock=clock,
        )
        self.intelligence = IntelligenceCache(repository, settings.intelligence, sources, clock=clock)
        self.decision_engine = decision_engine or RuleBasedDecisionEngine(agent_registry, settings)
        self.guardrail = GuardrailPolicyEngine(settings.guardrails, clock=clock)
        self.ledger = CreditLedger(repository, clock=clock)
        self.dispatcher = ExecutionDispatcher(
            repository, agent_registry, self.ledger, self.genesis.store, clock=clock
        )
        self.learning = LearningStore(repository, settings.learning, clock=clock)
        self.approvals = ApprovalWorkflow(
            repository, self.dispatcher, self.learning, self.departments, clock=clock
        )
        self.leases = CycleLeaseManager(settings.cycle.lease_ttl_seconds, clock=clock)
        self.orchestrator = CycleOrchestrator(
            repository,
            settings,
            self.departments,
            self.intelligence,
            self.decision_engine,
            self.guardrail,
            self.approvals,
            self.dispatcher,
            self.ledger,
            self.learning,
            self.genesis,
            self.leases,
            clock=clock,
        )

    def _department(self, department) -> DepartmentType:
        return self.departments.parse_department(department)

    def _optional_department(self, department) -> Optional[DepartmentType]:
        return self._department(department) if department is not None else None

    # ============================================
    # 周期
    # ============================================

    async def run_cycle(self, company_id: str, department) -> CycleSummary:
        return await self.orchestrator.run_cycle(company_id, department)

    def cancel_cycle(self, company_id: str, department) -> bool:
        """请求取消运行中的周期（在下一阶段开始前生效）"""
        return self.leases.request_cancel(company_id, self._department(department))

    # ============================================
    # 部门
    # ============================================

    async def toggle_autopilot(self, company_id: str, department, enabled: bool) -> ToggleResult:
        return await self.departments.toggle_autopilot(company_id, department, enabled)

    async def unlock_departments(self, company_id: str):
        return await self.departments.unlock_departments(company_id)

    async def list_departments(self, company_id: str) -> list[dict]:
        return await self.departments.describe_departments(company_id)

    async def credit_status(self, company_id: str, department) -> BudgetState:
        config = await self.departments.get_config(company_id, self._department(department))
        return await self.ledger.snapshot(company_id, config.daily_credit_cap)

    # ============================================
    # 审批
    # ============================================

    async def list_pending_approvals(self, company_id: str, department=None) -> list[ApprovalRequest]:
        return await self.approvals.list_pending(company_id, self._optional_department(department))

    async def resolve_approval(
        self,
        approval_id: str,
        approved: bool,
        reviewer_id: str,
        reviewer_tier="standard",
        notes: str = "",
    ) -> ResolutionResult:
        return await self.approvals.resolve(approval_id, approved, reviewer_id, reviewer_tier, notes)

    # ============================================
    # 能力
    # ============================================

    async def list_capabilities(
        self,
        company_id: str,
        department=None,
        status: Optional[str] = None,
    ) -> list[Capability]:
        statuses = [CapabilityStatus.parse(status)] if status else None
        return await self.genesis.store.find(company_id, self._optional_department(department), statuses)

    async def activate_capability(self, company_id: str, department, code: str, mode: str = "trial") -> Capability:
        return await self.genesis.activate(company_id, self._department(department), code, mode)

    async def reject_capability(self, company_id: str, department, code: str, reason: str = "") -> Capability:
        return await self.genesis.reject(company_id, self._department(department), code, reason)

    # ============================================
    # 查询
    # ============================================

    async def list_decisions(
        self,
        company_id: str,
        department=None,
        verdict: Optional[str] = None,
        cycle_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Decision]:
        return await self.repository.list_decisions(
            company_id,
            department=self._optional_department(department),
            cycle_id=cycle_id,
            verdict=Verdict.parse(verdict),
            limit=limit,
        )

    async def get_decision(self, decision_id: str) -> Decision:
        decision = await self.repository.get_decision(decision_id)
        if decision is None:
            raise DecisionNotFoundError(f"Decision not found: {decision_id}", decision_id=decision_id)
        return decision

    async def list_execution_log(
        self,
        company_id: str,
        department=None,
        cycle_id: Optional[str] = None,
        phase: Optional[str] = None,
        limit: int = 200,
    ) -> list[ExecutionLogEntry]:
        return await self.repository.list_logs(
            company_id,
            department=self._optional_department(department),
            cycle_id=cycle_id,
            phase=Phase.parse(phase) if phase else None,
            limit=limit,
        )

    async def list_lessons(
        self,
        company_id: str,
        department=None,
        include_pending: bool = True,
        limit: int = 100,
    ) -> list[MemoryEntry]:
        return await self.repository.list_lessons(
            company_id,
            department=self._optional_department(department),
            evaluations=None if include_pending else EVALUATED,
            limit=limit,
        )

    async def enterprise_iq(self, company_id: str) -> EnterpriseIQ:
        return await compute_enterprise_iq(self.repository, company_id)

    # ============================================
    # 写入
    # ============================================

    async def ingest_intelligence(
        self,
        company_id: str,
        source: str,
        structured_signals: list,
        payload: Optional[dict] = None,
        relevance_score: float = 0.5,
    ) -> IntelligenceSignal:
        return await self.intelligence.ingest(
            company_id, source, structured_signals, payload, relevance_score
        )

    async def report_outcome(self, company_id: str, decision_id: str, metric_value: float) -> Optional[MemoryEntry]:
        """补报决策效果指标，完成待定经验评估"""
        decision = await self.get_decision(decision_id)
        config = await self.departments.get_config(company_id, decision.department)
        return await self.learning.resolve_pending(
            company_id, decision_id, metric_value, baseline=config.outcome_baseline
        )

    # ============================================
    # 维护
    # ============================================

    async def run_maintenance(self, company_id: str) -> dict:
        """试运行到期、过期提案、过期待定经验、部门自动解锁"""
        promoted = await self.genesis.promote_expired_trials(company_id)
        expired = await self.genesis.expire_stale_proposals(company_id)
        stale = await self.learning.resolve_stale_pending(company_id)
        unlocked = await self.departments.unlock_departments(company_id)
        report = {
            "trials_resolved": {c.code: c.status.value for c in promoted},
            "proposals_expired": [c.code for c in expired],
            "stale_lessons_resolved": len(stale),
            "departments_unlocked": [c.department.value for c in unlocked],
        }
        logger.info("维护任务完成", company_id=company_id, **report)
        return report

    async def close(self) -> None:
        await self.agent_registry.executor.close()
        for source in self.intelligence.sources:
            await source.close()
        await self.repository.close()


def build_engine(
    settings: Optional[AutopilotSettings] = None,
    repository=None,
    executor: Optional[AgentExecutor] = None,
    profile: Optional[StaticCompanyProfile] = None,
    sources: Optional[list[IntelligenceSource]] = None,
    llm_client: Optional[LLMClient] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AutopilotEngine:
    """按配置装配引擎

    未提供的依赖按配置选择: 有 DATABASE_URL 时用 PostgreSQL，
    有 AGENT_EXECUTOR_BASE_URL 时用 HTTP 执行器，否则使用内存与 Mock 实现。
    """
    settings = settings or load_settings()

    if repository is None:
        if settings.database_url:
            from storage.postgres import PostgresRepository
            repository = PostgresRepository(settings.database_url)
        else:
            logger.warning("未配置 DATABASE_URL，使用内存存储")
            repository = InMemoryRepository()

    if executor is None:
        if settings.agent_executor_base_url:
            executor = HttpAgentExecutor(
                settings.agent_executor_base_url, settings.agent_executor_token
            )
        else:
            logger.warning("未配置 AGENT_EXECUTOR_BASE_URL，使用 Mock 执行器")
            executor = MockAgentExecutor()

    if profile is None:
        profile = StaticCompanyProfile()

    if sources is None:
        sources = []
        if settings.intelligence.source_url:
            sources.append(HttpIntelligenceSource(settings.intelligence.source_url))

    agent_registry = AgentRegistry.from_settings(settings, executor)

    decision_engine = None
    if settings.decision_engine == "model":
        llm_client = llm_client or HttpLLMClient(
            settings.llm.api_base,
            settings.llm.api_key,
            settings.llm.model,
            timeout=settings.llm.timeout_seconds,
        )
        decision_engine = ModelDecisionEngine(llm_client, agent_registry, settings)

    return AutopilotEngine(
        settings,
        repository,
        agent_registry,
        maturity_provider=profile,
        data_provider=profile,
        sources=sources,
        decision_engine=decision_engine,
        clock=clock,
    )
