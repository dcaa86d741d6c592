# Enterprise Autopilot - 配置
"""
自动驾驶配置

内置默认值 + configs/autopilot.yaml 覆盖 + 环境变量覆盖。

环境变量（支持 .env）:
- DATABASE_URL
- AUTOPILOT_CONFIG
- AGENT_EXECUTOR_BASE_URL / AGENT_EXECUTOR_TOKEN
- LLM_API_BASE / LLM_API_KEY / LLM_MODEL
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import structlog
import yaml
from dotenv import load_dotenv

from orchestrator.models import DepartmentType, MaturityLevel, RiskLevel

logger = structlog.get_logger()

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "configs" / "autopilot.yaml"


# ============================================
# 配置结构
# ============================================

@dataclass
class CapabilitySeed:
    """部门解锁时播种的系统能力"""
    code: str
    name: str
    decision_type: str
    agent_to_execute: str
    handles: list[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    required_maturity: MaturityLevel = MaturityLevel.STARTER


@dataclass
class DepartmentDefaults:
    """部门默认配置"""
    department: DepartmentType
    required_maturity: MaturityLevel = MaturityLevel.STARTER
    default_actions: list[str] = field(default_factory=list)
    default_guardrails: dict = field(default_factory=dict)
    decision_types: list[str] = field(default_factory=list)
    execution_frequency: str = "6h"
    daily_credit_cap: int = 100
    max_decisions_per_cycle: int = 5
    outcome_baseline: float = 0.0
    capability_seeds: list[CapabilitySeed] = field(default_factory=list)


@dataclass
class GuardrailSettings:
    """护栏阈值"""
    approval_headroom: float = 0.20
    positive_lessons_for_auto_approve: int = 3
    auto_approve_min_headroom: float = 0.20
    risk_table: dict[str, RiskLevel] = field(default_factory=dict)
    publishing_types: list[str] = field(default_factory=lambda: ["publish", "create_content"])
    spending_types: list[str] = field(
        default_factory=lambda: ["create_content", "publish", "create_proposal", "adjust_campaigns"]
    )
    freeze_departments: list[str] = field(default_factory=lambda: ["marketing", "sales"])
    human_approval_types: list[str] = field(
        default_factory=lambda: ["create_content", "publish", "create_proposal", "review_contract"]
    )


@dataclass
class GenesisSettings:
    """能力自生成阈值"""
    unmapped_agent_threshold: int = 2
    recurring_block_threshold: int = 3
    repeated_pattern_threshold: int = 3
    min_total_gaps: int = 2
    max_proposals_per_call: int = 3
    lookback_days: int = 30
    trial_days: int = 14
    auto_trial_low_risk: bool = True
    proposal_expiry_days: int = 30


@dataclass
class LearningSettings:
    """学习阶段配置"""
    stale_pending_days: int = 7
    recent_lessons_limit: int = 20
    measurable_keys: list[str] = field(
        default_factory=lambda: ["metric_value", "engagement", "content_generated", "score"]
    )


@dataclass
class IntelligenceSettings:
    """情报刷新配置（按成熟度，单位小时；0 表示每个周期刷新）"""
    refresh_hours: dict[MaturityLevel, int] = field(default_factory=lambda: {
        MaturityLevel.STARTER: 168,
        MaturityLevel.GROWING: 72,
        MaturityLevel.ESTABLISHED: 24,
        MaturityLevel.SCALING: 0,
    })
    signal_ttl_hours: int = 24
    source_url: Optional[str] = None


@dataclass
class CycleSettings:
    """周期与租约配置"""
    lease_ttl_seconds: float = 300.0
    heartbeat_interval_seconds: float = 30.0
    scheduler_tick_seconds: float = 60.0
    maintenance_interval_seconds: float = 3600.0


@dataclass
class AgentSettings:
    """Agent 注册配置"""
    id: str
    department: DepartmentType
    credits_per_use: int = 1
    endpoint: Optional[str] = None
    description: str = ""


@dataclass
class LLMSettings:
    """决策模型配置（OpenAI 兼容接口）"""
    api_base: Optional[str] = None
    api_key: Optional[str] = None
    model: str = "gpt-4o-mini"
    timeout_seconds: float = 60.0
    temperature: float = 0.3


@dataclass
class AutopilotSettings:
    """自动驾驶总配置"""
    database_url: Optional[str] = None
    decision_engine: str = "rules"  # rules, model
    departments: dict[DepartmentType, DepartmentDefaults] = field(default_factory=dict)
    guardrails: GuardrailSettings = field(default_factory=GuardrailSettings)
    genesis: GenesisSettings = field(default_factory=GenesisSettings)
    learning: LearningSettings = field(default_factory=LearningSettings)
    intelligence: IntelligenceSettings = field(default_factory=IntelligenceSettings)
    cycle: CycleSettings = field(default_factory=CycleSettings)
    agents: list[AgentSettings] = field(default_factory=list)
    agent_executor_base_url: Optional[str] = None
    agent_executor_token: Optional[str] = None
    llm: LLMSettings = field(default_factory=LLMSettings)

    def department(self, department: DepartmentType) -> DepartmentDefaults:
        return self.departments[department]

    def risk_for(self, decision_type: str) -> Optional[RiskLevel]:
        return self.guardrails.risk_table.get(decision_type)


# ============================================
# 内置默认值
# ============================================

DEFAULT_RISK_TABLE: dict[str, RiskLevel] = {
    # marketing
    "analyze": RiskLevel.LOW,
    "create_content": RiskLevel.LOW,
    "reply_comments": RiskLevel.LOW,
    "ab_test": RiskLevel.MEDIUM,
    "adjust_campaigns": RiskLevel.MEDIUM,
    "publish": RiskLevel.MEDIUM,
    # sales
    "qualify_lead": RiskLevel.LOW,
    "enrich_contact": RiskLevel.LOW,
    "alert_stalled": RiskLevel.LOW,
    "forecast_pipeline": RiskLevel.LOW,
    "advance_deal": RiskLevel.MEDIUM,
    "create_proposal": RiskLevel.MEDIUM,
    # finance
    "budget_alert": RiskLevel.LOW,
    "credit_alert": RiskLevel.LOW,
    "cashflow_warning": RiskLevel.LOW,
    "forecast_revenue": RiskLevel.LOW,
    "invoice_reminder": RiskLevel.MEDIUM,
    "optimize_expenses": RiskLevel.HIGH,
    # legal
    "deadline_reminder": RiskLevel.LOW,
    "regulatory_update": RiskLevel.LOW,
    "compliance_alert": RiskLevel.MEDIUM,
    "risk_assessment": RiskLevel.MEDIUM,
    "review_contract": RiskLevel.HIGH,
    # hr
    "climate_survey": RiskLevel.LOW,
    "training_recommendation": RiskLevel.LOW,
    "create_job_profile": RiskLevel.MEDIUM,
    "talent_match": RiskLevel.MEDIUM,
    "performance_review": RiskLevel.HIGH,
    # operations
    "sla_alert": RiskLevel.LOW,
    "efficiency_report": RiskLevel.LOW,
    "bottleneck_detection": RiskLevel.LOW,
    "optimize_process": RiskLevel.MEDIUM,
    "automate_task": RiskLevel.MEDIUM,
}


def _seed(code, name, decision_type, agent, handles, risk, maturity) -> CapabilitySeed:
    return CapabilitySeed(
        code=code,
        name=name,
        decision_type=decision_type,
        agent_to_execute=agent,
        handles=handles,
        risk_level=risk,
        required_maturity=maturity,
    )


_S, _G, _E = MaturityLevel.STARTER, MaturityLevel.GROWING, MaturityLevel.ESTABLISHED
_L, _M = RiskLevel.LOW, RiskLevel.MEDIUM

DEPARTMENT_DEFINITIONS: list[DepartmentDefaults] = [
    DepartmentDefaults(
        department=DepartmentType.MARKETING,
        required_maturity=_S,
        default_actions=["generate_content", "schedule_post", "analyze_performance"],
        default_guardrails={"max_posts_per_day": 3, "require_brand_check": True},
        decision_types=["create_content", "publish", "reply_comments",
                        "adjust_campaigns", "analyze", "ab_test"],
        execution_frequency="6h",
        daily_credit_cap=100,
        capability_seeds=[
            _seed("content_optimization", "Content A/B Testing", "create_content",
                  "content_creator", ["content", "engagement", "social"], _L, _S),
            _seed("audience_segmentation", "Smart Audience Segmentation", "analyze",
                  "audience_analyst", ["audience", "followers"], _L, _G),
            _seed("ab_testing_auto", "Automated A/B Testing", "ab_test",
                  "ab_tester", ["campaign", "ab_test"], _M, _E),
        ],
    ),
    DepartmentDefaults(
        department=DepartmentType.SALES,
        required_maturity=_S,
        default_actions=["score_leads", "alert_stalled_deals"],
        default_guardrails={"max_outreach_per_day": 10},
        decision_types=["qualify_lead", "advance_deal", "create_proposal",
                        "alert_stalled", "enrich_contact", "forecast_pipeline"],
        execution_frequency="6h",
        daily_credit_cap=100,
        capability_seeds=[
            _seed("lead_scoring", "AI Lead Scoring", "qualify_lead",
                  "lead_scorer", ["lead", "crm"], _L, _S),
            _seed("predictive_churn", "Predictive Churn Detection", "alert_stalled",
                  "churn_predictor", ["churn", "stalled_deal"], _L, _G),
        ],
    ),
    DepartmentDefaults(
        department=DepartmentType.FINANCE,
        required_maturity=_S,
        default_actions=["monitor_credits", "project_consumption"],
        default_guardrails={"alert_threshold_percentage": 80},
        decision_types=["budget_alert", "forecast_revenue", "optimize_expenses",
                        "invoice_reminder", "cashflow_warning", "credit_alert"],
        execution_frequency="12h",
        daily_credit_cap=50,
        capability_seeds=[
            _seed("credit_monitoring", "Credit Consumption Monitoring", "credit_alert",
                  "credit_monitor", ["credits", "usage", "budget"], _L, _S),
            _seed("budget_forecasting", "Budget Forecasting", "forecast_revenue",
                  "budget_forecaster", ["revenue", "forecast"], _L, _G),
        ],
    ),
    DepartmentDefaults(
        department=DepartmentType.LEGAL,
        required_maturity=_G,
        default_actions=["review_contracts", "check_compliance"],
        default_guardrails={"require_human_approval": True},
        decision_types=["review_contract", "compliance_alert", "deadline_reminder",
                        "regulatory_update", "risk_assessment"],
        execution_frequency="24h",
        daily_credit_cap=50,
        capability_seeds=[
            _seed("compliance_check", "Content Compliance Check", "compliance_alert",
                  "compliance_checker", ["compliance", "regulation"], _M, _G),
            _seed("regulatory_monitor", "Regulatory Change Monitor", "regulatory_update",
                  "regulatory_monitor", ["regulatory"], _L, _E),
        ],
    ),
    DepartmentDefaults(
        department=DepartmentType.HR,
        required_maturity=_E,
        default_actions=["generate_profiles", "analyze_climate"],
        default_guardrails={"require_human_approval": True},
        decision_types=["create_job_profile", "climate_survey", "talent_match",
                        "performance_review", "training_recommendation"],
        execution_frequency="24h",
        daily_credit_cap=50,
        capability_seeds=[
            _seed("profile_generation", "Job Profile Generation", "create_job_profile",
                  "profile_generator", ["hiring", "job_profile"], _M, _E),
            _seed("climate_analysis", "Work Climate Analysis", "climate_survey",
                  "climate_analyst", ["climate", "engagement_survey"], _L, _E),
        ],
    ),
    DepartmentDefaults(
        department=DepartmentType.OPERATIONS,
        required_maturity=_E,
        default_actions=["optimize_processes", "monitor_sla"],
        default_guardrails={"max_auto_actions": 5},
        decision_types=["optimize_process", "sla_alert", "automate_task",
                        "bottleneck_detection", "efficiency_report"],
        execution_frequency="12h",
        daily_credit_cap=80,
        capability_seeds=[
            _seed("process_optimization", "Process Optimization", "optimize_process",
                  "process_optimizer", ["process", "bottleneck"], _M, _E),
            _seed("sla_monitoring", "SLA Monitoring", "sla_alert",
                  "sla_monitor", ["sla", "incident"], _L, _E),
        ],
    ),
]


def _default_agents() -> list[AgentSettings]:
    """每个种子能力对应一个 Agent"""
    agents = []
    for definition in DEPARTMENT_DEFINITIONS:
        for seed in definition.capability_seeds:
            agents.append(AgentSettings(
                id=seed.agent_to_execute,
                department=definition.department,
                credits_per_use=1,
                endpoint=seed.agent_to_execute.replace("_", "-"),
                description=seed.name,
            ))
    return agents


def default_settings() -> AutopilotSettings:
    """内置默认配置"""
    return AutopilotSettings(
        departments={
            d.department: DepartmentDefaults(
                department=d.department,
                required_maturity=d.required_maturity,
                default_actions=list(d.default_actions),
                default_guardrails=dict(d.default_guardrails),
                decision_types=list(d.decision_types),
                execution_frequency=d.execution_frequency,
                daily_credit_cap=d.daily_credit_cap,
                max_decisions_per_cycle=d.max_decisions_per_cycle,
                outcome_baseline=d.outcome_baseline,
                capability_seeds=list(d.capability_seeds),
            )
            for d in DEPARTMENT_DEFINITIONS
        },
        guardrails=GuardrailSettings(risk_table=dict(DEFAULT_RISK_TABLE)),
        agents=_default_agents(),
    )


# ============================================
# 加载
# ============================================

def _apply_section(target, values: Optional[dict]) -> None:
    """用 YAML 中的标量覆盖 dataclass 字段"""
    for key, value in (values or {}).items():
        if not hasattr(target, key):
            logger.warning("未知配置项", section=type(target).__name__, key=key)
            continue
        setattr(target, key, value)


def _apply_departments(settings: AutopilotSettings, config: dict) -> None:
    for name, values in (config or {}).items():
        department = DepartmentType.parse(name)
        defaults = settings.departments[department]
        values = dict(values or {})
        if "required_maturity" in values:
            defaults.required_maturity = MaturityLevel.parse(values.pop("required_maturity"))
        seeds = values.pop("capability_seeds", None)
        if seeds is not None:
            defaults.capability_seeds = [
                CapabilitySeed(
                    code=s["code"],
                    name=s.get("name", s["code"]),
                    decision_type=s["decision_type"],
                    agent_to_execute=s["agent_to_execute"],
                    handles=list(s.get("handles", [])),
                    risk_level=RiskLevel.parse(s.get("risk_level", "low")),
                    required_maturity=MaturityLevel.parse(s.get("required_maturity")),
                )
                for s in seeds
            ]
        _apply_section(defaults, values)


def _apply_agents(settings: AutopilotSettings, agents: list) -> None:
    by_id = {a.id: a for a in settings.agents}
    for item in agents or []:
        agent = AgentSettings(
            id=item["id"],
            department=DepartmentType.parse(item["department"]),
            credits_per_use=int(item.get("credits_per_use", 1)),
            endpoint=item.get("endpoint"),
            description=item.get("description", ""),
        )
        by_id[agent.id] = agent
    settings.agents = list(by_id.values())


def _apply_env(settings: AutopilotSettings) -> None:
    settings.database_url = os.getenv("DATABASE_URL", settings.database_url)
    settings.agent_executor_base_url = os.getenv(
        "AGENT_EXECUTOR_BASE_URL", settings.agent_executor_base_url
    )
    settings.agent_executor_token = os.getenv("AGENT_EXECUTOR_TOKEN", settings.agent_executor_token)
    settings.llm.api_base = os.getenv("LLM_API_BASE", settings.llm.api_base)
    settings.llm.api_key = os.getenv("LLM_API_KEY", settings.llm.api_key)
    settings.llm.model = os.getenv("LLM_MODEL", settings.llm.model)


def load_settings(path: Optional[str] = None) -> AutopilotSettings:
    """加载配置

    Args:
        path: YAML 路径，默认读取 AUTOPILOT_CONFIG 或 configs/autopilot.yaml

    Returns:
        合并后的配置
    """
    load_dotenv()
    settings = default_settings()
    config_path = Path(path or os.getenv("AUTOPILOT_CONFIG") or DEFAULT_CONFIG_PATH)

    if not config_path.exists():
        logger.warning("配置文件不存在，使用内置默认值", path=str(config_path))
        _apply_env(settings)
        return settings

    with open(config_path) as f:
        config = yaml.safe_load(f) or {}

    settings.database_url = config.get("database_url", settings.database_url)
    settings.decision_engine = config.get("decision_engine", settings.decision_engine)
    settings.agent_executor_base_url = config.get(
        "agent_executor_base_url", settings.agent_executor_base_url
    )

    guardrails = dict(config.get("guardrails") or {})
    risk_table = guardrails.pop("risk_table", None)
    _apply_section(settings.guardrails, guardrails)
    for decision_type, level in (risk_table or {}).items():
        settings.guardrails.risk_table[decision_type] = RiskLevel.parse(level)

    _apply_section(settings.genesis, config.get("genesis"))
    _apply_section(settings.learning, config.get("learning"))
    _apply_section(settings.cycle, config.get("cycle"))
    _apply_section(settings.llm, config.get("llm"))

    intelligence = dict(config.get("intelligence") or {})
    refresh = intelligence.pop("refresh_hours", None)
    _apply_section(settings.intelligence, intelligence)
    for level, hours in (refresh or {}).items():
        settings.intelligence.refresh_hours[MaturityLevel.parse(level)] = int(hours)

    _apply_departments(settings, config.get("departments"))
    _apply_agents(settings, config.get("agents"))
    _apply_env(settings)

    logger.info(
        "配置加载完成",
        path=str(config_path),
        departments=len(settings.departments),
        agents=len(settings.agents),
    )
    return settings
