# Enterprise Autopilot - 部门注册
"""
部门注册与解锁

- 部门按公司成熟度解锁（starter < growing < established < scaling）
- 开启自动驾驶前检查前置数据，失败时返回结构化原因
- 关闭始终成功；部门配置只禁用不删除
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog

from orchestrator.errors import (
    DepartmentDisabledError,
    DepartmentLockedError,
    PrerequisiteError,
    UnknownDepartmentError,
)
from orchestrator.models import DepartmentConfig, DepartmentType, MaturityLevel, utcnow
from orchestrator.settings import AutopilotSettings

logger = structlog.get_logger()


# ============================================
# 外部数据接口
# ============================================

class MaturityProvider(ABC):
    """公司成熟度提供者"""

    @abstractmethod
    async def get_maturity(self, company_id: str) -> MaturityLevel:
        pass


class CompanyDataProvider(ABC):
    """公司数据提供者（前置数据计数与跨部门标记）"""

    @abstractmethod
    async def get_prerequisite_counts(self, company_id: str) -> dict[str, int]:
        """返回 connected_channels / content_items / crm_records 等计数"""
        pass

    @abstractmethod
    async def get_company_flags(self, company_id: str) -> dict:
        """返回公司参数，例如 {"finance_budget_status": "exceeded"}"""
        pass


@dataclass
class CompanyProfile:
    maturity: MaturityLevel = MaturityLevel.STARTER
    counts: dict[str, int] = field(default_factory=dict)
    flags: dict = field(default_factory=dict)


class StaticCompanyProfile(MaturityProvider, CompanyDataProvider):
    """静态公司档案（测试与本地开发）"""

    def __init__(
        self,
        maturity: MaturityLevel = MaturityLevel.STARTER,
        counts: Optional[dict[str, int]] = None,
        flags: Optional[dict] = None,
    ):
        self.default = CompanyProfile(maturity, dict(counts or {}), dict(flags or {}))
        self.profiles: dict[str, CompanyProfile] = {}

    def set_profile(
        self,
        company_id: str,
        maturity: Optional[MaturityLevel] = None,
        counts: Optional[dict[str, int]] = None,
        flags: Optional[dict] = None,
    ) -> CompanyProfile:
        profile = self.profiles.setdefault(
            company_id,
            CompanyProfile(self.default.maturity, dict(self.default.counts), dict(self.default.flags)),
        )
        if maturity is not None:
            profile.maturity = MaturityLevel.parse(maturity)
        if counts is not None:
            profile.counts.update(counts)
        if flags is not None:
            profile.flags.update(flags)
        return profile

    def _profile(self, company_id: str) -> CompanyProfile:
        return self.profiles.get(company_id, self.default)

    async def get_maturity(self, company_id: str) -> MaturityLevel:
        return self._profile(company_id).maturity

    async def get_prerequisite_counts(self, company_id: str) -> dict[str, int]:
        return dict(self._profile(company_id).counts)

    async def get_company_flags(self, company_id: str) -> dict:
        return dict(self._profile(company_id).flags)


# ============================================
# 前置数据
# ============================================

@dataclass
class Requirement:
    key: str
    minimum: int

    def met(self, counts: dict[str, int]) -> bool:
        return int(counts.get(self.key, 0) or 0) >= self.minimum

    def __str__(self) -> str:
        return f"{self.key} >= {self.minimum}"


# 每个部门的前置条件：满足任一组即可
PREREQUISITES: dict[DepartmentType, list[Requirement]] = {
    DepartmentType.MARKETING: [Requirement("connected_channels", 1), Requirement("content_items", 5)],
    DepartmentType.SALES: [Requirement("crm_records", 1)],
    DepartmentType.FINANCE: [Requirement("usage_records", 1)],
    DepartmentType.LEGAL: [Requirement("legal_parameters", 1)],
    DepartmentType.HR: [Requirement("members", 2)],
    DepartmentType.OPERATIONS: [Requirement("execution_teams", 1)],
}


def missing_prerequisites(department: DepartmentType, counts: dict[str, int]) -> list[str]:
    """返回未满足的前置条件；满足任一条件时为空"""
    alternatives = PREREQUISITES.get(department, [])
    if not alternatives or any(r.met(counts) for r in alternatives):
        return []
    return [str(r) for r in alternatives]


# ============================================
# 开关结果
# ============================================

@dataclass
class ToggleResult:
    """开关自动驾驶的结果"""
    success: bool
    department: str
    enabled: bool = False
    error_code: Optional[str] = None
    reason: str = ""
    missing: list[str] = field(default_factory=list)
    config: Optional[DepartmentConfig] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "department": self.department,
            "enabled": self.enabled,
            "error_code": self.error_code,
            "reason": self.reason,
            "missing": self.missing,
            "config": self.config.to_dict() if self.config else None,
        }


# ============================================
# 部门注册表
# ============================================

class DepartmentRegistry:
    """部门注册表"""

    def __init__(
        self,
        repository,
        settings: AutopilotSettings,
        maturity_provider: MaturityProvider,
        data_provider: CompanyDataProvider,
        genesis=None,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.settings = settings
        self.maturity_provider = maturity_provider
        self.data_provider = data_provider
        self.genesis = genesis
        self.clock = clock

    @staticmethod
    def parse_department(value) -> DepartmentType:
        try:
            return DepartmentType.parse(value)
        except ValueError:
            raise UnknownDepartmentError(f"Unknown department: {value}", department=str(value))

    def required_maturity(self, department: DepartmentType) -> MaturityLevel:
        """部门解锁所需成熟度（以配置为准，已保存的部门配置只是快照）"""
        return self.settings.department(department).required_maturity

    def is_unlocked(self, department: DepartmentType, maturity_level: MaturityLevel) -> bool:
        """成熟度是否达到部门要求"""
        return MaturityLevel.parse(maturity_level).reaches(self.required_maturity(department))

    def default_config(self, company_id: str, department: DepartmentType) -> DepartmentConfig:
        defaults = self.settings.department(department)
        return DepartmentConfig(
            company_id=company_id,
            department=department,
            required_maturity=defaults.required_maturity,
            allowed_actions=list(defaults.decision_types),
            guardrails=dict(defaults.default_guardrails),
            execution_frequency=defaults.execution_frequency,
            daily_credit_cap=defaults.daily_credit_cap,
            max_decisions_per_cycle=defaults.max_decisions_per_cycle,
            outcome_baseline=defaults.outcome_baseline,
        )

    async def get_config(self, company_id: str, department: DepartmentType) -> DepartmentConfig:
        """已保存的配置；不存在时返回未保存的默认配置"""
        config = await self.repository.get_department_config(company_id, department)
        if config is None:
            return self.default_config(company_id, department)
        config.required_maturity = self.required_maturity(department)
        return config

    async def list_departments(self, company_id: str) -> list[DepartmentConfig]:
        """列出全部部门（未保存的部门返回默认配置）"""
        return [await self.get_config(company_id, d) for d in DepartmentType]

    async def describe_departments(self, company_id: str) -> list[dict]:
        """部门列表 + 解锁状态（Dashboard 使用）"""
        maturity = await self.maturity_provider.get_maturity(company_id)
        result = []
        for config in await self.list_departments(company_id):
            item = config.to_dict()
            item["unlocked"] = self.is_unlocked(config.department, maturity)
            result.append(item)
        return result

    async def toggle_autopilot(self, company_id: str, department, enabled: bool) -> ToggleResult:
        """开启或关闭部门自动驾驶

        开启失败时返回 error_code:
        department_locked / missing_prerequisite / unknown_department
        """
        try:
            dept = self.parse_department(department)
        except UnknownDepartmentError as e:
            return ToggleResult(
                success=False,
                department=str(department),
                error_code=e.error_code,
                reason=e.message,
            )

        config = await self.get_config(company_id, dept)

        if enabled:
            try:
                await self.check_can_enable(company_id, dept)
            except (DepartmentLockedError, PrerequisiteError) as e:
                logger.warning(
                    "开启自动驾驶被拒绝",
                    company_id=company_id,
                    department=dept.value,
                    error_code=e.error_code,
                )
                return ToggleResult(
                    success=False,
                    department=dept.value,
                    enabled=config.autopilot_enabled,
                    error_code=e.error_code,
                    reason=e.message,
                    missing=getattr(e, "missing", []),
                    config=config,
                )

        config.autopilot_enabled = enabled
        config.updated_at = self.clock()
        await self.repository.save_department_config(config)

        if enabled and self.genesis is not None:
            maturity = await self.maturity_provider.get_maturity(company_id)
            await self.genesis.seed_capabilities(company_id, dept, maturity)

        logger.info(
            "自动驾驶开关已更新",
            company_id=company_id,
            department=dept.value,
            enabled=enabled,
        )
        return ToggleResult(success=True, department=dept.value, enabled=enabled, config=config)

    async def check_can_enable(self, company_id: str, department: DepartmentType) -> None:
        """检查成熟度与前置数据，不满足时抛出异常"""
        maturity = await self.maturity_provider.get_maturity(company_id)
        if not self.is_unlocked(department, maturity):
            raise DepartmentLockedError(
                department.value, self.required_maturity(department).value, maturity.value
            )

        counts = await self.data_provider.get_prerequisite_counts(company_id)
        missing = missing_prerequisites(department, counts)
        if missing:
            raise PrerequisiteError(department.value, missing)

    async def require_runnable(self, company_id: str, department: DepartmentType) -> DepartmentConfig:
        """周期运行前检查：部门已开启且已解锁"""
        config = await self.get_config(company_id, department)
        if not config.autopilot_enabled:
            raise DepartmentDisabledError(
                f"Autopilot is disabled for {department.value}",
                company_id=company_id,
                department=department.value,
            )
        maturity = await self.maturity_provider.get_maturity(company_id)
        if not self.is_unlocked(department, maturity):
            raise DepartmentLockedError(
                department.value, self.required_maturity(department).value, maturity.value
            )
        return config

    async def unlock_departments(self, company_id: str) -> list[DepartmentConfig]:
        """为成熟度已达到的部门创建配置（默认关闭）并播种能力

        Returns:
            本次新解锁的部门配置
        """
        maturity = await self.maturity_provider.get_maturity(company_id)
        now = self.clock()
        unlocked = []

        for department in DepartmentType:
            if not self.is_unlocked(department, maturity):
                continue
            existing = await self.repository.get_department_config(company_id, department)
            if existing is not None:
                continue

            config = self.default_config(company_id, department)
            config.auto_unlocked_at = now
            await self.repository.save_department_config(config)
            if self.genesis is not None:
                await self.genesis.seed_capabilities(company_id, department, maturity)
            unlocked.append(config)

        if unlocked:
            logger.info(
                "部门已自动解锁",
                company_id=company_id,
                maturity=maturity.value,
                departments=[c.department.value for c in unlocked],
            )
        return unlocked
