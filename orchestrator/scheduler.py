# Enterprise Autopilot - Scheduler
"""
自动驾驶调度器

负责周期性触发:
- 按部门 execution_frequency 运行到期的周期（不同部门并行）
- 定期维护（试运行到期、过期提案、过期待定经验、部门自动解锁）
"""

import asyncio
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import structlog

from orchestrator.errors import AutopilotError
from orchestrator.models import CycleSummary, DepartmentConfig, utcnow
from orchestrator.settings import CycleSettings

logger = structlog.get_logger()

FREQUENCY_HOURS = {"1h": 1, "2h": 2, "6h": 6, "12h": 12, "24h": 24}
DEFAULT_FREQUENCY_HOURS = 6

_FREQUENCY = re.compile(r"^(\d+)\s*h$")


def frequency_interval(value: Optional[str]) -> timedelta:
    """"6h" -> 6 小时；无法识别时使用默认值"""
    raw = str(value or "").strip().lower()
    if raw in FREQUENCY_HOURS:
        return timedelta(hours=FREQUENCY_HOURS[raw])
    match = _FREQUENCY.match(raw)
    if match and int(match.group(1)) > 0:
        return timedelta(hours=int(match.group(1)))
    logger.warning("无法识别的执行频率，使用默认值", frequency=value)
    return timedelta(hours=DEFAULT_FREQUENCY_HOURS)


def is_due(config: DepartmentConfig, now: datetime) -> bool:
    if not config.autopilot_enabled:
        return False
    if config.last_execution_at is None:
        return True
    return now - config.last_execution_at >= frequency_interval(config.execution_frequency)


class SchedulerState(str, Enum):
    """调度器状态"""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


class AutopilotScheduler:
    """自动驾驶调度器"""

    def __init__(
        self,
        engine,
        settings: Optional[CycleSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.settings = settings or CycleSettings()
        self.clock = clock
        self._state = SchedulerState.STOPPED
        self._last_maintenance: Optional[datetime] = None
        self._stats = {
            "started_at": None,
            "ticks": 0,
            "cycles_run": 0,
            "cycles_skipped": 0,
            "maintenance_runs": 0,
            "errors": 0,
        }

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SchedulerState.RUNNING

    # ============================================
    # 单次调度
    # ============================================

    async def _run_one(self, config: DepartmentConfig) -> Optional[CycleSummary]:
        try:
            summary = await self.engine.run_cycle(config.company_id, config.department)
        except AutopilotError as e:
            # 运行中 / 已关闭 / 未解锁：跳过，下个 tick 再检查
            self._stats["cycles_skipped"] += 1
            logger.info(
                "跳过周期",
                company_id=config.company_id,
                department=config.department.value,
                error_code=e.error_code,
            )
            return None
        except Exception as e:
            self._stats["errors"] += 1
            logger.error(
                "周期运行异常",
                company_id=config.company_id,
                department=config.department.value,
                error=str(e),
            )
            return None

        self._stats["cycles_run"] += 1
        return summary

    async def tick(self) -> list[CycleSummary]:
        """运行所有到期部门的周期"""
        now = self.clock()
        configs = await self.engine.repository.list_department_configs(enabled_only=True)
        due = [c for c in configs if is_due(c, now)]
        self._stats["ticks"] += 1
        if not due:
            return []

        logger.info("调度到期周期", count=len(due))
        results = await asyncio.gather(*(self._run_one(c) for c in due))
        return [r for r in results if r is not None]

    async def run_maintenance(self) -> dict[str, dict]:
        """对所有公司运行维护任务"""
        configs = await self.engine.repository.list_department_configs()
        companies = sorted({c.company_id for c in configs})
        report = {}
        for company_id in companies:
            try:
                report[company_id] = await self.engine.run_maintenance(company_id)
            except AutopilotError as e:
                self._stats["errors"] += 1
                logger.warning("维护任务失败", company_id=company_id, error=e.message)

        self._last_maintenance = self.clock()
        self._stats["maintenance_runs"] += 1
        return report

    def _maintenance_due(self) -> bool:
        if self._last_maintenance is None:
            return True
        elapsed = (self.clock() - self._last_maintenance).total_seconds()
        return elapsed >= self.settings.maintenance_interval_seconds

    # ============================================
    # 生命周期
    # ============================================

    async def start(self) -> None:
        if self._state != SchedulerState.STOPPED:
            logger.warning("调度器状态不正确", state=self._state.value)
            return
        self._state = SchedulerState.RUNNING
        self._stats["started_at"] = self.clock().isoformat()
        logger.info("自动驾驶调度器已启动", tick_seconds=self.settings.scheduler_tick_seconds)

    async def stop(self) -> None:
        if self._state != SchedulerState.RUNNING:
            return
        self._state = SchedulerState.STOPPING
        logger.info("自动驾驶调度器停止中")

    async def run_forever(self) -> None:
        """主循环"""
        await self.start()
        try:
            while self._state == SchedulerState.RUNNING:
                try:
                    await self.tick()
                    if self._maintenance_due():
                        await self.run_maintenance()
                except Exception as e:
                    logger.error("调度器迭代错误", error=str(e))
                    self._stats["errors"] += 1

                await asyncio.sleep(self.settings.scheduler_tick_seconds)
        except asyncio.CancelledError:
            pass
        finally:
            self._state = SchedulerState.STOPPED
            logger.info("自动驾驶调度器已停止")

    def get_stats(self) -> dict:
        return {
            **self._stats,
            "state": self._state.value,
            "last_maintenance": self._last_maintenance.isoformat() if self._last_maintenance else None,
        }
