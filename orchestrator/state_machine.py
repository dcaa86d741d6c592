# Enterprise Autopilot - 周期状态机
"""
自动驾驶周期状态机与单飞租约

状态流转:
IDLE → SENSING → THINKING → GUARDING → ACTING → LEARNING → IDLE

- 任一阶段失败直接回到 IDLE，不再执行后续阶段
- 取消只在阶段开始前生效，ACTING 不可中断
- 每个 (公司, 部门) 同一时间只有一个周期持有租约；
  租约带心跳和过期时间，崩溃的持有者不会永久锁住部门
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

import structlog

from orchestrator.errors import CycleInFlightError
from orchestrator.models import DepartmentType, Phase, utcnow

logger = structlog.get_logger()


# ============================================
# 状态定义
# ============================================

class CycleState(str, Enum):
    """周期状态"""
    IDLE = "idle"
    SENSING = "sensing"
    THINKING = "thinking"
    GUARDING = "guarding"
    ACTING = "acting"
    LEARNING = "learning"


# 状态对应的执行日志阶段
STATE_PHASE: dict[CycleState, Phase] = {
    CycleState.SENSING: Phase.SENSE,
    CycleState.THINKING: Phase.THINK,
    CycleState.GUARDING: Phase.GUARD,
    CycleState.ACTING: Phase.ACT,
    CycleState.LEARNING: Phase.LEARN,
}


@dataclass
class Transition:
    """状态转移定义"""
    from_state: CycleState
    to_state: CycleState
    trigger: str


_RUNNING = [
    CycleState.SENSING,
    CycleState.THINKING,
    CycleState.GUARDING,
    CycleState.ACTING,
    CycleState.LEARNING,
]

TRANSITIONS: list[Transition] = [
    # 正向流转
    Transition(CycleState.IDLE, CycleState.SENSING, "sense"),
    Transition(CycleState.SENSING, CycleState.THINKING, "think"),
    Transition(CycleState.THINKING, CycleState.GUARDING, "guard"),
    Transition(CycleState.GUARDING, CycleState.ACTING, "act"),
    Transition(CycleState.ACTING, CycleState.LEARNING, "learn"),
    Transition(CycleState.LEARNING, CycleState.IDLE, "finish"),
    # 失败：任一阶段回到 IDLE
    *[Transition(s, CycleState.IDLE, "fail") for s in _RUNNING],
    # 取消：ACTING 除外
    *[Transition(s, CycleState.IDLE, "cancel") for s in _RUNNING if s != CycleState.ACTING],
]

TRANSITION_MAP: dict[tuple[CycleState, str], Transition] = {
    (t.from_state, t.trigger): t for t in TRANSITIONS
}


# ============================================
# 状态机
# ============================================

class CycleStateMachine:
    """单个周期的状态机"""

    def __init__(self, cycle_id: str, company_id: str, department: DepartmentType):
        self.cycle_id = cycle_id
        self.company_id = company_id
        self.department = department
        self.state = CycleState.IDLE
        self.history: list[CycleState] = [CycleState.IDLE]
        self._callbacks: dict[str, list[Callable]] = {}

    @property
    def phase(self) -> Optional[Phase]:
        return STATE_PHASE.get(self.state)

    @property
    def cancellable(self) -> bool:
        return (self.state, "cancel") in TRANSITION_MAP

    def can_transition(self, trigger: str) -> bool:
        return (self.state, trigger) in TRANSITION_MAP

    def trigger(self, trigger_name: str, **context) -> bool:
        """触发状态转移，非法转移返回 False"""
        transition = TRANSITION_MAP.get((self.state, trigger_name))
        if transition is None:
            logger.warning(
                "无效的状态转移",
                cycle_id=self.cycle_id,
                current_state=self.state.value,
                trigger=trigger_name,
            )
            return False

        from_state = self.state
        self.state = transition.to_state
        self.history.append(self.state)
        self._emit("state_changed", from_state, self.state, context)

        logger.debug(
            "周期状态转移",
            cycle_id=self.cycle_id,
            department=self.department.value,
            from_state=from_state.value,
            to_state=self.state.value,
            trigger=trigger_name,
        )
        return True

    def on(self, event: str, callback: Callable) -> None:
        """注册事件回调"""
        self._callbacks.setdefault(event, []).append(callback)

    def _emit(self, event: str, *args) -> None:
        for callback in self._callbacks.get(event, []):
            try:
                callback(self, *args)
            except Exception as e:
                logger.error("状态回调异常", cycle_id=self.cycle_id, event=event, error=str(e))


# ============================================
# 单飞租约
# ============================================

@dataclass
class CycleLease:
    """周期租约"""
    company_id: str
    department: DepartmentType
    cycle_id: str
    acquired_at: datetime = field(default_factory=utcnow)
    expires_at: datetime = field(default_factory=utcnow)
    heartbeat_at: Optional[datetime] = None
    cancel_requested: bool = False

    @property
    def key(self) -> tuple[str, DepartmentType]:
        return self.company_id, self.department

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "company_id": self.company_id,
            "department": self.department.value,
            "cycle_id": self.cycle_id,
            "acquired_at": self.acquired_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "heartbeat_at": self.heartbeat_at.isoformat() if self.heartbeat_at else None,
            "cancel_requested": self.cancel_requested,
        }


class CycleLeaseManager:
    """租约管理器

    所有操作都是同步的，在单个事件循环内天然原子。
    """

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], datetime] = utcnow):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._leases: dict[tuple[str, DepartmentType], CycleLease] = {}

    def acquire(self, company_id: str, department: DepartmentType, cycle_id: str) -> CycleLease:
        """获取租约

        Raises:
            CycleInFlightError: 已有未过期的周期持有租约
        """
        now = self.clock()
        current = self._leases.get((company_id, department))
        if current is not None:
            if not current.is_expired(now):
                raise CycleInFlightError(
                    f"Cycle {current.cycle_id} is already running for {department.value}",
                    company_id=company_id,
                    department=department.value,
                    cycle_id=current.cycle_id,
                )
            logger.warning(
                "接管过期租约",
                company_id=company_id,
                department=department.value,
                stale_cycle_id=current.cycle_id,
                cycle_id=cycle_id,
            )

        lease = CycleLease(
            company_id=company_id,
            department=department,
            cycle_id=cycle_id,
            acquired_at=now,
            expires_at=now + self.ttl,
        )
        self._leases[lease.key] = lease
        return lease

    def _held(self, lease: CycleLease) -> bool:
        current = self._leases.get(lease.key)
        return current is not None and current.cycle_id == lease.cycle_id

    def heartbeat(self, lease: CycleLease) -> bool:
        """续约；租约已被接管时返回 False"""
        if not self._held(lease):
            return False
        now = self.clock()
        current = self._leases[lease.key]
        current.heartbeat_at = now
        current.expires_at = now + self.ttl
        lease.heartbeat_at = current.heartbeat_at
        lease.expires_at = current.expires_at
        return True

    def release(self, lease: CycleLease) -> None:
        if self._held(lease):
            del self._leases[lease.key]

    def get(self, company_id: str, department: DepartmentType) -> Optional[CycleLease]:
        """当前有效租约"""
        lease = self._leases.get((company_id, department))
        if lease is None or lease.is_expired(self.clock()):
            return None
        return lease

    def active(self) -> list[CycleLease]:
        now = self.clock()
        return [lease for lease in self._leases.values() if not lease.is_expired(now)]

    def request_cancel(self, company_id: str, department: DepartmentType) -> bool:
        """请求取消正在运行的周期；没有运行中的周期时返回 False"""
        lease = self.get(company_id, department)
        if lease is None:
            return False
        lease.cancel_requested = True
        logger.info(
            "已请求取消周期",
            company_id=company_id,
            department=department.value,
            cycle_id=lease.cycle_id,
        )
        return True

    def is_cancel_requested(self, lease: CycleLease) -> bool:
        current = self._leases.get(lease.key)
        return bool(current and current.cycle_id == lease.cycle_id and current.cancel_requested)
