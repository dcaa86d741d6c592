# Enterprise Autopilot - Agent Registry
"""
Agent 注册表

提供:
- Agent 注册与发现（启动时从配置构建一次）
- 按次计费的成本估算
- 统一的调用入口（未注册的 Agent 立即失败）
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from agents.base import AgentExecutor, AgentResult
from orchestrator.errors import UnknownAgentError
from orchestrator.models import DepartmentType

logger = structlog.get_logger()


@dataclass
class AgentSpec:
    """Agent 定义"""
    id: str
    department: DepartmentType
    credits_per_use: int = 1
    endpoint: Optional[str] = None
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "department": self.department.value,
            "credits_per_use": self.credits_per_use,
            "endpoint": self.endpoint,
            "description": self.description,
        }


class AgentRegistry:
    """Agent 注册表"""

    def __init__(self, executor: AgentExecutor, specs: Optional[list[AgentSpec]] = None):
        self.executor = executor
        self._agents: dict[str, AgentSpec] = {}
        for spec in specs or []:
            self.register(spec)

    @classmethod
    def from_settings(cls, settings, executor: AgentExecutor) -> "AgentRegistry":
        """根据配置构建注册表"""
        registry = cls(executor, [
            AgentSpec(
                id=agent.id,
                department=agent.department,
                credits_per_use=agent.credits_per_use,
                endpoint=agent.endpoint,
                description=agent.description,
            )
            for agent in settings.agents
        ])
        logger.info("Agent 注册表初始化完成", agents_count=len(registry._agents))
        return registry

    def register(self, spec: AgentSpec) -> None:
        """注册 Agent"""
        self._agents[spec.id] = spec

    def get(self, agent_id: Optional[str]) -> Optional[AgentSpec]:
        if not agent_id:
            return None
        return self._agents.get(agent_id)

    def require(self, agent_id: Optional[str]) -> AgentSpec:
        """获取 Agent，未注册时抛出 UnknownAgentError"""
        spec = self.get(agent_id)
        if spec is None:
            raise UnknownAgentError(agent_id)
        return spec

    def has(self, agent_id: Optional[str]) -> bool:
        return self.get(agent_id) is not None

    def list_agents(self, department: Optional[DepartmentType] = None) -> list[AgentSpec]:
        agents = list(self._agents.values())
        if department:
            agents = [a for a in agents if a.department == department]
        return agents

    def estimate_cost(self, agent_id: Optional[str]) -> int:
        """估算调用成本（未注册的 Agent 为 0）"""
        spec = self.get(agent_id)
        return spec.credits_per_use if spec else 0

    async def invoke(self, agent_id: str, payload: dict) -> AgentResult:
        """调用 Agent"""
        spec = self.require(agent_id)
        return await self.executor.invoke(spec.id, payload, endpoint=spec.endpoint)
