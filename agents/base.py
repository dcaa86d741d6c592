# Enterprise Autopilot - Agent 执行接口
"""
Agent 执行接口

提供:
- Agent 调用结果封装
- Agent 执行器抽象（真实调用见 agents/http.py）
- LLM 客户端抽象
- 测试用的 Mock 实现
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

import structlog

logger = structlog.get_logger()


# ============================================
# 数据类
# ============================================

@dataclass
class AgentResult:
    """Agent 调用结果"""
    success: bool = False
    output: dict = field(default_factory=dict)
    summary: str = ""
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "output": self.output,
            "summary": self.summary,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


# ============================================
# Agent 执行器
# ============================================

class AgentExecutor(ABC):
    """Agent 执行器抽象基类"""

    @abstractmethod
    async def invoke(
        self,
        agent_id: str,
        payload: dict,
        endpoint: Optional[str] = None,
    ) -> AgentResult:
        """调用 Agent

        Args:
            agent_id: Agent ID
            payload: 调用参数（决策的 action_parameters 及上下文）
            endpoint: Agent 的函数端点

        Returns:
            调用结果；调用失败时 success=False 并带 error
        """
        pass

    async def close(self) -> None:
        """释放资源"""
        return None


MockResponse = Union[AgentResult, Exception, Callable[[str, dict], AgentResult]]


class MockAgentExecutor(AgentExecutor):
    """模拟 Agent 执行器（用于测试与本地开发）

    responses 按 agent_id 配置返回值；可以是 AgentResult、异常或可调用对象。
    未配置的 Agent 返回成功，并产出一条内容。
    """

    def __init__(self, responses: Optional[dict[str, MockResponse]] = None):
        self.responses: dict[str, MockResponse] = dict(responses or {})
        self.calls: list[tuple[str, dict]] = []

    def set_response(self, agent_id: str, response: MockResponse) -> None:
        self.responses[agent_id] = response

    async def invoke(
        self,
        agent_id: str,
        payload: dict,
        endpoint: Optional[str] = None,
    ) -> AgentResult:
        self.calls.append((agent_id, payload))
        started = time.monotonic()

        response = self.responses.get(agent_id)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            result = response(agent_id, payload)
        elif isinstance(response, AgentResult):
            result = response
        else:
            result = AgentResult(
                success=True,
                output={"content_generated": 1},
                summary=f"[Mock] {agent_id} executed",
            )

        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        return result


# ============================================
# LLM 客户端接口
# ============================================

class LLMClient(ABC):
    """LLM 客户端抽象基类"""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> str:
        """生成回复"""
        pass

    async def close(self) -> None:
        return None


class MockLLMClient(LLMClient):
    """模拟 LLM 客户端（用于测试）"""

    def __init__(self, response: Any = "[Mock Response] This is a simulated response."):
        self.response = response
        self.prompts: list[list[dict]] = []

    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> str:
        self.prompts.append(messages)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response
