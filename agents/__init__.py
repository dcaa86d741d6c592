# Enterprise Autopilot - Agent 模块
"""
Agent 模块

包含:
- base: 执行器与 LLM 客户端接口
- http: HTTP 实现
- registry: Agent 注册表
"""

from agents.base import AgentExecutor, AgentResult, LLMClient, MockAgentExecutor, MockLLMClient
from agents.registry import AgentRegistry, AgentSpec

__all__ = [
    "AgentExecutor",
    "AgentResult",
    "AgentRegistry",
    "AgentSpec",
    "LLMClient",
    "MockAgentExecutor",
    "MockLLMClient",
]
