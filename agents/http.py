# Enterprise Autopilot - HTTP Agent 执行器
"""
通过 HTTP 调用 Agent 函数与 LLM

- HttpAgentExecutor: POST {base_url}/{endpoint}，Bearer Token 鉴权
- HttpLLMClient: OpenAI 兼容的 /chat/completions 接口
"""

import os
import time
from typing import Optional

import httpx
import structlog

from agents.base import AgentExecutor, AgentResult, LLMClient

logger = structlog.get_logger()


class HttpAgentExecutor(AgentExecutor):
    """HTTP Agent 执行器"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 120.0,
    ):
        """初始化

        Args:
            base_url: 函数服务地址（默认读取 AGENT_EXECUTOR_BASE_URL）
            token: 鉴权 Token（默认读取 AGENT_EXECUTOR_TOKEN）
            timeout: 请求超时（秒）
        """
        self.base_url = (base_url or os.getenv("AGENT_EXECUTOR_BASE_URL") or "").rstrip("/")
        self.token = token or os.getenv("AGENT_EXECUTOR_TOKEN")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """获取 HTTP 客户端"""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        """关闭客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def invoke(
        self,
        agent_id: str,
        payload: dict,
        endpoint: Optional[str] = None,
    ) -> AgentResult:
        if not self.base_url:
            return AgentResult(success=False, error="AGENT_EXECUTOR_BASE_URL not configured")

        url = f"{self.base_url}/{endpoint or agent_id}"
        client = await self._get_client()
        started = time.monotonic()

        try:
            response = await client.post(url, json=payload)
            duration_ms = int((time.monotonic() - started) * 1000)
            if response.status_code >= 400:
                logger.error(
                    "Agent 调用失败",
                    agent_id=agent_id,
                    status_code=response.status_code,
                )
                return AgentResult(
                    success=False,
                    duration_ms=duration_ms,
                    error=f"HTTP {response.status_code}: {response.text[:200]}",
                )

            data = response.json() if response.content else {}
            if not isinstance(data, dict):
                data = {"result": data}
            return AgentResult(
                success=True,
                output=data,
                summary=str(data.get("summary") or data.get("message") or "")[:500],
                duration_ms=duration_ms,
            )

        except httpx.HTTPError as e:
            logger.error("Agent 调用异常", agent_id=agent_id, error=str(e))
            return AgentResult(
                success=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=str(e),
            )


class HttpLLMClient(LLMClient):
    """OpenAI 兼容 LLM 客户端"""

    def __init__(
        self,
        api_base: Optional[str] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self.api_base = (api_base or os.getenv("LLM_API_BASE") or "https://api.openai.com/v1").rstrip("/")
        self.api_key = api_key or os.getenv("LLM_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or "gpt-4o-mini"
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        messages: list[dict],
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
    ) -> str:
        client = await self._get_client()
        response = await client.post(
            f"{self.api_base}/chat/completions",
            json={
                "model": model or self.model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )
        response.raise_for_status()
        data = response.json()
        return data["choices"][0]["message"]["content"] or ""
