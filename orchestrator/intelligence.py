# Enterprise Autopilot - 外部情报
"""
外部情报缓存（SENSE 阶段）

- 情报源按拉取方式工作：fetch(company_id) -> list[IntelligenceSignal]
- 刷新频率随成熟度变化（starter 168h / growing 72h / established 24h / scaling 每周期）
- 缓存记录写入后不可变，同一来源的新记录覆盖旧记录
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Optional

import httpx
import structlog

from orchestrator.models import IntelligenceSignal, MaturityLevel, StructuredSignal, utcnow
from orchestrator.settings import IntelligenceSettings

logger = structlog.get_logger()


def parse_structured_signals(items: Optional[list]) -> list[StructuredSignal]:
    """校验结构化信号，丢弃无效项"""
    signals = []
    for item in items or []:
        if isinstance(item, StructuredSignal):
            signals.append(item)
            continue
        try:
            signals.append(StructuredSignal.from_dict(item))
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("丢弃无效情报信号", error=str(e))
    return signals


# ============================================
# 情报源
# ============================================

class IntelligenceSource(ABC):
    """情报源抽象基类"""

    name: str = "unknown"

    @abstractmethod
    async def fetch(self, company_id: str) -> list[IntelligenceSignal]:
        pass

    async def close(self) -> None:
        return None


class StaticIntelligenceSource(IntelligenceSource):
    """静态情报源（测试与本地开发）"""

    def __init__(self, name: str = "static", signals: Optional[dict[str, list[dict]]] = None):
        self.name = name
        self.signals: dict[str, list[dict]] = dict(signals or {})
        self.fetch_count = 0

    def add(self, company_id: str, structured_signals: list[dict], payload: Optional[dict] = None,
            relevance_score: float = 0.5) -> None:
        self.signals.setdefault(company_id, []).append({
            "payload": payload or {},
            "structured_signals": structured_signals,
            "relevance_score": relevance_score,
        })

    async def fetch(self, company_id: str) -> list[IntelligenceSignal]:
        self.fetch_count += 1
        return [
            IntelligenceSignal(
                company_id=company_id,
                source=self.name,
                payload=dict(item.get("payload") or {}),
                structured_signals=parse_structured_signals(item.get("structured_signals")),
                relevance_score=float(item.get("relevance_score", 0.5)),
            )
            for item in self.signals.get(company_id, [])
        ]


class HttpIntelligenceSource(IntelligenceSource):
    """HTTP 情报源

    GET {url}?company_id=... 返回 {"signals": [{payload, structured_signals, relevance_score}]}
    """

    def __init__(self, url: str, name: str = "http", token: Optional[str] = None, timeout: float = 30.0):
        self.url = url
        self.name = name
        self.token = token
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.AsyncClient(timeout=self.timeout, headers=headers)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, company_id: str) -> list[IntelligenceSignal]:
        client = await self._get_client()
        response = await client.get(self.url, params={"company_id": company_id})
        response.raise_for_status()
        data = response.json()

        signals = []
        for item in data.get("signals", []):
            signals.append(IntelligenceSignal(
                company_id=company_id,
                source=str(item.get("source") or self.name),
                payload=dict(item.get("payload") or {}),
                structured_signals=parse_structured_signals(item.get("structured_signals")),
                relevance_score=float(item.get("relevance_score", 0.5)),
            ))
        logger.info("获取外部情报", source=self.name, company_id=company_id, count=len(signals))
        return signals


# ============================================
# 情报缓存
# ============================================

class IntelligenceCache:
    """情报缓存"""

    def __init__(
        self,
        repository,
        settings: IntelligenceSettings,
        sources: Optional[list[IntelligenceSource]] = None,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.settings = settings
        self.sources = list(sources or [])
        self.clock = clock

    def _stamp(self, signal: IntelligenceSignal) -> IntelligenceSignal:
        now = self.clock()
        signal.fetched_at = now
        signal.expires_at = now + timedelta(hours=self.settings.signal_ttl_hours)
        return signal

    async def ingest(
        self,
        company_id: str,
        source: str,
        structured_signals: list,
        payload: Optional[dict] = None,
        relevance_score: float = 0.5,
    ) -> IntelligenceSignal:
        """写入一条情报（外部推送或手工录入）"""
        signal = self._stamp(IntelligenceSignal(
            company_id=company_id,
            source=source,
            payload=dict(payload or {}),
            structured_signals=parse_structured_signals(structured_signals),
            relevance_score=float(relevance_score),
        ))
        await self.repository.save_signal(signal)
        logger.info(
            "情报已写入缓存",
            company_id=company_id,
            source=source,
            signals=len(signal.structured_signals),
        )
        return signal

    async def latest(self, company_id: str, limit: int = 20) -> list[IntelligenceSignal]:
        """未过期情报，每个来源只保留最新一条"""
        records = await self.repository.list_signals(
            company_id, valid_at=self.clock(), limit=limit * 5
        )
        seen: set[str] = set()
        latest = []
        for record in records:
            if record.source in seen:
                continue
            seen.add(record.source)
            latest.append(record)
        return latest[:limit]

    async def needs_refresh(self, company_id: str, maturity: MaturityLevel) -> bool:
        hours = self.settings.refresh_hours.get(maturity, 24)
        if hours <= 0:
            return True
        records = await self.repository.list_signals(company_id, limit=1)
        if not records:
            return True
        return self.clock() - records[0].fetched_at >= timedelta(hours=hours)

    async def refresh(self, company_id: str, maturity: MaturityLevel, force: bool = False) -> int:
        """按成熟度频率从情报源拉取

        Returns:
            新写入的记录数
        """
        if not self.sources:
            return 0
        if not force and not await self.needs_refresh(company_id, maturity):
            return 0

        written = 0
        for source in self.sources:
            try:
                signals = await source.fetch(company_id)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning("情报源拉取失败", source=source.name, company_id=company_id, error=str(e))
                continue
            for signal in signals:
                await self.repository.save_signal(self._stamp(signal))
                written += 1
        return written

    async def sense(self, company_id: str, maturity: MaturityLevel) -> list[IntelligenceSignal]:
        """SENSE 阶段入口：必要时刷新，然后返回最新情报"""
        await self.refresh(company_id, maturity)
        return await self.latest(company_id)
