import asyncio
from datetime import timedelta

import httpx
import pytest

from orchestrator.intelligence import (
    HttpIntelligenceSource,
    IntelligenceCache,
    IntelligenceSource,
    StaticIntelligenceSource,
    parse_structured_signals,
)
from orchestrator.models import MaturityLevel, RiskLevel
from orchestrator.settings import IntelligenceSettings


def _run(coro):
    return asyncio.run(coro)


class BrokenSource(IntelligenceSource):
    name = "broken"

    async def fetch(self, company_id):
        raise httpx.ConnectError("connection refused")


@pytest.fixture
def source():
    s = StaticIntelligenceSource("trends")
    s.add("acme", [{"title": "Reels trend", "topic": "Engagement"}], relevance_score=0.9)
    return s


@pytest.fixture
def cache(repository, source, clock):
    return IntelligenceCache(repository, IntelligenceSettings(), [source], clock=clock)


def test_invalid_signals_are_dropped():
    signals = parse_structured_signals([
        {"title": "ok", "impact": "critical", "category": "rumor", "topic": " Pricing "},
        {"summary": "no title"},
        "not a dict",
    ])
    assert len(signals) == 1
    assert signals[0].impact == RiskLevel.HIGH
    assert signals[0].category == "neutral"
    assert signals[0].topic == "pricing"


def test_refresh_follows_maturity_frequency(cache, source, clock):
    assert _run(cache.refresh("acme", MaturityLevel.ESTABLISHED)) == 1
    assert _run(cache.refresh("acme", MaturityLevel.ESTABLISHED)) == 0

    clock.advance(hours=24)
    assert _run(cache.refresh("acme", MaturityLevel.ESTABLISHED)) == 1
    assert source.fetch_count == 2


def test_scaling_refreshes_every_cycle(cache, source):
    _run(cache.refresh("acme", MaturityLevel.SCALING))
    _run(cache.refresh("acme", MaturityLevel.SCALING))
    assert source.fetch_count == 2


def test_force_refresh(cache, source):
    _run(cache.refresh("acme", MaturityLevel.STARTER))
    _run(cache.refresh("acme", MaturityLevel.STARTER, force=True))
    assert source.fetch_count == 2


def test_failing_source_is_skipped(repository, source, clock):
    cache = IntelligenceCache(repository, IntelligenceSettings(), [BrokenSource(), source], clock=clock)
    assert _run(cache.refresh("acme", MaturityLevel.GROWING)) == 1


def test_latest_keeps_newest_per_source(cache, clock):
    _run(cache.ingest("acme", "news", [{"title": "old"}]))
    clock.advance(minutes=5)
    _run(cache.ingest("acme", "news", [{"title": "new"}]))
    _run(cache.ingest("acme", "crm", [{"title": "deal"}]))

    latest = _run(cache.latest("acme"))

    by_source = {s.source: s.structured_signals[0].title for s in latest}
    assert by_source == {"news": "new", "crm": "deal"}


def test_ingested_signals_expire(cache, clock):
    signal = _run(cache.ingest("acme", "news", [{"title": "flash sale"}]))
    assert signal.expires_at == clock() + timedelta(hours=24)

    clock.advance(hours=25)
    assert _run(cache.latest("acme")) == []


def test_sense_refreshes_then_reads(cache):
    signals = _run(cache.sense("acme", MaturityLevel.GROWING))
    assert [s.source for s in signals] == ["trends"]
    assert signals[0].structured_signals[0].topic == "engagement"
    assert signals[0].relevance_score == 0.9


def test_http_source_parses_payload():
    def handler(request):
        assert request.url.params["company_id"] == "acme"
        assert request.headers["Authorization"] == "Bearer secret"
        return httpx.Response(200, json={"signals": [
            {"source": "newswire", "structured_signals": [{"title": "Merger"}], "relevance_score": 0.7},
        ]})

    source = HttpIntelligenceSource("https://intel.example.com/signals", token="secret")
    source._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer secret"},
    )

    async def fetch():
        try:
            return await source.fetch("acme")
        finally:
            await source.close()

    signals = _run(fetch())
    assert signals[0].source == "newswire"
    assert signals[0].relevance_score == 0.7
    assert signals[0].structured_signals[0].title == "Merger"
