# tests/conftest.py
from datetime import datetime, timedelta

import pytest

from agents.base import MockAgentExecutor
from orchestrator.departments import StaticCompanyProfile
from orchestrator.engine import build_engine
from orchestrator.models import MaturityLevel
from orchestrator.settings import default_settings
from storage.memory import InMemoryRepository


class FakeClock:
    """可手动推进的时钟"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 10, 0, 0))


@pytest.fixture
def settings():
    return default_settings()


@pytest.fixture
def profile():
    return StaticCompanyProfile(
        maturity=MaturityLevel.GROWING,
        counts={
            "connected_channels": 1,
            "crm_records": 10,
            "usage_records": 3,
            "legal_parameters": 1,
        },
    )


@pytest.fixture
def executor():
    return MockAgentExecutor()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def engine(settings, repository, executor, profile, clock):
    return build_engine(
        settings=settings,
        repository=repository,
        executor=executor,
        profile=profile,
        sources=[],
        clock=clock,
    )
