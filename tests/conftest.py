"""
Pytest configuration and shared fixtures.

Key fixtures:
- clock: controllable timezone-aware clock for queue and freshness tests
- sample_deal: a VC deal with basic facts
- store / config_service / bus: in-memory collaborators
- fast_policy: retry policy with no delay between attempts
- make_engine: factory for scripted fake engines
- openai_api_key: skips live OpenAI tests when OPENAI_API_KEY is unset

Postgres is always mocked. OpenAI is mocked except in the live tests.
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from deal_analysis.errors import TransientEngineError  # noqa: E402
from deal_analysis.models import Deal, EngineResult, EngineStatus, FundType  # noqa: E402
from deal_analysis.notifications import NotificationBus  # noqa: E402
from deal_analysis.resilience import RetryPolicy  # noqa: E402
from deal_analysis.store import InMemoryAnalysisStore, StaticConfigService  # noqa: E402


class FakeClock:
    """Clock whose "now" only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeEngine:
    """
    Scripted analysis engine.

    Each call pops the next entry of `script`: an EngineResult is returned,
    an exception is raised. The last entry repeats once the script runs out.
    """

    def __init__(self, name: str, script: list):
        self.name = name
        self.script = list(script)
        self.calls = 0
        self.contexts = []

    async def analyze(self, deal_id, context):
        self.calls += 1
        self.contexts.append(context)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, BaseException):
            raise step
        return step


def engine_result(name: str, score: float | None, confidence: float = 80, quality: float = 90, **kwargs) -> EngineResult:
    return EngineResult(
        engine_name=name,
        status=EngineStatus.COMPLETE if score is not None else EngineStatus.PARTIAL,
        score=score,
        confidence=confidence if score is not None else 0,
        quality_score=quality,
        **kwargs,
    )


@pytest.fixture
def openai_api_key() -> str:
    """Get OpenAI API key from environment."""
    key = os.getenv('OPENAI_API_KEY')
    if not key:
        pytest.skip('OPENAI_API_KEY not set')
    return key


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_deal() -> Deal:
    return Deal(
        id='deal_001',
        fund_id='fund_a',
        fund_type=FundType.VC,
        company_name='Acme Robotics',
        industry='Industrial Automation',
        round_size=5_000_000,
        valuation=25_000_000,
        description='Warehouse picking robots sold as a service',
        website='https://acme-robotics.example',
    )


@pytest.fixture
def store(sample_deal) -> InMemoryAnalysisStore:
    return InMemoryAnalysisStore([sample_deal])


@pytest.fixture
def config_service() -> StaticConfigService:
    return StaticConfigService()


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, retry_delay_ms=0, quality_threshold=50)


@pytest.fixture
def make_engine():
    return FakeEngine


@pytest.fixture
def transient():
    return lambda msg='upstream timeout': TransientEngineError(msg)


@pytest.fixture
def make_result():
    return engine_result
