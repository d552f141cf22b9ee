import os

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Simulated diagnostics service and in-memory cache for tests
os.environ["ANALYSIS_API_URL"] = ""
os.environ["ANALYSIS_API_TOKEN"] = ""
os.environ["DUMMY_MODE"] = "true"
os.environ["CACHE_PATH"] = ":memory:"

from caseflow.cache import DurableCache, MemoryCacheStore
from caseflow.main import app
from caseflow.routers.workflow import get_controller
from caseflow.services.analysis_client import AnalysisClient
from caseflow.services.dummy_service import DummyDiagnosticsService
from caseflow.services.event_bus import WorkflowEventBus
from caseflow.services.history import HistoryAggregator
from caseflow.services.workflow import CaseWorkflowController

BASE_URL = "http://diagnostics.test"


class FakeClock:
    """Settable wall clock (seconds) for TTL tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return DurableCache(MemoryCacheStore(), clock=clock)


@pytest.fixture
def diagnostics():
    """Simulated remote service; cases complete on the third poll."""
    return DummyDiagnosticsService()


@pytest_asyncio.fixture
async def http_client(diagnostics):
    async with httpx.AsyncClient(transport=httpx.MockTransport(diagnostics), base_url=BASE_URL) as client:
        yield client


@pytest.fixture
def analysis_client(http_client):
    return AnalysisClient(http_client, poll_interval=0, error_interval=0)


@pytest.fixture
def history(http_client, analysis_client):
    return HistoryAggregator(http_client, analysis_client)


@pytest_asyncio.fixture
async def controller(analysis_client, history, cache):
    ctrl = CaseWorkflowController(
        analysis_client=analysis_client,
        history=history,
        cache=cache,
        event_bus=WorkflowEventBus(),
        debounce_seconds=0.05,
    )
    yield ctrl
    await ctrl.close()


@pytest_asyncio.fixture
async def async_client(controller):
    """Async client against the API with the controller swapped in."""
    app.dependency_overrides[get_controller] = lambda: controller
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
