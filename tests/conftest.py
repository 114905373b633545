"""Pytest fixtures for testing"""

import pytest
from fastapi.testclient import TestClient

from debit_models import Subject
from debit_store import DebitStore
from element_locator import ElementLocator
from fakes import FakePortal, debit_row
from pgmei_api import create_app, get_runner
from portal_navigator import PortalNavigator
from scrape_cache import ScrapeCache

CNPJ = "00.000.000/0001-91"
CNPJ_DIGITS = "00000000000191"


@pytest.fixture
def subject() -> Subject:
    return Subject(raw_id=CNPJ)


@pytest.fixture
def sample_debits():
    """Two eligible years: three open debits in 2024, none in 2023"""
    return {
        "2024": [
            debit_row("01/2024", "R$ 70,60", "20/02/2024"),
            debit_row("02/2024", "R$ 70,60", "20/03/2024"),
            debit_row("03/2024", "R$ 1.070,60", "22/04/2024"),
        ],
        "2023": [],
    }


@pytest.fixture
def portal(sample_debits) -> FakePortal:
    return FakePortal(sample_debits, ineligible={"2022": "2022 - Não optante"})


@pytest.fixture
def make_navigator():
    """Navigator with short waits so that non-navigating pages do not slow tests down"""

    def build(page, subject, **kwargs):
        kwargs.setdefault("locator", ElementLocator(strategy_timeout_ms=1_000))
        kwargs.setdefault("entry_url", "https://portal.test/pgmei.app/Identificacao")
        kwargs.setdefault("captcha_timeout_ms", 100)
        kwargs.setdefault("settle_timeout_ms", 50)
        kwargs.setdefault("consult_timeout_ms", 50)
        return PortalNavigator(page, subject, **kwargs)

    return build


@pytest.fixture
def store(tmp_path) -> DebitStore:
    return DebitStore(tmp_path / "out")


@pytest.fixture
def cache() -> ScrapeCache:
    return ScrapeCache(ttl_seconds=600, max_entries=10)


@pytest.fixture
def fake_runner():
    """Stand-in for EngineRunner; tests set ``outcome`` or ``error``"""

    class Runner:
        def __init__(self):
            self.calls = []
            self.outcome = None
            self.error = None

        async def run(self, req, digits):
            self.calls.append((req, digits))
            if self.error is not None:
                raise self.error
            return self.outcome

    return Runner()


@pytest.fixture
def client(cache, fake_runner) -> TestClient:
    """Create FastAPI test client with an isolated cache and a fake engine runner"""
    app = create_app(cache=cache)
    app.dependency_overrides[get_runner] = lambda: fake_runner
    return TestClient(app)
