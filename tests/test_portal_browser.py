"""Unit tests for the browser session and waiting helpers"""

import asyncio

import pytest

import portal_browser
from portal_browser import LOCALE, PortalSession, wait_for_any


class RecordingStealth:
    def __init__(self):
        self.applied = []

    async def apply_stealth_async(self, target):
        self.applied.append(target)


class StubContext:
    def __init__(self, **options):
        self.options = options
        self.closed = False

    async def close(self):
        self.closed = True


class StubBrowser:
    def __init__(self, contexts=None):
        self.contexts = contexts or []
        self.launch_options = None
        self.closed = False

    async def new_context(self, **options):
        context = StubContext(**options)
        self.contexts.append(context)
        return context

    async def close(self):
        self.closed = True


class StubChromium:
    def __init__(self, browser):
        self.browser = browser
        self.cdp_url = None

    async def launch(self, **options):
        self.browser.launch_options = options
        return self.browser

    async def connect_over_cdp(self, url):
        self.cdp_url = url
        return self.browser


class StubPlaywright:
    def __init__(self, browser):
        self.chromium = StubChromium(browser)
        self.stopped = False

    async def start(self):
        return self

    async def stop(self):
        self.stopped = True


@pytest.fixture
def stealth(monkeypatch):
    recorder = RecordingStealth()
    monkeypatch.setattr(portal_browser, "STEALTH", recorder)
    return recorder


def _install(monkeypatch, browser):
    pw = StubPlaywright(browser)
    monkeypatch.setattr(portal_browser, "async_playwright", lambda: pw)
    return pw


async def test_launch_applies_stealth_to_the_new_context(monkeypatch, stealth):
    browser = StubBrowser()
    pw = _install(monkeypatch, browser)

    async with PortalSession(headless=True) as session:
        context = session.context
        assert stealth.applied == [context]
        assert context.options["locale"] == LOCALE
        assert context.options["extra_http_headers"]["Accept-Language"].startswith("pt-BR")
        assert browser.launch_options["headless"] is True

    assert context.closed
    assert browser.closed
    assert pw.stopped


async def test_cdp_reuses_existing_context_and_leaves_it_open(monkeypatch, stealth):
    existing = StubContext()
    browser = StubBrowser(contexts=[existing])
    pw = _install(monkeypatch, browser)

    async with PortalSession(engine="cdp", cdp_url="http://127.0.0.1:9333") as session:
        assert session.context is existing
        assert stealth.applied == [existing]

    assert pw.chromium.cdp_url == "http://127.0.0.1:9333"
    assert not existing.closed


def test_unknown_engine_is_rejected():
    with pytest.raises(ValueError):
        PortalSession(engine="firefox")


async def test_wait_for_any_returns_first_success():
    async def fail():
        raise RuntimeError("page closed")

    async def later():
        await asyncio.sleep(0.05)

    async def never():
        await asyncio.sleep(10)

    assert await wait_for_any(fail(), later(), never(), timeout_ms=1000) == 1
    assert await wait_for_any(never(), timeout_ms=50) is None
