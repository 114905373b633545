import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, List, Optional

from dotenv import load_dotenv
from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright
from playwright_stealth import Stealth

load_dotenv()

# ---------------------------
# Configuration
# ---------------------------
ENTRY_URL = os.getenv(
    "PGMEI_URL",
    "https://www8.receita.fazenda.gov.br/SimplesNacional/Aplicacoes/ATSPO/pgmei.app/Identificacao",
)
ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", str(Path(__file__).parent / "artifacts")))
CDP_URL = os.getenv("PGMEI_CDP_URL", "http://localhost:9222")

# Global timeouts (ms)
NAV_TIMEOUT = 60_000
SHORT_TIMEOUT = 10_000
SETTLE_TIMEOUT = 5_000
CONSULT_WAIT_TIMEOUT = 6_000
CAPTCHA_WAIT_TIMEOUT = 10_000

ENGINES = ("launch", "cdp")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/117.0.0.0 Safari/537.36"
)
EXTRA_HEADERS = {"Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7"}
LOCALE = "pt-BR"
VIEWPORT = {"width": 1280, "height": 900}

# Evasions are injected into every page of the context before portal scripts run.
STEALTH = Stealth(navigator_languages_override=("pt-BR", "pt"))

logger = logging.getLogger(__name__)


# ---------------------------
# Waiting
# ---------------------------
async def wait_for_any(*waits: Awaitable, timeout_ms: float) -> Optional[int]:
    """
    Race several waits and return the index of the first one that succeeds.

    A wait that fails (its own timeout, a closed page) is simply out of the race.
    Returns None when nothing succeeded within ``timeout_ms``; the losers are
    cancelled either way.
    """
    tasks = [asyncio.ensure_future(w) for w in waits]
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000
    pending = set(tasks)
    winner = None
    try:
        while pending and winner is None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            for task in tasks:
                if task in done and not task.cancelled() and task.exception() is None:
                    winner = tasks.index(task)
                    break
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    return winner


# ---------------------------
# Page Interaction Helpers
# ---------------------------
async def maybe_click(handle) -> bool:
    if handle is None:
        return False
    try:
        await handle.click(timeout=SHORT_TIMEOUT)
        return True
    except Exception as e:
        logger.debug(f"maybe_click: {e}")
    return False


async def save_screenshot(page: Page, dest: Path, enable: bool) -> Optional[str]:
    if not enable:
        return None
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=str(dest), full_page=True)
        return str(dest)
    except Exception as e:
        logger.debug(f"save_screenshot failed: {e}")
        return None


def _launch_settings():
    browser_args = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage"]
    executable_path = None
    # Heroku-style containers ship Chrome for Testing via a buildpack
    if os.getenv("DYNO") or os.path.exists("/app"):
        if os.path.exists("/app/.chrome-for-testing/chrome-linux64/chrome"):
            executable_path = "/app/.chrome-for-testing/chrome-linux64/chrome"
        browser_args += [
            "--disable-gpu",
            "--disable-extensions",
            "--disable-background-timer-throttling",
            "--disable-backgrounding-occluded-windows",
            "--disable-renderer-backgrounding",
        ]
    return browser_args, executable_path


# ---------------------------
# Session
# ---------------------------
class PortalSession:
    """
    One browser/profile for a whole run.

    Created at run start and released at run end (``async with``). Pages derived from
    it belong to a single worker at a time; the context is the only shared resource.
    """

    def __init__(self, headless: bool = True, engine: str = "launch", cdp_url: Optional[str] = None):
        if engine not in ENGINES:
            raise ValueError(f"Unknown engine {engine!r}; expected one of {ENGINES}")
        self.headless = headless
        self.engine = engine
        self.cdp_url = cdp_url or CDP_URL
        self._pw: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self._pages: List[Page] = []

    async def __aenter__(self) -> "PortalSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        self._pw = await async_playwright().start()
        if self.engine == "cdp":
            logger.info(f"Attaching to running browser at {self.cdp_url}")
            self.browser = await self._pw.chromium.connect_over_cdp(self.cdp_url)
            if self.browser.contexts:
                self.context = self.browser.contexts[0]
            else:
                self.context = await self._new_context()
        else:
            browser_args, executable_path = _launch_settings()
            if executable_path:
                logger.info(f"Using Chrome at: {executable_path}")
            else:
                logger.info("Using default Playwright Chromium")
            self.browser = await self._pw.chromium.launch(
                headless=self.headless,
                executable_path=executable_path,
                args=browser_args,
            )
            self.context = await self._new_context()
        await STEALTH.apply_stealth_async(self.context)

    async def _new_context(self) -> BrowserContext:
        return await self.browser.new_context(
            user_agent=USER_AGENT,
            locale=LOCALE,
            viewport=VIEWPORT,
            extra_http_headers=EXTRA_HEADERS,
        )

    async def new_page(self) -> Page:
        if self.context is None:
            raise RuntimeError("PortalSession has not been started")
        page = await self.context.new_page()
        page.set_default_timeout(SHORT_TIMEOUT)
        self._pages.append(page)
        return page

    async def close_page(self, page: Page) -> None:
        try:
            await page.close()
        except Exception as e:
            logger.debug(f"close_page: {e}")
        if page in self._pages:
            self._pages.remove(page)

    async def close(self) -> None:
        for page in list(self._pages):
            await self.close_page(page)
        try:
            if self.context is not None and self.engine == "launch":
                await self.context.close()
            if self.browser is not None:
                await self.browser.close()
        finally:
            if self._pw is not None:
                await self._pw.stop()
            self._pw = None
            self.browser = None
            self.context = None
