import asyncio
import logging
import re
from enum import Enum
from typing import List, Optional

from context_retry import with_context_retry
from debit_models import DebitRecord, Subject, YearOption, YearResult, is_not_enrolled
from debit_tables import safe_extract_debits
from element_locator import (
    NATIVE_SELECT_STRATEGIES,
    ElementLocator,
    consult_action,
    display_name_label,
    element_tag,
    element_text,
    identifier_field,
    is_disabled,
    menu_item,
    spinner_ok_action,
    text_matches,
    year_selector,
)
from portal_browser import (
    CAPTCHA_WAIT_TIMEOUT,
    CONSULT_WAIT_TIMEOUT,
    ENTRY_URL,
    NAV_TIMEOUT,
    SETTLE_TIMEOUT,
    maybe_click,
    wait_for_any,
)

logger = logging.getLogger(__name__)

MENU_TEXT = "Emitir Guia de Pagamento (DAS)"
CONSULT_LABELS = (
    "Consultar",
    "Pesquisar",
    "Filtrar",
    "OK",
    "Continuar",
    "Buscar",
    "Pesquisar Débitos",
    "Emitir",
    "Confirmar",
)
YEAR_SCAN_SELECTOR = "a, button, span, div, li, option"
DROPDOWN_OPTION_SELECTORS = (".dropdown-menu li", ".dropdown-menu a", ".dropdown-item", ".bs-list li", "li")
RESULT_TABLE_SELECTOR = "table"
INLINE_LIST_SELECTOR = "ul.list-inline"

CAPTCHA_RE = re.compile(r"hcaptcha", re.I)
CAPTCHA_IFRAME_SELECTOR = 'iframe[src*="hcaptcha"]'
NAME_MARKUP_RE = re.compile(r"Nome:</strong>\s*([^<]+)", re.I)
NAME_LABEL_RE = re.compile(r"^\s*nome\s*:?\s*", re.I)
BARE_YEAR_RE = re.compile(r"^\d{4}$")
MAX_YEAR_LABEL_LENGTH = 40

SET_VALUE_JS = """(el, v) => {
    el.focus();
    el.value = v;
    el.dispatchEvent(new Event('input', { bubbles: true }));
    el.dispatchEvent(new Event('change', { bubbles: true }));
}"""


class PortalUnavailable(RuntimeError):
    pass


class IdentifierFieldNotFound(RuntimeError):
    pass


class NavState(Enum):
    INIT = "init"
    LOADED = "loaded"
    IDENTIFIER_SUBMITTED = "identifier-submitted"
    MENU_OPENED = "menu-opened"
    YEARS_ENUMERATED = "years-enumerated"
    YEAR_SELECTED = "year-selected"
    CONSULTED = "consulted"
    EXTRACTED = "extracted"
    DONE = "done"


def detect_captcha(html: str, frame_urls: List[str]) -> bool:
    if CAPTCHA_RE.search(html or ""):
        return True
    return any("hcaptcha" in (u or "").lower() for u in frame_urls)


def display_name_from_markup(html: str) -> Optional[str]:
    """``<strong>Nome:</strong> ACME LTDA`` as rendered on the identification header."""
    match = NAME_MARKUP_RE.search(html or "")
    return match.group(1).strip() if match and match.group(1).strip() else None


def strip_name_label(text: str) -> str:
    return NAME_LABEL_RE.sub("", text or "").strip()


def dedupe_year_options(options: List[YearOption]) -> List[YearOption]:
    seen = set()
    out = []
    for option in options:
        key = option.year or option.label
        if key in seen:
            continue
        seen.add(key)
        out.append(option)
    return out


class PortalNavigator:
    """
    Drives one page through the PGMEI flow:

        Init -> Loaded -> IdentifierSubmitted -> MenuOpened -> YearsEnumerated
             -> [YearSelected -> Consulted -> Extracted] per year -> Done

    Only a failed initial navigation or a missing identifier field abort the run.
    Everything after that logs and degrades; the year sub-cycle never raises.
    """

    def __init__(
        self,
        page,
        subject: Subject,
        locator: Optional[ElementLocator] = None,
        vocabulary: str = "strict",
        entry_url: str = ENTRY_URL,
        captcha_timeout_ms: float = CAPTCHA_WAIT_TIMEOUT,
        settle_timeout_ms: float = SETTLE_TIMEOUT,
        consult_timeout_ms: float = CONSULT_WAIT_TIMEOUT,
    ):
        self.page = page
        self.subject = subject
        self.locator = locator or ElementLocator()
        self.vocabulary = vocabulary
        self.entry_url = entry_url
        self.captcha_timeout_ms = captcha_timeout_ms
        self.settle_timeout_ms = settle_timeout_ms
        self.consult_timeout_ms = consult_timeout_ms
        self.state = NavState.INIT
        self.urls: List[str] = []

    def _enter(self, state: NavState) -> None:
        logger.debug(f"[nav] {self.state.value} -> {state.value}")
        self.state = state

    async def _settle(self) -> bool:
        """Wait for a navigation to finish; a confirm that does not navigate is fine."""
        winner = await wait_for_any(self.page.wait_for_event("load"), timeout_ms=self.settle_timeout_ms)
        return winner is not None

    # ---------------------------
    # Init -> Loaded
    # ---------------------------
    async def load(self) -> None:
        logger.info(f"Navigating to {self.entry_url}")
        try:
            await self.page.goto(self.entry_url, wait_until="networkidle", timeout=NAV_TIMEOUT)
        except Exception as e:
            raise PortalUnavailable(f"Could not load {self.entry_url}: {e}") from e
        self.urls.append(self.page.url)
        self._enter(NavState.LOADED)

    async def wait_past_captcha(self) -> bool:
        """
        Detect an hCaptcha interstitial and give it a short window to clear.

        Never blocks on manual intervention: after the window the flow proceeds
        whether or not the challenge is still there.
        """
        html = await with_context_retry(self.page.content, empty=str, label="captcha check")
        frame_urls = [getattr(f, "url", "") for f in self.page.frames]
        if not detect_captcha(html, frame_urls):
            return False
        logger.warning("hCaptcha detected; waiting briefly for it to clear, then continuing")
        winner = await wait_for_any(
            self.page.wait_for_selector(CAPTCHA_IFRAME_SELECTOR, state="detached", timeout=self.captcha_timeout_ms),
            self.page.wait_for_selector(RESULT_TABLE_SELECTOR, timeout=self.captcha_timeout_ms),
            self.page.wait_for_selector(INLINE_LIST_SELECTOR, timeout=self.captcha_timeout_ms),
            timeout_ms=self.captcha_timeout_ms,
        )
        if winner is None:
            logger.warning("hCaptcha still present after the wait window; proceeding anyway")
        else:
            logger.info("hCaptcha cleared or post-login content appeared")
        return True

    # ---------------------------
    # Loaded -> IdentifierSubmitted
    # ---------------------------
    async def submit_identifier(self) -> None:
        resolution = await self.locator.resolve(self.page, identifier_field())
        if not resolution.found:
            raise IdentifierFieldNotFound("CNPJ field not found. Adjust the locator strategies.")
        field = resolution.handle
        digits = self.subject.digits

        try:
            await field.click(click_count=3)
            await field.fill("")
            await field.type(digits, delay=50)
        except Exception as e:
            logger.debug(f"Typing into CNPJ field failed ({e}); setting value via script")
            try:
                await field.evaluate(SET_VALUE_JS, digits)
            except Exception as ee:
                logger.warning(f"Failed to fill the CNPJ field automatically: {ee}")

        try:
            logger.info(f"CNPJ field value after fill: {await field.input_value()}")
        except Exception as e:
            logger.debug(f"CNPJ readback failed: {e}")

        await self.capture_inline_display_name()

        try:
            await self.page.keyboard.press("Enter")
        except Exception as e:
            logger.warning(f"Could not press Enter on the identification form: {e}")
        if not await self._settle():
            logger.info("No navigation after confirming the CNPJ; continuing on the same page")
        self.urls.append(self.page.url)
        self._enter(NavState.IDENTIFIER_SUBMITTED)

    # ---------------------------
    # Display name
    # ---------------------------
    async def read_inline_display_name(self) -> Optional[str]:
        ul = await self.page.query_selector(INLINE_LIST_SELECTOR)
        if ul is None:
            return None
        items = [await element_text(li) for li in await ul.query_selector_all("li")]
        items = [t for t in items if t]
        if items:
            return " - ".join(items)
        return (await element_text(ul)) or None

    async def capture_inline_display_name(self) -> Optional[str]:
        """Early, best-effort guess; a later labelled scan overrides it."""
        name = None
        try:
            name = await self.read_inline_display_name()
            if name:
                logger.info(f"Company name detected in {INLINE_LIST_SELECTOR}: {name}")
                self.subject.set_display_name(name, "inline-list")
            html = await with_context_retry(self.page.content, empty=str, label="name markup")
            from_markup = display_name_from_markup(html)
            if from_markup:
                logger.info(f"Company name extracted from markup: {from_markup}")
                self.subject.set_display_name(from_markup, "markup")
                name = from_markup
        except Exception as e:
            logger.warning(f"Error reading the inline company name: {e}")
        return name

    async def capture_display_name(self) -> Optional[str]:
        """Late, authoritative scan (list item or label carrying "Nome")."""
        try:
            resolution = await self.locator.resolve(self.page, display_name_label())
            if not resolution.found:
                logger.warning("Display name not found on the final page")
                return None
            text = await element_text(resolution.handle)
            name = strip_name_label(text)
            if self.subject.set_display_name(name, "labelled"):
                logger.info(f"Company name found via '{resolution.strategy}': {name}")
                return self.subject.display_name
        except Exception as e:
            logger.warning(f"Error reading the labelled company name: {e}")
        return None

    # ---------------------------
    # IdentifierSubmitted -> MenuOpened
    # ---------------------------
    async def open_menu(self) -> bool:
        target = menu_item(MENU_TEXT)
        resolution = await self.locator.resolve(self.page, target)
        if not resolution.found:
            await wait_for_any(self.page.wait_for_load_state("networkidle"), timeout_ms=self.settle_timeout_ms)
            resolution = await self.locator.resolve(self.page, target)
        if not resolution.found:
            logger.warning(f"Menu '{MENU_TEXT}' not found; continuing on the current page")
            self._enter(NavState.MENU_OPENED)
            return False
        if await maybe_click(resolution.handle):
            await self._settle()
            self.urls.append(self.page.url)
        else:
            logger.warning(f"Menu '{MENU_TEXT}' found but could not be clicked")
        self._enter(NavState.MENU_OPENED)
        return True

    # ---------------------------
    # MenuOpened -> YearsEnumerated
    # ---------------------------
    async def _native_select(self):
        resolution = await self.locator.resolve(self.page, year_selector())
        if not resolution.found:
            return None, None
        if resolution.strategy in NATIVE_SELECT_STRATEGIES and await element_tag(resolution.handle) == "select":
            return resolution.handle, None
        if resolution.strategy == "dropdown-toggle":
            return None, resolution.handle
        return None, None

    async def enumerate_years(self) -> List[YearOption]:
        select, toggle = await self._native_select()
        options: List[YearOption] = []

        if select is not None:
            for opt in await select.query_selector_all("option"):
                label = await element_text(opt)
                value = await opt.get_attribute("value")
                option = YearOption.classify(value, label, disabled=await is_disabled(opt))
                if option.year or is_not_enrolled(label):
                    options.append(option)
        else:
            if toggle is not None and await maybe_click(toggle):
                await asyncio.sleep(0.4)
            for el in await self.page.query_selector_all(YEAR_SCAN_SELECTOR):
                text = await element_text(el)
                if BARE_YEAR_RE.match(text) or (is_not_enrolled(text) and len(text) <= MAX_YEAR_LABEL_LENGTH):
                    options.append(YearOption.classify(None, text, disabled=await is_disabled(el), handle=el))
            if toggle is not None:
                await maybe_click(toggle)

        options = dedupe_year_options(options)
        eligible = [o.label for o in options if o.eligible]
        excluded = [o.label for o in options if not o.eligible]
        logger.info(f"Years found: {len(options)} (eligible: {eligible}; not eligible: {excluded})")
        self._enter(NavState.YEARS_ENUMERATED)
        return options

    # ---------------------------
    # Per-year sub-cycle
    # ---------------------------
    async def select_year(self, option: YearOption) -> bool:
        select, toggle = await self._native_select()
        if select is not None:
            await select.select_option(value=option.value)
            await select.dispatch_event("change")
            return True

        if toggle is not None:
            await maybe_click(toggle)
            await asyncio.sleep(0.1)
            for sel in DROPDOWN_OPTION_SELECTORS:
                for opt in await self.page.query_selector_all(sel):
                    if await is_disabled(opt):
                        continue
                    text = await element_text(opt)
                    if text_matches(text, option.label, exact=True) or text == option.value:
                        if await maybe_click(opt):
                            return True

        if option.handle is not None and await maybe_click(option.handle):
            return True
        logger.warning(f"Could not select year {option.label}")
        return False

    async def consult(self) -> bool:
        targets = [spinner_ok_action()] + [consult_action(label) for label in CONSULT_LABELS]
        resolution = await self.locator.resolve_first(self.page, targets)
        if not resolution.found or not await maybe_click(resolution.handle):
            logger.warning("Consult action not found; extracting whatever the page shows")
            return False
        winner = await wait_for_any(
            self.page.wait_for_event("load"),
            self.page.wait_for_selector(RESULT_TABLE_SELECTOR, timeout=self.consult_timeout_ms),
            timeout_ms=self.consult_timeout_ms,
        )
        if winner is None:
            logger.info("Neither a navigation nor a table followed the consult action")
        return True

    async def extract(self, year_label: str) -> List[DebitRecord]:
        return await safe_extract_debits(self.page, year_label, self.vocabulary, max_attempts=3)

    async def run_year(self, option: YearOption) -> YearResult:
        label = option.label
        records: List[DebitRecord] = []
        try:
            if not await self.select_year(option):
                return YearResult(option=option, records=[])
            self._enter(NavState.YEAR_SELECTED)
            await self.consult()
            self._enter(NavState.CONSULTED)
            records = await self.extract(label)
            self._enter(NavState.EXTRACTED)
        except Exception as e:
            logger.warning(f"Year {label} degraded to zero records: {e}")
            records = []
        if records:
            logger.info(f"{len(records)} debit row(s) found for {label}")
        else:
            logger.info(f"No debits found for {label}")
        return YearResult(option=option, records=records)

    async def prepare(self) -> None:
        """Fresh page up to MenuOpened; used by workers that run one year each."""
        await self.load()
        await self.wait_past_captcha()
        await self.submit_identifier()
        await self.wait_past_captcha()
        await self.open_menu()

    def finish(self) -> None:
        self._enter(NavState.DONE)
