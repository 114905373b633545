"""
Element resolution for portal pages whose markup is not known ahead of time.

Each semantic target carries a fixed, ordered tuple of named strategies. The locator
tries them in order and stops at the first one that yields a visible element, so the
fallback order is plain data that can be inspected and tested.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from debit_models import normalize_text

logger = logging.getLogger(__name__)

STRATEGY_TIMEOUT_MS = 5_000

TAG_NAME_JS = "e => e.tagName.toLowerCase()"
FOLLOWING_INPUT_XPATH = "xpath=following-sibling::*[self::input or self::select or self::textarea][1]"

TEXT_INPUT_SELECTOR = "input[type='text'], input:not([type])"
MENU_TAGS = ("a", "button", "li", "span", "div", "td")
ACTION_TAGS = (
    "button",
    "input[type='submit']",
    "input[type='button']",
    "[role='button']",
    "a",
    "span",
    "div",
)
NAME_TAGS = ("li", "td", "span", "p", "div")


class Target(Enum):
    IDENTIFIER_FIELD = "identifier field"
    MENU_ITEM = "menu item"
    YEAR_SELECTOR = "year selector"
    CONSULT_ACTION = "consult action"
    DISPLAY_NAME = "display name"


Finder = Callable[[Any], Awaitable[Optional[Any]]]


@dataclass(frozen=True)
class Strategy:
    name: str
    find: Finder = field(repr=False, compare=False)


@dataclass(frozen=True)
class LocatorTarget:
    kind: Target
    description: str
    strategies: Tuple[Strategy, ...]

    @property
    def strategy_names(self) -> List[str]:
        return [s.name for s in self.strategies]


@dataclass(frozen=True)
class Resolution:
    handle: Any = None
    strategy: Optional[str] = None
    target: Optional[LocatorTarget] = None

    @property
    def found(self) -> bool:
        return self.handle is not None


NOT_FOUND = Resolution()


# ---------------------------
# Element reads
# ---------------------------
async def element_text(handle) -> str:
    """Rendered text, or the value for inputs/buttons without text."""
    text = ""
    try:
        text = await handle.inner_text()
    except Exception as e:
        logger.debug(f"element_text: {e}")
    if not (text or "").strip():
        try:
            text = await handle.get_attribute("value") or ""
        except Exception as e:
            logger.debug(f"element_text value: {e}")
    return re.sub(r"\s+", " ", text or "").strip()


async def element_tag(handle) -> str:
    try:
        return (await handle.evaluate(TAG_NAME_JS)) or ""
    except Exception as e:
        logger.debug(f"element_tag: {e}")
        return ""


async def is_visible(handle) -> bool:
    try:
        return await handle.is_visible()
    except Exception as e:
        logger.debug(f"is_visible: {e}")
        return False


async def is_disabled(handle) -> bool:
    try:
        if await handle.get_attribute("disabled") is not None:
            return True
        if (await handle.get_attribute("aria-disabled") or "").lower() == "true":
            return True
        classes = (await handle.get_attribute("class") or "").split()
        return "disabled" in classes or "disabled-option" in classes
    except Exception as e:
        logger.debug(f"is_disabled: {e}")
        return False


async def first_visible(handles: Iterable[Any]) -> Optional[Any]:
    for handle in handles:
        if await is_visible(handle):
            return handle
    return None


def text_matches(text: str, expected: str, exact: bool) -> bool:
    """Case-insensitive, whitespace-normalized; substring means whole-word containment."""
    norm, want = normalize_text(text), normalize_text(expected)
    if not norm or not want:
        return False
    if exact:
        return norm == want
    return re.search(rf"(?<!\w){re.escape(want)}(?!\w)", norm) is not None


# ---------------------------
# Strategies
# ---------------------------
def by_selectors(selectors: Sequence[str], name: str = "selectors") -> Strategy:
    async def find(page):
        for sel in selectors:
            handle = await first_visible(await page.query_selector_all(sel))
            if handle is not None:
                logger.debug(f"[locator] {name}: matched {sel}")
                return handle
        return None

    return Strategy(name, find)


def by_label(keyword: str) -> Strategy:
    """Label whose text contains ``keyword``: its ``for`` target, else the next input sibling."""

    async def find(page):
        for label in await page.query_selector_all("label"):
            if keyword.lower() not in (await element_text(label)).lower():
                continue
            for_attr = await label.get_attribute("for")
            if for_attr:
                target = await page.query_selector(f'[id="{for_attr}"]')
                if target is not None and await is_visible(target):
                    return target
            sibling = await label.query_selector(FOLLOWING_INPUT_XPATH)
            if sibling is not None and await is_visible(sibling):
                return sibling
        return None

    return Strategy(f"label:{keyword.lower()}", find)


def by_text(labels: Sequence[str], tags: Sequence[str], exact_only: bool = False, name: Optional[str] = None) -> Strategy:
    """
    Scan ``tags`` (in priority order) for an element whose text equals a label; only
    when no exact match exists anywhere is whole-word containment accepted.
    """

    async def find(page):
        passes = (True,) if exact_only else (True, False)
        for exact in passes:
            for tag in tags:
                for handle in await page.query_selector_all(tag):
                    text = await element_text(handle)
                    if any(text_matches(text, label, exact) for label in labels):
                        if await is_visible(handle):
                            return handle
        return None

    return Strategy(name or f"text:{'|'.join(labels)}", find)


def by_position(selector: str, name: str = "position") -> Strategy:
    async def find(page):
        return await first_visible(await page.query_selector_all(selector))

    return Strategy(name, find)


# ---------------------------
# Targets
# ---------------------------
def identifier_field() -> LocatorTarget:
    return LocatorTarget(
        Target.IDENTIFIER_FIELD,
        "CNPJ input",
        (
            by_selectors(
                [
                    "#cnpj",
                    'input[name="cnpj"]',
                    'input[name*="cnpj" i]',
                    'input[id*="cnpj" i]',
                    'input[placeholder*="cnpj" i]',
                    'input[aria-label*="cnpj" i]',
                ]
            ),
            by_label("cnpj"),
            by_position(TEXT_INPUT_SELECTOR, name="first-text-input"),
        ),
    )


def menu_item(text: str) -> LocatorTarget:
    return LocatorTarget(
        Target.MENU_ITEM,
        f"menu item '{text}'",
        (
            by_selectors([f'a[title="{text}"]', f'[aria-label="{text}"]']),
            by_text([text], MENU_TAGS),
        ),
    )


NATIVE_SELECT_STRATEGIES = ("native-select", "label:ano", "first-select")


def year_selector() -> LocatorTarget:
    """Native ``<select>`` first; custom dropdown toggles only when no select exists."""
    return LocatorTarget(
        Target.YEAR_SELECTOR,
        "year selector",
        (
            by_selectors(['select[id*="ano"]', 'select[name*="ano"]'], name="native-select"),
            by_label("ano"),
            by_selectors(['[class*="filter-option"]', ".dropdown-toggle", '[class*="selectpicker"]'], name="dropdown-toggle"),
            by_position("select", name="first-select"),
        ),
    )


def consult_action(label: str) -> LocatorTarget:
    return LocatorTarget(
        Target.CONSULT_ACTION,
        f"'{label}' action",
        (
            by_selectors(
                [f'input[type="submit"][value="{label}" i]', f'input[type="button"][value="{label}" i]'],
            ),
            by_text([label], ACTION_TAGS),
        ),
    )


def spinner_ok_action() -> LocatorTarget:
    """Ladda spinner buttons render their caption in ``span.ladda-label``."""
    return LocatorTarget(
        Target.CONSULT_ACTION,
        "spinner 'Ok' button",
        (by_text(["ok"], ["span.ladda-label"], exact_only=True, name="ladda-label"),),
    )


def display_name_label() -> LocatorTarget:
    return LocatorTarget(
        Target.DISPLAY_NAME,
        "display name",
        (
            by_text(["nome:"], NAME_TAGS, name="text:nome"),
            by_label("nome"),
            by_selectors(["#nome", '[id*="nomeEmpresarial" i]', '[id*="razaoSocial" i]']),
        ),
    )


# ---------------------------
# Locator
# ---------------------------
class ElementLocator:
    def __init__(self, strategy_timeout_ms: float = STRATEGY_TIMEOUT_MS):
        self.strategy_timeout_ms = strategy_timeout_ms

    async def resolve(self, page, target: LocatorTarget) -> Resolution:
        for strategy in target.strategies:
            try:
                handle = await asyncio.wait_for(strategy.find(page), timeout=self.strategy_timeout_ms / 1000)
            except asyncio.TimeoutError:
                logger.debug(f"[locator] {target.description}: {strategy.name} timed out")
                continue
            except Exception as e:
                logger.debug(f"[locator] {target.description}: {strategy.name} failed: {e}")
                continue
            if handle is not None:
                logger.info(f"[locator] {target.description} resolved via {strategy.name}")
                return Resolution(handle=handle, strategy=strategy.name, target=target)
        logger.debug(f"[locator] {target.description} not found (tried {', '.join(target.strategy_names)})")
        return NOT_FOUND

    async def resolve_first(self, page, targets: Sequence[LocatorTarget]) -> Resolution:
        """Synonymous targets in priority order; the first one found wins."""
        for target in targets:
            resolution = await self.resolve(page, target)
            if resolution.found:
                return resolution
        return NOT_FOUND
