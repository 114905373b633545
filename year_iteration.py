import asyncio
import logging
import random
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from debit_models import YearOption, YearResult
from portal_navigator import PortalNavigator

logger = logging.getLogger(__name__)

STRATEGIES = ("sequential", "parallel")
DEFAULT_CONCURRENCY = 3

ResultSink = Callable[[YearResult], object]
NavigatorFactory = Callable[[object], PortalNavigator]


async def polite_delay(low: float = 0.1, high: float = 0.5) -> None:
    """Small random pause between years on the shared page."""
    await asyncio.sleep(random.uniform(low, high))


async def iterate_sequential(
    navigator: PortalNavigator,
    options: Sequence[YearOption],
    on_result: ResultSink,
) -> List[YearResult]:
    """One page for every year; the menu is reopened since a query may navigate away."""
    results: List[YearResult] = []
    for i, option in enumerate(options):
        if i > 0:
            await navigator.open_menu()
        logger.info(f"Processing year: {option.label}")
        result = await navigator.run_year(option)
        on_result(result)
        results.append(result)
        await polite_delay()
    return results


async def _run_isolated_year(session, factory: NavigatorFactory, option: YearOption) -> YearResult:
    page = await session.new_page()
    try:
        navigator = factory(page)
        await navigator.prepare()
        return await navigator.run_year(option)
    except Exception as e:
        logger.warning(f"Year {option.label} degraded to zero records on its own page: {e}")
        return YearResult(option=option, records=[])
    finally:
        await session.close_page(page)


async def iterate_parallel(
    session,
    factory: NavigatorFactory,
    options: Sequence[YearOption],
    on_result: ResultSink,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> List[YearResult]:
    """
    One fresh page per year, at most ``concurrency`` at a time.

    Workers pull the next pending year as soon as they finish one. The bound keeps
    burst traffic low enough not to trip the portal's anti-automation checks.
    """
    queue: asyncio.Queue = asyncio.Queue()
    for index, option in enumerate(options):
        # element handles belong to the page that produced them
        queue.put_nowait((index, replace(option, handle=None)))
    results: List[Optional[YearResult]] = [None] * len(options)

    async def worker(n: int) -> None:
        while True:
            try:
                index, option = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            logger.info(f"[worker {n}] Processing year: {option.label}")
            result = await _run_isolated_year(session, factory, option)
            on_result(result)
            results[index] = result
            queue.task_done()

    workers = max(1, min(concurrency, len(options)))
    await asyncio.gather(*(worker(n) for n in range(workers)))
    return [r for r in results if r is not None]


async def iterate_years(
    strategy: str,
    navigator: PortalNavigator,
    options: Sequence[YearOption],
    on_result: ResultSink,
    session=None,
    factory: Optional[NavigatorFactory] = None,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> List[YearResult]:
    eligible = [o for o in options if o.eligible]
    if strategy == "parallel":
        if session is None or factory is None:
            raise ValueError("parallel iteration needs a session and a navigator factory")
        return await iterate_parallel(session, factory, eligible, on_result, concurrency)
    if strategy != "sequential":
        raise ValueError(f"Unknown iteration strategy {strategy!r}; expected one of {STRATEGIES}")
    return await iterate_sequential(navigator, eligible, on_result)
