import argparse
import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, asdict, field
from datetime import date
from pathlib import Path
from typing import List, Optional

from debit_models import MIN_IDENTIFIER_DIGITS, Subject, YearOption, YearResult, normalize_identifier
from debit_store import DebitStore, build_aggregate
from element_locator import ElementLocator
from portal_browser import ARTIFACTS_DIR, ENGINES, PortalSession, save_screenshot
from portal_navigator import IdentifierFieldNotFound, PortalNavigator, PortalUnavailable
from year_iteration import DEFAULT_CONCURRENCY, STRATEGIES, iterate_years

# ---------------------------
# Configuration & Logging
# ---------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s | %(levelname)s | %(message)s")
logger = logging.getLogger("pgmei")

DEFAULT_ENGINE = os.getenv("PGMEI_ENGINE", "launch")
DEFAULT_STRATEGY = os.getenv("PGMEI_STRATEGY", "sequential")
DEFAULT_VOCABULARY = os.getenv("PGMEI_VOCABULARY", "strict")
DEFAULT_WORKERS = int(os.getenv("PGMEI_CONCURRENCY", str(DEFAULT_CONCURRENCY)))
VOCABULARIES = ("strict", "broad")


@dataclass
class WorkflowResult:
    subject_id: str
    display_name: Optional[str]
    years: List[str]
    records: int
    combined_path: Optional[str]
    screenshot_path: Optional[str] = None
    urls: List[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)


# ---------------------------
# Main workflow
# ---------------------------
async def run_workflow(
    cnpj: str,
    year: str,
    month: str,
    headless: bool = True,
    screenshots: bool = True,
    engine: str = DEFAULT_ENGINE,
    strategy: str = DEFAULT_STRATEGY,
    vocabulary: str = DEFAULT_VOCABULARY,
    concurrency: int = DEFAULT_WORKERS,
    output_dir: Path = ARTIFACTS_DIR,
    cdp_url: Optional[str] = None,
) -> WorkflowResult:
    ts = int(time.time())
    subject = Subject(raw_id=cnpj)
    store = DebitStore(output_dir)
    locator = ElementLocator()

    def persist_year(result: YearResult) -> None:
        store.write_year(subject, result)

    async with PortalSession(headless=headless, engine=engine, cdp_url=cdp_url) as session:
        page = await session.new_page()
        navigator = PortalNavigator(page, subject, locator=locator, vocabulary=vocabulary)

        # 1) Identification
        await navigator.load()
        await navigator.wait_past_captcha()
        await navigator.submit_identifier()
        await navigator.wait_past_captcha()

        # 2) Menu and years
        await navigator.open_menu()
        options = await navigator.enumerate_years()

        # 3) Per-year extraction
        if options:
            results = await iterate_years(
                strategy,
                navigator,
                options,
                persist_year,
                session=session,
                factory=lambda p: PortalNavigator(p, subject, locator=locator, vocabulary=vocabulary),
                concurrency=concurrency,
            )
        else:
            logger.warning(f"No year selector found; extracting the current page for {year}")
            fallback = YearResult(option=YearOption(value=year, label=year, eligible=True))
            fallback.records = await navigator.extract(year)
            persist_year(fallback)
            results = [fallback]

        # 4) Aggregate, then let the late name scan win over earlier guesses
        aggregate = build_aggregate(subject, options, results, requested_year=year, requested_month=month)
        combined_path = store.write_combined(aggregate)
        if await navigator.capture_display_name():
            store.update_display_name(subject.display_name)
        navigator.finish()

        shot = await save_screenshot(page, Path(output_dir) / f"resultado-{subject.digits}-{ts}.png", screenshots)

    return WorkflowResult(
        subject_id=subject.digits,
        display_name=subject.display_name,
        years=[r.label for r in results],
        records=aggregate.record_count,
        combined_path=str(combined_path),
        screenshot_path=shot,
        urls=navigator.urls,
    )


# ---------------------------
# CLI + Main
# ---------------------------
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Extract PGMEI (Simples Nacional MEI) DAS debits for a CNPJ")
    p.add_argument("cnpj_arg", nargs="?", metavar="CNPJ", help="CNPJ to query (same as --cnpj)")
    p.add_argument("--cnpj", default=os.getenv("CNPJ"), help="CNPJ to query (required)")
    p.add_argument("--year", default=str(date.today().year), help="Year used when the portal lists no years")
    p.add_argument("--month", default="1", help="Month recorded with the request")
    p.add_argument("--no-headless", dest="headless", action="store_false", help="Show the browser (debugging)")
    p.add_argument("--no-screenshots", dest="screenshots", action="store_false", help="Disable the final screenshot")
    p.add_argument("--engine", choices=ENGINES, default=DEFAULT_ENGINE, help="Launch Chromium or attach over CDP")
    p.add_argument("--cdp-url", default=None, help="DevTools endpoint for --engine=cdp")
    p.add_argument("--strategy", choices=STRATEGIES, default=DEFAULT_STRATEGY, help="Year iteration strategy")
    p.add_argument("--concurrency", type=int, default=DEFAULT_WORKERS, help="Pages in flight for --strategy=parallel")
    p.add_argument("--vocabulary", choices=VOCABULARIES, default=DEFAULT_VOCABULARY, help="Header vocabulary")
    p.add_argument("--output-dir", type=Path, default=ARTIFACTS_DIR, help="Where JSON results are written")
    p.set_defaults(headless=True, screenshots=True)
    args = p.parse_args(argv)

    args.cnpj = args.cnpj or args.cnpj_arg
    if not normalize_identifier(args.cnpj):
        p.error("a CNPJ is required, e.g. --cnpj=00000000000191 --year=2024 --month=1")
    if len(normalize_identifier(args.cnpj)) < MIN_IDENTIFIER_DIGITS:
        logger.warning(f"CNPJ has fewer than {MIN_IDENTIFIER_DIGITS} digits; the portal will probably reject it")
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        res = asyncio.run(
            run_workflow(
                cnpj=args.cnpj,
                year=str(args.year),
                month=str(args.month),
                headless=args.headless,
                screenshots=args.screenshots,
                engine=args.engine,
                strategy=args.strategy,
                vocabulary=args.vocabulary,
                concurrency=args.concurrency,
                output_dir=args.output_dir,
                cdp_url=args.cdp_url,
            )
        )
    except (PortalUnavailable, IdentifierFieldNotFound) as e:
        logger.error(str(e))
        return 1

    print("\n-- Run complete --")
    print("CNPJ:", res.subject_id)
    print("Company:", res.display_name)
    print("Years:", res.years)
    print("Debit rows:", res.records)
    print("Result file:", res.combined_path)
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(130)
